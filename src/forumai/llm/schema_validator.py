from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Generic, TypeAlias, TypeVar

from pydantic import BaseModel, ValidationError

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class ValidationSuccess(Generic[T]):
    value: T


@dataclass(frozen=True)
class ValidationEmpty:
    """The output parsed to JSON ``null``."""


@dataclass(frozen=True)
class ValidationFailure:
    error_message: str


ValidationResult: TypeAlias = ValidationSuccess[T] | ValidationEmpty | ValidationFailure


def _fold_keys(data: Any) -> Any:
    """Lower-case top-level keys so property matching ignores case."""
    if isinstance(data, dict):
        return {str(k).lower(): v for k, v in data.items()}
    return data


def validate_llm_output(raw: str, model_class: type[M]) -> ValidationResult[M]:
    """Strictly parse raw LLM text as one JSON document and validate it.

    No fence stripping or brace hunting: anything that is not a JSON document
    on its own is a failure.
    """
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError) as e:
        # ValueError also covers integers past the digit limit
        return ValidationFailure(error_message=f"Invalid JSON: {e}")

    if data is None:
        return ValidationEmpty()

    try:
        value = model_class.model_validate(_fold_keys(data))
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        return ValidationFailure(error_message=f"Schema validation failed: {errors}")

    return ValidationSuccess(value=value)
