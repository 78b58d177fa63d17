from __future__ import annotations

import uuid
from enum import StrEnum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from pydantic.alias_generators import to_camel

# --- Charter ---


def _bullets(items: tuple[str, ...]) -> str:
    if not items:
        return "(none specified)"
    return "- " + "\n- ".join(items)


class Charter(BaseModel, frozen=True):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(min_length=1)
    purpose: str = ""
    rules: tuple[str, ...] = ()
    behaviors: tuple[str, ...] = ()

    def build_system_prompt(self) -> str:
        return (
            "You are an assistant operating within the following community charter.\n"
            f"Community Name: {self.name}\n"
            f"Purpose: {self.purpose}\n"
            "\n"
            "Rules:\n"
            f"{_bullets(self.rules)}\n"
            "\n"
            "Expected Behaviors:\n"
            f"{_bullets(self.behaviors)}\n"
            "\n"
            "When evaluating or generating content, always apply the charter above. "
            "Be concise and actionable in responses."
        )


# --- Generation ---


class Prompt(BaseModel, frozen=True):
    system: str
    user: str

    @property
    def text(self) -> str:
        return f"{self.system}\n\nUser:\n{self.user}\n\nAssistant:"


class GenerationRequest(BaseModel, frozen=True):
    charter: Charter
    user_input: str
    model: str | None = None
    provider: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)


class GenerationResult(BaseModel, frozen=True):
    text: str
    elapsed_ms: int
    provider: str
    model: str


# --- Moderation ---


class ModerationDecision(StrEnum):
    ALLOW = "allow"
    FLAG = "flag"
    REJECT = "reject"


class ModerationResult(BaseModel, frozen=True):
    decision: ModerationDecision
    summary: str = ""
    violations: list[str] = []


# --- Translation ---


class TranslationItem(BaseModel, frozen=True):
    key: str
    source_text: str


class TranslationJobResult(BaseModel, frozen=True):
    job_id: str
    language_code: str
    total: int
    translated_count: int
    failed_keys: list[str] = []


class ProgressEvent(BaseModel):
    """Payload pushed to real-time observers, serialized with camelCase keys."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    event_name: ClassVar[str]

    def payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class StringTranslated(ProgressEvent):
    event_name: ClassVar[str] = "StringTranslated"

    key: str
    language_code: str
    translated_text: str


class TranslationProgress(ProgressEvent):
    event_name: ClassVar[str] = "TranslationProgress"

    job_id: str
    total: int = Field(ge=0)
    completed: int = Field(ge=0)
    current_key: str | None = None

    @model_validator(mode="after")
    def _completed_within_total(self) -> TranslationProgress:
        if self.completed > self.total:
            raise ValueError("completed cannot exceed total")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.completed / self.total * 100.0


class TranslationComplete(ProgressEvent):
    event_name: ClassVar[str] = "TranslationComplete"

    job_id: str
    translated_count: int
