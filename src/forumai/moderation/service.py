from __future__ import annotations

import structlog
from pydantic import BaseModel

from forumai.errors import ModerationParseError, ProviderError
from forumai.llm.schema_validator import (
    ValidationEmpty,
    ValidationFailure,
    validate_llm_output,
)
from forumai.llm.service import TextGenerationService
from forumai.models import Charter, ModerationDecision, ModerationResult
from forumai.telemetry import (
    METRIC_MODERATION_DECISIONS,
    SPAN_MODERATE,
    TAG_DECISION,
    TAG_OUTCOME,
    Telemetry,
)

logger = structlog.get_logger(__name__)

PARSE_FAILURE_SUMMARY = "Unable to parse model output"
EMPTY_RESPONSE_SUMMARY = "Empty response from model"
PROVIDER_FAILURE_SUMMARY = "Moderation provider failure"


class RawModerationResponse(BaseModel):
    decision: str | None = None
    summary: str | None = None
    violations: list[str] | None = None


def build_moderation_instruction(content: str) -> str:
    return (
        "Evaluate the following user post against the community charter. Decide whether "
        "to ALLOW, FLAG (needs moderator review), or REJECT (clear violation).\n"
        "Return a strict JSON object with keys: decision (\"allow\"|\"flag\"|\"reject\"), "
        "summary (short text), violations (array of strings referencing rules).\n"
        "\n"
        "Post:\n"
        "```\n"
        f"{content}\n"
        "```\n"
    )


def normalize_decision(raw: str | None) -> ModerationDecision:
    # Anything unrecognised goes to a human.
    try:
        return ModerationDecision((raw or "").lower())
    except ValueError:
        return ModerationDecision.FLAG


def _flag(summary: str, violations: list[str]) -> ModerationResult:
    return ModerationResult(
        decision=ModerationDecision.FLAG, summary=summary, violations=violations
    )


def _parse_strict(raw: str) -> RawModerationResponse | None:
    validation = validate_llm_output(raw, RawModerationResponse)
    if isinstance(validation, ValidationFailure):
        raise ModerationParseError(validation.error_message)
    if isinstance(validation, ValidationEmpty):
        return None
    return validation.value


def parse_moderation_output(raw: str) -> ModerationResult:
    """Turn model text into a decision; never raises."""
    try:
        parsed = _parse_strict(raw)
    except ModerationParseError as e:
        logger.warning("moderation_parse_failed", error=str(e), raw=raw[:200])
        return _flag(PARSE_FAILURE_SUMMARY, ["ParsingError"])

    if parsed is None:
        return _flag(EMPTY_RESPONSE_SUMMARY, [])

    return ModerationResult(
        decision=normalize_decision(parsed.decision),
        summary=parsed.summary or "",
        violations=list(parsed.violations or []),
    )


class ModerationService:
    def __init__(
        self,
        generator: TextGenerationService,
        *,
        telemetry: Telemetry,
        temperature: float = 0.0,
    ) -> None:
        self._generator = generator
        self._telemetry = telemetry
        self._temperature = temperature

    async def evaluate_post(
        self, charter: Charter, content: str, model: str | None = None
    ) -> ModerationResult:
        log = logger.bind(charter=charter.name, model=model or self._generator.default_model)
        outcome = "parsed"
        with self._telemetry.start_span(SPAN_MODERATE) as span:
            try:
                raw = await self._generator.generate(
                    charter,
                    build_moderation_instruction(content),
                    model,
                    temperature=self._temperature,
                )
            except ProviderError as e:
                log.error(
                    "moderation_provider_failed",
                    provider=e.provider,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                outcome = "provider_error"
                result = _flag(PROVIDER_FAILURE_SUMMARY, ["ProviderError"])
            else:
                result = parse_moderation_output(raw)
            span.set_attribute(TAG_DECISION, result.decision.value)
            span.set_attribute(TAG_OUTCOME, outcome)

        self._telemetry.get_counter(METRIC_MODERATION_DECISIONS).add(
            1, {TAG_DECISION: result.decision.value, TAG_OUTCOME: outcome}
        )
        log.info(
            "moderation_decided",
            decision=result.decision.value,
            violations=len(result.violations),
        )
        return result
