from __future__ import annotations

import re

import structlog

from forumai.errors import ForumAIError
from forumai.llm.service import TextGenerationService
from forumai.models import Charter
from forumai.telemetry import SPAN_SCORE, TAG_OUTCOME, TAG_SCORE, Telemetry

logger = structlog.get_logger(__name__)

# First standalone 0-100, optionally with a decimal part.
_SCORE_PATTERN = re.compile(r"(?<![0-9])(100|[0-9]{1,2})(?:\.[0-9]+)?")


def build_scoring_instruction(text: str) -> str:
    return (
        "You are scoring a piece of forum content for compliance with the community charter. "
        "Return ONLY a number from 0 to 100 where 0 = violates charter heavily, "
        "100 = perfectly aligned. "
        "Do not include any words or symbols, only the number.\n"
        "\n"
        "Content:\n"
        f"{text.strip()}"
    )


def parse_score(raw: str) -> float | None:
    if not raw.strip():
        return None
    match = _SCORE_PATTERN.search(raw)
    if match is None:
        return None
    return min(max(float(match.group(0)), 0.0), 100.0)


class CharterScoringService:
    """Best-effort 0-100 charter compliance score for a piece of content."""

    def __init__(self, generator: TextGenerationService, *, telemetry: Telemetry) -> None:
        self._generator = generator
        self._telemetry = telemetry

    async def score_post(
        self, charter: Charter | None, text: str | None, model: str | None = None
    ) -> float | None:
        if charter is None or not text or not text.strip():
            return None

        log = logger.bind(charter=charter.name)
        with self._telemetry.start_span(SPAN_SCORE) as span:
            try:
                raw = await self._generator.generate(charter, build_scoring_instruction(text), model)
            except ForumAIError as e:
                log.warning("charter_score_failed", error_type=type(e).__name__, error=str(e))
                span.set_attribute(TAG_OUTCOME, "provider_error")
                return None

            score = parse_score(raw)
            if score is None:
                log.info("charter_score_unparsed", raw=raw[:200])
                span.set_attribute(TAG_OUTCOME, "unparsed")
                return None

            span.set_attribute(TAG_OUTCOME, "scored")
            span.set_attribute(TAG_SCORE, score)

        log.info("charter_scored", score=score)
        return score
