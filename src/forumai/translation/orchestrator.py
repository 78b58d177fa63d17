from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing

import structlog
from opentelemetry.trace import Span
from pydantic import BaseModel

from forumai.errors import TranslationItemError
from forumai.llm.service import TextGenerationService
from forumai.models import (
    Charter,
    ProgressEvent,
    StringTranslated,
    TranslationComplete,
    TranslationItem,
    TranslationJobResult,
    TranslationProgress,
)
from forumai.publishing import ProgressPublisher, publish_event
from forumai.telemetry import (
    METRIC_TRANSLATION_ITEMS,
    SPAN_TRANSLATION_JOB,
    TAG_JOB_ID,
    TAG_OUTCOME,
    TAG_TARGET_LANGUAGE,
    Telemetry,
)

logger = structlog.get_logger(__name__)


class TranslationJob(BaseModel, frozen=True):
    items: list[TranslationItem]
    target_language: str
    job_id: str | None = None


def translation_charter(source_language: str, target_language: str) -> Charter:
    return Charter(
        name="Translation",
        purpose=(
            f"Translate text from {source_language} to {target_language} "
            "accurately and naturally"
        ),
    )


def build_translation_input(text: str, source_language: str, target_language: str) -> str:
    return (
        f"Translate the following text from {source_language} to {target_language}.\n"
        "Preserve formatting, placeholders (like {0}, {name}), and HTML tags if present.\n"
        "Return ONLY the translated text, no explanations.\n"
        "\n"
        "Text to translate:\n"
        f"{text}"
    )


class TranslationOrchestrator:
    def __init__(
        self,
        generator: TextGenerationService,
        publisher: ProgressPublisher,
        *,
        telemetry: Telemetry,
        source_language: str = "en",
    ) -> None:
        self._generator = generator
        self._publisher = publisher
        self._telemetry = telemetry
        self._source_language = source_language

    async def translate_item(self, item: TranslationItem, target_language: str) -> str:
        charter = translation_charter(self._source_language, target_language)
        try:
            text = await self._generator.generate(
                charter,
                build_translation_input(item.source_text, self._source_language, target_language),
                self._generator.translation_model,
                provider=self._generator.translation_provider,
            )
        except Exception as e:
            raise TranslationItemError(
                f"Failed to translate {item.key!r} to {target_language}: {e}", key=item.key
            ) from e
        return text.strip()

    async def iter_job(
        self,
        items: Sequence[TranslationItem],
        target_language: str,
        *,
        job_id: str | None = None,
        failed_keys: list[str] | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        """Translate ``items`` in order, yielding events as each one settles.

        Events for an item are yielded before the next item's generation
        starts. Failed keys are appended to ``failed_keys`` when given.
        """
        job_id = job_id or str(uuid.uuid4())
        total = len(items)
        log = logger.bind(job_id=job_id, language=target_language, total=total)
        items_counter = self._telemetry.get_counter(METRIC_TRANSLATION_ITEMS)
        log.info("translation_job_start")

        completed = 0
        for item in items:
            try:
                translated = await self.translate_item(item, target_language)
            except TranslationItemError as e:
                log.error("translation_item_failed", key=e.key, error=str(e), exc_info=True)
                items_counter.add(1, {TAG_TARGET_LANGUAGE: target_language, TAG_OUTCOME: "failed"})
                if failed_keys is not None:
                    failed_keys.append(item.key)
            else:
                items_counter.add(1, {TAG_TARGET_LANGUAGE: target_language, TAG_OUTCOME: "ok"})
                yield StringTranslated(
                    key=item.key,
                    language_code=target_language,
                    translated_text=translated,
                )

            completed += 1
            yield TranslationProgress(
                job_id=job_id, total=total, completed=completed, current_key=item.key
            )

        # Count is items attempted, not items that succeeded.
        log.info("translation_job_complete", completed=completed)
        yield TranslationComplete(job_id=job_id, translated_count=completed)

    async def _publish(self, event: ProgressEvent, job_id: str) -> None:
        # A lost event must not stop the job.
        try:
            await publish_event(self._publisher, event)
        except Exception as e:
            logger.warning(
                "progress_publish_failed",
                job_id=job_id,
                event_name=event.event_name,
                error_type=type(e).__name__,
                error=str(e),
            )

    async def run_job(
        self,
        items: Sequence[TranslationItem],
        target_language: str,
        *,
        job_id: str | None = None,
    ) -> TranslationJobResult:
        job_id = job_id or str(uuid.uuid4())
        failed_keys: list[str] = []
        translated_count = 0

        def configure(span: Span) -> None:
            span.set_attribute(TAG_JOB_ID, job_id)
            span.set_attribute(TAG_TARGET_LANGUAGE, target_language)

        events = self.iter_job(items, target_language, job_id=job_id, failed_keys=failed_keys)
        with self._telemetry.start_span(SPAN_TRANSLATION_JOB, configure=configure):
            async with aclosing(events):
                async for event in events:
                    await self._publish(event, job_id)
                    if isinstance(event, TranslationComplete):
                        translated_count = event.translated_count

        return TranslationJobResult(
            job_id=job_id,
            language_code=target_language,
            total=len(items),
            translated_count=translated_count,
            failed_keys=failed_keys,
        )

    async def run_many(self, jobs: Sequence[TranslationJob]) -> list[TranslationJobResult]:
        """Run independent jobs concurrently; each stays sequential internally."""
        results = await asyncio.gather(
            *[
                self.run_job(job.items, job.target_language, job_id=job.job_id)
                for job in jobs
            ]
        )
        return list(results)
