import asyncio
from unittest.mock import AsyncMock

import pytest

from forumai.errors import ProviderUnreachableError, TranslationItemError
from forumai.llm.service import TextGenerationService
from forumai.models import (
    StringTranslated,
    TranslationComplete,
    TranslationItem,
    TranslationProgress,
)
from forumai.publishing import Broadcaster
from forumai.telemetry import SPAN_TRANSLATION_JOB, TAG_JOB_ID
from forumai.translation.orchestrator import (
    TranslationJob,
    TranslationOrchestrator,
    build_translation_input,
)


class RecordingPublisher:
    def __init__(self):
        self.events = []

    async def publish(self, event_name, payload):
        self.events.append((event_name, payload))


def make_generator(*, fail_on=()):
    generator = AsyncMock(spec=TextGenerationService)
    generator.translation_model = "llama3.1"
    generator.translation_provider = "ollama"

    async def generate(charter, user_input, model=None, **kwargs):
        text = user_input.rsplit("\n", 1)[-1]
        if text in fail_on:
            raise ProviderUnreachableError("refused", provider="ollama")
        return f"  <{text}>\n"

    generator.generate.side_effect = generate
    return generator


ITEMS = [
    TranslationItem(key="a", source_text="Hello"),
    TranslationItem(key="b", source_text="Goodbye"),
]


def test_translation_input_keeps_placeholder_instructions():
    text = build_translation_input("Hi {name}", "en", "fr")
    assert text.startswith("Translate the following text from en to fr.\n")
    assert "placeholders (like {0}, {name})" in text
    assert text.endswith("Text to translate:\nHi {name}")


class TestTranslateItem:
    @pytest.mark.asyncio
    async def test_result_is_trimmed(self, telemetry):
        orchestrator = TranslationOrchestrator(make_generator(), RecordingPublisher(), telemetry=telemetry)
        assert await orchestrator.translate_item(ITEMS[0], "fr") == "<Hello>"

    @pytest.mark.asyncio
    async def test_uses_translation_charter(self, telemetry):
        generator = make_generator()
        orchestrator = TranslationOrchestrator(
            generator, RecordingPublisher(), telemetry=telemetry, source_language="de"
        )
        await orchestrator.translate_item(ITEMS[0], "fr")
        charter = generator.generate.call_args.args[0]
        assert charter.name == "Translation"
        assert "from de to fr" in charter.purpose

    @pytest.mark.asyncio
    async def test_uses_translation_model_and_provider(self, telemetry):
        generator = make_generator()
        generator.translation_model = "aya-23"
        generator.translation_provider = "lmstudio"
        orchestrator = TranslationOrchestrator(generator, RecordingPublisher(), telemetry=telemetry)

        await orchestrator.translate_item(ITEMS[0], "fr")

        call = generator.generate.call_args
        assert call.args[2] == "aya-23"
        assert call.kwargs["provider"] == "lmstudio"

    @pytest.mark.asyncio
    async def test_failure_is_wrapped_with_key(self, telemetry):
        orchestrator = TranslationOrchestrator(
            make_generator(fail_on={"Hello"}), RecordingPublisher(), telemetry=telemetry
        )
        with pytest.raises(TranslationItemError) as exc_info:
            await orchestrator.translate_item(ITEMS[0], "fr")
        assert exc_info.value.key == "a"
        assert isinstance(exc_info.value.__cause__, ProviderUnreachableError)


class TestRunJob:
    @pytest.mark.asyncio
    async def test_event_order(self, telemetry):
        publisher = RecordingPublisher()
        orchestrator = TranslationOrchestrator(make_generator(), publisher, telemetry=telemetry)

        result = await orchestrator.run_job(ITEMS, "fr", job_id="job-1")

        assert [name for name, _ in publisher.events] == [
            "StringTranslated",
            "TranslationProgress",
            "StringTranslated",
            "TranslationProgress",
            "TranslationComplete",
        ]
        assert publisher.events[0][1] == {
            "key": "a",
            "languageCode": "fr",
            "translatedText": "<Hello>",
        }
        assert publisher.events[1][1]["completed"] == 1
        assert publisher.events[1][1]["percentage"] == 50.0
        assert publisher.events[3][1]["currentKey"] == "b"
        assert publisher.events[4][1] == {"jobId": "job-1", "translatedCount": 2}
        assert result.translated_count == 2
        assert result.failed_keys == []

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self, telemetry):
        items = [TranslationItem(key=str(i), source_text=f"t{i}") for i in range(5)]
        publisher = RecordingPublisher()
        orchestrator = TranslationOrchestrator(make_generator(), publisher, telemetry=telemetry)

        await orchestrator.run_job(items, "es")

        progress = [p for name, p in publisher.events if name == "TranslationProgress"]
        assert [p["completed"] for p in progress] == [1, 2, 3, 4, 5]
        assert all(p["total"] == 5 for p in progress)
        assert publisher.events[-1][0] == "TranslationComplete"
        assert publisher.events[-1][1]["translatedCount"] == 5

    @pytest.mark.asyncio
    async def test_failed_item_does_not_stop_job(self, telemetry, metric_points):
        publisher = RecordingPublisher()
        orchestrator = TranslationOrchestrator(
            make_generator(fail_on={"Hello"}), publisher, telemetry=telemetry
        )

        result = await orchestrator.run_job(ITEMS, "fr")

        assert [name for name, _ in publisher.events] == [
            "TranslationProgress",
            "StringTranslated",
            "TranslationProgress",
            "TranslationComplete",
        ]
        assert publisher.events[0][1]["currentKey"] == "a"
        assert result.failed_keys == ["a"]
        assert result.translated_count == 2
        outcomes = {p.attributes["ai.outcome"]: p.value for p in metric_points("ai.translation.items")}
        assert outcomes == {"failed": 1, "ok": 1}

    @pytest.mark.asyncio
    async def test_publisher_failure_does_not_stop_job(self, telemetry):
        delivered = []

        class FlakyPublisher:
            async def publish(self, event_name, payload):
                if event_name == "StringTranslated":
                    raise RuntimeError("hub down")
                delivered.append(event_name)

        generator = make_generator()
        orchestrator = TranslationOrchestrator(generator, FlakyPublisher(), telemetry=telemetry)

        result = await orchestrator.run_job(ITEMS, "fr", job_id="job-3")

        assert generator.generate.await_count == 2
        assert delivered == ["TranslationProgress", "TranslationProgress", "TranslationComplete"]
        assert result.translated_count == 2
        assert result.failed_keys == []

    @pytest.mark.asyncio
    async def test_empty_job_completes(self, telemetry):
        publisher = RecordingPublisher()
        orchestrator = TranslationOrchestrator(make_generator(), publisher, telemetry=telemetry)

        result = await orchestrator.run_job([], "fr", job_id="empty")

        assert publisher.events == [("TranslationComplete", {"jobId": "empty", "translatedCount": 0})]
        assert result.total == 0

    @pytest.mark.asyncio
    async def test_job_span(self, telemetry, span_exporter):
        orchestrator = TranslationOrchestrator(make_generator(), RecordingPublisher(), telemetry=telemetry)
        await orchestrator.run_job(ITEMS, "fr", job_id="job-9")
        [span] = [s for s in span_exporter.get_finished_spans() if s.name == SPAN_TRANSLATION_JOB]
        assert span.attributes[TAG_JOB_ID] == "job-9"

    @pytest.mark.asyncio
    async def test_subscriber_receives_events(self, telemetry):
        broadcaster = Broadcaster()
        orchestrator = TranslationOrchestrator(make_generator(), broadcaster, telemetry=telemetry)

        async with broadcaster.subscribe({"TranslationComplete"}) as queue:
            await orchestrator.run_job(ITEMS, "fr", job_id="job-2")
            name, payload = queue.get_nowait()

        assert name == "TranslationComplete"
        assert payload["jobId"] == "job-2"
        assert queue.empty()


class TestIterJob:
    @pytest.mark.asyncio
    async def test_yields_typed_events(self, telemetry):
        orchestrator = TranslationOrchestrator(make_generator(), RecordingPublisher(), telemetry=telemetry)
        events = [e async for e in orchestrator.iter_job(ITEMS[:1], "fr", job_id="j")]
        assert isinstance(events[0], StringTranslated)
        assert isinstance(events[1], TranslationProgress)
        assert isinstance(events[2], TranslationComplete)


class TestRunMany:
    @pytest.mark.asyncio
    async def test_jobs_run_concurrently(self, telemetry):
        both_started = asyncio.Event()
        started = []
        generator = AsyncMock(spec=TextGenerationService)
        generator.translation_model = "llama3.1"
        generator.translation_provider = "ollama"

        async def generate(charter, user_input, model=None, **kwargs):
            started.append(charter.purpose)
            if len(started) == 2:
                both_started.set()
            await asyncio.wait_for(both_started.wait(), timeout=1)
            return "ok"

        generator.generate.side_effect = generate
        orchestrator = TranslationOrchestrator(generator, RecordingPublisher(), telemetry=telemetry)

        results = await orchestrator.run_many(
            [
                TranslationJob(items=ITEMS[:1], target_language="fr", job_id="fr-job"),
                TranslationJob(items=ITEMS[:1], target_language="de", job_id="de-job"),
            ]
        )

        assert [r.job_id for r in results] == ["fr-job", "de-job"]
        assert [r.language_code for r in results] == ["fr", "de"]
        assert all(r.failed_keys == [] for r in results)
