"""Tracing and metrics around outbound AI calls.

A single ``Telemetry`` instance is built at startup and handed to every
component that emits spans or records measurements.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

import structlog
from opentelemetry import metrics, trace
from opentelemetry.metrics import Counter, Histogram, MeterProvider
from opentelemetry.sdk.metrics import MeterProvider as SdkMeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider as SdkTracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.trace import Span, SpanKind, Status, StatusCode, TracerProvider

from forumai.config import Settings

logger = structlog.get_logger(__name__)

INSTRUMENTATION_NAME = "forumai.services"

# --- Span names ---

SPAN_GENERATE = "TextGeneration.Generate"
SPAN_TRANSLATE = "TextGeneration.Translate"
SPAN_TRANSLATE_STREAM = "TextGeneration.TranslateStream"
SPAN_MODERATE = "Moderation.EvaluatePost"
SPAN_SCORE = "CharterScoring.Score"
SPAN_TRANSLATION_JOB = "Translation.Job"

# --- Tag keys ---

TAG_PROVIDER = "ai.provider"
TAG_MODEL = "ai.model"
TAG_OPERATION = "ai.operation"
TAG_INPUT_LENGTH = "ai.input.length"
TAG_OUTPUT_LENGTH = "ai.output.length"
TAG_TARGET_LANGUAGE = "ai.target_language"
TAG_STREAMING = "ai.streaming"
TAG_OUTCOME = "ai.outcome"
TAG_DECISION = "ai.moderation.decision"
TAG_SCORE = "ai.charter.score"
TAG_JOB_ID = "ai.job.id"
TAG_ERROR = "error"
TAG_EXCEPTION_TYPE = "exception.type"
TAG_EXCEPTION_MESSAGE = "exception.message"
TAG_DURATION_MS = "duration.ms"

# --- Metric names ---

METRIC_TEXT_REQUESTS = "ai.text.requests"
METRIC_TEXT_REQUESTS_DURATION = "ai.text.requests.duration.ms"
METRIC_MODERATION_DECISIONS = "ai.moderation.decisions"
METRIC_TRANSLATION_ITEMS = "ai.translation.items"


def mark_error(span: Span, exc: BaseException) -> None:
    span.set_attribute(TAG_ERROR, True)
    span.set_attribute(TAG_EXCEPTION_TYPE, f"{type(exc).__module__}.{type(exc).__qualname__}")
    span.set_attribute(TAG_EXCEPTION_MESSAGE, str(exc))
    span.set_status(Status(StatusCode.ERROR, str(exc)))


class Telemetry:
    def __init__(
        self,
        *,
        tracer_provider: TracerProvider | None = None,
        meter_provider: MeterProvider | None = None,
    ) -> None:
        self._tracer = trace.get_tracer(INSTRUMENTATION_NAME, tracer_provider=tracer_provider)
        self._meter = metrics.get_meter(INSTRUMENTATION_NAME, meter_provider=meter_provider)
        self._lock = threading.Lock()
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}

    @contextmanager
    def start_span(
        self,
        name: str,
        kind: SpanKind = SpanKind.INTERNAL,
        configure: Callable[[Span], None] | None = None,
        *,
        attach: bool = True,
    ) -> Iterator[Span]:
        """Open a span that is ended on every exit path.

        ``attach=False`` keeps the span out of the current context, which is
        what async generators need since they may be closed from another task.
        """
        if attach:
            cm = self._tracer.start_as_current_span(
                name, kind=kind, record_exception=False, set_status_on_exception=False
            )
        else:
            cm = _detached(self._tracer.start_span(name, kind=kind))

        with cm as span:
            if configure is not None:
                configure(span)
            try:
                yield span
            except GeneratorExit:
                # consumer stopped early, not a failure
                raise
            except BaseException as exc:
                mark_error(span, exc)
                raise

    def get_counter(self, name: str) -> Counter:
        with self._lock:
            counter = self._counters.get(name)
            if counter is None:
                counter = self._meter.create_counter(name)
                self._counters[name] = counter
            return counter

    def get_histogram(self, name: str) -> Histogram:
        with self._lock:
            histogram = self._histograms.get(name)
            if histogram is None:
                histogram = self._meter.create_histogram(name, unit="ms")
                self._histograms[name] = histogram
            return histogram


@contextmanager
def _detached(span: Span) -> Iterator[Span]:
    try:
        yield span
    finally:
        span.end()


def setup_telemetry(settings: Settings) -> Telemetry:
    if not settings.telemetry_enabled:
        return Telemetry()

    resource = Resource.create({"service.name": settings.service_name})
    tracer_provider = SdkTracerProvider(resource=resource)
    metric_readers = []
    if settings.telemetry_console_export:
        tracer_provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        metric_readers.append(PeriodicExportingMetricReader(ConsoleMetricExporter()))
    meter_provider = SdkMeterProvider(resource=resource, metric_readers=metric_readers)

    trace.set_tracer_provider(tracer_provider)
    metrics.set_meter_provider(meter_provider)
    logger.info(
        "telemetry_enabled",
        service_name=settings.service_name,
        console_export=settings.telemetry_console_export,
    )
    return Telemetry(tracer_provider=tracer_provider, meter_provider=meter_provider)
