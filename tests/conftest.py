import pytest
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from forumai.config import Settings
from forumai.telemetry import Telemetry


@pytest.fixture(autouse=True)
def _clean_settings_env(monkeypatch):
    """Remove all env vars that Settings reads, ensuring test isolation from .env and shell."""
    for field_name in Settings.model_fields:
        monkeypatch.delenv(field_name.upper(), raising=False)


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def metric_reader():
    return InMemoryMetricReader()


@pytest.fixture
def telemetry(span_exporter, metric_reader):
    tracer_provider = TracerProvider()
    tracer_provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    meter_provider = MeterProvider(metric_readers=[metric_reader])
    return Telemetry(tracer_provider=tracer_provider, meter_provider=meter_provider)


@pytest.fixture
def metric_points(metric_reader):
    """Return the data points recorded so far for one metric name."""

    def collect(name):
        data = metric_reader.get_metrics_data()
        if data is None:
            return []
        points = []
        for resource_metrics in data.resource_metrics:
            for scope_metrics in resource_metrics.scope_metrics:
                for metric in scope_metrics.metrics:
                    if metric.name == name:
                        points.extend(metric.data.data_points)
        return points

    return collect
