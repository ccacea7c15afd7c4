from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from gridstream.config import settings

tracer = trace.get_tracer("gridstream")
_tracing_initialized = False


def setup_tracing(app) -> bool:
    global _tracing_initialized
    if _tracing_initialized or not settings.tracing_enabled:
        return _tracing_initialized

    resource = Resource.create({SERVICE_NAME: settings.tracing_service_name})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    _tracing_initialized = True
    return True


@contextmanager
def session_span(name: str, **attributes) -> Iterator[trace.Span]:
    """Span around one session step; no-op spans until tracing is enabled."""
    clean = {key: value for key, value in attributes.items() if value is not None}
    with tracer.start_as_current_span(f"gridstream.{name}", attributes=clean) as span:
        yield span
