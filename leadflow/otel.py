from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from leadflow.context import get_correlation_id
from leadflow.core.config import Settings, get_settings

SERVICE_NAME = "leadflow"

_provider: TracerProvider | None = None
_exporters_installed = False


def tracer_provider(settings: Settings | None = None) -> TracerProvider:
    """Return the process-wide provider, registering it globally on first use."""

    global _provider

    if _provider is None:
        settings = settings or get_settings()
        _provider = TracerProvider(
            resource=Resource.create(
                {
                    "service.name": SERVICE_NAME,
                    "service.version": settings.app_version,
                    "deployment.environment": settings.app_env,
                }
            )
        )
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings | None = None) -> TracerProvider | None:
    global _exporters_installed

    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    provider = tracer_provider(settings)
    if _exporters_installed:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    _exporters_installed = True
    return provider


def setup_inmemory_otel() -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    tracer_provider().add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def tag_correlation(span: trace.Span, correlation_id: str | None = None) -> None:
    value = correlation_id or get_correlation_id()
    if value and span.is_recording():
        span.set_attribute("correlation_id", value)


def get_fastapi_server_request_hook():
    # runs before the correlation middleware, so read the raw header
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None:
            return
        for name, value in scope.get("headers", []):
            if name == b"x-correlation-id":
                tag_correlation(span, value.decode("latin-1"))
                return

    return server_request_hook
