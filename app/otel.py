from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from app.core.config import get_settings
from app.records.metadata import entity_type_from_path


class _Tracing:
    """Process wide tracer provider state; the provider can be installed only once."""

    provider: TracerProvider | None = None
    exporters_installed = False
    inmemory_exporter: InMemorySpanExporter | None = None


def _provider(service_name: str) -> TracerProvider:
    if _Tracing.provider is None:
        settings = get_settings()
        resource = Resource.create({"service.name": service_name, "service.version": settings.app_version})
        _Tracing.provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_Tracing.provider)
    return _Tracing.provider


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    """Install the tracer provider.

    Spans go to ``OTEL_EXPORTER_OTLP_ENDPOINT`` when it is set and to stdout
    when ``OTEL_CONSOLE_EXPORTER`` is true. Without either the provider still
    records, so record and token spans are available to in-memory exporters.
    """

    if not enable:
        return None

    provider = _provider(service_name)
    if _Tracing.exporters_installed:
        return provider

    settings = get_settings()
    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _Tracing.exporters_installed = True
    return provider


def setup_inmemory_otel(service_name: str = "crm-record-api") -> InMemorySpanExporter:
    if _Tracing.inmemory_exporter is None:
        _Tracing.inmemory_exporter = InMemorySpanExporter()
        _provider(service_name).add_span_processor(SimpleSpanProcessor(_Tracing.inmemory_exporter))
    return _Tracing.inmemory_exporter


def get_fastapi_server_request_hook():
    """Tags the server span with the caller's correlation id and the entity type in the path."""

    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        for name, value in scope.get("headers", []):
            if name == b"x-correlation-id":
                span.set_attribute("correlation_id", value.decode("latin-1"))
                break
        entity_type = entity_type_from_path(str(scope.get("path", "")))
        if entity_type:
            span.set_attribute("entity_type", entity_type)

    return server_request_hook
