from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Status, StatusCode

from agencydesk.context import get_correlation_id
from agencydesk.core.config import Settings, get_settings
from agencydesk.middleware.correlation_id import supplied_correlation_id


_configured = False
_provider: TracerProvider | None = None


def _get_or_create_provider(service_name: str, service_version: str) -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    resource = Resource.create({"service.name": service_name, "service.version": service_version})
    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)
    _provider = provider
    return provider


def setup_otel(settings: Settings) -> TracerProvider | None:
    """Install the tracer provider and exporters named in ``settings``; a no-op when tracing is off."""
    global _configured

    if not settings.otel_enabled:
        return None

    provider = _get_or_create_provider(settings.otel_service_name, settings.app_version)
    if _configured:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
        )
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _configured = True
    return provider


def setup_inmemory_otel() -> InMemorySpanExporter:
    settings = get_settings()
    provider = _get_or_create_provider(settings.otel_service_name, settings.app_version)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


@contextmanager
def domain_span(tracer: trace.Tracer, name: str, **attributes: Any) -> Iterator[trace.Span]:
    """Open a span stamped with the request correlation id.

    Exceptions carrying a ``code`` attribute are recorded on the span as an
    error status with that code before they propagate.
    """
    with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        correlation_id = get_correlation_id()
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as exc:
            code = getattr(exc, "code", exc.__class__.__name__)
            span.set_attribute("error.code", str(code))
            span.set_status(Status(StatusCode.ERROR, str(code)))
            raise


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = {
            name.decode("latin-1").lower(): value.decode("latin-1") for name, value in scope.get("headers", [])
        }
        correlation_id = supplied_correlation_id(headers)
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)

    return server_request_hook
