from __future__ import annotations

import os
from collections.abc import Iterator
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter


_provider: TracerProvider | None = None
_exporters_attached = False


def _get_or_create_provider(service_name: str) -> TracerProvider:
    """The global tracer provider can only be set once per process."""
    global _provider

    if _provider is None:
        _provider = TracerProvider(
            resource=Resource.create(
                {
                    "service.name": service_name,
                    "service.version": os.getenv("APP_VERSION", "0.1.0"),
                }
            )
        )
        trace.set_tracer_provider(_provider)
    return _provider


def _processors_from_env() -> Iterator[SpanProcessor]:
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        yield BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        yield SimpleSpanProcessor(ConsoleSpanExporter())


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    global _exporters_attached

    if not enable:
        return None

    provider = _get_or_create_provider(service_name)
    if not _exporters_attached:
        for processor in _processors_from_env():
            provider.add_span_processor(processor)
        _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = "api") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _get_or_create_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def _server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
    if span is None or not span.is_recording():
        return
    for name, value in scope.get("headers", []):
        if name == b"x-correlation-id":
            span.set_attribute("correlation_id", value.decode("utf-8"))
            return


def get_fastapi_server_request_hook():  # type: ignore[no-untyped-def]
    return _server_request_hook
