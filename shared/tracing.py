"""
OpenTelemetry tracing for the Secrets Portal.

Components only use the API (`trace_operation`, `add_span_attributes`); with no
provider installed those are no-ops. `configure_tracing` installs the SDK
provider and OTLP exporter once per process.
"""

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode

TRACER_NAME = "secrets_portal"


def parse_otlp_headers(raw: Optional[str]) -> Dict[str, str]:
    """Parse the ``key=value,key=value`` form of OTEL_EXPORTER_OTLP_HEADERS."""
    headers: Dict[str, str] = {}
    for segment in (raw or "").split(","):
        key, sep, value = segment.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _exporter(endpoint: Optional[str]) -> OTLPSpanExporter:
    endpoint = endpoint or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT") or "http://localhost:4317"
    headers = parse_otlp_headers(os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(
        endpoint=endpoint,
        headers=headers or None,
        insecure=endpoint.startswith("http://"),
    )


def configure_tracing(service_name: str, otel_exporter: Optional[str] = None, enable_console: bool = False) -> None:
    """Install the SDK tracer provider for this process."""
    resource = Resource.create({
        "service.name": service_name,
        "service.namespace": "secrets-portal",
        "service.instance.id": os.getenv("HOSTNAME", "unknown"),
        "deployment.environment": os.getenv("PORTAL_ENV", "local"),
    })

    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(_exporter(otel_exporter)))
    if enable_console:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)


@contextmanager
def trace_operation(operation_name: str, **attributes: Any) -> Iterator[Span]:
    """Run the body inside a span; failures mark the span as errored and re-raise."""
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(operation_name, record_exception=False) as span:
        _set_attributes(span, attributes)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise


def add_span_attributes(**attributes: Any) -> None:
    span = trace.get_current_span()
    if span.is_recording():
        _set_attributes(span, attributes)


def _set_attributes(span: Span, attributes: Dict[str, Any]) -> None:
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)
