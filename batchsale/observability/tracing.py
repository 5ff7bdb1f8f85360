"""
Distributed Tracing with OpenTelemetry.

Spans around issuance and settlement; exported over OTLP when enabled.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from batchsale.config import settings


def setup_tracing() -> None:
    """Configure the global tracer provider with an OTLP exporter."""
    if not settings.tracing_enabled:
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.api_version,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Instrument FastAPI application. Must be called after app creation."""
    if not settings.tracing_enabled:
        return

    FastAPIInstrumentor.instrument_app(app)


class trace_operation:
    """
    Context manager for a traced pipeline operation.

    Without a configured provider the OpenTelemetry API hands out no-op
    spans, so this is safe to use unconditionally.

    Usage:
        with trace_operation("ledger_settle", invoice_id=invoice_id) as span:
            span.set_attribute("outcome", result.outcome.value)
    """

    def __init__(self, operation_name: str, **attributes: Any) -> None:
        self.operation_name = operation_name
        self.attributes = attributes
        self.span: Span | None = None

    def __enter__(self) -> Span:
        """Start span."""
        self.span = trace.get_tracer("batchsale.operations").start_span(self.operation_name)
        for key, value in self.attributes.items():
            if value is None:
                continue
            if isinstance(value, (str, int, float, bool)):
                self.span.set_attribute(key, value)
            else:
                self.span.set_attribute(key, str(value))
        return self.span

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """End span and record any errors."""
        if self.span is None:
            return
        if exc_val is not None:
            self.span.set_status(Status(StatusCode.ERROR, str(exc_val)))
            self.span.record_exception(exc_val)
        self.span.end()
