"""OpenTelemetry setup helpers for the FastAPI app and gateway calls."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from bdpay.common.config import settings


def setup_tracing(service_name: str) -> None:
    """Register a tracer provider with OTLP HTTP exporter unless tracing is off."""

    if not settings.tracing_enabled:
        return
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation for request spans."""

    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)


@contextmanager
def gateway_span(operation: str, bd_trace_id: str, order_number: str | None):
    """Client span around one outbound BillDesk call, tagged with its BD-Traceid."""

    tracer = trace.get_tracer("bdpay.billdesk")
    with tracer.start_as_current_span(f"billdesk.{operation}", kind=trace.SpanKind.CLIENT) as span:
        span.set_attribute("billdesk.trace_id", bd_trace_id)
        if order_number:
            span.set_attribute("billdesk.order_number", order_number)
        yield span
