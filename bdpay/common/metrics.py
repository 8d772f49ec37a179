"""Prometheus metric definitions for the payment service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


gateway_requests_total = Counter(
    "gateway_requests_total",
    "Outbound gateway calls by operation and outcome",
    ["service", "operation", "outcome"],
)
gateway_latency_seconds = Histogram(
    "gateway_latency_seconds",
    "Outbound gateway call latency seconds",
    ["service", "operation"],
)
gateway_callbacks_total = Counter(
    "gateway_callbacks_total",
    "Inbound gateway callbacks by channel and resulting status",
    ["service", "channel", "status"],
)
rate_limited_total = Counter("rate_limited_total", "Payment initiations rejected by the rate limiter", ["service"])
status_polls_total = Counter("status_polls_total", "Stale transactions polled at the gateway", ["service", "outcome"])
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
