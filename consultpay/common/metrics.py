"""Prometheus metric definitions for the payments service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


payment_initiations_total = Counter(
    "payment_initiations_total",
    "Payment initiations by outcome",
    ["service", "outcome"],
)
payment_signals_total = Counter(
    "payment_signals_total",
    "Gateway outcome signals received, by channel and canonical outcome",
    ["service", "channel", "outcome"],
)
payment_transitions_total = Counter(
    "payment_transitions_total",
    "Applied payment status transitions",
    ["service", "channel", "from_status", "to_status"],
)
unknown_order_total = Counter(
    "unknown_order_total",
    "Signals referencing an order that does not exist",
    ["service", "channel"],
)
webhook_auth_failures_total = Counter(
    "webhook_auth_failures_total",
    "Rejected webhook deliveries",
    ["service"],
)
credit_claims_total = Counter(
    "credit_claims_total",
    "Credit claim attempts by result",
    ["service", "result"],
)
gateway_request_seconds = Histogram(
    "gateway_request_seconds",
    "Outbound payment gateway call latency",
    ["service", "operation"],
)
gateway_errors_total = Counter(
    "gateway_errors_total",
    "Outbound payment gateway failures",
    ["service", "operation", "error_type"],
)
sweep_checked_total = Counter(
    "sweep_checked_total",
    "Pending attempts checked by the reconciliation sweep",
    ["service", "result"],
)
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
