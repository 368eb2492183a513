"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
payment_webhooks_total = Counter(
    "payment_webhooks_total",
    "Inbound payment notifications by final outcome",
    ["provider", "outcome"],
)

reconciliation_anomalies_total = Counter(
    "reconciliation_anomalies_total",
    "Notifications acknowledged but needing operator review",
    ["kind"],  # order_not_found, no_credit, credit_failed, event_log_error
)

credits_granted_total = Counter(
    "credits_granted_total",
    "Credits added to customer balances",
    ["path"],  # atomic, cas
)

paystack_requests_total = Counter(
    "paystack_requests_total",
    "Total Paystack API requests",
    ["endpoint", "status"],
)

stripe_requests_total = Counter(
    "stripe_requests_total",
    "Total Stripe API requests",
    ["endpoint", "status"],
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
paystack_request_duration_seconds = Histogram(
    "paystack_request_duration_seconds",
    "Paystack API request duration",
    ["endpoint"],
    buckets=[0.1, 0.5, 1, 2, 5, 10],
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
