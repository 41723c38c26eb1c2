"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
webhook_events_total = Counter(
    "webhook_events_total",
    "Stripe webhook events received",
    ["event_type", "outcome"],  # outcome: processed / duplicate / invalid / error / ignored
)

purchases_recorded_total = Counter(
    "purchases_recorded_total",
    "Purchases created from checkout events",
)

assignments_total = Counter(
    "assignments_total",
    "Script assignment transitions",
    ["status"],
)

ledger_operations_total = Counter(
    "ledger_operations_total",
    "Seller balance ledger entries",
    ["kind"],  # sale, settlement, payout, refund
)

settled_amount_total = Counter(
    "settled_amount_total",
    "Seller earnings moved from pending to available",
)

payouts_total = Counter(
    "payouts_total",
    "Payout attempts by outcome",
    ["method", "status"],
)

sweep_runs_total = Counter(
    "sweep_runs_total",
    "Periodic sweep runs",
    ["task", "status"],
)

tradingview_requests_total = Counter(
    "tradingview_requests_total",
    "Total TradingView requests",
    ["method", "status"],
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
tradingview_request_duration_seconds = Histogram(
    "tradingview_request_duration_seconds",
    "TradingView request duration",
    ["method"],
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
