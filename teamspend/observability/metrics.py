# ==== PROMETHEUS METRICS ==== #

"""
Prometheus metrics for monitoring TeamSpend.

Covers the budget ledger (deltas, conflicts, drift, alerts), the advisory
adapter, notification delivery and HTTP request latency.
"""

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    REGISTRY
)


# ==== REQUEST METRICS ==== #

http_request_latency_seconds = Histogram(
    "teamspend_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status"]
)


# ==== BUDGET LEDGER METRICS ==== #

ledger_deltas_total = Counter(
    "teamspend_ledger_deltas_total",
    "Ledger deltas applied to team spending",
    ["direction"]  # direction: increase, decrease, zero
)

ledger_conflicts_total = Counter(
    "teamspend_ledger_conflicts_total",
    "Compare-and-swap conflicts on the team aggregate",
    ["operation"]
)

ledger_conflicts_exhausted_total = Counter(
    "teamspend_ledger_conflicts_exhausted_total",
    "Ledger operations that gave up after exhausting conflict retries",
    ["operation"]
)

ledger_drift_corrections_total = Counter(
    "teamspend_ledger_drift_corrections_total",
    "Recomputations that found the cached spending out of date"
)

budget_alerts_total = Counter(
    "teamspend_budget_alerts_total",
    "Budget threshold alerts by outcome",
    ["alert_type", "outcome"]  # outcome: sent, released, release_failed
)

team_utilization_percent = Gauge(
    "teamspend_team_utilization_percent",
    "Last computed budget utilization per team",
    ["team_id"]
)


# ==== EXPENSE WORKFLOW METRICS ==== #

expense_transitions_total = Counter(
    "teamspend_expense_transitions_total",
    "Expense status transitions applied",
    ["from_status", "to_status"]
)

bulk_decisions_total = Counter(
    "teamspend_bulk_decisions_total",
    "Bulk decision items by outcome",
    ["action", "outcome"]
)


# ==== ADVISORY METRICS ==== #

advisory_requests_total = Counter(
    "teamspend_advisory_requests_total",
    "Advisory provider requests made",
    ["operation"]
)

advisory_failures_total = Counter(
    "teamspend_advisory_failures_total",
    "Advisory calls that degraded to no suggestion",
    ["operation", "reason"]
)

advisory_latency_seconds = Histogram(
    "teamspend_advisory_latency_seconds",
    "Advisory provider call latency in seconds",
    ["operation"]
)


# ==== NOTIFICATION AND CACHE METRICS ==== #

notifications_total = Counter(
    "teamspend_notifications_total",
    "Notification dispatch attempts by kind and outcome",
    ["kind", "outcome"]
)

cache_hits_total = Counter(
    "teamspend_cache_hits_total",
    "Total cache hits",
    ["cache_type"]
)

cache_misses_total = Counter(
    "teamspend_cache_misses_total",
    "Total cache misses",
    ["cache_type"]
)

retry_attempts_total = Counter(
    "teamspend_retry_attempts_total",
    "Total retry attempts",
    ["service", "operation", "attempt"]
)

retry_failures_total = Counter(
    "teamspend_retry_failures_total",
    "Total retry failures after all attempts",
    ["service", "operation", "error_type"]
)

db_connections_active = Gauge(
    "teamspend_db_connections_active",
    "Number of active database sessions"
)

app_info = Gauge(
    "teamspend_app_info",
    "Application information",
    ["version", "environment", "service_name"]
)


def init_metrics(app) -> None:
    """Initialize metrics collection.

    Args:
        app: FastAPI application instance
    """
    from teamspend.settings import settings
    app_info.labels(
        version=app.version,
        environment=settings.APP_ENV,
        service_name=settings.SERVICE_NAME
    ).set(1)


# Metrics router for Prometheus scraping
metrics_router = APIRouter()


@metrics_router.get("/metrics")
def get_metrics() -> PlainTextResponse:
    """Expose Prometheus metrics for scraping.

    Returns:
        Prometheus metrics in text format
    """
    return PlainTextResponse(
        generate_latest(REGISTRY).decode("utf-8"),
        media_type="text/plain"
    )
