"""
Prometheus metrics for billing observability.

Metrics tracked:
- Stripe API call latency (histogram) and outcome (counter) per operation
- Reconciliation outcomes per resource class (updated / appended / noop)
- Trial housekeeping outcomes per team (suspended / billed / failed)
- Deferred billing warnings raised on request paths

Integration:
- Exposed via /metrics endpoint (Prometheus scraping)
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)

# ============================================================================
# PROVIDER METRICS
# ============================================================================

stripe_call_duration_seconds = Histogram(
    "platform_billing_stripe_call_duration_seconds",
    "Stripe API call latency in seconds",
    labelnames=["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

stripe_calls_total = Counter(
    "platform_billing_stripe_calls_total",
    "Total Stripe API calls",
    labelnames=["operation", "success"],
)

# ============================================================================
# RECONCILIATION METRICS
# ============================================================================

reconciliations_total = Counter(
    "platform_billing_reconciliations_total",
    "Subscription reconciliation passes by outcome",
    labelnames=["resource", "outcome"],  # outcome: updated|appended|noop
)

trial_teams_processed_total = Counter(
    "platform_billing_trial_teams_processed_total",
    "Teams processed by the trial housekeeper",
    labelnames=["outcome"],  # outcome: suspended|billed|failed
)

billing_warnings_total = Counter(
    "platform_billing_deferred_warnings_total",
    "Request-path operations that committed with billing left to converge later",
    labelnames=["operation"],
)


def track_stripe_call(operation: str, duration_seconds: float, success: bool) -> None:
    stripe_call_duration_seconds.labels(operation=operation).observe(duration_seconds)
    stripe_calls_total.labels(operation=operation, success=str(success).lower()).inc()


def track_reconciliation(resource: str, outcome: str) -> None:
    reconciliations_total.labels(resource=resource, outcome=outcome).inc()


def track_trial_team(outcome: str) -> None:
    trial_teams_processed_total.labels(outcome=outcome).inc()


def track_billing_warning(operation: str) -> None:
    billing_warnings_total.labels(operation=operation).inc()


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics output.

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
