"""
Observability infrastructure for production monitoring.

Components:
- logging.py: Structured JSON logging with request context
- logging_middleware.py: Per-request logging for the FastAPI app
- metrics.py: Prometheus metrics for provider calls and reconciliation
"""

from src.observability.logging import (
    OperationContext,
    RequestContext,
    configure_logging,
    get_logger,
)
from src.observability.metrics import (
    track_billing_warning,
    track_reconciliation,
    track_stripe_call,
    track_trial_team,
)

__all__ = [
    "OperationContext",
    "RequestContext",
    "configure_logging",
    "get_logger",
    "track_billing_warning",
    "track_reconciliation",
    "track_stripe_call",
    "track_trial_team",
]
