"""
Platform billing - subscription reconciliation for a multi-tenant platform.

Keeps a team's Stripe subscription line items (member seats, billable
devices, billed projects) converged on the platform's own resource counts,
and runs the trial housekeeper that resolves expired team trials.

Example:
    >>> from src import get_settings
    >>> settings = get_settings()
    >>> print(settings.stripe.is_configured)
"""

from src.config import get_settings

__all__ = ["get_settings"]
