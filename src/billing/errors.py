"""
Billing error taxonomy.

- ConfigurationError: no product/price mapping for a resource class in use.
  Fatal to the single call, surfaced, never retried automatically.
- ProviderError: Stripe call failed or timed out. Transient; the whole
  reconciliation is retried on the next trigger, never partially applied.
- NotFoundError: team or subscription missing. Data-integrity problem upstream.
"""


class BillingError(Exception):
    """Base exception for billing errors."""

    pass


class ConfigurationError(BillingError):
    """Missing product/price mapping."""

    pass


class ProviderError(BillingError):
    """External billing provider call failed."""

    pass


class NotFoundError(BillingError):
    """Team or subscription record missing."""

    pass
