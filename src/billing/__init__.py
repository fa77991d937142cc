"""
Billing and subscription management.

Stripe integration for:
- Member seat, device and project seat reconciliation
- Checkout session creation
- Trial housekeeping
- Webhook handling (subscription lifecycle)
"""

from src.billing.errors import (
    BillingError,
    ConfigurationError,
    NotFoundError,
    ProviderError,
)
from src.billing.reconciler import SubscriptionReconciler
from src.billing.service import BillingService
from src.billing.stripe_client import SubscriptionClient
from src.billing.trial_task import TrialHousekeeper
from src.billing.webhooks import StripeWebhookHandler

__all__ = [
    "BillingError",
    "BillingService",
    "ConfigurationError",
    "NotFoundError",
    "ProviderError",
    "StripeWebhookHandler",
    "SubscriptionClient",
    "SubscriptionReconciler",
    "TrialHousekeeper",
]
