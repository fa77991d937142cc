"""
Billing facade used by route handlers, tasks and the platform service.

Wires the Stripe client, plan resolver, reconciler, checkout builder, trial
housekeeper and webhook handler around one database.
"""

from typing import Any

from src.billing.checkout import CheckoutService
from src.billing.plans import PlanResolver
from src.billing.reconciler import SubscriptionReconciler
from src.billing.stripe_client import SubscriptionClient, get_subscription_client
from src.billing.trial_task import HousekeepingResult, TrialHousekeeper
from src.billing.webhooks import StripeWebhookHandler
from src.config import Settings
from src.models.platform import Team, User
from src.storage.database import PlatformDatabase


class BillingService:
    """Entry points of the subscription engine."""

    def __init__(
        self,
        settings: Settings,
        db: PlatformDatabase,
        client: SubscriptionClient | None = None,
    ):
        self.settings = settings
        self.db = db
        self.client = client or get_subscription_client(settings.stripe)
        self.plans = PlanResolver(settings.stripe)
        self.reconciler = SubscriptionReconciler(db, self.client, self.plans)
        self.checkout = CheckoutService(
            db, self.client, self.plans, settings.stripe, settings.service.base_url
        )
        self.housekeeper = TrialHousekeeper(db, self.reconciler)
        self.webhooks = StripeWebhookHandler(settings.stripe, db, self.reconciler)

    async def update_team_member_count(self, team: Team) -> None:
        await self.reconciler.update_team_member_count(team)

    async def update_team_device_count(self, team: Team) -> None:
        await self.reconciler.update_team_device_count(team)

    async def sync_team(self, team: Team) -> None:
        """Reconcile every resource class of a team."""
        await self.reconciler.update_team_member_count(team)
        await self.reconciler.update_team_device_count(team)
        await self.reconciler.update_team_project_count(team)

    async def run_trial_housekeeping(self) -> HousekeepingResult:
        return await self.housekeeper.run()

    async def create_subscription_session(
        self,
        team: Team,
        promo_code: str | None = None,
        user: User | None = None,
    ) -> dict[str, Any]:
        return await self.checkout.create_subscription_session(team, promo_code, user)
