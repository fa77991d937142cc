"""
Stripe Checkout session creation for teams setting up billing.
"""

from typing import Any

from src.billing.plans import PlanResolver
from src.billing.stripe_client import SubscriptionClient
from src.config import StripeConfig
from src.models.platform import Team, User
from src.observability.logging import get_logger
from src.storage.database import PlatformDatabase

logger = get_logger(__name__)


async def user_eligible_for_free_trial(db: PlatformDatabase, user: User) -> bool:
    """
    Check whether a user may receive the new-customer credit.

    A user is eligible until a team they own has held a subscription.
    """
    for team_id in await db.list_owned_team_ids(user.id):
        if await db.get_subscription(team_id) is not None:
            return False
    return True


class CheckoutService:
    """Builds and submits Checkout session payloads."""

    def __init__(
        self,
        db: PlatformDatabase,
        client: SubscriptionClient,
        plans: PlanResolver,
        config: StripeConfig,
        base_url: str,
    ):
        self.db = db
        self.client = client
        self.plans = plans
        self.config = config
        self.base_url = base_url.rstrip("/")

    async def build_session_payload(
        self,
        team: Team,
        promo_code: str | None = None,
        user: User | None = None,
    ) -> dict[str, Any]:
        """
        Build the Checkout session payload for a team.

        Args:
            team: Team setting up billing
            promo_code: Stripe promotion code id to pre-apply
            user: Acting user, used for free-trial eligibility

        Raises:
            ConfigurationError: If no member product/price resolves for the team
        """
        product_price = self.plans.member_product_price(team)
        overview_url = f"{self.base_url}/team/{team.slug}/overview"

        metadata: dict[str, Any] = {"team": team.id}
        payload: dict[str, Any] = {
            "mode": "subscription",
            "client_reference_id": team.id,
            "success_url": f"{overview_url}?billing_session={{CHECKOUT_SESSION_ID}}",
            "cancel_url": overview_url,
            "subscription_data": {"metadata": metadata},
            "tax_id_collection": {"enabled": True},
            "line_items": [{"price": product_price.price, "quantity": 1}],
        }

        if promo_code:
            payload["discounts"] = [{"promotion_code": promo_code}]
        else:
            payload["allow_promotion_codes"] = True

        existing = await self.db.get_subscription(team.id)
        if existing is not None:
            payload["customer"] = existing.customer
            payload["customer_update"] = {"name": "auto"}

        if self.config.new_customer_free_credit and user is not None:
            metadata["free_trial"] = await user_eligible_for_free_trial(self.db, user)

        return payload

    async def create_subscription_session(
        self,
        team: Team,
        promo_code: str | None = None,
        user: User | None = None,
    ) -> dict[str, Any]:
        """Create a Checkout session and return Stripe's session descriptor."""
        payload = await self.build_session_payload(team, promo_code, user)
        session = await self.client.create_checkout_session(payload)
        logger.info(
            "Created checkout session",
            team_id=team.id,
            existing_customer="customer" in payload,
            free_trial=payload["subscription_data"]["metadata"].get("free_trial"),
        )
        return session
