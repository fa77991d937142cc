"""
Stripe webhook event handlers.

Handles the events that change which teams are billed:
- checkout.session.completed: records the team's subscription
- customer.subscription.deleted: removes the team's subscription record
"""

from typing import Any

import stripe

from src.billing.errors import BillingError
from src.billing.reconciler import SubscriptionReconciler
from src.billing.stripe_client import as_dict
from src.config import StripeConfig
from src.models.platform import Subscription
from src.observability.logging import get_logger
from src.storage.database import PlatformDatabase

logger = get_logger(__name__)


class WebhookError(Exception):
    """Base exception for webhook processing errors."""

    pass


class StripeWebhookHandler:
    """
    Handle Stripe webhook events.

    Processes subscription lifecycle events and updates team records accordingly.
    """

    def __init__(
        self,
        config: StripeConfig,
        db: PlatformDatabase,
        reconciler: SubscriptionReconciler,
    ):
        """
        Initialize webhook handler.

        Args:
            config: Stripe configuration (for webhook secret)
            db: Platform database
            reconciler: Reconciler used to sync counts on new subscriptions
        """
        self.config = config
        self.db = db
        self.reconciler = reconciler

    async def handle_event(self, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify and process a Stripe webhook event.

        Args:
            payload: Raw webhook payload
            signature: Stripe signature header (Stripe-Signature)

        Returns:
            dict: Processing result with status and message

        Raises:
            WebhookError: If verification or event processing fails
        """
        if not self.config.webhook_secret:
            raise WebhookError("Webhook secret not configured")

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.config.webhook_secret)
        except ValueError as e:
            raise WebhookError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise WebhookError("Invalid signature") from e

        return await self.dispatch(event)

    async def dispatch(self, event: Any) -> dict[str, Any]:
        """Route a verified event to its handler."""
        event = as_dict(event)
        event_type = event["type"]
        event_data = event["data"]["object"]

        logger.info("Processing Stripe webhook event", event_type=event_type, event_id=event["id"])

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.deleted": self._handle_subscription_deleted,
        }

        handler = handlers.get(event_type)
        if handler is None:
            logger.debug("Unhandled webhook event type", event_type=event_type)
            return {"status": "ignored", "message": f"Unhandled event: {event_type}"}

        try:
            result = await handler(event_data)
        except Exception as e:
            logger.error(
                "Webhook event processing failed",
                event_type=event_type,
                error=str(e),
                exc_info=True,
            )
            raise WebhookError(f"Event processing failed: {e}") from e

        logger.info("Webhook event processed", event_type=event_type, result=result)
        return {"status": "success", "message": result}

    async def _handle_checkout_completed(self, session: dict) -> str:
        team_id = session.get("client_reference_id")
        subscription_id = session.get("subscription")
        customer_id = session.get("customer")

        if not team_id or not subscription_id or not customer_id:
            logger.warning("Checkout session without team or subscription", session_id=session.get("id"))
            return "Incomplete session"

        team = await self.db.get_team(team_id)
        if team is None:
            logger.warning("Checkout completed for unknown team", team_id=team_id)
            return "Unknown team"

        existing = await self.db.get_subscription(team.id)
        if existing is not None and existing.subscription == subscription_id:
            return f"Subscription already recorded for {team.id}"

        await self.db.create_subscription(
            Subscription(team_id=team.id, customer=customer_id, subscription=subscription_id)
        )

        try:
            await self.reconciler.update_team_member_count(team)
            await self.reconciler.update_team_device_count(team)
        except BillingError as e:
            # Record stays; counts converge on the next trigger
            logger.warning(
                "Subscription recorded but initial reconciliation failed",
                team_id=team.id,
                error=str(e),
            )

        return f"Subscription created for {team.id}"

    async def _handle_subscription_deleted(self, subscription: dict) -> str:
        record = await self.db.get_subscription_by_id(subscription["id"])
        if record is None:
            return "Unknown subscription"

        await self.db.delete_subscription(record.team_id)
        logger.warning("Subscription cancelled", team_id=record.team_id, subscription_id=subscription["id"])

        return f"Subscription cancelled for {record.team_id}"
