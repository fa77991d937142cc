"""
Stripe boundary for subscription reconciliation.

Every call:
- runs in a worker thread (the Stripe SDK is blocking)
- is bounded by STRIPE_REQUEST_TIMEOUT_SECONDS
- passes through the Stripe circuit breaker
- surfaces any failure as ProviderError with the cause chained

Reads are retried with backoff on connection errors; writes are not, the
next reconciliation pass recomputes and re-issues them.
"""

import asyncio
import time
from typing import Any

import stripe
from pybreaker import CircuitBreakerError

from src.billing.errors import ProviderError
from src.config import StripeConfig
from src.models.billing import LineItem, RemoteSubscription
from src.observability.logging import get_logger
from src.observability.metrics import track_stripe_call
from src.resilience.circuit_breakers import get_stripe_breaker, with_retry

logger = get_logger(__name__)

# Invoice quantity changes immediately instead of at the next renewal
PRORATION_IMMEDIATE = "always_invoice"


def as_dict(obj: Any) -> Any:
    """
    Plain-dict copy of a Stripe SDK object.

    StripeObject is not a dict on current SDK releases, so everything read
    from Stripe is converted once here and handled as plain data afterwards.
    """
    if isinstance(obj, stripe.StripeObject):
        obj = obj.to_dict()
    if isinstance(obj, dict):
        return {key: as_dict(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [as_dict(value) for value in obj]
    return obj


def _product_id(item: dict[str, Any]) -> str | None:
    """Extract the product id from a subscription item (price or legacy plan)."""
    for key in ("price", "plan"):
        holder = item.get(key)
        if not holder:
            continue
        product = holder.get("product")
        if isinstance(product, dict):
            product = product.get("id")
        if product:
            return product
    return None


@with_retry(max_attempts=3, exceptions=(stripe.APIConnectionError,))
def _retrieve_subscription(subscription_id: str) -> Any:
    return stripe.Subscription.retrieve(subscription_id)


class SubscriptionClient:
    """
    Thin async wrapper over the Stripe SDK.

    Only the operations the billing engine needs: read subscription items,
    update an item's quantity, append an item, write subscription metadata,
    create checkout sessions.
    """

    def __init__(self, config: StripeConfig):
        """
        Initialize Stripe client.

        Args:
            config: Stripe configuration
        """
        self.config = config
        self.breaker = get_stripe_breaker()

        if config.api_key:
            stripe.api_key = config.api_key
            logger.info("Stripe client initialized")
        else:
            logger.warning("Stripe API key not configured - billing disabled")

    @property
    def is_enabled(self) -> bool:
        return self.config.is_configured

    async def _call(self, operation: str, func, *args, **kwargs) -> Any:
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.breaker.call, func, *args, **kwargs),
                timeout=self.config.request_timeout_seconds,
            )
        except TimeoutError as e:
            track_stripe_call(operation, time.perf_counter() - start, success=False)
            logger.error(
                "Stripe call timed out",
                operation=operation,
                timeout_seconds=self.config.request_timeout_seconds,
            )
            raise ProviderError(
                f"Stripe {operation} timed out after {self.config.request_timeout_seconds}s"
            ) from e
        except CircuitBreakerError as e:
            track_stripe_call(operation, time.perf_counter() - start, success=False)
            logger.warning("Stripe circuit breaker OPEN - failing fast", operation=operation)
            raise ProviderError(
                f"Stripe unavailable (circuit breaker open). "
                f"Retry after {self.breaker.reset_timeout} seconds."
            ) from e
        except stripe.StripeError as e:
            track_stripe_call(operation, time.perf_counter() - start, success=False)
            logger.error("Stripe call failed", operation=operation, error=str(e))
            raise ProviderError(f"Stripe {operation} failed: {e}") from e

        track_stripe_call(operation, time.perf_counter() - start, success=True)
        return result

    async def retrieve_subscription(self, subscription_id: str) -> RemoteSubscription:
        """
        Fetch a subscription's items and metadata.

        Raises:
            ProviderError: If Stripe cannot be reached
        """
        subscription = as_dict(
            await self._call("subscription.retrieve", _retrieve_subscription, subscription_id)
        )

        items = [
            LineItem(id=item["id"], quantity=item.get("quantity") or 0, product=_product_id(item))
            for item in subscription["items"]["data"]
        ]
        metadata = dict(subscription.get("metadata") or {})
        return RemoteSubscription(id=subscription_id, items=items, metadata=metadata)

    async def update_subscription_item(
        self,
        item_id: str,
        quantity: int,
        proration_behavior: str = PRORATION_IMMEDIATE,
    ) -> None:
        """Set an existing line item's quantity."""
        await self._call(
            "subscription_item.update",
            stripe.SubscriptionItem.modify,
            item_id,
            quantity=quantity,
            proration_behavior=proration_behavior,
        )
        logger.info(
            "Updated subscription item quantity",
            item_id=item_id,
            quantity=quantity,
            proration_behavior=proration_behavior,
        )

    async def append_subscription_item(
        self,
        subscription_id: str,
        product: str,
        price: str,
        quantity: int,
        metadata: dict[str, str] | None = None,
    ) -> None:
        """Add a new line item to the subscription (whole-subscription update)."""
        params: dict[str, Any] = {"items": [{"price": price, "quantity": quantity}]}
        if metadata:
            params["metadata"] = metadata
        await self._call("subscription.update", stripe.Subscription.modify, subscription_id, **params)
        logger.info(
            "Added subscription item",
            subscription_id=subscription_id,
            product=product,
            price=price,
            quantity=quantity,
        )

    async def update_subscription_metadata(
        self, subscription_id: str, metadata: dict[str, str]
    ) -> None:
        """Merge metadata into the subscription. Empty-string values delete keys."""
        await self._call(
            "subscription.update", stripe.Subscription.modify, subscription_id, metadata=metadata
        )
        logger.info(
            "Updated subscription metadata",
            subscription_id=subscription_id,
            keys=sorted(metadata),
        )

    async def create_checkout_session(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Create a Stripe Checkout session from a prepared payload."""
        session = await self._call(
            "checkout.session.create", stripe.checkout.Session.create, **payload
        )
        return as_dict(session)


# Global Stripe client instance
_subscription_client: SubscriptionClient | None = None


def get_subscription_client(config: StripeConfig) -> SubscriptionClient:
    """
    Get global Stripe client instance (singleton).

    Args:
        config: Stripe configuration

    Returns:
        SubscriptionClient: Stripe client instance
    """
    global _subscription_client
    if _subscription_client is None:
        _subscription_client = SubscriptionClient(config)
    return _subscription_client
