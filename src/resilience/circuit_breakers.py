"""
Circuit breaker and retry policy for Stripe calls.

Prevents request paths and the trial housekeeper from queueing behind an
unresponsive billing provider.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Failure threshold exceeded, requests fail immediately
- HALF_OPEN: Testing if service recovered, limited requests allowed

Configuration:
- fail_max: consecutive failures before opening (3)
- reset_timeout: seconds the circuit stays open before half-open (30)
- client-side errors (invalid request) never trip the breaker
"""

import logging

import stripe
from pybreaker import CircuitBreaker, CircuitBreakerListener
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


class _LoggingListener(CircuitBreakerListener):
    """Log every breaker state transition."""

    def state_change(self, cb, old_state, new_state) -> None:
        new_name = new_state.name if new_state else "unknown"
        old_name = old_state.name if old_state else "unknown"
        if new_name == "open":
            logger.error(
                f"Circuit breaker OPENED: {cb.name}",
                extra={"breaker_name": cb.name, "fail_count": cb.fail_counter, "state": "OPEN"},
            )
        elif new_name == "half-open":
            logger.warning(
                f"Circuit breaker HALF-OPEN: {cb.name} (testing recovery)",
                extra={"breaker_name": cb.name, "state": "HALF_OPEN"},
            )
        else:
            logger.info(
                f"Circuit breaker {new_name.upper()}: {cb.name} (was {old_name})",
                extra={"breaker_name": cb.name, "state": new_name.upper()},
            )


# Opens after 3 consecutive failures, stays open for 30 seconds
stripe_breaker = CircuitBreaker(
    fail_max=3,
    reset_timeout=30,
    exclude=[stripe.InvalidRequestError, stripe.CardError],
    listeners=[_LoggingListener()],
    name="Stripe",
)


def get_stripe_breaker() -> CircuitBreaker:
    """
    Get Stripe circuit breaker instance.

    Usage:
        breaker = get_stripe_breaker()
        breaker.call(stripe.Subscription.retrieve, subscription_id)
    """
    return stripe_breaker


def reset_all_breakers() -> None:
    """
    Reset all circuit breakers to CLOSED state.

    Use for testing or manual recovery.
    """
    stripe_breaker.close()
    logger.info("All circuit breakers reset to CLOSED state")


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 5,
    exceptions: tuple[type[Exception], ...] = (Exception,),
):
    """
    Retry decorator with exponential backoff.

    Only for idempotent reads; writes are retried by the next reconciliation
    pass instead.

    Usage:
        @with_retry(max_attempts=3, exceptions=(stripe.APIConnectionError,))
        async def retrieve():
            ...
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        reraise=True,
    )
