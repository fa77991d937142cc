"""
Resilience patterns for external dependencies.

Circuit breakers prevent cascade failures when Stripe is unavailable.
"""

from src.resilience.circuit_breakers import (
    get_stripe_breaker,
    reset_all_breakers,
    with_retry,
)

__all__ = [
    "get_stripe_breaker",
    "reset_all_breakers",
    "with_retry",
]
