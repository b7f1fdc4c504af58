"""
Payment adapters for external services.

All external payment API calls go through these adapters so they share
error handling, timeouts and observability.

Usage:
    from payments.adapters import StripeAdapter

    intent = StripeAdapter.retrieve_payment_intent("pi_123")
"""

from payments.adapters.stripe_adapter import StripeAdapter

__all__ = [
    "StripeAdapter",
]
