"""
Payment domain models.

- Balance / BalanceEntry: the prepaid patient ledger (payments.ledger)
- WebhookEvent: Stripe webhook event tracking for idempotent processing
"""

from payments.ledger.models import Balance, BalanceEntry, EntryAction
from payments.models.webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    "Balance",
    "BalanceEntry",
    "EntryAction",
    "WebhookEvent",
    "WebhookEventStatus",
]
