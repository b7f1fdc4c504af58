"""
Payments app for appointment payments.

This app handles:
- The prepaid patient balance (payments.ledger)
- Verifying external Stripe payments (payments.verification)
- Stripe webhook intake and processing (payments.webhooks, payments.tasks)
- Distributed and optimistic locking helpers (payments.locks)

Related apps:
    - authentication: User owning a balance
    - appointments: Bookings paid from the balance or through Stripe

Usage:
    from payments.ledger import ledger
    from payments.verification import PaymentVerificationService

    ledger.credit(user.pk, Decimal("50.00"), reason="Refund", dedupe_key=key)
    result = PaymentVerificationService.verify(checkout_session_id="cs_123")
"""
