"""
Appointment lifecycle for therapy session bookings.

Owns the appointment status graph, the per-session completion state and
the reconciliation of cancellations and completions with the wallet
ledger and external payment verification.
"""
