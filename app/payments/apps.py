"""
Payments app configuration.

Prepaid balance ledger, Stripe payment verification and webhook
intake for appointment payments and balance top-ups.
"""

from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    """Configuration for the payments application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "payments"
    verbose_name = "Payments"
