"""
URL configuration for the payments app.

Routes:
    - GET  /balance/          - Current user's balance and history
    - POST /webhooks/stripe/  - Stripe webhook endpoint

All routes are prefixed with /api/v1/payments/ when included in the main URLconf.
"""

from django.urls import path

from payments.views import BalanceView
from payments.webhooks.views import stripe_webhook

app_name = "payments"

urlpatterns = [
    path("balance/", BalanceView.as_view(), name="balance"),
    # Webhook endpoints
    path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
]
