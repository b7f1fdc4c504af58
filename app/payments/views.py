"""
DRF views for the payments app.

Endpoints:
    GET /api/v1/payments/balance/ - Current user's balance and recent history

The Stripe webhook view lives in payments.webhooks.views.
"""

from __future__ import annotations

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from payments.ledger import ledger
from payments.serializers import BalanceSerializer

HISTORY_DEFAULT_LIMIT = 50
HISTORY_MAX_LIMIT = 200


class BalanceView(APIView):
    """
    Get the current user's prepaid balance.

    GET /api/v1/payments/balance/?limit=20

    Returns:
        {"amount": "80.00", "currency": "usd", "history": [...]}
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_balance",
        summary="Get balance",
        parameters=[
            OpenApiParameter("limit", OpenApiTypes.INT, description="History entries to return (max 200)"),
        ],
        responses={200: BalanceSerializer},
        tags=["Payments"],
    )
    def get(self, request):
        try:
            limit = int(request.query_params.get("limit", HISTORY_DEFAULT_LIMIT))
        except ValueError:
            limit = HISTORY_DEFAULT_LIMIT
        limit = max(1, min(limit, HISTORY_MAX_LIMIT))

        balance = ledger.get_balance(request.user.pk)
        serializer = BalanceSerializer(
            {
                "amount": balance.amount,
                "currency": balance.currency,
                "history": ledger.get_history(request.user.pk, limit=limit),
            }
        )
        return Response(serializer.data)
