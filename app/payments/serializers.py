"""
DRF serializers for the payments app.

Related files:
    - ledger/models.py: Balance, BalanceEntry
    - views.py: BalanceView
"""

from __future__ import annotations

from rest_framework import serializers

from payments.ledger.models import BalanceEntry


class BalanceEntrySerializer(serializers.ModelSerializer):
    """
    One ledger movement as shown to its owner.

    dedupe_key is internal and not exposed.
    """

    class Meta:
        model = BalanceEntry
        fields = [
            "id",
            "action",
            "amount",
            "reason",
            "appointment_id",
            "balance_after",
            "created_at",
        ]
        read_only_fields = fields


class BalanceSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    currency = serializers.CharField()
    history = BalanceEntrySerializer(many=True)
