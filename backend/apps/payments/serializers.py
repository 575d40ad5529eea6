"""
Serializers for payment operations.
Handles validation and formatting for payment requests and responses.
"""
from rest_framework import serializers

from .models import PaymentRecord


class CreateIntentSerializer(serializers.Serializer):
    """Request body for creating a gateway order for a participant."""
    cycle_id = serializers.IntegerField(min_value=1)
    amount = serializers.DecimalField(
        max_digits=14,
        decimal_places=4,
        help_text="Amount in major units, e.g. 149.50"
    )
    currency = serializers.CharField(max_length=3, required=False, allow_blank=True)


class VerifyPaymentSerializer(serializers.Serializer):
    order_id = serializers.CharField(max_length=255)
    payment_id = serializers.CharField(max_length=255)
    signature = serializers.CharField(max_length=255)


class RefundSerializer(serializers.Serializer):
    payment_id = serializers.CharField(max_length=255)
    amount_minor_units = serializers.IntegerField(min_value=1, required=False)
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True)


class PaymentRecordSerializer(serializers.ModelSerializer):
    amount_major_units = serializers.DecimalField(
        max_digits=12, decimal_places=2, read_only=True
    )

    class Meta:
        model = PaymentRecord
        fields = [
            'gateway_order_id', 'payment_id', 'status', 'cycle',
            'amount_minor_units', 'amount_major_units', 'currency',
            'receipt', 'created_at', 'paid_at'
        ]
        read_only_fields = fields
