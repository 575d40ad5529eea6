# apps/cycles/serializers.py

from rest_framework import serializers

from .models import BuyingGroup, OrderCycle, Participant, ParticipantItem


class OrderItemSerializer(serializers.Serializer):
    """One product line in an order submission. Detailed rules live in the ledger."""
    product_id = serializers.CharField(max_length=100)
    name = serializers.CharField(max_length=255, required=False, allow_blank=True)
    quantity = serializers.IntegerField(min_value=1)
    unit_price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0)
    retail_unit_price = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=0, required=False, allow_null=True
    )
    min_quantity = serializers.IntegerField(min_value=1, required=False, default=1)


class PlaceOrderSerializer(serializers.Serializer):
    group_id = serializers.IntegerField()
    items = OrderItemSerializer(many=True, allow_empty=False)


class AdvanceCycleSerializer(serializers.Serializer):
    target_phase = serializers.ChoiceField(
        choices=[OrderCycle.PHASE_PROCESSING, OrderCycle.PHASE_COMPLETED],
        required=False
    )


class CancelCycleSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=100, required=False, allow_blank=True)


class ParticipantItemSerializer(serializers.ModelSerializer):
    line_total = serializers.DecimalField(
        max_digits=12, decimal_places=2, read_only=True
    )

    class Meta:
        model = ParticipantItem
        fields = [
            'product_id', 'name', 'quantity', 'unit_price',
            'retail_unit_price', 'min_quantity', 'line_total'
        ]


class ParticipantSerializer(serializers.ModelSerializer):
    items = ParticipantItemSerializer(many=True, read_only=True)

    class Meta:
        model = Participant
        fields = [
            'id', 'user', 'user_name', 'items', 'total_amount',
            'payment_status', 'order_status', 'cancellation_reason',
            'joined_at', 'paid_at'
        ]


class BuyingGroupSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = BuyingGroup
        fields = ['id', 'name', 'currency']


class OrderCycleListSerializer(serializers.ModelSerializer):
    """Lightweight for cycle listings"""
    group = BuyingGroupSummarySerializer(read_only=True)
    time_remaining = serializers.SerializerMethodField()

    class Meta:
        model = OrderCycle
        fields = [
            'id', 'group', 'phase', 'collecting_ends_at',
            'payment_window_ends_at', 'total_amount', 'total_participants',
            'min_quantity_met', 'currency', 'time_remaining', 'created_at'
        ]

    def get_time_remaining(self, obj):
        if obj.time_remaining:
            total_seconds = int(obj.time_remaining.total_seconds())
            hours = total_seconds // 3600
            minutes = (total_seconds % 3600) // 60
            return f"{hours}h {minutes}m"
        return None


class OrderCycleDetailSerializer(OrderCycleListSerializer):
    """Full cycle details with product progress and the caller's own order"""
    products = serializers.SerializerMethodField()
    my_order = serializers.SerializerMethodField()
    participants = serializers.SerializerMethodField()

    class Meta(OrderCycleListSerializer.Meta):
        fields = OrderCycleListSerializer.Meta.fields + [
            'products', 'allow_mid_cycle_joins', 'open_product_ids',
            'cancellation_reason', 'confirmed_at', 'completed_at',
            'cancelled_at', 'my_order', 'participants'
        ]

    def get_products(self, obj):
        return [
            {
                'product_id': product_id,
                'name': entry['name'],
                'quantity': entry['quantity'],
                'min_quantity': entry['min_quantity'],
                'unit_price': entry['unit_price'],
                'met': entry['quantity'] >= entry['min_quantity'],
            }
            for product_id, entry in sorted((obj.product_aggregates or {}).items())
        ]

    def _user(self):
        request = self.context.get('request')
        return getattr(request, 'user', None)

    def get_my_order(self, obj):
        user = self._user()
        if user is None or not user.is_authenticated:
            return None
        participant = obj.participants.filter(user=user).prefetch_related('items').first()
        if participant is None:
            return None
        return ParticipantSerializer(participant).data

    def get_participants(self, obj):
        # Full participant list is admin-only
        user = self._user()
        if user is None or not getattr(user, 'is_admin_role', False):
            return None
        return ParticipantSerializer(
            obj.participants.prefetch_related('items'), many=True
        ).data
