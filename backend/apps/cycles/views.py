"""
ViewSet implementations for order cycles.
Handles order placement, withdrawal, deadline-checked reads and admin actions.
"""
import logging
from rest_framework import viewsets, status
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError as DRFValidationError
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated

from drf_spectacular.utils import (
    extend_schema,
    extend_schema_view,
    OpenApiParameter,
    OpenApiExample
)
from drf_spectacular.types import OpenApiTypes as Types

from apps.core.exceptions import error_response
from apps.core.permissions import IsAdminRole
from apps.core.services.base import INVALID_ARGUMENT, NOT_FOUND, ServiceResult
from .models import OrderCycle
from .serializers import (
    AdvanceCycleSerializer,
    CancelCycleSerializer,
    OrderCycleDetailSerializer,
    OrderCycleListSerializer,
    PlaceOrderSerializer,
)
from .services.ledger import ParticipantLedger
from .services.scheduler import PhaseScheduler
from .services.state_machine import CycleStateMachine

logger = logging.getLogger(__name__)


ERROR_RESPONSE_SCHEMA = {
    'type': 'object',
    'properties': {
        'error': {'type': 'string'},
        'error_code': {'type': 'string'}
    }
}


@extend_schema_view(
    list=extend_schema(
        summary="List order cycles",
        description="""
        Retrieve order cycles, newest first.

        Cycles whose deadline has passed are brought up to date before
        they are returned, so the phase shown is always current.

        **Filtering:**
        - Filter by group ID
        - Filter by phase (comma-separated)

        **Permissions:** Authenticated users
        """,
        parameters=[
            OpenApiParameter(
                name='group',
                type=Types.INT,
                location=OpenApiParameter.QUERY,
                description='Filter by buying group ID',
                required=False
            ),
            OpenApiParameter(
                name='phase',
                type=Types.STR,
                location=OpenApiParameter.QUERY,
                description='Filter by phase (e.g. collecting,payment_window)',
                required=False
            ),
        ],
        tags=['Order Cycles']
    ),
    retrieve=extend_schema(
        summary="Get order cycle details",
        description="""
        Product progress, totals, deadlines and the caller's own order.
        Administrators also receive the full participant list.

        **Permissions:** Authenticated users
        """,
        tags=['Order Cycles']
    ),
)
class OrderCycleViewSet(viewsets.ReadOnlyModelViewSet):
    """
    ViewSet for order cycle operations.
    Every read applies elapsed deadlines first.
    """
    queryset = OrderCycle.objects.all()
    serializer_class = OrderCycleListSerializer
    permission_classes = [IsAuthenticated]

    def get_permissions(self):
        """Admin actions require the admin role."""
        if self.action in ['close', 'advance', 'cancel']:
            permission_classes = [IsAuthenticated, IsAdminRole]
        else:
            permission_classes = [IsAuthenticated]
        return [permission() for permission in permission_classes]

    def get_serializer_class(self):
        if self.action in ['retrieve', 'current', 'close', 'advance', 'cancel', 'withdraw']:
            return OrderCycleDetailSerializer
        return self.serializer_class

    def get_queryset(self):
        queryset = super().get_queryset().select_related('group')

        group_id = self.request.query_params.get('group')
        if group_id:
            try:
                group_id = int(group_id)
            except ValueError:
                raise DRFValidationError({'group': ['A valid integer is required.']})
            queryset = queryset.filter(group_id=group_id)

        phase_filter = self.request.query_params.get('phase')
        if phase_filter:
            phases = [p.strip() for p in phase_filter.split(',')]
            queryset = queryset.filter(phase__in=phases)

        return queryset.order_by('-created_at')

    def list(self, request, *args, **kwargs):
        scheduler = PhaseScheduler()
        due = scheduler.due_cycles().filter(
            pk__in=self.get_queryset().values('pk')
        ).values_list('id', flat=True)
        for cycle_id in list(due):
            scheduler.ensure_current(cycle_id)
        return super().list(request, *args, **kwargs)

    def retrieve(self, request, *args, **kwargs):
        cycle = PhaseScheduler().refresh_if_due(self.get_object())
        serializer = self.get_serializer(cycle)
        return Response(serializer.data)

    def _cycle_response(self, cycle_id, http_status=status.HTTP_200_OK):
        cycle = OrderCycle.objects.select_related('group').get(pk=cycle_id)
        serializer = OrderCycleDetailSerializer(cycle, context={'request': self.request})
        return Response(serializer.data, status=http_status)

    @extend_schema(
        summary="Place an order in a group's current cycle",
        description="""
        Submit (or replace) the caller's order for a buying group.

        **Process:**
        1. Validates every item
        2. Finds the group's open cycle, opening a new one if needed
        3. Applies any elapsed deadline
        4. Adds or updates the caller's entry and recomputes product totals

        Submitting again replaces the caller's items. During the payment
        window, orders are only accepted if the group allows mid-cycle
        joins, and only for products already in the cycle.

        **Example Request:**
```json
        {
            "group_id": 3,
            "items": [
                {"product_id": "rice-5kg", "name": "Rice 5kg", "quantity": 2,
                 "unit_price": "349.00", "min_quantity": 20}
            ]
        }
```

        **Permissions:** Authenticated users
        """,
        request=PlaceOrderSerializer,
        responses={
            201: {
                'type': 'object',
                'properties': {
                    'cycle_id': {'type': 'integer'},
                    'participant_id': {'type': 'integer'},
                    'total_amount': {'type': 'string'},
                    'phase': {'type': 'string'},
                    'min_quantity_met': {'type': 'boolean'}
                }
            },
            400: ERROR_RESPONSE_SCHEMA,
            404: ERROR_RESPONSE_SCHEMA,
            409: ERROR_RESPONSE_SCHEMA,
        },
        examples=[
            OpenApiExample(
                'Order placed',
                value={
                    'cycle_id': 12,
                    'participant_id': 88,
                    'total_amount': '698.00',
                    'phase': 'collecting',
                    'min_quantity_met': False
                },
                response_only=True
            )
        ],
        tags=['Order Cycles']
    )
    @action(detail=False, methods=['post'], url_path='place-order')
    def place_order(self, request):
        """
        Place an order.
        POST /api/v1/cycles/place-order/
        """
        serializer = PlaceOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = ParticipantLedger().place_order(
            group_id=serializer.validated_data['group_id'],
            user=request.user,
            items=[dict(item) for item in serializer.validated_data['items']]
        )

        if result.success:
            return Response({
                'cycle_id': result.data['cycle_id'],
                'participant_id': result.data['participant_id'],
                'total_amount': str(result.data['total_amount']),
                'phase': result.data['phase'],
                'min_quantity_met': result.data['min_quantity_met']
            }, status=status.HTTP_201_CREATED)

        return error_response(result)

    @extend_schema(
        summary="Get a group's current cycle",
        description="""
        Most recent cycle for the group, brought up to date first.

        **Permissions:** Authenticated users
        """,
        parameters=[
            OpenApiParameter(
                name='group',
                type=Types.INT,
                location=OpenApiParameter.QUERY,
                description='Buying group ID',
                required=True
            ),
        ],
        responses={200: OrderCycleDetailSerializer, 404: ERROR_RESPONSE_SCHEMA},
        tags=['Order Cycles']
    )
    @action(detail=False, methods=['get'])
    def current(self, request):
        """
        GET /api/v1/cycles/current/?group=<id>
        """
        try:
            group_id = int(request.query_params.get('group', ''))
        except ValueError:
            return error_response(ServiceResult.fail(
                'group query parameter is required', INVALID_ARGUMENT))

        cycle = OrderCycle.objects.filter(
            group_id=group_id
        ).select_related('group').order_by('-created_at').first()

        if cycle is None:
            return error_response(ServiceResult.fail(
                'No order cycle for this group', NOT_FOUND))

        cycle = PhaseScheduler().refresh_if_due(cycle)
        serializer = self.get_serializer(cycle)
        return Response(serializer.data)

    @extend_schema(
        summary="Withdraw the caller's order",
        description="""
        Remove the caller's order while the cycle is still collecting.
        Product totals are recomputed immediately.

        **Permissions:** Authenticated users
        """,
        request=None,
        responses={
            200: OrderCycleDetailSerializer,
            404: ERROR_RESPONSE_SCHEMA,
            409: ERROR_RESPONSE_SCHEMA,
        },
        tags=['Order Cycles']
    )
    @action(detail=True, methods=['post'])
    def withdraw(self, request, pk=None):
        """
        POST /api/v1/cycles/{id}/withdraw/
        """
        cycle = self.get_object()
        result = ParticipantLedger().withdraw(cycle.id, request.user)

        if result.success:
            return self._cycle_response(cycle.id)

        return error_response(result)

    @extend_schema(
        summary="Close ordering early (admin)",
        description="""
        Move a collecting cycle into its payment window now. A cycle with
        no participants is cancelled instead. Closing a cycle that has
        already left the collecting phase changes nothing.

        **Permissions:** Admin role
        """,
        request=None,
        responses={200: OrderCycleDetailSerializer, 403: ERROR_RESPONSE_SCHEMA},
        tags=['Order Cycles - Admin']
    )
    @action(detail=True, methods=['post'])
    def close(self, request, pk=None):
        """
        POST /api/v1/cycles/{id}/close/
        """
        cycle = self.get_object()
        result = CycleStateMachine().close_collecting(cycle.id, request.user)

        if result.success:
            return self._cycle_response(cycle.id)

        return error_response(result)

    @extend_schema(
        summary="Advance fulfilment (admin)",
        description="""
        Move a confirmed cycle to processing, or a processing cycle to
        completed. Completing marks every surviving order delivered.

        **Permissions:** Admin role
        """,
        request=AdvanceCycleSerializer,
        responses={
            200: OrderCycleDetailSerializer,
            403: ERROR_RESPONSE_SCHEMA,
            409: ERROR_RESPONSE_SCHEMA,
        },
        tags=['Order Cycles - Admin']
    )
    @action(detail=True, methods=['post'])
    def advance(self, request, pk=None):
        """
        POST /api/v1/cycles/{id}/advance/
        """
        cycle = self.get_object()
        serializer = AdvanceCycleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = CycleStateMachine().advance_cycle(
            cycle.id,
            request.user,
            target_phase=serializer.validated_data.get('target_phase')
        )

        if result.success:
            return self._cycle_response(cycle.id)

        return error_response(result)

    @extend_schema(
        summary="Cancel a cycle (admin)",
        description="""
        Cancel any cycle that has not completed. Every paid participant is
        refunded in the background.

        **Permissions:** Admin role
        """,
        request=CancelCycleSerializer,
        responses={
            200: OrderCycleDetailSerializer,
            403: ERROR_RESPONSE_SCHEMA,
            409: ERROR_RESPONSE_SCHEMA,
        },
        tags=['Order Cycles - Admin']
    )
    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        """
        POST /api/v1/cycles/{id}/cancel/
        """
        cycle = self.get_object()
        serializer = CancelCycleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = CycleStateMachine().cancel_cycle(
            cycle.id,
            request.user,
            reason=serializer.validated_data.get('reason') or None
        )

        if result.success:
            return self._cycle_response(cycle.id)

        return error_response(result)
