"""
Views for payment operations.
Handles gateway order creation, client verification, refunds and webhooks.
"""
from rest_framework import views, status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated, AllowAny
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
import logging

from drf_spectacular.utils import (
    extend_schema,
    OpenApiExample,
    OpenApiParameter
)
from drf_spectacular.types import OpenApiTypes as Types

from apps.core.exceptions import error_response, status_for
from apps.core.permissions import IsAdminRole
from .serializers import (
    CreateIntentSerializer,
    VerifyPaymentSerializer,
    RefundSerializer
)
from .services.reconciler import PaymentReconciler
from .services.webhook_handler import PaymentWebhookHandler

logger = logging.getLogger(__name__)


ERROR_RESPONSE_SCHEMA = {
    'type': 'object',
    'properties': {
        'error': {'type': 'string'},
        'error_code': {'type': 'string'}
    }
}


class CreateIntentView(views.APIView):
    """
    Create a gateway order for the caller's share of a cycle.

    POST /api/v1/payments/create-intent/

    Request Body:
        {
            "cycle_id": 12,
            "amount": "149.50"
        }
    """
    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Create payment for a cycle order",
        description="""
        Create a gateway order for the caller's order in a cycle.

        **Rules:**
        - The cycle must be in its payment window
        - The caller must have an active, unpaid order
        - The amount must equal the caller's order total

        The amount is converted to minor units (rounded half up) and the
        gateway is called with an idempotent receipt, so repeating the
        request returns the same order.

        **Permissions:** Authenticated users
        """,
        request=CreateIntentSerializer,
        responses={
            201: {
                'type': 'object',
                'properties': {
                    'order_id': {'type': 'string'},
                    'amount_minor_units': {'type': 'integer'},
                    'currency': {'type': 'string'},
                    'receipt': {'type': 'string'},
                    'client_secret': {'type': 'string'},
                    'status': {'type': 'string'}
                }
            },
            400: ERROR_RESPONSE_SCHEMA,
            404: ERROR_RESPONSE_SCHEMA,
            409: ERROR_RESPONSE_SCHEMA,
        },
        examples=[
            OpenApiExample(
                'Payment created',
                value={
                    'order_id': 'pi_3Nf8sKLkdIwHu7ix0',
                    'amount_minor_units': 14950,
                    'currency': 'INR',
                    'receipt': 'cycle12-p88-14950',
                    'client_secret': 'pi_3Nf8sKLkdIwHu7ix0_secret_abc',
                    'status': 'created'
                },
                response_only=True
            )
        ],
        tags=['Payments']
    )
    def post(self, request):
        serializer = CreateIntentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = PaymentReconciler().create_intent(
            cycle_id=serializer.validated_data['cycle_id'],
            user=request.user,
            amount_major_units=serializer.validated_data['amount'],
            currency=serializer.validated_data.get('currency') or None
        )

        if result.success:
            return Response(result.data, status=status.HTTP_201_CREATED)

        return error_response(result)


class VerifyPaymentView(views.APIView):
    """
    Verify a payment reported by the client.

    POST /api/v1/payments/verify/
    """
    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Verify a completed payment",
        description="""
        Check the gateway signature over order_id|payment_id and apply the
        payment to the caller's order.

        **Outcomes:**
        - Valid signature: the order is marked paid (repeat calls are no-ops)
        - Invalid signature: rejected and audited, nothing changes
        - Payment arrived after the cycle closed: flagged for review (409)

        **Permissions:** Authenticated users
        """,
        request=VerifyPaymentSerializer,
        responses={
            200: {
                'type': 'object',
                'properties': {'verified': {'type': 'boolean'}}
            },
            400: ERROR_RESPONSE_SCHEMA,
            404: ERROR_RESPONSE_SCHEMA,
            409: ERROR_RESPONSE_SCHEMA,
        },
        tags=['Payments']
    )
    def post(self, request):
        serializer = VerifyPaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = PaymentReconciler().verify(
            order_id=serializer.validated_data['order_id'],
            payment_id=serializer.validated_data['payment_id'],
            signature=serializer.validated_data['signature'],
            user=request.user,
            remote_addr=request.META.get('REMOTE_ADDR')
        )

        if result.success:
            return Response({'verified': True})

        return error_response(result)


class RefundView(views.APIView):
    """
    Refund a payment.

    POST /api/v1/payments/refund/
    """
    permission_classes = [IsAuthenticated, IsAdminRole]

    @extend_schema(
        summary="Refund a payment (admin)",
        description="""
        Refund a paid (or flagged) payment in full or in part. The
        participant's payment status becomes refunded; the cycle's phase
        is not changed.

        **Permissions:** Admin role
        """,
        request=RefundSerializer,
        responses={
            200: {
                'type': 'object',
                'properties': {
                    'refund_id': {'type': 'string'},
                    'status': {'type': 'string'}
                }
            },
            400: ERROR_RESPONSE_SCHEMA,
            403: ERROR_RESPONSE_SCHEMA,
            404: ERROR_RESPONSE_SCHEMA,
            409: ERROR_RESPONSE_SCHEMA,
        },
        tags=['Payments - Admin']
    )
    def post(self, request):
        serializer = RefundSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = PaymentReconciler().refund(
            payment_id=serializer.validated_data['payment_id'],
            actor=request.user,
            amount_minor_units=serializer.validated_data.get('amount_minor_units'),
            reason=serializer.validated_data.get('reason')
        )

        if result.success:
            return Response({
                'refund_id': result.data['refund_id'],
                'status': result.data['status']
            })

        return error_response(result)


@extend_schema(
    summary="Payment gateway webhook",
    description="""
    Receives payment events from the gateway.

    **Security:**
    - The raw body must carry a valid HMAC-SHA256 signature in x-signature
    - Signature failures are audited and rejected with 400

    **Supported events:** payment.captured, payment.failed, order.paid

    Deliveries are de-duplicated by x-event-id (or event and entity id).
    Duplicates and unknown event types are acknowledged with 200. A 500
    asks the gateway to retry.
    """,
    parameters=[
        OpenApiParameter(
            name='x-signature',
            type=Types.STR,
            location=OpenApiParameter.HEADER,
            required=True,
            description='Hex HMAC-SHA256 of the raw body'
        ),
        OpenApiParameter(
            name='x-event-id',
            type=Types.STR,
            location=OpenApiParameter.HEADER,
            required=False,
            description='Gateway event identifier'
        ),
    ],
    request={'application/json': {'type': 'object'}},
    responses={
        200: {
            'description': 'Event accepted',
            'examples': [
                OpenApiExample(
                    'Processed',
                    value={'received': True, 'status': 'processed'}
                )
            ]
        },
        400: ERROR_RESPONSE_SCHEMA,
        500: ERROR_RESPONSE_SCHEMA,
    },
    tags=['Payment Webhooks (System)'],
)
@api_view(['POST'])
@csrf_exempt
@permission_classes([AllowAny])
def payment_webhook(request):
    """
    Handle payment gateway webhooks.
    POST /webhooks/payments/
    """
    payload = request.body
    signature = request.META.get('HTTP_X_SIGNATURE')
    event_id = request.META.get('HTTP_X_EVENT_ID')

    logger.info("Payment webhook received", extra={
        'content_length': len(payload),
        'has_signature': bool(signature),
        'event_id': event_id
    })

    if not signature:
        logger.error("Payment webhook missing signature header")
        return JsonResponse({
            'error': 'Missing signature',
            'error_code': 'invalid-argument'
        }, status=400)

    result = PaymentWebhookHandler().handle(
        payload,
        signature,
        event_id=event_id,
        remote_addr=request.META.get('REMOTE_ADDR')
    )

    if result.success:
        return JsonResponse({'received': True, 'status': result.data['status']})

    return JsonResponse({
        'error': result.error,
        'error_code': result.error_code
    }, status=status_for(result.error_code))
