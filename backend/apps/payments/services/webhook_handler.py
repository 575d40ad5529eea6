"""
Payment gateway webhook handler.
Authenticates the raw body, de-duplicates deliveries and routes each
event to the same reconciliation paths as client verification.
"""
import json
from typing import Any, Dict, Optional, Tuple

from django.db import IntegrityError, transaction

from apps.core.services.base import (
    BaseService, ServiceResult, INVALID_ARGUMENT, NOT_FOUND, INTERNAL
)
from apps.payments.models import SignatureFailure, WebhookEvent
from apps.payments.services import signatures
from apps.payments.services.reconciler import PaymentReconciler


class PaymentWebhookHandler(BaseService):
    """
    Handles gateway webhook events with event-specific methods.
    Uses a handler registry pattern for clean event routing.

    Supported Events:
    - payment.captured: Mark the payment and participant paid
    - payment.failed: Record the failed attempt
    - order.paid: Same as payment.captured, reported on the order
    """

    def __init__(self, reconciler: Optional[PaymentReconciler] = None):
        """Initialize handler with event registry."""
        super().__init__()
        self.reconciler = reconciler or PaymentReconciler()

        self.handlers = {
            'payment.captured': self.handle_payment_captured,
            'payment.failed': self.handle_payment_failed,
            'order.paid': self.handle_order_paid,
        }

    def handle(self, raw_body: bytes, signature: Optional[str],
               event_id: Optional[str] = None, remote_addr: Optional[str] = None) -> ServiceResult:
        """
        Main entry point for webhook deliveries.

        Args:
            raw_body: Request body exactly as received
            signature: Value of the x-signature header
            event_id: Value of the x-event-id header, if sent
            remote_addr: Caller address for the audit trail

        Returns:
            ServiceResult; failures carry invalid-argument (reject) or
            internal (ask the gateway to retry)
        """
        if not signatures.verify_webhook_signature(raw_body, signature):
            SignatureFailure.objects.create(
                source=SignatureFailure.SOURCE_WEBHOOK,
                submitted_signature=str(signature or '')[:255],
                remote_addr=remote_addr
            )
            self.log_error(
                "Webhook signature verification failed",
                event_id=event_id,
                content_length=len(raw_body or b'')
            )
            return ServiceResult.fail("Invalid signature", error_code=INVALID_ARGUMENT)

        try:
            event = json.loads(raw_body)
            event_type = event['event']
            entity_id = self._entity_id(event)
        except (ValueError, KeyError, TypeError) as e:
            self.log_error("Malformed webhook payload", exception=e, event_id=event_id)
            return ServiceResult.fail("Malformed payload", error_code=INVALID_ARGUMENT)

        event_key = event_id or f"{event_type}:{entity_id}"

        if WebhookEvent.objects.filter(event_key=event_key).exists():
            self.log_info("Duplicate webhook ignored", event_key=event_key)
            return ServiceResult.ok({'status': 'duplicate', 'event_key': event_key})

        self.log_info(
            f"Processing webhook event: {event_type}",
            event_key=event_key,
            event_type=event_type
        )

        handler = self.handlers.get(event_type)
        if handler is None:
            # Unknown event type - log but don't error
            self.log_info(f"Unhandled webhook event type: {event_type}", event_key=event_key)
            self._record(event_key, event_type, WebhookEvent.STATUS_IGNORED, event)
            return ServiceResult.ok({'status': 'ignored', 'event_key': event_key})

        try:
            result = handler(event.get('payload') or {})
        except Exception as e:
            self.log_error(
                f"Exception handling {event_type}",
                exception=e,
                event_key=event_key
            )
            return ServiceResult.fail("Failed to process event", error_code=INTERNAL)

        if not result.success and result.error_code in (INTERNAL, None):
            self.log_error(
                f"Handler failed for {event_type}: {result.error}",
                event_key=event_key,
                error_code=result.error_code
            )
            return ServiceResult.fail("Failed to process event", error_code=INTERNAL)

        # Business rejections (unknown order, late payment) are final
        status = WebhookEvent.STATUS_PROCESSED if result.success else WebhookEvent.STATUS_IGNORED
        if not result.success:
            self.log_warning(
                f"Webhook {event_type} not applied: {result.error}",
                event_key=event_key,
                error_code=result.error_code
            )
        self._record(event_key, event_type, status, event)

        return ServiceResult.ok({
            'status': status,
            'event_key': event_key,
            'outcome': result.error_code or 'applied'
        })

    def _entity_id(self, event: Dict[str, Any]) -> str:
        payload = event.get('payload') or {}
        for name in ('payment', 'order'):
            entity = (payload.get(name) or {}).get('entity')
            if entity and entity.get('id'):
                return str(entity['id'])
        raise KeyError('entity id')

    def _entities(self, payload: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        payment = (payload.get('payment') or {}).get('entity') or {}
        order = (payload.get('order') or {}).get('entity') or {}
        return payment, order

    def _record(self, event_key: str, event_type: str, status: str, payload) -> None:
        try:
            with transaction.atomic():
                WebhookEvent.objects.create(
                    event_key=event_key,
                    event_type=event_type,
                    status=status,
                    payload=payload
                )
        except IntegrityError:
            # A concurrent delivery of the same event got there first
            self.log_info("Webhook event already recorded", event_key=event_key)

    def handle_payment_captured(self, payload: Dict[str, Any]) -> ServiceResult:
        payment, _ = self._entities(payload)
        order_id = payment.get('order_id')
        if not order_id:
            return ServiceResult.fail("Payment has no order", error_code=NOT_FOUND)
        return self.reconciler.capture(order_id, str(payment.get('id') or ''))

    def handle_payment_failed(self, payload: Dict[str, Any]) -> ServiceResult:
        payment, _ = self._entities(payload)
        order_id = payment.get('order_id')
        if not order_id:
            return ServiceResult.fail("Payment has no order", error_code=NOT_FOUND)
        return self.reconciler.apply_failure(
            order_id,
            str(payment.get('id') or ''),
            reason=payment.get('error_description') or payment.get('error_code') or ''
        )

    def handle_order_paid(self, payload: Dict[str, Any]) -> ServiceResult:
        payment, order = self._entities(payload)
        order_id = order.get('id') or payment.get('order_id')
        if not order_id:
            return ServiceResult.fail("Order id missing", error_code=NOT_FOUND)
        return self.reconciler.capture(order_id, str(payment.get('id') or ''))
