"""
Payment gateway port and its Stripe adapter.

The reconciler only talks to PaymentGateway; the concrete class is chosen
by settings.PAYMENT_GATEWAY_CLASS. Gateway calls are made outside store
transactions and always carry an idempotency key, so they are safe to
retry.
"""
from typing import Any, Dict, Optional

import stripe
from django.conf import settings
from django.utils.module_loading import import_string

from apps.core.services.base import BaseService, GatewayError


class PaymentGateway(BaseService):
    """Interface every gateway adapter implements."""

    def create_order(self, amount_minor_units: int, currency: str, receipt: str,
                     notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Create a gateway order.

        Returns:
            Dict with at least id and status
        """
        raise NotImplementedError

    def refund(self, payment_id: str, amount_minor_units: Optional[int] = None,
               idempotency_key: Optional[str] = None,
               notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Refund a captured payment (full refund when amount is None).

        Returns:
            Dict with id, status and amount
        """
        raise NotImplementedError


class StripeGateway(PaymentGateway):
    """
    Gateway adapter over the Stripe SDK.
    Gateway orders are PaymentIntents; refunds target the intent or charge.
    """

    def __init__(self):
        super().__init__()
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = settings.PAYMENT_GATEWAY_MAX_RETRIES
        stripe.default_http_client = stripe.RequestsClient(
            timeout=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS
        )

    def create_order(self, amount_minor_units, currency, receipt, notes=None):
        try:
            payment_intent = stripe.PaymentIntent.create(
                amount=amount_minor_units,
                currency=currency.lower(),
                metadata={'receipt': receipt, **(notes or {})},
                description=f"Group order {receipt}",
                idempotency_key=f"order-{receipt}"
            )

            self.log_info(
                "Created gateway order",
                receipt=receipt,
                order_id=payment_intent.id,
                amount=amount_minor_units
            )

            return {
                'id': payment_intent.id,
                'status': payment_intent.status,
                'amount': payment_intent.amount,
                'currency': payment_intent.currency,
                'client_secret': payment_intent.client_secret,
            }

        except stripe.StripeError as e:
            self.log_error(
                "Stripe error creating order",
                exception=e,
                receipt=receipt
            )
            raise GatewayError("Payment provider unavailable, please retry")

    def refund(self, payment_id, amount_minor_units=None, idempotency_key=None, notes=None):
        params = {'metadata': notes or {}}
        if payment_id.startswith('pi_'):
            params['payment_intent'] = payment_id
        else:
            params['charge'] = payment_id
        if amount_minor_units is not None:
            params['amount'] = amount_minor_units
        if idempotency_key:
            params['idempotency_key'] = idempotency_key

        try:
            refund = stripe.Refund.create(**params)

            self.log_info(
                "Created gateway refund",
                payment_id=payment_id,
                refund_id=refund.id,
                amount=refund.amount
            )

            return {
                'id': refund.id,
                'status': refund.status,
                'amount': refund.amount,
            }

        except stripe.StripeError as e:
            self.log_error(
                "Stripe error processing refund",
                exception=e,
                payment_id=payment_id
            )
            raise GatewayError("Refund failed at the payment provider")


def get_payment_gateway() -> PaymentGateway:
    gateway_class = import_string(settings.PAYMENT_GATEWAY_CLASS)
    return gateway_class()
