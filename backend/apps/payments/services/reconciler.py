"""
Payment reconciliation between the gateway and the participant ledger.

Gateway calls happen outside store transactions. Everything that touches
payment or participant state runs inside CycleStore.transact for the
payment's cycle, so a capture and a deadline transition can never both
win.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional

from django.conf import settings
from django.db.models import Q

from apps.core.services.base import (
    BaseService, ServiceException, ServiceResult, AuthError, ConflictError,
    GatewayError, NotFoundError, SignatureMismatch, ValidationError, INTERNAL
)
from apps.cycles.models import OrderCycle, Participant
from apps.cycles.services.state_machine import CycleStateMachine, require_admin
from apps.cycles.services.store import CycleMutation, CycleStore
from apps.notifications.events import PaymentReceived
from apps.payments.models import PaymentRecord, RefundRecord, SignatureFailure
from apps.payments.services import signatures
from apps.payments.services.gateway import PaymentGateway, get_payment_gateway


def to_minor_units(amount) -> int:
    """Convert a major-unit amount to minor units, rounding half up."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("Amount is not a valid number")
    if not value.is_finite():
        raise ValidationError("Amount is not a valid number")
    return int((value * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def to_major_units(amount_minor_units: int) -> Decimal:
    return (Decimal(amount_minor_units) / 100).quantize(Decimal('0.01'))


class PaymentReconciler(BaseService):
    """
    Service for creating, verifying and refunding participant payments.
    """

    def __init__(self, gateway: Optional[PaymentGateway] = None,
                 store: Optional[CycleStore] = None,
                 state_machine: Optional[CycleStateMachine] = None):
        super().__init__()
        self._gateway = gateway
        self.store = store or CycleStore()
        self.state_machine = state_machine or CycleStateMachine(store=self.store)

    @property
    def gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = get_payment_gateway()
        return self._gateway

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    def create_intent(self, cycle_id: int, user, amount_major_units,
                      currency: Optional[str] = None, now=None) -> ServiceResult:
        """
        Create a gateway order for the caller's participation in a cycle.

        Args:
            cycle_id: OrderCycle ID
            user: Paying user
            amount_major_units: Amount in major units (e.g. 149.50)
            currency: ISO currency code, defaults to the cycle's currency

        Returns:
            ServiceResult containing order_id, amount_minor_units, currency,
            receipt and client_secret
        """
        try:
            amount_minor_units = to_minor_units(amount_major_units)
            if amount_minor_units <= 0:
                raise ValidationError("Amount must be greater than zero")

            def check(mutation: CycleMutation):
                self.state_machine.apply_due_deadlines(mutation)
                cycle = mutation.cycle

                participant = cycle.participants.select_for_update().filter(
                    user=user).first()
                if participant is None:
                    raise NotFoundError("You have no order in this cycle")

                if cycle.phase != OrderCycle.PHASE_PAYMENT_WINDOW:
                    return ConflictError("Payments are not open for this cycle")
                if not participant.is_active:
                    return ConflictError("Your order is no longer part of this cycle")
                if participant.payment_status == Participant.PAYMENT_PAID:
                    return ConflictError("Your order is already paid")
                if to_minor_units(participant.total_amount) != amount_minor_units:
                    return ValidationError("Amount does not match your order total")

                if participant.payment_status == Participant.PAYMENT_FAILED:
                    participant.payment_status = Participant.PAYMENT_PENDING
                    participant.save(update_fields=['payment_status', 'updated_at'])

                return participant

            outcome = self.store.transact(cycle_id, check, now=now)
            if isinstance(outcome, ServiceException):
                return outcome.to_result()

            participant = outcome
            cycle = participant.cycle
            currency = (currency or cycle.currency or settings.PAYMENT_DEFAULT_CURRENCY).upper()
            receipt = f"cycle{cycle.id}-p{participant.id}-{amount_minor_units}"

            order = self.gateway.create_order(
                amount_minor_units,
                currency,
                receipt,
                notes={'cycle_id': str(cycle.id), 'user_id': str(user.id)}
            )

            record, created = PaymentRecord.objects.get_or_create(
                gateway_order_id=order['id'],
                defaults={
                    'user': user,
                    'cycle_id': cycle.id,
                    'participant': participant,
                    'amount_minor_units': amount_minor_units,
                    'currency': currency,
                    'receipt': receipt,
                }
            )
            if not created and record.status == PaymentRecord.STATUS_FAILED:
                # The gateway order is reused for the retry
                record.status = PaymentRecord.STATUS_CREATED
                record.failure_reason = ''
                record.save(update_fields=['status', 'failure_reason', 'updated_at'])

            self.log_info(
                f"Created payment intent for cycle {cycle.id}",
                cycle_id=cycle.id,
                user_id=user.id,
                order_id=record.gateway_order_id,
                amount=amount_minor_units,
                created=created
            )

            return ServiceResult.ok({
                'order_id': record.gateway_order_id,
                'amount_minor_units': record.amount_minor_units,
                'currency': record.currency,
                'receipt': record.receipt,
                'client_secret': order.get('client_secret'),
                'status': record.status,
            })

        except ServiceException as e:
            return self._failure('create payment intent', e,
                                 cycle_id=cycle_id, user_id=user.id)
        except Exception as e:
            self.log_error(
                "Error creating payment intent",
                exception=e,
                cycle_id=cycle_id,
                user_id=user.id
            )
            return ServiceResult.fail("Failed to create payment", error_code=INTERNAL)

    # ------------------------------------------------------------------
    # Verification and captures
    # ------------------------------------------------------------------

    def verify(self, order_id: str, payment_id: str, signature: str,
               user=None, remote_addr: Optional[str] = None, now=None) -> ServiceResult:
        """
        Verify a client-reported payment and apply it to the ledger.

        A bad signature is audited and rejected without touching any
        payment state.

        Returns:
            ServiceResult containing verified, status and order_id
        """
        try:
            if not signatures.verify_payment_signature(order_id, payment_id, signature):
                SignatureFailure.objects.create(
                    source=SignatureFailure.SOURCE_VERIFY,
                    gateway_order_id=str(order_id or '')[:255],
                    payment_id=str(payment_id or '')[:255],
                    submitted_signature=str(signature or '')[:255],
                    user=user if user is not None and user.is_authenticated else None,
                    remote_addr=remote_addr
                )
                self.log_error(
                    "Payment signature verification failed",
                    order_id=order_id,
                    payment_id=payment_id,
                    user_id=getattr(user, 'id', None)
                )
                raise SignatureMismatch("Payment signature is invalid")

            record = PaymentRecord.objects.filter(gateway_order_id=order_id).first()
            if record is None:
                raise NotFoundError("Payment not found")
            if user is not None and record.user_id != user.id:
                raise AuthError("This payment belongs to another user")

            return self._apply_capture(record, payment_id, signature, now=now)

        except ServiceException as e:
            return self._failure('verify payment', e, order_id=order_id)
        except Exception as e:
            self.log_error("Error verifying payment", exception=e, order_id=order_id)
            return ServiceResult.fail("Failed to verify payment", error_code=INTERNAL)

    def capture(self, order_id: str, payment_id: str, now=None) -> ServiceResult:
        """Apply a capture reported by an authenticated webhook."""
        try:
            record = PaymentRecord.objects.filter(gateway_order_id=order_id).first()
            if record is None:
                raise NotFoundError(f"Unknown gateway order {order_id}")
            return self._apply_capture(record, payment_id, '', now=now)

        except ServiceException as e:
            return self._failure('capture payment', e, order_id=order_id)
        except Exception as e:
            self.log_error("Error capturing payment", exception=e, order_id=order_id)
            return ServiceResult.fail("Failed to capture payment", error_code=INTERNAL)

    def _apply_capture(self, record: PaymentRecord, payment_id: str, signature: str,
                       now=None) -> ServiceResult:
        def apply(mutation: CycleMutation):
            self.state_machine.apply_due_deadlines(mutation)
            cycle = mutation.cycle

            payment = PaymentRecord.objects.select_for_update().get(pk=record.pk)
            if payment.status == PaymentRecord.STATUS_PAID:
                return {'status': payment.status, 'already_processed': True}
            if payment.status in (PaymentRecord.STATUS_REFUNDED,
                                  PaymentRecord.STATUS_NEEDS_RECONCILIATION):
                return ConflictError(f"Payment is {payment.status}")

            participant = Participant.objects.select_for_update().get(
                pk=payment.participant_id)

            payment.payment_id = payment_id or payment.payment_id
            if signature:
                payment.signature = signature

            if (cycle.phase != OrderCycle.PHASE_PAYMENT_WINDOW
                    or not participant.is_active
                    or participant.payment_status == Participant.PAYMENT_PAID):
                payment.status = PaymentRecord.STATUS_NEEDS_RECONCILIATION
                payment.save()
                self.log_error(
                    "Payment captured outside the payment window",
                    order_id=payment.gateway_order_id,
                    cycle_id=cycle.id,
                    phase=cycle.phase,
                    participant_status=participant.order_status
                )
                return ConflictError("Payment received after the cycle closed; flagged for review")

            owed = to_minor_units(participant.total_amount)
            if payment.amount_minor_units != owed:
                payment.status = PaymentRecord.STATUS_NEEDS_RECONCILIATION
                payment.save()
                self.log_error(
                    "Captured amount does not match the order total",
                    order_id=payment.gateway_order_id,
                    cycle_id=cycle.id,
                    captured=payment.amount_minor_units,
                    owed=owed
                )
                return ConflictError("Payment amount no longer matches your order; flagged for review")

            payment.status = PaymentRecord.STATUS_PAID
            payment.paid_at = mutation.now
            payment.failure_reason = ''
            payment.save()

            participant.payment_status = Participant.PAYMENT_PAID
            participant.paid_at = mutation.now
            participant.save(update_fields=['payment_status', 'paid_at', 'updated_at'])

            mutation.emit(PaymentReceived(
                cycle.id,
                [participant.user_id],
                amount=str(payment.amount_major_units),
                currency=payment.currency
            ))
            self.state_machine.check_all_paid(mutation)

            return {'status': payment.status, 'already_processed': False}

        outcome = self.store.transact(record.cycle_id, apply, now=now)
        if isinstance(outcome, ServiceException):
            return outcome.to_result()

        self.log_info(
            "Payment verified",
            order_id=record.gateway_order_id,
            cycle_id=record.cycle_id,
            already_processed=outcome['already_processed']
        )
        return ServiceResult.ok({
            'verified': True,
            'order_id': record.gateway_order_id,
            **outcome
        })

    def apply_failure(self, order_id: str, payment_id: str = '',
                      reason: str = '', now=None) -> ServiceResult:
        """
        Record a failed payment attempt. A paid record is never downgraded.
        """
        try:
            record = PaymentRecord.objects.filter(gateway_order_id=order_id).first()
            if record is None:
                raise NotFoundError(f"Unknown gateway order {order_id}")

            def apply(mutation: CycleMutation):
                payment = PaymentRecord.objects.select_for_update().get(pk=record.pk)
                if payment.status != PaymentRecord.STATUS_CREATED:
                    if payment.status == PaymentRecord.STATUS_PAID:
                        self.log_warning(
                            "Ignoring failure for a paid payment",
                            order_id=order_id,
                            payment_id=payment_id
                        )
                    return {'status': payment.status, 'applied': False}

                payment.status = PaymentRecord.STATUS_FAILED
                payment.payment_id = payment_id or payment.payment_id
                payment.failure_reason = (reason or '')[:255]
                payment.save()

                Participant.objects.filter(
                    pk=payment.participant_id,
                    payment_status=Participant.PAYMENT_PENDING
                ).update(payment_status=Participant.PAYMENT_FAILED)

                return {'status': payment.status, 'applied': True}

            outcome = self.store.transact(record.cycle_id, apply, now=now)
            self.log_info("Payment failure processed", order_id=order_id, **outcome)
            return ServiceResult.ok(outcome)

        except ServiceException as e:
            return self._failure('record payment failure', e, order_id=order_id)
        except Exception as e:
            self.log_error("Error recording payment failure", exception=e, order_id=order_id)
            return ServiceResult.fail("Failed to record payment failure", error_code=INTERNAL)

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def refund(self, payment_id: str, actor, amount_minor_units: Optional[int] = None,
               reason: Optional[str] = None) -> ServiceResult:
        """
        Refund a payment (admin only). Never changes the cycle's phase.

        Args:
            payment_id: Gateway payment ID (or gateway order ID)
            actor: Requesting user
            amount_minor_units: Partial amount, defaults to the full payment
            reason: Free-text reason kept on the refund record

        Returns:
            ServiceResult containing refund_id, status and amount_minor_units
        """
        try:
            require_admin(actor)

            record = PaymentRecord.objects.filter(
                Q(payment_id=payment_id) | Q(gateway_order_id=payment_id)
            ).first() if payment_id else None
            if record is None:
                raise NotFoundError("Payment not found")

            refund = self._issue_refund(record, amount_minor_units, actor, reason or '')
            return ServiceResult.ok({
                'refund_id': refund.gateway_refund_id,
                'status': refund.status,
                'amount_minor_units': refund.amount_minor_units,
            })

        except ServiceException as e:
            return self._failure('refund payment', e, payment_id=payment_id)
        except Exception as e:
            self.log_error("Error refunding payment", exception=e, payment_id=payment_id)
            return ServiceResult.fail("Failed to refund payment", error_code=INTERNAL)

    def refund_cycle_payments(self, cycle_id: int) -> Dict[str, Any]:
        """
        Refund every paid payment of a cancelled cycle.

        Raises:
            GatewayError: at least one refund failed; safe to call again
        """
        stats = {'refunded': 0, 'failed': 0}
        records = PaymentRecord.objects.filter(
            cycle_id=cycle_id,
            status=PaymentRecord.STATUS_PAID
        ).order_by('id')

        for record in records:
            try:
                self._issue_refund(record, None, None, 'cycle_cancelled')
                stats['refunded'] += 1
            except ServiceException as e:
                stats['failed'] += 1
                self.log_error(
                    "Automatic refund failed",
                    exception=e,
                    cycle_id=cycle_id,
                    order_id=record.gateway_order_id
                )

        self.log_info(f"Refunded payments for cycle {cycle_id}", cycle_id=cycle_id, **stats)

        if stats['failed']:
            raise GatewayError(
                f"{stats['failed']} refunds failed for cycle {cycle_id}"
            )
        return stats

    def _issue_refund(self, record: PaymentRecord, amount_minor_units: Optional[int],
                      actor, reason: str) -> RefundRecord:
        if record.status not in (PaymentRecord.STATUS_PAID,
                                 PaymentRecord.STATUS_NEEDS_RECONCILIATION):
            raise ConflictError(f"Cannot refund a payment that is {record.status}")

        if amount_minor_units is None:
            amount_minor_units = record.amount_minor_units
        if isinstance(amount_minor_units, bool) or not isinstance(amount_minor_units, int):
            raise ValidationError("Refund amount must be a whole number of minor units")
        if amount_minor_units <= 0:
            raise ValidationError("Refund amount must be greater than zero")
        if amount_minor_units > record.amount_minor_units:
            raise ValidationError("Refund amount exceeds the payment")

        gateway_refund = self.gateway.refund(
            record.payment_id or record.gateway_order_id,
            amount_minor_units=amount_minor_units,
            idempotency_key=f"refund-{record.gateway_order_id}-{amount_minor_units}",
            notes={'cycle_id': str(record.cycle_id), 'reason': reason}
        )

        def apply(mutation: CycleMutation):
            payment = PaymentRecord.objects.select_for_update().get(pk=record.pk)
            refund, _ = RefundRecord.objects.get_or_create(
                gateway_refund_id=gateway_refund['id'],
                defaults={
                    'payment': payment,
                    'amount_minor_units': gateway_refund.get('amount') or amount_minor_units,
                    'status': gateway_refund.get('status') or 'pending',
                    'reason': reason,
                    'processed_by': actor,
                }
            )
            payment.status = PaymentRecord.STATUS_REFUNDED
            payment.save(update_fields=['status', 'updated_at'])
            Participant.objects.filter(pk=payment.participant_id).update(
                payment_status=Participant.PAYMENT_REFUNDED
            )
            return refund

        refund = self.store.transact(record.cycle_id, apply)

        self.log_info(
            "Refund recorded",
            order_id=record.gateway_order_id,
            refund_id=refund.gateway_refund_id,
            amount=refund.amount_minor_units,
            actor_id=getattr(actor, 'id', None)
        )
        return refund

    def _failure(self, action: str, exc: ServiceException, **context) -> ServiceResult:
        if exc.code == INTERNAL:
            self.log_error(f"Failed to {action}", exception=exc, **context)
        else:
            self.log_warning(f"Rejected {action}: {exc.message}", code=exc.code, **context)
        return exc.to_result()
