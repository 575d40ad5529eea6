"""
Order cycle state machine.

Phase transitions, derived-total recomputation and the admin actions that
drive a cycle through fulfilment. The transition steps operate on a
CycleMutation and are always called from inside CycleStore.transact, so a
phase change commits together with the ledger write that caused it.
"""
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from apps.core.services.base import (
    BaseService, ServiceException, ServiceResult, AuthError, ConflictError,
    INTERNAL
)
from apps.cycles.models import OrderCycle, Participant
from apps.cycles.services import thresholds
from apps.cycles.services.store import CycleMutation, CycleStore
from apps.notifications.events import (
    CycleCancelled, OrderConfirmed, PaymentWindowOpened, PhaseChanged,
    ThresholdReached
)


def require_admin(actor) -> None:
    if actor is None or not getattr(actor, 'is_admin_role', False):
        raise AuthError("Administrator role required")


def is_due(cycle: OrderCycle, now) -> bool:
    """True when the cycle's current phase deadline has elapsed."""
    if cycle.phase == OrderCycle.PHASE_COLLECTING:
        return cycle.collecting_ends_at <= now
    if cycle.phase == OrderCycle.PHASE_PAYMENT_WINDOW:
        return (
            cycle.payment_window_ends_at is not None
            and cycle.payment_window_ends_at <= now
        )
    return False


class CycleStateMachine(BaseService):
    """
    Enforces the cycle lifecycle:

        collecting -> payment_window -> confirmed -> processing -> completed
        any non-terminal phase -> cancelled

    Every check is idempotent: asking for a phase the cycle already holds
    (or has passed) changes nothing.
    """

    valid_transitions = {
        OrderCycle.PHASE_COLLECTING: [
            OrderCycle.PHASE_PAYMENT_WINDOW, OrderCycle.PHASE_CANCELLED],
        OrderCycle.PHASE_PAYMENT_WINDOW: [
            OrderCycle.PHASE_CONFIRMED, OrderCycle.PHASE_CANCELLED],
        OrderCycle.PHASE_CONFIRMED: [
            OrderCycle.PHASE_PROCESSING, OrderCycle.PHASE_CANCELLED],
        OrderCycle.PHASE_PROCESSING: [
            OrderCycle.PHASE_COMPLETED, OrderCycle.PHASE_CANCELLED],
        OrderCycle.PHASE_COMPLETED: [],  # Terminal state
        OrderCycle.PHASE_CANCELLED: [],  # Terminal state
    }

    phase_order = [
        OrderCycle.PHASE_COLLECTING,
        OrderCycle.PHASE_PAYMENT_WINDOW,
        OrderCycle.PHASE_CONFIRMED,
        OrderCycle.PHASE_PROCESSING,
        OrderCycle.PHASE_COMPLETED,
    ]

    # Admin advance steps (no timers)
    fulfilment_steps = {
        OrderCycle.PHASE_CONFIRMED: OrderCycle.PHASE_PROCESSING,
        OrderCycle.PHASE_PROCESSING: OrderCycle.PHASE_COMPLETED,
    }

    def __init__(self, store: Optional[CycleStore] = None):
        super().__init__()
        self.store = store or CycleStore()

    # ------------------------------------------------------------------
    # Steps run inside a store transaction
    # ------------------------------------------------------------------

    def active_participants(self, cycle: OrderCycle) -> List[Participant]:
        return list(
            cycle.participants.exclude(
                order_status=Participant.ORDER_CANCELLED
            ).prefetch_related('items').order_by('joined_at', 'id')
        )

    def recompute(self, mutation: CycleMutation) -> List[Participant]:
        """
        Rebuild aggregates and totals from active participants, then
        re-evaluate product minimums. Returns the active participants.
        """
        cycle = mutation.cycle
        active = self.active_participants(cycle)
        was_met = cycle.min_quantity_met

        cycle.product_aggregates = thresholds.aggregate_items(
            [item.as_dict() for item in participant.items.all()]
            for participant in active
        )
        cycle.total_amount = sum(
            (participant.total_amount for participant in active),
            Decimal('0.00')
        )
        cycle.total_participants = len(active)
        cycle.min_quantity_met = thresholds.evaluate(cycle.product_aggregates)
        mutation.mark_dirty()

        if cycle.min_quantity_met and not was_met and cycle.is_open:
            mutation.emit(ThresholdReached(
                cycle.id,
                [participant.user_id for participant in active],
                total_amount=str(cycle.total_amount)
            ))

        return active

    def apply_due_deadlines(self, mutation: CycleMutation) -> None:
        """Apply whichever deadline transitions have come due."""
        cycle = mutation.cycle
        if cycle.phase == OrderCycle.PHASE_COLLECTING and is_due(cycle, mutation.now):
            self.open_payment_window(mutation, reason='collecting_deadline')
        if cycle.phase == OrderCycle.PHASE_PAYMENT_WINDOW and is_due(cycle, mutation.now):
            self.close_payment_window(mutation)

    def open_payment_window(self, mutation: CycleMutation, reason: str) -> None:
        cycle = mutation.cycle
        if cycle.phase != OrderCycle.PHASE_COLLECTING:
            return

        active = self.recompute(mutation)
        if not active:
            self.cancel(mutation, reason='no_participants')
            return

        self._move(mutation, OrderCycle.PHASE_PAYMENT_WINDOW, reason)
        cycle.payment_window_opened_at = mutation.now
        cycle.payment_window_ends_at = mutation.now + timedelta(
            hours=cycle.group.get_payment_window_hours()
        )
        cycle.open_product_ids = sorted(cycle.product_aggregates.keys())

        mutation.emit(PaymentWindowOpened(
            cycle.id,
            [participant.user_id for participant in active],
            payment_window_ends_at=cycle.payment_window_ends_at.isoformat(),
            total_amount=str(cycle.total_amount)
        ))

    def close_payment_window(self, mutation: CycleMutation) -> None:
        """
        Payment deadline: drop unpaid participants, re-evaluate minimums,
        then confirm or cancel.
        """
        cycle = mutation.cycle
        if cycle.phase != OrderCycle.PHASE_PAYMENT_WINDOW:
            return

        dropped = []
        for participant in self.active_participants(cycle):
            if participant.payment_status != Participant.PAYMENT_PAID:
                participant.order_status = Participant.ORDER_CANCELLED
                participant.cancellation_reason = Participant.REASON_UNPAID
                participant.save(update_fields=[
                    'order_status', 'cancellation_reason', 'updated_at'])
                dropped.append(participant.user_id)

        if dropped:
            self.log_info(
                f"Dropped {len(dropped)} unpaid participants from cycle {cycle.id}",
                cycle_id=cycle.id,
                user_ids=dropped
            )

        survivors = self.recompute(mutation)

        if survivors and cycle.min_quantity_met:
            self.confirm(mutation)
        elif survivors:
            self.cancel(mutation, reason='minimum_not_met')
        else:
            self.cancel(mutation, reason='no_paid_participants')

    def check_all_paid(self, mutation: CycleMutation) -> bool:
        """
        Confirm early once every active participant has paid and every
        product minimum holds. Returns True when the cycle was confirmed.
        """
        cycle = mutation.cycle
        if cycle.phase != OrderCycle.PHASE_PAYMENT_WINDOW:
            return False

        active = self.active_participants(cycle)
        if not active:
            return False
        if any(p.payment_status != Participant.PAYMENT_PAID for p in active):
            return False
        if not cycle.min_quantity_met:
            self.log_info(
                f"All participants paid in cycle {cycle.id} but minimums are not met",
                cycle_id=cycle.id,
                unmet=thresholds.unmet_products(cycle.product_aggregates)
            )
            return False

        self.confirm(mutation)
        return True

    def confirm(self, mutation: CycleMutation) -> None:
        cycle = mutation.cycle
        self._move(mutation, OrderCycle.PHASE_CONFIRMED)
        cycle.confirmed_at = mutation.now

        survivors = self.active_participants(cycle)
        for participant in survivors:
            participant.order_status = Participant.ORDER_CONFIRMED
            participant.save(update_fields=['order_status', 'updated_at'])

        mutation.emit(OrderConfirmed(
            cycle.id,
            [participant.user_id for participant in survivors],
            total_amount=str(cycle.total_amount)
        ))

    def cancel(self, mutation: CycleMutation, reason: str) -> bool:
        """
        Cancel the cycle and schedule refunds for paid participants.
        Returns False when the cycle was already terminal.
        """
        cycle = mutation.cycle
        if cycle.is_terminal:
            return False

        self._move(mutation, OrderCycle.PHASE_CANCELLED, reason)
        cycle.cancelled_at = mutation.now
        cycle.cancellation_reason = reason
        cycle.is_archived = True
        # Totals keep what was ordered at the moment of cancelling
        self.recompute(mutation)

        notified = []
        has_payments = False
        for participant in self.active_participants(cycle):
            participant.order_status = Participant.ORDER_CANCELLED
            participant.cancellation_reason = Participant.REASON_CYCLE_CANCELLED
            participant.save(update_fields=[
                'order_status', 'cancellation_reason', 'updated_at'])
            notified.append(participant.user_id)
            if participant.payment_status == Participant.PAYMENT_PAID:
                has_payments = True

        mutation.emit(CycleCancelled(cycle.id, notified, reason=reason))

        if has_payments:
            cycle_id = cycle.id

            def schedule_refunds():
                from apps.payments.tasks import refund_cycle_payments
                refund_cycle_payments.delay(cycle_id)

            mutation.after_commit(schedule_refunds)

        return True

    def advance(self, mutation: CycleMutation, target_phase: Optional[str] = None) -> bool:
        """
        Admin fulfilment step: confirmed -> processing -> completed.
        Returns False when the cycle is already at or past target_phase.
        """
        cycle = mutation.cycle

        if target_phase is not None and self._reached(cycle.phase, target_phase):
            return False
        if cycle.phase == OrderCycle.PHASE_COMPLETED:
            return False

        next_phase = self.fulfilment_steps.get(cycle.phase)
        if next_phase is None:
            raise ConflictError(f"Cannot advance a cycle that is {cycle.phase}")
        if target_phase is not None and target_phase != next_phase:
            raise ConflictError(
                f"Cannot move from {cycle.phase} to {target_phase}"
            )

        old_phase = cycle.phase
        self._move(mutation, next_phase)

        if next_phase == OrderCycle.PHASE_PROCESSING:
            cycle.processing_at = mutation.now
        else:
            cycle.completed_at = mutation.now
            cycle.is_archived = True
            for participant in self.active_participants(cycle):
                participant.order_status = Participant.ORDER_DELIVERED
                participant.save(update_fields=['order_status', 'updated_at'])

        mutation.emit(PhaseChanged(
            cycle.id,
            [p.user_id for p in self.active_participants(cycle)],
            old_phase=old_phase,
            new_phase=next_phase
        ))
        return True

    def _reached(self, current: str, target: str) -> bool:
        if current == OrderCycle.PHASE_CANCELLED or target not in self.phase_order:
            return current == target
        if current not in self.phase_order:
            return False
        return self.phase_order.index(current) >= self.phase_order.index(target)

    def _move(self, mutation: CycleMutation, new_phase: str, reason: Optional[str] = None) -> None:
        cycle = mutation.cycle
        old_phase = cycle.phase

        if new_phase not in self.valid_transitions.get(old_phase, []):
            raise ConflictError(
                f"Invalid phase transition from {old_phase} to {new_phase}"
            )

        cycle.phase = new_phase
        mutation.mark_dirty()

        self.log_info(
            "Cycle phase updated",
            cycle_id=cycle.id,
            old_phase=old_phase,
            new_phase=new_phase,
            reason=reason
        )

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    def close_collecting(self, cycle_id: int, actor, now=None) -> ServiceResult:
        """
        Close ordering early and open the payment window.

        Args:
            cycle_id: OrderCycle ID
            actor: Requesting user (admin role required)
            now: Clock override

        Returns:
            ServiceResult with the cycle's phase after the call
        """
        def apply(mutation):
            self.apply_due_deadlines(mutation)
            old_phase = mutation.cycle.phase
            if old_phase == OrderCycle.PHASE_COLLECTING:
                self.open_payment_window(mutation, reason='closed_by_admin')
            return old_phase

        return self._run_admin_action('close', cycle_id, actor, apply, now)

    def advance_cycle(self, cycle_id: int, actor, target_phase: Optional[str] = None,
                      now=None) -> ServiceResult:
        def apply(mutation):
            self.apply_due_deadlines(mutation)
            old_phase = mutation.cycle.phase
            self.advance(mutation, target_phase)
            return old_phase

        return self._run_admin_action('advance', cycle_id, actor, apply, now)

    def cancel_cycle(self, cycle_id: int, actor, reason: Optional[str] = None,
                     now=None) -> ServiceResult:
        def apply(mutation):
            old_phase = mutation.cycle.phase
            if old_phase == OrderCycle.PHASE_COMPLETED:
                raise ConflictError("Completed cycles cannot be cancelled")
            self.cancel(mutation, reason=reason or 'cancelled_by_admin')
            return old_phase

        return self._run_admin_action('cancel', cycle_id, actor, apply, now)

    def _run_admin_action(self, action: str, cycle_id: int, actor, apply, now) -> ServiceResult:
        try:
            require_admin(actor)
            old_phase = self.store.transact(cycle_id, apply, now=now)
            cycle = self.store.get(cycle_id)

            self.log_info(
                f"Admin {action} on cycle {cycle_id}",
                cycle_id=cycle_id,
                actor_id=actor.id,
                old_phase=old_phase,
                new_phase=cycle.phase
            )

            return ServiceResult.ok({
                'cycle': cycle,
                'old_phase': old_phase,
                'new_phase': cycle.phase,
                'changed': old_phase != cycle.phase
            })

        except ServiceException as e:
            if e.code == INTERNAL:
                self.log_error(f"Error running {action} on cycle",
                               exception=e, cycle_id=cycle_id)
            return e.to_result()
        except Exception as e:
            self.log_error(
                f"Error running {action} on cycle",
                exception=e,
                cycle_id=cycle_id
            )
            return ServiceResult.fail(
                f"Failed to {action} cycle",
                error_code=INTERNAL
            )
