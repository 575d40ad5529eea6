"""
Deadline-driven phase transitions.

Deadlines are applied lazily whenever a cycle is read and eagerly by the
periodic advance_due_cycles task. Both go through CycleStore.transact, so
whichever commits first wins and the other is a no-op.
"""
from datetime import timedelta
from typing import Dict, Optional

from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from apps.core.services.base import BaseService, ServiceException
from apps.cycles.models import OrderCycle, Participant
from apps.cycles.services.state_machine import CycleStateMachine, is_due
from apps.cycles.services.store import CycleMutation, CycleStore
from apps.notifications.events import PaymentReminder


class PhaseScheduler(BaseService):
    """
    Applies elapsed collecting and payment deadlines.
    """

    def __init__(self, store: Optional[CycleStore] = None,
                 state_machine: Optional[CycleStateMachine] = None):
        super().__init__()
        self.store = store or CycleStore()
        self.state_machine = state_machine or CycleStateMachine(store=self.store)

    def is_due(self, cycle: OrderCycle, now=None) -> bool:
        return is_due(cycle, now or timezone.now())

    def ensure_current(self, cycle_id: int, now=None) -> OrderCycle:
        """
        Bring a cycle's phase up to date and return the fresh row.

        Raises:
            NotFoundError: cycle does not exist
            PersistenceError: the transition could not commit
        """
        self.store.transact(cycle_id, self.state_machine.apply_due_deadlines, now=now)
        return self.store.get(cycle_id)

    def refresh_if_due(self, cycle: OrderCycle, now=None) -> OrderCycle:
        """Cheap variant for read paths that already hold the row."""
        if not self.is_due(cycle, now):
            return cycle
        return self.ensure_current(cycle.id, now=now)

    def due_cycles(self, now=None):
        now = now or timezone.now()
        return OrderCycle.objects.filter(
            Q(phase=OrderCycle.PHASE_COLLECTING, collecting_ends_at__lte=now) |
            Q(phase=OrderCycle.PHASE_PAYMENT_WINDOW, payment_window_ends_at__lte=now)
        ).order_by('id')

    def advance_due_cycles(self, now=None) -> Dict[str, int]:
        """
        Apply every elapsed deadline.

        Returns:
            Counts of cycles checked, advanced and failed
        """
        now = now or timezone.now()
        stats = {'checked': 0, 'advanced': 0, 'failed': 0}

        for cycle_id, phase in list(self.due_cycles(now).values_list('id', 'phase')):
            stats['checked'] += 1
            try:
                cycle = self.ensure_current(cycle_id, now=now)
                if cycle.phase != phase:
                    stats['advanced'] += 1
            except ServiceException as e:
                stats['failed'] += 1
                self.log_error(
                    f"Could not advance cycle {cycle_id}",
                    exception=e,
                    cycle_id=cycle_id
                )

        if stats['checked']:
            self.log_info("Advanced due cycles", **stats)

        return stats

    def send_payment_reminders(self, now=None) -> Dict[str, int]:
        """
        Remind unpaid participants once when their payment window is about
        to close.
        """
        now = now or timezone.now()
        lead = timedelta(hours=settings.PAYMENT_REMINDER_LEAD_HOURS)
        stats = {'cycles': 0, 'reminded': 0, 'failed': 0}

        cycle_ids = list(OrderCycle.objects.filter(
            phase=OrderCycle.PHASE_PAYMENT_WINDOW,
            payment_window_ends_at__gt=now,
            payment_window_ends_at__lte=now + lead,
        ).values_list('id', flat=True))

        for cycle_id in cycle_ids:
            try:
                reminded = self.store.transact(cycle_id, self._remind, now=now)
                stats['cycles'] += 1
                stats['reminded'] += reminded
            except ServiceException as e:
                stats['failed'] += 1
                self.log_error(
                    f"Could not send reminders for cycle {cycle_id}",
                    exception=e,
                    cycle_id=cycle_id
                )

        return stats

    def _remind(self, mutation: CycleMutation) -> int:
        cycle = mutation.cycle
        if cycle.phase != OrderCycle.PHASE_PAYMENT_WINDOW:
            return 0

        pending = list(cycle.participants.exclude(
            order_status=Participant.ORDER_CANCELLED
        ).exclude(
            payment_status=Participant.PAYMENT_PAID
        ).filter(reminder_sent_at__isnull=True))

        if not pending:
            return 0

        Participant.objects.filter(
            pk__in=[p.pk for p in pending]
        ).update(reminder_sent_at=mutation.now)

        remaining = cycle.payment_window_ends_at - mutation.now
        hours_remaining = max(1, round(remaining.total_seconds() / 3600))

        mutation.emit(PaymentReminder(
            cycle.id,
            [p.user_id for p in pending],
            hours_remaining=str(hours_remaining),
            payment_window_ends_at=cycle.payment_window_ends_at.isoformat()
        ))
        return len(pending)
