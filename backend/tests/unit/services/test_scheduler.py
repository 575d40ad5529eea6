"""
Unit tests for PhaseScheduler.
Tests lazy deadline application, the periodic sweep and payment reminders.
"""
import pytest
from datetime import timedelta

from apps.core.services.base import NotFoundError
from apps.cycles.models import CycleEvent, OrderCycle, Participant
from tests.conftest import OrderCycleFactory, ParticipantFactory, UserFactory, item


@pytest.mark.django_db
class TestLazyDeadlines:
    """A read after a deadline sees the transition; a read before it does not."""

    def test_ensure_current_applies_elapsed_deadline(self, ledger, scheduler,
                                                     test_group, test_user, now):
        cycle_id = ledger.place_order(
            test_group.id, test_user, [item('rice', 1)], now=now).data['cycle_id']

        cycle = scheduler.ensure_current(cycle_id, now=now + timedelta(hours=48))

        assert cycle.phase == OrderCycle.PHASE_PAYMENT_WINDOW

    def test_ensure_current_never_fires_early(self, ledger, scheduler,
                                              test_group, test_user, now):
        cycle_id = ledger.place_order(
            test_group.id, test_user, [item('rice', 1)], now=now).data['cycle_id']

        cycle = scheduler.ensure_current(
            cycle_id, now=now + timedelta(hours=48) - timedelta(seconds=1))

        assert cycle.phase == OrderCycle.PHASE_COLLECTING
        assert cycle.version == 1

    def test_ensure_current_unknown_cycle(self, scheduler):
        with pytest.raises(NotFoundError):
            scheduler.ensure_current(999999)

    def test_refresh_if_due_returns_same_row_when_not_due(self, scheduler, now):
        cycle = OrderCycleFactory(collecting_ends_at=now + timedelta(hours=1))

        assert scheduler.refresh_if_due(cycle, now=now) is cycle

    def test_refresh_if_due_reloads_after_transition(self, scheduler, now):
        cycle = OrderCycleFactory(collecting_ends_at=now - timedelta(minutes=1))

        refreshed = scheduler.refresh_if_due(cycle, now=now)

        assert refreshed is not cycle
        assert refreshed.phase == OrderCycle.PHASE_CANCELLED
        assert refreshed.cancellation_reason == 'no_participants'


@pytest.mark.django_db
class TestAdvanceDueCycles:

    def test_only_due_cycles_are_touched(self, scheduler, now):
        due = OrderCycleFactory(collecting_ends_at=now - timedelta(hours=1))
        ParticipantFactory(cycle=due)
        not_due = OrderCycleFactory(collecting_ends_at=now + timedelta(hours=1))
        OrderCycleFactory(phase=OrderCycle.PHASE_CONFIRMED,
                          collecting_ends_at=now - timedelta(days=3))

        stats = scheduler.advance_due_cycles(now=now)

        assert stats == {'checked': 1, 'advanced': 1, 'failed': 0}
        due.refresh_from_db()
        not_due.refresh_from_db()
        assert due.phase == OrderCycle.PHASE_PAYMENT_WINDOW
        assert not_due.phase == OrderCycle.PHASE_COLLECTING

    def test_sweep_and_lazy_read_apply_transition_once(self, ledger, scheduler,
                                                      test_group, test_user, now):
        cycle_id = ledger.place_order(
            test_group.id, test_user, [item('rice', 1)], now=now).data['cycle_id']
        later = now + timedelta(hours=48)

        scheduler.ensure_current(cycle_id, now=later)
        stats = scheduler.advance_due_cycles(now=later)

        assert stats['checked'] == 0
        assert CycleEvent.objects.filter(
            cycle_id=cycle_id, event_type='payment_window_opened').count() == 1

    def test_payment_deadline_is_swept(self, scheduler, now):
        cycle = OrderCycleFactory(
            phase=OrderCycle.PHASE_PAYMENT_WINDOW,
            collecting_ends_at=now - timedelta(hours=30),
            payment_window_ends_at=now - timedelta(minutes=5),
        )
        ParticipantFactory(cycle=cycle, payment_status=Participant.PAYMENT_PENDING)

        stats = scheduler.advance_due_cycles(now=now)

        assert stats['advanced'] == 1
        cycle.refresh_from_db()
        assert cycle.phase == OrderCycle.PHASE_CANCELLED
        assert cycle.cancellation_reason == 'no_paid_participants'

    def test_failures_are_counted_and_sweep_continues(self, scheduler, mocker, now):
        first = OrderCycleFactory(collecting_ends_at=now - timedelta(hours=2))
        second = OrderCycleFactory(collecting_ends_at=now - timedelta(hours=1))
        original = scheduler.ensure_current

        def flaky(cycle_id, now=None):
            if cycle_id == first.id:
                raise NotFoundError("gone")
            return original(cycle_id, now=now)

        mocker.patch.object(scheduler, 'ensure_current', side_effect=flaky)

        stats = scheduler.advance_due_cycles(now=now)

        assert stats == {'checked': 2, 'advanced': 1, 'failed': 1}
        second.refresh_from_db()
        assert second.phase == OrderCycle.PHASE_CANCELLED


@pytest.mark.django_db
class TestPaymentReminders:

    @pytest.fixture
    def closing_cycle(self, now):
        """Payment window closing in three hours with two unpaid and one paid."""
        cycle = OrderCycleFactory(
            phase=OrderCycle.PHASE_PAYMENT_WINDOW,
            collecting_ends_at=now - timedelta(hours=21),
            payment_window_ends_at=now + timedelta(hours=3),
        )
        unpaid = ParticipantFactory.create_batch(2, cycle=cycle)
        ParticipantFactory(cycle=cycle, payment_status=Participant.PAYMENT_PAID)
        ParticipantFactory(cycle=cycle, order_status=Participant.ORDER_CANCELLED)
        return cycle, unpaid

    def test_unpaid_participants_reminded_once(self, scheduler, closing_cycle, now):
        cycle, unpaid = closing_cycle

        first = scheduler.send_payment_reminders(now=now)
        second = scheduler.send_payment_reminders(now=now + timedelta(minutes=30))

        assert first == {'cycles': 1, 'reminded': 2, 'failed': 0}
        assert second['reminded'] == 0
        event = CycleEvent.objects.get(cycle=cycle, event_type='payment_reminder')
        assert sorted(event.event_data['user_ids']) == sorted(p.user_id for p in unpaid)
        assert event.event_data['hours_remaining'] == '3'
        assert Participant.objects.filter(
            cycle=cycle, reminder_sent_at=now).count() == 2

    def test_windows_outside_lead_time_skipped(self, scheduler, now):
        cycle = OrderCycleFactory(
            phase=OrderCycle.PHASE_PAYMENT_WINDOW,
            collecting_ends_at=now - timedelta(hours=1),
            payment_window_ends_at=now + timedelta(hours=23),
        )
        ParticipantFactory(cycle=cycle)

        stats = scheduler.send_payment_reminders(now=now)

        assert stats['cycles'] == 0
        assert not CycleEvent.objects.filter(event_type='payment_reminder').exists()

    def test_rejoined_participant_is_reminded_again(self, ledger, scheduler,
                                                    mid_cycle_group, now):
        user = UserFactory()
        cycle_id = ledger.place_order(
            mid_cycle_group.id, user, [item('rice', 1)], now=now).data['cycle_id']
        scheduler.ensure_current(cycle_id, now=now + timedelta(hours=48))
        reminder_time = now + timedelta(hours=70)
        scheduler.send_payment_reminders(now=reminder_time)

        # Cancelled entries reset their reminder when they order again
        Participant.objects.filter(cycle_id=cycle_id, user=user).update(
            order_status=Participant.ORDER_CANCELLED)
        ledger.join(cycle_id, user, [item('rice', 1)], now=reminder_time)

        stats = scheduler.send_payment_reminders(now=reminder_time + timedelta(minutes=1))

        assert stats['reminded'] == 1
