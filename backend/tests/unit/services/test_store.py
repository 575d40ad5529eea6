"""
Unit tests for CycleStore.
Tests the locked read-modify-write primitive and its retry behaviour.
"""
import pytest
from django.db import OperationalError
from django.db.models import F

from apps.core.services.base import NotFoundError, PersistenceError, ConflictError
from apps.cycles.models import CycleEvent, OrderCycle, Participant
from apps.cycles.services.store import CycleStore
from apps.notifications.events import OrderPlaced
from tests.conftest import OrderCycleFactory, UserFactory, item


def bump_version_behind_the_store(cycle_id):
    """Simulate a concurrent writer committing between read and write."""
    OrderCycle.objects.filter(pk=cycle_id).update(version=F('version') + 1)


@pytest.mark.django_db
class TestCycleStoreReads:

    def test_get_unknown_cycle_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            store.get(999999)

    def test_query_filters_cycles(self, store):
        collecting = OrderCycleFactory()
        OrderCycleFactory(phase=OrderCycle.PHASE_CONFIRMED)

        results = list(store.query(phase=OrderCycle.PHASE_COLLECTING))

        assert [c.id for c in results] == [collecting.id]

    def test_find_open_cycle_ignores_terminal_cycles(self, store, test_group):
        OrderCycleFactory(group=test_group, phase=OrderCycle.PHASE_CANCELLED)

        assert store.find_open_cycle(test_group.id) is None

        open_cycle = store.create_cycle(test_group)

        assert store.find_open_cycle(test_group.id) == open_cycle
        assert open_cycle.events.filter(event_type='cycle_opened').exists()


@pytest.mark.django_db
class TestCycleStoreTransact:

    def test_dirty_mutation_bumps_version_and_records_events(self, store):
        # Arrange
        cycle = OrderCycleFactory()
        user = UserFactory()

        def fn(mutation):
            mutation.cycle.total_participants = 7
            mutation.emit(OrderPlaced(mutation.cycle.id, [user.id], total_amount='10.00'))
            return 'done'

        # Act
        result = store.transact(cycle.id, fn)

        # Assert
        cycle.refresh_from_db()
        assert result == 'done'
        assert cycle.version == 1
        assert cycle.total_participants == 7
        event = CycleEvent.objects.get(cycle=cycle, event_type='order_placed')
        assert event.event_data['user_ids'] == [user.id]
        assert event.event_data['total_amount'] == '10.00'

    def test_clean_mutation_does_not_write(self, store):
        cycle = OrderCycleFactory()

        store.transact(cycle.id, lambda mutation: None)

        cycle.refresh_from_db()
        assert cycle.version == 0

    def test_lost_race_is_retried_without_losing_updates(self, store):
        """A stale write is rolled back and the function runs again on fresh data."""
        cycle = OrderCycleFactory()
        user = UserFactory()
        attempts = []

        def fn(mutation):
            attempts.append(mutation.cycle.version)
            Participant.objects.create(cycle=mutation.cycle, user=user)
            mutation.cycle.total_participants += 1
            mutation.mark_dirty()
            if len(attempts) == 1:
                bump_version_behind_the_store(mutation.cycle.id)

        store.transact(cycle.id, fn)

        cycle.refresh_from_db()
        assert len(attempts) == 2
        assert cycle.total_participants == 1
        # First attempt's participant was rolled back with its transaction
        assert Participant.objects.filter(cycle=cycle).count() == 1
        assert cycle.version == 1

    def test_persistence_error_after_retries_exhausted(self, store, settings):
        settings.LEDGER_TRANSACTION_MAX_ATTEMPTS = 3
        cycle = OrderCycleFactory()
        calls = []

        def fn(mutation):
            calls.append(1)
            mutation.mark_dirty()
            bump_version_behind_the_store(mutation.cycle.id)

        with pytest.raises(PersistenceError):
            store.transact(cycle.id, fn)

        assert len(calls) == 3

    def test_operational_error_is_retried(self, store):
        cycle = OrderCycleFactory()
        calls = []

        def fn(mutation):
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError('database is locked')
            return 'ok'

        assert store.transact(cycle.id, fn) == 'ok'
        assert len(calls) == 2

    def test_service_exceptions_abort_without_retry(self, store):
        cycle = OrderCycleFactory()
        calls = []

        def fn(mutation):
            calls.append(1)
            mutation.cycle.total_participants = 99
            mutation.mark_dirty()
            raise ConflictError('nope')

        with pytest.raises(ConflictError):
            store.transact(cycle.id, fn)

        cycle.refresh_from_db()
        assert len(calls) == 1
        assert cycle.total_participants == 0

    def test_unknown_cycle_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            store.transact(424242, lambda mutation: None)

    def test_events_are_dispatched_with_the_write(self, mocker):
        dispatcher = mocker.Mock()
        store = CycleStore(dispatcher=dispatcher)
        cycle = OrderCycleFactory()
        event = OrderPlaced(cycle.id, [1], total_amount='5.00')

        store.transact(cycle.id, lambda mutation: mutation.emit(event))

        dispatcher.dispatch.assert_called_once_with([event])

    def test_backoff_delay_is_capped(self, store, settings):
        settings.LEDGER_RETRY_BASE_DELAY = 0.5
        settings.LEDGER_RETRY_MAX_DELAY = 1.0

        delays = [store._backoff_delay(attempt) for attempt in range(1, 6)]

        assert all(0 < delay <= 1.0 for delay in delays)


@pytest.mark.django_db
class TestInterleavedJoins:

    def test_both_joins_count_after_a_stale_write(self, ledger, store, test_group,
                                                  now, mocker):
        """The first join loses its write to the second and re-applies on fresh data."""
        opener, first, second = UserFactory.create_batch(3)
        cycle_id = ledger.place_order(
            test_group.id, opener, [item('rice', 1)], now=now).data['cycle_id']

        original_write = store._write
        writes = []

        def racing_write(cycle):
            writes.append(cycle.version)
            if len(writes) == 1:
                bump_version_behind_the_store(cycle.id)
            return original_write(cycle)

        def second_join_commits(attempt):
            result = ledger.join(cycle_id, second, [item('rice', 4)], now=now)
            assert result.success, result.error
            return 0

        mocker.patch.object(store, '_write', side_effect=racing_write)
        mocker.patch.object(store, '_backoff_delay', side_effect=second_join_commits)

        result = ledger.join(cycle_id, first, [item('rice', 3)], now=now)

        assert result.success, result.error
        cycle = OrderCycle.objects.get(pk=cycle_id)
        assert len(writes) == 3
        assert cycle.product_aggregates['rice']['quantity'] == 1 + 3 + 4
        assert cycle.total_participants == 3
        assert set(cycle.participants.values_list('user_id', flat=True)) == {
            opener.id, first.id, second.id
        }
