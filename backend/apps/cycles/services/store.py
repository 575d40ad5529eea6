"""
Transactional access to order cycles.

Every read-modify-write on a cycle goes through CycleStore.transact: the cycle
row is locked, the caller's function runs, and the write is committed only if
the cycle's version has not moved underneath it. Lost races and database lock
errors are retried with exponential backoff and jitter.
"""
import random
import time
from datetime import timedelta
from typing import Any, Callable, Iterator, List, Optional

from django.conf import settings
from django.db import OperationalError, transaction
from django.utils import timezone

from apps.core.services.base import (
    BaseService, NotFoundError, PersistenceError
)
from apps.cycles.models import CycleEvent, OrderCycle


class StaleCycleError(Exception):
    """The cycle's version changed between read and write."""


class CycleMutation:
    """
    Working state handed to a transact() callback.

    Collects domain events and post-commit callbacks; mark_dirty() asks the
    store to write the cycle row back with a bumped version.
    """

    def __init__(self, cycle: OrderCycle, now=None):
        self.cycle = cycle
        self.now = now or timezone.now()
        self.events: List[Any] = []
        self.after_commit_callbacks: List[Callable[[], None]] = []
        self.dirty = False

    def mark_dirty(self) -> None:
        self.dirty = True

    def emit(self, event) -> None:
        self.events.append(event)
        self.dirty = True

    def after_commit(self, callback: Callable[[], None]) -> None:
        self.after_commit_callbacks.append(callback)


class CycleStore(BaseService):
    """
    Wrapper around OrderCycle persistence providing get, query and the
    atomic transact() primitive.
    """

    def __init__(self, dispatcher=None):
        super().__init__()
        self._dispatcher = dispatcher

    @property
    def dispatcher(self):
        if self._dispatcher is None:
            from apps.notifications.dispatcher import EventDispatcher
            self._dispatcher = EventDispatcher()
        return self._dispatcher

    def get(self, cycle_id: int) -> OrderCycle:
        try:
            return OrderCycle.objects.select_related('group').get(pk=cycle_id)
        except OrderCycle.DoesNotExist:
            raise NotFoundError(f"Cycle {cycle_id} not found")

    def query(self, **filters) -> Iterator[OrderCycle]:
        return OrderCycle.objects.filter(**filters).select_related('group').iterator()

    def transact(self, cycle_id: int, fn: Callable[[CycleMutation], Any], now=None) -> Any:
        """
        Run fn against a locked, fresh copy of the cycle and commit atomically.

        Args:
            cycle_id: Cycle to mutate
            fn: Callback receiving a CycleMutation. Raising a ServiceException
                aborts the transaction and propagates unchanged.
            now: Clock override for deadline checks

        Returns:
            Whatever fn returns

        Raises:
            NotFoundError: cycle does not exist
            PersistenceError: write could not commit within the configured attempts
        """
        max_attempts = getattr(settings, 'LEDGER_TRANSACTION_MAX_ATTEMPTS', 5)

        for attempt in range(1, max_attempts + 1):
            try:
                with transaction.atomic():
                    try:
                        cycle = OrderCycle.objects.select_for_update().select_related(
                            'group').get(pk=cycle_id)
                    except OrderCycle.DoesNotExist:
                        raise NotFoundError(f"Cycle {cycle_id} not found")

                    mutation = CycleMutation(cycle, now=now)
                    result = fn(mutation)

                    if mutation.dirty:
                        self._write(cycle)
                        self._record_events(cycle, mutation.events)
                        self.dispatcher.dispatch(mutation.events)
                        for callback in mutation.after_commit_callbacks:
                            transaction.on_commit(callback)

                return result

            except (StaleCycleError, OperationalError) as e:
                if attempt >= max_attempts:
                    self.log_error(
                        f"Cycle {cycle_id} transaction failed after {attempt} attempts",
                        exception=e,
                        cycle_id=cycle_id
                    )
                    raise PersistenceError(
                        "Could not save the order cycle, please retry"
                    )

                delay = self._backoff_delay(attempt)
                self.log_warning(
                    f"Retrying cycle {cycle_id} transaction",
                    cycle_id=cycle_id,
                    attempt=attempt,
                    delay=delay,
                    error=str(e)
                )
                if delay:
                    time.sleep(delay)

    def _write(self, cycle: OrderCycle) -> None:
        """Compare-and-swap the cycle row on its version."""
        expected_version = cycle.version
        cycle.version = expected_version + 1
        cycle.updated_at = timezone.now()

        fields = {
            field.attname: getattr(cycle, field.attname)
            for field in cycle._meta.concrete_fields
            if not field.primary_key and field.name != 'created_at'
        }

        updated = OrderCycle.objects.filter(
            pk=cycle.pk,
            version=expected_version
        ).update(**fields)

        if updated != 1:
            cycle.version = expected_version
            raise StaleCycleError(
                f"Cycle {cycle.pk} changed since version {expected_version}"
            )

    def _record_events(self, cycle: OrderCycle, events) -> None:
        if not events:
            return
        CycleEvent.objects.bulk_create([
            CycleEvent(
                cycle=cycle,
                event_type=event.event_type,
                event_data={'user_ids': event.user_ids, **event.data}
            )
            for event in events
        ])

    def _backoff_delay(self, attempt: int) -> float:
        base = getattr(settings, 'LEDGER_RETRY_BASE_DELAY', 0.05)
        cap = getattr(settings, 'LEDGER_RETRY_MAX_DELAY', 1.0)
        if not base:
            return 0
        delay = min(cap, base * (2 ** (attempt - 1)))
        return delay / 2 + random.uniform(0, delay / 2)

    def create_cycle(self, group, now=None) -> OrderCycle:
        """Open a new collecting cycle for a group (caller holds the group lock)."""
        now = now or timezone.now()

        cycle = OrderCycle.objects.create(
            group=group,
            phase=OrderCycle.PHASE_COLLECTING,
            collecting_ends_at=now + timedelta(hours=group.get_collecting_hours()),
            allow_mid_cycle_joins=group.allow_mid_cycle_joins,
            currency=group.currency,
        )
        CycleEvent.objects.create(
            cycle=cycle,
            event_type='cycle_opened',
            event_data={
                'group_id': group.id,
                'collecting_ends_at': cycle.collecting_ends_at.isoformat(),
            }
        )
        self.log_info(
            f"Opened cycle {cycle.id} for group {group.id}",
            cycle_id=cycle.id,
            group_id=group.id
        )
        return cycle

    def find_open_cycle(self, group_id: int) -> Optional[OrderCycle]:
        return OrderCycle.objects.filter(
            group_id=group_id,
            phase__in=OrderCycle.OPEN_PHASES
        ).order_by('-created_at').first()
