"""
Post-commit fan-out of domain events.

dispatch() is called inside a store transaction and only schedules work
with transaction.on_commit; a rolled-back mutation therefore never
notifies anyone. Delivery itself runs in the deliver_domain_events task.
"""
from typing import Any, Dict, Iterable, List, Optional

from django.db import transaction

from apps.core.services.base import BaseService
from apps.notifications.events import DomainEvent, event_from_dict
from apps.notifications.models import NotificationLog
from apps.notifications.sink import NotificationSink, get_notification_sink


class EventDispatcher(BaseService):
    """
    Hands committed domain events to the notification sink.
    """

    def __init__(self, sink: Optional[NotificationSink] = None):
        super().__init__()
        self._sink = sink

    @property
    def sink(self) -> NotificationSink:
        if self._sink is None:
            self._sink = get_notification_sink()
        return self._sink

    def dispatch(self, events: Iterable[DomainEvent]) -> None:
        payloads = [event.as_dict() for event in events]
        if not payloads:
            return

        def enqueue():
            from apps.notifications.tasks import deliver_domain_events
            try:
                deliver_domain_events.delay(payloads)
            except Exception as e:
                # Ledger state is already committed; delivery is best effort
                self.log_error(
                    "Could not enqueue domain events",
                    exception=e,
                    event_types=[p['event_type'] for p in payloads]
                )

        transaction.on_commit(enqueue)

    def deliver(self, payloads: List[Dict[str, Any]]) -> Dict[str, int]:
        """
        Render and send each event, then broadcast the cycle's state.

        Returns:
            Counts of events delivered and failed
        """
        stats = {'delivered': 0, 'failed': 0}

        for payload in payloads:
            try:
                event = event_from_dict(payload)
            except (ValueError, KeyError, TypeError) as e:
                stats['failed'] += 1
                self.log_error("Skipping malformed domain event",
                               exception=e, payload=payload)
                continue

            notification = event.to_notification()
            delivered = 0
            error = ''

            try:
                if event.user_ids:
                    delivered = self.sink.send_many(event.user_ids, notification)
                self.sink.broadcast_cycle(
                    event.cycle_id, self._cycle_update(event))
            except Exception as e:
                error = str(e)
                self.log_error(
                    f"Error delivering {event.event_type}",
                    exception=e,
                    cycle_id=event.cycle_id
                )

            if error or (event.user_ids and delivered == 0):
                log_status = NotificationLog.STATUS_FAILED
                stats['failed'] += 1
            elif delivered < len(event.user_ids):
                log_status = NotificationLog.STATUS_PARTIAL
                stats['delivered'] += 1
            else:
                log_status = NotificationLog.STATUS_SENT
                stats['delivered'] += 1

            NotificationLog.objects.create(
                event_type=event.event_type,
                cycle_id=event.cycle_id,
                user_ids=event.user_ids,
                title=notification['title'],
                status=log_status,
                delivered_count=delivered,
                error=error
            )

        return stats

    def _cycle_update(self, event: DomainEvent) -> Dict[str, Any]:
        from apps.cycles.models import OrderCycle

        update = {'event': event.event_type, 'cycle_id': event.cycle_id}
        cycle = OrderCycle.objects.filter(pk=event.cycle_id).only(
            'phase', 'total_amount', 'total_participants', 'min_quantity_met',
            'collecting_ends_at', 'payment_window_ends_at'
        ).first()
        if cycle is not None:
            update.update({
                'phase': cycle.phase,
                'total_amount': cycle.total_amount,
                'total_participants': cycle.total_participants,
                'min_quantity_met': cycle.min_quantity_met,
                'next_deadline': cycle.next_deadline,
            })
        return update
