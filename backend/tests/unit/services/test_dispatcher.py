"""
Unit tests for EventDispatcher and notification sinks.
"""
import pytest
from decimal import Decimal

from apps.cycles.models import OrderCycle
from apps.notifications.dispatcher import EventDispatcher
from apps.notifications.events import (
    CycleCancelled, OrderPlaced, PaymentReminder, PhaseChanged, event_from_dict
)
from apps.notifications.models import NotificationLog
from apps.notifications.sink import (
    ChannelsNotificationSink, NotificationSink, RecordingNotificationSink
)
from tests.conftest import OrderCycleFactory, UserFactory, item


class FlakySink(NotificationSink):
    """Reaches every user except the ones listed."""

    def __init__(self, unreachable):
        self.unreachable = set(unreachable)

    def send(self, user_id, notification):
        return user_id not in self.unreachable


class TestEvents:

    def test_notification_payload(self):
        event = PaymentReminder(7, [1, 2], hours_remaining='3')

        notification = event.to_notification()

        assert notification['title'] == 'Payment Reminder'
        assert '3 hours' in notification['body']
        assert notification['data'] == {
            'type': 'payment_reminder', 'cycle_id': '7', 'hours_remaining': '3'
        }

    def test_cancel_body_mentions_reason_and_refund(self):
        body = CycleCancelled(1, [2], reason='minimum_not_met').body()

        assert 'minimum not met' in body
        assert 'refunded' in body

    def test_round_trip_through_task_payload(self):
        event = PhaseChanged(3, [4], old_phase='confirmed', new_phase='processing')

        assert event_from_dict(event.as_dict()) == event

    def test_unknown_event_type(self):
        with pytest.raises(ValueError):
            event_from_dict({'event_type': 'mystery', 'cycle_id': 1})


@pytest.mark.django_db
class TestDispatch:

    def test_nothing_enqueued_until_commit(self, mocker, django_capture_on_commit_callbacks):
        delay = mocker.patch('apps.notifications.tasks.deliver_domain_events.delay')
        dispatcher = EventDispatcher(sink=RecordingNotificationSink())

        with django_capture_on_commit_callbacks() as callbacks:
            dispatcher.dispatch([OrderPlaced(1, [2], total_amount='10.00')])

        delay.assert_not_called()
        assert len(callbacks) == 1

        callbacks[0]()

        delay.assert_called_once()
        payloads = delay.call_args[0][0]
        assert payloads[0]['event_type'] == 'order_placed'

    def test_empty_event_list_schedules_nothing(self, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks() as callbacks:
            EventDispatcher().dispatch([])

        assert callbacks == []

    def test_enqueue_failure_is_logged_not_raised(self, mocker,
                                                  django_capture_on_commit_callbacks):
        mocker.patch(
            'apps.notifications.tasks.deliver_domain_events.delay',
            side_effect=ConnectionError('broker down')
        )
        dispatcher = EventDispatcher(sink=RecordingNotificationSink())

        with django_capture_on_commit_callbacks(execute=True):
            dispatcher.dispatch([OrderPlaced(1, [2])])

    def test_ledger_write_delivers_after_commit(self, ledger, test_group, test_user,
                                                settings, django_capture_on_commit_callbacks):
        settings.NOTIFICATION_SINK_CLASS = 'apps.notifications.sink.RecordingNotificationSink'

        with django_capture_on_commit_callbacks(execute=True):
            result = ledger.place_order(test_group.id, test_user, [item('rice', 2)])

        log = NotificationLog.objects.get(event_type='order_placed')
        assert log.cycle_id == result.data['cycle_id']
        assert log.user_ids == [test_user.id]
        assert log.status == NotificationLog.STATUS_SENT


@pytest.mark.django_db
class TestDeliver:

    def test_sends_to_users_and_broadcasts_cycle_state(self):
        cycle = OrderCycleFactory(total_amount=Decimal('250.00'), total_participants=2)
        sink = RecordingNotificationSink()

        stats = EventDispatcher(sink=sink).deliver([
            OrderPlaced(cycle.id, [11, 12], total_amount='250.00').as_dict()
        ])

        assert stats == {'delivered': 1, 'failed': 0}
        assert [s['user_id'] for s in sink.sent] == [11, 12]
        assert sink.sent[0]['notification']['title'] == 'Order Placed'
        update = sink.broadcasts[0]['update']
        assert update['phase'] == OrderCycle.PHASE_COLLECTING
        assert update['total_participants'] == 2
        assert update['next_deadline'] == cycle.collecting_ends_at

    def test_partial_delivery_is_logged(self, db):
        cycle = OrderCycleFactory()

        EventDispatcher(sink=FlakySink(unreachable=[2])).deliver([
            OrderPlaced(cycle.id, [1, 2]).as_dict()
        ])

        log = NotificationLog.objects.get()
        assert log.status == NotificationLog.STATUS_PARTIAL
        assert log.delivered_count == 1

    def test_nobody_reached_is_a_failure(self, db):
        cycle = OrderCycleFactory()

        stats = EventDispatcher(sink=FlakySink(unreachable=[1])).deliver([
            OrderPlaced(cycle.id, [1]).as_dict()
        ])

        assert stats == {'delivered': 0, 'failed': 1}
        assert NotificationLog.objects.get().status == NotificationLog.STATUS_FAILED

    def test_sink_exception_does_not_stop_other_events(self, mocker, db):
        cycle = OrderCycleFactory()
        sink = RecordingNotificationSink()
        mocker.patch.object(sink, 'broadcast_cycle', side_effect=[RuntimeError('down'), True])

        stats = EventDispatcher(sink=sink).deliver([
            OrderPlaced(cycle.id, [1]).as_dict(),
            OrderPlaced(cycle.id, [2]).as_dict(),
        ])

        assert stats == {'delivered': 1, 'failed': 1}
        failed = NotificationLog.objects.get(status=NotificationLog.STATUS_FAILED)
        assert 'down' in failed.error

    def test_malformed_payload_is_skipped(self, db):
        stats = EventDispatcher(sink=RecordingNotificationSink()).deliver([
            {'event_type': 'mystery', 'cycle_id': 1}
        ])

        assert stats == {'delivered': 0, 'failed': 1}
        assert not NotificationLog.objects.exists()


class TestChannelsSink:

    def test_send_many_batches_and_counts(self, mocker, settings):
        settings.NOTIFICATION_BATCH_SIZE = 2
        layer = mocker.Mock()
        layer.group_send = mocker.AsyncMock()
        sink = ChannelsNotificationSink(channel_layer=layer)

        delivered = sink.send_many([1, 2, 3], {'title': 'Hi'})

        assert delivered == 3
        rooms = [c.args[0] for c in layer.group_send.await_args_list]
        assert rooms == ['user_1', 'user_2', 'user_3']

    def test_layer_errors_are_swallowed(self, mocker):
        layer = mocker.Mock()
        layer.group_send = mocker.AsyncMock(side_effect=RuntimeError('redis down'))
        sink = ChannelsNotificationSink(channel_layer=layer)

        assert sink.send(1, {'title': 'Hi'}) is False

    def test_broadcast_serializes_decimals_and_datetimes(self, mocker, now):
        layer = mocker.Mock()
        layer.group_send = mocker.AsyncMock()
        sink = ChannelsNotificationSink(channel_layer=layer)

        sink.broadcast_cycle(5, {'total_amount': Decimal('9.50'), 'next_deadline': now})

        room, message = layer.group_send.await_args.args
        assert room == 'cycle_5'
        assert message['type'] == 'cycle.update'
        assert message['data'] == {'total_amount': '9.50', 'next_deadline': now.isoformat()}


def test_recording_sink_counts(db):
    sink = RecordingNotificationSink()

    assert sink.send_many([UserFactory().id], {'title': 'x'}) == 1
