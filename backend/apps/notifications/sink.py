"""
Notification sinks.

A sink is fire-and-forget: it reports how many recipients it reached but
never raises for a failed delivery. The default sink pushes over the
Channels layer to per-user and per-cycle rooms.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.conf import settings
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)


def user_room(user_id) -> str:
    return f'user_{user_id}'


def cycle_room(cycle_id) -> str:
    return f'cycle_{cycle_id}'


class NotificationSink:
    """Interface for notification delivery."""

    def send(self, user_id: int, notification: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def send_many(self, user_ids: Iterable[int], notification: Dict[str, Any]) -> int:
        return sum(1 for user_id in user_ids if self.send(user_id, notification))

    def broadcast_cycle(self, cycle_id: int, update: Dict[str, Any]) -> bool:
        """Push a progress/status update to everyone watching a cycle."""
        return False


class ChannelsNotificationSink(NotificationSink):
    """
    Delivers through the Channels layer.
    Users receive messages in room user_<id>; cycle watchers in cycle_<id>.
    """

    def __init__(self, channel_layer=None):
        self.channel_layer = channel_layer or get_channel_layer()
        self.batch_size = getattr(settings, 'NOTIFICATION_BATCH_SIZE', 500)

    def _group_send(self, room: str, message: Dict[str, Any]) -> bool:
        try:
            async_to_sync(self.channel_layer.group_send)(room, message)
            logger.debug(f"Sent {message['type']} to room {room}")
            return True
        except Exception as e:
            logger.error(f"Error sending to room {room}: {e}")
            return False

    def send(self, user_id, notification):
        return self._group_send(user_room(user_id), {
            'type': 'notification.message',
            'data': notification
        })

    def send_many(self, user_ids, notification):
        user_ids = list(user_ids)
        delivered = 0
        for start in range(0, len(user_ids), self.batch_size):
            batch = user_ids[start:start + self.batch_size]
            delivered += sum(1 for user_id in batch if self.send(user_id, notification))
        if delivered < len(user_ids):
            logger.warning(
                f"Delivered {notification.get('title')!r} to {delivered} of "
                f"{len(user_ids)} users"
            )
        return delivered

    def broadcast_cycle(self, cycle_id, update):
        return self._group_send(cycle_room(cycle_id), {
            'type': 'cycle.update',
            'data': _prepare_data_for_json(update)
        })


def _prepare_data_for_json(data: Dict[str, Any]) -> Dict[str, Any]:
    prepared = {}
    for key, value in data.items():
        if isinstance(value, Decimal):
            prepared[key] = str(value)
        elif hasattr(value, 'isoformat'):  # datetime objects
            prepared[key] = value.isoformat()
        else:
            prepared[key] = value
    return prepared


class RecordingNotificationSink(NotificationSink):
    """Keeps every delivery in memory. Used by tests and local shells."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.broadcasts: List[Dict[str, Any]] = []

    def send(self, user_id, notification):
        self.sent.append({'user_id': user_id, 'notification': notification})
        return True

    def broadcast_cycle(self, cycle_id, update):
        self.broadcasts.append({'cycle_id': cycle_id, 'update': update})
        return True


def get_notification_sink() -> NotificationSink:
    sink_class = import_string(
        getattr(settings, 'NOTIFICATION_SINK_CLASS',
                'apps.notifications.sink.ChannelsNotificationSink')
    )
    return sink_class()
