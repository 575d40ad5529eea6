"""
WebSocket consumer for real-time notifications and cycle progress.
"""
import logging
from typing import Any, Dict, Optional
from urllib.parse import parse_qs

from channels.generic.websocket import AsyncJsonWebsocketConsumer
from channels.db import database_sync_to_async

from .sink import cycle_room, user_room

logger = logging.getLogger(__name__)


class NotificationConsumer(AsyncJsonWebsocketConsumer):
    """
    Per-user notification stream with optional cycle subscription.

    Message Types:
    - subscribe: Watch a cycle's progress ({"type": "subscribe", "cycle_id": 1})
    - unsubscribe: Stop watching the current cycle
    - ping: Keep-alive message
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.user = None
        self.user_room_name = None
        self.cycle_id = None
        self.cycle_room_name = None

    async def connect(self):
        """
        Accept WebSocket connection if user is authenticated via JWT.
        """
        params = parse_qs(self.scope.get('query_string', b'').decode())
        token = params.get('token', [None])[0]

        self.user = await self.user_for_token(token) if token else None
        if self.user is None:
            logger.warning("WebSocket connection rejected: missing or invalid token")
            await self.close(code=4001)
            return

        self.user_room_name = user_room(self.user.id)
        await self.channel_layer.group_add(self.user_room_name, self.channel_name)

        await self.accept()

        await self.send_json({
            'type': 'connection_established',
            'data': {
                'message': 'Connected to order cycle notifications',
                'authenticated': True,
                'user_id': self.user.id
            }
        })

        logger.info(
            f"WebSocket connection established for user: {self.user.id}")

    async def disconnect(self, close_code):
        if self.user_room_name:
            await self.channel_layer.group_discard(
                self.user_room_name,
                self.channel_name
            )
        if self.cycle_room_name:
            await self.channel_layer.group_discard(
                self.cycle_room_name,
                self.channel_name
            )

    async def receive_json(self, content, **kwargs):
        message_type = content.get('type')

        if message_type == 'subscribe':
            await self.handle_subscribe(content)
        elif message_type == 'unsubscribe':
            await self.handle_unsubscribe(content)
        elif message_type == 'ping':
            await self.send_json({'type': 'pong'})
        else:
            await self.send_json({
                'type': 'error',
                'data': {'message': f'Unknown message type: {message_type}'}
            })

    async def handle_subscribe(self, content):
        new_cycle_id = content.get('cycle_id')

        if not new_cycle_id:
            await self.send_json({
                'type': 'error',
                'data': {'message': 'Cycle ID required'}
            })
            return

        cycle_data = await self.get_cycle_data(new_cycle_id)
        if cycle_data is None:
            await self.send_json({
                'type': 'error',
                'data': {'message': 'Cycle not found'}
            })
            return

        # Only one watched cycle per connection
        if self.cycle_room_name:
            await self.channel_layer.group_discard(
                self.cycle_room_name,
                self.channel_name
            )

        self.cycle_id = new_cycle_id
        self.cycle_room_name = cycle_room(new_cycle_id)
        await self.channel_layer.group_add(self.cycle_room_name, self.channel_name)

        await self.send_json({
            'type': 'subscribed',
            'data': {
                'cycle_id': new_cycle_id,
                'current_state': cycle_data
            }
        })
        logger.info(f"User {self.user.id} subscribed to cycle {new_cycle_id}")

    async def handle_unsubscribe(self, content):
        if self.cycle_room_name:
            await self.channel_layer.group_discard(
                self.cycle_room_name,
                self.channel_name
            )
            await self.send_json({
                'type': 'unsubscribed',
                'data': {'cycle_id': self.cycle_id}
            })
            self.cycle_id = None
            self.cycle_room_name = None

    # Channel layer message handlers

    async def notification_message(self, event):
        await self.send_json({
            'type': 'notification',
            'data': event['data']
        })

    async def cycle_update(self, event):
        await self.send_json({
            'type': 'cycle_update',
            'data': event['data']
        })

    # Database access methods

    @database_sync_to_async
    def user_for_token(self, token: str):
        """Active user named by a valid access token, else None."""
        from django.contrib.auth import get_user_model
        from rest_framework_simplejwt.exceptions import TokenError
        from rest_framework_simplejwt.tokens import AccessToken

        try:
            user_id = AccessToken(token).get('user_id')
        except TokenError as e:
            logger.info(f"Token validation failed: {e}")
            return None

        return get_user_model().objects.filter(id=user_id, is_active=True).first()

    @database_sync_to_async
    def get_cycle_data(self, cycle_id) -> Optional[Dict[str, Any]]:
        from apps.cycles.models import OrderCycle

        try:
            cycle = OrderCycle.objects.get(id=int(cycle_id))
        except (OrderCycle.DoesNotExist, ValueError, TypeError):
            return None

        next_deadline = cycle.next_deadline
        return {
            'cycle_id': cycle.id,
            'phase': cycle.phase,
            'total_amount': str(cycle.total_amount),
            'total_participants': cycle.total_participants,
            'min_quantity_met': cycle.min_quantity_met,
            'next_deadline': next_deadline.isoformat() if next_deadline else None,
        }
