"""
Unit tests for NotificationConsumer WebSocket handler.
Tests connection, cycle subscription and message delivery.
"""
import pytest

from channels.testing import WebsocketCommunicator
from channels.layers import get_channel_layer
from channels.db import database_sync_to_async
from rest_framework_simplejwt.tokens import AccessToken

from apps.notifications.consumers import NotificationConsumer
from tests.conftest import OrderCycleFactory


def get_jwt_token(user):
    """Helper to generate JWT token for testing."""
    token = AccessToken.for_user(user)
    return str(token)


async def connect(user):
    communicator = WebsocketCommunicator(
        NotificationConsumer.as_asgi(),
        f"/ws/notifications/?token={get_jwt_token(user)}"
    )
    connected, _ = await communicator.connect()
    assert connected is True
    await communicator.receive_json_from()  # Connection message
    return communicator


@database_sync_to_async
def create_cycle():
    return OrderCycleFactory()


@pytest.mark.django_db(transaction=True)
@pytest.mark.asyncio
class TestNotificationConsumerConnection:
    """Test WebSocket connection handling."""

    async def test_anonymous_user_cannot_connect(self):
        communicator = WebsocketCommunicator(
            NotificationConsumer.as_asgi(),
            "/ws/notifications/"
        )

        connected, _ = await communicator.connect()

        assert connected is False

    async def test_invalid_token_is_rejected(self):
        communicator = WebsocketCommunicator(
            NotificationConsumer.as_asgi(),
            "/ws/notifications/?token=not-a-jwt"
        )

        connected, _ = await communicator.connect()

        assert connected is False

    async def test_authenticated_user_can_connect(self, test_user):
        """Test that authenticated users can connect with valid JWT token."""
        communicator = WebsocketCommunicator(
            NotificationConsumer.as_asgi(),
            f"/ws/notifications/?token={get_jwt_token(test_user)}"
        )

        connected, _ = await communicator.connect()
        assert connected is True

        response = await communicator.receive_json_from()
        assert response['type'] == 'connection_established'
        assert response['data']['user_id'] == test_user.id

        await communicator.disconnect()

    async def test_ping(self, test_user):
        communicator = await connect(test_user)

        await communicator.send_json_to({'type': 'ping'})

        assert await communicator.receive_json_from() == {'type': 'pong'}
        await communicator.disconnect()

    async def test_unknown_message_type(self, test_user):
        communicator = await connect(test_user)

        await communicator.send_json_to({'type': 'dance'})

        response = await communicator.receive_json_from()
        assert response['type'] == 'error'
        await communicator.disconnect()


@pytest.mark.django_db(transaction=True)
@pytest.mark.asyncio
class TestCycleSubscription:
    """Test cycle subscription functionality."""

    async def test_subscribe_returns_current_state(self, test_user):
        cycle = await create_cycle()
        communicator = await connect(test_user)

        await communicator.send_json_to({'type': 'subscribe', 'cycle_id': cycle.id})

        response = await communicator.receive_json_from()
        assert response['type'] == 'subscribed'
        assert response['data']['cycle_id'] == cycle.id
        state = response['data']['current_state']
        assert state['phase'] == 'collecting'
        assert state['total_amount'] == '0.00'
        assert state['next_deadline'] is not None

        await communicator.disconnect()

    async def test_subscribe_to_missing_cycle(self, test_user):
        communicator = await connect(test_user)

        await communicator.send_json_to({'type': 'subscribe', 'cycle_id': 99999})

        response = await communicator.receive_json_from()
        assert response['type'] == 'error'
        assert 'not found' in response['data']['message'].lower()

        await communicator.disconnect()

    async def test_unsubscribe(self, test_user):
        cycle = await create_cycle()
        communicator = await connect(test_user)
        await communicator.send_json_to({'type': 'subscribe', 'cycle_id': cycle.id})
        await communicator.receive_json_from()

        await communicator.send_json_to({'type': 'unsubscribe'})

        response = await communicator.receive_json_from()
        assert response['type'] == 'unsubscribed'
        assert response['data']['cycle_id'] == cycle.id

        await communicator.disconnect()


@pytest.mark.django_db(transaction=True)
@pytest.mark.asyncio
class TestDelivery:
    """Test messages pushed through the channel layer."""

    async def test_user_notification_is_delivered(self, test_user):
        communicator = await connect(test_user)

        await get_channel_layer().group_send(
            f'user_{test_user.id}',
            {
                'type': 'notification.message',
                'data': {'title': 'Order Placed', 'body': 'Added', 'data': {}}
            }
        )

        response = await communicator.receive_json_from()
        assert response['type'] == 'notification'
        assert response['data']['title'] == 'Order Placed'

        await communicator.disconnect()

    async def test_cycle_update_reaches_subscribers(self, test_user):
        cycle = await create_cycle()
        communicator = await connect(test_user)
        await communicator.send_json_to({'type': 'subscribe', 'cycle_id': cycle.id})
        await communicator.receive_json_from()

        await get_channel_layer().group_send(
            f'cycle_{cycle.id}',
            {
                'type': 'cycle.update',
                'data': {'cycle_id': cycle.id, 'phase': 'payment_window'}
            }
        )

        response = await communicator.receive_json_from()
        assert response['type'] == 'cycle_update'
        assert response['data']['phase'] == 'payment_window'

        await communicator.disconnect()


@pytest.mark.asyncio
async def test_health_probe_bypasses_django():
    from channels.testing import HttpCommunicator
    from groupbuy.asgi import application

    communicator = HttpCommunicator(application, 'GET', '/health')
    response = await communicator.get_response()

    assert response['status'] == 200
    assert response['body'] == b'OK'
