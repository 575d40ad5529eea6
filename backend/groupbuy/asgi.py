"""
ASGI entrypoint: Django over HTTP, notification sockets over WebSocket.

Sockets authenticate with a JWT in the query string inside the consumer,
so no session middleware is wrapped around the WebSocket router.
"""

import os

os.environ.setdefault('DJANGO_SETTINGS_MODULE',
                      'groupbuy.settings.production')

# isort: off
# The Django app must be built before any model-importing module loads
from django.core.asgi import get_asgi_application  # noqa: E402
django_asgi_app = get_asgi_application()

from apps.notifications import routing  # noqa: E402
from channels.routing import ProtocolTypeRouter, URLRouter  # noqa: E402
from channels.security.websocket import AllowedHostsOriginValidator  # noqa: E402
# isort: on

HEALTH_PATH = '/health'


async def _lifespan(receive, send):
    while True:
        message = await receive()
        if message['type'] == 'lifespan.startup':
            await send({'type': 'lifespan.startup.complete'})
        elif message['type'] == 'lifespan.shutdown':
            await send({'type': 'lifespan.shutdown.complete'})
            return


async def _health(send):
    await send({
        'type': 'http.response.start',
        'status': 200,
        'headers': [[b'content-type', b'text/plain']],
    })
    await send({'type': 'http.response.body', 'body': b'OK'})


def with_health_check(app):
    """
    Answer load-balancer probes and the lifespan protocol before routing.
    ProtocolTypeRouter has no lifespan handler.
    """
    async def wrapper(scope, receive, send):
        if scope['type'] == 'lifespan':
            await _lifespan(receive, send)
            return
        if scope['type'] == 'http' and scope.get('path') == HEALTH_PATH:
            await _health(send)
            return
        await app(scope, receive, send)

    return wrapper


application = with_health_check(ProtocolTypeRouter({
    'http': django_asgi_app,
    'websocket': AllowedHostsOriginValidator(
        URLRouter(routing.websocket_urlpatterns)
    ),
}))
