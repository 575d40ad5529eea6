"""
Custom middleware for request logging.
"""
import logging
import time

from django.conf import settings

logger = logging.getLogger('groupbuy.requests')


class RequestLoggingMiddleware:
    """
    Middleware that logs every request with its status and duration.
    Disabled unless REQUEST_LOGGING_ENABLED is set.
    """

    def __init__(self, get_response):
        self.get_response = get_response
        self.enabled = getattr(settings, 'REQUEST_LOGGING_ENABLED', False)

    def __call__(self, request):
        if not self.enabled:
            return self.get_response(request)

        start_time = time.time()

        try:
            response = self.get_response(request)
        except Exception as e:
            logger.error(
                f"ERROR handling request: {request.method} {request.path} "
                f"Error: {e}"
            )
            raise

        duration = time.time() - start_time
        logger.info(
            f"{request.method} {request.path} "
            f"Status: {response.status_code} "
            f"Duration: {duration:.3f}s",
            extra={'context': {
                'user_id': getattr(getattr(request, 'user', None), 'id', None),
                'user_agent': request.META.get('HTTP_USER_AGENT', 'unknown')[:50],
            }}
        )

        return response
