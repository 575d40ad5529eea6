"""
Mapping between service error codes and HTTP responses.
"""
import logging

from rest_framework import status
from rest_framework.exceptions import (
    AuthenticationFailed, NotAuthenticated, NotFound, PermissionDenied,
    ValidationError as DRFValidationError
)
from rest_framework.response import Response
from rest_framework.views import exception_handler

from apps.core.services.base import (
    INVALID_ARGUMENT, UNAUTHENTICATED, PERMISSION_DENIED, NOT_FOUND,
    CONFLICT, INTERNAL, ServiceException, ServiceResult
)

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    INVALID_ARGUMENT: status.HTTP_400_BAD_REQUEST,
    UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    PERMISSION_DENIED: status.HTTP_403_FORBIDDEN,
    NOT_FOUND: status.HTTP_404_NOT_FOUND,
    CONFLICT: status.HTTP_409_CONFLICT,
    INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_for(error_code) -> int:
    return ERROR_STATUS.get(error_code, status.HTTP_400_BAD_REQUEST)


def error_response(result: ServiceResult) -> Response:
    """Build the standard error body for a failed ServiceResult."""
    return Response({
        'error': result.error,
        'error_code': result.error_code
    }, status=status_for(result.error_code))


def api_exception_handler(exc, context):
    """
    DRF exception handler that adds an error_code to every error body.
    Service exceptions that escape a view are mapped the same way as
    failed ServiceResults.
    """
    if isinstance(exc, ServiceException):
        if exc.code == INTERNAL:
            logger.error("Unhandled service error in view", exc_info=exc)
            return error_response(ServiceResult.fail('Internal error', INTERNAL))
        return error_response(exc.to_result())

    response = exception_handler(exc, context)
    if response is None:
        return None

    if isinstance(exc, (NotAuthenticated, AuthenticationFailed)):
        code = UNAUTHENTICATED
    elif isinstance(exc, PermissionDenied):
        code = PERMISSION_DENIED
    elif isinstance(exc, NotFound):
        code = NOT_FOUND
    elif isinstance(exc, DRFValidationError):
        code = INVALID_ARGUMENT
    elif response.status_code >= 500:
        code = INTERNAL
    else:
        code = INVALID_ARGUMENT

    if isinstance(response.data, dict) and 'detail' in response.data:
        response.data = {
            'error': str(response.data['detail']),
            'error_code': code
        }
    else:
        response.data = {
            'error': 'Invalid request',
            'error_code': code,
            'details': response.data
        }
    return response
