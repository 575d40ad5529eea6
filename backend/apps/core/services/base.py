"""
Base service class and utilities for all services.
Provides common functionality like logging and error handling.
"""
import logging
from typing import Any, Dict, Optional


# Error codes surfaced to API callers. Every ServiceException carries one.
INVALID_ARGUMENT = 'invalid-argument'
UNAUTHENTICATED = 'unauthenticated'
PERMISSION_DENIED = 'permission-denied'
NOT_FOUND = 'not-found'
CONFLICT = 'conflict'
INTERNAL = 'internal'


class BaseService:
    """
    Base service class that all other services should inherit from.
    Provides common functionality for logging and error handling.
    """

    def __init__(self):
        """Initialize the service with a logger."""
        self.logger = logging.getLogger(self.__class__.__name__)

    def log_info(self, message: str, **kwargs) -> None:
        """
        Log an info message with optional context.

        Args:
            message: The message to log
            **kwargs: Additional context to include in the log
        """
        self.logger.info(message, extra={'context': kwargs})

    def log_error(self, message: str, exception: Optional[Exception] = None, **kwargs) -> None:
        """
        Log an error message with optional exception and context.

        Args:
            message: The error message to log
            exception: Optional exception that caused the error
            **kwargs: Additional context to include in the log
        """
        self.logger.error(
            message,
            exc_info=exception,
            extra={'context': kwargs}
        )

    def log_warning(self, message: str, **kwargs) -> None:
        """
        Log a warning message with optional context.

        Args:
            message: The warning message to log
            **kwargs: Additional context to include in the log
        """
        self.logger.warning(message, extra={'context': kwargs})


class ServiceException(Exception):
    """Base exception for service layer errors."""

    default_code = INTERNAL

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict] = None):
        """
        Initialize service exception.

        Args:
            message: Error message
            code: Optional error code, defaults to the class's code
            details: Optional dictionary with additional error details
        """
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_result(self) -> 'ServiceResult':
        return ServiceResult.fail(self.message, error_code=self.code)


class ValidationError(ServiceException):
    """Raised when service validation fails."""
    default_code = INVALID_ARGUMENT


class AuthError(ServiceException):
    """Raised when the caller's role does not allow the operation."""
    default_code = PERMISSION_DENIED


class NotFoundError(ServiceException):
    """Raised when a cycle, participant or payment does not exist."""
    default_code = NOT_FOUND


class ConflictError(ServiceException):
    """Raised when the operation is invalid for the cycle's current phase."""
    default_code = CONFLICT


class SignatureMismatch(ServiceException):
    """Raised when a payment or webhook signature does not verify. Never retried."""
    default_code = INVALID_ARGUMENT


class ExternalServiceError(ServiceException):
    """Raised when an external service (payment gateway, etc.) fails."""
    default_code = INTERNAL


class GatewayError(ExternalServiceError):
    """Transient payment gateway failure. Safe to retry with the same idempotency key."""
    pass


class PersistenceError(ServiceException):
    """Raised when a store transaction could not commit after bounded retries."""
    default_code = INTERNAL


class ServiceResult:
    """
    A wrapper for service method results that includes success/failure status.
    Useful for operations that might fail but shouldn't raise exceptions.
    """

    def __init__(self, success: bool, data: Optional[Any] = None,
                 error: Optional[str] = None, error_code: Optional[str] = None):
        """
        Initialize service result.

        Args:
            success: Whether the operation succeeded
            data: The result data if successful
            error: Error message if failed
            error_code: Optional error code for categorization
        """
        self.success = success
        self.data = data
        self.error = error
        self.error_code = error_code

    @classmethod
    def ok(cls, data: Any = None) -> 'ServiceResult':
        """
        Create a successful result.

        Args:
            data: The result data

        Returns:
            A successful ServiceResult instance
        """
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, error_code: Optional[str] = None) -> 'ServiceResult':
        """
        Create a failed result.

        Args:
            error: Error message
            error_code: Optional error code

        Returns:
            A failed ServiceResult instance
        """
        return cls(success=False, error=error, error_code=error_code)

    def __bool__(self) -> bool:
        """Allow ServiceResult to be used in boolean context."""
        return self.success

    def __repr__(self) -> str:
        """String representation of the result."""
        if self.success:
            return f"<ServiceResult: Success, data={self.data}>"
        return f"<ServiceResult: Failure, error={self.error}, code={self.error_code}>"
