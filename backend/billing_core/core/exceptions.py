"""
Custom exceptions for the billing core.
"""

from typing import Any, Dict, Optional, List
from http import HTTPStatus


class AppException(Exception):
    """
    Base exception for all application errors.

    Attributes:
        message: Error message
        status_code: HTTP status code
        code: Application error code
        details: Additional error details
    """

    def __init__(
        self,
        message: str,
        status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details
            }
        }

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ConfigurationError(AppException):
    """Raised when credentials or settings are missing or invalid."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        config_key: Optional[str] = None
    ):
        if config_key:
            details = details or {}
            details["config_key"] = config_key
        super().__init__(
            message=message,
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            code="CONFIGURATION_ERROR",
            details=details
        )


class MethodNotSupportedError(AppException):
    """
    Raised when a provider cannot perform an operation at all.

    Store providers cannot create or cancel subscriptions server-side, for
    example. This is a permanent failure and must never be retried.
    """

    def __init__(self, provider: str, operation: str, message: Optional[str] = None):
        self.provider = provider
        self.operation = operation
        super().__init__(
            message=message or f"{operation} is not supported by {provider}",
            status_code=HTTPStatus.BAD_REQUEST,
            code="METHOD_NOT_SUPPORTED",
            details={"provider": provider, "operation": operation}
        )


class VerificationError(AppException):
    """Raised when a signature or a receipt does not verify."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = HTTPStatus.BAD_REQUEST
    ):
        super().__init__(
            message=message,
            status_code=status_code,
            code="VERIFICATION_FAILED",
            details=details
        )


class ProviderError(AppException):
    """
    Base class for failed calls to an external payment provider.

    Args:
        message: Error message
        provider: Provider type value
        http_status: HTTP status returned by the provider, if any
        provider_code: Provider specific error code, if any
        retryable: Whether the call may succeed when repeated
    """

    retryable = False

    def __init__(
        self,
        message: str,
        provider: str,
        http_status: Optional[int] = None,
        provider_code: Optional[str] = None,
        status_code: int = HTTPStatus.BAD_GATEWAY,
        code: str = "PROVIDER_ERROR",
    ):
        self.provider = provider
        self.http_status = http_status
        self.provider_code = provider_code
        super().__init__(
            message=message,
            status_code=status_code,
            code=code,
            details={
                "provider": provider,
                "http_status": http_status,
                "provider_code": provider_code,
            }
        )

    def to_public_dict(self) -> Dict[str, Any]:
        """Error body safe to show to end users."""
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": "The payment provider could not complete the request",
                "details": {"provider": self.provider},
            }
        }


class ProviderFetchError(ProviderError):
    """Transient network or server failure; retry with backoff."""

    retryable = True

    def __init__(
        self,
        message: str,
        provider: str,
        http_status: Optional[int] = None,
        provider_code: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            provider=provider,
            http_status=http_status,
            provider_code=provider_code,
            status_code=HTTPStatus.BAD_GATEWAY,
            code="PROVIDER_UNAVAILABLE",
        )


class ProviderRequestError(ProviderError):
    """The provider rejected the request (4xx). Not retryable."""

    def __init__(
        self,
        message: str,
        provider: str,
        http_status: Optional[int] = None,
        provider_code: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            provider=provider,
            http_status=http_status,
            provider_code=provider_code,
            status_code=HTTPStatus.BAD_GATEWAY,
            code="PROVIDER_REJECTED",
        )


class StateConflictError(AppException):
    """
    Raised when an event contradicts the persisted subscription state.

    Conflicts are recorded in the ledger and handed to reconciliation; they
    are never retried as-is.
    """

    def __init__(
        self,
        current_status: Optional[str],
        event_type: str,
        message: Optional[str] = None
    ):
        self.current_status = current_status
        self.event_type = event_type
        super().__init__(
            message=message or f"Event '{event_type}' is not allowed from status '{current_status}'",
            status_code=HTTPStatus.CONFLICT,
            code="STATE_CONFLICT",
            details={"current_status": current_status, "event_type": event_type}
        )


class SubscriptionError(AppException):
    """Business rule violation in subscription management."""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = HTTPStatus.CONFLICT,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            status_code=status_code,
            code=code,
            details=details
        )


class ValidationError(AppException):
    """Raised when data validation fails."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        field_errors: Optional[Dict[str, List[str]]] = None
    ):
        if field_errors:
            details = details or {}
            details["field_errors"] = field_errors
        super().__init__(
            message=message,
            status_code=HTTPStatus.UNPROCESSABLE_ENTITY,
            code="VALIDATION_ERROR",
            details=details
        )


class DatabaseError(AppException):
    """Raised when there's a database error."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        operation: Optional[str] = None
    ):
        if operation:
            details = details or {}
            details["operation"] = operation
        super().__init__(
            message=message,
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            code="DATABASE_ERROR",
            details=details
        )


class NotFoundError(AppException):
    """Raised when a resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Any,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details.update({
            "resource_type": resource_type,
            "resource_id": str(resource_id)
        })
        super().__init__(
            message=f"{resource_type} not found: {resource_id}",
            status_code=HTTPStatus.NOT_FOUND,
            code="NOT_FOUND",
            details=details
        )


class AuthenticationError(AppException):
    """Raised when authentication fails."""

    def __init__(
        self,
        message: str = "Authentication failed",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            status_code=HTTPStatus.UNAUTHORIZED,
            code="AUTHENTICATION_ERROR",
            details=details
        )
