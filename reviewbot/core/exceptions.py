"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the
gateway and the workers. The executor decides retry vs dead-letter purely
from the exception class, so handlers only need to raise the right one.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"

    # Authentication / credential errors (2xxx)
    AUTH_FAILURE = "ERR_2001"
    TRANSIENT_AUTH_ERROR = "ERR_2002"
    SECRET_UNAVAILABLE = "ERR_2003"

    # Task execution errors (3xxx)
    TRANSIENT_EXECUTION_ERROR = "ERR_3001"
    PERMANENT_EXECUTION_ERROR = "ERR_3002"
    UNKNOWN_TASK_TYPE = "ERR_3003"

    # Broker errors (4xxx)
    PUBLISH_FAILED = "ERR_4001"

    # External service errors (5xxx)
    GITHUB_ERROR = "ERR_5001"
    CIRCLECI_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=ErrorCode.NOT_FOUND,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


# ==================== Credentials ====================


class SecretUnavailable(AppException):
    """Raised when a required secret file is missing, empty or malformed.

    Startup-fatal: neither the gateway nor a worker may run without it.
    The message names the secret kind and path, never the content.
    """

    def __init__(self, kind: str, path: str, reason: str):
        super().__init__(
            message=f"Secret '{kind}' unavailable at {path}: {reason}",
            error_code=ErrorCode.SECRET_UNAVAILABLE,
            status_code=500,
            details={"kind": kind, "path": path, "reason": reason}
        )
        self.kind = kind


class AuthFailure(AppException):
    """Bad webhook signature or rejected credential exchange. Never retried."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_FAILURE,
            status_code=401,
            details=details
        )


class TransientError(AppException):
    """Base class for errors worth retrying with backoff"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.retry_after = retry_after
        if retry_after is not None:
            self.details["retry_after_seconds"] = retry_after


class TransientAuthError(TransientError):
    """Network-level failure while issuing a token"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.TRANSIENT_AUTH_ERROR,
            details=details
        )


class TransientExecutionError(TransientError):
    """Network failure, rate limit or 5xx from a side-effecting call"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.TRANSIENT_EXECUTION_ERROR,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            retry_after=retry_after,
            details=details
        )


class PermanentExecutionError(AppException):
    """Malformed payload or unsupported operation. Dead-lettered, never retried."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.PERMANENT_EXECUTION_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=422,
            details=details
        )


class UnknownTaskTypeError(PermanentExecutionError):
    """Raised when no handler is registered for a task type"""

    def __init__(self, task_type: str):
        super().__init__(
            message=f"No handler registered for task type '{task_type}'",
            error_code=ErrorCode.UNKNOWN_TASK_TYPE,
            details={"task_type": task_type}
        )


class PublishError(AppException):
    """Raised when the broker did not durably accept an envelope"""

    def __init__(self, envelope_id: str, reason: str):
        super().__init__(
            message=f"Failed to publish envelope {envelope_id}: {reason}",
            error_code=ErrorCode.PUBLISH_FAILED,
            status_code=500,
            details={"envelope_id": envelope_id}
        )


# ==================== External services ====================


class ExternalServiceError(TransientExecutionError):
    """Base exception for retryable external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            retry_after=retry_after,
            details=details
        )
        self.details["service"] = service_name


class ServiceTimeoutError(ExternalServiceError):
    """Raised when an external service or a whole task times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class TaskTimeoutError(ServiceTimeoutError):
    """A handler overran TASK_TIMEOUT_SECONDS. Its claim is left to expire, not released."""

    def __init__(self, task_type: str, timeout_seconds: float):
        super().__init__(f"task {task_type}", timeout_seconds)
        self.details["task_type"] = task_type


class CircuitBreakerOpenError(ExternalServiceError):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            retry_after=retry_after_seconds,
        )


def response_excerpt(response: Any, max_response_chars: int = 500) -> dict[str, Any]:
    """Status code and a bounded slice of the body, for error details."""
    status_code = getattr(response, "status_code", None)
    response_text = getattr(response, "text", "") or ""
    return {
        "status_code": status_code,
        "response_text": response_text[:max_response_chars],
    }
