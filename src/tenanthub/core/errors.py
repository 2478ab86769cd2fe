"""Error handling module for tenanthub.

This module defines error codes, exception classes, and response models.

Error Response Format:
{
    "error": {
        "code": "INSTANCE_NOT_FOUND",
        "message": "Instance not found"
    }
}

Usage:
    from tenanthub.core.errors import InstanceNotFoundError, InstanceUnavailableError

    # Raise with default message
    raise InstanceNotFoundError()

    # Raise with custom message
    raise InstanceUnavailableError("Instance abc did not wake after 3 attempts")
"""

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Error codes."""

    UNAUTHORIZED = "UNAUTHORIZED"
    INSTANCE_NOT_FOUND = "INSTANCE_NOT_FOUND"
    INVALID_SUBDOMAIN = "INVALID_SUBDOMAIN"
    SUBDOMAIN_TAKEN = "SUBDOMAIN_TAKEN"
    INVALID_INSTANCE_STATE = "INVALID_INSTANCE_STATE"
    INSTANCE_UNAVAILABLE = "INSTANCE_UNAVAILABLE"
    ADMIN_AUTH_FAILED = "ADMIN_AUTH_FAILED"
    PORT_POOL_EXHAUSTED = "PORT_POOL_EXHAUSTED"
    SNAPSHOT_TRANSFER_FAILED = "SNAPSHOT_TRANSFER_FAILED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


class ErrorDetail(BaseModel):
    """Error detail containing code and message."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Error response format."""

    error: ErrorDetail


class TenantHubError(Exception):
    """Base exception for tenanthub.

    All tenanthub specific exceptions should inherit from this class.
    This enables centralized exception handling in FastAPI.

    Attributes:
        code: The error code from ErrorCode enum
        message: Human-readable error message
        status_code: HTTP status code to return
    """

    def __init__(self, code: ErrorCode, message: str, status_code: int) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to ErrorResponse model."""
        return ErrorResponse(
            error=ErrorDetail(code=self.code.value, message=self.message)
        )


class UnauthorizedError(TenantHubError):
    """401 Unauthorized - Authentication required."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(ErrorCode.UNAUTHORIZED, message, 401)


class InstanceNotFoundError(TenantHubError):
    """404 Not Found - Instance not found."""

    def __init__(self, message: str = "Instance not found") -> None:
        super().__init__(ErrorCode.INSTANCE_NOT_FOUND, message, 404)


class InvalidSubdomainError(TenantHubError):
    """422 Unprocessable Entity - Subdomain is not DNS-safe."""

    def __init__(self, message: str = "Subdomain is not a valid DNS label") -> None:
        super().__init__(ErrorCode.INVALID_SUBDOMAIN, message, 422)


class SubdomainTakenError(TenantHubError):
    """409 Conflict - Subdomain already registered."""

    def __init__(self, message: str = "Subdomain already taken") -> None:
        super().__init__(ErrorCode.SUBDOMAIN_TAKEN, message, 409)


class InvalidInstanceStateError(TenantHubError):
    """409 Conflict - Operation not allowed in the current status."""

    def __init__(self, message: str = "Operation not allowed in current instance state") -> None:
        super().__init__(ErrorCode.INVALID_INSTANCE_STATE, message, 409)


class InstanceUnavailableError(TenantHubError):
    """503 Service Unavailable - Instance did not become reachable.

    Raised by the wake gateway after every attempt has seen a
    "not running" signal. Callers never see the underlying transport error.
    """

    def __init__(self, message: str = "Instance unavailable", attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(ErrorCode.INSTANCE_UNAVAILABLE, message, 503)


class AdminAuthError(TenantHubError):
    """502 Bad Gateway - Tenant rejected the admin credentials."""

    def __init__(self, message: str = "Admin authentication failed", upstream_status: int | None = None) -> None:
        self.upstream_status = upstream_status
        super().__init__(ErrorCode.ADMIN_AUTH_FAILED, message, 502)


class PortPoolExhaustedError(TenantHubError):
    """503 Service Unavailable - No free port in the pool."""

    def __init__(self, message: str = "Port pool exhausted") -> None:
        super().__init__(ErrorCode.PORT_POOL_EXHAUSTED, message, 503)


class SnapshotTransferError(TenantHubError):
    """502 Bad Gateway - Snapshot upload/download failed."""

    def __init__(self, message: str = "Snapshot transfer failed") -> None:
        super().__init__(ErrorCode.SNAPSHOT_TRANSFER_FAILED, message, 502)


class ConfigurationError(TenantHubError):
    """500 Internal Server Error - Missing or invalid configuration."""

    def __init__(self, message: str = "Invalid configuration") -> None:
        super().__init__(ErrorCode.CONFIGURATION_ERROR, message, 500)
