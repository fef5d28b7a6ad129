"""
Custom Exception Hierarchy

Structured exceptions rendered by the FastAPI handlers in app.core.middleware.
Expected business outcomes (no capacity, no orders) are not exceptions; see
ClaimResult in the capacity allocator.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"

    # Assignment errors (2xxx)
    ASSIGNMENT_NOT_FOUND = "ERR_2001"
    ASSIGNMENT_INVALID_TRANSITION = "ERR_2002"
    REMOTE_STATUS_PRECONDITION = "ERR_2003"
    WORKER_NOT_FOUND = "ERR_2004"
    WORKER_AT_CAPACITY = "ERR_2005"

    # Remote commerce platform errors (5xxx)
    REMOTE_UNAVAILABLE = "ERR_5001"
    REMOTE_TIMEOUT = "ERR_5002"
    REMOTE_REJECTED = "ERR_5003"
    REMOTE_NOT_FOUND = "ERR_5004"


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
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class AssignmentNotFoundError(NotFoundException):
    def __init__(self, assignment_id: str):
        super().__init__("Assignment", assignment_id, error_code=ErrorCode.ASSIGNMENT_NOT_FOUND)


class WorkerNotFoundError(NotFoundException):
    def __init__(self, identifier: Any):
        super().__init__("Worker", identifier, error_code=ErrorCode.WORKER_NOT_FOUND)


class ForbiddenError(AppException):
    """Caller is neither the owner nor holds the required capability"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.FORBIDDEN,
            status_code=403,
            details=details
        )


class InvalidStateTransitionError(AppException):
    """Raised when an assignment transition is not allowed"""

    def __init__(self, current_state: str, target_state: str, assignment_id: str | None = None):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.ASSIGNMENT_INVALID_TRANSITION,
            status_code=409,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "assignment_id": assignment_id,
            }
        )


class RemoteStatusPreconditionError(ValidationException):
    """The last-known remote status does not permit the requested local transition"""

    def __init__(
        self,
        assignment_id: str,
        target_state: str,
        remote_status: str | None,
        allowed: list[str],
    ):
        super().__init__(
            message=(
                f"Cannot move assignment to '{target_state}': remote status "
                f"'{remote_status or 'unknown'}' is not in progress"
            ),
            details={
                "assignment_id": assignment_id,
                "target_state": target_state,
                "remote_status": remote_status,
                "allowed_remote_statuses": allowed,
            },
            error_code=ErrorCode.REMOTE_STATUS_PRECONDITION,
        )


class WorkerAtCapacityError(AppException):
    """Raised by admin reassignment when the target worker has no free slot"""

    def __init__(self, worker_id: int, active_count: int, max_orders: int):
        super().__init__(
            message=f"Worker {worker_id} is at capacity ({active_count}/{max_orders})",
            error_code=ErrorCode.WORKER_AT_CAPACITY,
            status_code=409,
            details={
                "worker_id": worker_id,
                "active_count": active_count,
                "max_orders": max_orders,
            }
        )


class RemoteServiceError(AppException):
    """Base exception for remote commerce platform failures"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.REMOTE_UNAVAILABLE,
        status_code: int = 503,
        details: dict[str, Any] | None = None,
        service_name: str = "commerce",
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        self.details["service"] = service_name

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "RemoteServiceError":
        """Build the error from an httpx.Response, trimming the body for logs"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "remote_status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class RemoteTransientError(RemoteServiceError):
    """5xx / rate limited / network failure after the retry budget"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.REMOTE_UNAVAILABLE,
            status_code=503,
            details=details,
        )


class RemoteTimeoutError(RemoteServiceError):
    """A remote call exceeded its hard timeout"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.REMOTE_TIMEOUT,
            status_code=504,
            details=details,
        )


class RemoteRejectedError(RemoteServiceError):
    """The remote platform refused a write (4xx), or the write could not be made"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.REMOTE_REJECTED,
            status_code=502,
            details=details,
        )


class RemoteNotFoundError(RemoteServiceError):
    """The remote order does not exist"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.REMOTE_NOT_FOUND,
            status_code=404,
            details=details,
        )
