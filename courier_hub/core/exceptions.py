"""
Custom Exception Hierarchy

Structured exceptions shared by the domain services and the API layer.
Every state-machine error is raised synchronously to the invoking actor;
the API renders them through ``AppException.to_dict``.
"""
from typing import Any
from enum import Enum

# Shown to dispatchers/couriers for every recoverable state error
STALE_STATE_MESSAGE = "This delivery is no longer available or is already in a different state"


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Delivery errors (2xxx)
    DELIVERY_NOT_FOUND = "ERR_2001"
    CANDIDATE_NOT_FOUND = "ERR_2006"
    QUEUE_CONTENTION = "ERR_2007"

    # Actor errors (3xxx)
    ACTOR_NOT_FOUND = "ERR_3001"
    COURIER_UNAVAILABLE = "ERR_3005"
    ROSTER_FULL = "ERR_3006"

    # Ledger errors (4xxx)
    INVALID_AMOUNT = "ERR_4003"

    # External service errors (5xxx)
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"
    TRANSPORT_FAILURE = "ERR_5005"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"

    # Integrity errors (7xxx)
    CONSISTENCY_VIOLATION = "ERR_7001"


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


class ForbiddenException(AppException):
    """Raised when the acting profile lacks the role for an operation"""

    def __init__(self, message: str, actor_id: int | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.FORBIDDEN,
            status_code=403,
            details={"actor_id": actor_id} if actor_id is not None else None
        )


class DeliveryNotFoundError(NotFoundException):
    """Raised when delivery is not found"""

    def __init__(self, delivery_id: int):
        super().__init__("Delivery", delivery_id, ErrorCode.DELIVERY_NOT_FOUND)


class ActorNotFoundError(NotFoundException):
    """Raised when a dispatcher/courier profile is not found"""

    def __init__(self, actor_id: int):
        super().__init__("Actor", actor_id, ErrorCode.ACTOR_NOT_FOUND)


class AlreadyExistsError(AppException):
    """A unique field (email, WhatsApp number, table code...) is already taken"""

    def __init__(self, resource: str, field: str, value: Any):
        super().__init__(
            message=f"{resource} with this {field} already exists",
            error_code=ErrorCode.ALREADY_EXISTS,
            status_code=409,
            details={"resource": resource, "field": field, "value": str(value)}
        )


class RosterFull(AppException):
    """The courier roster reached its configured size"""

    def __init__(self, limit: int):
        super().__init__(
            message=f"Courier limit of {limit} reached",
            error_code=ErrorCode.ROSTER_FULL,
            status_code=409,
            details={"limit": limit}
        )


class IllegalTransition(AppException):
    """Precondition on the current delivery status failed - refresh and retry"""

    def __init__(
        self,
        delivery_id: int | None,
        current_status: str | None,
        operation: str,
        reason: str | None = None,
    ):
        details: dict[str, Any] = {
            "delivery_id": delivery_id,
            "current_status": current_status,
            "operation": operation,
        }
        if reason:
            details["reason"] = reason
        super().__init__(
            message=STALE_STATE_MESSAGE,
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            status_code=409,
            details=details
        )
        self.delivery_id = delivery_id
        self.current_status = current_status
        self.operation = operation


class CandidateNotFound(AppException):
    """The candidate was claimed by a concurrent assignment"""

    def __init__(self, reference: dict[str, Any]):
        super().__init__(
            message=STALE_STATE_MESSAGE,
            error_code=ErrorCode.CANDIDATE_NOT_FOUND,
            status_code=409,
            details={"candidate": reference}
        )


class QueueContention(AppException):
    """The establishment queue kept changing while a slot was appended or promoted"""

    def __init__(self, establishment_id: int, attempts: int):
        super().__init__(
            message="The request queue is busy, please retry",
            error_code=ErrorCode.QUEUE_CONTENTION,
            status_code=409,
            details={"establishment_id": establishment_id, "attempts": attempts}
        )


class CourierUnavailable(AppException):
    """The courier's availability read was stale"""

    def __init__(self, courier_id: int):
        super().__init__(
            message=f"Courier {courier_id} is not available",
            error_code=ErrorCode.COURIER_UNAVAILABLE,
            status_code=409,
            details={"courier_id": courier_id}
        )
        self.courier_id = courier_id


class ConsistencyViolation(AppException):
    """Money fields or queue promotion broke an invariant - never repaired silently"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.CONSISTENCY_VIOLATION,
            status_code=500,
            details=details
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class TransportFailure(ExternalServiceException):
    """Notification or realtime delivery failed - logged, never rolled back"""

    def __init__(self, service_name: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} transport error: {message}",
            error_code=ErrorCode.TRANSPORT_FAILURE,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        service_name: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "TransportFailure":
        """Build from an HTTP response (e.g. httpx.Response)"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            service_name,
            f"returned status {status_code}",
            details={
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )
