# clinicbook/errors.py
from typing import Any, Dict, Optional


class BookingError(Exception):
    """Base class for errors a caller can act on."""

    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "An unexpected error occurred"
    retryable = False

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "code": self.code, "details": self.details}
        if self.retryable:
            body["retryable"] = True
        return body


class ValidationError(BookingError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Invalid input"

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None, **details: Any):
        if field:
            details["field"] = field
        super().__init__(message, details)


class NotFound(BookingError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"

    def __init__(self, resource: str, resource_id: Any = None):
        super().__init__(f"{resource} not found", {"resource": resource, "id": resource_id})


class ConflictError(BookingError):
    status_code = 409
    code = "CONFLICT"
    default_message = "The request conflicts with the current state"


class SlotUnavailable(ConflictError):
    code = "SLOT_UNAVAILABLE"
    default_message = "Slot no longer available, please choose another"

    def __init__(self, slot_id: Any = None):
        super().__init__(details={"slot_id": slot_id})


class InvalidTransition(ConflictError):
    code = "INVALID_TRANSITION"

    def __init__(self, from_status: Any, to_status: Any, reason: Optional[str] = None):
        self.from_status = getattr(from_status, "value", from_status)
        self.to_status = getattr(to_status, "value", to_status)
        self.reason = reason or "transition not allowed"
        super().__init__(
            f"Cannot change status from {self.from_status} to {self.to_status}: {self.reason}",
            {"from": self.from_status, "to": self.to_status, "reason": self.reason},
        )


class AlreadyPast(BookingError):
    status_code = 400
    code = "ALREADY_PAST"
    default_message = "Cannot cancel past appointments"


class NotCancellable(ConflictError):
    code = "NOT_CANCELLABLE"

    def __init__(self, current_status: Any):
        status_value = getattr(current_status, "value", current_status)
        super().__init__(
            f"Cannot cancel appointment with status {status_value}",
            {"status": status_value},
        )


class ScopeError(BookingError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "You do not have access to this resource"


class TransactionTimeout(ConflictError):
    status_code = 503
    code = "TRANSACTION_TIMEOUT"
    default_message = "The system is busy, please try again"
    retryable = True


class SerializationConflict(ConflictError):
    code = "SERIALIZATION_CONFLICT"
    default_message = "A concurrent update changed this record, please try again"
    retryable = True


class ExternalServiceError(BookingError):
    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"
    default_message = "Notification provider failed"


class InternalError(BookingError):
    pass
