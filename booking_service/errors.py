"""
Error taxonomy of the booking core.

Every error carries a stable ``reason`` string that callers can match on and
the HTTP status the API layer answers with.
"""


class BookingError(Exception):
    status_code = 400
    reason = "booking_error"

    def __init__(self, message: str | None = None, *, reason: str | None = None):
        if reason is not None:
            self.reason = reason
        self.message = message or self.reason
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "reason": self.reason, "detail": self.message}


class ValidationError(BookingError):
    status_code = 400
    reason = "invalid_request"


class TransitionError(BookingError):
    status_code = 400
    reason = "invalid_transition"

    def __init__(self, from_status, to_status, message: str | None = None):
        self.from_status = str(from_status)
        self.to_status = str(to_status)
        super().__init__(
            message or f"Invalid status transition from {self.from_status} to {self.to_status}"
        )


class AuthorizationError(BookingError):
    status_code = 403
    reason = "forbidden"


class ExpiryError(BookingError):
    status_code = 409
    reason = "expired"


class ConflictError(BookingError):
    status_code = 409
    reason = "conflict"


class NotCancellableError(ConflictError):
    status_code = 400
    reason = "not_cancellable"


class InvariantViolation(ConflictError):
    reason = "automation_halted"


class ExternalServiceError(BookingError):
    status_code = 502
    reason = "external_service_error"


class NotFoundError(BookingError):
    status_code = 404
    reason = "not_found"
