"""Error taxonomy shared by the parking services."""
from typing import Optional


class ParkingError(Exception):
    """Base class for all domain errors."""

    status_code = 500
    code = "parking_error"

    def __init__(self, message: str, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.detail}


class NotFound(ParkingError):
    """Unknown reservation or parking location."""

    status_code = 404
    code = "not_found"


class NoCapacity(ParkingError):
    """No spot left at the requested location."""

    status_code = 409
    code = "no_capacity"


class InvalidTransition(ParkingError):
    """The reservation is not in a state that allows the requested transition."""

    status_code = 409
    code = "invalid_transition"

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message, {"current_status": current_status} if current_status else None)
        self.current_status = current_status


class AlreadyTerminal(InvalidTransition):
    """The reservation already reached a different terminal state."""

    code = "already_terminal"


class AlreadyExists(ParkingError):
    """The caller already created this resource (e.g. a second review of one location)."""

    status_code = 409
    code = "already_exists"


class ValidationFailed(ParkingError):
    """Request violates a booking rule (time window, extension bounds)."""

    status_code = 422
    code = "validation_failed"


class AuthenticationError(ParkingError):
    """Webhook signature could not be verified."""

    status_code = 400
    code = "invalid_signature"


class InvalidPayload(ParkingError):
    """Webhook payload is not a parseable provider event."""

    status_code = 400
    code = "invalid_payload"


class PaymentGatewayError(ParkingError):
    """The payment provider rejected or failed a request."""

    status_code = 502
    code = "payment_gateway_error"


class TransientStoreError(ParkingError):
    """Backing store unavailable; safe to retry."""

    status_code = 503
    code = "store_unavailable"
