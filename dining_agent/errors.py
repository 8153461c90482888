"""
Error taxonomy for the dining concierge.

Domain errors are recovered inside a turn (tool payloads the model can narrate);
only ValidationError reaches the caller as a client error.
"""
from typing import Optional


class DiningAgentError(Exception):
    """Base class for all concierge errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(DiningAgentError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(DiningAgentError):
    code = "NOT_FOUND"
    status_code = 404


class RestaurantNotFoundError(NotFoundError):
    code = "RESTAURANT_NOT_FOUND"

    def __init__(self, restaurant_id: str):
        super().__init__(f"Restaurant with ID {restaurant_id} not found")
        self.restaurant_id = restaurant_id


class ReservationNotFoundError(NotFoundError):
    code = "RESERVATION_NOT_FOUND"

    def __init__(self, reservation_id: str):
        super().__init__(f"Reservation with ID {reservation_id} not found")
        self.reservation_id = reservation_id


class AuthorizationError(DiningAgentError):
    code = "UNAUTHORIZED"
    status_code = 403


class PolicyViolationError(DiningAgentError):
    code = "POLICY_VIOLATION"
    status_code = 409


class AlreadyCancelledError(PolicyViolationError):
    code = "ALREADY_CANCELLED"


class ReservationCompletedError(PolicyViolationError):
    code = "RESERVATION_COMPLETED"


class CancellationTooLateError(PolicyViolationError):
    code = "CANCELLATION_TOO_LATE"


class UpstreamUnavailableError(DiningAgentError):
    """Index, cache, or model could not be reached."""

    code = "UPSTREAM_UNAVAILABLE"
    status_code = 503
