"""Error taxonomy for the RSVP and payment core.

RsvpError subclasses carry a stable `reason` string that the blueprints
return to API clients. Gateway errors are a separate branch: they never
reach a client directly, the registration service turns them into a
PaymentInitiationError after compensating the reservation.
"""


class RsvpError(Exception):
    """Base class for errors surfaced to RSVP API callers."""

    reason = "RsvpError"
    status_code = 400

    def __init__(self, message=None):
        super().__init__(message or self.reason)
        self.message = message or self.reason


class ValidationError(RsvpError):
    """Malformed input, e.g. a phone number that can't be normalized."""

    reason = "ValidationError"


class EventNotFoundError(RsvpError):
    reason = "EventNotFound"
    status_code = 404

    def __init__(self, event_id):
        super().__init__("Event not found")
        self.event_id = event_id


class RegistrationNotFoundError(RsvpError):
    reason = "NotRegistered"
    status_code = 404

    def __init__(self, event_id, user_id):
        super().__init__("You are not registered for this event")
        self.event_id = event_id
        self.user_id = user_id


class DuplicateRegistrationError(RsvpError):
    reason = "AlreadyRegistered"

    def __init__(self, event_id, user_id):
        super().__init__("Already attending this event")
        self.event_id = event_id
        self.user_id = user_id


class CapacityExceededError(RsvpError):
    reason = "CapacityExceeded"

    def __init__(self, event_id):
        super().__init__("Event is full")
        self.event_id = event_id


class PaymentInitiationError(RsvpError):
    """The gateway could not start a payment; the reservation was rolled back."""

    reason = "PaymentInitiationError"
    status_code = 500

    def __init__(self, cause):
        super().__init__("Failed to initiate payment. Please try again.")
        self.cause = cause
        self.retryable = getattr(cause, "retryable", False)


# ──────────────────────────────────────────────
# Gateway errors
# ──────────────────────────────────────────────

class GatewayError(Exception):
    """Base class for M-Pesa gateway failures."""

    retryable = False


class GatewayAuthError(GatewayError):
    """OAuth token could not be obtained or was refused."""

    retryable = True


class GatewayNetworkError(GatewayError):
    """Transport failure: timeout, DNS, connection reset, 5xx without a body."""

    retryable = True


class GatewayRejected(GatewayError):
    """The provider understood the request and said no."""

    def __init__(self, code, description):
        super().__init__(f"{code}: {description}")
        self.code = str(code)
        self.description = description
