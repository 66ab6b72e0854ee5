"""Error taxonomy shared by the domain services and the HTTP layer."""


class RideFlexError(Exception):
    """Base class.  ``status_code`` is the HTTP-equivalent status class."""

    status_code = 500
    kind = "error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(RideFlexError):
    """Malformed input: coordinates, missing fields, unknown enum values."""

    status_code = 400
    kind = "validation_error"


class InvalidArgument(ValidationError):
    kind = "invalid_argument"


class NotFound(RideFlexError):
    status_code = 404
    kind = "not_found"


class Conflict(RideFlexError):
    """Duplicate payment for a trip, illegal re-assignment, wrong phase."""

    status_code = 409
    kind = "conflict"


class InvalidTransition(RideFlexError):
    """Raised when a trip or payment status change violates its state machine."""

    status_code = 409
    kind = "invalid_transition"


class Forbidden(RideFlexError):
    status_code = 403
    kind = "forbidden"


class UpstreamError(RideFlexError):
    """The payment processor or the store could not be reached."""

    status_code = 502
    kind = "upstream_error"


class AmountMismatch(RideFlexError):
    status_code = 422
    kind = "amount_mismatch"
