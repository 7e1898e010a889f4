

class BookingEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the Bus Booking Integrity Engine.
    """


class ValidationError(BookingEngineError):
    """Raised when a request is malformed or violates a business rule."""


class NotFoundError(BookingEngineError):
    """Raised when a schedule, booking or correlation id is unknown."""


class AccessDeniedError(BookingEngineError):
    """Raised when a user touches a booking they do not own."""


class ConflictError(BookingEngineError):
    """
    Raised when requested seats are already booked or held.
    Terminal for the request: the caller must pick other seats.
    """

    def __init__(self, conflicting_seats, message: str | None = None):
        self.conflicting_seats = sorted(conflicting_seats)
        super().__init__(
            message
            or f"Seats already taken: {', '.join(self.conflicting_seats)}"
        )


class StateError(BookingEngineError):
    """
    Raised when an operation is invalid for the booking's current status.
    """

    def __init__(self, message: str, current_status: str | None = None):
        self.current_status = current_status
        super().__init__(message)


class InvalidStateTransitionError(StateError):
    """
    Raised when an illegal payment state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message, current_status=from_state)


class TransientStorageError(BookingEngineError):
    """Raised when the store reports a write conflict or is unreachable."""


class ExternalProviderError(BookingEngineError):
    """Raised when a payment provider is unreachable or rejects a call."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class SignatureError(BookingEngineError):
    """Raised when a webhook signature does not verify."""


class ConfigurationError(BookingEngineError):
    """Raised when a provider is used without its credentials configured."""
