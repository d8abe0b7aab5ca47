"""Error taxonomy for the availability and booking engine."""


class BookingError(Exception):
    """Base class for every error the engine raises on purpose."""


class NotFoundError(BookingError):
    """Unknown organization or slug, or an unknown / inactive appointment type."""


class BookingValidationError(BookingError):
    """Malformed slot or missing patient fields. Never retried automatically."""


class ConflictError(BookingError):
    """The requested slot is no longer free. Callers should re-fetch slots."""


class InvalidTransitionError(BookingError):
    """A status change that the booking state machine does not allow."""


class IntegrationFailure(BookingError):
    """Calendar or email provider error. Logged, never fatal to a booking."""


class PaymentFailure(BookingError):
    """Checkout could not be started or completed. Carries a retry link."""

    def __init__(self, message: str, retry_url: str | None = None):
        super().__init__(message)
        self.retry_url = retry_url
