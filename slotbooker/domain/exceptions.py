"""
Domain-specific exception hierarchy for the booking engine.
"""


class BookingError(Exception):
    """Base class for all application-level errors."""


class ConfigurationError(BookingError):
    """Raised at startup when the configuration cannot be used."""


class NotFoundError(BookingError):
    """Raised when a provider, service or booking does not exist."""


class PolicyViolationError(BookingError):
    """Raised when a request breaks a booking policy (window, offering)."""


class InvalidStatusTransitionError(PolicyViolationError):
    """Raised when a booking cannot move from its current status."""


class SlotConflictError(BookingError):
    """
    Raised when the requested interval is not bookable.

    ``reason`` is a short machine-readable code: ``time_off``,
    ``booking_conflict`` or ``outside_working_hours``.
    """

    def __init__(self, message: str, reason: str = "booking_conflict"):
        super().__init__(message)
        self.reason = reason


class ConcurrencyConflictError(SlotConflictError):
    """Raised when a concurrent admission for the same provider won the slot."""


class TransientStoreError(BookingError):
    """Raised when the store times out or fails; nothing has been committed."""
