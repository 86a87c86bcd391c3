"""
Operations shared by booking repositories, expressed through their
``admission`` unit of work.
"""

from abc import ABC, abstractmethod
from typing import ContextManager, Optional

from pendulum import DateTime

from ..domain.exceptions import ConcurrencyConflictError, NotFoundError, TransientStoreError
from ..domain.intervals import apply_buffer, overlaps
from ..domain.models import Booking, BookingStatus


class AdmissionRepositoryMixin(ABC):
    """
    Lifecycle operations built on a repository's ``admission`` unit of work.
    """

    @abstractmethod
    def admission(self, provider_id: str, timeout: float) -> ContextManager:
        """Open the provider's critical section; commits on clean exit."""

    @abstractmethod
    def get_booking(self, booking_id: str) -> Optional[Booking]:
        """Return a booking by id."""

    def insert_booking_if_no_conflict(
        self,
        candidate: Booking,
        *,
        buffer_minutes: int,
        timeout: float,
    ) -> Booking:
        """
        Atomic overlap re-check plus insert for an already validated booking.

        Raises:
            ConcurrencyConflictError: If a live booking (with buffer) overlaps
            TransientStoreError: On timeout or if the confirmation code is taken
        """
        with self.admission(candidate.provider_id, timeout) as unit:
            live = unit.active_bookings(
                candidate.start.subtract(minutes=buffer_minutes), candidate.end
            )
            for existing in live:
                if overlaps(candidate.time_range, apply_buffer(existing.time_range, buffer_minutes)):
                    raise ConcurrencyConflictError(
                        "This time slot is no longer available",
                        reason="booking_conflict",
                    )

            if not unit.claim_confirmation_code(candidate.confirmation_code):
                raise TransientStoreError(
                    f"Confirmation code {candidate.confirmation_code} is already in use"
                )

            return unit.insert(candidate)

    def update_status(
        self,
        booking_id: str,
        new_status: BookingStatus,
        *,
        at: DateTime,
        timeout: float,
        **fields,
    ) -> Booking:
        """
        Apply a lifecycle transition inside the provider's unit of work.

        Raises:
            NotFoundError: Unknown booking
            InvalidStatusTransitionError: The lifecycle does not allow the move
        """
        booking = self.get_booking(booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")

        with self.admission(booking.provider_id, timeout) as unit:
            current = unit.get(booking_id)
            return unit.update(current.with_status(new_status, at, **fields))
