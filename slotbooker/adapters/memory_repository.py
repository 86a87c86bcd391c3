"""
In-process booking repository.

Admissions are serialized per provider with ``ProviderLocks``; writes made in a
unit of work are staged and only applied when the unit exits cleanly.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Set

from pendulum import DateTime

from ..domain.intervals import overlaps
from ..domain.models import Booking, BookingQuery, TimeRange
from .locks import ProviderLocks
from .repository import AdmissionRepositoryMixin

logger = logging.getLogger(__name__)


class InMemoryBookingRepository(AdmissionRepositoryMixin):
    """
    Dictionary-backed repository, safe for use from many threads.

    ``_data_lock`` only guards the dictionaries for short reads and writes;
    correctness of admission comes from the per-provider locks.
    """

    def __init__(self, bookings: Iterable[Booking] = ()):
        self._bookings: Dict[str, Booking] = {}
        self._codes: Set[str] = set()
        self._data_lock = threading.Lock()
        self._provider_locks = ProviderLocks()

        for booking in bookings:
            self._bookings[booking.booking_id] = booking
            self._codes.add(booking.confirmation_code)

    @contextmanager
    def admission(self, provider_id: str, timeout: float) -> Iterator["_MemoryAdmissionUnit"]:
        with self._provider_locks.hold(provider_id, timeout):
            unit = _MemoryAdmissionUnit(self, provider_id)
            try:
                yield unit
            except BaseException:
                unit.rollback()
                raise
            unit.commit()

    def get_active_bookings(
        self,
        provider_id: str,
        range_start: DateTime,
        range_end: DateTime
    ) -> List[Booking]:
        with self._data_lock:
            bookings = list(self._bookings.values())

        return _active_in_range(bookings, provider_id, range_start, range_end)

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._data_lock:
            return self._bookings.get(booking_id)

    def find_by_confirmation_code(self, code: str) -> Optional[Booking]:
        with self._data_lock:
            for booking in self._bookings.values():
                if booking.confirmation_code == code:
                    return booking
        return None

    def list_bookings(self, query: BookingQuery) -> List[Booking]:
        with self._data_lock:
            bookings = list(self._bookings.values())

        matching = sorted(
            (booking for booking in bookings if query.matches(booking)),
            key=lambda b: b.start.timestamp(),
            reverse=True,
        )
        return matching[query.offset:query.offset + query.limit]

    def all_bookings(self) -> List[Booking]:
        """Every stored booking in chronological order."""
        with self._data_lock:
            return sorted(self._bookings.values(), key=lambda b: b.start.timestamp())


class _MemoryAdmissionUnit:
    """Staged view of one provider's bookings inside its critical section."""

    def __init__(self, repository: InMemoryBookingRepository, provider_id: str):
        self._repository = repository
        self._provider_id = provider_id
        self._staged: Dict[str, Booking] = {}
        self._claimed_codes: Set[str] = set()

    def active_bookings(self, range_start: DateTime, range_end: DateTime) -> List[Booking]:
        with self._repository._data_lock:
            current = dict(self._repository._bookings)
        current.update(self._staged)

        return _active_in_range(current.values(), self._provider_id, range_start, range_end)

    def get(self, booking_id: str) -> Optional[Booking]:
        if booking_id in self._staged:
            return self._staged[booking_id]
        return self._repository.get_booking(booking_id)

    def claim_confirmation_code(self, code: str) -> bool:
        # Codes are global, so claiming goes through the shared data lock
        with self._repository._data_lock:
            if code in self._repository._codes:
                return False
            self._repository._codes.add(code)
        self._claimed_codes.add(code)
        return True

    def insert(self, booking: Booking) -> Booking:
        self._check_provider(booking)
        if self.get(booking.booking_id) is not None:
            raise ValueError(f"Booking {booking.booking_id} already exists")
        self._staged[booking.booking_id] = booking
        return booking

    def update(self, booking: Booking) -> Booking:
        self._check_provider(booking)
        self._staged[booking.booking_id] = booking
        return booking

    def commit(self) -> None:
        with self._repository._data_lock:
            self._repository._bookings.update(self._staged)

    def rollback(self) -> None:
        inserted_codes = {booking.confirmation_code for booking in self._staged.values()}
        with self._repository._data_lock:
            for code in self._claimed_codes:
                self._repository._codes.discard(code)
        if self._staged:
            logger.debug(
                "Rolled back %d staged booking change(s) for provider %s (%s)",
                len(self._staged), self._provider_id, ", ".join(sorted(inserted_codes)),
            )
        self._staged.clear()

    def _check_provider(self, booking: Booking) -> None:
        if booking.provider_id != self._provider_id:
            raise ValueError(
                f"Booking for provider {booking.provider_id} written in the unit of "
                f"provider {self._provider_id}"
            )


def _active_in_range(
    bookings: Iterable[Booking],
    provider_id: str,
    range_start: DateTime,
    range_end: DateTime,
) -> List[Booking]:
    requested = TimeRange(start=range_start, end=range_end)
    return sorted(
        (
            booking for booking in bookings
            if booking.provider_id == provider_id
            and booking.is_active
            and overlaps(booking.time_range, requested)
        ),
        key=lambda b: b.start.timestamp(),
    )
