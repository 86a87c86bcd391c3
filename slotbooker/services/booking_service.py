"""
Application service for availability queries and booking admission.

The service coordinates the policy store and the booking repository and
delegates every availability decision to the domain-level
``AvailabilityCalculator``. Stores are reached only through the protocols
below, so the in-memory and SQLite adapters (or test stubs) plug in freely.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from typing import Callable, ContextManager, List, Optional, Protocol, Tuple

import pendulum
from pendulum import DateTime

from ..domain.availability import AvailabilityCalculator
from ..domain.confirmation import generate_confirmation_code, normalize_confirmation_code
from ..domain.exceptions import (
    ConcurrencyConflictError,
    NotFoundError,
    SlotConflictError,
    TransientStoreError,
)
from ..domain.models import (
    Booking,
    BookingPolicy,
    BookingQuery,
    BookingRequest,
    BookingStatus,
    ServiceOffering,
    Slot,
    TimeOff,
    TimeRange,
    WeeklyHours,
)

logger = logging.getLogger(__name__)

MAX_CONFIRMATION_CODE_ATTEMPTS = 20


class PolicyStoreProtocol(Protocol):
    """Read-only provider rules, service catalogue and booking policy."""

    def get_service_offering(self, provider_id: str, service_id: str) -> ServiceOffering:
        """Return the service as offered by the provider, overrides applied."""

    def get_service_duration(self, provider_id: str, service_id: str) -> int:
        """Return the effective duration in minutes."""

    def get_weekly_hours(self, provider_id: str) -> List[WeeklyHours]:
        """Return the provider's recurring weekly windows."""

    def get_time_off(self, provider_id: str, range_start: DateTime, range_end: DateTime) -> List[TimeOff]:
        """Return time-off entries overlapping the range."""

    def get_booking_policy(self) -> BookingPolicy:
        """Return the global booking policy."""


class AdmissionUnitProtocol(Protocol):
    """Operations available inside one provider-scoped unit of work."""

    def active_bookings(self, range_start: DateTime, range_end: DateTime) -> List[Booking]:
        """Live non-cancelled bookings of the unit's provider overlapping the range."""

    def get(self, booking_id: str) -> Optional[Booking]:
        """Return a booking as seen inside the unit."""

    def claim_confirmation_code(self, code: str) -> bool:
        """Reserve a code; False if it is already taken."""

    def insert(self, booking: Booking) -> Booking:
        """Stage a new booking for commit."""

    def update(self, booking: Booking) -> Booking:
        """Stage a changed booking for commit."""


class BookingRepositoryProtocol(Protocol):
    """Booking persistence with a serialized, per-provider admission primitive."""

    def admission(self, provider_id: str, timeout: float) -> ContextManager[AdmissionUnitProtocol]:
        """Open the provider's critical section; commits on clean exit."""

    def get_active_bookings(self, provider_id: str, range_start: DateTime, range_end: DateTime) -> List[Booking]:
        """Read-path query for non-cancelled bookings overlapping the range."""

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        """Return a booking by id."""

    def find_by_confirmation_code(self, code: str) -> Optional[Booking]:
        """Return a booking by its confirmation code."""

    def list_bookings(self, query: BookingQuery) -> List[Booking]:
        """Return bookings matching the query, latest start first."""

    def insert_booking_if_no_conflict(self, candidate: Booking, *, buffer_minutes: int, timeout: float) -> Booking:
        """Atomic overlap re-check plus insert of an already validated booking."""

    def update_status(
        self,
        booking_id: str,
        new_status: BookingStatus,
        *,
        at: DateTime,
        timeout: float,
        **fields,
    ) -> Booking:
        """Apply a lifecycle transition inside the provider's unit of work."""


class NotificationDispatcherProtocol(Protocol):
    """Fire-and-forget delivery of booking events."""

    def dispatch(self, event: str, booking: Booking) -> None:
        """Deliver an event; must not block the caller for long."""


class BookingService:
    """
    Public operation surface of the engine: date and slot listings, booking
    admission, cancellation, rescheduling and status changes.

    ``now`` is passed into every call; the business timezone is fixed at
    construction.
    """

    def __init__(
        self,
        policy_store: PolicyStoreProtocol,
        repository: BookingRepositoryProtocol,
        timezone: str,
        *,
        notifier: Optional[NotificationDispatcherProtocol] = None,
        store_timeout: float = 5.0,
        exact_dates: bool = False,
        code_generator: Callable[[], str] = generate_confirmation_code,
    ) -> None:
        self._policy_store = policy_store
        self._repository = repository
        self._timezone = timezone
        self._notifier = notifier
        self._store_timeout = store_timeout
        self._exact_dates = exact_dates
        self._code_generator = code_generator

    @property
    def timezone(self) -> str:
        return self._timezone

    def list_available_dates(
        self,
        provider_id: str,
        service_id: str,
        *,
        now: datetime,
        month: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[date]:
        """
        List dates that may have bookable slots.

        Args:
            provider_id: Provider to book with
            service_id: Service to book
            now: Current instant
            month: Optional ``YYYY-MM``; takes precedence over the explicit range
            start_date: Optional first date of the range
            end_date: Optional last date of the range

        Returns:
            Dates in ascending order, never before today nor beyond
            ``today + max_advance_days``
        """
        now = self._as_datetime(now)
        offering = self._policy_store.get_service_offering(provider_id, service_id)
        calculator = self._calculator()

        if month:
            start_date, end_date = parse_month(month)

        first, last = calculator.booking_window(now)
        range_start = max(start_date or first, first)
        range_end = min(end_date or last, last)
        if range_start > range_end:
            return []

        weekly_hours = self._policy_store.get_weekly_hours(provider_id)
        time_off = self._policy_store.get_time_off(
            provider_id,
            calculator.day_bounds(range_start).start,
            calculator.day_bounds(range_end).end,
        )

        dates = calculator.available_dates(range_start, range_end, weekly_hours, time_off, now)

        if self._exact_dates:
            bookings = self._repository.get_active_bookings(
                provider_id,
                calculator.lookup_range(range_start).start,
                calculator.day_bounds(range_end).end,
            )
            dates = [
                day for day in dates
                if calculator.slots_for_date(
                    day, offering.duration_minutes, weekly_hours, time_off, bookings, now
                )
            ]

        logger.debug(
            "Provider %s / service %s: %d available date(s) in %s..%s",
            provider_id, service_id, len(dates), range_start, range_end,
        )
        return dates

    def list_slots(
        self,
        provider_id: str,
        service_id: str,
        day: date,
        *,
        now: datetime,
    ) -> List[Slot]:
        """
        Compute the bookable slots of one date, in chronological order.

        The result is advisory; ``submit_booking`` re-validates.
        """
        now = self._as_datetime(now)
        offering = self._policy_store.get_service_offering(provider_id, service_id)
        calculator = self._calculator()

        weekly_hours = self._policy_store.get_weekly_hours(provider_id)
        if not calculator.windows_for_date(day, weekly_hours):
            return []

        bounds = calculator.day_bounds(day)
        lookup = calculator.lookup_range(day)
        time_off = self._policy_store.get_time_off(provider_id, bounds.start, bounds.end)
        bookings = self._repository.get_active_bookings(provider_id, lookup.start, lookup.end)

        return calculator.slots_for_date(
            day, offering.duration_minutes, weekly_hours, time_off, bookings, now
        )

    def submit_booking(self, request: BookingRequest, *, now: datetime) -> Booking:
        """
        Validate and atomically commit a booking request.

        The end instant is derived from the current service duration. The
        request is checked once on the read path, then again inside the
        provider's critical section together with the insert.

        Raises:
            NotFoundError: Unknown provider or service
            PolicyViolationError: Outside the advance window, or service not offered
            SlotConflictError: Slot not bookable at validation time
            ConcurrencyConflictError: A concurrent admission took the slot
            TransientStoreError: Store or lock timeout; nothing was committed
        """
        now = self._as_datetime(now)
        start = self._as_datetime(request.start)
        offering = self._policy_store.get_service_offering(request.provider_id, request.service_id)
        candidate = TimeRange(start=start, end=start.add(minutes=offering.duration_minutes))

        try:
            self._check_read_path(request.provider_id, candidate, now)

            with self._repository.admission(request.provider_id, self._store_timeout) as unit:
                self._check_in_critical_section(unit, request.provider_id, candidate, now)
                booking = unit.insert(
                    Booking(
                        booking_id=str(uuid.uuid4()),
                        confirmation_code=self._claim_confirmation_code(unit),
                        provider_id=request.provider_id,
                        service_id=request.service_id,
                        start=candidate.start.in_timezone(self._timezone),
                        end=candidate.end.in_timezone(self._timezone),
                        status=BookingStatus.CONFIRMED,
                        client=request.client,
                        service_name=offering.service_name,
                        service_duration=offering.duration_minutes,
                        service_price=offering.price,
                        provider_name=offering.provider_name,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except SlotConflictError as exc:
            logger.info(
                "Rejected booking for provider %s at %s (%s): %s",
                request.provider_id, candidate.start.isoformat(), exc.reason, exc,
            )
            raise

        logger.info(
            "Booking %s committed for provider %s at %s",
            booking.confirmation_code, booking.provider_id, booking.start.isoformat(),
        )
        self._notify("booking.confirmed", booking)
        return booking

    def cancel_booking(
        self,
        booking_id: str,
        *,
        now: datetime,
        actor: str,
        reason: Optional[str] = None,
        confirmation_code: Optional[str] = None,
        internal_notes: Optional[str] = None,
    ) -> Booking:
        """
        Cancel a pending or confirmed booking. The row is kept for history and
        no longer takes part in overlap checks.

        Args:
            booking_id: Booking to cancel
            now: Current instant
            actor: Who cancels (``client``, a staff id, ...)
            reason: Optional cancellation reason
            confirmation_code: When given, must match the booking's code
            internal_notes: Optional staff-only note stored with the cancellation

        Raises:
            NotFoundError: Unknown booking or code mismatch
            InvalidStatusTransitionError: Booking is not pending/confirmed
        """
        now = self._as_datetime(now)
        booking = self.get_booking(booking_id)

        if (
            confirmation_code is not None
            and normalize_confirmation_code(confirmation_code) != booking.confirmation_code
        ):
            raise NotFoundError("Booking not found")

        cancelled = self._transition(
            booking, BookingStatus.CANCELLED, now,
            reason=reason, actor=actor, internal_notes=internal_notes,
        )
        logger.info("Booking %s cancelled by %s", cancelled.confirmation_code, actor)
        self._notify("booking.cancelled", cancelled)
        return cancelled

    def update_status(
        self,
        booking_id: str,
        status: BookingStatus | str,
        *,
        now: datetime,
        internal_notes: Optional[str] = None,
        actor: str = "staff",
    ) -> Booking:
        """
        Move a booking along its lifecycle (confirm, complete, no-show, cancel).

        Raises:
            NotFoundError: Unknown booking
            InvalidStatusTransitionError: The lifecycle does not allow the move
        """
        status = BookingStatus(status)
        if status is BookingStatus.CANCELLED:
            return self.cancel_booking(booking_id, now=now, actor=actor, internal_notes=internal_notes)

        now = self._as_datetime(now)
        booking = self.get_booking(booking_id)
        updated = self._transition(booking, status, now, internal_notes=internal_notes)
        logger.info("Booking %s is now %s", updated.confirmation_code, updated.status.value)
        self._notify("booking.status_changed", updated)
        return updated

    def reschedule_booking(self, booking_id: str, new_start: datetime, *, now: datetime) -> Booking:
        """
        Move an active booking to a new start, keeping its booked duration.

        Validated like a new admission, ignoring the booking's own interval.
        """
        now = self._as_datetime(now)
        new_start = self._as_datetime(new_start)
        booking = self.get_booking(booking_id)
        candidate = TimeRange(start=new_start, end=new_start.add(minutes=booking.service_duration))

        self._check_read_path(booking.provider_id, candidate, now, ignore_booking_id=booking_id)

        with self._repository.admission(booking.provider_id, self._store_timeout) as unit:
            current = unit.get(booking_id)
            if current is None:
                raise NotFoundError(f"Booking {booking_id} not found")
            moved = current.rescheduled(new_start.in_timezone(self._timezone), now)
            self._check_in_critical_section(
                unit, booking.provider_id, candidate, now, ignore_booking_id=booking_id
            )
            moved = unit.update(moved)

        logger.info(
            "Booking %s moved from %s to %s",
            moved.confirmation_code, booking.start.isoformat(), moved.start.isoformat(),
        )
        self._notify("booking.rescheduled", moved)
        return moved

    def get_booking(self, booking_id: str) -> Booking:
        booking = self._repository.get_booking(booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    def lookup_booking(self, confirmation_code: str) -> Booking:
        """Find a booking by confirmation code (case-insensitive)."""
        booking = self._repository.find_by_confirmation_code(
            normalize_confirmation_code(confirmation_code)
        )
        if booking is None:
            raise NotFoundError("Booking not found")
        return booking

    def list_bookings(self, query: BookingQuery) -> List[Booking]:
        return self._repository.list_bookings(query)

    def _calculator(self) -> AvailabilityCalculator:
        return AvailabilityCalculator(self._policy_store.get_booking_policy(), self._timezone)

    def _check_read_path(
        self,
        provider_id: str,
        candidate: TimeRange,
        now: DateTime,
        ignore_booking_id: Optional[str] = None,
    ) -> None:
        """Advisory validation with read-committed data, before taking the lock."""
        calculator = self._calculator()
        buffer_minutes = calculator.policy.buffer_minutes
        calculator.check_candidate(
            candidate,
            self._policy_store.get_weekly_hours(provider_id),
            self._policy_store.get_time_off(provider_id, candidate.start, candidate.end),
            self._repository.get_active_bookings(
                provider_id, candidate.start.subtract(minutes=buffer_minutes), candidate.end
            ),
            now,
            ignore_booking_id=ignore_booking_id,
        )

    def _check_in_critical_section(
        self,
        unit: AdmissionUnitProtocol,
        provider_id: str,
        candidate: TimeRange,
        now: DateTime,
        ignore_booking_id: Optional[str] = None,
    ) -> None:
        """
        Authoritative re-check inside the provider's unit of work. A booking
        overlap found only here means a concurrent writer won the slot.
        """
        calculator = self._calculator()
        calculator.check_advance_window(candidate, now)
        calculator.check_schedule(
            candidate,
            self._policy_store.get_weekly_hours(provider_id),
            self._policy_store.get_time_off(provider_id, candidate.start, candidate.end),
        )

        live = unit.active_bookings(
            candidate.start.subtract(minutes=calculator.policy.buffer_minutes), candidate.end
        )
        if calculator.conflicting_bookings(candidate, live, ignore_booking_id):
            raise ConcurrencyConflictError(
                "This time slot is no longer available",
                reason="booking_conflict",
            )

    def _claim_confirmation_code(self, unit: AdmissionUnitProtocol) -> str:
        for _ in range(MAX_CONFIRMATION_CODE_ATTEMPTS):
            code = self._code_generator()
            if unit.claim_confirmation_code(code):
                return code
            logger.debug("Confirmation code collision on %s, retrying", code)

        raise TransientStoreError("Could not allocate a unique confirmation code")

    def _transition(self, booking: Booking, status: BookingStatus, now: DateTime, **fields) -> Booking:
        return self._repository.update_status(
            booking.booking_id, status, at=now, timeout=self._store_timeout, **fields
        )

    def _notify(self, event: str, booking: Booking) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.dispatch(event, booking)
        except Exception:
            # Delivery problems must never undo a committed change
            logger.exception("Notification %s for booking %s failed", event, booking.confirmation_code)

    def _as_datetime(self, value: datetime) -> DateTime:
        """Naive values are read in the business timezone."""
        if value.tzinfo is None:
            return pendulum.datetime(
                value.year, value.month, value.day,
                value.hour, value.minute, value.second, value.microsecond,
                tz=self._timezone,
            )
        return pendulum.instance(value)


def parse_month(month: str) -> Tuple[date, date]:
    """
    Parse ``YYYY-MM`` into the first and last day of that month.

    Raises:
        ValueError: If the value is not a valid month
    """
    try:
        first = pendulum.from_format(month, "YYYY-MM")
    except ValueError as exc:
        raise ValueError(f"Invalid month '{month}', expected YYYY-MM") from exc

    return first.date(), first.end_of("month").date()
