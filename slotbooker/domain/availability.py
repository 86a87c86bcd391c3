"""
Core business logic for computing bookable dates and slots.

This is pure domain logic without any external dependencies (no store, no
clock, no I/O): every input, including ``now``, is passed in by the caller.
"""

from datetime import date, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

import pendulum
from pendulum import DateTime

from .exceptions import PolicyViolationError, SlotConflictError
from .intervals import apply_buffer, covers, merge, overlaps, subtract_all
from .models import Booking, BookingPolicy, Slot, TimeOff, TimeRange, WeeklyHours


class AvailabilityCalculator:
    """
    Derives bookable time from weekly hours, time-off, existing bookings and
    the booking policy.

    Slot algorithm, per weekly window of the day:
    1. Merge time-off and buffered bookings, subtract them from the window
    2. Walk candidate starts from the window start in granularity steps
    3. Keep candidates that end within the window
    4. Drop candidates that start before ``now + min_advance_hours``
    5. Keep candidates lying entirely inside one free range

    Admission re-validates a single candidate against the same working hours,
    time-off and buffered bookings, so the read path and the write path agree.
    """

    def __init__(self, policy: BookingPolicy, timezone: str):
        self.policy = policy
        self.timezone = timezone

    def today(self, now: DateTime) -> date:
        return now.in_timezone(self.timezone).date()

    def booking_window(self, now: DateTime) -> Tuple[date, date]:
        """First and last bookable calendar dates, both inclusive."""
        today = self.today(now)
        return today, self.policy.last_bookable_date(today)

    def day_bounds(self, day: date) -> TimeRange:
        """``[dayStart, dayEnd)`` of a calendar date in the business timezone."""
        start = pendulum.datetime(day.year, day.month, day.day, tz=self.timezone)
        return TimeRange(start=start, end=start.add(days=1))

    def windows_for_date(self, day: date, weekly_hours: Iterable[WeeklyHours]) -> List[TimeRange]:
        """Working windows in effect on ``day``, in chronological order."""
        windows = [wh.on(day, self.timezone) for wh in weekly_hours if wh.applies_to(day)]
        return sorted(windows, key=lambda r: r.start)

    def is_fully_off(self, day: date, time_off: Iterable[TimeOff]) -> bool:
        """Check if a single time-off entry covers the whole calendar date."""
        bounds = self.day_bounds(day)
        return any(covers(entry.time_range, bounds) for entry in time_off)

    def is_date_available(
        self,
        day: date,
        weekly_hours: Sequence[WeeklyHours],
        time_off: Sequence[TimeOff],
        now: DateTime,
    ) -> bool:
        """
        Coarse "might have a slot" check used for date listings.

        Existing bookings and partial time-off are ignored here; a date that
        passes may still yield no slots. ``slots_for_date`` is exact.
        """
        windows = self.windows_for_date(day, weekly_hours)
        if not windows:
            return False

        if self.is_fully_off(day, time_off):
            return False

        earliest = self.policy.earliest_start(now)
        return any(window.end > earliest for window in windows)

    def available_dates(
        self,
        start_day: date,
        end_day: date,
        weekly_hours: Sequence[WeeklyHours],
        time_off: Sequence[TimeOff],
        now: DateTime,
    ) -> List[date]:
        """
        Dates within ``[start_day, end_day]`` that pass the coarse check.

        The range is clamped to the bookable window first.
        """
        first, last = self.booking_window(now)
        current = max(start_day, first)
        end_day = min(end_day, last)

        dates: List[date] = []
        while current <= end_day:
            if self.is_date_available(current, weekly_hours, time_off, now):
                dates.append(current)
            current += timedelta(days=1)

        return dates

    def slots_for_date(
        self,
        day: date,
        duration_minutes: int,
        weekly_hours: Sequence[WeeklyHours],
        time_off: Sequence[TimeOff],
        bookings: Sequence[Booking],
        now: DateTime,
    ) -> List[Slot]:
        """
        Generate every bookable slot of ``duration_minutes`` on ``day``.

        Returns an empty list for dates outside the bookable window.
        """
        first, last = self.booking_window(now)
        if day < first or day > last:
            return []

        windows = self.windows_for_date(day, weekly_hours)
        if not windows:
            return []

        earliest = self.policy.earliest_start(now)
        unavailable = merge(
            [entry.time_range for entry in time_off] + self._blocking_ranges(bookings)
        )
        step = self.policy.slot_granularity_minutes

        slots: List[Slot] = []
        for window in windows:
            free_ranges = subtract_all(window, unavailable)
            candidate_start = window.start

            # Candidates stay on the window's grid; free ranges only filter them
            while candidate_start.add(minutes=duration_minutes) <= window.end:
                candidate = TimeRange(
                    start=candidate_start,
                    end=candidate_start.add(minutes=duration_minutes),
                )

                if candidate.start >= earliest and any(covers(free, candidate) for free in free_ranges):
                    slots.append(Slot(time_range=candidate))

                candidate_start = candidate_start.add(minutes=step)

        return slots

    def check_advance_window(self, candidate: TimeRange, now: DateTime) -> None:
        """
        Raises:
            PolicyViolationError: If the start is too soon or too far ahead
        """
        earliest = self.policy.earliest_start(now)
        if candidate.start < earliest:
            raise PolicyViolationError(
                f"Bookings must start at least {self.policy.min_advance_hours} hour(s) "
                f"in advance (earliest {earliest.in_timezone(self.timezone).isoformat()})"
            )

        _, last = self.booking_window(now)
        if candidate.start.in_timezone(self.timezone).date() > last:
            raise PolicyViolationError(
                f"Bookings can be made at most {self.policy.max_advance_days} day(s) "
                f"in advance (last bookable date {last.isoformat()})"
            )

    def check_schedule(
        self,
        candidate: TimeRange,
        weekly_hours: Sequence[WeeklyHours],
        time_off: Sequence[TimeOff],
    ) -> None:
        """
        Check working-hours containment and time-off.

        Raises:
            SlotConflictError: With reason ``outside_working_hours`` or ``time_off``
        """
        day = candidate.start.in_timezone(self.timezone).date()
        windows = self.windows_for_date(day, weekly_hours)
        if not any(covers(window, candidate) for window in windows):
            raise SlotConflictError(
                "The requested time is outside the provider's working hours",
                reason="outside_working_hours",
            )

        if any(overlaps(candidate, entry.time_range) for entry in time_off):
            raise SlotConflictError(
                "The provider is not available at the requested time",
                reason="time_off",
            )

    def conflicting_bookings(
        self,
        candidate: TimeRange,
        bookings: Iterable[Booking],
        ignore_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        """Active bookings whose buffered range overlaps ``candidate``."""
        return [
            booking for booking in bookings
            if booking.is_active
            and booking.booking_id != ignore_booking_id
            and overlaps(candidate, apply_buffer(booking.time_range, self.policy.buffer_minutes))
        ]

    def check_candidate(
        self,
        candidate: TimeRange,
        weekly_hours: Sequence[WeeklyHours],
        time_off: Sequence[TimeOff],
        bookings: Sequence[Booking],
        now: DateTime,
        ignore_booking_id: Optional[str] = None,
    ) -> None:
        """
        Validate one concrete interval exactly as slot generation would.

        Raises:
            PolicyViolationError: Outside the advance-booking window
            SlotConflictError: Outside working hours, on time-off, or overlapping a booking
        """
        self.check_advance_window(candidate, now)
        self.check_schedule(candidate, weekly_hours, time_off)

        if self.conflicting_bookings(candidate, bookings, ignore_booking_id):
            raise SlotConflictError(
                "This time slot is no longer available",
                reason="booking_conflict",
            )

    def lookup_range(self, day: date) -> TimeRange:
        """
        Range to fetch existing bookings for ``day``: starts one buffer early so
        a booking ending just before midnight still blocks the next morning.
        """
        bounds = self.day_bounds(day)
        return TimeRange(
            start=bounds.start.subtract(minutes=self.policy.buffer_minutes),
            end=bounds.end,
        )

    def _blocking_ranges(self, bookings: Iterable[Booking]) -> List[TimeRange]:
        return [
            apply_buffer(booking.time_range, self.policy.buffer_minutes)
            for booking in bookings
            if booking.is_active
        ]
