"""
Domain models for availability and booking admission.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

import pendulum
from pendulum import DateTime

from .exceptions import InvalidStatusTransitionError

WEEKDAY_NAMES = {
    0: "Sunday",
    1: "Monday",
    2: "Tuesday",
    3: "Wednesday",
    4: "Thursday",
    5: "Friday",
    6: "Saturday",
}


def day_of_week(day: date) -> int:
    """Weekday number of ``day`` with 0=Sunday and 6=Saturday."""
    return (day.weekday() + 1) % 7


def _utc(value: datetime) -> DateTime:
    return pendulum.instance(value).in_timezone("UTC")


@dataclass(frozen=True)
class TimeRange:
    """
    Represents an immutable half-open time range ``[start, end)``.

    Both ends are stored in UTC so that comparisons follow absolute time, also
    across a repeated wall-clock hour when the clocks go back.

    Invariant: start must be before end.
    """
    start: DateTime
    end: DateTime

    def __post_init__(self):
        object.__setattr__(self, "start", _utc(self.start))
        object.__setattr__(self, "end", _utc(self.end))
        if self.start >= self.end:
            raise ValueError(f"Start time {self.start} must be before end time {self.end}")

    def duration_minutes(self) -> int:
        """Return the duration in minutes."""
        return int((self.end - self.start).total_seconds() / 60)


@dataclass(frozen=True)
class WeeklyHours:
    """
    A recurring weekly working window for a provider.
    """
    day_of_week: int  # 0=Sunday, 6=Saturday
    start_time: time
    end_time: time
    active: bool = True

    def __post_init__(self):
        if not 0 <= self.day_of_week <= 6:
            raise ValueError(f"day_of_week must be between 0 and 6, got {self.day_of_week}")
        if self.start_time >= self.end_time:
            raise ValueError(
                f"Working window start {self.start_time} must be before end {self.end_time}"
            )

    def applies_to(self, day: date) -> bool:
        """Check if this window is in effect on the given calendar date."""
        return self.active and day_of_week(day) == self.day_of_week

    def on(self, day: date, timezone: str) -> TimeRange:
        """Materialise the window on a concrete date in the business timezone."""
        start = pendulum.datetime(
            day.year, day.month, day.day,
            self.start_time.hour, self.start_time.minute,
            tz=timezone,
        )
        end = pendulum.datetime(
            day.year, day.month, day.day,
            self.end_time.hour, self.end_time.minute,
            tz=timezone,
        )
        return TimeRange(start=start, end=end)


@dataclass(frozen=True)
class TimeOff:
    """An ad hoc exclusion for a provider (vacation, block), possibly spanning days."""
    start: DateTime
    end: DateTime
    reason: str = ""

    def __post_init__(self):
        object.__setattr__(self, "start", _utc(self.start))
        object.__setattr__(self, "end", _utc(self.end))
        if self.start >= self.end:
            raise ValueError(f"Time-off start {self.start} must be before end {self.end}")

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(start=self.start, end=self.end)


@dataclass(frozen=True)
class BookingPolicy:
    """
    Global booking rules.

    ``buffer_minutes`` is a cool-down enforced after each existing booking;
    ``min_advance_hours`` and ``max_advance_days`` bound the booking horizon.
    """
    buffer_minutes: int = 15
    min_advance_hours: int = 2
    max_advance_days: int = 60
    slot_granularity_minutes: int = 15

    def __post_init__(self):
        for name in ("buffer_minutes", "min_advance_hours", "max_advance_days"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if self.slot_granularity_minutes <= 0:
            raise ValueError("slot_granularity_minutes must be greater than zero")

    def earliest_start(self, now: DateTime) -> DateTime:
        """Earliest instant a slot may start at."""
        return now.add(hours=self.min_advance_hours)

    def last_bookable_date(self, today: date) -> date:
        """Far edge of the bookable window (inclusive)."""
        return today + timedelta(days=self.max_advance_days)


@dataclass(frozen=True)
class Provider:
    provider_id: str
    name: str
    active: bool = True


@dataclass(frozen=True)
class Service:
    service_id: str
    name: str
    duration_minutes: int
    price: Decimal
    active: bool = True


@dataclass(frozen=True)
class ServiceOffering:
    """
    A service as performed by one provider, with provider overrides applied.
    """
    provider_id: str
    provider_name: str
    service_id: str
    service_name: str
    duration_minutes: int
    price: Decimal


@dataclass(frozen=True)
class ClientInfo:
    """Client identity reference attached to a booking."""
    name: str
    email: str
    phone: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        if not self.name or not self.name.strip() or len(self.name) > 100:
            raise ValueError("Client name required (max 100 chars)")
        if "@" not in self.email:
            raise ValueError(f"Valid email required, got '{self.email}'")
        if self.notes is not None and len(self.notes) > 500:
            raise ValueError("Notes max 500 chars")
        object.__setattr__(self, "name", self.name.strip())
        object.__setattr__(self, "email", self.email.strip().lower())


@dataclass(frozen=True)
class BookingRequest:
    """
    A client's request for one slot. There is deliberately no end instant:
    the end is always derived from the current service duration.
    """
    provider_id: str
    service_id: str
    start: DateTime
    client: ClientInfo


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

    @property
    def is_active(self) -> bool:
        """Active bookings take part in overlap checks."""
        return self is not BookingStatus.CANCELLED

    def can_transition_to(self, target: "BookingStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW}
    ),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
}

RESCHEDULABLE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})


@dataclass(frozen=True)
class Booking:
    """
    A committed booking.

    Service and provider names, duration and price are a historical snapshot
    taken at admission time. Only status-related fields (and the interval, via
    rescheduling) ever change, always through ``dataclasses.replace``.
    """
    booking_id: str
    confirmation_code: str
    provider_id: str
    service_id: str
    start: DateTime
    end: DateTime
    status: BookingStatus
    client: ClientInfo
    service_name: str
    service_duration: int
    service_price: Decimal
    provider_name: str
    created_at: DateTime
    updated_at: DateTime
    cancelled_at: Optional[DateTime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    internal_notes: Optional[str] = None

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(start=self.start, end=self.end)

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    def with_status(
        self,
        status: BookingStatus,
        at: DateTime,
        *,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
        internal_notes: Optional[str] = None,
    ) -> "Booking":
        """
        Return a copy moved to ``status``.

        Raises:
            InvalidStatusTransitionError: If the lifecycle does not allow the move
        """
        if not self.status.can_transition_to(status):
            raise InvalidStatusTransitionError(
                f"Booking {self.confirmation_code} cannot move from "
                f"{self.status.value} to {status.value}"
            )

        changes: Dict[str, Any] = {"status": status, "updated_at": at}
        if status is BookingStatus.CANCELLED:
            changes.update(cancelled_at=at, cancellation_reason=reason, cancelled_by=actor)
        if internal_notes is not None:
            changes["internal_notes"] = internal_notes
        return replace(self, **changes)

    def rescheduled(self, start: DateTime, at: DateTime) -> "Booking":
        """Return a copy moved to ``start``, keeping the snapshotted duration."""
        if self.status not in RESCHEDULABLE_STATUSES:
            raise InvalidStatusTransitionError(
                f"Booking {self.confirmation_code} is {self.status.value} and cannot be rescheduled"
            )
        return replace(
            self,
            start=start,
            end=start.add(minutes=self.service_duration),
            updated_at=at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.booking_id,
            "confirmation_code": self.confirmation_code,
            "provider_id": self.provider_id,
            "provider_name": self.provider_name,
            "service_id": self.service_id,
            "service_name": self.service_name,
            "service_duration": self.service_duration,
            "price": str(self.service_price),
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "status": self.status.value,
            "client_name": self.client.name,
            "client_email": self.client.email,
        }


@dataclass(frozen=True)
class Slot:
    """
    A computed, never persisted, bookable interval.
    """
    time_range: TimeRange

    @property
    def start(self) -> DateTime:
        return self.time_range.start

    @property
    def end(self) -> DateTime:
        return self.time_range.end

    def display(self, timezone: str) -> str:
        """Human-readable start time, e.g. ``9:00 AM``."""
        return self.start.in_timezone(timezone).format("h:mm A")

    def to_dict(self, timezone: str) -> Dict[str, str]:
        return {
            "start": self.start.in_timezone(timezone).isoformat(),
            "end": self.end.in_timezone(timezone).isoformat(),
            "display": self.display(timezone),
        }

    def format_display(self, timezone: str) -> str:
        """
        Format the slot for display.
        Format: Weekday, YYYY-MM-DD | HH:MM - HH:MM (N min)
        """
        start = self.start.in_timezone(timezone)
        end = self.end.in_timezone(timezone)

        weekday = WEEKDAY_NAMES[day_of_week(start.date())]
        date_str = start.strftime("%Y-%m-%d")
        time_str = f"{start.strftime('%H:%M')} - {end.strftime('%H:%M')}"
        duration = self.time_range.duration_minutes()

        return f"{weekday}, {date_str} | {time_str} ({duration} min)"


@dataclass
class BookingQuery:
    """Filters for staff-side booking listings."""
    provider_id: Optional[str] = None
    status: Optional[BookingStatus] = None
    start_from: Optional[DateTime] = None
    start_to: Optional[DateTime] = None
    limit: int = 50
    offset: int = 0

    def __post_init__(self):
        self.limit = min(max(self.limit, 1), 100)
        self.offset = max(self.offset, 0)

    def matches(self, booking: Booking) -> bool:
        if self.provider_id is not None and booking.provider_id != self.provider_id:
            return False
        if self.status is not None and booking.status is not self.status:
            return False
        if self.start_from is not None and booking.start.timestamp() < self.start_from.timestamp():
            return False
        if self.start_to is not None and booking.start.timestamp() > self.start_to.timestamp():
            return False
        return True
