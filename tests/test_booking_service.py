"""
Tests for the BookingService orchestration layer.
"""

import random
import threading
from datetime import datetime
from typing import List, Tuple

import pendulum
import pytest

from slotbooker.adapters.config_store import ConfigPolicyStore
from slotbooker.adapters.memory_repository import InMemoryBookingRepository
from slotbooker.adapters.sqlite_repository import SqliteBookingRepository
from slotbooker.config import AppConfig
from slotbooker.domain.exceptions import (
    BookingError,
    ConcurrencyConflictError,
    InvalidStatusTransitionError,
    NotFoundError,
    PolicyViolationError,
    SlotConflictError,
    TransientStoreError,
)
from slotbooker.domain.intervals import apply_buffer, overlaps
from slotbooker.domain.models import Booking, BookingQuery, BookingRequest, BookingStatus, ClientInfo
from slotbooker.services.booking_service import BookingService, parse_month

TZ = "America/New_York"
NOW = pendulum.parse("2026-10-29 08:00", tz=TZ)  # Thursday


def _config_data() -> dict:
    return {
        "timezone": TZ,
        "booking_policy": {
            "buffer_minutes": 15,
            "min_advance_hours": 2,
            "max_advance_days": 60,
            "slot_granularity_minutes": 15,
        },
        "services": [
            {"id": "cut", "name": "Haircut", "duration_minutes": 60, "price": "45.00"},
            {"id": "trim", "name": "Beard Trim", "duration_minutes": 30, "price": "20.00"},
            {"id": "color", "name": "Color", "duration_minutes": 90, "price": "80.00"},
        ],
        "providers": [
            {
                "id": "ana",
                "name": "Ana",
                "weekly_hours": [
                    {"day_of_week": 1, "start": "09:00", "end": "17:00"},
                    {"day_of_week": 3, "start": "09:00", "end": "10:00"},
                ],
                "time_off": [
                    {"start": "2026-11-16 00:00", "end": "2026-11-17 00:00", "reason": "Vacation"},
                ],
                "services": [
                    {"service_id": "cut"},
                    {"service_id": "trim"},
                ],
            },
            {
                "id": "ben",
                "name": "Ben",
                "weekly_hours": [{"day_of_week": 1, "start": "09:00", "end": "17:00"}],
                "services": [{"service_id": "cut", "duration_minutes": 45, "price": "50.00"}],
            },
            {
                "id": "cleo",
                "name": "Cleo",
                "active": False,
                "weekly_hours": [{"day_of_week": 1, "start": "09:00", "end": "17:00"}],
                "services": [{"service_id": "cut"}],
            },
        ],
    }


class RecordingNotifier:
    def __init__(self):
        self.events: List[Tuple[str, str]] = []

    def dispatch(self, event: str, booking: Booking) -> None:
        self.events.append((event, booking.confirmation_code))


class FailingNotifier:
    def dispatch(self, event: str, booking: Booking) -> None:
        raise RuntimeError("smtp down")


class StaleReadRepository(InMemoryBookingRepository):
    """Read path that never sees existing bookings, as if a concurrent write was not yet visible."""

    def get_active_bookings(self, provider_id, range_start, range_end):
        return []


def _build_service(repository=None, **kwargs) -> BookingService:
    config = AppConfig.from_mapping(_config_data())
    return BookingService(
        ConfigPolicyStore(config),
        repository if repository is not None else InMemoryBookingRepository(),
        TZ,
        **kwargs,
    )


def _request(start: str, provider_id: str = "ana", service_id: str = "cut", name: str = "Jo Doe") -> BookingRequest:
    return BookingRequest(
        provider_id=provider_id,
        service_id=service_id,
        start=pendulum.parse(start, tz=TZ),
        client=ClientInfo(name=name, email="jo@example.com"),
    )


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "memory":
        return InMemoryBookingRepository()
    return SqliteBookingRepository(tmp_path / "bookings.sqlite3", timezone=TZ)


class TestListings:
    def test_available_dates_for_month(self):
        service = _build_service()

        dates = service.list_available_dates("ana", "cut", now=NOW, month="2026-11")

        # Mondays and Wednesdays, without the vacation Monday
        assert pendulum.date(2026, 11, 2) in dates
        assert pendulum.date(2026, 11, 4) in dates
        assert pendulum.date(2026, 11, 16) not in dates
        assert all(day.weekday() in (0, 2) for day in dates)
        assert dates == sorted(dates)

    def test_default_range_is_booking_window(self):
        service = _build_service()

        dates = service.list_available_dates("ana", "cut", now=NOW)

        assert dates[0] == pendulum.date(2026, 11, 2)
        assert dates[-1] <= pendulum.date(2026, 12, 28)

    def test_month_beyond_window(self):
        assert _build_service().list_available_dates("ana", "cut", now=NOW, month="2027-03") == []

    def test_invalid_month(self):
        with pytest.raises(ValueError):
            _build_service().list_available_dates("ana", "cut", now=NOW, month="November")

    def test_slots_use_provider_duration_override(self):
        slots = _build_service().list_slots("ben", "cut", pendulum.date(2026, 11, 2), now=NOW)

        assert slots[0].time_range.duration_minutes() == 45
        assert slots[-1].start == pendulum.parse("2026-11-02 16:15", tz=TZ)

    def test_slots_on_vacation_day(self):
        assert _build_service().list_slots("ana", "cut", pendulum.date(2026, 11, 16), now=NOW) == []

    def test_unknown_provider(self):
        with pytest.raises(NotFoundError):
            _build_service().list_slots("zoe", "cut", pendulum.date(2026, 11, 2), now=NOW)

    def test_inactive_provider(self):
        with pytest.raises(NotFoundError):
            _build_service().list_slots("cleo", "cut", pendulum.date(2026, 11, 2), now=NOW)

    def test_service_not_offered(self):
        with pytest.raises(PolicyViolationError):
            _build_service().list_slots("ana", "color", pendulum.date(2026, 11, 2), now=NOW)

    def test_exact_dates_drops_fully_booked_days(self):
        loose = _build_service()
        loose.submit_booking(_request("2026-11-04 09:00"), now=NOW)
        assert pendulum.date(2026, 11, 4) in loose.list_available_dates("ana", "cut", now=NOW, month="2026-11")

        exact = _build_service(exact_dates=True)
        exact.submit_booking(_request("2026-11-04 09:00"), now=NOW)
        dates = exact.list_available_dates("ana", "cut", now=NOW, month="2026-11")

        assert pendulum.date(2026, 11, 4) not in dates
        assert pendulum.date(2026, 11, 11) in dates


class TestSubmitBooking:
    """Admission of booking requests."""

    def test_successful_booking(self, repository):
        notifier = RecordingNotifier()
        service = _build_service(repository, notifier=notifier)

        booking = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        assert booking.status is BookingStatus.CONFIRMED
        assert booking.end == pendulum.parse("2026-11-02 11:00", tz=TZ)
        assert booking.service_name == "Haircut"
        assert booking.provider_name == "Ana"
        assert booking.service_duration == 60
        assert str(booking.service_price) == "45.00"
        assert len(booking.confirmation_code) == 6
        assert booking.created_at == NOW
        assert repository.get_booking(booking.booking_id) == booking
        assert notifier.events == [("booking.confirmed", booking.confirmation_code)]

    def test_booking_removes_slots(self):
        service = _build_service()
        day = pendulum.date(2026, 11, 2)

        service.submit_booking(_request("2026-11-02 10:00"), now=NOW)
        starts = [slot.start for slot in service.list_slots("ana", "cut", day, now=NOW)]

        assert pendulum.parse("2026-11-02 10:00", tz=TZ) not in starts
        assert pendulum.parse("2026-11-02 11:00", tz=TZ) not in starts
        assert pendulum.parse("2026-11-02 11:15", tz=TZ) in starts
        assert pendulum.parse("2026-11-02 09:00", tz=TZ) in starts

    def test_overlap_rejected(self, repository):
        service = _build_service(repository)
        service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        with pytest.raises(SlotConflictError) as exc_info:
            service.submit_booking(_request("2026-11-02 10:30", name="Sam"), now=NOW)

        assert exc_info.value.reason == "booking_conflict"

    def test_buffer_after_booking_rejected(self):
        service = _build_service()
        service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        with pytest.raises(SlotConflictError):
            service.submit_booking(_request("2026-11-02 11:00", service_id="trim"), now=NOW)

        # Ending exactly at the existing start is fine
        service.submit_booking(_request("2026-11-02 09:30", service_id="trim"), now=NOW)

    def test_other_provider_unaffected(self):
        service = _build_service()
        service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        booking = service.submit_booking(_request("2026-11-02 10:00", provider_id="ben"), now=NOW)

        assert booking.end == pendulum.parse("2026-11-02 10:45", tz=TZ)
        assert str(booking.service_price) == "50.00"

    def test_outside_working_hours(self):
        with pytest.raises(SlotConflictError) as exc_info:
            _build_service().submit_booking(_request("2026-11-02 16:30"), now=NOW)

        assert exc_info.value.reason == "outside_working_hours"

    def test_time_off(self):
        with pytest.raises(SlotConflictError) as exc_info:
            _build_service().submit_booking(_request("2026-11-16 10:00"), now=NOW)

        assert exc_info.value.reason == "time_off"

    def test_too_soon(self):
        now = pendulum.parse("2026-11-02 08:30", tz=TZ)

        with pytest.raises(PolicyViolationError):
            _build_service().submit_booking(_request("2026-11-02 10:00"), now=now)

    def test_too_far_ahead(self):
        with pytest.raises(PolicyViolationError):
            _build_service().submit_booking(_request("2027-01-04 10:00"), now=NOW)

    def test_service_not_offered(self):
        with pytest.raises(PolicyViolationError):
            _build_service().submit_booking(_request("2026-11-02 10:00", service_id="color"), now=NOW)

    def test_conflict_found_only_in_critical_section(self):
        repository = StaleReadRepository()
        service = _build_service(repository)
        service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        with pytest.raises(ConcurrencyConflictError):
            service.submit_booking(_request("2026-11-02 10:30", name="Sam"), now=NOW)

        assert len(repository.all_bookings()) == 1

    def test_naive_start_read_in_business_timezone(self):
        service = _build_service()
        request = BookingRequest(
            provider_id="ana",
            service_id="cut",
            start=datetime(2026, 11, 2, 10, 0),
            client=ClientInfo(name="Jo Doe", email="jo@example.com"),
        )

        booking = service.submit_booking(request, now=NOW)

        assert booking.start == pendulum.parse("2026-11-02 10:00", tz=TZ)
        assert booking.to_dict()["start"] == "2026-11-02T10:00:00-05:00"

    def test_notification_failure_does_not_undo_booking(self):
        repository = InMemoryBookingRepository()
        service = _build_service(repository, notifier=FailingNotifier())

        booking = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        assert repository.get_booking(booking.booking_id) is not None

    def test_code_collisions_exhausted(self):
        repository = InMemoryBookingRepository()
        service = _build_service(repository, code_generator=lambda: "AAAAAA")
        service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        with pytest.raises(TransientStoreError):
            service.submit_booking(_request("2026-11-02 14:00"), now=NOW)

        assert len(repository.all_bookings()) == 1

    def test_code_collision_retried(self):
        codes = iter(["AAAAAA", "AAAAAA", "BBBBBB"])
        service = _build_service(code_generator=lambda: next(codes))

        first = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)
        second = service.submit_booking(_request("2026-11-02 14:00"), now=NOW)

        assert (first.confirmation_code, second.confirmation_code) == ("AAAAAA", "BBBBBB")

    def test_failure_inside_unit_commits_nothing(self):
        repository = InMemoryBookingRepository()

        def broken_generator():
            raise RuntimeError("entropy pool empty")

        service = _build_service(repository, code_generator=broken_generator)

        with pytest.raises(RuntimeError):
            service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        assert repository.all_bookings() == []

    def test_lock_timeout(self):
        repository = InMemoryBookingRepository()
        service = _build_service(repository, store_timeout=0.05)

        with repository.admission("ana", timeout=1):
            with pytest.raises(TransientStoreError):
                service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        assert repository.all_bookings() == []


class TestConcurrentAdmission:
    """Racing admissions for the same provider."""

    def test_exactly_one_of_overlapping_requests_wins(self, repository):
        service = _build_service(repository)
        starts = ["2026-11-02 10:00", "2026-11-02 10:15", "2026-11-02 10:30", "2026-11-02 10:45",
                  "2026-11-02 10:00", "2026-11-02 10:30"]
        barrier = threading.Barrier(len(starts))
        results: List[object] = []
        results_lock = threading.Lock()

        def attempt(start: str) -> None:
            barrier.wait()
            try:
                outcome = service.submit_booking(_request(start), now=NOW)
            except BookingError as e:
                outcome = e
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt, args=(start,)) for start in starts]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        successes = [r for r in results if isinstance(r, Booking)]
        failures = [r for r in results if isinstance(r, BookingError)]

        assert len(successes) == 1
        assert len(failures) == len(starts) - 1
        assert all(isinstance(f, SlotConflictError) for f in failures)

        stored = repository.list_bookings(BookingQuery(provider_id="ana"))
        assert [b.booking_id for b in stored] == [successes[0].booking_id]

    def test_different_providers_book_in_parallel(self, repository):
        service = _build_service(repository)
        barrier = threading.Barrier(2)
        results = []

        def attempt(provider_id: str) -> None:
            barrier.wait()
            results.append(service.submit_booking(_request("2026-11-02 10:00", provider_id=provider_id), now=NOW))

        threads = [threading.Thread(target=attempt, args=(p,)) for p in ("ana", "ben")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(b.provider_id for b in results) == ["ana", "ben"]


class TestCancellation:
    def test_cancel_then_rebook_same_slot(self, repository):
        notifier = RecordingNotifier()
        service = _build_service(repository, notifier=notifier)
        booking = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        cancelled = service.cancel_booking(booking.booking_id, now=NOW, actor="client", reason="Sick")
        rebooked = service.submit_booking(_request("2026-11-02 10:00", name="Sam"), now=NOW)

        assert cancelled.status is BookingStatus.CANCELLED
        assert cancelled.cancelled_by == "client"
        assert cancelled.cancellation_reason == "Sick"
        assert rebooked.status is BookingStatus.CONFIRMED
        assert repository.get_booking(booking.booking_id).status is BookingStatus.CANCELLED
        assert [event for event, _ in notifier.events] == [
            "booking.confirmed", "booking.cancelled", "booking.confirmed",
        ]

    def test_cancel_with_confirmation_code(self):
        service = _build_service()
        booking = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        cancelled = service.cancel_booking(
            booking.booking_id,
            now=NOW,
            actor="client",
            confirmation_code=booking.confirmation_code.lower(),
        )

        assert cancelled.status is BookingStatus.CANCELLED

    def test_wrong_confirmation_code(self):
        service = _build_service(code_generator=lambda: "K7MQ2X")
        booking = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        with pytest.raises(NotFoundError):
            service.cancel_booking(booking.booking_id, now=NOW, actor="client", confirmation_code="ZZZZZZ")

        assert service.get_booking(booking.booking_id).status is BookingStatus.CONFIRMED

    def test_cancel_twice(self):
        service = _build_service()
        booking = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)
        service.cancel_booking(booking.booking_id, now=NOW, actor="client")

        with pytest.raises(InvalidStatusTransitionError):
            service.cancel_booking(booking.booking_id, now=NOW, actor="client")

    def test_cancel_unknown_booking(self):
        with pytest.raises(NotFoundError):
            _build_service().cancel_booking("missing", now=NOW, actor="client")


class TestStatusLifecycle:
    def test_complete_booking(self, repository):
        notifier = RecordingNotifier()
        service = _build_service(repository, notifier=notifier)
        booking = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)
        later = pendulum.parse("2026-11-02 11:05", tz=TZ)

        completed = service.update_status(booking.booking_id, "completed", now=later, internal_notes="Paid")

        assert completed.status is BookingStatus.COMPLETED
        assert completed.internal_notes == "Paid"
        assert completed.updated_at == later
        assert repository.get_booking(booking.booking_id).status is BookingStatus.COMPLETED
        assert notifier.events[-1][0] == "booking.status_changed"

    def test_terminal_status(self):
        service = _build_service()
        booking = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)
        service.update_status(booking.booking_id, BookingStatus.NO_SHOW, now=NOW)

        with pytest.raises(InvalidStatusTransitionError):
            service.update_status(booking.booking_id, BookingStatus.COMPLETED, now=NOW)

    def test_cancel_through_status_update(self):
        service = _build_service()
        booking = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        cancelled = service.update_status(booking.booking_id, BookingStatus.CANCELLED, now=NOW, actor="admin")

        assert cancelled.status is BookingStatus.CANCELLED
        assert cancelled.cancelled_by == "admin"

    def test_cancel_through_status_update_keeps_internal_notes(self, repository):
        service = _build_service(repository)
        booking = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        cancelled = service.update_status(
            booking.booking_id, "cancelled", now=NOW, actor="admin", internal_notes="Called in sick"
        )

        assert cancelled.status is BookingStatus.CANCELLED
        assert cancelled.internal_notes == "Called in sick"
        assert repository.get_booking(booking.booking_id).internal_notes == "Called in sick"

    def test_unknown_status(self):
        service = _build_service()
        booking = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        with pytest.raises(ValueError):
            service.update_status(booking.booking_id, "archived", now=NOW)


class TestReschedule:
    def test_move_to_free_slot(self, repository):
        notifier = RecordingNotifier()
        service = _build_service(repository, notifier=notifier)
        booking = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        moved = service.reschedule_booking(booking.booking_id, pendulum.parse("2026-11-09 14:00", tz=TZ), now=NOW)

        assert moved.start == pendulum.parse("2026-11-09 14:00", tz=TZ)
        assert moved.end == pendulum.parse("2026-11-09 15:00", tz=TZ)
        assert moved.confirmation_code == booking.confirmation_code
        assert repository.get_booking(booking.booking_id).start == moved.start
        assert notifier.events[-1] == ("booking.rescheduled", booking.confirmation_code)

    def test_move_overlapping_own_interval(self):
        service = _build_service()
        booking = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        moved = service.reschedule_booking(booking.booking_id, pendulum.parse("2026-11-02 10:30", tz=TZ), now=NOW)

        assert moved.start == pendulum.parse("2026-11-02 10:30", tz=TZ)

    def test_move_onto_other_booking(self):
        service = _build_service()
        first = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)
        service.submit_booking(_request("2026-11-02 14:00", name="Sam"), now=NOW)

        with pytest.raises(SlotConflictError):
            service.reschedule_booking(first.booking_id, pendulum.parse("2026-11-02 13:30", tz=TZ), now=NOW)

        assert service.get_booking(first.booking_id).start == pendulum.parse("2026-11-02 10:00", tz=TZ)

    def test_cancelled_booking_cannot_move(self):
        service = _build_service()
        booking = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)
        service.cancel_booking(booking.booking_id, now=NOW, actor="client")

        with pytest.raises(InvalidStatusTransitionError):
            service.reschedule_booking(booking.booking_id, pendulum.parse("2026-11-09 10:00", tz=TZ), now=NOW)


class TestLookupAndListing:
    def test_lookup_is_case_insensitive(self):
        service = _build_service(code_generator=lambda: "K7MQ2X")
        booking = service.submit_booking(_request("2026-11-02 10:00"), now=NOW)

        assert service.lookup_booking(" k7mq2x ") == booking

    def test_lookup_unknown(self):
        with pytest.raises(NotFoundError):
            _build_service().lookup_booking("ZZZZZZ")

    def test_list_latest_first_with_filters(self, repository):
        service = _build_service(repository)
        early = service.submit_booking(_request("2026-11-02 09:00"), now=NOW)
        late = service.submit_booking(_request("2026-11-09 09:00"), now=NOW)
        other = service.submit_booking(_request("2026-11-02 09:00", provider_id="ben"), now=NOW)
        service.cancel_booking(early.booking_id, now=NOW, actor="client")

        ana = service.list_bookings(BookingQuery(provider_id="ana"))
        confirmed = service.list_bookings(BookingQuery(status=BookingStatus.CONFIRMED))
        limited = service.list_bookings(BookingQuery(limit=1, offset=1))
        november_2 = service.list_bookings(BookingQuery(
            start_from=pendulum.parse("2026-11-02 00:00", tz=TZ),
            start_to=pendulum.parse("2026-11-02 23:59", tz=TZ),
        ))

        assert [b.booking_id for b in ana] == [late.booking_id, early.booking_id]
        assert {b.booking_id for b in confirmed} == {late.booking_id, other.booking_id}
        assert len(limited) == 1
        assert {b.booking_id for b in november_2} == {early.booking_id, other.booking_id}


def test_parse_month():
    first, last = parse_month("2026-02")

    assert first == pendulum.date(2026, 2, 1)
    assert last == pendulum.date(2026, 2, 28)


def test_random_admissions_never_overlap():
    """Random requests and cancellations: committed bookings never violate overlap or buffer."""
    rng = random.Random(20261102)
    service = _build_service()
    days = ["2026-11-02", "2026-11-04", "2026-11-09"]
    admitted: List[Booking] = []

    for _ in range(300):
        if admitted and rng.random() < 0.15:
            victim = rng.choice(admitted)
            try:
                service.cancel_booking(victim.booking_id, now=NOW, actor="client")
            except InvalidStatusTransitionError:
                pass
            continue

        hour = rng.randint(8, 17)
        minute = rng.choice([0, 5, 10, 15, 20, 30, 40, 45, 50])
        start = f"{rng.choice(days)} {hour:02d}:{minute:02d}"
        try:
            admitted.append(
                service.submit_booking(_request(start, service_id=rng.choice(["cut", "trim"])), now=NOW)
            )
        except SlotConflictError:
            pass

    active = [service.get_booking(b.booking_id) for b in admitted]
    active = [b for b in active if b.is_active]
    assert active

    for i, earlier in enumerate(active):
        for later in active[i + 1:]:
            assert not overlaps(earlier.time_range, later.time_range)
            # A booking admitted later never starts inside an earlier booking's buffer
            assert not overlaps(later.time_range, apply_buffer(earlier.time_range, 15))
