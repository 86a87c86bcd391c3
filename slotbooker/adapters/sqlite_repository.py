"""
SQLite-backed booking repository.

The admission unit of work runs inside a ``BEGIN IMMEDIATE`` transaction, so
the overlap re-check and the write are serialized against every other writer.
The connection ``timeout`` bounds how long a writer waits for the database.
"""

import logging
import sqlite3
from contextlib import closing, contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence

import pendulum
from pendulum import DateTime

from ..domain.exceptions import TransientStoreError
from ..domain.models import Booking, BookingQuery, BookingStatus, ClientInfo
from .repository import AdmissionRepositoryMixin

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS bookings (
    id TEXT PRIMARY KEY,
    confirmation_code TEXT UNIQUE NOT NULL,
    provider_id TEXT NOT NULL,
    service_id TEXT NOT NULL,

    -- Denormalized for historical reference
    service_name TEXT NOT NULL,
    service_duration INTEGER NOT NULL,
    service_price TEXT NOT NULL,
    provider_name TEXT NOT NULL,

    -- Instants as UTC epoch seconds
    start_ts REAL NOT NULL,
    end_ts REAL NOT NULL,

    status TEXT NOT NULL DEFAULT 'pending',

    client_name TEXT NOT NULL,
    client_email TEXT NOT NULL,
    client_phone TEXT,
    client_notes TEXT,
    internal_notes TEXT,

    cancelled_at REAL,
    cancellation_reason TEXT,
    cancelled_by TEXT,

    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_bookings_provider ON bookings(provider_id, start_ts);
CREATE INDEX IF NOT EXISTS idx_bookings_status ON bookings(status);
"""

COLUMNS = (
    "id", "confirmation_code", "provider_id", "service_id",
    "service_name", "service_duration", "service_price", "provider_name",
    "start_ts", "end_ts", "status",
    "client_name", "client_email", "client_phone", "client_notes", "internal_notes",
    "cancelled_at", "cancellation_reason", "cancelled_by",
    "created_at", "updated_at",
)


class SqliteBookingRepository(AdmissionRepositoryMixin):
    """
    Persistent repository for the CLI and single-host deployments.

    A new connection is opened per operation so the repository can be shared
    between threads.
    """

    def __init__(self, db_path: Path | str, timezone: str, timeout: float = 5.0):
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self.timezone = timezone
        self.timeout = timeout
        self._init_db()

    def _connect(self, timeout: float) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        try:
            with closing(self._connect(self.timeout)) as conn:
                conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise TransientStoreError(f"Could not initialise booking store {self.db_path}: {exc}") from exc

    @contextmanager
    def admission(self, provider_id: str, timeout: float) -> Iterator["_SqliteAdmissionUnit"]:
        conn = self._connect(timeout)
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                logger.warning("Admission for provider %s could not start: %s", provider_id, exc)
                raise TransientStoreError(
                    f"Booking store is busy, please retry the request ({exc})"
                ) from exc

            unit = _SqliteAdmissionUnit(conn, provider_id, self.timezone)
            try:
                yield unit
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                conn.execute("ROLLBACK")
                raise TransientStoreError(f"Booking store failure: {exc}") from exc
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def get_active_bookings(
        self,
        provider_id: str,
        range_start: DateTime,
        range_end: DateTime
    ) -> List[Booking]:
        return self._select(
            """
            SELECT * FROM bookings
            WHERE provider_id = ?
              AND status != 'cancelled'
              AND start_ts < ?
              AND end_ts > ?
            ORDER BY start_ts
            """,
            (provider_id, range_end.timestamp(), range_start.timestamp()),
        )

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        rows = self._select("SELECT * FROM bookings WHERE id = ?", (booking_id,))
        return rows[0] if rows else None

    def find_by_confirmation_code(self, code: str) -> Optional[Booking]:
        rows = self._select("SELECT * FROM bookings WHERE confirmation_code = ?", (code,))
        return rows[0] if rows else None

    def list_bookings(self, query: BookingQuery) -> List[Booking]:
        where = ["1=1"]
        params: List[Any] = []

        if query.provider_id is not None:
            where.append("provider_id = ?")
            params.append(query.provider_id)
        if query.status is not None:
            where.append("status = ?")
            params.append(query.status.value)
        if query.start_from is not None:
            where.append("start_ts >= ?")
            params.append(query.start_from.timestamp())
        if query.start_to is not None:
            where.append("start_ts <= ?")
            params.append(query.start_to.timestamp())

        return self._select(
            f"""
            SELECT * FROM bookings
            WHERE {' AND '.join(where)}
            ORDER BY start_ts DESC
            LIMIT ? OFFSET ?
            """,
            (*params, query.limit, query.offset),
        )

    def _select(self, sql: str, params: Sequence[Any]) -> List[Booking]:
        try:
            with closing(self._connect(self.timeout)) as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise TransientStoreError(f"Booking store failure: {exc}") from exc

        return [_row_to_booking(row, self.timezone) for row in rows]


class _SqliteAdmissionUnit:
    """Reads and writes on the connection holding the write transaction."""

    def __init__(self, conn: sqlite3.Connection, provider_id: str, timezone: str):
        self._conn = conn
        self._provider_id = provider_id
        self._timezone = timezone

    def active_bookings(self, range_start: DateTime, range_end: DateTime) -> List[Booking]:
        rows = self._conn.execute(
            """
            SELECT * FROM bookings
            WHERE provider_id = ?
              AND status != 'cancelled'
              AND start_ts < ?
              AND end_ts > ?
            ORDER BY start_ts
            """,
            (self._provider_id, range_end.timestamp(), range_start.timestamp()),
        ).fetchall()
        return [_row_to_booking(row, self._timezone) for row in rows]

    def get(self, booking_id: str) -> Optional[Booking]:
        row = self._conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        return _row_to_booking(row, self._timezone) if row else None

    def claim_confirmation_code(self, code: str) -> bool:
        # Safe without a reservation table: the write transaction excludes other writers
        row = self._conn.execute(
            "SELECT 1 FROM bookings WHERE confirmation_code = ?", (code,)
        ).fetchone()
        return row is None

    def insert(self, booking: Booking) -> Booking:
        self._check_provider(booking)
        placeholders = ", ".join("?" for _ in COLUMNS)
        self._conn.execute(
            f"INSERT INTO bookings ({', '.join(COLUMNS)}) VALUES ({placeholders})",
            _booking_to_row(booking),
        )
        return booking

    def update(self, booking: Booking) -> Booking:
        self._check_provider(booking)
        assignments = ", ".join(f"{column} = ?" for column in COLUMNS[1:])
        row = _booking_to_row(booking)
        self._conn.execute(
            f"UPDATE bookings SET {assignments} WHERE id = ?",
            (*row[1:], row[0]),
        )
        return booking

    def _check_provider(self, booking: Booking) -> None:
        if booking.provider_id != self._provider_id:
            raise ValueError(
                f"Booking for provider {booking.provider_id} written in the unit of "
                f"provider {self._provider_id}"
            )


def _timestamp(value: Optional[DateTime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


def _instant(value: Optional[float], timezone: str) -> Optional[DateTime]:
    return pendulum.from_timestamp(value, tz=timezone) if value is not None else None


def _booking_to_row(booking: Booking) -> tuple:
    return (
        booking.booking_id,
        booking.confirmation_code,
        booking.provider_id,
        booking.service_id,
        booking.service_name,
        booking.service_duration,
        str(booking.service_price),
        booking.provider_name,
        booking.start.timestamp(),
        booking.end.timestamp(),
        booking.status.value,
        booking.client.name,
        booking.client.email,
        booking.client.phone,
        booking.client.notes,
        booking.internal_notes,
        _timestamp(booking.cancelled_at),
        booking.cancellation_reason,
        booking.cancelled_by,
        booking.created_at.timestamp(),
        booking.updated_at.timestamp(),
    )


def _row_to_booking(row: sqlite3.Row, timezone: str) -> Booking:
    return Booking(
        booking_id=row["id"],
        confirmation_code=row["confirmation_code"],
        provider_id=row["provider_id"],
        service_id=row["service_id"],
        start=_instant(row["start_ts"], timezone),
        end=_instant(row["end_ts"], timezone),
        status=BookingStatus(row["status"]),
        client=ClientInfo(
            name=row["client_name"],
            email=row["client_email"],
            phone=row["client_phone"],
            notes=row["client_notes"],
        ),
        service_name=row["service_name"],
        service_duration=row["service_duration"],
        service_price=Decimal(row["service_price"]),
        provider_name=row["provider_name"],
        created_at=_instant(row["created_at"], timezone),
        updated_at=_instant(row["updated_at"], timezone),
        cancelled_at=_instant(row["cancelled_at"], timezone),
        cancellation_reason=row["cancellation_reason"],
        cancelled_by=row["cancelled_by"],
        internal_notes=row["internal_notes"],
    )
