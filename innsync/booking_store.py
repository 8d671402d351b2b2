from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from innsync.errors import RoomUnavailableError
from innsync.models import (
    OCCUPYING_STATUSES,
    Booking,
    Feed,
    LedgerEntry,
    PropertyPolicy,
    Room,
    UnassignedEvent,
    format_clock,
    parse_clock,
    parse_date,
    parse_iso_datetime,
    serialize_datetime,
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return serialize_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, time):
        return format_clock(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _optional_clock(value: Any) -> time | None:
    if value is None or str(value).strip() == "":
        return None
    return parse_clock(value)


_OCCUPYING_SQL = ", ".join(f"'{status}'" for status in OCCUPYING_STATUSES)

# Params: room_id, booking_id, new_end_date, new_start_date.
_ROOM_OVERLAP_SQL = f"""
EXISTS (
    SELECT 1 FROM bookings AS other
    WHERE other.room_id = ?
      AND other.id != ?
      AND other.status IN ({_OCCUPYING_SQL})
      AND other.start_date < ?
      AND other.end_date > ?
)
"""

_BOOKING_COLUMNS = (
    "id",
    "property_id",
    "room_id",
    "room_type_id",
    "start_date",
    "end_date",
    "start_time",
    "end_time",
    "status",
    "source",
    "external_uid",
    "ical_feed_id",
    "provider",
    "guest_name",
    "guest_email",
    "guest_phone",
    "guest_address",
    "form_booking_id",
    "form_submitted_at",
    "version",
)

_UPDATABLE_BOOKING_FIELDS = frozenset(_BOOKING_COLUMNS) - {"id", "property_id", "version"}


def _booking_from_row(row: sqlite3.Row) -> Booking:
    return Booking(
        id=row["id"],
        property_id=row["property_id"],
        room_id=row["room_id"],
        room_type_id=row["room_type_id"],
        start_date=parse_date(row["start_date"]),
        end_date=parse_date(row["end_date"]),
        start_time=_optional_clock(row["start_time"]),
        end_time=_optional_clock(row["end_time"]),
        status=row["status"],
        source=row["source"],
        external_uid=row["external_uid"],
        ical_feed_id=row["ical_feed_id"],
        provider=row["provider"],
        guest_name=row["guest_name"],
        guest_email=row["guest_email"],
        guest_phone=row["guest_phone"],
        guest_address=row["guest_address"],
        form_booking_id=row["form_booking_id"],
        form_submitted_at=parse_iso_datetime(row["form_submitted_at"]),
        version=int(row["version"]),
    )


def _feed_from_row(row: sqlite3.Row) -> Feed:
    return Feed(
        id=row["id"],
        property_id=row["property_id"],
        url=row["url"],
        room_id=row["room_id"],
        room_type_id=row["room_type_id"],
        provider=row["provider"] or "",
        is_active=bool(row["is_active"]),
        last_sync=parse_iso_datetime(row["last_sync"]),
        color=row["color"] or "",
    )


def _ledger_from_row(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        property_id=row["property_id"],
        uid_key=row["uid_key"],
        booking_id=row["booking_id"],
        feed_id=row["feed_id"],
        room_id=row["room_id"],
        room_type_id=row["room_type_id"],
        start_date=parse_date(row["start_date"]),
        end_date=parse_date(row["end_date"]),
        last_seen=parse_iso_datetime(row["last_seen"]),
    )


def _unassigned_from_row(row: sqlite3.Row) -> UnassignedEvent:
    return UnassignedEvent(
        id=row["id"],
        property_id=row["property_id"],
        uid_key=row["uid_key"],
        start_date=parse_date(row["start_date"]),
        end_date=parse_date(row["end_date"]),
        feed_id=row["feed_id"],
        room_type_id=row["room_type_id"],
        uid=row["uid"],
        summary=row["summary"] or "",
        start_time=_optional_clock(row["start_time"]),
        end_time=_optional_clock(row["end_time"]),
        booking_id=row["booking_id"],
        resolved=bool(row["resolved"]),
    )


class BookingStore:
    """SQLite-backed booking ledger.

    Every write that two concurrent sync runs could race on is expressed as a
    single conditional statement or runs inside ``BEGIN IMMEDIATE``; the
    in-process lock only serializes threads sharing this object.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS properties (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            timezone TEXT,
            check_in_time TEXT,
            check_out_time TEXT
        );

        CREATE TABLE IF NOT EXISTS rooms (
            id TEXT PRIMARY KEY,
            property_id TEXT NOT NULL,
            room_type_id TEXT,
            name TEXT NOT NULL DEFAULT ''
        );

        CREATE TABLE IF NOT EXISTS ical_feeds (
            id TEXT PRIMARY KEY,
            property_id TEXT NOT NULL,
            room_id TEXT,
            room_type_id TEXT,
            provider TEXT,
            url TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            last_sync TEXT,
            color TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS bookings (
            id TEXT PRIMARY KEY,
            property_id TEXT NOT NULL,
            room_id TEXT,
            room_type_id TEXT,
            start_date TEXT NOT NULL,
            end_date TEXT NOT NULL,
            start_time TEXT,
            end_time TEXT,
            status TEXT NOT NULL,
            source TEXT NOT NULL,
            external_uid TEXT,
            ical_feed_id TEXT,
            provider TEXT,
            guest_name TEXT,
            guest_email TEXT,
            guest_phone TEXT,
            guest_address TEXT,
            form_booking_id TEXT,
            form_submitted_at TEXT,
            version INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_bookings_room_dates ON bookings(room_id, start_date, end_date);
        CREATE INDEX IF NOT EXISTS idx_bookings_property_dates ON bookings(property_id, start_date, end_date);
        CREATE INDEX IF NOT EXISTS idx_bookings_external_uid ON bookings(property_id, external_uid);

        CREATE TABLE IF NOT EXISTS booking_documents (
            id TEXT PRIMARY KEY,
            booking_id TEXT NOT NULL,
            doc_type TEXT NOT NULL,
            storage_path TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS ical_uid_map (
            property_id TEXT NOT NULL,
            uid_key TEXT NOT NULL,
            booking_id TEXT,
            feed_id TEXT,
            room_id TEXT,
            room_type_id TEXT,
            start_date TEXT,
            end_date TEXT,
            last_seen TEXT NOT NULL,
            PRIMARY KEY (property_id, uid_key)
        );

        CREATE TABLE IF NOT EXISTS ical_suppressed (
            property_id TEXT NOT NULL,
            uid TEXT NOT NULL,
            note TEXT,
            created_at TEXT NOT NULL,
            PRIMARY KEY (property_id, uid)
        );

        CREATE TABLE IF NOT EXISTS ical_unassigned_events (
            id TEXT PRIMARY KEY,
            property_id TEXT NOT NULL,
            feed_id TEXT,
            room_type_id TEXT,
            uid_key TEXT NOT NULL,
            uid TEXT,
            summary TEXT,
            start_date TEXT NOT NULL,
            end_date TEXT NOT NULL,
            start_time TEXT,
            end_time TEXT,
            booking_id TEXT,
            resolved INTEGER NOT NULL DEFAULT 0,
            resolved_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (property_id, uid_key)
        );

        CREATE TABLE IF NOT EXISTS feed_sync_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            feed_id TEXT NOT NULL,
            run_id INTEGER,
            started_at TEXT NOT NULL,
            finished_at TEXT NOT NULL,
            status TEXT NOT NULL,
            imported_count INTEGER NOT NULL,
            created_count INTEGER NOT NULL,
            updated_count INTEGER NOT NULL,
            cancelled_count INTEGER NOT NULL,
            unassigned_count INTEGER NOT NULL,
            error_message TEXT
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            feeds_ok INTEGER NOT NULL,
            feeds_failed INTEGER NOT NULL,
            imported INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            property_id TEXT NOT NULL,
            subject TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_usage (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            used_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_sync_usage_account ON sync_usage(account_id, event_type, used_at);
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # -- properties, rooms, feeds -------------------------------------------------

    def upsert_property(
        self,
        *,
        property_id: str,
        account_id: str,
        name: str = "",
        timezone: str | None = None,
        check_in_time: str | None = None,
        check_out_time: str | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO properties(id, account_id, name, timezone, check_in_time, check_out_time)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        account_id = excluded.account_id,
                        name = excluded.name,
                        timezone = excluded.timezone,
                        check_in_time = excluded.check_in_time,
                        check_out_time = excluded.check_out_time
                    """,
                    (property_id, account_id, name, timezone, check_in_time, check_out_time),
                )

    def get_property_policy(
        self,
        property_id: str,
        *,
        default_timezone: str = "UTC",
        default_check_in: str = "14:00",
        default_check_out: str = "11:00",
    ) -> PropertyPolicy | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, account_id, timezone, check_in_time, check_out_time FROM properties WHERE id = ?",
                    (property_id,),
                ).fetchone()
        if row is None:
            return None
        return PropertyPolicy(
            property_id=row["id"],
            account_id=row["account_id"],
            timezone=(row["timezone"] or "").strip() or default_timezone,
            check_in_time=parse_clock(row["check_in_time"], default_check_in),
            check_out_time=parse_clock(row["check_out_time"], default_check_out),
        )

    def add_room(self, room: Room) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO rooms(id, property_id, room_type_id, name)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        property_id = excluded.property_id,
                        room_type_id = excluded.room_type_id,
                        name = excluded.name
                    """,
                    (room.id, room.property_id, room.room_type_id, room.name),
                )

    def get_room(self, room_id: str) -> Room | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, property_id, room_type_id, name FROM rooms WHERE id = ?", (room_id,)
                ).fetchone()
        if row is None:
            return None
        return Room(id=row["id"], property_id=row["property_id"], room_type_id=row["room_type_id"], name=row["name"])

    def list_rooms(self, property_id: str, room_type_id: str | None = None) -> list[Room]:
        query = "SELECT id, property_id, room_type_id, name FROM rooms WHERE property_id = ?"
        params: list[Any] = [property_id]
        if room_type_id is not None:
            query += " AND room_type_id = ?"
            params.append(room_type_id)
        query += " ORDER BY name, id"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        return [
            Room(id=row["id"], property_id=row["property_id"], room_type_id=row["room_type_id"], name=row["name"])
            for row in rows
        ]

    def upsert_feed(self, feed: Feed) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO ical_feeds(id, property_id, room_id, room_type_id, provider, url, is_active,
                                           last_sync, color, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        property_id = excluded.property_id,
                        room_id = excluded.room_id,
                        room_type_id = excluded.room_type_id,
                        provider = excluded.provider,
                        url = excluded.url,
                        is_active = excluded.is_active,
                        color = excluded.color
                    """,
                    (
                        feed.id,
                        feed.property_id,
                        feed.room_id,
                        feed.room_type_id,
                        feed.provider,
                        feed.url,
                        int(feed.is_active),
                        serialize_datetime(feed.last_sync),
                        feed.color,
                        _utc_now(),
                    ),
                )

    def get_feed(self, feed_id: str) -> Feed | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM ical_feeds WHERE id = ?", (feed_id,)).fetchone()
        return _feed_from_row(row) if row else None

    def list_feeds(self, *, active_only: bool = True, property_id: str | None = None) -> list[Feed]:
        query = "SELECT * FROM ical_feeds WHERE 1 = 1"
        params: list[Any] = []
        if active_only:
            query += " AND is_active = 1"
        if property_id is not None:
            query += " AND property_id = ?"
            params.append(property_id)
        query += " ORDER BY created_at, id"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        return [_feed_from_row(row) for row in rows]

    def mark_feed_synced(self, feed_id: str, synced_at: datetime | None = None) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE ical_feeds SET last_sync = ? WHERE id = ?",
                    (serialize_datetime(synced_at) or _utc_now(), feed_id),
                )

    # -- bookings -----------------------------------------------------------------

    def _insert_booking(self, conn: sqlite3.Connection, booking: Booking) -> None:
        now = _utc_now()
        columns = _BOOKING_COLUMNS + ("created_at", "updated_at")
        values = tuple(_to_db(getattr(booking, name)) for name in _BOOKING_COLUMNS) + (now, now)
        placeholders = ", ".join("?" for _ in columns)
        column_sql = ", ".join(columns)
        if booking.room_id and booking.status in OCCUPYING_STATUSES:
            cursor = conn.execute(
                f"INSERT INTO bookings({column_sql}) SELECT {placeholders} WHERE NOT {_ROOM_OVERLAP_SQL}",
                values
                + (booking.room_id, booking.id, _to_db(booking.end_date), _to_db(booking.start_date)),
            )
            if cursor.rowcount == 0:
                raise RoomUnavailableError(
                    f"Room {booking.room_id} is occupied between {booking.start_date} and {booking.end_date}"
                )
            return
        conn.execute(f"INSERT INTO bookings({column_sql}) VALUES ({placeholders})", values)

    def insert_booking(self, booking: Booking) -> str:
        with self._transaction() as conn:
            self._insert_booking(conn, booking)
        return booking.id

    def create_booking_for_key(self, booking: Booking, uid_key: str) -> tuple[str, bool]:
        """Insert ``booking`` and bind it to ``uid_key`` unless another run already did.

        Returns ``(booking_id, created)``; when ``created`` is false the id is the
        booking the ledger already points at.
        """
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT m.booking_id
                FROM ical_uid_map AS m
                JOIN bookings AS b ON b.id = m.booking_id
                WHERE m.property_id = ? AND m.uid_key = ?
                """,
                (booking.property_id, uid_key),
            ).fetchone()
            if row is not None:
                return str(row["booking_id"]), False
            self._insert_booking(conn, booking)
            self._upsert_ledger(
                conn,
                LedgerEntry(
                    property_id=booking.property_id,
                    uid_key=uid_key,
                    booking_id=booking.id,
                    feed_id=booking.ical_feed_id,
                    room_id=booking.room_id,
                    room_type_id=booking.room_type_id,
                    start_date=booking.start_date,
                    end_date=booking.end_date,
                ),
            )
        return booking.id, True

    def get_booking(self, booking_id: str) -> Booking | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        return _booking_from_row(row) if row else None

    def list_bookings(self, property_id: str, *, include_cancelled: bool = True) -> list[Booking]:
        query = "SELECT * FROM bookings WHERE property_id = ?"
        if not include_cancelled:
            query += " AND status != 'cancelled'"
        query += " ORDER BY start_date, created_at, id"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, (property_id,)).fetchall()
        return [_booking_from_row(row) for row in rows]

    def find_booking_by_external_uid(self, property_id: str, uid: str) -> Booking | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM bookings
                    WHERE property_id = ? AND external_uid = ?
                    ORDER BY status = 'cancelled', created_at
                    LIMIT 1
                    """,
                    (property_id, uid),
                ).fetchone()
        return _booking_from_row(row) if row else None

    def find_bookings_on_dates(
        self,
        property_id: str,
        start_date: date,
        end_date: date,
        *,
        source: str,
        exclude_booking_id: str | None = None,
    ) -> list[Booking]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM bookings
                    WHERE property_id = ?
                      AND start_date = ?
                      AND end_date = ?
                      AND source = ?
                      AND status != 'cancelled'
                      AND id != ?
                    ORDER BY created_at, id
                    """,
                    (property_id, _to_db(start_date), _to_db(end_date), source, exclude_booking_id or ""),
                ).fetchall()
        return [_booking_from_row(row) for row in rows]

    def update_booking(self, booking_id: str, fields: dict[str, Any], *, expected_version: int) -> str:
        """Versioned update.

        Returns ``"ok"``, ``"version_conflict"`` when the row moved on since it was
        read, or ``"overlap"`` when the result would put two occupying bookings in
        the same room on the same night.
        """
        unknown = set(fields) - _UPDATABLE_BOOKING_FIELDS
        if unknown:
            raise ValueError(f"Unknown booking fields: {sorted(unknown)}")
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
            if row is None:
                raise LookupError(f"Booking not found: {booking_id}")
            if int(row["version"]) != int(expected_version):
                return "version_conflict"
            merged = {name: row[name] for name in _BOOKING_COLUMNS}
            merged.update({name: _to_db(value) for name, value in fields.items()})
            if merged["room_id"] and merged["status"] in OCCUPYING_STATUSES:
                clash = conn.execute(
                    f"SELECT {_ROOM_OVERLAP_SQL} AS clash",
                    (merged["room_id"], booking_id, merged["end_date"], merged["start_date"]),
                ).fetchone()
                if clash["clash"]:
                    return "overlap"
            if not fields:
                return "ok"
            assignments = ", ".join(f"{name} = ?" for name in fields)
            conn.execute(
                f"UPDATE bookings SET {assignments}, version = version + 1, updated_at = ? WHERE id = ? AND version = ?",
                tuple(_to_db(value) for value in fields.values()) + (_utc_now(), booking_id, int(expected_version)),
            )
        return "ok"

    def cancel_booking(self, booking_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE bookings
                    SET status = 'cancelled', version = version + 1, updated_at = ?
                    WHERE id = ? AND status != 'cancelled'
                    """,
                    (_utc_now(), booking_id),
                )
        return cursor.rowcount > 0

    def busy_room_ids(
        self,
        room_ids: Iterable[str],
        start_date: date,
        end_date: date,
        *,
        exclude_booking_id: str | None = None,
    ) -> set[str]:
        ids = [room_id for room_id in room_ids if room_id]
        if not ids:
            return set()
        placeholders = ", ".join("?" for _ in ids)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT DISTINCT room_id FROM bookings
                    WHERE room_id IN ({placeholders})
                      AND id != ?
                      AND status IN ({_OCCUPYING_SQL})
                      AND start_date < ?
                      AND end_date > ?
                    """,
                    (*ids, exclude_booking_id or "", _to_db(end_date), _to_db(start_date)),
                ).fetchall()
        return {str(row["room_id"]) for row in rows}

    def claim_room(self, booking_id: str, room_id: str, *, status: str, current_room_id: str | None = None) -> bool:
        """Atomically assign ``room_id`` to a booking if the room is free.

        The booking must still sit in ``current_room_id`` (unassigned when None).
        The free check and the assignment are one statement, so two concurrent
        claims for overlapping stays cannot both win.
        """
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"""
                    UPDATE bookings
                    SET room_id = ?, status = ?, version = version + 1, updated_at = ?
                    WHERE id = ?
                      AND room_id IS ?
                      AND status != 'cancelled'
                      AND NOT EXISTS (
                          SELECT 1 FROM bookings AS other
                          WHERE other.room_id = ?
                            AND other.id != bookings.id
                            AND other.status IN ({_OCCUPYING_SQL})
                            AND other.start_date < bookings.end_date
                            AND other.end_date > bookings.start_date
                      )
                    """,
                    (room_id, status, _utc_now(), booking_id, current_room_id, room_id),
                )
        return cursor.rowcount > 0

    def add_document(self, booking_id: str, doc_type: str, storage_path: str) -> str:
        document_id = str(uuid.uuid4())
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO booking_documents(id, booking_id, doc_type, storage_path, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (document_id, booking_id, doc_type, storage_path, _utc_now()),
                )
        return document_id

    def list_documents(self, booking_id: str) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, booking_id, doc_type, storage_path, created_at
                    FROM booking_documents
                    WHERE booking_id = ?
                    ORDER BY created_at, id
                    """,
                    (booking_id,),
                ).fetchall()
        return [dict(row) for row in rows]

    def apply_form_merge(self, booking_id: str, form_booking: Booking) -> bool:
        """Copy guest identity and documents from ``form_booking`` onto an unlocked booking.

        Returns False when the target is cancelled or already locked; the form
        booking itself is never written.
        """
        submitted_at = serialize_datetime(form_booking.form_submitted_at) or _utc_now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE bookings
                SET guest_name = COALESCE(NULLIF(TRIM(?), ''), guest_name),
                    guest_email = COALESCE(NULLIF(TRIM(?), ''), guest_email),
                    guest_phone = COALESCE(NULLIF(TRIM(?), ''), guest_phone),
                    guest_address = COALESCE(NULLIF(TRIM(?), ''), guest_address),
                    form_booking_id = ?,
                    form_submitted_at = ?,
                    version = version + 1,
                    updated_at = ?
                WHERE id = ?
                  AND status != 'cancelled'
                  AND (guest_name IS NULL OR TRIM(guest_name) = '')
                  AND form_submitted_at IS NULL
                """,
                (
                    form_booking.guest_name or "",
                    form_booking.guest_email or "",
                    form_booking.guest_phone or "",
                    form_booking.guest_address or "",
                    form_booking.id,
                    submitted_at,
                    _utc_now(),
                    booking_id,
                ),
            )
            if cursor.rowcount == 0:
                return False
            documents = conn.execute(
                "SELECT doc_type, storage_path FROM booking_documents WHERE booking_id = ? ORDER BY created_at, id",
                (form_booking.id,),
            ).fetchall()
            now = _utc_now()
            for document in documents:
                conn.execute(
                    """
                    INSERT INTO booking_documents(id, booking_id, doc_type, storage_path, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (str(uuid.uuid4()), booking_id, document["doc_type"], document["storage_path"], now),
                )
        return True

    # -- idempotency ledger -------------------------------------------------------

    def _upsert_ledger(self, conn: sqlite3.Connection, entry: LedgerEntry) -> None:
        conn.execute(
            """
            INSERT INTO ical_uid_map(property_id, uid_key, booking_id, feed_id, room_id, room_type_id,
                                     start_date, end_date, last_seen)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(property_id, uid_key) DO UPDATE SET
                booking_id = excluded.booking_id,
                feed_id = excluded.feed_id,
                room_id = excluded.room_id,
                room_type_id = excluded.room_type_id,
                start_date = excluded.start_date,
                end_date = excluded.end_date,
                last_seen = excluded.last_seen
            """,
            (
                entry.property_id,
                entry.uid_key,
                entry.booking_id,
                entry.feed_id,
                entry.room_id,
                entry.room_type_id,
                _to_db(entry.start_date),
                _to_db(entry.end_date),
                serialize_datetime(entry.last_seen) or _utc_now(),
            ),
        )

    def upsert_ledger_entry(self, entry: LedgerEntry) -> None:
        with self._lock:
            with self._connect() as conn:
                self._upsert_ledger(conn, entry)

    def get_ledger_entry(self, property_id: str, uid_key: str) -> LedgerEntry | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM ical_uid_map WHERE property_id = ? AND uid_key = ?",
                    (property_id, uid_key),
                ).fetchone()
        return _ledger_from_row(row) if row else None

    def touch_ledger_entry(self, property_id: str, uid_key: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE ical_uid_map SET last_seen = ? WHERE property_id = ? AND uid_key = ?",
                    (_utc_now(), property_id, uid_key),
                )
        return cursor.rowcount > 0

    def list_ledger_entries(self, property_id: str) -> list[LedgerEntry]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM ical_uid_map WHERE property_id = ? ORDER BY uid_key", (property_id,)
                ).fetchall()
        return [_ledger_from_row(row) for row in rows]

    # -- suppressions -------------------------------------------------------------

    def is_suppressed(self, property_id: str, uid: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT 1 FROM ical_suppressed WHERE property_id = ? AND uid = ?", (property_id, uid)
                ).fetchone()
        return row is not None

    def suppress_uid(self, property_id: str, uid: str, note: str = "") -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO ical_suppressed(property_id, uid, note, created_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(property_id, uid) DO UPDATE SET note = excluded.note
                    """,
                    (property_id, uid, note, _utc_now()),
                )

    def unsuppress_uid(self, property_id: str, uid: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM ical_suppressed WHERE property_id = ? AND uid = ?", (property_id, uid)
                )
        return cursor.rowcount > 0

    def list_suppressions(self, property_id: str) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT property_id, uid, note, created_at
                    FROM ical_suppressed
                    WHERE property_id = ?
                    ORDER BY created_at, uid
                    """,
                    (property_id,),
                ).fetchall()
        return [dict(row) for row in rows]

    # -- unassigned queue ---------------------------------------------------------

    def upsert_unassigned(self, event: UnassignedEvent) -> str:
        now = _utc_now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO ical_unassigned_events(id, property_id, feed_id, room_type_id, uid_key, uid, summary,
                                                   start_date, end_date, start_time, end_time, booking_id,
                                                   resolved, resolved_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, NULL, ?, ?)
                ON CONFLICT(property_id, uid_key) DO UPDATE SET
                    feed_id = excluded.feed_id,
                    room_type_id = excluded.room_type_id,
                    uid = excluded.uid,
                    summary = excluded.summary,
                    start_date = excluded.start_date,
                    end_date = excluded.end_date,
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    booking_id = excluded.booking_id,
                    resolved = 0,
                    resolved_at = NULL,
                    updated_at = excluded.updated_at
                """,
                (
                    event.id,
                    event.property_id,
                    event.feed_id,
                    event.room_type_id,
                    event.uid_key,
                    event.uid,
                    event.summary,
                    _to_db(event.start_date),
                    _to_db(event.end_date),
                    _to_db(event.start_time),
                    _to_db(event.end_time),
                    event.booking_id,
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT id FROM ical_unassigned_events WHERE property_id = ? AND uid_key = ?",
                (event.property_id, event.uid_key),
            ).fetchone()
        return str(row["id"])

    def resolve_unassigned(self, property_id: str, uid_key: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE ical_unassigned_events
                    SET resolved = 1, resolved_at = ?, updated_at = ?
                    WHERE property_id = ? AND uid_key = ? AND resolved = 0
                    """,
                    (_utc_now(), _utc_now(), property_id, uid_key),
                )
        return cursor.rowcount > 0

    def get_unassigned(self, event_id: str) -> UnassignedEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM ical_unassigned_events WHERE id = ?", (event_id,)).fetchone()
        return _unassigned_from_row(row) if row else None

    def list_unassigned(self, property_id: str | None = None, *, include_resolved: bool = False) -> list[UnassignedEvent]:
        query = "SELECT * FROM ical_unassigned_events WHERE 1 = 1"
        params: list[Any] = []
        if property_id is not None:
            query += " AND property_id = ?"
            params.append(property_id)
        if not include_resolved:
            query += " AND resolved = 0"
        query += " ORDER BY created_at, id"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        return [_unassigned_from_row(row) for row in rows]

    # -- run bookkeeping ----------------------------------------------------------

    def record_feed_log(
        self,
        *,
        feed_id: str,
        started_at: datetime,
        status: str,
        counts: dict[str, int],
        imported_count: int,
        error_message: str | None = None,
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO feed_sync_logs(feed_id, run_id, started_at, finished_at, status, imported_count,
                                               created_count, updated_count, cancelled_count, unassigned_count,
                                               error_message)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        feed_id,
                        run_id,
                        serialize_datetime(started_at),
                        _utc_now(),
                        status,
                        int(imported_count),
                        int(counts.get("created", 0)),
                        int(counts.get("updated", 0)),
                        int(counts.get("cancelled", 0)),
                        int(counts.get("unassigned", 0)),
                        error_message,
                    ),
                )

    def recent_feed_logs(self, feed_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM feed_sync_logs
                    WHERE feed_id = ?
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (feed_id, max(1, limit)),
                ).fetchall()
        return [dict(row) for row in rows]

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, feeds_ok, feeds_failed, imported)
                    VALUES (?, ?, 'running', ?, 0, 0, 0, 0)
                    """,
                    (_utc_now(), trigger, message),
                )
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        feeds_ok: int,
        feeds_failed: int,
        imported: int,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, feeds_ok = ?, feeds_failed = ?, imported = ?
                    WHERE id = ?
                    """,
                    (str(status), str(message), int(duration_ms), int(feeds_ok), int(feeds_failed), int(imported), int(run_id)),
                )

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, feeds_ok, feeds_failed, imported
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        property_id: str,
        subject: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, property_id, subject, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        _utc_now(),
                        property_id,
                        subject,
                        action,
                        json.dumps(details, ensure_ascii=False, default=str),
                    ),
                )

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if run_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, property_id, subject, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, property_id, subject, action, details_json
                        FROM audit_events
                        WHERE run_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (int(run_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    # -- sync usage ---------------------------------------------------------------

    def register_sync_usage(self, account_id: str, event_type: str, used_at: datetime | None = None) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO sync_usage(account_id, event_type, used_at) VALUES (?, ?, ?)",
                    (account_id, event_type, serialize_datetime(used_at) or _utc_now()),
                )

    def last_sync_usage(self, account_id: str, event_type: str) -> datetime | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT used_at FROM sync_usage
                    WHERE account_id = ? AND event_type = ?
                    ORDER BY used_at DESC
                    LIMIT 1
                    """,
                    (account_id, event_type),
                ).fetchone()
        return parse_iso_datetime(row["used_at"]) if row else None

    def count_sync_usage_since(self, account_id: str, since: datetime) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) AS total FROM sync_usage WHERE account_id = ? AND used_at >= ?",
                    (account_id, serialize_datetime(since)),
                ).fetchone()
        return int(row["total"])
