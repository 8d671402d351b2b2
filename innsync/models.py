from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any


BOOKING_STATUSES = ("hold", "confirmed", "checked_in", "cancelled")
# Only these statuses count against the one-booking-per-room-night rule.
OCCUPYING_STATUSES = ("confirmed", "checked_in")
SYNC_STATUS_MODES = ("hold", "confirmed")
BOOKING_SOURCES = ("ical", "form", "manual")

EVENT_TYPE_AUTOSYNC = "autosync"
EVENT_TYPE_SYNC_NOW = "sync_now"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_date(value: str | date | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    return date.fromisoformat(text[:10])


def parse_clock(value: str | time | None, default: str = "00:00") -> time:
    """Parse ``HH:MM`` (seconds tolerated) into a ``time``; bad input yields ``default``."""
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    text = str(value or "").strip() or default
    try:
        parsed = time.fromisoformat(text)
    except ValueError:
        parsed = time.fromisoformat(default)
    return parsed.replace(second=0, microsecond=0, tzinfo=None)


def format_clock(value: time | None) -> str | None:
    if value is None:
        return None
    return value.strftime("%H:%M")


@dataclass
class SyncConfig:
    interval_seconds: int = 900
    booking_status: str = "hold"
    default_timezone: str = "UTC"
    default_check_in: str = "14:00"
    default_check_out: str = "11:00"
    reconcile_unassigned: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        booking_status = str(data.get("booking_status", "hold")).strip().lower()
        if booking_status not in SYNC_STATUS_MODES:
            booking_status = "hold"
        return cls(
            interval_seconds=max(60, int(data.get("interval_seconds", 900))),
            booking_status=booking_status,
            default_timezone=str(data.get("default_timezone", "UTC")).strip() or "UTC",
            default_check_in=format_clock(parse_clock(data.get("default_check_in"), "14:00")) or "14:00",
            default_check_out=format_clock(parse_clock(data.get("default_check_out"), "11:00")) or "11:00",
            reconcile_unassigned=bool(data.get("reconcile_unassigned", True)),
        )


@dataclass
class FetchConfig:
    timeout_seconds: int = 20
    retry_backoff_seconds: float = 2.0
    user_agent: str = "innsync/0.1 (+calendar-sync)"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FetchConfig":
        data = data or {}
        return cls(
            timeout_seconds=max(1, int(data.get("timeout_seconds", 20))),
            retry_backoff_seconds=max(0.0, float(data.get("retry_backoff_seconds", 2.0))),
            user_agent=str(data.get("user_agent", "innsync/0.1 (+calendar-sync)")).strip()
            or "innsync/0.1 (+calendar-sync)",
        )


@dataclass
class PolicyConfig:
    cooldown_seconds: dict[str, int] = field(
        default_factory=lambda: {EVENT_TYPE_AUTOSYNC: 0, EVENT_TYPE_SYNC_NOW: 60}
    )
    hourly_quota: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PolicyConfig":
        data = data or {}
        cooldowns = {EVENT_TYPE_AUTOSYNC: 0, EVENT_TYPE_SYNC_NOW: 60}
        raw_cooldowns = data.get("cooldown_seconds", {})
        if isinstance(raw_cooldowns, dict):
            for key, value in raw_cooldowns.items():
                event_type = str(key).strip()
                if not event_type:
                    continue
                try:
                    cooldowns[event_type] = max(0, int(value))
                except (TypeError, ValueError):
                    continue
        return cls(
            cooldown_seconds=cooldowns,
            hourly_quota=max(0, int(data.get("hourly_quota", 30))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level, json=bool(data.get("json", False)))


@dataclass
class AppConfig:
    sync: SyncConfig = field(default_factory=SyncConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            sync=SyncConfig.from_dict(data.get("sync")),
            fetch=FetchConfig.from_dict(data.get("fetch")),
            policy=PolicyConfig.from_dict(data.get("policy")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class PropertyPolicy:
    property_id: str
    account_id: str
    timezone: str = "UTC"
    check_in_time: time = field(default_factory=lambda: time(14, 0))
    check_out_time: time = field(default_factory=lambda: time(11, 0))


@dataclass
class Room:
    id: str
    property_id: str
    name: str = ""
    room_type_id: str | None = None


@dataclass
class Feed:
    id: str
    property_id: str
    url: str
    room_id: str | None = None
    room_type_id: str | None = None
    provider: str = ""
    is_active: bool = True
    last_sync: datetime | None = None
    color: str = ""

    @property
    def scope(self) -> str:
        if self.room_id:
            return "room"
        if self.room_type_id:
            return "room_type"
        return "property"


@dataclass
class CalendarEvent:
    """One VEVENT as handed over by the ICS parser.

    ``start``/``end`` keep the shape the feed used: a tz-aware ``datetime`` is an
    absolute instant, a naive ``datetime`` is floating local time and a plain
    ``date`` is an all-day civil date.
    """

    uid: str | None = None
    start: datetime | date | None = None
    end: datetime | date | None = None
    status: str = ""
    summary: str = ""

    @property
    def is_cancelled(self) -> bool:
        return self.status.strip().upper() == "CANCELLED"


@dataclass
class NormalizedEvent:
    uid: str | None
    start_date: date
    end_date: date
    start_time: time
    end_time: time
    status: str = ""
    summary: str = ""

    @property
    def is_cancelled(self) -> bool:
        return self.status.strip().upper() == "CANCELLED"


@dataclass
class Booking:
    id: str
    property_id: str
    start_date: date
    end_date: date
    room_id: str | None = None
    room_type_id: str | None = None
    start_time: time | None = None
    end_time: time | None = None
    status: str = "hold"
    source: str = "ical"
    external_uid: str | None = None
    ical_feed_id: str | None = None
    provider: str | None = None
    guest_name: str | None = None
    guest_email: str | None = None
    guest_phone: str | None = None
    guest_address: str | None = None
    form_booking_id: str | None = None
    form_submitted_at: datetime | None = None
    version: int = 1

    @property
    def is_locked(self) -> bool:
        # A booking carrying guest identity already must not be overwritten by a form merge.
        return bool((self.guest_name or "").strip()) or self.form_submitted_at is not None

    @property
    def is_occupying(self) -> bool:
        return self.status in OCCUPYING_STATUSES

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_date"] = self.start_date.isoformat()
        payload["end_date"] = self.end_date.isoformat()
        payload["start_time"] = format_clock(self.start_time)
        payload["end_time"] = format_clock(self.end_time)
        payload["form_submitted_at"] = serialize_datetime(self.form_submitted_at)
        return payload


@dataclass
class LedgerEntry:
    property_id: str
    uid_key: str
    booking_id: str | None
    feed_id: str | None = None
    room_id: str | None = None
    room_type_id: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    last_seen: datetime | None = None


@dataclass
class UnassignedEvent:
    id: str
    property_id: str
    uid_key: str
    start_date: date
    end_date: date
    feed_id: str | None = None
    room_type_id: str | None = None
    uid: str | None = None
    summary: str = ""
    start_time: time | None = None
    end_time: time | None = None
    booking_id: str | None = None
    resolved: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_date"] = self.start_date.isoformat()
        payload["end_date"] = self.end_date.isoformat()
        payload["start_time"] = format_clock(self.start_time)
        payload["end_time"] = format_clock(self.end_time)
        return payload


@dataclass
class EventOutcome:
    action: str
    booking_id: str | None = None
    uid_key: str = ""
    reason: str = ""

    @property
    def imported(self) -> bool:
        return self.action in {"created", "updated", "unchanged", "cancelled", "unassigned"}


@dataclass
class FeedResult:
    feed_id: str
    account_id: str = ""
    ok: bool = True
    imported_count: int = 0
    error: str | None = None
    counts: dict[str, int] = field(default_factory=dict)

    def add(self, outcome: EventOutcome) -> None:
        self.counts[outcome.action] = self.counts.get(outcome.action, 0) + 1
        if outcome.imported:
            self.imported_count += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "feed_id": self.feed_id,
            "account_id": self.account_id,
            "ok": self.ok,
            "imported_count": self.imported_count,
            "error": self.error,
            "counts": dict(self.counts),
        }


@dataclass
class SkippedAccount:
    account_id: str
    reason: str
    cooldown_remaining_sec: int = 0
    feed_ids: list[str] = field(default_factory=list)


@dataclass
class RunSummary:
    trigger: str
    run_id: int | None = None
    feeds: list[FeedResult] = field(default_factory=list)
    skipped_accounts: list[SkippedAccount] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    duration_ms: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(item.ok for item in self.feeds)

    @property
    def total_imported(self) -> int:
        return sum(item.imported_count for item in self.feeds)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "trigger": self.trigger,
            "ok": self.ok,
            "total_imported": self.total_imported,
            "feeds": [item.to_dict() for item in self.feeds],
            "skipped_accounts": [asdict(item) for item in self.skipped_accounts],
            "started_at": serialize_datetime(self.started_at),
            "duration_ms": self.duration_ms,
            "error": self.error,
        }
