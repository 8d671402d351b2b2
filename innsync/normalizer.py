from __future__ import annotations

from datetime import date, datetime, time, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from innsync.models import CalendarEvent, NormalizedEvent, PropertyPolicy


def property_zone(name: str | None) -> tzinfo:
    try:
        return ZoneInfo(str(name or "").strip() or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def _to_civil(value: datetime | date, zone: tzinfo, fallback_time: time) -> tuple[date, time]:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(zone)
        return value.date(), value.time().replace(second=0, microsecond=0, tzinfo=None)
    return value, fallback_time


def normalize_event(event: CalendarEvent, policy: PropertyPolicy) -> NormalizedEvent | None:
    """Project an event onto the property's civil calendar.

    All-day dates take their time of day from the property's check-in and
    check-out policy. Returns None when the event has no usable start.
    """
    if event.start is None:
        return None
    zone = property_zone(policy.timezone)
    start_date, start_time = _to_civil(event.start, zone, policy.check_in_time)
    if event.end is None:
        end_date, end_time = start_date, policy.check_out_time
    else:
        end_date, end_time = _to_civil(event.end, zone, policy.check_out_time)
    if end_date < start_date:
        end_date = start_date
    return NormalizedEvent(
        uid=event.uid,
        start_date=start_date,
        end_date=end_date,
        start_time=start_time,
        end_time=end_time,
        status=event.status,
        summary=event.summary,
    )
