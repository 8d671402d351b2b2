from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from innsync.errors import FeedParseError
from innsync.models import CalendarEvent


logger = logging.getLogger(__name__)


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _coerce_instant(value: Any) -> datetime | date | None:
    # Keep the feed's own shape: aware instant, floating local time or civil date.
    if isinstance(value, (datetime, date)):
        return value
    return None


def _decoded(vevent: ICEvent, name: str) -> Any:
    if vevent.get(name) is None:
        return None
    try:
        return vevent.decoded(name)
    except (ValueError, TypeError, KeyError):
        logger.warning("Undecodable %s in VEVENT %s", name, str(vevent.get("UID", "")).strip() or "<no uid>")
        return None


def _parse_vevent(vevent: ICEvent) -> CalendarEvent:
    uid = str(vevent.get("UID", "")).strip() or None
    summary = str(vevent.get("SUMMARY", "")).strip()
    status = str(vevent.get("STATUS", "")).strip().upper()
    start = _coerce_instant(_decoded(vevent, "DTSTART"))
    end = _coerce_instant(_decoded(vevent, "DTEND"))
    if start is not None and end is None:
        duration = _decoded(vevent, "DURATION")
        if isinstance(duration, timedelta):
            end = start + duration
    return CalendarEvent(uid=uid, start=start, end=end, status=status, summary=summary)


def parse_ics(raw_data: str | bytes) -> list[CalendarEvent]:
    """Parse an ICS document into calendar events, in feed order.

    Raises FeedParseError when the body is not a calendar at all. Events whose
    dates cannot be decoded are still returned, with ``start`` left empty, so
    the caller can count them as skipped.
    """
    raw_ical = _decode_raw_ical(raw_data)
    if not raw_ical.strip():
        raise FeedParseError("Empty calendar body.")
    try:
        calendar_obj = ICalendar.from_ical(raw_ical)
    except Exception as exc:
        raise FeedParseError(f"Malformed calendar: {exc}") from exc
    if getattr(calendar_obj, "name", "") != "VCALENDAR":
        raise FeedParseError("Document is not a VCALENDAR.")

    events: list[CalendarEvent] = []
    for component in calendar_obj.walk("VEVENT"):
        events.append(_parse_vevent(component))
    return events
