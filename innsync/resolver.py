from __future__ import annotations

import hashlib
from dataclasses import dataclass

from innsync.booking_store import BookingStore
from innsync.models import Booking, Feed, NormalizedEvent


RESOLUTION_ACTIONS = ("existing", "create", "skip", "cancel")


@dataclass
class Resolution:
    action: str
    uid_key: str
    booking_id: str | None = None
    reason: str = ""


def synthetic_uid_key(feed_id: str, event: NormalizedEvent) -> str:
    raw = f"{feed_id}|{event.start_date.isoformat()}|{event.end_date.isoformat()}"
    return "nouid:" + hashlib.sha1(raw.encode("utf-8")).hexdigest()[:20]  # nosec B324


def uid_key_for(feed: Feed, event: NormalizedEvent) -> str:
    return event.uid or synthetic_uid_key(feed.id, event)


def _matches_feed_scope(booking: Booking, feed: Feed) -> bool:
    if feed.room_id:
        return booking.room_id == feed.room_id
    if feed.room_type_id:
        return booking.room_type_id == feed.room_type_id
    return booking.ical_feed_id == feed.id


def _fallback_candidates(store: BookingStore, feed: Feed, event: NormalizedEvent) -> list[Booking]:
    candidates = store.find_bookings_on_dates(feed.property_id, event.start_date, event.end_date, source="ical")
    matched: list[Booking] = []
    for booking in candidates:
        if not _matches_feed_scope(booking, feed):
            continue
        # A booking already tied to another external identity belongs to a different guest.
        if booking.external_uid and booking.external_uid != event.uid:
            continue
        matched.append(booking)
    return matched


def resolve_event(store: BookingStore, feed: Feed, event: NormalizedEvent) -> Resolution:
    """Decide which booking, if any, an event refers to.

    Strongest signal first: cancellation, suppression, the UID ledger, a
    booking tagged with the UID, then a conservative date and room match.
    """
    uid_key = uid_key_for(feed, event)
    property_id = feed.property_id

    if event.is_cancelled:
        if not event.uid:
            return Resolution(action="skip", uid_key=uid_key, reason="cancel_without_uid")
        entry = store.get_ledger_entry(property_id, uid_key)
        if entry is None:
            return Resolution(action="skip", uid_key=uid_key, reason="cancel_unknown_uid")
        store.touch_ledger_entry(property_id, uid_key)
        if entry.booking_id and store.get_booking(entry.booking_id) is not None:
            return Resolution(action="cancel", uid_key=uid_key, booking_id=entry.booking_id, reason="ledger")
        return Resolution(action="skip", uid_key=uid_key, reason="cancel_unknown_uid")

    if event.uid and store.is_suppressed(property_id, event.uid):
        return Resolution(action="skip", uid_key=uid_key, reason="suppressed")

    entry = store.get_ledger_entry(property_id, uid_key)
    if entry is not None and entry.booking_id and store.get_booking(entry.booking_id) is not None:
        return Resolution(action="existing", uid_key=uid_key, booking_id=entry.booking_id, reason="ledger")

    if event.uid:
        tagged = store.find_booking_by_external_uid(property_id, event.uid)
        if tagged is not None:
            return Resolution(action="existing", uid_key=uid_key, booking_id=tagged.id, reason="external_uid")

    candidates = _fallback_candidates(store, feed, event)
    if len(candidates) == 1:
        return Resolution(action="existing", uid_key=uid_key, booking_id=candidates[0].id, reason="date_match")
    if len(candidates) > 1:
        return Resolution(action="create", uid_key=uid_key, reason="ambiguous_date_match")
    return Resolution(action="create", uid_key=uid_key, reason="new")
