from __future__ import annotations

import logging
import uuid
from typing import Any, Iterable

from innsync.allocator import RoomAllocator
from innsync.booking_store import BookingStore
from innsync.errors import ConcurrentUpdateError
from innsync.models import (
    Booking,
    EventOutcome,
    Feed,
    LedgerEntry,
    NormalizedEvent,
    UnassignedEvent,
)
from innsync.resolver import Resolution


logger = logging.getLogger(__name__)


def target_status(current: Booking, status_mode: str, *, placed: bool) -> str:
    """Status a live feed event implies for ``current``.

    Occupying statuses are never demoted by a sync, a cancelled booking comes
    back because the feed says the stay is live again, and a room-type booking
    stays on hold until it holds a room.
    """
    if current.is_occupying:
        return current.status
    if not placed:
        return "hold"
    return status_mode


def refresh_fields(current: Booking, feed: Feed, event: NormalizedEvent, status_mode: str) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    wanted = {
        "start_date": event.start_date,
        "end_date": event.end_date,
        "start_time": event.start_time,
        "end_time": event.end_time,
        "ical_feed_id": feed.id,
    }
    if feed.provider:
        wanted["provider"] = feed.provider
    for name, value in wanted.items():
        if getattr(current, name) != value:
            fields[name] = value
    # Backfill only: a room or type set by the host is never replaced or cleared.
    if current.room_id is None and feed.room_id:
        fields["room_id"] = feed.room_id
    if current.room_type_id is None and feed.room_type_id:
        fields["room_type_id"] = feed.room_type_id
    if current.external_uid is None and event.uid:
        fields["external_uid"] = event.uid

    room_type_scoped = bool(fields.get("room_type_id", current.room_type_id)) and not feed.room_id
    placed = bool(fields.get("room_id", current.room_id)) or not room_type_scoped
    status = target_status(current, status_mode, placed=placed)
    if status != current.status:
        fields["status"] = status
    return fields


def pick_form_candidate(booking: Booking, candidates: Iterable[Booking]) -> Booking | None:
    """Choose the one form booking that plausibly belongs to ``booking``.

    Exact room match first, then room type, then a lone candidate. Any tie
    means no merge.
    """
    candidates = [item for item in candidates if item.id != booking.id]
    compatible = [
        item for item in candidates if not (item.room_id and booking.room_id and item.room_id != booking.room_id)
    ]
    if booking.room_id:
        exact = [item for item in compatible if item.room_id == booking.room_id]
        if exact:
            return exact[0] if len(exact) == 1 else None
    if booking.room_type_id:
        typed = [item for item in compatible if item.room_type_id == booking.room_type_id]
        if typed:
            return typed[0] if len(typed) == 1 else None
    if len(candidates) == 1 and len(compatible) == 1:
        return compatible[0]
    return None


class BookingMerger:
    def __init__(self, store: BookingStore, allocator: RoomAllocator | None = None) -> None:
        self.store = store
        self.allocator = allocator or RoomAllocator(store)

    def _audit(self, booking: Booking | None, uid_key: str, action: str, run_id: int | None, **details: Any) -> None:
        property_id = booking.property_id if booking is not None else str(details.get("property_id", ""))
        if booking is not None:
            details.setdefault("booking_id", booking.id)
        self.store.record_audit_event(
            property_id=property_id,
            subject=uid_key,
            action=action,
            details=details,
            run_id=run_id,
        )

    def apply(
        self,
        feed: Feed,
        event: NormalizedEvent,
        resolution: Resolution,
        *,
        status_mode: str = "hold",
        run_id: int | None = None,
    ) -> EventOutcome:
        uid_key = resolution.uid_key
        if resolution.action == "skip":
            return EventOutcome(action="skipped", uid_key=uid_key, reason=resolution.reason)
        if resolution.action == "cancel":
            return self._cancel(feed, str(resolution.booking_id), uid_key, run_id)

        created = False
        if resolution.action == "create":
            booking_id, created = self.store.create_booking_for_key(self._new_booking(feed, event), uid_key)
            if not created:
                logger.info("Booking for %s was created by a concurrent run; updating %s", uid_key, booking_id)
        else:
            booking_id = str(resolution.booking_id)

        booking, changed = self._refresh(booking_id, feed, event, status_mode, uid_key, run_id)
        queued = False
        # Type-scoped bookings whose new dates collide in their room are moved or queued.
        type_scoped = bool(booking.room_type_id) and not feed.room_id
        if type_scoped and (booking.room_id is None or self.allocator.is_parked(booking)):
            room_id = self.allocator.allocate(booking, status_mode)
            if room_id is None:
                self._queue_unassigned(feed, event, booking, uid_key, run_id)
                queued = True
            else:
                changed = True
                booking = self.store.get_booking(booking.id) or booking
        if not queued and booking.room_id and self.store.resolve_unassigned(booking.property_id, uid_key):
            self._audit(booking, uid_key, "unassigned_resolved", run_id, room_id=booking.room_id)

        self.store.upsert_ledger_entry(
            LedgerEntry(
                property_id=booking.property_id,
                uid_key=uid_key,
                booking_id=booking.id,
                feed_id=feed.id,
                room_id=booking.room_id,
                room_type_id=booking.room_type_id,
                start_date=booking.start_date,
                end_date=booking.end_date,
            )
        )

        if self._merge_form(booking, uid_key, run_id):
            changed = True

        if created:
            self._audit(booking, uid_key, "created", run_id, feed_id=feed.id, status=booking.status)
        elif changed:
            self._audit(booking, uid_key, "updated", run_id, feed_id=feed.id, status=booking.status)

        if queued:
            action = "unassigned"
        elif created:
            action = "created"
        elif changed:
            action = "updated"
        else:
            action = "unchanged"
        return EventOutcome(action=action, booking_id=booking.id, uid_key=uid_key, reason=resolution.reason)

    def _new_booking(self, feed: Feed, event: NormalizedEvent) -> Booking:
        room_type_id = feed.room_type_id
        if feed.room_id and not room_type_id:
            room = self.store.get_room(feed.room_id)
            room_type_id = room.room_type_id if room is not None else None
        # Inserted on hold; the status mode is applied through the guarded update.
        return Booking(
            id=str(uuid.uuid4()),
            property_id=feed.property_id,
            room_id=feed.room_id,
            room_type_id=room_type_id,
            start_date=event.start_date,
            end_date=event.end_date,
            start_time=event.start_time,
            end_time=event.end_time,
            status="hold",
            source="ical",
            external_uid=event.uid,
            ical_feed_id=feed.id,
            provider=feed.provider or None,
        )

    def _refresh(
        self,
        booking_id: str,
        feed: Feed,
        event: NormalizedEvent,
        status_mode: str,
        uid_key: str,
        run_id: int | None,
    ) -> tuple[Booking, bool]:
        for _ in range(2):
            current = self.store.get_booking(booking_id)
            if current is None:
                raise LookupError(f"Booking not found: {booking_id}")
            fields = refresh_fields(current, feed, event, status_mode)
            if not fields:
                return current, False
            result = self.store.update_booking(booking_id, fields, expected_version=current.version)
            if result == "overlap":
                wanted_status = fields.get("status", current.status)
                fields["status"] = "hold"
                if current.status == "hold" and len(fields) == 1:
                    fields.pop("status")
                result = (
                    self.store.update_booking(booking_id, fields, expected_version=current.version)
                    if fields
                    else "ok"
                )
                if result == "ok":
                    logger.warning(
                        "Booking %s kept on hold: room %s already occupied %s..%s",
                        booking_id,
                        fields.get("room_id", current.room_id),
                        event.start_date,
                        event.end_date,
                    )
                    self._audit(
                        current,
                        uid_key,
                        "double_booking_prevented",
                        run_id,
                        room_id=fields.get("room_id", current.room_id),
                        requested_status=wanted_status,
                        start_date=event.start_date.isoformat(),
                        end_date=event.end_date.isoformat(),
                    )
            if result == "ok":
                refreshed = self.store.get_booking(booking_id) or current
                return refreshed, bool(fields)
            logger.info("Version conflict on booking %s; re-reading", booking_id)
        raise ConcurrentUpdateError(f"Booking {booking_id} changed concurrently twice; giving up for this run")

    def _cancel(self, feed: Feed, booking_id: str, uid_key: str, run_id: int | None) -> EventOutcome:
        booking = self.store.get_booking(booking_id)
        if booking is None:
            return EventOutcome(action="skipped", uid_key=uid_key, reason="cancel_unknown_uid")
        cancelled = self.store.cancel_booking(booking_id)
        self.store.resolve_unassigned(booking.property_id, uid_key)
        if not cancelled:
            return EventOutcome(action="unchanged", booking_id=booking_id, uid_key=uid_key, reason="already_cancelled")
        self._audit(booking, uid_key, "cancelled", run_id, feed_id=feed.id, previous_status=booking.status)
        return EventOutcome(action="cancelled", booking_id=booking_id, uid_key=uid_key, reason="feed_cancelled")

    def _queue_unassigned(
        self,
        feed: Feed,
        event: NormalizedEvent,
        booking: Booking,
        uid_key: str,
        run_id: int | None,
    ) -> None:
        event_id = self.store.upsert_unassigned(
            UnassignedEvent(
                id=str(uuid.uuid4()),
                property_id=booking.property_id,
                uid_key=uid_key,
                start_date=event.start_date,
                end_date=event.end_date,
                feed_id=feed.id,
                room_type_id=booking.room_type_id,
                uid=event.uid,
                summary=event.summary,
                start_time=event.start_time,
                end_time=event.end_time,
                booking_id=booking.id,
            )
        )
        logger.info("No free room of type %s for %s; queued as %s", booking.room_type_id, uid_key, event_id)
        self._audit(booking, uid_key, "unassigned", run_id, unassigned_id=event_id, room_type_id=booking.room_type_id)

    def _merge_form(self, booking: Booking, uid_key: str, run_id: int | None) -> bool:
        if booking.status == "cancelled" or booking.is_locked:
            return False
        candidates = self.store.find_bookings_on_dates(
            booking.property_id,
            booking.start_date,
            booking.end_date,
            source="form",
            exclude_booking_id=booking.id,
        )
        form = pick_form_candidate(booking, candidates)
        if form is None:
            return False
        if not self.store.apply_form_merge(booking.id, form):
            return False
        self._audit(booking, uid_key, "form_merged", run_id, form_booking_id=form.id)
        return True
