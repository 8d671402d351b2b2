from __future__ import annotations

import logging
from typing import Iterable

from innsync.booking_store import BookingStore
from innsync.models import Booking, Room


logger = logging.getLogger(__name__)


def order_rooms(rooms: Iterable[Room]) -> list[Room]:
    return sorted(rooms, key=lambda room: ((room.name or "").casefold(), room.id))


def pick_free_room(rooms: Iterable[Room], busy: set[str]) -> Room | None:
    """First room, in name order, not in ``busy``. A hint only; the claim decides."""
    for room in order_rooms(rooms):
        if room.id not in busy:
            return room
    return None


class RoomAllocator:
    def __init__(self, store: BookingStore) -> None:
        self.store = store

    def is_parked(self, booking: Booking) -> bool:
        """A hold booking left in a room another stay now occupies for its nights."""
        if not booking.room_id or booking.status != "hold":
            return False
        busy = self.store.busy_room_ids(
            [booking.room_id],
            booking.start_date,
            booking.end_date,
            exclude_booking_id=booking.id,
        )
        return booking.room_id in busy

    def allocate(self, booking: Booking, status: str) -> str | None:
        """Place a room-type booking into a free room of its type.

        Unassigned bookings are claimed into a room; parked ones are moved out
        of the room they collide in. Returns the room id the booking ends up in,
        or None when every other room of the type is taken for the stay.
        """
        if booking.room_id and not self.is_parked(booking):
            return booking.room_id
        if not booking.room_type_id:
            return None
        rooms = [
            room
            for room in self.store.list_rooms(booking.property_id, booking.room_type_id)
            if room.id != booking.room_id
        ]
        if not rooms:
            return None
        excluded = self.store.busy_room_ids(
            [room.id for room in rooms],
            booking.start_date,
            booking.end_date,
            exclude_booking_id=booking.id,
        )
        while True:
            room = pick_free_room(rooms, excluded)
            if room is None:
                return None
            if self.store.claim_room(booking.id, room.id, status=status, current_room_id=booking.room_id):
                logger.info("Booking %s placed in room %s", booking.id, room.id)
                return room.id
            current = self.store.get_booking(booking.id)
            if current is None or current.status == "cancelled":
                return None
            if current.room_id != booking.room_id:
                # A concurrent run placed this booking first.
                return current.room_id
            logger.info("Lost claim on room %s for booking %s; trying next room", room.id, booking.id)
            excluded.add(room.id)
