from __future__ import annotations

import logging
import traceback
import uuid
from datetime import datetime
from typing import Any, Iterable

from innsync.allocator import RoomAllocator
from innsync.booking_store import BookingStore
from innsync.config_manager import ConfigManager
from innsync.errors import FeedFetchError, FeedParseError, RoomUnavailableError
from innsync.feed_client import FeedClient
from innsync.ics_parser import parse_ics
from innsync.merger import BookingMerger
from innsync.models import (
    EVENT_TYPE_AUTOSYNC,
    EVENT_TYPE_SYNC_NOW,
    SYNC_STATUS_MODES,
    AppConfig,
    Booking,
    CalendarEvent,
    EventOutcome,
    Feed,
    FeedResult,
    LedgerEntry,
    PropertyPolicy,
    RunSummary,
    SkippedAccount,
    utc_now,
)
from innsync.normalizer import normalize_event
from innsync.resolver import resolve_event, uid_key_for
from innsync.sync_policy import LocalSyncPolicy, PolicyDecision, SyncPolicy


logger = logging.getLogger(__name__)


def _elapsed_ms(started_at: datetime) -> int:
    return int((utc_now() - started_at).total_seconds() * 1000)


def _resolve_status_mode(status_mode: str | None, config: AppConfig) -> str:
    mode = str(status_mode or config.sync.booking_status).strip().lower()
    if mode not in SYNC_STATUS_MODES:
        raise ValueError(f"Unsupported status mode: {status_mode!r}")
    return mode


class SyncEngine:
    """One reconciliation pass over a selection of feeds.

    The three public entry points differ only in which feeds they pick and
    which policy event type they charge; everything else runs through ``_run``.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        store: BookingStore,
        *,
        feed_client: FeedClient | None = None,
        policy: SyncPolicy | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.store = store
        self._feed_client = feed_client
        self._policy = policy
        self.allocator = RoomAllocator(store)
        self.merger = BookingMerger(store, self.allocator)

    def run_scheduled_sweep(self, *, status_mode: str | None = None, trigger: str = "scheduled") -> RunSummary:
        feeds = self.store.list_feeds(active_only=True)
        return self._run(feeds, event_type=EVENT_TYPE_AUTOSYNC, trigger=trigger, status_mode=status_mode)

    def run_property_sweep(self, property_id: str, *, status_mode: str | None = None) -> RunSummary:
        property_policy = self.store.get_property_policy(property_id)
        if property_policy is None:
            raise LookupError(f"Property not found: {property_id}")
        feeds = self.store.list_feeds(active_only=True, property_id=property_id)
        # A host-triggered sync is charged even when the property has no feeds yet.
        return self._run(
            feeds,
            event_type=EVENT_TYPE_SYNC_NOW,
            trigger="property",
            status_mode=status_mode,
            charge_accounts=[property_policy.account_id],
        )

    def run_single_feed(self, feed_id: str, *, status_mode: str | None = None) -> RunSummary:
        feed = self.store.get_feed(feed_id)
        if feed is None:
            raise LookupError(f"Feed not found: {feed_id}")
        if not feed.is_active:
            raise ValueError(f"Feed is inactive: {feed_id}")
        return self._run([feed], event_type=EVENT_TYPE_SYNC_NOW, trigger="feed", status_mode=status_mode)

    def _policy_for(self, config: AppConfig) -> SyncPolicy:
        return self._policy or LocalSyncPolicy(self.store, config.policy)

    def _feed_client_for(self, config: AppConfig) -> FeedClient:
        return self._feed_client or FeedClient(config.fetch)

    def _property_policy(self, property_id: str, config: AppConfig) -> PropertyPolicy | None:
        return self.store.get_property_policy(
            property_id,
            default_timezone=config.sync.default_timezone,
            default_check_in=config.sync.default_check_in,
            default_check_out=config.sync.default_check_out,
        )

    def _run(
        self,
        feeds: Iterable[Feed],
        *,
        event_type: str,
        trigger: str,
        status_mode: str | None,
        charge_accounts: Iterable[str] = (),
    ) -> RunSummary:
        started_at = utc_now()
        config = self.config_manager.load()
        mode = _resolve_status_mode(status_mode, config)
        run_id = self.store.start_sync_run(trigger=trigger)
        summary = RunSummary(trigger=trigger, run_id=run_id, started_at=started_at)

        try:
            policy = self._policy_for(config)
            client = self._feed_client_for(config)
            property_policies: dict[str, PropertyPolicy | None] = {}
            by_account: dict[str, list[tuple[Feed, PropertyPolicy]]] = {
                account_id: [] for account_id in charge_accounts
            }
            for feed in feeds:
                if feed.property_id not in property_policies:
                    property_policies[feed.property_id] = self._property_policy(feed.property_id, config)
                property_policy = property_policies[feed.property_id]
                if property_policy is None:
                    message = f"Property not found: {feed.property_id}"
                    logger.warning("Feed %s skipped: %s", feed.id, message)
                    summary.feeds.append(FeedResult(feed_id=feed.id, ok=False, error=message))
                    continue
                by_account.setdefault(property_policy.account_id, []).append((feed, property_policy))

            for account_id, account_feeds in by_account.items():
                try:
                    decision = policy.can_sync_now(account_id, event_type)
                except Exception:
                    logger.exception("Sync policy check failed for account %s", account_id)
                    decision = PolicyDecision(allowed=False, reason="policy_error")
                if not decision.allowed:
                    skipped = SkippedAccount(
                        account_id=account_id,
                        reason=decision.reason or "denied",
                        cooldown_remaining_sec=decision.cooldown_remaining_sec,
                        feed_ids=[feed.id for feed, _ in account_feeds],
                    )
                    summary.skipped_accounts.append(skipped)
                    logger.info(
                        "Account %s skipped (%s, %ss remaining): %d feed(s)",
                        account_id,
                        skipped.reason,
                        skipped.cooldown_remaining_sec,
                        len(skipped.feed_ids),
                    )
                    self.store.record_audit_event(
                        property_id=account_feeds[0][0].property_id if account_feeds else "system",
                        subject=account_id,
                        action="account_skipped",
                        details={
                            "reason": skipped.reason,
                            "event_type": event_type,
                            "cooldown_remaining_sec": skipped.cooldown_remaining_sec,
                            "feed_ids": skipped.feed_ids,
                        },
                        run_id=run_id,
                    )
                    continue
                for feed, property_policy in account_feeds:
                    try:
                        result = self._sync_feed(feed, property_policy, client, mode, run_id)
                    except Exception as exc:
                        logger.exception("Feed %s aborted", feed.id)
                        result = FeedResult(feed_id=feed.id, ok=False, error=f"{type(exc).__name__}: {exc}")
                    result.account_id = account_id
                    summary.feeds.append(result)
                try:
                    policy.register_sync_usage(account_id, event_type)
                except Exception:
                    logger.exception("Could not register sync usage for account %s", account_id)
        except Exception as exc:
            summary.error = f"{type(exc).__name__}: {exc}"
            logger.exception("Sync run %s aborted", run_id)
            self.store.record_audit_event(
                property_id="system",
                subject="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": summary.error,
                    "traceback": traceback.format_exc(limit=5),
                },
                run_id=run_id,
            )

        summary.duration_ms = _elapsed_ms(started_at)
        feeds_failed = sum(1 for item in summary.feeds if not item.ok)
        if summary.error:
            status, message = "error", summary.error
        elif feeds_failed:
            status, message = "partial", f"{feeds_failed} feed(s) failed"
        else:
            status, message = "success", "ok"
        if summary.skipped_accounts:
            message += f"; {len(summary.skipped_accounts)} account(s) skipped by policy"
        self.store.finish_sync_run(
            run_id=run_id,
            status=status,
            message=message,
            duration_ms=summary.duration_ms,
            feeds_ok=len(summary.feeds) - feeds_failed,
            feeds_failed=feeds_failed,
            imported=summary.total_imported,
        )
        logger.info(
            "Sync run %s (%s) finished: %s, %d feed(s), %d imported in %dms",
            run_id,
            trigger,
            status,
            len(summary.feeds),
            summary.total_imported,
            summary.duration_ms,
        )
        return summary

    def _sync_feed(
        self,
        feed: Feed,
        property_policy: PropertyPolicy,
        client: FeedClient,
        status_mode: str,
        run_id: int,
    ) -> FeedResult:
        started_at = utc_now()
        result = FeedResult(feed_id=feed.id)
        try:
            body = client.fetch(feed.url)
            events = parse_ics(body)
        except (FeedFetchError, FeedParseError) as exc:
            return self._fail_feed(feed, result, started_at, exc, run_id)
        except Exception as exc:
            logger.exception("Unexpected error loading feed %s", feed.id)
            return self._fail_feed(feed, result, started_at, exc, run_id)

        for raw_event in events:
            result.add(self._process_event(feed, property_policy, raw_event, status_mode, run_id))

        failed = result.counts.get("failed", 0)
        self.store.record_feed_log(
            feed_id=feed.id,
            run_id=run_id,
            started_at=started_at,
            status="partial" if failed else "ok",
            counts=result.counts,
            imported_count=result.imported_count,
            error_message=f"{failed} event(s) failed" if failed else None,
        )
        self.store.mark_feed_synced(feed.id, utc_now())
        logger.info("Feed %s: %d event(s), counts=%s", feed.id, len(events), result.counts)
        return result

    def _fail_feed(
        self,
        feed: Feed,
        result: FeedResult,
        started_at: datetime,
        exc: Exception,
        run_id: int,
    ) -> FeedResult:
        result.ok = False
        result.error = f"{type(exc).__name__}: {exc}"
        logger.warning("Feed %s failed: %s", feed.id, result.error)
        self.store.record_feed_log(
            feed_id=feed.id,
            run_id=run_id,
            started_at=started_at,
            status="error",
            counts=result.counts,
            imported_count=0,
            error_message=result.error,
        )
        self.store.record_audit_event(
            property_id=feed.property_id,
            subject=feed.id,
            action="feed_failed",
            details={"error": result.error, "status_code": getattr(exc, "status_code", None)},
            run_id=run_id,
        )
        return result

    def _process_event(
        self,
        feed: Feed,
        property_policy: PropertyPolicy,
        raw_event: CalendarEvent,
        status_mode: str,
        run_id: int,
    ) -> EventOutcome:
        event = normalize_event(raw_event, property_policy)
        if event is None:
            logger.debug("Feed %s: event %s has no usable start; skipped", feed.id, raw_event.uid or "<no uid>")
            return EventOutcome(action="skipped", uid_key=raw_event.uid or "", reason="missing_start")
        uid_key = uid_key_for(feed, event)
        try:
            resolution = resolve_event(self.store, feed, event)
            return self.merger.apply(feed, event, resolution, status_mode=status_mode, run_id=run_id)
        except Exception as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            logger.exception("Feed %s: event %s failed", feed.id, uid_key)
            self.store.record_audit_event(
                property_id=feed.property_id,
                subject=uid_key,
                action="event_failed",
                details={
                    "feed_id": feed.id,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
                run_id=run_id,
            )
            return EventOutcome(action="failed", uid_key=uid_key, reason=error_message)

    def _refresh_ledger(self, booking: Booking, uid_key: str) -> None:
        entry = self.store.get_ledger_entry(booking.property_id, uid_key)
        self.store.upsert_ledger_entry(
            LedgerEntry(
                property_id=booking.property_id,
                uid_key=uid_key,
                booking_id=booking.id,
                feed_id=entry.feed_id if entry is not None else booking.ical_feed_id,
                room_id=booking.room_id,
                room_type_id=booking.room_type_id,
                start_date=booking.start_date,
                end_date=booking.end_date,
            )
        )

    def reconcile_unassigned(self, property_id: str | None = None, *, status_mode: str | None = None) -> dict[str, int]:
        """Retry placement of every open unassigned event.

        Items whose booking got a room elsewhere, or was cancelled, are closed
        without a claim. A booking parked in a room that is occupied for its
        nights is moved when another room of its type is free.
        """
        mode = _resolve_status_mode(status_mode, self.config_manager.load())
        counts = {"checked": 0, "placed": 0, "resolved": 0, "remaining": 0}
        for item in self.store.list_unassigned(property_id):
            counts["checked"] += 1
            booking = self.store.get_booking(item.booking_id) if item.booking_id else None
            if booking is None:
                counts["remaining"] += 1
                continue
            # A hold booking left in an occupied room is still waiting for a place.
            if booking.status == "cancelled" or (booking.room_id and not self.allocator.is_parked(booking)):
                if self.store.resolve_unassigned(item.property_id, item.uid_key):
                    counts["resolved"] += 1
                continue
            room_id = self.allocator.allocate(booking, mode)
            if room_id is None:
                counts["remaining"] += 1
                continue
            placed = self.store.get_booking(booking.id) or booking
            self._refresh_ledger(placed, item.uid_key)
            self.store.resolve_unassigned(item.property_id, item.uid_key)
            self.store.record_audit_event(
                property_id=item.property_id,
                subject=item.uid_key,
                action="unassigned_resolved",
                details={"booking_id": booking.id, "room_id": room_id, "via": "reconcile"},
            )
            counts["placed"] += 1
        if counts["checked"]:
            logger.info("Unassigned reconciliation: %s", counts)
        return counts

    def assign_unassigned(self, event_id: str, room_id: str, *, status_mode: str | None = None) -> Booking:
        """Place a queued event into a room chosen by the host."""
        mode = _resolve_status_mode(status_mode, self.config_manager.load())
        item = self.store.get_unassigned(event_id)
        if item is None:
            raise LookupError(f"Unassigned event not found: {event_id}")
        room = self.store.get_room(room_id)
        if room is None:
            raise LookupError(f"Room not found: {room_id}")
        if room.property_id != item.property_id:
            raise ValueError(f"Room {room_id} does not belong to property {item.property_id}")

        booking = self.store.get_booking(item.booking_id) if item.booking_id else None
        if booking is None:
            booking_id, _ = self.store.create_booking_for_key(
                Booking(
                    id=str(uuid.uuid4()),
                    property_id=item.property_id,
                    room_type_id=item.room_type_id or room.room_type_id,
                    start_date=item.start_date,
                    end_date=item.end_date,
                    start_time=item.start_time,
                    end_time=item.end_time,
                    status="hold",
                    source="ical",
                    external_uid=item.uid,
                    ical_feed_id=item.feed_id,
                ),
                item.uid_key,
            )
            booking = self.store.get_booking(booking_id)
            if booking is None:
                raise LookupError(f"Booking not found: {booking_id}")
        if booking.status == "cancelled":
            raise ValueError(f"Booking {booking.id} is cancelled")
        parked = self.allocator.is_parked(booking)
        if booking.room_id and not parked and booking.room_id != room_id:
            raise ValueError(f"Booking {booking.id} is already placed in room {booking.room_id}")
        needs_claim = not booking.room_id or parked
        if needs_claim and not self.store.claim_room(
            booking.id, room_id, status=mode, current_room_id=booking.room_id
        ):
            raise RoomUnavailableError(
                f"Room {room_id} is occupied between {booking.start_date} and {booking.end_date}"
            )

        placed = self.store.get_booking(booking.id) or booking
        self._refresh_ledger(placed, item.uid_key)
        self.store.resolve_unassigned(item.property_id, item.uid_key)
        self.store.record_audit_event(
            property_id=item.property_id,
            subject=item.uid_key,
            action="manually_assigned",
            details={"booking_id": placed.id, "room_id": room_id, "unassigned_id": event_id},
        )
        logger.info("Unassigned event %s placed in room %s", event_id, room_id)
        return placed

    def suppress_uid(self, property_id: str, uid: str, note: str = "") -> str | None:
        """Stop importing ``uid`` for a property and cancel the booking it produced.

        Returns the id of the cancelled booking, if any.
        """
        uid = str(uid or "").strip()
        if not uid:
            raise ValueError("uid is required")
        self.store.suppress_uid(property_id, uid, note)
        cancelled_id: str | None = None
        entry = self.store.get_ledger_entry(property_id, uid)
        booking_id = entry.booking_id if entry is not None else None
        if booking_id is None:
            tagged = self.store.find_booking_by_external_uid(property_id, uid)
            booking_id = tagged.id if tagged is not None else None
        if booking_id and self.store.cancel_booking(booking_id):
            cancelled_id = booking_id
        self.store.resolve_unassigned(property_id, uid)
        details: dict[str, Any] = {"note": note, "cancelled_booking_id": cancelled_id}
        self.store.record_audit_event(property_id=property_id, subject=uid, action="suppressed", details=details)
        return cancelled_id

    def unsuppress_uid(self, property_id: str, uid: str) -> bool:
        removed = self.store.unsuppress_uid(property_id, uid)
        if removed:
            self.store.record_audit_event(property_id=property_id, subject=uid, action="unsuppressed", details={})
        return removed
