import tempfile
import unittest
from datetime import date, time
from pathlib import Path
from unittest import mock

from innsync.booking_store import BookingStore
from innsync.config_manager import ConfigManager
from innsync.errors import FeedFetchError, RoomUnavailableError
from innsync.models import Booking, Feed, Room
from innsync.sync_engine import SyncEngine
from innsync.sync_policy import PolicyDecision


def _vevent(uid: str | None, start: str, end: str, status: str = "") -> str:
    lines = ["BEGIN:VEVENT", f"DTSTART;VALUE=DATE:{start}", f"DTEND;VALUE=DATE:{end}", "SUMMARY:Reserved"]
    if uid:
        lines.append(f"UID:{uid}")
    if status:
        lines.append(f"STATUS:{status}")
    lines.append("END:VEVENT")
    return "\n".join(lines)


def _calendar(*events: str) -> str:
    return "\n".join(["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//test//innsync//EN", *events, "END:VCALENDAR", ""])


class FakeFeedClient:
    def __init__(self) -> None:
        self.bodies: dict[str, str] = {}
        self.failures: dict[str, Exception] = {}
        self.calls: list[str] = []

    def fetch(self, url: str) -> str:
        self.calls.append(url)
        if url in self.failures:
            raise self.failures[url]
        return self.bodies[url]


class SyncEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        base = Path(self.temp_dir.name)
        self.config_manager = ConfigManager(str(base / "config.yaml"))
        self.config_manager.update({"policy": {"cooldown_seconds": {"sync_now": 0}}})
        self.store = BookingStore(str(base / "state.db"))
        self.store.upsert_property(
            property_id="p1",
            account_id="acct-1",
            timezone="Europe/Madrid",
            check_in_time="15:00",
            check_out_time="10:00",
        )
        self.store.add_room(Room(id="r1", property_id="p1", name="101", room_type_id="t1"))
        self.store.add_room(Room(id="r2", property_id="p1", name="102", room_type_id="t1"))
        self.client = FakeFeedClient()
        self.engine = SyncEngine(self.config_manager, self.store, feed_client=self.client)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _feed(self, feed_id: str, **overrides) -> Feed:
        values = {"id": feed_id, "property_id": "p1", "url": f"https://ota.example.com/{feed_id}.ics"}
        values.update(overrides)
        feed = Feed(**values)
        self.store.upsert_feed(feed)
        return feed

    def _ical_bookings(self) -> list[Booking]:
        return [booking for booking in self.store.list_bookings("p1") if booking.source == "ical"]

    def test_scenario_a_first_run_creates_hold_then_is_idempotent(self) -> None:
        feed = self._feed("f1")
        self.client.bodies[feed.url] = _calendar(_vevent("abc", "20250310", "20250312"))

        first = self.engine.run_scheduled_sweep()

        self.assertTrue(first.ok)
        self.assertEqual(first.total_imported, 1)
        [booking] = self._ical_bookings()
        self.assertEqual(booking.status, "hold")
        self.assertEqual((booking.start_date, booking.end_date), (date(2025, 3, 10), date(2025, 3, 12)))
        self.assertEqual((booking.start_time, booking.end_time), (time(15, 0), time(10, 0)))
        first_seen = self.store.get_ledger_entry("p1", "abc").last_seen

        second = self.engine.run_scheduled_sweep()

        self.assertEqual(second.feeds[0].counts, {"unchanged": 1})
        [again] = self._ical_bookings()
        self.assertEqual(again.id, booking.id)
        self.assertEqual(again.version, booking.version)
        self.assertEqual(len(self.store.list_ledger_entries("p1")), 1)
        self.assertGreaterEqual(self.store.get_ledger_entry("p1", "abc").last_seen, first_seen)
        self.assertIsNotNone(self.store.get_feed("f1").last_sync)

    def test_scenario_b_cancellation_cancels_mapped_booking(self) -> None:
        feed = self._feed("f1")
        self.client.bodies[feed.url] = _calendar(_vevent("abc", "20250310", "20250312"))
        self.engine.run_scheduled_sweep()
        self.client.bodies[feed.url] = _calendar(_vevent("abc", "20250310", "20250312", status="CANCELLED"))

        summary = self.engine.run_scheduled_sweep()

        self.assertEqual(summary.feeds[0].counts, {"cancelled": 1})
        [booking] = self._ical_bookings()
        self.assertEqual(booking.status, "cancelled")

    def test_scenario_c_full_room_type_queues_unassigned(self) -> None:
        self.store.insert_booking(
            Booking(id="x1", property_id="p1", room_id="r1", start_date=date(2025, 3, 9), end_date=date(2025, 3, 12),
                    status="confirmed", source="manual")
        )
        self.store.insert_booking(
            Booking(id="x2", property_id="p1", room_id="r2", start_date=date(2025, 3, 10), end_date=date(2025, 3, 11),
                    status="confirmed", source="manual")
        )
        feed = self._feed("f-type", room_type_id="t1")
        self.client.bodies[feed.url] = _calendar(_vevent("abc", "20250310", "20250312"))

        summary = self.engine.run_scheduled_sweep(status_mode="confirmed")

        self.assertEqual(summary.feeds[0].counts, {"unassigned": 1})
        [booking] = self._ical_bookings()
        self.assertIsNone(booking.room_id)
        self.assertEqual(booking.status, "hold")
        [queued] = self.store.list_unassigned("p1")
        self.assertEqual((queued.uid_key, queued.booking_id, queued.room_type_id), ("abc", booking.id, "t1"))
        self.assertEqual(self.store.get_booking("x1").version, 1)
        self.assertEqual(self.store.get_booking("x2").version, 1)
        self.assertEqual(self.store.recent_feed_logs("f-type")[0]["unassigned_count"], 1)

    def test_scenario_d_form_guest_data_merged_into_ical_booking(self) -> None:
        self.store.insert_booking(
            Booking(
                id="form-1",
                property_id="p1",
                room_id="r1",
                start_date=date(2025, 3, 10),
                end_date=date(2025, 3, 12),
                source="form",
                guest_name="Marie Curie",
                guest_email="marie@example.com",
                guest_phone="+33 1 00 00",
            )
        )
        feed = self._feed("f-room", room_id="r1")
        self.client.bodies[feed.url] = _calendar(_vevent("abc", "20250310", "20250312"))

        self.engine.run_scheduled_sweep()

        [booking] = self._ical_bookings()
        self.assertEqual(
            (booking.guest_name, booking.guest_email, booking.guest_phone),
            ("Marie Curie", "marie@example.com", "+33 1 00 00"),
        )
        self.assertTrue(booking.is_locked)
        self.assertEqual(booking.form_booking_id, "form-1")
        self.assertEqual(self.store.get_booking("form-1").status, "hold")

    def test_cancellation_of_unknown_uid_creates_nothing(self) -> None:
        feed = self._feed("f1")
        self.client.bodies[feed.url] = _calendar(_vevent("ghost", "20250310", "20250312", status="CANCELLED"))

        summary = self.engine.run_scheduled_sweep()

        self.assertEqual(summary.feeds[0].counts, {"skipped": 1})
        self.assertEqual(self.store.list_bookings("p1"), [])
        self.assertIsNone(self.store.get_ledger_entry("p1", "ghost"))

    def test_suppression_sticks_until_lifted(self) -> None:
        feed = self._feed("f1")
        self.client.bodies[feed.url] = _calendar(_vevent("abc", "20250310", "20250312"))
        self.engine.run_scheduled_sweep()
        [booking] = self._ical_bookings()

        cancelled_id = self.engine.suppress_uid("p1", "abc", "host deleted")
        self.engine.run_scheduled_sweep()
        self.engine.run_scheduled_sweep()

        self.assertEqual(cancelled_id, booking.id)
        [after] = self._ical_bookings()
        self.assertEqual(after.status, "cancelled")

        self.assertTrue(self.engine.unsuppress_uid("p1", "abc"))
        self.engine.run_scheduled_sweep()
        [revived] = self._ical_bookings()
        self.assertEqual((revived.id, revived.status), (booking.id, "hold"))

    def test_no_uid_events_are_idempotent(self) -> None:
        feed = self._feed("f1")
        self.client.bodies[feed.url] = _calendar(_vevent(None, "20250310", "20250312"))

        self.engine.run_scheduled_sweep()
        self.engine.run_scheduled_sweep()

        self.assertEqual(len(self._ical_bookings()), 1)
        [entry] = self.store.list_ledger_entries("p1")
        self.assertTrue(entry.uid_key.startswith("nouid:"))

    def test_fetch_failure_only_fails_that_feed(self) -> None:
        broken = self._feed("f-broken")
        healthy = self._feed("f-ok")
        self.client.failures[broken.url] = FeedFetchError("HTTP 503: unavailable", status_code=503, transient=True)
        self.client.bodies[healthy.url] = _calendar(_vevent("abc", "20250310", "20250312"))

        summary = self.engine.run_scheduled_sweep()

        results = {item.feed_id: item for item in summary.feeds}
        self.assertFalse(results["f-broken"].ok)
        self.assertIn("503", results["f-broken"].error)
        self.assertTrue(results["f-ok"].ok)
        self.assertEqual(results["f-ok"].imported_count, 1)
        self.assertFalse(summary.ok)
        self.assertEqual(self.store.recent_feed_logs("f-broken")[0]["status"], "error")
        self.assertIsNone(self.store.get_feed("f-broken").last_sync)
        self.assertEqual(self.store.recent_sync_runs(1)[0]["status"], "partial")

    def test_event_failure_is_isolated(self) -> None:
        feed = self._feed("f1")
        self.client.bodies[feed.url] = _calendar(
            _vevent("bad", "20250310", "20250312"),
            _vevent("good", "20250401", "20250403"),
        )
        original_apply = self.engine.merger.apply

        def apply(feed, event, resolution, **kwargs):
            if event.uid == "bad":
                raise RuntimeError("disk on fire")
            return original_apply(feed, event, resolution, **kwargs)

        with mock.patch.object(self.engine.merger, "apply", side_effect=apply):
            summary = self.engine.run_scheduled_sweep()

        self.assertTrue(summary.feeds[0].ok)
        self.assertEqual(summary.feeds[0].counts, {"failed": 1, "created": 1})
        self.assertEqual([booking.external_uid for booking in self._ical_bookings()], ["good"])
        actions = [event["action"] for event in self.store.recent_audit_events()]
        self.assertIn("event_failed", actions)
        self.assertEqual(self.store.recent_feed_logs("f1")[0]["status"], "partial")

    def test_event_without_start_is_skipped(self) -> None:
        feed = self._feed("f1")
        self.client.bodies[feed.url] = _calendar("BEGIN:VEVENT\nUID:nostart\nSUMMARY:Blocked\nEND:VEVENT")

        summary = self.engine.run_scheduled_sweep()

        self.assertEqual(summary.feeds[0].counts, {"skipped": 1})
        self.assertEqual(self.store.list_bookings("p1"), [])

    def test_policy_denial_skips_every_feed_of_the_account(self) -> None:
        self._feed("f1")
        self._feed("f2")
        policy = mock.Mock()
        policy.can_sync_now.return_value = PolicyDecision(allowed=False, reason="cooldown", cooldown_remaining_sec=42)
        engine = SyncEngine(self.config_manager, self.store, feed_client=self.client, policy=policy)

        summary = engine.run_property_sweep("p1")

        self.assertEqual(summary.feeds, [])
        [skipped] = summary.skipped_accounts
        self.assertEqual((skipped.account_id, skipped.reason, skipped.cooldown_remaining_sec), ("acct-1", "cooldown", 42))
        self.assertEqual(sorted(skipped.feed_ids), ["f1", "f2"])
        self.assertEqual(self.client.calls, [])
        policy.can_sync_now.assert_called_once_with("acct-1", "sync_now")
        policy.register_sync_usage.assert_not_called()

    def test_policy_error_skips_only_that_account(self) -> None:
        self.store.upsert_property(property_id="p2", account_id="acct-2")
        first = self._feed("f1")
        second = self._feed("f2", property_id="p2")
        self.client.bodies[first.url] = _calendar(_vevent("abc", "20250310", "20250312"))
        self.client.bodies[second.url] = _calendar(_vevent("def", "20250310", "20250312"))

        def can_sync_now(account_id: str, event_type: str) -> PolicyDecision:
            if account_id == "acct-1":
                raise ConnectionError("policy service unreachable")
            return PolicyDecision(allowed=True)

        policy = mock.Mock()
        policy.can_sync_now.side_effect = can_sync_now
        policy.register_sync_usage.side_effect = RuntimeError("usage table locked")
        engine = SyncEngine(self.config_manager, self.store, feed_client=self.client, policy=policy)

        summary = engine.run_scheduled_sweep()

        self.assertIsNone(summary.error)
        self.assertEqual([item.feed_id for item in summary.feeds], ["f2"])
        self.assertTrue(summary.feeds[0].ok)
        [skipped] = summary.skipped_accounts
        self.assertEqual((skipped.account_id, skipped.reason), ("acct-1", "policy_error"))
        self.assertEqual(self.client.calls, [second.url])

    def test_feed_bookkeeping_failure_fails_only_that_feed(self) -> None:
        first = self._feed("f1")
        second = self._feed("f2")
        self.client.bodies[first.url] = _calendar(_vevent("abc", "20250310", "20250312"))
        self.client.bodies[second.url] = _calendar(_vevent("def", "20250401", "20250403"))
        original_log = self.store.record_feed_log

        def record_feed_log(**kwargs):
            if kwargs["feed_id"] == "f1":
                raise RuntimeError("database is locked")
            return original_log(**kwargs)

        with mock.patch.object(self.store, "record_feed_log", side_effect=record_feed_log):
            summary = self.engine.run_scheduled_sweep()

        self.assertIsNone(summary.error)
        results = {item.feed_id: item for item in summary.feeds}
        self.assertFalse(results["f1"].ok)
        self.assertIn("database is locked", results["f1"].error)
        self.assertTrue(results["f2"].ok)
        self.assertIsNone(self.store.get_feed("f1").last_sync)
        self.assertIsNotNone(self.store.get_feed("f2").last_sync)
        self.assertEqual(self.store.recent_sync_runs(1)[0]["status"], "partial")

    def test_usage_registered_per_account(self) -> None:
        feed = self._feed("f1")
        self.client.bodies[feed.url] = _calendar()

        self.engine.run_scheduled_sweep()
        self.assertIsNotNone(self.store.last_sync_usage("acct-1", "autosync"))

        self.engine.run_single_feed("f1")
        self.assertIsNotNone(self.store.last_sync_usage("acct-1", "sync_now"))

    def test_property_sweep_without_feeds_still_charges_usage(self) -> None:
        summary = self.engine.run_property_sweep("p1")
        self.assertEqual(summary.feeds, [])
        self.assertIsNotNone(self.store.last_sync_usage("acct-1", "sync_now"))

    def test_sync_now_cooldown_from_config(self) -> None:
        self.config_manager.update({"policy": {"cooldown_seconds": {"sync_now": 600}}})
        feed = self._feed("f1")
        self.client.bodies[feed.url] = _calendar()

        self.assertEqual(len(self.engine.run_single_feed("f1").feeds), 1)
        second = self.engine.run_single_feed("f1")

        self.assertEqual(second.feeds, [])
        self.assertEqual(second.skipped_accounts[0].reason, "cooldown")
        self.assertGreater(second.skipped_accounts[0].cooldown_remaining_sec, 0)

    def test_entry_point_validation(self) -> None:
        self._feed("f-off", is_active=False)
        with self.assertRaises(LookupError):
            self.engine.run_property_sweep("nope")
        with self.assertRaises(LookupError):
            self.engine.run_single_feed("nope")
        with self.assertRaises(ValueError):
            self.engine.run_single_feed("f-off")
        with self.assertRaises(ValueError):
            self.engine.run_scheduled_sweep(status_mode="checked_in")

    def test_scheduled_sweep_ignores_inactive_feeds(self) -> None:
        self._feed("f-off", is_active=False)
        summary = self.engine.run_scheduled_sweep()
        self.assertEqual(summary.feeds, [])
        self.assertEqual(self.client.calls, [])

    def test_reconcile_unassigned_places_when_room_frees_up(self) -> None:
        self.store.insert_booking(
            Booking(id="x1", property_id="p1", room_id="r1", start_date=date(2025, 3, 10), end_date=date(2025, 3, 12),
                    status="confirmed", source="manual")
        )
        self.store.insert_booking(
            Booking(id="x2", property_id="p1", room_id="r2", start_date=date(2025, 3, 10), end_date=date(2025, 3, 12),
                    status="confirmed", source="manual")
        )
        feed = self._feed("f-type", room_type_id="t1")
        self.client.bodies[feed.url] = _calendar(_vevent("abc", "20250310", "20250312"))
        self.engine.run_scheduled_sweep()

        self.assertEqual(self.engine.reconcile_unassigned("p1")["remaining"], 1)
        self.store.cancel_booking("x2")
        counts = self.engine.reconcile_unassigned("p1")

        self.assertEqual(counts["placed"], 1)
        [booking] = self._ical_bookings()
        self.assertEqual(booking.room_id, "r2")
        self.assertEqual(self.store.get_ledger_entry("p1", "abc").room_id, "r2")
        self.assertEqual(self.store.list_unassigned("p1"), [])

    def test_moved_dates_into_taken_room_moves_booking_to_free_room(self) -> None:
        self.config_manager.update({"sync": {"booking_status": "confirmed"}})
        feed = self._feed("f-type", room_type_id="t1")
        self.client.bodies[feed.url] = _calendar(_vevent("abc", "20250310", "20250312"))
        self.engine.run_scheduled_sweep()
        [booking] = self._ical_bookings()
        self.assertEqual((booking.room_id, booking.status), ("r1", "confirmed"))
        self.store.insert_booking(
            Booking(id="x1", property_id="p1", room_id="r1", start_date=date(2025, 3, 12), end_date=date(2025, 3, 14),
                    status="confirmed", source="manual")
        )
        self.client.bodies[feed.url] = _calendar(_vevent("abc", "20250311", "20250313"))

        summary = self.engine.run_scheduled_sweep()

        self.assertEqual(summary.feeds[0].counts, {"updated": 1})
        moved = self.store.get_booking(booking.id)
        self.assertEqual((moved.room_id, moved.status), ("r2", "confirmed"))
        self.assertEqual(self.store.get_ledger_entry("p1", "abc").room_id, "r2")
        self.assertEqual(self.store.list_unassigned("p1"), [])

    def test_moved_dates_with_type_full_are_queued_until_a_room_frees(self) -> None:
        self.config_manager.update({"sync": {"booking_status": "confirmed"}})
        feed = self._feed("f-type", room_type_id="t1")
        self.client.bodies[feed.url] = _calendar(_vevent("abc", "20250310", "20250312"))
        self.engine.run_scheduled_sweep()
        [booking] = self._ical_bookings()
        for booking_id, room_id in (("x1", "r1"), ("x2", "r2")):
            self.store.insert_booking(
                Booking(id=booking_id, property_id="p1", room_id=room_id, start_date=date(2025, 3, 12),
                        end_date=date(2025, 3, 14), status="confirmed", source="manual")
            )
        self.client.bodies[feed.url] = _calendar(_vevent("abc", "20250311", "20250313"))

        summary = self.engine.run_scheduled_sweep()

        self.assertEqual(summary.feeds[0].counts, {"unassigned": 1})
        parked = self.store.get_booking(booking.id)
        self.assertEqual((parked.room_id, parked.status), ("r1", "hold"))
        [queued] = self.store.list_unassigned("p1")
        self.assertEqual(queued.booking_id, booking.id)
        self.assertEqual(self.engine.reconcile_unassigned("p1")["remaining"], 1)

        self.store.cancel_booking("x2")
        counts = self.engine.reconcile_unassigned("p1")

        self.assertEqual(counts["placed"], 1)
        placed = self.store.get_booking(booking.id)
        self.assertEqual((placed.room_id, placed.status), ("r2", "confirmed"))
        self.assertEqual(self.store.list_unassigned("p1"), [])

    def test_assign_unassigned_uses_atomic_claim(self) -> None:
        self.store.insert_booking(
            Booking(id="x1", property_id="p1", room_id="r1", start_date=date(2025, 3, 10), end_date=date(2025, 3, 12),
                    status="confirmed", source="manual")
        )
        self.store.insert_booking(
            Booking(id="x2", property_id="p1", room_id="r2", start_date=date(2025, 3, 10), end_date=date(2025, 3, 12),
                    status="hold", source="manual")
        )
        self.store.add_room(Room(id="r3", property_id="p1", name="103", room_type_id="t2"))
        feed = self._feed("f-type", room_type_id="t1")
        self.client.bodies[feed.url] = _calendar(_vevent("abc", "20250310", "20250312"))
        self.config_manager.update({"sync": {"booking_status": "confirmed"}})
        self.engine.run_scheduled_sweep()
        # x2 on hold does not block r2, so the sweep already placed the event there.
        [placed] = self._ical_bookings()
        self.assertEqual(placed.room_id, "r2")

        self.store.cancel_booking(placed.id)
        self.store.insert_booking(
            Booking(id="x3", property_id="p1", room_id="r2", start_date=date(2025, 3, 10), end_date=date(2025, 3, 12),
                    status="confirmed", source="manual")
        )
        self.client.bodies[feed.url] = _calendar(_vevent("def", "20250310", "20250312"))
        self.engine.run_scheduled_sweep()
        [queued] = self.store.list_unassigned("p1")

        with self.assertRaises(RoomUnavailableError):
            self.engine.assign_unassigned(queued.id, "r1")
        booking = self.engine.assign_unassigned(queued.id, "r3")

        self.assertEqual((booking.room_id, booking.status), ("r3", "confirmed"))
        self.assertEqual(self.store.list_unassigned("p1"), [])
        self.assertEqual(self.store.get_ledger_entry("p1", "def").room_id, "r3")
        with self.assertRaises(LookupError):
            self.engine.assign_unassigned("missing", "r3")


if __name__ == "__main__":
    unittest.main()
