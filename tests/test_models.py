import unittest
from datetime import date, datetime, time

from innsync.models import (
    AppConfig,
    Booking,
    EventOutcome,
    FeedResult,
    PolicyConfig,
    RunSummary,
    SyncConfig,
    parse_clock,
)


class ModelsTests(unittest.TestCase):
    def test_sync_config_normalizes_values(self) -> None:
        cfg = SyncConfig.from_dict(
            {
                "interval_seconds": 5,
                "booking_status": "CONFIRMED",
                "default_timezone": "  ",
                "default_check_in": "not-a-time",
                "default_check_out": "10:30:45",
            }
        )
        self.assertEqual(cfg.interval_seconds, 60)
        self.assertEqual(cfg.booking_status, "confirmed")
        self.assertEqual(cfg.default_timezone, "UTC")
        self.assertEqual(cfg.default_check_in, "14:00")
        self.assertEqual(cfg.default_check_out, "10:30")

    def test_unknown_status_mode_falls_back_to_hold(self) -> None:
        self.assertEqual(SyncConfig.from_dict({"booking_status": "checked_in"}).booking_status, "hold")

    def test_policy_config_merges_cooldowns(self) -> None:
        cfg = PolicyConfig.from_dict({"cooldown_seconds": {"sync_now": "300", "": 5, "bogus": "x"}, "hourly_quota": -4})
        self.assertEqual(cfg.cooldown_seconds, {"autosync": 0, "sync_now": 300})
        self.assertEqual(cfg.hourly_quota, 0)

    def test_app_config_round_trips_through_dict(self) -> None:
        cfg = AppConfig.from_dict({"logging": {"level": "debug", "json": True}})
        again = AppConfig.from_dict(cfg.to_dict())
        self.assertEqual(again, cfg)
        self.assertEqual(again.logging.level, "DEBUG")

    def test_parse_clock_default_on_bad_input(self) -> None:
        self.assertEqual(parse_clock("", "11:00"), time(11, 0))
        self.assertEqual(parse_clock("25:99", "11:00"), time(11, 0))
        self.assertEqual(parse_clock(time(15, 45, 12)), time(15, 45))

    def test_booking_lock_state(self) -> None:
        booking = Booking(id="b1", property_id="p1", start_date=date(2025, 3, 10), end_date=date(2025, 3, 12))
        self.assertFalse(booking.is_locked)
        booking.guest_name = "   "
        self.assertFalse(booking.is_locked)
        booking.form_submitted_at = datetime(2025, 3, 1, 9, 0)
        self.assertTrue(booking.is_locked)

    def test_run_summary_totals(self) -> None:
        good = FeedResult(feed_id="f1")
        good.add(EventOutcome(action="created"))
        good.add(EventOutcome(action="skipped"))
        good.add(EventOutcome(action="unchanged"))
        bad = FeedResult(feed_id="f2", ok=False, error="HTTP 500")
        summary = RunSummary(trigger="scheduled", feeds=[good, bad])

        self.assertEqual(good.counts, {"created": 1, "skipped": 1, "unchanged": 1})
        self.assertEqual(summary.total_imported, 2)
        self.assertFalse(summary.ok)
        self.assertEqual(summary.to_dict()["feeds"][1]["error"], "HTTP 500")


if __name__ == "__main__":
    unittest.main()
