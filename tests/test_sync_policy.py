import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from innsync.booking_store import BookingStore
from innsync.models import PolicyConfig
from innsync.sync_policy import LocalSyncPolicy


class LocalSyncPolicyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = BookingStore(str(Path(self.temp_dir.name) / "state.db"))
        self.now = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
        self.policy = LocalSyncPolicy(
            self.store,
            PolicyConfig(cooldown_seconds={"autosync": 0, "sync_now": 60}, hourly_quota=3),
            clock=lambda: self.now,
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_cooldown_per_event_type(self) -> None:
        self.assertTrue(self.policy.can_sync_now("acct-1", "sync_now").allowed)
        self.policy.register_sync_usage("acct-1", "sync_now")

        self.now += timedelta(seconds=20)
        decision = self.policy.can_sync_now("acct-1", "sync_now")
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, "cooldown")
        self.assertEqual(decision.cooldown_remaining_sec, 40)

        self.assertTrue(self.policy.can_sync_now("acct-1", "autosync").allowed)
        self.assertTrue(self.policy.can_sync_now("acct-2", "sync_now").allowed)

        self.now += timedelta(seconds=40)
        self.assertTrue(self.policy.can_sync_now("acct-1", "sync_now").allowed)

    def test_hourly_quota_counts_all_event_types(self) -> None:
        for _ in range(3):
            self.policy.register_sync_usage("acct-1", "autosync")
            self.now += timedelta(minutes=5)

        decision = self.policy.can_sync_now("acct-1", "autosync")
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, "hourly_quota_exceeded")

        self.now += timedelta(hours=1)
        self.assertTrue(self.policy.can_sync_now("acct-1", "autosync").allowed)


if __name__ == "__main__":
    unittest.main()
