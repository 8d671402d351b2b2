from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol

from innsync.booking_store import BookingStore
from innsync.models import PolicyConfig, utc_now


@dataclass
class PolicyDecision:
    allowed: bool
    reason: str = ""
    cooldown_remaining_sec: int = 0


class SyncPolicy(Protocol):
    def can_sync_now(self, account_id: str, event_type: str) -> PolicyDecision: ...

    def register_sync_usage(self, account_id: str, event_type: str) -> None: ...


class LocalSyncPolicy:
    """Per-account cooldown and hourly quota, counted from the ``sync_usage`` table."""

    def __init__(
        self,
        store: BookingStore,
        config: PolicyConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.config = config
        self._clock = clock

    def can_sync_now(self, account_id: str, event_type: str) -> PolicyDecision:
        now = self._clock()
        cooldown = int(self.config.cooldown_seconds.get(event_type, 0))
        if cooldown > 0:
            last_used = self.store.last_sync_usage(account_id, event_type)
            if last_used is not None:
                elapsed = (now - last_used).total_seconds()
                if elapsed < cooldown:
                    return PolicyDecision(
                        allowed=False,
                        reason="cooldown",
                        cooldown_remaining_sec=max(1, math.ceil(cooldown - elapsed)),
                    )
        quota = int(self.config.hourly_quota)
        if quota > 0 and self.store.count_sync_usage_since(account_id, now - timedelta(hours=1)) >= quota:
            return PolicyDecision(allowed=False, reason="hourly_quota_exceeded")
        return PolicyDecision(allowed=True)

    def register_sync_usage(self, account_id: str, event_type: str) -> None:
        self.store.register_sync_usage(account_id, event_type, self._clock())
