from __future__ import annotations

import logging
import threading
from typing import Optional

from innsync.config_manager import ConfigManager
from innsync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="innsync-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_cycle(self, trigger: str) -> None:
        try:
            self.sync_engine.run_scheduled_sweep(trigger=trigger)
            if self.config_manager.load().sync.reconcile_unassigned:
                self.sync_engine.reconcile_unassigned()
        except Exception:
            # Keep the loop alive; the next tick retries from stored state.
            logger.exception("Scheduled sync cycle (%s) failed", trigger)

    def _loop(self) -> None:
        self.run_cycle("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(60, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_cycle("manual" if manual else "scheduled")
