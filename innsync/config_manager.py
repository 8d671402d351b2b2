from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from datetime import time
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from innsync.models import SYNC_STATUS_MODES, AppConfig, default_app_config


logger = logging.getLogger(__name__)

CONFIG_SECTIONS = ("sync", "fetch", "policy", "logging")


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _check_clock(name: str, value: Any) -> None:
    try:
        time.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"sync.{name} must be HH:MM, got {value!r}") from exc


def validate_update(payload: dict[str, Any]) -> None:
    """Reject updates that ``AppConfig.from_dict`` would otherwise silently reset.

    Only values the caller actually sends are checked.
    """
    unknown = sorted(set(payload) - set(CONFIG_SECTIONS))
    if unknown:
        raise ValueError(f"Unknown config section(s): {', '.join(unknown)}")
    for section in CONFIG_SECTIONS:
        if section in payload and not isinstance(payload[section], dict):
            raise ValueError(f"Config section {section!r} must be a mapping")

    sync = payload.get("sync", {})
    if "booking_status" in sync:
        status = str(sync["booking_status"]).strip().lower()
        if status not in SYNC_STATUS_MODES:
            raise ValueError(
                f"sync.booking_status must be one of {', '.join(SYNC_STATUS_MODES)}, got {sync['booking_status']!r}"
            )
    if "default_timezone" in sync:
        try:
            ZoneInfo(str(sync["default_timezone"]).strip())
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"sync.default_timezone is not a known zone: {sync['default_timezone']!r}") from exc
    for name in ("default_check_in", "default_check_out"):
        if name in sync:
            _check_clock(name, sync[name])

    cooldowns = payload.get("policy", {}).get("cooldown_seconds")
    if cooldowns is not None and not isinstance(cooldowns, dict):
        raise ValueError("policy.cooldown_seconds must map event types to seconds")


def _dump(config_dict: dict[str, Any], handle: Any) -> None:
    yaml.safe_dump(
        config_dict,
        handle,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())
        logger.info("Wrote default config to %s", self.config_path)

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            if not isinstance(data, dict):
                logger.warning("Config %s is not a mapping; using defaults", self.config_path)
                data = {}
            return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                _dump(config_dict, handle)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                with self.config_path.open("w", encoding="utf-8") as handle:
                    _dump(config_dict, handle)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Deep-merge ``payload`` into the stored config.

        Raises ValueError, leaving the file untouched, when a section or a
        sync setting is invalid.
        """
        validate_update(payload)
        with self._lock:
            current = self.load().to_dict()
            merged = _deep_merge(current, payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            logger.info("Config updated: %s", ", ".join(sorted(payload)) or "no changes")
            return config
