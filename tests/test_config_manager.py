import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from innsync.config_manager import ConfigManager
from innsync.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))

            self.assertTrue(config_path.exists())
            config = manager.load()
            self.assertEqual(config.sync.booking_status, "hold")
            self.assertEqual(config.sync.default_check_in, "14:00")
            self.assertEqual(config.policy.cooldown_seconds["sync_now"], 60)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "sync": {"booking_status": "confirmed", "default_timezone": "Europe/Lisbon"},
                    "fetch": {"timeout_seconds": 5},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(Path(str(config_path) + ".tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["sync"]["booking_status"], "confirmed")
            self.assertEqual(data["fetch"]["timeout_seconds"], 5)

    def test_update_deep_merges_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"policy": {"cooldown_seconds": {"sync_now": 120}}})
            updated = manager.update({"sync": {"interval_seconds": 600}})

            self.assertEqual(updated.sync.interval_seconds, 600)
            self.assertEqual(updated.policy.cooldown_seconds["sync_now"], 120)
            self.assertEqual(updated.policy.cooldown_seconds["autosync"], 0)
            self.assertEqual(manager.load().sync.interval_seconds, 600)

    def test_update_rejects_invalid_sync_settings(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            manager.update({"sync": {"booking_status": "Confirmed"}})
            before = config_path.read_text(encoding="utf-8")

            for payload in (
                {"sync": {"booking_status": "checked_in"}},
                {"sync": {"default_timezone": "Mars/Olympus_Mons"}},
                {"sync": {"default_check_in": "25:99"}},
                {"caldav": {"base_url": "https://dav.example.com"}},
                {"policy": "fast"},
            ):
                with self.assertRaises(ValueError):
                    manager.update(payload)

            self.assertEqual(config_path.read_text(encoding="utf-8"), before)
            self.assertEqual(manager.load().sync.booking_status, "confirmed")

    def test_load_non_mapping_file_falls_back_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text("- just\n- a list\n", encoding="utf-8")

            with self.assertLogs("innsync.config_manager", level="WARNING"):
                config = ConfigManager(str(config_path)).load()

            self.assertEqual(config, AppConfig())


if __name__ == "__main__":
    unittest.main()
