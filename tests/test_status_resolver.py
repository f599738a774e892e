import tempfile
import unittest
from pathlib import Path
from unittest import mock

from cache_dropin.config import Config
from cache_dropin.domain.dropin import Status
from cache_dropin.dropin.header import load_record
from cache_dropin.services.status_resolver import StatusResolver

OUR_URI = "https://wordpress.org/plugins/redis-cache/"


def _dropin(version: str, uri: str = OUR_URI) -> str:
    return f"<?php\n/**\n * Plugin Name: Redis Object Cache Drop-In\n * Plugin URI: {uri}\n * Version: {version}\n */\n"


class _FakeCache:
    def __init__(self, connected=True):
        self.connected = connected

    def flush(self):
        return True

    def status(self):
        return self.connected

    def discard_metrics(self, max_age_sec):
        return 0


class TestStatusResolver(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        (root / "content").mkdir()
        (root / "plugin" / "includes").mkdir(parents=True)
        self.config = Config(
            config_dir=root,
            content_dir=root / "content",
            plugin_dir=root / "plugin",
            state_dir=root / "state",
        )
        self.config.bundled_path.write_text(_dropin("2.6.3"), encoding="utf-8")
        self.cache = _FakeCache()

    def tearDown(self):
        self._tmp.cleanup()

    def _install(self, text: str) -> None:
        self.config.target_path.write_text(text, encoding="utf-8")

    def test_not_installed(self):
        resolver = StatusResolver(self.config, self.cache)
        self.assertEqual(resolver.resolve(), Status.NOT_INSTALLED)
        self.assertEqual(resolver.describe(), "Not enabled")
        self.assertIsNone(resolver.connection_status())

    def test_active_reports_connection(self):
        self._install(_dropin("2.6.3"))
        resolver = StatusResolver(self.config, self.cache)
        self.assertEqual(resolver.resolve(), Status.ACTIVE)
        self.assertTrue(resolver.connection_status())
        self.assertEqual(resolver.describe(), "Connected")
        self.cache.connected = False
        self.assertEqual(resolver.describe(), "Not connected")

    def test_outdated_when_same_origin_older_version(self):
        self._install(_dropin("2.6.2"))
        resolver = StatusResolver(self.config, self.cache)
        self.assertEqual(resolver.resolve(), Status.OUTDATED)
        self.assertTrue(resolver.is_valid())
        self.assertTrue(resolver.is_outdated())
        self.assertIsNone(resolver.connection_status())

    def test_newer_installed_version_is_active(self):
        self._install(_dropin("3.0.0"))
        self.assertEqual(StatusResolver(self.config, self.cache).resolve(), Status.ACTIVE)

    def test_foreign_dropin_is_invalid_even_if_older(self):
        self._install(_dropin("1.0", uri="https://example.com/other-cache"))
        resolver = StatusResolver(self.config, self.cache)
        self.assertEqual(resolver.resolve(), Status.INVALID)
        self.assertFalse(resolver.is_valid())
        self.assertFalse(resolver.is_outdated())
        self.assertEqual(resolver.describe(), "Drop-in is invalid")

    def test_dropin_without_uri_is_invalid(self):
        self._install("<?php\n// custom object cache\n")
        self.assertEqual(StatusResolver(self.config, self.cache).resolve(), Status.INVALID)

    def test_force_disabled_wins(self):
        self._install(_dropin("2.6.3"))
        self.config.force_disabled = True
        resolver = StatusResolver(self.config, self.cache)
        self.assertEqual(resolver.resolve(), Status.DISABLED)
        self.assertEqual(resolver.describe(), "Disabled")

    def test_unreadable_target_is_invalid(self):
        self.config.target_path.mkdir()
        self.assertEqual(StatusResolver(self.config, self.cache).resolve(), Status.INVALID)

    def test_permission_error_on_read_is_invalid(self):
        self._install(_dropin("2.6.3"))
        target = self.config.target_path

        def unreadable(path):
            if path == target:
                raise PermissionError(13, "Permission denied", str(path))
            return load_record(path)

        with mock.patch("cache_dropin.services.status_resolver.load_record", side_effect=unreadable):
            self.assertEqual(StatusResolver(self.config, self.cache).resolve(), Status.INVALID)

    def test_target_removed_before_read_is_not_installed(self):
        self._install(_dropin("2.6.3"))
        target = self.config.target_path

        def vanish(path):
            if path == target:
                target.unlink()
                raise FileNotFoundError(2, "No such file or directory", str(path))
            return load_record(path)

        with mock.patch("cache_dropin.services.status_resolver.load_record", side_effect=vanish):
            self.assertEqual(StatusResolver(self.config, self.cache).resolve(), Status.NOT_INSTALLED)

    def test_missing_bundle_makes_installed_invalid(self):
        self._install(_dropin("2.6.3"))
        self.config.bundled_path.unlink()
        self.assertEqual(StatusResolver(self.config, self.cache).resolve(), Status.INVALID)

    def test_validator_override_can_accept_foreign_uri(self):
        self._install(_dropin("2.6.3", uri="https://mirror.example.com/redis-cache/"))
        calls = []

        def validator(valid, installed_uri, bundled_uri):
            calls.append((valid, installed_uri, bundled_uri))
            return installed_uri.endswith("/redis-cache/")

        resolver = StatusResolver(self.config, self.cache, validator=validator)
        self.assertEqual(resolver.resolve(), Status.ACTIVE)
        self.assertFalse(calls[0][0])

    def test_admin_notice_for_outdated_and_invalid(self):
        self._install(_dropin("2.6.2"))
        resolver = StatusResolver(self.config, self.cache)
        notice = resolver.admin_notice(update_link="/settings?action=update-dropin")
        self.assertIn("outdated", notice)
        self.assertIn("/settings?action=update-dropin", notice)

        self._install(_dropin("1.0", uri="https://example.com/other-cache"))
        self.assertIn("foreign", resolver.admin_notice(settings_link="/settings"))

        self.config.disable_banners = True
        self.assertIsNone(resolver.admin_notice())

    def test_no_notice_when_active(self):
        self._install(_dropin("2.6.3"))
        self.assertIsNone(StatusResolver(self.config, self.cache).admin_notice())
