import tempfile
import unittest
from pathlib import Path

from cache_dropin.config import Config
from cache_dropin.domain.dropin import ErrorKind, Status
from cache_dropin.services.dropin_installer import DropinInstaller
from cache_dropin.services.filesystem_probe import FilesystemProbe
from cache_dropin.services.filesystems import DirectFilesystem
from cache_dropin.services.status_resolver import StatusResolver

OUR_URI = "https://wordpress.org/plugins/redis-cache/"


def _dropin(version: str, uri: str = OUR_URI) -> str:
    return f"<?php\n/**\n * Plugin URI: {uri}\n * Version: {version}\n */\n"


class _CountingCache:
    def __init__(self):
        self.flushes = 0

    def flush(self):
        self.flushes += 1
        return True

    def status(self):
        return True

    def discard_metrics(self, max_age_sec):
        return 0


class _ReadOnlyDirFilesystem(DirectFilesystem):
    def is_writable(self, path):
        return False


class _RecordingListener:
    def __init__(self):
        self.events = []

    def on_enable(self, success):
        self.events.append(("enable", success))

    def on_disable(self, success):
        self.events.append(("disable", success))

    def on_update(self, success):
        self.events.append(("update", success))


class TestDropinInstaller(unittest.TestCase):
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
            fs_method="direct",
        )
        self.config.bundled_path.write_text(_dropin("2.6.3"), encoding="utf-8")
        self.cache = _CountingCache()
        self.resolver = StatusResolver(self.config, self.cache)

    def tearDown(self):
        self._tmp.cleanup()

    def _installer(self, connector=None, listeners=None, silent=False):
        probe = FilesystemProbe(self.config, connector=connector)
        probe.initialize("", silent=silent)
        return DropinInstaller(self.config, probe, self.cache, resolver=self.resolver, listeners=listeners)

    def test_install_copies_bundle_and_flushes_once(self):
        result = self._installer().install()
        self.assertTrue(result.success)
        self.assertEqual(self.resolver.resolve(), Status.ACTIVE)
        self.assertEqual(self.cache.flushes, 1)

    def test_install_is_idempotent(self):
        self._installer().install()
        self._installer().install()
        self.assertEqual(self.resolver.resolve(), Status.ACTIVE)
        self.assertEqual(
            self.config.target_path.read_bytes(),
            self.config.bundled_path.read_bytes(),
        )

    def test_install_replaces_foreign_dropin(self):
        self.config.target_path.write_text(_dropin("9.0", uri="https://example.com/x"), encoding="utf-8")
        self.assertTrue(self._installer().install().success)
        self.assertEqual(self.resolver.resolve(), Status.ACTIVE)

    def test_update_replaces_outdated_without_flush(self):
        self.config.target_path.write_text(_dropin("2.6.2"), encoding="utf-8")
        self.assertEqual(self.resolver.resolve(), Status.OUTDATED)
        result = self._installer().update()
        self.assertTrue(result.success)
        self.assertEqual(self.resolver.resolve(), Status.ACTIVE)
        self.assertEqual(self.cache.flushes, 0)

    def test_remove_deletes_and_flushes(self):
        self._installer().install()
        result = self._installer().remove()
        self.assertTrue(result.success)
        self.assertFalse(self.config.target_path.exists())
        self.assertEqual(self.cache.flushes, 2)

    def test_remove_when_absent_is_success(self):
        result = self._installer().remove()
        self.assertTrue(result.success)
        self.assertEqual(self.resolver.resolve(), Status.NOT_INSTALLED)

    def test_unwritable_directory_leaves_slot_untouched(self):
        result = self._installer(connector=lambda creds: _ReadOnlyDirFilesystem()).install()
        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, ErrorKind.DIRECTORY_NOT_WRITABLE)
        self.assertFalse(self.config.target_path.exists())
        self.assertEqual(self.cache.flushes, 0)

    def test_default_method_with_missing_directory_fails_on_directory(self):
        self.config.fs_method = ""
        self.config.content_dir.rmdir()
        result = self._installer(silent=True).install()
        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, ErrorKind.DIRECTORY_NOT_WRITABLE)
        self.assertFalse(self.config.content_dir.exists())
        self.assertEqual(self.cache.flushes, 0)

    def test_unwritable_existing_target(self):
        self.config.target_path.write_text(_dropin("2.6.2"), encoding="utf-8")
        result = self._installer(connector=lambda creds: _ReadOnlyDirFilesystem()).update()
        self.assertEqual(result.error_kind, ErrorKind.TARGET_NOT_WRITABLE)
        self.assertEqual(self.resolver.resolve(), Status.OUTDATED)

    def test_modifications_disallowed(self):
        self.config.disallow_file_mods = True
        result = self._installer().install()
        self.assertEqual(result.error_kind, ErrorKind.MODIFICATIONS_DISALLOWED)
        self.assertFalse(self.config.target_path.exists())

    def test_missing_credentials(self):
        self.config.fs_method = "ftpext"
        result = self._installer(silent=True).install()
        self.assertEqual(result.error_kind, ErrorKind.CREDENTIALS_UNAVAILABLE)

    def test_missing_bundle(self):
        self.config.bundled_path.unlink()
        self.assertEqual(self._installer().install().error_kind, ErrorKind.SOURCE_MISSING)

    def test_listeners_are_notified(self):
        listener = _RecordingListener()
        installer = self._installer(listeners=[listener])
        installer.install()
        installer.update()
        installer.remove()
        self.assertEqual(listener.events, [("enable", True), ("update", True), ("disable", True)])

    def test_auto_update_refreshes_outdated_dropin(self):
        self.config.target_path.write_text(_dropin("2.6.2"), encoding="utf-8")
        result = DropinInstaller(self.config, FilesystemProbe(self.config), self.cache, resolver=self.resolver).maybe_auto_update()
        self.assertIsNotNone(result)
        self.assertTrue(result.success)
        self.assertEqual(self.resolver.resolve(), Status.ACTIVE)
        self.assertEqual(self.cache.flushes, 0)

    def test_auto_update_respects_flag_and_foreign_dropins(self):
        self.config.target_path.write_text(_dropin("2.6.2"), encoding="utf-8")
        self.config.disable_autoupdate = True
        installer = DropinInstaller(self.config, FilesystemProbe(self.config), self.cache, resolver=self.resolver)
        self.assertIsNone(installer.maybe_auto_update())
        self.assertEqual(self.resolver.resolve(), Status.OUTDATED)

        self.config.disable_autoupdate = False
        self.config.target_path.write_text(_dropin("1.0", uri="https://example.com/x"), encoding="utf-8")
        self.assertIsNone(installer.maybe_auto_update())
        self.assertEqual(self.resolver.resolve(), Status.INVALID)

    def test_teardown_removes_own_dropin(self):
        self._installer().install()
        installer = DropinInstaller(self.config, FilesystemProbe(self.config), self.cache, resolver=self.resolver)
        result = installer.teardown_on_deactivation()
        self.assertTrue(result.success)
        self.assertFalse(self.config.target_path.exists())

    def test_teardown_leaves_foreign_dropin(self):
        self.config.target_path.write_text(_dropin("1.0", uri="https://example.com/x"), encoding="utf-8")
        installer = DropinInstaller(self.config, FilesystemProbe(self.config), self.cache, resolver=self.resolver)
        self.assertIsNone(installer.teardown_on_deactivation())
        self.assertTrue(self.config.target_path.exists())
        self.assertEqual(self.cache.flushes, 1)
