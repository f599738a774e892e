import tempfile
import unittest
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

from cache_dropin.app_container import build_container
from cache_dropin.config import Config
from cache_dropin.domain.dropin import Action, ActionRequest, Principal, Status
from cache_dropin.services.action_dispatcher import DispatchState
from cache_dropin.services.error_codes import GENERIC_REJECTION
from cache_dropin.services.filesystems import DirectFilesystem
from cache_dropin.services.notices import LEVEL_ERROR, LEVEL_UPDATED

OUR_URI = "https://wordpress.org/plugins/redis-cache/"
ADMIN = Principal(principal_id="admin-1", capabilities=frozenset({"manage_options"}), session="s1")
EDITOR = Principal(principal_id="editor-1", capabilities=frozenset({"edit_posts"}), session="s2")


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


class _ClosingFilesystem(DirectFilesystem):
    def __init__(self):
        self.closed = 0

    def close(self):
        self.closed += 1


class TestActionDispatcher(unittest.TestCase):
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
            secret_key="test-secret",
        )
        self.config.bundled_path.write_text(_dropin("2.6.3"), encoding="utf-8")
        self.cache = _CountingCache()

    def tearDown(self):
        self._tmp.cleanup()

    def _container(self, connector=None):
        return build_container(config=self.config, cache=self.cache, connector=connector)

    def _request(self, container, action: Action, principal=ADMIN) -> ActionRequest:
        token = container.tokens.mint(action.value, principal)
        return ActionRequest(action=action, token=token, redirect_url=self.config.settings_url)

    def test_enable_reports_redirect_and_one_time_notice(self):
        container = self._container()
        outcome = container.dispatcher.dispatch(self._request(container, Action.ENABLE), ADMIN)
        self.assertEqual(outcome.state, DispatchState.REPORTED)
        self.assertEqual(parse_qs(urlsplit(outcome.redirect_url).query)["settings-updated"], ["1"])
        self.assertEqual(container.resolver.resolve(), Status.ACTIVE)
        self.assertEqual(self.cache.flushes, 1)

        notices = container.notices.pop(ADMIN.principal_id)
        self.assertEqual([(n.message, n.level) for n in notices], [("Object cache enabled.", LEVEL_UPDATED)])
        self.assertEqual(container.notices.pop(ADMIN.principal_id), [])

    def test_enable_schedules_metrics_hook_and_disable_removes_it(self):
        container = self._container()
        container.dispatcher.dispatch(self._request(container, Action.ENABLE), ADMIN)
        self.assertIsNotNone(container.scheduler.next_scheduled())
        container.dispatcher.dispatch(self._request(container, Action.DISABLE), ADMIN)
        self.assertIsNone(container.scheduler.next_scheduled())
        self.assertFalse(self.config.target_path.exists())

    def test_update_does_not_flush(self):
        self.config.target_path.write_text(_dropin("2.6.2"), encoding="utf-8")
        container = self._container()
        outcome = container.dispatcher.dispatch(self._request(container, Action.UPDATE_DROPIN), ADMIN)
        self.assertTrue(outcome.result.success)
        self.assertEqual(self.cache.flushes, 0)
        self.assertEqual(container.resolver.resolve(), Status.ACTIVE)

    def test_flush_skips_filesystem(self):
        self.config.fs_method = "ftpext"
        container = self._container()
        outcome = container.dispatcher.dispatch(self._request(container, Action.FLUSH), ADMIN)
        self.assertEqual(outcome.state, DispatchState.REPORTED)
        self.assertEqual(outcome.message, "Object cache flushed.")
        self.assertEqual(self.cache.flushes, 1)

    def test_token_for_other_action_is_rejected(self):
        container = self._container()
        token = container.tokens.mint(Action.FLUSH.value, ADMIN)
        request = ActionRequest(action=Action.DISABLE, token=token)
        outcome = container.dispatcher.dispatch(request, ADMIN)
        self.assertEqual(outcome.state, DispatchState.REJECTED)
        self.assertEqual(outcome.message, GENERIC_REJECTION)
        self.assertEqual(self.cache.flushes, 0)

    def test_token_for_other_principal_is_rejected(self):
        container = self._container()
        other = Principal(principal_id="admin-2", capabilities=ADMIN.capabilities, session="s9")
        outcome = container.dispatcher.dispatch(self._request(container, Action.ENABLE, principal=other), ADMIN)
        self.assertEqual(outcome.state, DispatchState.REJECTED)
        self.assertFalse(self.config.target_path.exists())

    def test_unauthorized_is_indistinguishable_from_bad_token(self):
        container = self._container()
        outcome = container.dispatcher.dispatch(self._request(container, Action.ENABLE, principal=EDITOR), EDITOR)
        self.assertEqual(outcome.state, DispatchState.REJECTED)
        self.assertEqual(outcome.message, GENERIC_REJECTION)
        self.assertFalse(self.config.target_path.exists())
        events = container.audit.list_events()
        self.assertEqual(events[-1].outcome, "rejected")

    def test_missing_credentials_yields_pending_prompt(self):
        self.config.fs_method = "ftpext"
        container = self._container()
        outcome = container.dispatcher.dispatch(self._request(container, Action.ENABLE), ADMIN)
        self.assertEqual(outcome.state, DispatchState.PENDING)
        self.assertIsNotNone(outcome.prompt)
        self.assertIn("action=enable-cache", outcome.prompt.form_url)
        self.assertFalse(self.config.target_path.exists())

    def test_submitted_credentials_complete_pending_action(self):
        self.config.fs_method = "ftpext"
        container = self._container(connector=lambda creds: DirectFilesystem())
        submitted = {"hostname": "ftp.example.com", "username": "deploy", "password": "pw"}
        outcome = container.dispatcher.dispatch(self._request(container, Action.ENABLE), ADMIN, submitted)
        self.assertEqual(outcome.state, DispatchState.REPORTED)
        self.assertTrue(self.config.target_path.exists())

    def test_failure_notice_carries_reason(self):
        container = self._container(connector=lambda creds: _ReadOnlyDirFilesystem())
        outcome = container.dispatcher.dispatch(self._request(container, Action.ENABLE), ADMIN)
        self.assertEqual(outcome.state, DispatchState.REPORTED)
        notices = container.notices.pop(ADMIN.principal_id)
        self.assertEqual(notices[0].level, LEVEL_ERROR)
        self.assertIn("could not be enabled", notices[0].message)
        self.assertIn("not writable", notices[0].message)
        self.assertEqual(self.cache.flushes, 0)

    def test_action_link_round_trips_through_dispatch(self):
        container = self._container()
        link = container.dispatcher.action_link("enable-cache", ADMIN)
        query = parse_qs(urlsplit(link).query)
        request = ActionRequest.parse(query["action"][0], query["_token"][0], redirect_url=self.config.settings_url)
        outcome = container.dispatcher.dispatch(request, ADMIN)
        self.assertEqual(outcome.state, DispatchState.REPORTED)
        self.assertEqual(container.dispatcher.action_link("format-disk", ADMIN), "")

    def test_flush_async(self):
        container = self._container()
        token = container.dispatcher.async_flush_token(ADMIN)
        self.assertEqual(container.dispatcher.flush_async(token, ADMIN), "Object cache flushed.")
        self.assertEqual(self.cache.flushes, 1)
        self.assertEqual(container.dispatcher.flush_async(token, EDITOR), GENERIC_REJECTION)
        flush_link_token = container.tokens.mint(Action.FLUSH.value, ADMIN)
        self.assertEqual(container.dispatcher.flush_async(flush_link_token, ADMIN), GENERIC_REJECTION)
        self.assertEqual(self.cache.flushes, 1)

    def test_dispatch_closes_filesystem(self):
        opened = []

        def connector(creds):
            fs = _ClosingFilesystem()
            opened.append(fs)
            return fs

        container = self._container(connector=connector)
        outcome = container.dispatcher.dispatch(self._request(container, Action.ENABLE), ADMIN)
        self.assertEqual(outcome.state, DispatchState.REPORTED)
        self.assertTrue(opened)
        self.assertTrue(all(fs.closed == 1 for fs in opened))

    def test_stub_bundle_logs_warning(self):
        with self.assertLogs("cache_dropin.app_container", "WARNING") as logs:
            self._container()
        self.assertIn("declares no cache functions", logs.output[0])
