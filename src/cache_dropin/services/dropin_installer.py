import logging
from typing import List, Optional, Protocol

from cache_dropin.config import Config
from cache_dropin.domain.dropin import CacheHandle, ErrorKind, FileOpResult
from cache_dropin.observability.structured_log import log_json
from cache_dropin.services.filesystem_probe import FilesystemProbe
from cache_dropin.services.filesystems import FILE_MODE
from cache_dropin.services.status_resolver import StatusResolver

logger = logging.getLogger(__name__)


class DropinListener(Protocol):
    def on_enable(self, success: bool) -> None:
        ...

    def on_disable(self, success: bool) -> None:
        ...

    def on_update(self, success: bool) -> None:
        ...


class DropinInstaller:
    """Copies the bundled drop-in into the slot and removes it again.

    ``install`` and ``remove`` change which cache layer the host runs, so both
    flush the store after a successful change. ``update`` only replaces our own
    file with a newer version and leaves the store alone.
    """

    def __init__(
        self,
        config: Config,
        probe: FilesystemProbe,
        cache: CacheHandle,
        resolver: Optional[StatusResolver] = None,
        listeners: Optional[List[DropinListener]] = None,
    ) -> None:
        self._config = config
        self._probe = probe
        self._cache = cache
        self._resolver = resolver or StatusResolver(config, cache)
        self._listeners = list(listeners or [])

    def install(self) -> FileOpResult:
        result = self._copy_bundled()
        if result.success:
            self._flush("enable")
        self._notify("on_enable", result.success)
        log_json(logger, "dropin.install", success=result.success, error=_kind(result))
        return result

    def update(self) -> FileOpResult:
        result = self._copy_bundled()
        self._notify("on_update", result.success)
        log_json(logger, "dropin.update", success=result.success, error=_kind(result))
        return result

    def remove(self) -> FileOpResult:
        result = self._delete_target()
        if result.success:
            self._flush("disable")
        self._notify("on_disable", result.success)
        log_json(logger, "dropin.remove", success=result.success, error=_kind(result))
        return result

    def maybe_auto_update(self) -> Optional[FileOpResult]:
        """Silently refresh our own drop-in when it is older than the bundled one."""
        if self._config.disable_autoupdate:
            return None
        if not self._resolver.is_outdated() or not self._resolver.is_valid():
            return None
        if not self._probe.initialize("", silent=True):
            logger.info("drop-in outdated but filesystem credentials unavailable; skipping auto-update")
            return None
        return self.update()

    def teardown_on_deactivation(self) -> Optional[FileOpResult]:
        """Flush the store and remove our drop-in; foreign drop-ins are left alone."""
        self._flush("deactivate")
        if not self._resolver.is_valid():
            return None
        if not self._probe.initialize("", silent=True):
            logger.warning("cannot remove drop-in on deactivation: filesystem credentials unavailable")
            return None
        result = self._delete_target()
        log_json(logger, "dropin.deactivate", success=result.success, error=_kind(result))
        return result

    def _precheck(self) -> Optional[FileOpResult]:
        if not self._probe.is_file_mod_allowed():
            return FileOpResult.failed(ErrorKind.MODIFICATIONS_DISALLOWED)
        if self._probe.filesystem is None:
            return FileOpResult.failed(ErrorKind.CREDENTIALS_UNAVAILABLE)
        return None

    def _copy_bundled(self) -> FileOpResult:
        failure = self._precheck()
        if failure is not None:
            return failure
        fs = self._probe.filesystem
        assert fs is not None
        source = self._config.bundled_path
        target = self._config.target_path
        if not source.exists():
            return FileOpResult.failed(ErrorKind.SOURCE_MISSING)
        if fs.exists(target):
            if not fs.is_writable(target):
                return FileOpResult.failed(ErrorKind.TARGET_NOT_WRITABLE)
        elif not fs.is_writable(self._config.content_dir):
            return FileOpResult.failed(ErrorKind.DIRECTORY_NOT_WRITABLE)
        if not fs.copy(source, target, overwrite=True, mode=FILE_MODE):
            return FileOpResult.failed(ErrorKind.COPY_FAILED)
        return FileOpResult.ok()

    def _delete_target(self) -> FileOpResult:
        failure = self._precheck()
        if failure is not None:
            return failure
        fs = self._probe.filesystem
        assert fs is not None
        target = self._config.target_path
        if not fs.exists(target):
            return FileOpResult.ok()
        if fs.delete(target) or not fs.exists(target):
            return FileOpResult.ok()
        return FileOpResult.failed(ErrorKind.DELETE_FAILED)

    def _flush(self, reason: str) -> None:
        try:
            flushed = self._cache.flush()
        except Exception:
            logger.exception("cache flush raised after %s", reason)
            return
        if not flushed:
            logger.warning("cache flush after %s did not succeed", reason)

    def _notify(self, method: str, success: bool) -> None:
        for listener in self._listeners:
            try:
                getattr(listener, method)(success)
            except Exception:
                logger.exception("drop-in listener %s failed", method)


def _kind(result: FileOpResult) -> str:
    return result.error_kind.value if result.error_kind is not None else ""
