import logging
from typing import Optional, Protocol

from cache_dropin.config import Config
from cache_dropin.domain.dropin import CacheHandle, DropinRecord, Status
from cache_dropin.dropin.header import load_record, version_less_than

logger = logging.getLogger(__name__)

_STATUS_LABELS = {
    Status.DISABLED: "Disabled",
    Status.NOT_INSTALLED: "Not enabled",
    Status.OUTDATED: "Drop-in is outdated",
    Status.INVALID: "Drop-in is invalid",
}


class DropinValidator(Protocol):
    def __call__(self, valid: bool, installed_uri: str, bundled_uri: str) -> bool:
        ...


class StatusResolver:
    """Classifies the drop-in slot by comparing installed and bundled headers.

    Every call re-reads both files; nothing is cached, so concurrent installs or
    removals by other requests are picked up on the next call.
    """

    def __init__(
        self,
        config: Config,
        cache: CacheHandle,
        validator: Optional[DropinValidator] = None,
    ) -> None:
        self._config = config
        self._cache = cache
        self._validator = validator

    def dropin_exists(self) -> bool:
        return self._config.target_path.exists()

    def bundled_record(self) -> Optional[DropinRecord]:
        try:
            return load_record(self._config.bundled_path)
        except OSError as exc:
            logger.error("bundled drop-in unreadable path=%s: %s", self._config.bundled_path, exc)
            return None

    def installed_record(self) -> Optional[DropinRecord]:
        try:
            return load_record(self._config.target_path)
        except OSError as exc:
            logger.info("installed drop-in unreadable path=%s: %s", self._config.target_path, exc)
            return None

    def _is_ours(self, installed: DropinRecord, bundled: DropinRecord) -> bool:
        valid = bool(installed.uri) and installed.uri == bundled.uri
        if self._validator is not None:
            return bool(self._validator(valid, installed.uri, bundled.uri))
        return valid

    def is_valid(self) -> bool:
        if not self.dropin_exists():
            return False
        installed = self.installed_record()
        bundled = self.bundled_record()
        if installed is None or bundled is None:
            return False
        return self._is_ours(installed, bundled)

    def is_outdated(self) -> bool:
        installed = self.installed_record() if self.dropin_exists() else None
        bundled = self.bundled_record()
        if installed is None or bundled is None:
            return False
        if installed.uri != bundled.uri:
            return False
        return version_less_than(installed.version, bundled.version)

    def resolve(self) -> Status:
        if self._config.force_disabled:
            return Status.DISABLED
        if not self.dropin_exists():
            return Status.NOT_INSTALLED
        installed = self.installed_record()
        if installed is None:
            # Vanished between the existence check and the read.
            return Status.INVALID if self.dropin_exists() else Status.NOT_INSTALLED
        bundled = self.bundled_record()
        if bundled is None or not self._is_ours(installed, bundled):
            return Status.INVALID
        if version_less_than(installed.version, bundled.version):
            return Status.OUTDATED
        return Status.ACTIVE

    def connection_status(self) -> Optional[bool]:
        if self.resolve() != Status.ACTIVE:
            return None
        try:
            return self._cache.status()
        except Exception:
            logger.exception("cache handle status check failed")
            return None

    def describe(self) -> str:
        status = self.resolve()
        if status in _STATUS_LABELS:
            return _STATUS_LABELS[status]
        connected = self.connection_status()
        if connected is None:
            return "Unknown"
        return "Connected" if connected else "Not connected"

    def admin_notice(self, update_link: str = "", settings_link: str = "") -> Optional[str]:
        if self._config.disable_banners:
            return None
        status = self.resolve()
        if status == Status.OUTDATED:
            return f"The object cache drop-in is outdated. Please update the drop-in: {update_link}".rstrip(": ")
        if status == Status.INVALID:
            return (
                "A foreign object cache drop-in was found. To use Redis for object caching, "
                f"please enable the drop-in: {settings_link}"
            ).rstrip(": ")
        return None
