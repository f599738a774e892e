import logging
import tempfile
import uuid
from pathlib import Path
from typing import Callable, Mapping, Optional, Union

from cache_dropin.config import Config
from cache_dropin.domain.dropin import (
    CredentialPrompt,
    Credentials,
    CredentialsPending,
    ErrorKind,
    FileOpResult,
)
from cache_dropin.dropin.header import load_record, record_from_text
from cache_dropin.services.filesystems import FILE_MODE, DirectFilesystem, Filesystem, FtpFilesystem
from cache_dropin.util import obscure_url_secrets

logger = logging.getLogger(__name__)

CONNECTION_ERROR = "There was an error connecting to the server. Please verify the settings are correct."

Connector = Callable[[Credentials], Optional[Filesystem]]
CredentialResult = Union[Credentials, CredentialsPending]


class FilesystemProbe:
    """Negotiates write access to the content directory for a single request.

    Credentials and the connected filesystem live on this instance only; a new
    probe is built for every request so nothing is reused across requests.
    """

    def __init__(
        self,
        config: Config,
        submitted: Optional[Mapping[str, str]] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self._config = config
        self._submitted = dict(submitted or {})
        self._connector = connector
        self._credentials: Optional[Credentials] = None
        self.filesystem: Optional[Filesystem] = None
        self.pending: Optional[CredentialsPending] = None

    # ------------------------------------------------------------------
    # Credential negotiation
    # ------------------------------------------------------------------

    def is_file_mod_allowed(self) -> bool:
        return not self._config.disallow_file_mods

    def detect_method(self) -> str:
        """Configured method, else ``ftpext`` only when the content directory is
        not writable and FTP details were configured or submitted."""
        if self._config.fs_method:
            return self._config.fs_method
        try:
            with tempfile.NamedTemporaryFile(dir=self._config.content_dir, prefix=".cache-dropin-", delete=True):
                pass
        except OSError:
            return "ftpext" if self._has_ftp_details() else "direct"
        return "direct"

    def _has_ftp_details(self) -> bool:
        if any((self._submitted.get(key) or "").strip() for key in ("connection_type", "hostname", "username")):
            return True
        return bool(self._config.ftp_host or self._config.ftp_user)

    def acquire_credentials(self, redirect_url: str = "", silent: bool = False) -> CredentialResult:
        method = self.detect_method()
        if method == "direct":
            return Credentials(method="direct")

        submitted_method = (self._submitted.get("connection_type") or "").strip().lower()
        if submitted_method:
            method = submitted_method
        hostname = (self._submitted.get("hostname") or self._config.ftp_host).strip()
        username = (self._submitted.get("username") or self._config.ftp_user).strip()
        password = self._submitted.get("password") or self._config.ftp_pass
        host, port = _split_host_port(hostname)
        if host and username and password:
            return Credentials(method=method, hostname=host, username=username, password=password, port=port)
        return self._pending(redirect_url, method, hostname, username, error="", silent=silent)

    def connect(self, credentials: Credentials) -> Optional[Filesystem]:
        if self._connector is not None:
            return self._connector(credentials)
        if credentials.method == "direct":
            return DirectFilesystem()
        if credentials.method in {"ftpext", "ftp"}:
            if self._config.ftp_content_dir:
                return FtpFilesystem.connect(
                    credentials,
                    local_root=self._config.content_dir,
                    remote_root=self._config.ftp_content_dir,
                )
            return FtpFilesystem.connect(credentials, local_root=Path("/"))
        logger.warning("unsupported filesystem method=%s", credentials.method)
        return None

    def initialize(self, redirect_url: str = "", silent: bool = False) -> bool:
        if self.filesystem is not None:
            return True
        result = self.acquire_credentials(redirect_url, silent=silent)
        if isinstance(result, CredentialsPending):
            self.pending = result
            return False
        filesystem = self.connect(result)
        if filesystem is None:
            self.pending = self._pending(
                redirect_url,
                result.method,
                result.hostname,
                result.username,
                error=CONNECTION_ERROR,
                silent=silent,
            )
            return False
        self._credentials = result
        self.filesystem = filesystem
        self.pending = None
        return True

    def close(self) -> None:
        """Release the connected filesystem; the probe can be initialized again afterwards."""
        filesystem, self.filesystem = self.filesystem, None
        self._credentials = None
        if filesystem is not None:
            filesystem.close()

    def __enter__(self) -> "FilesystemProbe":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _pending(
        self,
        redirect_url: str,
        method: str,
        hostname: str,
        username: str,
        error: str,
        silent: bool,
    ) -> CredentialsPending:
        prompt = CredentialPrompt(
            form_url=obscure_url_secrets(redirect_url),
            method=method,
            hostname=hostname,
            username=username,
            error=error,
        )
        if silent:
            logger.debug("credentials unavailable for method=%s; prompt discarded", method)
            return CredentialsPending(prompt=None)
        return CredentialsPending(prompt=prompt)

    # ------------------------------------------------------------------
    # Writability test
    # ------------------------------------------------------------------

    def test_writability(self) -> FileOpResult:
        """Copy the bundled drop-in to a throwaway file, verify it, delete it."""
        if not self.is_file_mod_allowed():
            return FileOpResult.failed(ErrorKind.MODIFICATIONS_DISALLOWED)
        if not self.initialize("", silent=True):
            return FileOpResult.failed(ErrorKind.CREDENTIALS_UNAVAILABLE)
        fs = self.filesystem
        assert fs is not None

        target = self._config.target_path
        if self._config.disable_dropin_check:
            if not fs.exists(target):
                return FileOpResult.ok()
            if not fs.is_writable(target):
                return FileOpResult.failed(ErrorKind.TARGET_NOT_WRITABLE)
            return FileOpResult.ok()

        source = self._config.bundled_path
        try:
            bundled = load_record(source)
        except OSError:
            return FileOpResult.failed(ErrorKind.SOURCE_MISSING)
        if not fs.exists(self._config.content_dir) or not fs.is_writable(self._config.content_dir):
            return FileOpResult.failed(ErrorKind.DIRECTORY_NOT_WRITABLE)

        probe_file = self._config.content_dir / f"object-cache.{uuid.uuid4().hex[:12]}.tmp"
        outcome = FileOpResult.failed(ErrorKind.COPY_FAILED)
        try:
            outcome = self._copy_and_verify(fs, source, probe_file, bundled.version)
        finally:
            cleaned = self._remove_probe_file(fs, probe_file)
        if not cleaned:
            logger.error("writability probe left %s behind", probe_file)
            if outcome.success:
                return FileOpResult.failed(ErrorKind.CLEANUP_FAILED)
        return outcome

    def _copy_and_verify(self, fs: Filesystem, source: Path, probe_file: Path, expected_version: str) -> FileOpResult:
        if not fs.copy(source, probe_file, overwrite=True, mode=FILE_MODE):
            return FileOpResult.failed(ErrorKind.COPY_FAILED)
        if not fs.exists(probe_file):
            return FileOpResult.failed(ErrorKind.COPY_FAILED)
        text = fs.read_text_head(probe_file)
        copied_version = record_from_text(text).version if text is not None else ""
        if copied_version != expected_version:
            logger.warning(
                "probe verification mismatch expected=%s got=%s",
                expected_version,
                copied_version or "(unreadable)",
            )
            return FileOpResult.failed(ErrorKind.VERIFICATION_MISMATCH)
        return FileOpResult.ok()

    @staticmethod
    def _remove_probe_file(fs: Filesystem, probe_file: Path) -> bool:
        if not fs.exists(probe_file):
            return True
        return fs.delete(probe_file) or not fs.exists(probe_file)


def _split_host_port(hostname: str) -> "tuple[str, int]":
    value = (hostname or "").strip()
    if ":" in value:
        host, _, raw_port = value.rpartition(":")
        if raw_port.isdigit():
            return host, int(raw_port)
    return value, 21
