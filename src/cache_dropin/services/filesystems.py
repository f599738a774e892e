"""Filesystem backends the probe can connect.

``DirectFilesystem`` talks to the local OS and is used whenever the process
can write the content directory itself. ``FtpFilesystem`` covers hosts where
the web server user cannot, and file changes must go through an FTP account.
Every method swallows ``OSError``/``ftplib.Error`` at this boundary, logs it,
and reports failure through its return value.
"""
from __future__ import annotations

import ftplib
import io
import logging
import os
import shutil
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol

from cache_dropin.domain.dropin import Credentials
from cache_dropin.dropin.header import HEADER_READ_BYTES

logger = logging.getLogger(__name__)

FILE_MODE = 0o644


class Filesystem(Protocol):
    method: str

    def exists(self, path: Path) -> bool:
        ...

    def is_writable(self, path: Path) -> bool:
        ...

    def copy(self, source: Path, destination: Path, overwrite: bool = False, mode: int = FILE_MODE) -> bool:
        ...

    def delete(self, path: Path) -> bool:
        ...

    def read_text_head(self, path: Path) -> Optional[str]:
        ...

    def close(self) -> None:
        ...


class DirectFilesystem:
    method = "direct"

    def exists(self, path: Path) -> bool:
        return Path(path).exists()

    def is_writable(self, path: Path) -> bool:
        return os.access(Path(path), os.W_OK)

    def copy(self, source: Path, destination: Path, overwrite: bool = False, mode: int = FILE_MODE) -> bool:
        destination = Path(destination)
        if not overwrite and destination.exists():
            return False
        try:
            shutil.copyfile(Path(source), destination)
            os.chmod(destination, mode)
        except OSError as exc:
            logger.warning("direct copy failed src=%s dst=%s: %s", source, destination, exc)
            return False
        return True

    def delete(self, path: Path) -> bool:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("direct delete failed path=%s: %s", path, exc)
            return False
        return True

    def read_text_head(self, path: Path) -> Optional[str]:
        try:
            with Path(path).open("rb") as handle:
                return handle.read(HEADER_READ_BYTES).decode("utf-8", errors="replace")
        except OSError as exc:
            logger.debug("direct read failed path=%s: %s", path, exc)
            return None

    def close(self) -> None:
        return None


class FtpFilesystem:
    """FTP-backed filesystem; local absolute paths are mapped under ``remote_root``."""

    method = "ftpext"

    def __init__(self, ftp: ftplib.FTP, local_root: Path, remote_root: str = "/") -> None:
        self._ftp = ftp
        self._local_root = Path(local_root)
        self._remote_root = PurePosixPath(remote_root or "/")

    @classmethod
    def connect(
        cls,
        credentials: Credentials,
        local_root: Path,
        remote_root: str = "/",
        timeout_sec: int = 30,
    ) -> Optional["FtpFilesystem"]:
        ftp = ftplib.FTP(timeout=timeout_sec)
        try:
            ftp.connect(credentials.hostname, credentials.port or 21)
            ftp.login(credentials.username, credentials.password)
            ftp.set_pasv(True)
        except (OSError, ftplib.Error) as exc:
            logger.warning("ftp connect failed host=%s user=%s: %s", credentials.hostname, credentials.username, exc)
            try:
                ftp.close()
            except OSError:
                pass
            return None
        return cls(ftp, local_root=local_root, remote_root=remote_root)

    def _remote(self, path: Path) -> str:
        local = Path(path)
        try:
            relative = local.relative_to(self._local_root)
        except ValueError:
            return str(PurePosixPath(local.as_posix()))
        return str(self._remote_root.joinpath(*relative.parts))

    def exists(self, path: Path) -> bool:
        remote = self._remote(path)
        try:
            if self._ftp.nlst(remote):
                return True
        except ftplib.error_perm:
            pass
        except (OSError, ftplib.Error) as exc:
            logger.warning("ftp exists failed path=%s: %s", remote, exc)
            return False
        # NLST lists nothing for an empty directory.
        return self._is_dir(remote)

    def _is_dir(self, remote: str) -> bool:
        try:
            current = self._ftp.pwd()
            self._ftp.cwd(remote)
            self._ftp.cwd(current)
        except ftplib.error_perm:
            return False
        except (OSError, ftplib.Error) as exc:
            logger.warning("ftp cwd failed path=%s: %s", remote, exc)
            return False
        return True

    def is_writable(self, path: Path) -> bool:
        # FTP offers no portable permission query; failed writes surface on copy.
        return True

    def copy(self, source: Path, destination: Path, overwrite: bool = False, mode: int = FILE_MODE) -> bool:
        if not overwrite and self.exists(destination):
            return False
        remote = self._remote(destination)
        try:
            payload = Path(source).read_bytes()
        except OSError as exc:
            logger.warning("ftp copy could not read source=%s: %s", source, exc)
            return False
        try:
            self._ftp.storbinary(f"STOR {remote}", io.BytesIO(payload))
            self._ftp.sendcmd(f"SITE CHMOD {mode:o} {remote}")
        except (OSError, ftplib.Error) as exc:
            logger.warning("ftp copy failed dst=%s: %s", remote, exc)
            return False
        return True

    def delete(self, path: Path) -> bool:
        remote = self._remote(path)
        try:
            self._ftp.delete(remote)
        except (OSError, ftplib.Error) as exc:
            logger.warning("ftp delete failed path=%s: %s", remote, exc)
            return False
        return True

    def read_text_head(self, path: Path) -> Optional[str]:
        remote = self._remote(path)
        buffer = io.BytesIO()
        try:
            self._ftp.retrbinary(f"RETR {remote}", buffer.write)
        except (OSError, ftplib.Error) as exc:
            logger.debug("ftp read failed path=%s: %s", remote, exc)
            return None
        return buffer.getvalue()[:HEADER_READ_BYTES].decode("utf-8", errors="replace")

    def close(self) -> None:
        try:
            self._ftp.quit()
        except (OSError, ftplib.Error):
            self._ftp.close()
