from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Protocol


class Status(str, Enum):
    DISABLED = "disabled"
    NOT_INSTALLED = "not_installed"
    OUTDATED = "outdated"
    INVALID = "invalid"
    ACTIVE = "active"


class ErrorKind(str, Enum):
    MODIFICATIONS_DISALLOWED = "modifications_disallowed"
    CREDENTIALS_UNAVAILABLE = "credentials_unavailable"
    DIRECTORY_NOT_WRITABLE = "directory_not_writable"
    SOURCE_MISSING = "source_missing"
    COPY_FAILED = "copy_failed"
    VERIFICATION_MISMATCH = "verification_mismatch"
    CLEANUP_FAILED = "cleanup_failed"
    TARGET_NOT_WRITABLE = "target_not_writable"
    DELETE_FAILED = "delete_failed"
    INVALID_TOKEN = "invalid_token"
    UNAUTHORIZED = "unauthorized"


class Action(str, Enum):
    ENABLE = "enable-cache"
    DISABLE = "disable-cache"
    FLUSH = "flush-cache"
    UPDATE_DROPIN = "update-dropin"


ACTIONS = tuple(a.value for a in Action)
ASYNC_FLUSH_ACTION = "flush-cache-async"


@dataclass(frozen=True)
class DropinRecord:
    uri: str
    version: str


@dataclass(frozen=True)
class FileOpResult:
    success: bool
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def ok(cls) -> "FileOpResult":
        return cls(success=True)

    @classmethod
    def failed(cls, kind: ErrorKind) -> "FileOpResult":
        return cls(success=False, error_kind=kind)


@dataclass(frozen=True)
class ActionRequest:
    action: Action
    token: str
    redirect_url: str = ""

    @classmethod
    def parse(cls, action: str, token: str, redirect_url: str = "") -> Optional["ActionRequest"]:
        name = (action or "").strip().lower()
        if name not in ACTIONS:
            return None
        return cls(action=Action(name), token=(token or "").strip(), redirect_url=redirect_url)


@dataclass(frozen=True)
class Credentials:
    method: str
    hostname: str = ""
    username: str = ""
    password: str = field(default="", repr=False)
    port: int = 21

    @property
    def needs_connection(self) -> bool:
        return self.method != "direct"


@dataclass(frozen=True)
class CredentialPrompt:
    form_url: str
    method: str
    hostname: str = ""
    username: str = ""
    error: str = ""


@dataclass(frozen=True)
class CredentialsPending:
    prompt: Optional[CredentialPrompt] = None


@dataclass(frozen=True)
class ScheduleEntry:
    hook_name: str
    next_run_at: Optional[datetime]
    interval_sec: int = 3600


@dataclass(frozen=True)
class Principal:
    principal_id: str
    capabilities: frozenset = frozenset()
    session: str = ""

    def can(self, capability: str) -> bool:
        return capability in self.capabilities


class CacheHandle(Protocol):
    def flush(self) -> bool:
        ...

    def status(self) -> Optional[bool]:
        ...

    def discard_metrics(self, max_age_sec: int) -> int:
        ...


@dataclass(frozen=True)
class DropinAuditEvent:
    ts: datetime
    action: str
    principal_id: str
    outcome: str
    details: Dict[str, str]
