import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from cache_dropin.config import Config
from cache_dropin.domain.dropin import (
    ASYNC_FLUSH_ACTION,
    Action,
    ActionRequest,
    CacheHandle,
    CredentialPrompt,
    FileOpResult,
    Principal,
    Status,
)
from cache_dropin.observability.structured_log import log_json
from cache_dropin.services.access_control import AccessController, UnauthorizedAction
from cache_dropin.services.audit_log import DropinAuditLog
from cache_dropin.services.dropin_installer import DropinInstaller
from cache_dropin.services.error_codes import GENERIC_REJECTION, user_message
from cache_dropin.services.filesystem_probe import FilesystemProbe
from cache_dropin.services.notices import LEVEL_ERROR, LEVEL_UPDATED, Notice, NoticeStore
from cache_dropin.services.scheduled_tasks import ScheduledTaskManager
from cache_dropin.services.status_resolver import StatusResolver
from cache_dropin.services.tokens import ActionTokenService, InvalidActionToken

logger = logging.getLogger(__name__)

TOKEN_PARAM = "_token"

ProbeFactory = Callable[[Mapping[str, str]], FilesystemProbe]
InstallerFactory = Callable[[FilesystemProbe], DropinInstaller]

# (success, failure) messages per action
_MESSAGES: Dict[Action, "tuple[str, str]"] = {
    Action.FLUSH: ("Object cache flushed.", "Object cache could not be flushed."),
    Action.ENABLE: ("Object cache enabled.", "Object cache could not be enabled."),
    Action.DISABLE: ("Object cache disabled.", "Object cache could not be disabled."),
    Action.UPDATE_DROPIN: (
        "Updated object cache drop-in and enabled Redis object cache.",
        "Object cache drop-in could not be updated.",
    ),
}


class DispatchState(str, Enum):
    RECEIVED = "received"
    TOKEN_VERIFIED = "token_verified"
    AUTHORIZATION_CHECKED = "authorization_checked"
    CREDENTIALS_ACQUIRED = "credentials_acquired"
    EXECUTED = "executed"
    REPORTED = "reported"
    REJECTED = "rejected"
    PENDING = "pending"


@dataclass(frozen=True)
class DispatchOutcome:
    state: DispatchState
    action: Optional[Action] = None
    redirect_url: str = ""
    message: str = ""
    result: Optional[FileOpResult] = None
    prompt: Optional[CredentialPrompt] = None


class ActionDispatcher:
    """Runs one inbound drop-in action from token check to redirect.

    Token and capability failures end in ``REJECTED`` with the same generic
    message. Missing filesystem credentials end in ``PENDING``; the follow-up
    request carrying credentials starts again from the top. Everything else
    ends in ``REPORTED`` with a queued notice and a redirect back to the
    settings page.
    """

    def __init__(
        self,
        config: Config,
        cache: CacheHandle,
        tokens: ActionTokenService,
        access: AccessController,
        notices: NoticeStore,
        scheduler: ScheduledTaskManager,
        resolver: StatusResolver,
        probe_factory: ProbeFactory,
        installer_factory: InstallerFactory,
        audit: Optional[DropinAuditLog] = None,
    ) -> None:
        self._config = config
        self._cache = cache
        self._tokens = tokens
        self._access = access
        self._notices = notices
        self._scheduler = scheduler
        self._resolver = resolver
        self._probe_factory = probe_factory
        self._installer_factory = installer_factory
        self._audit = audit or DropinAuditLog()

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def settings_url(self, updated: bool = False, base: str = "") -> str:
        url = base or self._config.settings_url
        if not updated:
            return url
        return _add_query(url, {"settings-updated": "1"})

    def action_link(self, action: str, principal: Optional[Principal]) -> str:
        request = ActionRequest.parse(action, "")
        if request is None:
            return ""
        token = self._tokens.mint(request.action.value, principal)
        return _add_query(self._config.settings_url, {"action": request.action.value, TOKEN_PARAM: token})

    def async_flush_token(self, principal: Optional[Principal]) -> str:
        return self._tokens.mint(ASYNC_FLUSH_ACTION, principal)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(
        self,
        request: ActionRequest,
        principal: Optional[Principal],
        submitted_credentials: Optional[Mapping[str, str]] = None,
    ) -> DispatchOutcome:
        action = request.action
        who = principal.principal_id if principal is not None else "anonymous"

        try:
            self._tokens.require(request.token, action.value, principal)
        except InvalidActionToken:
            return self._reject(action, who, "invalid_token")
        try:
            self._access.check(principal)
        except UnauthorizedAction:
            return self._reject(action, who, "unauthorized")

        if action == Action.FLUSH:
            flushed = self._safe_flush()
            return self._report(request, who, FileOpResult.ok() if flushed else None)

        link = self.action_link(action.value, principal)
        with self._probe_factory(submitted_credentials or {}) as probe:
            if not probe.initialize(link, silent=False):
                log_json(logger, "dispatch.pending", action=action.value, principal=who)
                self._audit.append(action.value, who, "pending", {})
                return DispatchOutcome(
                    state=DispatchState.PENDING,
                    action=action,
                    prompt=probe.pending.prompt if probe.pending is not None else None,
                )

            installer = self._installer_factory(probe)
            if action == Action.ENABLE:
                result = installer.install()
            elif action == Action.DISABLE:
                result = installer.remove()
            else:
                result = installer.update()

        if result.success and action in (Action.ENABLE, Action.DISABLE):
            self._scheduler.reconcile(
                dropin_active=self._resolver.resolve() in (Status.ACTIVE, Status.OUTDATED),
                is_administrative_context=True,
            )
        return self._report(request, who, result)

    def flush_async(self, token: str, principal: Optional[Principal]) -> str:
        """No-redirect flush; returns a short plaintext outcome."""
        who = principal.principal_id if principal is not None else "anonymous"
        if not self._tokens.verify(token, ASYNC_FLUSH_ACTION, principal) or not self._access.is_allowed(principal):
            self._audit.append(ASYNC_FLUSH_ACTION, who, "rejected", {})
            return GENERIC_REJECTION
        flushed = self._safe_flush()
        self._audit.append(ASYNC_FLUSH_ACTION, who, "success" if flushed else "failed", {})
        success, failure = _MESSAGES[Action.FLUSH]
        return success if flushed else failure

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reject(self, action: Action, who: str, reason: str) -> DispatchOutcome:
        log_json(logger, "dispatch.rejected", action=action.value, principal=who, reason=reason)
        self._audit.append(action.value, who, "rejected", {"reason": reason})
        return DispatchOutcome(state=DispatchState.REJECTED, action=action, message=GENERIC_REJECTION)

    def _report(self, request: ActionRequest, who: str, result: Optional[FileOpResult]) -> DispatchOutcome:
        action = request.action
        success_text, failure_text = _MESSAGES[action]
        ok = result is not None and result.success
        if ok:
            notice = Notice(code=action.value, message=success_text, level=LEVEL_UPDATED)
        else:
            detail = user_message(result.error_kind) if result is not None and result.error_kind else ""
            message = f"{failure_text} {detail}".strip()
            notice = Notice(code=action.value, message=message, level=LEVEL_ERROR)
        self._notices.push(who, [notice])
        details = {}
        if result is not None and result.error_kind is not None:
            details["error"] = result.error_kind.value
        self._audit.append(action.value, who, "success" if ok else "failed", details)
        log_json(logger, "dispatch.reported", action=action.value, principal=who, success=ok, **details)
        return DispatchOutcome(
            state=DispatchState.REPORTED,
            action=action,
            redirect_url=self.settings_url(updated=True, base=request.redirect_url),
            message=notice.message,
            result=result,
        )

    def _safe_flush(self) -> bool:
        try:
            return bool(self._cache.flush())
        except Exception:
            logger.exception("cache flush raised")
            return False


def _add_query(url: str, params: Mapping[str, str]) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))
