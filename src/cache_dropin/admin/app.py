from pathlib import Path
from typing import Dict, Optional

from fastapi import FastAPI, Form, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel

from cache_dropin import __version__
from cache_dropin.app_container import DropinContainer
from cache_dropin.domain.dropin import ACTIONS, ActionRequest, Principal, Status
from cache_dropin.services.action_dispatcher import TOKEN_PARAM, DispatchOutcome, DispatchState
from cache_dropin.services.error_codes import GENERIC_REJECTION

_ADMIN_COOKIE = "cd_admin_token"


class ScheduleResponse(BaseModel):
    hook_name: str
    next_run_at: Optional[str] = None


class StatusResponse(BaseModel):
    status: str
    label: str
    connected: Optional[bool] = None
    installed_version: str = ""
    bundled_version: str = ""
    schedule: Optional[ScheduleResponse] = None


def create_app(container: DropinContainer) -> FastAPI:
    base_dir = Path(__file__).resolve().parent
    templates = Jinja2Templates(directory=str(base_dir / "templates"))
    app = FastAPI(title="Cache Drop-in Manager", version=__version__)
    dispatcher = container.dispatcher

    def _resolve_token(request: Request) -> str:
        bearer = (request.headers.get("authorization") or "").strip()
        if bearer.lower().startswith("bearer "):
            return bearer[7:].strip()
        header = (request.headers.get("x-api-key") or "").strip()
        if header:
            return header
        return (request.cookies.get(_ADMIN_COOKIE) or "").strip()

    def _principal(request: Request) -> Optional[Principal]:
        token = _resolve_token(request)
        if not token:
            return None
        return container.principals.get(token)

    def _rejected() -> PlainTextResponse:
        return PlainTextResponse(GENERIC_REJECTION, status_code=403)

    def _action_links(principal: Optional[Principal]) -> Dict[str, str]:
        return {name: dispatcher.action_link(name, principal) for name in ACTIONS}

    def _outcome_response(outcome: DispatchOutcome) -> object:
        if outcome.state == DispatchState.REJECTED:
            return _rejected()
        return RedirectResponse(url=outcome.redirect_url, status_code=303)

    def _run_action(
        request: Request,
        action: str,
        token: str,
        submitted: Optional[Dict[str, str]] = None,
    ) -> object:
        parsed = ActionRequest.parse(action, token, redirect_url=container.config.settings_url)
        if parsed is None:
            return _rejected()
        outcome = dispatcher.dispatch(parsed, _principal(request), submitted_credentials=submitted)
        if outcome.state == DispatchState.PENDING:
            # The credential form posts back the same token.
            return templates.TemplateResponse(
                request,
                "credentials.html",
                {
                    "prompt": outcome.prompt,
                    "action": parsed.action.value,
                    "token": parsed.token,
                    "token_param": TOKEN_PARAM,
                },
            )
        return _outcome_response(outcome)

    @app.get("/health")
    async def health():
        return {"ok": True, "version": __version__}

    @app.get("/login", response_class=HTMLResponse)
    async def login_page(request: Request, next: str = "/settings"):
        safe_next = next if next.startswith("/") and not next.startswith("//") else "/settings"
        return templates.TemplateResponse(request, "login.html", {"next": safe_next, "error": ""})

    @app.post("/login")
    async def login_submit(request: Request, token: str = Form(""), next: str = Form("/settings")):
        safe_next = next if next.startswith("/") and not next.startswith("//") and next != "/login" else "/settings"
        if token and token in container.principals:
            resp = RedirectResponse(url=safe_next, status_code=303)
            resp.set_cookie(_ADMIN_COOKIE, token, httponly=True, samesite="lax", max_age=60 * 60 * 12)
            return resp
        return templates.TemplateResponse(
            request,
            "login.html",
            {"next": safe_next, "error": "Unknown access token."},
            status_code=401,
        )

    @app.get("/logout")
    async def logout():
        resp = RedirectResponse(url="/login", status_code=303)
        resp.delete_cookie(_ADMIN_COOKIE)
        return resp

    @app.get("/settings")
    async def settings_page(request: Request, action: str = ""):
        principal = _principal(request)
        if action:
            token = request.query_params.get(TOKEN_PARAM, "")
            return _run_action(request, action, token)
        if principal is None:
            return RedirectResponse(url="/login?next=/settings", status_code=303)
        if not container.access.is_allowed(principal):
            return _rejected()

        container.on_admin_request()
        links = _action_links(principal)
        resolver = container.resolver
        notices = container.notices.pop(principal.principal_id)
        banner = resolver.admin_notice(update_link=links["update-dropin"], settings_link=container.config.settings_url)
        installed = resolver.installed_record() if resolver.dropin_exists() else None
        bundled = resolver.bundled_record()
        return templates.TemplateResponse(
            request,
            "settings.html",
            {
                "status": resolver.resolve().value,
                "label": resolver.describe(),
                "notices": notices,
                "banner": banner,
                "links": links,
                "installed": installed,
                "bundled": bundled,
                "flush_token": dispatcher.async_flush_token(principal),
                "active": resolver.resolve() == Status.ACTIVE,
            },
        )

    @app.post("/settings")
    async def settings_action(
        request: Request,
        action: str = Form(""),
        token: str = Form("", alias=TOKEN_PARAM),
        hostname: str = Form(""),
        username: str = Form(""),
        password: str = Form(""),
        connection_type: str = Form(""),
    ):
        submitted = {
            "hostname": hostname,
            "username": username,
            "password": password,
            "connection_type": connection_type,
        }
        return _run_action(request, action, token, {k: v for k, v in submitted.items() if v})

    @app.post("/ajax/flush", response_class=PlainTextResponse)
    async def ajax_flush(request: Request, token: str = Form("")):
        return PlainTextResponse(dispatcher.flush_async(token, _principal(request)))

    @app.get("/api/status", response_model=StatusResponse)
    async def api_status(request: Request):
        principal = _principal(request)
        if not container.access.is_allowed(principal):
            return _rejected()
        resolver = container.resolver
        installed = resolver.installed_record() if resolver.dropin_exists() else None
        bundled = resolver.bundled_record()
        entry = container.scheduler.next_scheduled()
        schedule = None
        if entry is not None:
            schedule = ScheduleResponse(
                hook_name=entry.hook_name,
                next_run_at=entry.next_run_at.isoformat() if entry.next_run_at else None,
            )
        return StatusResponse(
            status=resolver.resolve().value,
            label=resolver.describe(),
            connected=resolver.connection_status(),
            installed_version=installed.version if installed else "",
            bundled_version=bundled.version if bundled else "",
            schedule=schedule,
        )

    return app