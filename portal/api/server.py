"""
Portal HTTP server.

Serves a directory of static files behind Microsoft sign-in. The `/api/microsoft`
routes run the OAuth2 authorization-code flow; everything else requires the
`static:read` grant carried by the session cookie.
"""

from __future__ import annotations

import html
import logging
import os
import stat
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from urllib.parse import quote

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import URL
from starlette.staticfiles import StaticFiles
from starlette.types import Receive, Scope, Send

from portal.auth.config import SessionConfig
from portal.auth.grants import PERMISSION_STATIC_READ

logger = logging.getLogger(__name__)

LOGIN_PATH = "/api/microsoft"


def _startup_load_config() -> None:
    """
    Load configuration once. A missing credential is fatal: the server does not start.
    """
    from portal.auth.config import load_session_config
    from portal.auth.microsoft import get_exchanger

    scfg = load_session_config()
    exchanger = get_exchanger()
    logger.info(
        "Portal ready: base_url=%s static_dir=%s verify_state=%s verify_id_token=%s",
        exchanger.cfg.base_url,
        scfg.static_dir,
        scfg.verify_state,
        exchanger.cfg.verify_id_token,
    )
    if not os.path.isdir(scfg.static_dir):
        logger.warning("Static directory %s does not exist; static requests will 404", scfg.static_dir)


@asynccontextmanager
async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
    _startup_load_config()
    yield


app = FastAPI(
    title="Portal",
    version="1.0.0",
    docs_url="/api/docs",
    openapi_url="/api/openapi.json",
    redoc_url=None,
    lifespan=_lifespan,
)


# ---- Microsoft sign-in ----
_OAUTH_COOKIE_PATH = LOGIN_PATH
_OAUTH_TTL_SECONDS = 10 * 60
_STATE_COOKIE = "portal_oauth_state"


def _oauth_cookie_kwargs(cfg: SessionConfig, *, value: str, max_age: int) -> dict:
    return {
        "key": _STATE_COOKIE,
        "value": value,
        "max_age": max_age,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": _OAUTH_COOKIE_PATH,
    }


def _is_public_path(path: str) -> bool:
    if path == "/healthz":
        return True
    # Sign-in redirect/callback must be reachable without a session.
    if path == LOGIN_PATH or path == f"{LOGIN_PATH}/callback":
        return True
    # Allow logout even if the cookie is already missing/invalid.
    if path == "/api/auth/logout":
        return True
    if path == "/api/docs" or path.startswith("/api/docs/") or path == "/api/openapi.json":
        return True
    return False


def _list_directory(directory: str) -> List[Tuple[str, bool]]:
    with os.scandir(directory) as it:
        entries = [(e.name, e.is_dir()) for e in it if not e.name.startswith(".")]
    # Directories first, then files, case-insensitive.
    return sorted(entries, key=lambda e: (not e[1], e[0].lower()))


def _render_listing(url_path: str, entries: List[Tuple[str, bool]]) -> str:
    title = html.escape(url_path)
    rows = []
    if url_path != "/":
        rows.append('<li><a href="../">../</a></li>')
    for name, is_dir in entries:
        label = f"{name}/" if is_dir else name
        rows.append(f'<li><a href="{quote(label)}">{html.escape(label)}</a></li>')
    return (
        "<!doctype html>\n"
        f'<html><head><meta charset="utf-8"><title>Index of {title}</title></head>'
        f"<body><h1>Index of {title}</h1><ul>{''.join(rows)}</ul></body></html>"
    )


class _ListingStaticFiles(StaticFiles):
    """StaticFiles that renders a file index for directories without an index.html."""

    async def get_response(self, path: str, scope: Scope) -> Response:
        if scope["method"] in ("GET", "HEAD"):
            full_path, stat_result = await run_in_threadpool(self.lookup_path, path)
            if (
                stat_result is not None
                and stat.S_ISDIR(stat_result.st_mode)
                and not os.path.isfile(os.path.join(full_path, "index.html"))
            ):
                url = URL(scope=scope)
                if not url.path.endswith("/"):
                    # Relative links in the index need the trailing slash.
                    return RedirectResponse(url=str(url.replace(path=url.path + "/")))
                entries = await run_in_threadpool(_list_directory, full_path)
                return HTMLResponse(_render_listing(url.path, entries))
        return await super().get_response(path, scope)


class _ConfiguredStaticFiles:
    """
    Static file app resolved against the configured directory on first use.

    The directory comes from configuration, which is only loaded at startup.
    """

    def __init__(self) -> None:
        self._apps: Dict[str, StaticFiles] = {}

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        from portal.auth.config import load_session_config

        directory = load_session_config().static_dir
        files = self._apps.get(directory)
        if files is None:
            files = _ListingStaticFiles(directory=directory, html=True, check_dir=False)
            self._apps[directory] = files
        await files(scope, receive, send)


@app.middleware("http")
async def gate_requests(request: Request, call_next):
    """Log requests and enforce the static:read grant on non-public paths."""
    start_time = time.time()
    logger.debug("%s %s", request.method, request.url.path)
    try:
        path = request.url.path or ""

        if request.method == "OPTIONS" or _is_public_path(path):
            response = await call_next(request)
            process_time = time.time() - start_time
            logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
            return response

        # Fail closed: anything not explicitly public requires the grant.
        from portal.auth.grants import extract_grants

        grants = extract_grants(request)
        if PERMISSION_STATIC_READ not in grants:
            logger.debug("%s %s - denied (no session grant)", request.method, request.url.path)
            if request.method in ("GET", "HEAD") and not path.startswith("/api/"):
                return RedirectResponse(url=LOGIN_PATH, status_code=302)
            # IMPORTANT: no `WWW-Authenticate`, browsers would show a basic-auth modal.
            return JSONResponse(status_code=401, content={"detail": "Unauthorized"})

        response = await call_next(request)
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
        raise


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@app.get(LOGIN_PATH)
async def microsoft_redirect():
    """Send the browser to the Microsoft authorization endpoint."""
    from portal.auth.config import load_session_config
    from portal.auth.microsoft import get_exchanger, with_state
    from portal.auth.util import random_token

    scfg = load_session_config()
    url = get_exchanger().authorization_url
    state = None
    if scfg.verify_state:
        state = random_token(32)
        url = with_state(url, state)

    resp = RedirectResponse(url=url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    if state is not None:
        resp.set_cookie(**_oauth_cookie_kwargs(scfg, value=state, max_age=_OAUTH_TTL_SECONDS))
    return resp


@app.get(f"{LOGIN_PATH}/callback")
def microsoft_callback(
    request: Request,
    code: str = Query(...),
    session_state: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
):
    """
    Handle the provider callback.

    Sync on purpose: the token exchange blocks (up to 10s) in the threadpool, not the event loop.
    Success: 301 to the portal with a session cookie. Any failure: bare 500.
    """
    from portal.auth.config import load_session_config
    from portal.auth.microsoft import get_exchanger
    from portal.auth.models import Authenticated, CallbackParameters
    from portal.auth.session import encode_session, session_cookie_kwargs

    scfg = load_session_config()
    expected_state = (request.cookies.get(_STATE_COOKIE) or "") if scfg.verify_state else None

    outcome = get_exchanger().handle_callback(
        CallbackParameters(code=code, state=state, session_state=session_state),
        expected_state=expected_state,
    )

    if isinstance(outcome, Authenticated):
        resp: Response = RedirectResponse(url=outcome.redirect_target, status_code=301)
        resp.headers["Cache-Control"] = "no-store"
        resp.set_cookie(**session_cookie_kwargs(scfg, encode_session(scfg, outcome.user)))
    else:
        logger.info("Microsoft sign-in failed (%s)", outcome.reason)
        resp = Response(status_code=500)

    if scfg.verify_state:
        resp.set_cookie(**_oauth_cookie_kwargs(scfg, value="", max_age=0))
    return resp


@app.post("/api/auth/logout")
async def auth_logout() -> JSONResponse:
    from portal.auth.config import load_session_config
    from portal.auth.session import clear_session_cookie_kwargs

    cfg = load_session_config()
    resp = JSONResponse(content={"ok": True})
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**clear_session_cookie_kwargs(cfg))
    return resp


@app.get("/api/auth/me")
async def auth_me(request: Request) -> Dict[str, Any]:
    user = getattr(request.state, "user", None)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return {
        "ok": True,
        "user": {
            "provider": user.provider,
            "subject": user.subject,
            "email": user.email,
            "name": user.name,
            "grants": list(user.grants),
        },
    }


# Static content last: the mount at "/" matches everything the routes above do not.
app.mount("/", _ConfiguredStaticFiles(), name="static")


def run(host: str = "0.0.0.0", port: int = 80) -> None:
    import uvicorn

    # Configure logging for the application
    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting portal on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
