"TaskHub"
from __future__ import annotations

import os
import logging
import sys as _sys
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from identity_access.domain import Principal, principal_from_row
from identity_access.guard import ALLOW, REDIRECT, authorize, is_public_path
from identity_access.stores import SessionStore
from identity_access.tokens import AccessTokenVerificationError, load_token_config, verify_access_token
from teaching.errors import DependencyError

try:
    from .auth_utils import SESSION_COOKIE_NAME, cookie_opts
except ImportError:
    from auth_utils import SESSION_COOKIE_NAME, cookie_opts

# Ensure imports as `main` and `backend.web.main` reference the same module instance.
if __name__ == "main":
    _sys.modules.setdefault("backend.web.main", _sys.modules[__name__])
elif __name__ == "backend.web.main":
    _sys.modules["main"] = _sys.modules[__name__]


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via TASKHUB_ENABLE_DOTENV (default true outside
      pytest).
    """
    if "pytest" in _sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("TASKHUB_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


try:
    from dotenv import load_dotenv
    if _should_load_dotenv():
        load_dotenv()
except ImportError:
    pass

# Minimal production safety checks (fail-fast on insecure config)
import config as _cfg  # noqa: E402

_cfg.ensure_secure_config_on_startup()

# --- App & Settings Setup -------------------------------------------------------


class AuthSettings:
    def __init__(self) -> None:
        self._env_override: str | None = None

    @property
    def environment(self) -> str:
        if self._env_override is not None:
            return self._env_override
        return _cfg.current_env()

    def override_environment(self, env: str | None) -> None:
        """Override environment for tests (e.g., "prod"), or reset with None."""
        self._env_override = env


logger = logging.getLogger("taskhub.web")
SETTINGS = AuthSettings()
SESSION_STORE = SessionStore()

app = FastAPI(title="TaskHub", description="University task management", version="0.1.0")

from repo_wiring import get_repo  # noqa: E402
from routes.auth import auth_router  # noqa: E402
from routes.dashboards import dashboards_router  # noqa: E402
from routes.tasks import tasks_router  # noqa: E402
from routes.users import users_router  # noqa: E402

# --- Auth Helpers & Middleware --------------------------------------------------


def _session_cookie_options() -> dict:
    return cookie_opts(SETTINGS.environment)


def _set_session_cookie(response: Response, value: str, *, max_age: int | None = None) -> None:
    opts = _session_cookie_options()
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=value,
        httponly=opts["httponly"],
        secure=opts["secure"],
        samesite=opts["samesite"],
        path="/",
        max_age=max_age,
    )


def _clear_session_cookie(response: Response) -> None:
    opts = _session_cookie_options()
    response.delete_cookie(
        key=SESSION_COOKIE_NAME,
        path="/",
        httponly=opts["httponly"],
        secure=opts["secure"],
        samesite=opts["samesite"],
    )


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _resolve_sub(request: Request) -> Optional[str]:
    """Return the user id behind the session cookie or bearer token, if any."""
    sid = request.cookies.get(SESSION_COOKIE_NAME)
    if sid:
        rec = SESSION_STORE.get(sid)
        if rec:
            return rec.sub
    token = _bearer_token(request)
    if token:
        try:
            claims = verify_access_token(token=token, cfg=load_token_config())
        except AccessTokenVerificationError as exc:
            logger.info("Access token rejected: %s", exc.code)
            return None
        return str(claims["sub"])
    return None


def _resolve_principal(request: Request) -> Optional[Principal]:
    """Look up the caller's current role; one repository read per request.

    Raises DependencyError when the users relation cannot be read.
    """
    sub = _resolve_sub(request)
    if not sub:
        return None
    principal = principal_from_row(get_repo().get_user(sub))
    if principal is None:
        logger.info("Authenticated caller has no profile row")
    return principal


def _is_api_path(path: str) -> bool:
    return path == "/api" or path.startswith("/api/")


@app.middleware("http")
async def auth_enforcement(request: Request, call_next):
    path = request.url.path
    request.state.principal = None
    if is_public_path(path):
        return await call_next(request)

    headers = {"Cache-Control": "private, no-store"}
    try:
        principal = _resolve_principal(request)
    except DependencyError as exc:
        logger.warning("Principal lookup failed: %s", exc.__class__.__name__)
        return JSONResponse({"error": "service_unavailable"}, status_code=503, headers=headers)

    if principal is None and _is_api_path(path):
        headers["Vary"] = "Origin"
        return JSONResponse({"error": "unauthenticated"}, status_code=401, headers=headers)

    decision = authorize(principal, path)
    if decision.kind == REDIRECT:
        return RedirectResponse(url=decision.location, status_code=302, headers=headers)
    if decision.kind != ALLOW:
        return JSONResponse({"error": "forbidden"}, status_code=403, headers=headers)

    # Expose the read-only principal for downstream handlers.
    request.state.principal = principal
    return await call_next(request)


# --- Security Headers Middleware ----------------------------------------------

@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    # JSON-only service: nothing may be framed or load sub-resources.
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if SETTINGS.environment == "prod":
        response.headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
    response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
    # HSTS: always on (dev = prod)
    response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


# --- Routers ---------------------------------------------------------------------

app.include_router(auth_router)
app.include_router(tasks_router)
app.include_router(users_router)
app.include_router(dashboards_router)


@app.get("/health")
async def health_check():
    # Security: include no-store to avoid caching any runtime status.
    return JSONResponse({"status": "healthy"}, headers={"Cache-Control": "private, no-store"})


@app.get("/")
async def home():
    return JSONResponse(
        {"service": "taskhub", "login": "/login"},
        headers={"Cache-Control": "private, no-store"},
    )
