"""
Authentication-related FastAPI routes (router-only module).

Why:
    Login, signup and password reset happen on the auth provider's hosted
    pages. The browser then holds a Supabase access token; this router
    exchanges it for an opaque, HttpOnly session cookie so page requests do
    not have to carry the token. A freshly signed-up account has no profile
    row yet, so `/auth/profile` creates it (student role) from the same token.

Notes:
    - This module imports `main` inside functions to reuse the shared session
      store and cookie policy helpers (tests swap `main.SESSION_STORE`).
    - Paths live under `/auth/`, which the guard treats as public; each
      handler validates its own input.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from identity_access.domain import Principal, dashboard_for, principal_from_row
from identity_access.tokens import AccessTokenVerificationError, load_token_config, verify_access_token
from repo_wiring import get_repo
from teaching.errors import DependencyError
from teaching.services.profiles import DEFAULT_REGISTRATION_DOMAINS, ProfileService, parse_allowed_domains

from .responses import SERVICE_ERRORS, _json_private, _no_content, _private_error, error_response
from .security import _csrf_guard

auth_router = APIRouter(tags=["Auth"])  # explicit paths, no prefix
logger = logging.getLogger("taskhub.identity_access")

SESSION_TTL_SECONDS = 3600


class SessionExchangePayload(BaseModel):
    access_token: object | None = None


class ProfilePayload(BaseModel):
    access_token: object | None = None
    name: object | None = None
    student_id: object | None = None
    department_id: object | None = None
    batch_id: object | None = None
    section_id: object | None = None


def _main():
    import main  # type: ignore

    return main


def _verified_claims(request: Request, raw_token: object) -> tuple[Optional[dict], Optional[JSONResponse]]:
    """Verify the access token from the body or the Bearer header."""
    token = raw_token if isinstance(raw_token, str) else None
    token = token or _main()._bearer_token(request)
    if not token:
        return None, _private_error({"error": "bad_request", "detail": "missing_token"}, status_code=400)
    try:
        return verify_access_token(token=token, cfg=load_token_config()), None
    except AccessTokenVerificationError as exc:
        logger.warning("Access token rejected: %s", exc.code)
        return None, _private_error({"error": "unauthenticated", "detail": exc.code}, status_code=401)


def _start_session(principal: Principal, *, status_code: int = 200) -> JSONResponse:
    main = _main()
    sess = main.SESSION_STORE.create(sub=principal.id, ttl_seconds=SESSION_TTL_SECONDS)
    data = principal.as_public_dict()
    data["dashboard"] = dashboard_for(principal.role)
    resp = _json_private(data, status_code=status_code)
    max_age = SESSION_TTL_SECONDS if main.SETTINGS.environment == "prod" else None
    main._set_session_cookie(resp, sess.session_id, max_age=max_age)
    return resp


def _registration_domains() -> frozenset:
    return parse_allowed_domains(os.getenv("ALLOWED_REGISTRATION_DOMAINS", DEFAULT_REGISTRATION_DOMAINS))


@auth_router.post("/auth/session")
async def create_session(request: Request, payload: SessionExchangePayload | None = None):
    """Exchange a verified access token for a session cookie.

    Behavior:
        - 200 with the principal and its dashboard root; sets the cookie
        - 400 when no token is supplied
        - 401 when the token is invalid or the user has no profile
        - 503 when the users relation is unavailable
    """
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    claims, error = _verified_claims(request, payload.access_token if payload is not None else None)
    if error:
        return error
    try:
        principal = principal_from_row(get_repo().get_user(str(claims["sub"])))
    except DependencyError as exc:
        logger.warning("Profile lookup failed: %s", exc.__class__.__name__)
        return _private_error({"error": "service_unavailable"}, status_code=503)
    if principal is None:
        return _private_error({"error": "unauthenticated", "detail": "unknown_user"}, status_code=401)
    return _start_session(principal)


@auth_router.post("/auth/profile")
async def create_profile(request: Request, payload: ProfilePayload):
    """Create the caller's profile after signup and start a session.

    Behavior:
        - 201 with the new principal (student) and its dashboard; sets the cookie
        - 400 on invalid fields, a disallowed email domain or an existing profile
        - 401 when the token is missing a valid signature or has expired
        - 404 when the chosen section does not exist
    """
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    claims, error = _verified_claims(request, payload.access_token)
    if error:
        return error
    service = ProfileService(get_repo(), allowed_domains=_registration_domains())
    try:
        row = service.provision(
            user_id=str(claims["sub"]),
            email=claims.get("email"),
            name=payload.name,
            student_id=payload.student_id,
            department_id=payload.department_id,
            batch_id=payload.batch_id,
            section_id=payload.section_id,
        )
    except SERVICE_ERRORS as exc:
        return error_response(exc)
    logger.info("Profile provisioned for a new account")
    return _start_session(principal_from_row(row), status_code=201)


@auth_router.get("/auth/departments")
async def list_departments():
    """Departments for the signup form (public)."""
    try:
        return _json_private(ProfileService(get_repo()).list_departments())
    except SERVICE_ERRORS as exc:
        return error_response(exc)


@auth_router.get("/auth/departments/{department_id}/batches")
async def list_batches(department_id: str):
    try:
        return _json_private(ProfileService(get_repo()).list_batches(department_id))
    except SERVICE_ERRORS as exc:
        return error_response(exc)


@auth_router.get("/auth/batches/{batch_id}/sections")
async def list_sections(batch_id: str):
    try:
        return _json_private(ProfileService(get_repo()).list_sections(batch_id))
    except SERVICE_ERRORS as exc:
        return error_response(exc)


@auth_router.post("/auth/logout")
async def logout(request: Request):
    """Delete the server-side session (if any) and clear the cookie."""
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    main = _main()
    sid = request.cookies.get(main.SESSION_COOKIE_NAME)
    if sid:
        main.SESSION_STORE.delete(sid)
    resp = _no_content()
    main._clear_session_cookie(resp)
    return resp
