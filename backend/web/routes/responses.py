"""
JSON response helpers shared by the API routers.

Task, progress and membership data is user- and role-scoped, so every response
is sent with `Cache-Control: private, no-store`. Service errors carry a stable
code as their message; `error_response` maps the error kind to a status and
returns `{"error": kind, "detail": code}`.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from identity_access.domain import Principal
from teaching.errors import DependencyError, NotFoundError, ValidationError, error_code

logger = logging.getLogger("taskhub.web")

SERVICE_ERRORS = (ValidationError, PermissionError, NotFoundError, DependencyError)


def _json_private(payload, *, status_code: int = 200, vary_origin: bool = False) -> JSONResponse:
    headers = {"Cache-Control": "private, no-store"}
    if vary_origin:
        headers["Vary"] = "Origin"
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


def _private_error(payload: dict, *, status_code: int, vary_origin: bool = False) -> JSONResponse:
    """Return error JSON with private, no-store cache headers."""
    return _json_private(payload, status_code=status_code, vary_origin=vary_origin)


def _no_content() -> Response:
    return Response(status_code=204, headers={"Cache-Control": "private, no-store"})


def error_response(exc: Exception) -> JSONResponse:
    """Map a service error to its HTTP status and JSON body."""
    if isinstance(exc, ValidationError):
        return _private_error({"error": "bad_request", "detail": error_code(exc, "invalid_input")}, status_code=400)
    if isinstance(exc, PermissionError):
        return _private_error({"error": "forbidden", "detail": error_code(exc, "forbidden")}, status_code=403)
    if isinstance(exc, NotFoundError):
        return _private_error({"error": "not_found", "detail": error_code(exc, "not_found")}, status_code=404)
    if isinstance(exc, DependencyError):
        logger.warning("Dependency failure: %s", exc.__class__.__name__)
        return _private_error(
            {"error": "service_unavailable", "detail": error_code(exc, "dependency_error")}, status_code=503
        )
    raise exc


def _require_principal(request: Request) -> tuple[Optional[Principal], Optional[JSONResponse]]:
    """Return (principal, error_response); 401 when the caller is anonymous."""
    principal = getattr(request.state, "principal", None)
    if principal is None:
        return None, _private_error({"error": "unauthenticated"}, status_code=401)
    return principal, None
