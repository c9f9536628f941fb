"""
Shared web security helpers (FastAPI-agnostic utilities for routes).

Contains the CSRF same-origin check used by every write endpoint, and the
strictness policy that decides whether requests without Origin/Referer pass.
"""
from __future__ import annotations

import os
from urllib.parse import urlparse

from fastapi import Request
from fastapi.responses import JSONResponse

from config import is_prod_like


def _default_port(scheme: str) -> int:
    return 443 if scheme == "https" else 80


def _parse_origin(url: str) -> tuple[str, str, int]:
    p = urlparse(url)
    if not p.scheme or not p.hostname:
        raise ValueError("invalid_origin")
    scheme = p.scheme.lower()
    host = p.hostname.lower()
    port = p.port if p.port is not None else _default_port(scheme)
    return scheme, host, int(port)


def _server_origin(request: Request) -> tuple[str, str, int]:
    """Return (scheme, host, port) the client addressed.

    Only trust X-Forwarded-* when TASKHUB_TRUST_PROXY=true.
    """
    trust_proxy = (os.getenv("TASKHUB_TRUST_PROXY", "false") or "").lower() == "true"
    if trust_proxy:
        xf_proto = (request.headers.get("x-forwarded-proto") or request.url.scheme or "").split(",")[0].strip()
        xf_host = (request.headers.get("x-forwarded-host") or request.headers.get("host") or "").split(",")[0].strip()
        scheme = (xf_proto or request.url.scheme or "http").lower()
        if ":" in xf_host:
            host_only, port_str = xf_host.rsplit(":", 1)
            try:
                port = int(port_str)
            except ValueError:
                port = _default_port(scheme)
            host = host_only.lower()
        else:
            host = (xf_host or (request.url.hostname or "")).lower()
            port = int(request.url.port) if request.url.port else _default_port(scheme)
        xf_port = request.headers.get("x-forwarded-port") or ""
        if xf_port:
            try:
                port = int(xf_port.split(",")[0].strip())
            except ValueError:
                port = _default_port(scheme)
        return scheme, host, port

    scheme = (request.url.scheme or "http").lower()
    host = (request.url.hostname or "").lower()
    port = int(request.url.port) if request.url.port else _default_port(scheme)
    return scheme, host, port


def _is_same_origin(request: Request, *, strict: bool | None = None) -> bool:
    """Verify same-origin using Origin or Referer headers.

    Behavior:
    - If Origin is present, require exact scheme/host/port match with server.
    - Else if Referer is present, validate its origin similarly.
    - Else (no headers): allow outside prod so non-browser clients keep working;
      reject in prod-like environments (or when `strict=True`).
    """
    if strict is None:
        strict = is_prod_like()
    try:
        server = _server_origin(request)
        origin_val = request.headers.get("origin")
        if origin_val:
            return _parse_origin(origin_val) == server
        referer_val = request.headers.get("referer")
        if referer_val:
            return _parse_origin(referer_val) == server
    except ValueError:
        return False
    return not strict


def _csrf_guard(request: Request) -> JSONResponse | None:
    """Enforce same-origin for browser write requests.

    Behavior:
        - In production or when STRICT_CSRF=true, require that either Origin
          or Referer is present AND same-origin.
        - Otherwise requests without these headers pass (server-to-server and
          bearer-token clients).
    Missing or foreign headers in strict mode result in 403 with
    detail=csrf_violation.
    """
    strict_toggle = (os.getenv("STRICT_CSRF", "false") or "").lower() == "true"
    strict = is_prod_like() or strict_toggle
    if not _is_same_origin(request, strict=strict):
        return JSONResponse(
            {"error": "forbidden", "detail": "csrf_violation"},
            status_code=403,
            headers={"Cache-Control": "private, no-store"},
        )
    return None
