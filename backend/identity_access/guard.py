"""
Route guard for role-scoped pages.

Why:
    The web middleware must decide, before any page handler runs, whether the
    caller may see a path. Keeping that decision a pure function of
    (principal, path) lets us test it exhaustively without FastAPI and keeps
    the single role lookup per request in the adapter.

Behavior (in order):
    1. Public paths are always allowed.
    2. Auth-only pages (login/signup/reset) are allowed for anonymous callers;
       signed-in callers are sent to their dashboard root.
    3. Protected paths need a principal; otherwise redirect to /login with a
       `redirectTo` hint.
    4. Role scoping on protected paths: super_admin sees everything,
       section_admin is kept out of /super-admin, students are kept out of
       both admin roots. Unknown roles are denied.
    5. Everything else (e.g. /api/*) is allowed here; API handlers enforce
       their own role checks.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

from .domain import (
    ALLOWED_ROLES,
    DASHBOARD_ROOTS,
    SECTION_ADMIN,
    STUDENT,
    SUPER_ADMIN,
    Principal,
    dashboard_for,
)

LOGIN_PATH = "/login"

PUBLIC_PATHS = frozenset({"/", "/health", "/favicon.ico"})
PUBLIC_PREFIXES = ("/static/", "/auth/")
AUTH_ONLY_PATHS = frozenset({"/login", "/signup", "/reset-password"})
PROTECTED_ROOTS = ("/student", "/section-admin", "/super-admin", "/tasks")

ALLOW = "allow"
REDIRECT = "redirect"
DENY = "deny"


@dataclass(frozen=True)
class Decision:
    kind: str
    location: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.kind == ALLOW


def Allow() -> Decision:
    return Decision(ALLOW)


def RedirectTo(location: str) -> Decision:
    return Decision(REDIRECT, location)


def Deny() -> Decision:
    return Decision(DENY)


def _under(path: str, root: str) -> bool:
    """Prefix match on path segments: `/student/x` is under `/student`, `/students` is not."""
    return path == root or path.startswith(root + "/")


def is_public_path(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def is_auth_only_path(path: str) -> bool:
    return path in AUTH_ONLY_PATHS


def is_protected_path(path: str) -> bool:
    return any(_under(path, root) for root in PROTECTED_ROOTS)


def login_redirect(path: str) -> str:
    return f"{LOGIN_PATH}?{urlencode({'redirectTo': path})}"


def authorize(principal: Optional[Principal], path: str) -> Decision:
    """Decide whether `principal` may access `path`."""
    path = path or "/"
    if is_public_path(path):
        return Allow()

    if is_auth_only_path(path):
        if principal is None:
            return Allow()
        return RedirectTo(dashboard_for(principal.role))

    if not is_protected_path(path):
        return Allow()

    if principal is None:
        return RedirectTo(login_redirect(path))

    role = principal.role
    if role not in ALLOWED_ROLES:
        return Deny()
    if role == SUPER_ADMIN:
        return Allow()
    if role == SECTION_ADMIN:
        if _under(path, DASHBOARD_ROOTS[SUPER_ADMIN]):
            return RedirectTo(DASHBOARD_ROOTS[SECTION_ADMIN])
        return Allow()
    # student
    if _under(path, DASHBOARD_ROOTS[SECTION_ADMIN]) or _under(path, DASHBOARD_ROOTS[SUPER_ADMIN]):
        return RedirectTo(DASHBOARD_ROOTS[STUDENT])
    return Allow()


__all__ = [
    "ALLOW",
    "Allow",
    "AUTH_ONLY_PATHS",
    "DENY",
    "Decision",
    "Deny",
    "PROTECTED_ROOTS",
    "PUBLIC_PATHS",
    "REDIRECT",
    "RedirectTo",
    "authorize",
    "is_auth_only_path",
    "is_protected_path",
    "is_public_path",
    "login_redirect",
]
