"""Unit tests for the route guard (pure function of principal and path).

Focus:
    - Public paths pass for everyone
    - Anonymous callers are sent to /login with a redirectTo hint
    - Role scoping of the three dashboard roots
    - Auth-only pages bounce signed-in callers to their dashboard
"""

from __future__ import annotations

import pytest

from identity_access.domain import Principal, dashboard_for, normalize_role, principal_from_row
from identity_access.guard import ALLOW, DENY, REDIRECT, authorize, login_redirect


def _p(role: str, section_id: str | None = "sec-1") -> Principal:
    return Principal(id=f"{role}-id", role=role, section_id=section_id)


STUDENT = _p("student")
SECTION_ADMIN = _p("section_admin")
SUPER_ADMIN = _p("super_admin", section_id=None)

ADMIN_PATHS = [
    "/section-admin",
    "/section-admin/",
    "/section-admin/tasks/new",
    "/section-admin/students",
    "/super-admin",
    "/super-admin/sections/abc",
]

APP_PATHS = [
    "/",
    "/health",
    "/student",
    "/student/tasks",
    "/tasks",
    "/tasks/123",
    "/section-admin/analytics",
    "/super-admin",
    "/super-admin/users",
    "/api/tasks",
    "/api/stats",
    "/something-else",
]


@pytest.mark.parametrize("path", ["/", "/health", "/favicon.ico", "/static/app.css", "/auth/session", "/auth/logout"])
@pytest.mark.parametrize("principal", [None, STUDENT, SECTION_ADMIN, SUPER_ADMIN])
def test_public_paths_are_allowed_for_everyone(principal, path):
    assert authorize(principal, path).kind == ALLOW


@pytest.mark.parametrize("path", ADMIN_PATHS)
def test_student_is_redirected_away_from_admin_roots(path):
    decision = authorize(STUDENT, path)
    assert decision.kind == REDIRECT
    assert decision.location == "/student"


@pytest.mark.parametrize("path", APP_PATHS)
def test_super_admin_is_allowed_everywhere(path):
    assert authorize(SUPER_ADMIN, path).allowed


@pytest.mark.parametrize("path", ["/student", "/student/tasks/1", "/tasks", "/tasks/abc", "/api/tasks"])
def test_student_may_use_own_pages(path):
    assert authorize(STUDENT, path).allowed


def test_section_admin_is_kept_out_of_super_admin():
    decision = authorize(SECTION_ADMIN, "/super-admin/sections")
    assert decision.kind == REDIRECT
    assert decision.location == "/section-admin"
    assert authorize(SECTION_ADMIN, "/section-admin/tasks").allowed
    assert authorize(SECTION_ADMIN, "/tasks/1").allowed


@pytest.mark.parametrize("path", ["/student", "/section-admin/x", "/super-admin", "/tasks/42"])
def test_anonymous_protected_path_redirects_to_login_with_hint(path):
    decision = authorize(None, path)
    assert decision.kind == REDIRECT
    assert decision.location == login_redirect(path)
    assert decision.location.startswith("/login?redirectTo=")


def test_login_redirect_encodes_the_original_path():
    assert login_redirect("/section-admin/tasks") == "/login?redirectTo=%2Fsection-admin%2Ftasks"


@pytest.mark.parametrize("path", ["/login", "/signup", "/reset-password"])
def test_auth_only_pages(path):
    assert authorize(None, path).allowed
    assert authorize(STUDENT, path).location == "/student"
    assert authorize(SECTION_ADMIN, path).location == "/section-admin"
    assert authorize(SUPER_ADMIN, path).location == "/super-admin"


def test_prefix_match_respects_segment_boundaries():
    # /students is not under /student, so it is not protected
    assert authorize(None, "/students").allowed
    assert authorize(STUDENT, "/section-administration").allowed


def test_unknown_role_is_denied_on_protected_paths():
    stranger = Principal(id="x", role="janitor")
    assert authorize(stranger, "/student").kind == DENY
    assert authorize(stranger, "/api/tasks").allowed


def test_api_paths_are_left_to_handlers():
    assert authorize(None, "/api/tasks").allowed


def test_legacy_user_role_reads_as_student():
    principal = principal_from_row({"id": "u1", "role": "user", "section_id": "s1"})
    assert principal is not None
    assert principal.role == "student"
    assert normalize_role("Section_Admin") == "section_admin"
    assert dashboard_for("user") == "/student"
    assert authorize(principal, "/super-admin").location == "/student"


def test_principal_from_missing_row_is_none():
    assert principal_from_row(None) is None
    assert principal_from_row({"role": "student"}) is None
