"""
Helpers for API tests: seed the in-memory repo and open authenticated clients.

Sessions are created directly in `main.SESSION_STORE` (no token exchange), the
same way a browser would hold the cookie after `/auth/session`.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
from httpx import ASGITransport

import main  # type: ignore
import repo_wiring  # type: ignore


def repo():
    return repo_wiring.get_repo()


def tomorrow_iso() -> str:
    return (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()


def seed_section(name: str = "CS-A", students: tuple[str, ...] = ("Alice", "Bob", "Carol")) -> dict:
    """Create a section with one section admin and the given students."""
    r = repo()
    section = r.add_section(name=name)
    admin = r.add_user(role="section_admin", section_id=section["id"], name=f"{name} Admin", email=f"admin@{name.lower()}.test")
    members = [
        r.add_user(role="student", section_id=section["id"], name=s, email=f"{s.lower()}@uni.test") for s in students
    ]
    return {"section": section, "admin": admin, "students": members}


def client(origin: str | None = "http://test") -> httpx.AsyncClient:
    headers = {"Origin": origin} if origin else {}
    return httpx.AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test", headers=headers)


def login(c: httpx.AsyncClient, user: dict) -> str:
    sess = main.SESSION_STORE.create(sub=user["id"])
    c.cookies.set(main.SESSION_COOKIE_NAME, sess.session_id)
    return sess.session_id
