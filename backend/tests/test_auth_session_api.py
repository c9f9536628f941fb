"""Auth routes: token exchange for a session cookie, signup profile provisioning, logout."""

from __future__ import annotations

import time
from uuid import uuid4

import pytest
from jose import jwt

import main  # type: ignore
from utils.seed import client, login, repo, seed_section

pytestmark = pytest.mark.anyio("asyncio")

SECRET = "session-test-secret-0123456789abcd"


def _token(sub: str, **extra) -> str:
    claims = {"sub": sub, "aud": "authenticated", "exp": int(time.time()) + 120}
    claims.update(extra)
    return jwt.encode(claims, SECRET, algorithm="HS256")


@pytest.fixture(autouse=True)
def _secret(monkeypatch):
    monkeypatch.setenv("SUPABASE_JWT_SECRET", SECRET)


@pytest.mark.anyio
async def test_exchange_sets_hardened_session_cookie():
    world = seed_section()
    student = world["students"][0]
    async with client() as c:
        r = await c.post("/auth/session", json={"access_token": _token(student["id"])})
    assert r.status_code == 200
    assert r.headers.get("Cache-Control") == "private, no-store"
    body = r.json()
    assert body["id"] == student["id"]
    assert body["dashboard"] == "/student"
    cookie = r.headers.get("set-cookie") or ""
    assert cookie.startswith(f"{main.SESSION_COOKIE_NAME}=")
    lowered = cookie.lower()
    assert "httponly" in lowered
    assert "secure" in lowered
    assert "samesite=lax" in lowered
    sid = cookie.split(";", 1)[0].split("=", 1)[1]
    rec = main.SESSION_STORE.get(sid)
    assert rec is not None and rec.sub == student["id"]


@pytest.mark.anyio
async def test_exchange_accepts_bearer_header():
    world = seed_section()
    async with client() as c:
        r = await c.post("/auth/session", headers={"Authorization": f"Bearer {_token(world['admin']['id'])}"})
    assert r.status_code == 200
    assert r.json()["dashboard"] == "/section-admin"


@pytest.mark.anyio
async def test_exchange_rejections():
    world = seed_section()
    async with client() as c:
        r_missing = await c.post("/auth/session", json={})
        r_invalid = await c.post("/auth/session", json={"access_token": "garbage"})
        r_expired = await c.post(
            "/auth/session", json={"access_token": _token(world["admin"]["id"], exp=int(time.time()) - 120)}
        )
        r_unknown = await c.post("/auth/session", json={"access_token": _token("no-such-user")})
    assert r_missing.status_code == 400
    assert r_missing.json() == {"error": "bad_request", "detail": "missing_token"}
    assert r_invalid.status_code == 401
    assert r_invalid.json()["detail"] == "invalid_access_token"
    assert r_expired.json()["detail"] == "expired_access_token"
    assert r_unknown.status_code == 401
    assert r_unknown.json()["detail"] == "unknown_user"


@pytest.mark.anyio
async def test_logout_deletes_session_and_clears_cookie():
    world = seed_section()
    async with client() as c:
        sid = login(c, world["students"][0])
        r = await c.post("/auth/logout")
        c.cookies.set(main.SESSION_COOKIE_NAME, sid)
        after = await c.get("/api/me")
    assert r.status_code == 204
    assert f"{main.SESSION_COOKIE_NAME}=" in (r.headers.get("set-cookie") or "")
    assert main.SESSION_STORE.get(sid) is None
    assert after.status_code == 401


@pytest.mark.anyio
async def test_logout_rejects_foreign_origin():
    world = seed_section()
    async with client(origin="http://evil.test") as c:
        sid = login(c, world["students"][0])
        r = await c.post("/auth/logout")
    assert r.status_code == 403
    assert r.json() == {"error": "forbidden", "detail": "csrf_violation"}
    assert main.SESSION_STORE.get(sid) is not None


# --- signup profile provisioning ------------------------------------------------------

def _directory():
    r = repo()
    dept = r.add_department(name="CSE")
    batch = r.add_batch(department_id=dept["id"], name="Batch 61")
    section = r.add_section(name="61_A", batch_id=batch["id"])
    return dept, batch, section


def _profile_body(dept, batch, section, **overrides) -> dict:
    body = {
        "name": "Nadia Rahman",
        "student_id": "21-12345-1",
        "department_id": dept["id"],
        "batch_id": batch["id"],
        "section_id": section["id"],
    }
    body.update(overrides)
    return body


@pytest.mark.anyio
async def test_directory_lookups_are_public():
    dept, batch, section = _directory()
    repo().add_section(name="61_B", batch_id=batch["id"])
    async with client() as c:
        r_depts = await c.get("/auth/departments")
        r_batches = await c.get(f"/auth/departments/{dept['id']}/batches")
        r_sections = await c.get(f"/auth/batches/{batch['id']}/sections")
        r_bad = await c.get("/auth/batches/abc/sections")
    assert r_depts.json() == [{"id": dept["id"], "name": "CSE"}]
    assert [b["name"] for b in r_batches.json()] == ["Batch 61"]
    assert [s["name"] for s in r_sections.json()] == ["61_A", "61_B"]
    assert r_bad.status_code == 400
    assert r_bad.json()["detail"] == "invalid_batch_id"


@pytest.mark.anyio
async def test_new_account_provisions_student_profile_and_session():
    dept, batch, section = _directory()
    sub = str(uuid4())
    async with client() as c:
        r_before = await c.post("/auth/session", json={"access_token": _token(sub, email="nadia@diu.edu.bd")})
        r = await c.post(
            "/auth/profile",
            json={"access_token": _token(sub, email="Nadia@diu.edu.bd"), **_profile_body(dept, batch, section)},
        )
    assert r_before.json()["detail"] == "unknown_user"
    assert r.status_code == 201
    body = r.json()
    assert body["role"] == "student"
    assert body["section_id"] == section["id"]
    assert body["email"] == "nadia@diu.edu.bd"
    assert body["dashboard"] == "/student"
    cookie = r.headers.get("set-cookie") or ""
    sid = cookie.split(";", 1)[0].split("=", 1)[1]
    assert main.SESSION_STORE.get(sid).sub == sub
    assert repo().get_user(sub)["student_id"] == "21-12345-1"


@pytest.mark.anyio
async def test_new_profiles_receive_future_task_fan_out():
    dept, batch, section = _directory()
    admin = repo().add_user(role="section_admin", section_id=section["id"], name="Admin")
    sub = str(uuid4())
    async with client() as c:
        r = await c.post(
            "/auth/profile",
            json={"access_token": _token(sub, email="nadia@diu.edu.bd"), **_profile_body(dept, batch, section)},
        )
        login(c, admin)
        created = await c.post("/api/tasks", json={"title": "Quiz 1"})
    assert r.status_code == 201
    assert created.json()["assigned"] == 1


@pytest.mark.anyio
@pytest.mark.parametrize(
    "email, overrides, detail",
    [
        ("nadia@gmail.com", {}, "invalid_email_domain"),
        (None, {}, "invalid_email"),
        ("nadia@diu.edu.bd", {"name": "N"}, "invalid_name"),
        ("nadia@diu.edu.bd", {"student_id": "2112345"}, "invalid_student_id"),
        ("nadia@diu.edu.bd", {"section_id": "abc"}, "invalid_section_id"),
        ("nadia@diu.edu.bd", {"batch_id": "00000000-0000-0000-0000-000000000000"}, "section_mismatch"),
    ],
)
async def test_profile_validation_maps_to_400(email, overrides, detail):
    dept, batch, section = _directory()
    sub = str(uuid4())
    extra = {"email": email} if email else {}
    async with client() as c:
        r = await c.post(
            "/auth/profile",
            json={"access_token": _token(sub, **extra), **_profile_body(dept, batch, section, **overrides)},
        )
    assert r.status_code == 400
    assert r.json() == {"error": "bad_request", "detail": detail}
    assert repo().get_user(sub) is None


@pytest.mark.anyio
async def test_profile_rejections_for_existing_profile_and_bad_tokens():
    dept, batch, section = _directory()
    world = seed_section()
    existing = world["students"][0]
    async with client() as c:
        r_exists = await c.post(
            "/auth/profile",
            json={
                "access_token": _token(existing["id"], email="alice@diu.edu.bd"),
                **_profile_body(dept, batch, section),
            },
        )
        r_invalid = await c.post("/auth/profile", json={"access_token": "garbage", **_profile_body(dept, batch, section)})
        r_unknown_section = await c.post(
            "/auth/profile",
            json={
                "access_token": _token(str(uuid4()), email="x@diu.edu.bd"),
                **_profile_body(dept, batch, section, section_id="00000000-0000-0000-0000-000000000000"),
            },
        )
    assert r_exists.status_code == 400
    assert r_exists.json()["detail"] == "profile_exists"
    assert repo().get_user(existing["id"])["role"] == "student"
    assert r_invalid.status_code == 401
    assert r_unknown_section.status_code == 404


@pytest.mark.anyio
async def test_registration_domains_are_configurable(monkeypatch):
    monkeypatch.setenv("ALLOWED_REGISTRATION_DOMAINS", "@uni.test, example.org")
    dept, batch, section = _directory()
    async with client() as c:
        r_ok = await c.post(
            "/auth/profile",
            json={"access_token": _token(str(uuid4()), email="a@example.org"), **_profile_body(dept, batch, section)},
        )
        r_old = await c.post(
            "/auth/profile",
            json={"access_token": _token(str(uuid4()), email="b@diu.edu.bd"), **_profile_body(dept, batch, section)},
        )
    assert r_ok.status_code == 201
    assert r_old.json()["detail"] == "invalid_email_domain"
