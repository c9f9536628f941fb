"""Users API: /api/me, section members and super-admin role updates."""

from __future__ import annotations

import pytest

from utils.seed import client, login, repo, seed_section

pytestmark = pytest.mark.anyio("asyncio")


@pytest.mark.anyio
async def test_me_returns_principal_and_dashboard():
    world = seed_section()
    async with client() as c:
        login(c, world["admin"])
        r = await c.get("/api/me")
    assert r.status_code == 200
    assert r.headers.get("Cache-Control") == "private, no-store"
    body = r.json()
    assert body["id"] == world["admin"]["id"]
    assert body["role"] == "section_admin"
    assert body["section_id"] == world["section"]["id"]
    assert body["dashboard"] == "/section-admin"


@pytest.mark.anyio
async def test_members_listing_is_scoped():
    world = seed_section()
    other = seed_section(name="CS-B", students=("Olga",))
    async with client() as c:
        login(c, world["admin"])
        own = await c.get(f"/api/sections/{world['section']['id']}/members")
        foreign = await c.get(f"/api/sections/{other['section']['id']}/members")
        login(c, world["students"][0])
        as_student = await c.get(f"/api/sections/{world['section']['id']}/members")
    assert own.status_code == 200
    names = [m["name"] for m in own.json()]
    assert names == sorted(names, key=str.lower)
    assert set(names) == {"Alice", "Bob", "Carol", "CS-A Admin"}
    assert foreign.status_code == 403
    assert as_student.status_code == 403


@pytest.mark.anyio
async def test_super_admin_updates_role():
    world = seed_section()
    root = repo().add_user(role="super_admin", name="Root")
    target = world["students"][0]
    async with client() as c:
        login(c, world["admin"])
        r_forbidden = await c.patch(f"/api/users/{target['id']}/role", json={"role": "section_admin"})
        login(c, root)
        r_invalid = await c.patch(f"/api/users/{target['id']}/role", json={"role": "teacher"})
        r_missing = await c.patch("/api/users/nobody/role", json={"role": "student"})
        r_ok = await c.patch(f"/api/users/{target['id']}/role", json={"role": "section_admin"})
    assert r_forbidden.status_code == 403
    assert r_invalid.status_code == 400
    assert r_invalid.json() == {"error": "bad_request", "detail": "invalid_role"}
    assert r_missing.status_code == 404
    assert r_ok.status_code == 200
    assert r_ok.json()["role"] == "section_admin"
    assert repo().get_user(target["id"])["role"] == "section_admin"
