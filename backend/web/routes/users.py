"""
Users API routes: current principal, section members, role administration.

Why:
    Admins need the member list of a section; super admins may promote or
    demote users. The role lookup happens per request in the middleware, so a
    role change applies on the affected user's very next request.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from pydantic import BaseModel

from identity_access.domain import dashboard_for
from repo_wiring import get_repo
from teaching.services.members import MembersService

from .responses import SERVICE_ERRORS, _json_private, _require_principal, error_response
from .security import _csrf_guard

users_router = APIRouter(tags=["Users"])  # explicit paths below
logger = logging.getLogger("taskhub.web")


class RoleUpdatePayload(BaseModel):
    role: object | None = None


def _get_members_service() -> MembersService:
    return MembersService(get_repo())


def _serialize_member(row: dict) -> dict:
    return {
        "id": str(row.get("id")),
        "name": row.get("name") or "",
        "email": row.get("email") or "",
        "role": row.get("role"),
        "section_id": row.get("section_id"),
    }


@users_router.get("/api/me")
async def get_me(request: Request):
    principal, error = _require_principal(request)
    if error:
        return error
    data = principal.as_public_dict()
    data["dashboard"] = dashboard_for(principal.role)
    return _json_private(data)


@users_router.get("/api/sections/{section_id}/members")
async def list_section_members(request: Request, section_id: str):
    """List members of a section (admins only, within their scope)."""
    principal, error = _require_principal(request)
    if error:
        return error
    try:
        rows = _get_members_service().list_section_members(section_id, principal)
    except SERVICE_ERRORS as exc:
        return error_response(exc)
    return _json_private([_serialize_member(r) for r in rows])


@users_router.patch("/api/users/{user_id}/role")
async def update_user_role(request: Request, user_id: str, payload: RoleUpdatePayload):
    """Change a user's role (super admins only).

    Validation:
        - `role` in student, section_admin, super_admin (legacy `user` = student)
    """
    principal, error = _require_principal(request)
    if error:
        return error
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    try:
        updated = _get_members_service().update_role(user_id, payload.role, principal)
    except SERVICE_ERRORS as exc:
        return error_response(exc)
    logger.info("Role updated for user %s", user_id)
    return _json_private(_serialize_member(updated))
