"""
Role dashboards as JSON (the frontend renders them).

The guard already keeps students out of the admin roots and section admins
out of `/super-admin`; these handlers only assemble the data each dashboard
shows.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request

from identity_access.domain import STUDENT
from repo_wiring import get_repo
from teaching.services.tasks import MAX_PAGE_SIZE, TaskFanoutService, resolve_section_scope

from .responses import SERVICE_ERRORS, _json_private, _private_error, _require_principal, error_response

dashboards_router = APIRouter(tags=["Dashboards"])

RECENT_TASKS_LIMIT = 5


def _summarize_student_tasks(tasks: list[dict]) -> dict:
    completed = sum(1 for t in tasks if (t.get("user_task") or {}).get("status") == "completed")
    assigned = sum(1 for t in tasks if t.get("user_task"))
    return {"assigned": assigned, "completed": completed, "pending": assigned - completed}


@dashboards_router.get("/student")
async def student_dashboard(request: Request):
    """Own section's tasks, soonest due first, with the caller's completion state."""
    principal, error = _require_principal(request)
    if error:
        return error
    service = TaskFanoutService(get_repo())
    try:
        tasks = service.list_tasks(principal, sort_by="due_date", sort_order="asc", limit=MAX_PAGE_SIZE)
    except SERVICE_ERRORS as exc:
        return error_response(exc)
    body = {"principal": principal.as_public_dict(), "tasks": tasks}
    if principal.role == STUDENT:
        body["summary"] = _summarize_student_tasks(tasks)
    return _json_private(body)


@dashboards_router.get("/section-admin")
async def section_admin_dashboard(request: Request, section_id: Optional[str] = None):
    """Stats, per-student progress and latest tasks of one section."""
    principal, error = _require_principal(request)
    if error:
        return error
    service = TaskFanoutService(get_repo())
    try:
        scope = resolve_section_scope(principal, section_id or principal.section_id)
        if not scope:
            return _private_error({"error": "bad_request", "detail": "missing_section_id"}, status_code=400)
        stats = service.get_stats(scope)
        progress = service.get_user_progress(scope)
        recent = service.list_tasks(principal, section_id=scope, limit=RECENT_TASKS_LIMIT)
    except SERVICE_ERRORS as exc:
        return error_response(exc)
    return _json_private(
        {
            "principal": principal.as_public_dict(),
            "section_id": scope,
            "stats": stats,
            "progress": progress,
            "recent_tasks": recent,
        }
    )


@dashboards_router.get("/super-admin")
async def super_admin_dashboard(request: Request):
    """System-wide stats and the latest tasks across all sections."""
    principal, error = _require_principal(request)
    if error:
        return error
    if not principal.is_super_admin:
        return _private_error({"error": "forbidden"}, status_code=403)
    service = TaskFanoutService(get_repo())
    try:
        stats = service.get_stats(None)
        recent = service.list_tasks(principal, limit=RECENT_TASKS_LIMIT)
    except SERVICE_ERRORS as exc:
        return error_response(exc)
    return _json_private({"principal": principal.as_public_dict(), "stats": stats, "recent_tasks": recent})


@dashboards_router.get("/tasks/{task_id}")
async def task_page(request: Request, task_id: str):
    """Task detail page data (same visibility rules as the API)."""
    principal, error = _require_principal(request)
    if error:
        return error
    try:
        task = TaskFanoutService(get_repo()).get_task(task_id, principal)
    except SERVICE_ERRORS as exc:
        return error_response(exc)
    return _json_private({"principal": principal.as_public_dict(), "task": task})
