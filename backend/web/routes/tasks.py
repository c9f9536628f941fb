"""
Task API routes: creation with completion fan-out, completion, reads, stats.

Why:
    Thin adapter between HTTP and `TaskFanoutService`. The middleware resolves
    the principal (one role lookup per request); this module enforces CSRF on
    writes, forwards the raw payload to the service for validation and maps
    service errors to JSON.

Notes:
    - Payload fields are typed as `object` so that malformed values reach the
      service and come back as 400 with a stable `detail`, not as FastAPI 422.
    - Creating a task answers 201 even when the completion fan-out failed; the
      body then carries `warning: "fanout_failed"`.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from repo_wiring import get_repo
from teaching.services.tasks import TaskFanoutService, resolve_section_scope

from .responses import SERVICE_ERRORS, _json_private, _no_content, _require_principal, error_response
from .security import _csrf_guard

tasks_router = APIRouter(tags=["Tasks"])  # explicit paths below
logger = logging.getLogger("taskhub.web.tasks")


def _get_tasks_service() -> TaskFanoutService:
    return TaskFanoutService(get_repo())


# --- Request models ----------------------------------------------------------------

class TaskCreatePayload(BaseModel):
    title: object | None = None
    description: object | None = None
    due_date: object | None = None
    category: object | None = None
    files: object | None = None


class TaskUpdatePayload(BaseModel):
    title: object | None = None
    description: object | None = None
    due_date: object | None = None
    category: object | None = None
    files: object | None = None
    status: object | None = None


# --- Tasks -------------------------------------------------------------------------

@tasks_router.get("/api/tasks")
async def list_tasks(
    request: Request,
    section_id: Optional[str] = None,
    status: Optional[str] = None,
    category: Optional[str] = None,
    due_date_from: Optional[str] = None,
    due_date_to: Optional[str] = None,
    search: Optional[str] = None,
    created_by: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_order: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
):
    """List tasks visible to the caller.

    `status` and `category` accept comma-separated values. Students receive
    their own completion as `user_task` on each item.
    """
    principal, error = _require_principal(request)
    if error:
        return error
    try:
        items = _get_tasks_service().list_tasks(
            principal,
            section_id=section_id,
            status=status,
            category=category,
            due_date_from=due_date_from,
            due_date_to=due_date_to,
            search=search,
            created_by=created_by,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )
    except SERVICE_ERRORS as exc:
        return error_response(exc)
    return _json_private(items)


@tasks_router.post("/api/tasks")
async def create_task(request: Request, payload: TaskCreatePayload):
    """Create a task for the caller's section and assign it to its students.

    Behavior:
        - 201 with `{task, assigned}` (+ `warning` when fan-out degraded)
        - 400 on invalid fields, 403 for students, 404 for an unknown section
    """
    principal, error = _require_principal(request)
    if error:
        return error
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    try:
        result = _get_tasks_service().create_task(
            principal,
            title=payload.title,
            description=payload.description,
            due_date=payload.due_date,
            category=payload.category,
            files=payload.files,
        )
    except SERVICE_ERRORS as exc:
        return error_response(exc)
    body = {"task": result.task, "assigned": result.assigned}
    if result.warning:
        body["warning"] = result.warning
    return _json_private(body, status_code=201)


@tasks_router.get("/api/tasks/{task_id}")
async def get_task(request: Request, task_id: str):
    principal, error = _require_principal(request)
    if error:
        return error
    try:
        task = _get_tasks_service().get_task(task_id, principal)
    except SERVICE_ERRORS as exc:
        return error_response(exc)
    return _json_private(task)


@tasks_router.patch("/api/tasks/{task_id}")
async def update_task(request: Request, task_id: str, payload: TaskUpdatePayload):
    """Update task fields (admins; section admins only within their section)."""
    principal, error = _require_principal(request)
    if error:
        return error
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    changes = payload.model_dump(mode="python", exclude_unset=True)
    try:
        task = _get_tasks_service().update_task(task_id, principal, **changes)
    except SERVICE_ERRORS as exc:
        return error_response(exc)
    return _json_private(task)


@tasks_router.delete("/api/tasks/{task_id}")
async def delete_task(request: Request, task_id: str):
    principal, error = _require_principal(request)
    if error:
        return error
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    try:
        _get_tasks_service().delete_task(task_id, principal)
    except SERVICE_ERRORS as exc:
        return error_response(exc)
    return _no_content()


@tasks_router.post("/api/tasks/{task_id}/complete")
async def complete_task(request: Request, task_id: str):
    """Mark the caller's completion as completed (students; idempotent)."""
    principal, error = _require_principal(request)
    if error:
        return error
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    try:
        completion = _get_tasks_service().complete_task(task_id, principal)
    except SERVICE_ERRORS as exc:
        return error_response(exc)
    return _json_private(completion)


# --- Aggregates --------------------------------------------------------------------

@tasks_router.get("/api/stats")
async def get_stats(request: Request, section_id: Optional[str] = None):
    """Task counts by status; section admins are scoped to their own section."""
    principal, error = _require_principal(request)
    if error:
        return error
    try:
        scope = resolve_section_scope(principal, section_id)
        stats = _get_tasks_service().get_stats(scope)
    except SERVICE_ERRORS as exc:
        return error_response(exc)
    return _json_private(stats)


@tasks_router.get("/api/sections/{section_id}/progress")
async def get_section_progress(request: Request, section_id: str):
    principal, error = _require_principal(request)
    if error:
        return error
    try:
        scope = resolve_section_scope(principal, section_id)
        rows = _get_tasks_service().get_user_progress(scope)
    except SERVICE_ERRORS as exc:
        return error_response(exc)
    return _json_private(rows)
