"""Task service layer: creation with completion fan-out, completion, stats.

Why:
    Encapsulates task-related use cases (create/complete/list/update/delete and
    the dashboard aggregates) so that web adapters remain framework-free and we
    can unit-test validation and role rules independently of FastAPI.

Rules:
    - Role and input checks run before any write; a rejected call leaves no
      partial state behind.
    - Creating a task persists the task first, then inserts one pending
      completion per student of the section in one bulk call. A failure of that
      second write is logged and reported as `TaskCreation.warning`; the task
      stays.
    - Completing is a one-way, idempotent upsert.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple
from urllib.parse import urlparse
from uuid import UUID

from identity_access.domain import ALLOWED_ROLES, STUDENT, SUPER_ADMIN, Principal

from teaching.errors import DependencyError, NotFoundError, ValidationError

logger = logging.getLogger("taskhub.teaching")

TASK_STATUSES = ("pending", "in_progress", "completed", "overdue")
COMPLETION_STATUSES = ("pending", "completed")

TASK_CATEGORIES = (
    "assignment",
    "project",
    "exam",
    "presentation",
    "lab",
    "quiz",
    "homework",
    "research",
    "general",
)
DEFAULT_CATEGORY = "general"

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 2000
MAX_SEARCH_LENGTH = 100
MAX_FILES = 5
MAX_FILE_SIZE = 10 * 1024 * 1024
ALLOWED_FILE_TYPES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "text/plain",
    }
)

SORT_FIELDS = ("created_at", "due_date", "title", "status", "updated_at")
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


class TasksRepoProtocol(Protocol):
    def section_exists(self, section_id: str) -> bool:
        ...

    def list_section_students(self, section_id: str) -> List[dict]:
        ...

    def create_task(
        self,
        *,
        section_id: str,
        created_by: str,
        title: str,
        description: Optional[str],
        due_date: Optional[datetime],
        category: str,
        files: List[dict],
    ) -> dict:
        ...

    def get_task(self, task_id: str) -> Optional[dict]:
        ...

    def list_tasks(self, query: "TaskQuery") -> List[dict]:
        ...

    def update_task(self, task_id: str, changes: Dict[str, Any]) -> Optional[dict]:
        ...

    def delete_task(self, task_id: str) -> bool:
        ...

    def insert_completions(self, task_id: str, user_ids: Sequence[str]) -> int:
        ...

    def get_completion(self, task_id: str, user_id: str) -> Optional[dict]:
        ...

    def complete_task(self, task_id: str, user_id: str, completed_at: datetime) -> dict:
        ...

    def get_completions_for_user(self, user_id: str, task_ids: Sequence[str]) -> Dict[str, dict]:
        ...

    def count_completions(self, task_id: str) -> Tuple[int, int]:
        ...

    def count_tasks_by_status(self, section_id: Optional[str]) -> Dict[str, int]:
        ...

    def list_section_completions(self, section_id: str) -> List[dict]:
        ...


_UNSET = object()


@dataclass(frozen=True)
class TaskQuery:
    section_id: Optional[str] = None
    statuses: Tuple[str, ...] = ()
    categories: Tuple[str, ...] = ()
    due_date_from: Optional[datetime] = None
    due_date_to: Optional[datetime] = None
    search: Optional[str] = None
    created_by: Optional[str] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"
    limit: int = DEFAULT_PAGE_SIZE
    offset: int = 0


@dataclass
class TaskCreation:
    task: dict
    assigned: int = 0
    warning: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _rate(done: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(done / total * 100, 2)


# --- Input normalisation ----------------------------------------------------------

def _normalize_title(value: object) -> str:
    if value is None or not isinstance(value, str):
        raise ValidationError("invalid_title")
    trimmed = value.strip()
    if not trimmed or len(trimmed) > MAX_TITLE_LENGTH:
        raise ValidationError("invalid_title")
    return trimmed


def _normalize_description(value: object) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("invalid_description")
    trimmed = value.strip()
    if len(trimmed) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError("invalid_description")
    return trimmed or None


def _parse_datetime(value: object, code: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError as exc:
            raise ValidationError(code) from exc
    else:
        raise ValidationError(code)
    if parsed.tzinfo is None:
        raise ValidationError(code)
    return parsed.astimezone(timezone.utc)


def _normalize_due_date(value: object, now: datetime) -> Optional[datetime]:
    due = _parse_datetime(value, "invalid_due_date")
    if due is not None and due <= now:
        raise ValidationError("invalid_due_date")
    return due


def _normalize_category(value: object) -> str:
    if value is None or value == "":
        return DEFAULT_CATEGORY
    if not isinstance(value, str) or value.strip().lower() not in TASK_CATEGORIES:
        raise ValidationError("invalid_category")
    return value.strip().lower()


def _normalize_files(value: object) -> List[dict]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ValidationError("invalid_files")
    if len(value) > MAX_FILES:
        raise ValidationError("too_many_files")
    normalized: List[dict] = []
    for item in value:
        if not isinstance(item, dict):
            raise ValidationError("invalid_files")
        name = item.get("name")
        url = item.get("url")
        size = item.get("size")
        mime = item.get("type")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("invalid_files")
        if not isinstance(url, str) or urlparse(url).scheme not in ("http", "https") or not urlparse(url).netloc:
            raise ValidationError("invalid_files")
        if isinstance(size, bool) or not isinstance(size, (int, float)) or size <= 0:
            raise ValidationError("invalid_files")
        if size > MAX_FILE_SIZE:
            raise ValidationError("file_too_large")
        if mime not in ALLOWED_FILE_TYPES:
            raise ValidationError("unsupported_file_type")
        normalized.append({"name": name.strip(), "url": url, "size": size, "type": mime})
    return normalized


def _normalize_status(value: object) -> str:
    if not isinstance(value, str) or value not in TASK_STATUSES:
        raise ValidationError("invalid_status")
    return value


def _normalize_choice_list(value: object, allowed: Sequence[str], code: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [part for part in value.split(",") if part.strip()]
    if not isinstance(value, Sequence):
        raise ValidationError(code)
    items: List[str] = []
    for item in value:
        if not isinstance(item, str) or item.strip() not in allowed:
            raise ValidationError(code)
        items.append(item.strip())
    return tuple(dict.fromkeys(items))


def _normalize_search(value: object) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str) or len(value.strip()) > MAX_SEARCH_LENGTH:
        raise ValidationError("invalid_search")
    return value.strip() or None


def is_uuid_like(value: object) -> bool:
    """UUID format check for ids that end up in uuid columns."""
    try:
        UUID(str(value))
    except (ValueError, TypeError):
        return False
    return True


def _normalize_id(value: Optional[str], code: str) -> Optional[str]:
    if not value:
        return None
    if not is_uuid_like(value):
        raise ValidationError(code)
    return value


def _require_known_role(principal: Principal) -> None:
    if principal is None or principal.role not in ALLOWED_ROLES:
        raise PermissionError("forbidden")


def _normalize_page(page: object, limit: object) -> Tuple[int, int]:
    try:
        page_i = int(page) if page is not None else 1
        limit_i = int(limit) if limit is not None else DEFAULT_PAGE_SIZE
    except (TypeError, ValueError) as exc:
        raise ValidationError("invalid_pagination") from exc
    if page_i < 1 or limit_i < 1 or limit_i > MAX_PAGE_SIZE:
        raise ValidationError("invalid_pagination")
    return limit_i, (page_i - 1) * limit_i


def resolve_section_scope(principal: Principal, requested: Optional[str] = None) -> Optional[str]:
    """Return the section a principal may aggregate over (None = all sections).

    super_admin: the requested section or all; section_admin: always their own
    section; students may not read aggregates.
    """
    if principal.role == SUPER_ADMIN:
        return _normalize_id(requested, "invalid_section_id")
    if not principal.is_admin:
        raise PermissionError("forbidden")
    if not principal.section_id:
        raise PermissionError("no_section")
    if requested and requested != principal.section_id:
        raise PermissionError("forbidden")
    return principal.section_id


@dataclass
class TaskFanoutService:
    """Use cases for section tasks and their per-student completions."""

    repo: TasksRepoProtocol
    clock: Callable[[], datetime] = field(default=_utcnow)

    # --- Writes ---------------------------------------------------------------
    def create_task(
        self,
        creator: Principal,
        *,
        title: object,
        description: object = None,
        due_date: object = None,
        category: object = None,
        files: object = None,
    ) -> TaskCreation:
        if creator is None or not creator.is_admin:
            raise PermissionError("forbidden")
        clean_title = _normalize_title(title)
        clean_description = _normalize_description(description)
        due = _normalize_due_date(due_date, self.clock())
        clean_category = _normalize_category(category)
        clean_files = _normalize_files(files)
        section_id = creator.section_id
        if not section_id:
            raise ValidationError("invalid_section")
        if not self.repo.section_exists(section_id):
            raise NotFoundError("section_not_found")

        task = self.repo.create_task(
            section_id=section_id,
            created_by=creator.id,
            title=clean_title,
            description=clean_description,
            due_date=due,
            category=clean_category,
            files=clean_files,
        )
        result = TaskCreation(task=task)
        try:
            students = self.repo.list_section_students(section_id)
            user_ids = [str(s["id"]) for s in students]
            if user_ids:
                result.assigned = self.repo.insert_completions(str(task["id"]), user_ids)
        except DependencyError as exc:
            logger.warning(
                "Completion fan-out failed for task %s: %s", task.get("id"), exc.__class__.__name__
            )
            result.warning = "fanout_failed"
        return result

    def complete_task(self, task_id: str, principal: Principal) -> dict:
        if principal is None or principal.role != STUDENT:
            raise PermissionError("forbidden")
        task = self.repo.get_task(task_id)
        if not task:
            raise NotFoundError("task_not_found")
        existing = self.repo.get_completion(task_id, principal.id)
        if existing and existing.get("status") == "completed":
            return existing
        if existing is None and str(task.get("section_id")) != (principal.section_id or ""):
            raise PermissionError("not_assigned")
        return self.repo.complete_task(task_id, principal.id, self.clock())

    def update_task(self, task_id: str, principal: Principal, **changes: object) -> dict:
        task = self._get_managed_task(task_id, principal)
        repo_changes: Dict[str, Any] = {}
        if changes.get("title", _UNSET) is not _UNSET:
            repo_changes["title"] = _normalize_title(changes["title"])
        if changes.get("description", _UNSET) is not _UNSET:
            repo_changes["description"] = _normalize_description(changes["description"])
        if changes.get("due_date", _UNSET) is not _UNSET:
            repo_changes["due_date"] = _normalize_due_date(changes["due_date"], self.clock())
        if changes.get("category", _UNSET) is not _UNSET:
            repo_changes["category"] = _normalize_category(changes["category"])
        if changes.get("files", _UNSET) is not _UNSET:
            repo_changes["files"] = _normalize_files(changes["files"])
        if changes.get("status", _UNSET) is not _UNSET:
            repo_changes["status"] = _normalize_status(changes["status"])
        if not repo_changes:
            return task
        updated = self.repo.update_task(task_id, repo_changes)
        if updated is None:
            raise NotFoundError("task_not_found")
        return updated

    def delete_task(self, task_id: str, principal: Principal) -> None:
        self._get_managed_task(task_id, principal)
        if not self.repo.delete_task(task_id):
            raise NotFoundError("task_not_found")

    # --- Reads ------------------------------------------------------------------
    def get_task(self, task_id: str, principal: Principal) -> dict:
        _require_known_role(principal)
        task = self.repo.get_task(task_id)
        if not task:
            raise NotFoundError("task_not_found")
        completion = self.repo.get_completion(task_id, principal.id)
        if not self._can_see(task, principal, has_completion=completion is not None):
            raise NotFoundError("task_not_found")
        data = dict(task)
        if completion is not None:
            data["user_task"] = completion
        if principal.is_admin:
            completed, total = self.repo.count_completions(task_id)
            data["completion_count"] = completed
            data["total_users"] = total
        return data

    def list_tasks(
        self,
        principal: Principal,
        *,
        section_id: Optional[str] = None,
        status: object = None,
        category: object = None,
        due_date_from: object = None,
        due_date_to: object = None,
        search: object = None,
        created_by: Optional[str] = None,
        sort_by: object = None,
        sort_order: object = None,
        page: object = None,
        limit: object = None,
    ) -> List[dict]:
        _require_known_role(principal)
        if principal.role == SUPER_ADMIN:
            scope = _normalize_id(section_id, "invalid_section_id")
        else:
            if not principal.section_id:
                return []
            if section_id and section_id != principal.section_id:
                raise PermissionError("forbidden")
            scope = principal.section_id
        sort_field = sort_by or "created_at"
        if sort_field not in SORT_FIELDS:
            raise ValidationError("invalid_sort_by")
        order = sort_order or "desc"
        if order not in ("asc", "desc"):
            raise ValidationError("invalid_sort_order")
        page_limit, offset = _normalize_page(page, limit)
        query = TaskQuery(
            section_id=scope,
            statuses=_normalize_choice_list(status, TASK_STATUSES, "invalid_status"),
            categories=_normalize_choice_list(category, TASK_CATEGORIES, "invalid_category"),
            due_date_from=_parse_datetime(due_date_from, "invalid_due_date_from"),
            due_date_to=_parse_datetime(due_date_to, "invalid_due_date_to"),
            search=_normalize_search(search),
            created_by=_normalize_id(created_by, "invalid_created_by"),
            sort_by=sort_field,
            sort_order=order,
            limit=page_limit,
            offset=offset,
        )
        tasks = self.repo.list_tasks(query)
        if principal.role != STUDENT or not tasks:
            return tasks
        completions = self.repo.get_completions_for_user(principal.id, [str(t["id"]) for t in tasks])
        items: List[dict] = []
        for task in tasks:
            item = dict(task)
            item["user_task"] = completions.get(str(task["id"]))
            items.append(item)
        return items

    def get_stats(self, section_id: Optional[str] = None) -> dict:
        if section_id:
            _normalize_id(section_id, "invalid_section_id")
            if not self.repo.section_exists(section_id):
                raise NotFoundError("section_not_found")
        counts = self.repo.count_tasks_by_status(section_id)
        stats = {status: int(counts.get(status, 0)) for status in TASK_STATUSES}
        total = sum(int(v) for v in counts.values())
        stats["total"] = total
        stats["completion_rate"] = _rate(stats["completed"], total)
        return {
            "total": stats["total"],
            "pending": stats["pending"],
            "in_progress": stats["in_progress"],
            "completed": stats["completed"],
            "overdue": stats["overdue"],
            "completion_rate": stats["completion_rate"],
        }

    def get_user_progress(self, section_id: str) -> List[dict]:
        if not self.repo.section_exists(section_id):
            raise NotFoundError("section_not_found")
        students = self.repo.list_section_students(section_id)
        by_user: Dict[str, List[dict]] = {}
        for row in self.repo.list_section_completions(section_id):
            # Only completions of tasks in this section count (stale rows from
            # a previous section are excluded).
            if str(row.get("task_section_id")) != str(section_id):
                continue
            by_user.setdefault(str(row["user_id"]), []).append(row)
        progress: List[dict] = []
        for student in students:
            uid = str(student["id"])
            rows = by_user.get(uid, [])
            done = [r for r in rows if r.get("status") == "completed"]
            stamps = [r["completed_at"] for r in done if r.get("completed_at")]
            progress.append(
                {
                    "user_id": uid,
                    "user_name": student.get("name") or "",
                    "user_email": student.get("email") or "",
                    "completed_tasks": len(done),
                    "total_tasks": len(rows),
                    "completion_rate": _rate(len(done), len(rows)),
                    "last_activity": max(stamps) if stamps else None,
                }
            )
        progress.sort(key=lambda p: (p["user_name"].lower(), p["user_id"]))
        return progress

    # --- Helpers ----------------------------------------------------------------
    def _can_see(self, task: dict, principal: Principal, *, has_completion: bool) -> bool:
        if principal.role == SUPER_ADMIN:
            return True
        same_section = bool(principal.section_id) and str(task.get("section_id")) == principal.section_id
        if principal.role == STUDENT:
            return same_section or has_completion
        return same_section

    def _get_managed_task(self, task_id: str, principal: Principal) -> dict:
        if principal is None or not principal.is_admin:
            raise PermissionError("forbidden")
        task = self.repo.get_task(task_id)
        if not task:
            raise NotFoundError("task_not_found")
        if principal.role != SUPER_ADMIN and str(task.get("section_id")) != (principal.section_id or ""):
            raise NotFoundError("task_not_found")
        return task
