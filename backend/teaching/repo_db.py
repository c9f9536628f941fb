"""
Postgres-backed repository for tasks, completions and section membership.

Tables (Supabase `public` schema):
- users(id, email, name, role, student_id, department_id, batch_id, section_id, ...),
  role in ('user', 'section_admin', 'super_admin'); 'user' is a student
- departments(id, name), batches(id, name, department_id)
- sections(id, name, batch_id, ...)
- tasks(id, title, description, files jsonb, due_date, category, status,
        section_id, created_by, created_at, updated_at)
- user_tasks(id, user_id, task_id, status, completed_at, created_at),
  unique (user_id, task_id), task_id references tasks on delete cascade

Design:
- Minimal psycopg3 usage; each call opens a short-lived connection and runs in
  its own transaction.
- Returns plain dicts to keep the web adapter independent of ORM.
- Driver errors surface as `DependencyError` so services can apply their
  failure policy without knowing psycopg.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
import logging
import os
from uuid import UUID

from teaching.errors import DependencyError

try:
    import psycopg
    from psycopg.types.json import Json
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    Json = None  # type: ignore
    HAVE_PSYCOPG = False

logger = logging.getLogger("taskhub.teaching")


def _dsn() -> str:
    """Resolve the DSN for DB access."""
    candidates = [
        os.getenv("TASKS_DATABASE_URL"),
        os.getenv("DATABASE_URL"),
        os.getenv("SUPABASE_DB_URL"),
    ]
    for dsn in candidates:
        if dsn:
            return dsn
    raise RuntimeError("Database DSN unavailable for DBTaskRepo")


def _is_uuid(value: object) -> bool:
    try:
        UUID(str(value))
    except (ValueError, TypeError):
        return False
    return True


_ISO = """'YYYY-MM-DD"T"HH24:MI:SS.US"+00:00"'"""

_TASK_COLUMNS_SQL = f"""
    id::text,
    title,
    description,
    files,
    case
      when due_date is null then null
      else to_char(due_date at time zone 'utc', {_ISO})
    end as due_date_iso,
    category,
    status,
    section_id::text,
    created_by::text,
    to_char(created_at at time zone 'utc', {_ISO}),
    to_char(updated_at at time zone 'utc', {_ISO})
"""


def _task_row_to_dict(row: Tuple) -> Dict[str, Any]:
    return {
        "id": row[0],
        "title": row[1],
        "description": row[2],
        "files": list(row[3] or []),
        "due_date": row[4],
        "category": row[5],
        "status": row[6],
        "section_id": row[7],
        "created_by": row[8],
        "created_at": row[9],
        "updated_at": row[10],
    }


_COMPLETION_COLUMNS_SQL = f"""
    id::text,
    user_id::text,
    task_id::text,
    status,
    case
      when completed_at is null then null
      else to_char(completed_at at time zone 'utc', {_ISO})
    end,
    to_char(created_at at time zone 'utc', {_ISO})
"""


def _completion_row_to_dict(row: Tuple) -> Dict[str, Any]:
    return {
        "id": row[0],
        "user_id": row[1],
        "task_id": row[2],
        "status": row[3],
        "completed_at": row[4],
        "created_at": row[5],
    }


_USER_COLUMNS_SQL = "id::text, email, name, role, section_id::text"


def _user_row_to_dict(row: Tuple) -> Dict[str, Any]:
    role = row[3]
    return {
        "id": row[0],
        "email": row[1],
        "name": row[2],
        "role": "student" if role == "user" else role,
        "section_id": row[4],
    }


def _stored_role(role: str) -> str:
    # public.users.role only admits 'user' | 'section_admin' | 'super_admin'.
    return "user" if role == "student" else role


def _named_rows(rows: Sequence[Tuple], parent_key: Optional[str] = None) -> List[dict]:
    items: List[dict] = []
    for r in rows:
        item = {"id": r[0], "name": r[1]}
        if parent_key:
            item[parent_key] = r[2]
        items.append(item)
    return items


# Whitelisted sort columns; values are interpolated into SQL.
_SORT_COLUMNS = {
    "created_at": "created_at",
    "due_date": "due_date",
    "title": "title",
    "status": "status",
    "updated_at": "updated_at",
}

_UPDATABLE_COLUMNS = ("title", "description", "files", "due_date", "category", "status")


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class DBTaskRepo:
    def __init__(self, dsn: Optional[str] = None) -> None:
        """Initialize a Postgres-backed repository.

        Does not open a connection eagerly; connections are per-call.
        """
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBTaskRepo")
        self._dsn = dsn or _dsn()

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        try:
            with psycopg.connect(self._dsn) as conn:
                with conn.cursor() as cur:
                    yield cur
        except psycopg.Error as exc:
            logger.warning("Task repo query failed: %s", exc.__class__.__name__)
            raise DependencyError("database_error") from exc

    # --- Users & sections ----------------------------------------------------------
    def get_user(self, user_id: str) -> Optional[dict]:
        if not _is_uuid(user_id):
            return None
        with self._cursor() as cur:
            cur.execute(f"select {_USER_COLUMNS_SQL} from public.users where id = %s", (user_id,))
            row = cur.fetchone()
        return _user_row_to_dict(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[dict]:
        if not _is_uuid(user_id):
            return None
        with self._cursor() as cur:
            cur.execute(
                f"update public.users set role = %s where id = %s returning {_USER_COLUMNS_SQL}",
                (_stored_role(role), user_id),
            )
            row = cur.fetchone()
        return _user_row_to_dict(row) if row else None

    def create_user(
        self,
        *,
        user_id: str,
        email: str,
        name: str,
        role: str,
        student_id: Optional[str],
        department_id: str,
        batch_id: str,
        section_id: str,
    ) -> Optional[dict]:
        """Insert a profile row; returns None when the id already has one."""
        if not _is_uuid(user_id):
            return None
        with self._cursor() as cur:
            cur.execute(
                f"""
                insert into public.users
                       (id, email, name, role, student_id, department_id, batch_id, section_id)
                values (%s, %s, %s, %s, %s, %s, %s, %s)
                on conflict (id) do nothing
                returning {_USER_COLUMNS_SQL}
                """,
                (user_id, email, name, _stored_role(role), student_id, department_id, batch_id, section_id),
            )
            row = cur.fetchone()
        return _user_row_to_dict(row) if row else None

    # --- Directory lookups ---------------------------------------------------------
    def list_departments(self) -> List[dict]:
        with self._cursor() as cur:
            cur.execute("select id::text, name from public.departments order by name, id")
            rows = cur.fetchall()
        return _named_rows(rows)

    def list_batches(self, department_id: str) -> List[dict]:
        if not _is_uuid(department_id):
            return []
        with self._cursor() as cur:
            cur.execute(
                "select id::text, name, department_id::text from public.batches where department_id = %s order by name, id",
                (department_id,),
            )
            rows = cur.fetchall()
        return _named_rows(rows, "department_id")

    def list_sections(self, batch_id: str) -> List[dict]:
        if not _is_uuid(batch_id):
            return []
        with self._cursor() as cur:
            cur.execute(
                "select id::text, name, batch_id::text from public.sections where batch_id = %s order by name, id",
                (batch_id,),
            )
            rows = cur.fetchall()
        return _named_rows(rows, "batch_id")

    def get_section_lineage(self, section_id: str) -> Optional[dict]:
        """Return `{section_id, batch_id, department_id}` for a section, or None."""
        if not _is_uuid(section_id):
            return None
        with self._cursor() as cur:
            cur.execute(
                """
                select s.id::text, s.batch_id::text, b.department_id::text
                  from public.sections s
                  join public.batches b on b.id = s.batch_id
                 where s.id = %s
                """,
                (section_id,),
            )
            row = cur.fetchone()
        if not row:
            return None
        return {"section_id": row[0], "batch_id": row[1], "department_id": row[2]}

    def section_exists(self, section_id: str) -> bool:
        if not _is_uuid(section_id):
            return False
        with self._cursor() as cur:
            cur.execute("select 1 from public.sections where id = %s", (section_id,))
            return cur.fetchone() is not None

    def list_section_members(self, section_id: str) -> List[dict]:
        if not _is_uuid(section_id):
            return []
        with self._cursor() as cur:
            cur.execute(
                f"select {_USER_COLUMNS_SQL} from public.users where section_id = %s order by name, id",
                (section_id,),
            )
            rows = cur.fetchall()
        return [_user_row_to_dict(r) for r in rows]

    def list_section_students(self, section_id: str) -> List[dict]:
        if not _is_uuid(section_id):
            return []
        with self._cursor() as cur:
            cur.execute(
                f"""
                select {_USER_COLUMNS_SQL}
                  from public.users
                 where section_id = %s
                   and role = 'user'
                 order by name, id
                """,
                (section_id,),
            )
            rows = cur.fetchall()
        return [_user_row_to_dict(r) for r in rows]

    # --- Tasks ---------------------------------------------------------------------
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
        with self._cursor() as cur:
            cur.execute(
                f"""
                insert into public.tasks (title, description, files, due_date, category, section_id, created_by)
                values (%s, %s, %s, %s, %s, %s, %s)
                returning {_TASK_COLUMNS_SQL}
                """,
                (title, description, Json(files), due_date, category, section_id, created_by),
            )
            row = cur.fetchone()
        if not row:
            raise DependencyError("task_insert_failed")
        return _task_row_to_dict(row)

    def get_task(self, task_id: str) -> Optional[dict]:
        if not _is_uuid(task_id):
            return None
        with self._cursor() as cur:
            cur.execute(f"select {_TASK_COLUMNS_SQL} from public.tasks where id = %s", (task_id,))
            row = cur.fetchone()
        return _task_row_to_dict(row) if row else None

    def list_tasks(self, query) -> List[dict]:
        if (query.section_id and not _is_uuid(query.section_id)) or (
            query.created_by and not _is_uuid(query.created_by)
        ):
            return []
        clauses: List[str] = []
        params: List[Any] = []
        if query.section_id:
            clauses.append("section_id = %s")
            params.append(query.section_id)
        if query.statuses:
            clauses.append("status = any(%s)")
            params.append(list(query.statuses))
        if query.categories:
            clauses.append("category = any(%s)")
            params.append(list(query.categories))
        if query.created_by:
            clauses.append("created_by = %s")
            params.append(query.created_by)
        if query.due_date_from:
            clauses.append("due_date >= %s")
            params.append(query.due_date_from)
        if query.due_date_to:
            clauses.append("due_date <= %s")
            params.append(query.due_date_to)
        if query.search:
            pattern = f"%{_escape_like(query.search)}%"
            clauses.append("(title ilike %s or coalesce(description, '') ilike %s)")
            params.extend([pattern, pattern])
        where = ("where " + " and ".join(clauses)) if clauses else ""
        column = _SORT_COLUMNS[query.sort_by]
        direction = "asc" if query.sort_order == "asc" else "desc"
        params.extend([query.limit, query.offset])
        with self._cursor() as cur:
            cur.execute(
                f"""
                select {_TASK_COLUMNS_SQL}
                  from public.tasks
                  {where}
                 order by {column} {direction} nulls last, id
                 limit %s offset %s
                """,
                tuple(params),
            )
            rows = cur.fetchall()
        return [_task_row_to_dict(r) for r in rows]

    def update_task(self, task_id: str, changes: Dict[str, Any]) -> Optional[dict]:
        if not _is_uuid(task_id):
            return None
        sets: List[str] = []
        params: List[Any] = []
        for column in _UPDATABLE_COLUMNS:
            if column not in changes:
                continue
            value = changes[column]
            sets.append(f"{column} = %s")
            params.append(Json(value) if column == "files" else value)
        if not sets:
            return self.get_task(task_id)
        sets.append("updated_at = now()")
        params.append(task_id)
        with self._cursor() as cur:
            cur.execute(
                f"update public.tasks set {', '.join(sets)} where id = %s returning {_TASK_COLUMNS_SQL}",
                tuple(params),
            )
            row = cur.fetchone()
        return _task_row_to_dict(row) if row else None

    def delete_task(self, task_id: str) -> bool:
        if not _is_uuid(task_id):
            return False
        with self._cursor() as cur:
            # user_tasks rows go with the task (FK on delete cascade)
            cur.execute("delete from public.tasks where id = %s returning id", (task_id,))
            return cur.fetchone() is not None

    # --- Completions ---------------------------------------------------------------
    def insert_completions(self, task_id: str, user_ids: Sequence[str]) -> int:
        """Insert one pending completion per user in a single statement."""
        if not user_ids:
            return 0
        with self._cursor() as cur:
            cur.execute(
                """
                insert into public.user_tasks (user_id, task_id, status)
                select uid, %s::uuid, 'pending'
                  from unnest(%s::uuid[]) as uid
                on conflict (user_id, task_id) do nothing
                returning user_id::text
                """,
                (task_id, list(user_ids)),
            )
            rows = cur.fetchall()
        return len(rows)

    def get_completion(self, task_id: str, user_id: str) -> Optional[dict]:
        if not (_is_uuid(task_id) and _is_uuid(user_id)):
            return None
        with self._cursor() as cur:
            cur.execute(
                f"select {_COMPLETION_COLUMNS_SQL} from public.user_tasks where task_id = %s and user_id = %s",
                (task_id, user_id),
            )
            row = cur.fetchone()
        return _completion_row_to_dict(row) if row else None

    def complete_task(self, task_id: str, user_id: str, completed_at: datetime) -> dict:
        with self._cursor() as cur:
            cur.execute(
                f"""
                insert into public.user_tasks as ut (user_id, task_id, status, completed_at)
                values (%s, %s, 'completed', %s)
                on conflict (user_id, task_id) do update
                   set status = 'completed',
                       completed_at = coalesce(ut.completed_at, excluded.completed_at)
                returning {_COMPLETION_COLUMNS_SQL}
                """,
                (user_id, task_id, completed_at),
            )
            row = cur.fetchone()
        if not row:
            raise DependencyError("completion_upsert_failed")
        return _completion_row_to_dict(row)

    def get_completions_for_user(self, user_id: str, task_ids: Sequence[str]) -> Dict[str, dict]:
        ids = [t for t in task_ids if _is_uuid(t)]
        if not ids or not _is_uuid(user_id):
            return {}
        with self._cursor() as cur:
            cur.execute(
                f"select {_COMPLETION_COLUMNS_SQL} from public.user_tasks where user_id = %s and task_id = any(%s::uuid[])",
                (user_id, ids),
            )
            rows = cur.fetchall()
        items = [_completion_row_to_dict(r) for r in rows]
        return {item["task_id"]: item for item in items}

    def count_completions(self, task_id: str) -> Tuple[int, int]:
        if not _is_uuid(task_id):
            return 0, 0
        with self._cursor() as cur:
            cur.execute(
                """
                select count(*) filter (where status = 'completed'), count(*)
                  from public.user_tasks
                 where task_id = %s
                """,
                (task_id,),
            )
            row = cur.fetchone()
        if not row:
            return 0, 0
        return int(row[0] or 0), int(row[1] or 0)

    # --- Aggregates ----------------------------------------------------------------
    def count_tasks_by_status(self, section_id: Optional[str]) -> Dict[str, int]:
        if section_id and not _is_uuid(section_id):
            return {}
        with self._cursor() as cur:
            if section_id:
                cur.execute(
                    "select status, count(*) from public.tasks where section_id = %s group by status",
                    (section_id,),
                )
            else:
                cur.execute("select status, count(*) from public.tasks group by status")
            rows = cur.fetchall()
        return {str(r[0]): int(r[1]) for r in rows}

    def list_section_completions(self, section_id: str) -> List[dict]:
        if not _is_uuid(section_id):
            return []
        with self._cursor() as cur:
            cur.execute(
                f"""
                select ut.user_id::text,
                       ut.task_id::text,
                       ut.status,
                       case
                         when ut.completed_at is null then null
                         else to_char(ut.completed_at at time zone 'utc', {_ISO})
                       end,
                       t.section_id::text
                  from public.user_tasks ut
                  join public.users u on u.id = ut.user_id
                  join public.tasks t on t.id = ut.task_id
                 where u.section_id = %s
                """,
                (section_id,),
            )
            rows = cur.fetchall()
        return [
            {
                "user_id": r[0],
                "task_id": r[1],
                "status": r[2],
                "completed_at": r[3],
                "task_section_id": r[4],
            }
            for r in rows
        ]
