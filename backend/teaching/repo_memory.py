"""
In-memory repository for tasks, sections, users and completions.

Why:
    Tests and offline development must run without Postgres. This repo mirrors
    the relational semantics of `DBTaskRepo` (unique (user, task) completions,
    cascade on task delete, section-scoped queries) with plain dicts.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from identity_access.domain import STUDENT, normalize_role


def _iso(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).isoformat()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class InMemoryTaskRepo:
    def __init__(self) -> None:
        self.departments: Dict[str, dict] = {}
        self.batches: Dict[str, dict] = {}
        self.sections: Dict[str, dict] = {}
        self.users: Dict[str, dict] = {}
        self.tasks: Dict[str, dict] = {}
        # completions[(user_id, task_id)] = row
        self.completions: Dict[Tuple[str, str], dict] = {}

    # --- Seeding helpers (tests / dev) ------------------------------------------
    def add_department(self, *, name: str = "") -> dict:
        row = {"id": str(uuid4()), "name": name}
        self.departments[row["id"]] = row
        return dict(row)

    def add_batch(self, *, department_id: str, name: str = "") -> dict:
        row = {"id": str(uuid4()), "name": name, "department_id": department_id}
        self.batches[row["id"]] = row
        return dict(row)

    def add_section(self, *, name: str = "", batch_id: Optional[str] = None, section_id: Optional[str] = None) -> dict:
        sid = section_id or str(uuid4())
        row = {"id": sid, "name": name, "batch_id": batch_id or str(uuid4()), "created_at": _now_iso()}
        self.sections[sid] = row
        return dict(row)

    def add_user(
        self,
        *,
        role: str,
        section_id: Optional[str] = None,
        name: str = "",
        email: str = "",
        user_id: Optional[str] = None,
    ) -> dict:
        uid = user_id or str(uuid4())
        row = {
            "id": uid,
            "role": normalize_role(role),
            "section_id": section_id,
            "name": name,
            "email": email,
            "created_at": _now_iso(),
        }
        self.users[uid] = row
        return dict(row)

    # --- Users & sections ----------------------------------------------------------
    def get_user(self, user_id: str) -> Optional[dict]:
        row = self.users.get(user_id)
        return dict(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[dict]:
        row = self.users.get(user_id)
        if not row:
            return None
        row["role"] = role
        return dict(row)

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
        if user_id in self.users:
            return None
        row = self.add_user(role=role, section_id=section_id, name=name, email=email, user_id=user_id)
        self.users[user_id].update(student_id=student_id, department_id=department_id, batch_id=batch_id)
        return row

    # --- Directory lookups ---------------------------------------------------------
    def list_departments(self) -> List[dict]:
        return sorted((dict(d) for d in self.departments.values()), key=lambda d: (d["name"], d["id"]))

    def list_batches(self, department_id: str) -> List[dict]:
        items = [dict(b) for b in self.batches.values() if b["department_id"] == department_id]
        return sorted(items, key=lambda b: (b["name"], b["id"]))

    def list_sections(self, batch_id: str) -> List[dict]:
        items = [
            {"id": s["id"], "name": s["name"], "batch_id": s["batch_id"]}
            for s in self.sections.values()
            if s["batch_id"] == batch_id
        ]
        return sorted(items, key=lambda s: (s["name"], s["id"]))

    def get_section_lineage(self, section_id: str) -> Optional[dict]:
        section = self.sections.get(section_id)
        batch = self.batches.get(section["batch_id"]) if section else None
        if not batch:
            return None
        return {"section_id": section_id, "batch_id": batch["id"], "department_id": batch["department_id"]}

    def section_exists(self, section_id: str) -> bool:
        return section_id in self.sections

    def list_section_members(self, section_id: str) -> List[dict]:
        items = [dict(u) for u in self.users.values() if u.get("section_id") == section_id]
        items.sort(key=lambda u: (u.get("name") or "").lower())
        return items

    def list_section_students(self, section_id: str) -> List[dict]:
        return [u for u in self.list_section_members(section_id) if u.get("role") == STUDENT]

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
        now = _now_iso()
        tid = str(uuid4())
        row = {
            "id": tid,
            "title": title,
            "description": description,
            "files": list(files),
            "due_date": _iso(due_date),
            "category": category,
            "status": "pending",
            "section_id": section_id,
            "created_by": created_by,
            "created_at": now,
            "updated_at": now,
        }
        self.tasks[tid] = row
        return dict(row)

    def get_task(self, task_id: str) -> Optional[dict]:
        row = self.tasks.get(task_id)
        return dict(row) if row else None

    def list_tasks(self, query) -> List[dict]:
        items = list(self.tasks.values())
        if query.section_id:
            items = [t for t in items if t["section_id"] == query.section_id]
        if query.statuses:
            items = [t for t in items if t["status"] in query.statuses]
        if query.categories:
            items = [t for t in items if t["category"] in query.categories]
        if query.created_by:
            items = [t for t in items if t["created_by"] == query.created_by]
        if query.due_date_from:
            items = [t for t in items if t["due_date"] and _parse(t["due_date"]) >= query.due_date_from]
        if query.due_date_to:
            items = [t for t in items if t["due_date"] and _parse(t["due_date"]) <= query.due_date_to]
        if query.search:
            needle = query.search.lower()
            items = [
                t
                for t in items
                if needle in (t["title"] or "").lower() or needle in (t["description"] or "").lower()
            ]
        present = [t for t in items if t.get(query.sort_by) is not None]
        missing = [t for t in items if t.get(query.sort_by) is None]
        present.sort(key=lambda t: t[query.sort_by], reverse=query.sort_order == "desc")
        ordered = present + missing
        return [dict(t) for t in ordered[query.offset: query.offset + query.limit]]

    def update_task(self, task_id: str, changes: Dict[str, Any]) -> Optional[dict]:
        row = self.tasks.get(task_id)
        if not row:
            return None
        for key, value in changes.items():
            row[key] = _iso(value) if key == "due_date" else value
        row["updated_at"] = _now_iso()
        return dict(row)

    def delete_task(self, task_id: str) -> bool:
        existed = self.tasks.pop(task_id, None) is not None
        for key in [k for k in self.completions if k[1] == task_id]:
            self.completions.pop(key, None)
        return existed

    # --- Completions ---------------------------------------------------------------
    def insert_completions(self, task_id: str, user_ids: Sequence[str]) -> int:
        inserted = 0
        now = _now_iso()
        for uid in user_ids:
            key = (uid, task_id)
            if key in self.completions:
                continue
            self.completions[key] = {
                "id": str(uuid4()),
                "user_id": uid,
                "task_id": task_id,
                "status": "pending",
                "completed_at": None,
                "created_at": now,
            }
            inserted += 1
        return inserted

    def get_completion(self, task_id: str, user_id: str) -> Optional[dict]:
        row = self.completions.get((user_id, task_id))
        return dict(row) if row else None

    def complete_task(self, task_id: str, user_id: str, completed_at: datetime) -> dict:
        key = (user_id, task_id)
        row = self.completions.get(key)
        if row is None:
            row = {
                "id": str(uuid4()),
                "user_id": user_id,
                "task_id": task_id,
                "status": "completed",
                "completed_at": _iso(completed_at),
                "created_at": _now_iso(),
            }
            self.completions[key] = row
        else:
            row["status"] = "completed"
            row["completed_at"] = row.get("completed_at") or _iso(completed_at)
        return dict(row)

    def get_completions_for_user(self, user_id: str, task_ids: Sequence[str]) -> Dict[str, dict]:
        wanted = set(task_ids)
        return {
            tid: dict(row)
            for (uid, tid), row in self.completions.items()
            if uid == user_id and tid in wanted
        }

    def count_completions(self, task_id: str) -> Tuple[int, int]:
        rows = [r for (_, tid), r in self.completions.items() if tid == task_id]
        return sum(1 for r in rows if r["status"] == "completed"), len(rows)

    # --- Aggregates ----------------------------------------------------------------
    def count_tasks_by_status(self, section_id: Optional[str]) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for task in self.tasks.values():
            if section_id and task["section_id"] != section_id:
                continue
            counts[task["status"]] = counts.get(task["status"], 0) + 1
        return counts

    def list_section_completions(self, section_id: str) -> List[dict]:
        members = {uid for uid, u in self.users.items() if u.get("section_id") == section_id}
        rows: List[dict] = []
        for (uid, tid), row in self.completions.items():
            if uid not in members:
                continue
            task = self.tasks.get(tid)
            rows.append(
                {
                    "user_id": uid,
                    "task_id": tid,
                    "status": row["status"],
                    "completed_at": row["completed_at"],
                    "task_section_id": task["section_id"] if task else None,
                }
            )
        return rows
