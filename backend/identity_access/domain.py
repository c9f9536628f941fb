"""
Identity domain constants and simple helpers.

Why:
- Centralize allowed roles and role dashboards to avoid drift between the
  guard, the web layer and the task services.
- Keep one small value type (`Principal`) that every core operation receives
  explicitly instead of reading ambient request context.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

STUDENT = "student"
SECTION_ADMIN = "section_admin"
SUPER_ADMIN = "super_admin"

# Keep roles minimal and explicit. Immutable to prevent accidental mutation.
ALLOWED_ROLES = frozenset({STUDENT, SECTION_ADMIN, SUPER_ADMIN})
ADMIN_ROLES = frozenset({SECTION_ADMIN, SUPER_ADMIN})

# Older profile rows store students as "user".
_LEGACY_ROLE_ALIASES = {"user": STUDENT}

DASHBOARD_ROOTS = {
    STUDENT: "/student",
    SECTION_ADMIN: "/section-admin",
    SUPER_ADMIN: "/super-admin",
}


def normalize_role(value: object) -> str:
    """Map a stored role value to its canonical name (unknown values pass through lowercased)."""
    role = str(value or "").strip().lower()
    return _LEGACY_ROLE_ALIASES.get(role, role)


def dashboard_for(role: str) -> str:
    return DASHBOARD_ROOTS.get(normalize_role(role), DASHBOARD_ROOTS[STUDENT])


@dataclass(frozen=True)
class Principal:
    id: str
    role: str
    section_id: Optional[str] = None
    name: str = ""
    email: str = ""

    @property
    def is_student(self) -> bool:
        return self.role == STUDENT

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_super_admin(self) -> bool:
        return self.role == SUPER_ADMIN

    def as_public_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "section_id": self.section_id,
            "name": self.name,
            "email": self.email,
        }


def principal_from_row(row: Optional[dict]) -> Optional[Principal]:
    """Build a Principal from a `users` row dict; returns None for missing rows."""
    if not row or not row.get("id"):
        return None
    section = row.get("section_id")
    return Principal(
        id=str(row["id"]),
        role=normalize_role(row.get("role")),
        section_id=str(section) if section else None,
        name=str(row.get("name") or ""),
        email=str(row.get("email") or ""),
    )


__all__ = [
    "ALLOWED_ROLES",
    "ADMIN_ROLES",
    "DASHBOARD_ROOTS",
    "Principal",
    "SECTION_ADMIN",
    "STUDENT",
    "SUPER_ADMIN",
    "dashboard_for",
    "normalize_role",
    "principal_from_row",
]
