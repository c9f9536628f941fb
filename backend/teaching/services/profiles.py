"""Profile provisioning after signup, and the directory lookups behind the signup form.

Why:
    Accounts are created on the auth provider's hosted pages; the `public.users`
    row that carries role and section is ours. A freshly signed-up user calls
    `provision` once with a verified token, and the profile is created with the
    default (student) role in the chosen department, batch and section.

Notes:
    - The email comes from the verified token, never from the form.
    - An empty allow-list means "no domain restriction".
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Protocol

from identity_access.domain import STUDENT
from teaching.errors import NotFoundError, ValidationError
from teaching.services.tasks import is_uuid_like

DEFAULT_REGISTRATION_DOMAINS = "@diu.edu.bd"
MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 100
_STUDENT_ID_RE = re.compile(r"^\d{2}-\d{5}-\d$")


class ProfilesRepoProtocol(Protocol):
    def get_user(self, user_id: str) -> Optional[dict]:
        ...

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
        ...

    def list_departments(self) -> List[dict]:
        ...

    def list_batches(self, department_id: str) -> List[dict]:
        ...

    def list_sections(self, batch_id: str) -> List[dict]:
        ...

    def get_section_lineage(self, section_id: str) -> Optional[dict]:
        ...


def parse_allowed_domains(raw: Optional[str]) -> FrozenSet[str]:
    """Parse a comma-separated list like "@diu.edu.bd, @example.org" (trimmed, lowercased)."""
    if not raw:
        return frozenset()
    items = [part.strip().lower() for part in str(raw).split(",")]
    return frozenset(f"@{item.lstrip('@')}" for item in items if item.lstrip("@"))


def is_allowed_email(email: object, allowed_domains: FrozenSet[str]) -> bool:
    if not isinstance(email, str):
        return False
    normalized = email.strip().lower()
    if "@" not in normalized:
        return False
    local, domain = normalized.rsplit("@", 1)
    if not local or not domain:
        return False
    if not allowed_domains:
        return True
    return f"@{domain}" in allowed_domains


def _normalize_name(value: object) -> str:
    if not isinstance(value, str):
        raise ValidationError("invalid_name")
    trimmed = value.strip()
    if len(trimmed) < MIN_NAME_LENGTH or len(trimmed) > MAX_NAME_LENGTH:
        raise ValidationError("invalid_name")
    return trimmed


def _normalize_student_id(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, str) or not _STUDENT_ID_RE.match(value.strip()):
        raise ValidationError("invalid_student_id")
    return value.strip()


def _require_uuid(value: object, code: str) -> str:
    if not isinstance(value, str) or not is_uuid_like(value):
        raise ValidationError(code)
    return value


@dataclass
class ProfileService:
    repo: ProfilesRepoProtocol
    allowed_domains: FrozenSet[str] = field(
        default_factory=lambda: parse_allowed_domains(DEFAULT_REGISTRATION_DOMAINS)
    )

    # --- Directory ----------------------------------------------------------------
    def list_departments(self) -> List[dict]:
        return self.repo.list_departments()

    def list_batches(self, department_id: object) -> List[dict]:
        return self.repo.list_batches(_require_uuid(department_id, "invalid_department_id"))

    def list_sections(self, batch_id: object) -> List[dict]:
        return self.repo.list_sections(_require_uuid(batch_id, "invalid_batch_id"))

    # --- Provisioning ---------------------------------------------------------------
    def provision(
        self,
        *,
        user_id: str,
        email: object,
        name: object,
        student_id: object = None,
        department_id: object = None,
        batch_id: object = None,
        section_id: object = None,
    ) -> dict:
        """Create the caller's profile row with the student role.

        Raises:
            ValidationError: malformed fields, a disallowed email domain, a
                section outside the chosen batch/department, or an existing profile.
            NotFoundError: the section (or its batch) does not exist.
        """
        if not is_allowed_email(email, frozenset()):
            raise ValidationError("invalid_email")
        if not is_allowed_email(email, self.allowed_domains):
            raise ValidationError("invalid_email_domain")
        clean_name = _normalize_name(name)
        clean_student_id = _normalize_student_id(student_id)
        department = _require_uuid(department_id, "invalid_department_id")
        batch = _require_uuid(batch_id, "invalid_batch_id")
        section = _require_uuid(section_id, "invalid_section_id")

        if self.repo.get_user(user_id) is not None:
            raise ValidationError("profile_exists")
        lineage = self.repo.get_section_lineage(section)
        if lineage is None:
            raise NotFoundError("section_not_found")
        if lineage.get("batch_id") != batch or lineage.get("department_id") != department:
            raise ValidationError("section_mismatch")

        created = self.repo.create_user(
            user_id=user_id,
            email=str(email).strip().lower(),
            name=clean_name,
            role=STUDENT,
            student_id=clean_student_id,
            department_id=department,
            batch_id=batch,
            section_id=section,
        )
        if created is None:
            raise ValidationError("profile_exists")
        return created
