"""Section membership and role administration use cases.

Why:
    Admins need to see who belongs to a section, and super admins may change a
    user's role. Keeping these rules here (not in the route) lets the web
    adapter stay a thin mapping from HTTP to service calls.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

from identity_access.domain import ALLOWED_ROLES, Principal, normalize_role
from teaching.errors import NotFoundError, ValidationError
from teaching.services.tasks import resolve_section_scope


class MembersRepoProtocol(Protocol):
    def section_exists(self, section_id: str) -> bool:
        ...

    def list_section_members(self, section_id: str) -> List[dict]:
        ...

    def get_user(self, user_id: str) -> Optional[dict]:
        ...

    def update_user_role(self, user_id: str, role: str) -> Optional[dict]:
        ...


@dataclass
class MembersService:
    repo: MembersRepoProtocol

    def list_section_members(self, section_id: str, principal: Principal) -> List[dict]:
        scope = resolve_section_scope(principal, section_id)
        if not scope or not self.repo.section_exists(scope):
            raise NotFoundError("section_not_found")
        return self.repo.list_section_members(scope)

    def update_role(self, user_id: str, role: object, principal: Principal) -> dict:
        if principal is None or not principal.is_super_admin:
            raise PermissionError("forbidden")
        if not isinstance(role, str):
            raise ValidationError("invalid_role")
        canonical = normalize_role(role)
        if canonical not in ALLOWED_ROLES:
            raise ValidationError("invalid_role")
        if self.repo.get_user(user_id) is None:
            raise NotFoundError("user_not_found")
        updated = self.repo.update_user_role(user_id, canonical)
        if updated is None:
            raise NotFoundError("user_not_found")
        return updated
