"""
Error kinds raised by the teaching services.

Each error carries a stable snake_case code as its message (e.g.
`invalid_due_date`, `task_not_found`) so web adapters can map it to a JSON
`detail` without parsing prose. `PermissionError` is the builtin.
"""

from __future__ import annotations


class ValidationError(ValueError):
    """Malformed or out-of-range input; raised before any write."""


class NotFoundError(LookupError):
    """Referenced section, task or user does not exist (or is not visible)."""


class DependencyError(RuntimeError):
    """The persistence collaborator failed."""


def error_code(exc: BaseException, default: str) -> str:
    code = str(exc) if exc.args else ""
    return code or default


__all__ = ["DependencyError", "NotFoundError", "ValidationError", "error_code"]
