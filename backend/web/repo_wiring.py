"""
Shared repository wiring for the web adapters.

Why:
    The auth middleware (role lookup), the task routes and the dashboards must
    all talk to the same repository instance. Prefers the Postgres-backed repo
    when psycopg and a DSN are available; falls back to an in-memory repo for
    tests/local offline work. Tests call `set_repo` to swap implementations.
"""
from __future__ import annotations

import logging

from teaching.repo_memory import InMemoryTaskRepo

logger = logging.getLogger("taskhub.web")

# Try to use DB-backed repo when available; fallback to in-memory for dev/tests
try:  # late import to avoid hard dependency during unit tests
    from teaching.repo_db import DBTaskRepo  # type: ignore
except Exception as exc:  # pragma: no cover - import failures in dev/test envs
    DBTaskRepo = None  # type: ignore
    _DB_REPO_IMPORT_ERROR = exc
else:
    _DB_REPO_IMPORT_ERROR = None


def _build_default_repo():
    """Prefer DBTaskRepo; fall back to in-memory if unavailable."""
    if DBTaskRepo is None:
        if _DB_REPO_IMPORT_ERROR:
            logger.warning("Task repo import failed: %s", _DB_REPO_IMPORT_ERROR.__class__.__name__)
        return InMemoryTaskRepo()
    try:
        return DBTaskRepo()
    except RuntimeError as exc:  # pragma: no cover - exercised when DSN missing
        logger.warning("Task repo unavailable (%s); using in-memory fallback", exc)
        return InMemoryTaskRepo()


"""Lazy repo accessor to avoid import-time DB checks in tests."""
_REPO = None


def get_repo():
    global _REPO
    if _REPO is None:
        _REPO = _build_default_repo()
    return _REPO


def set_repo(repo) -> None:
    """Allow tests to swap the task repository implementation."""
    global _REPO
    _REPO = repo
