"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors), and
reset the shared repository/session singletons so tests never leak state.
"""
import importlib
import sys
from pathlib import Path

import pytest

# Ensure modules in backend/ and backend/web are importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = REPO_ROOT / "backend"
WEB_DIR = BACKEND_DIR / "web"
TESTS_DIR = BACKEND_DIR / "tests"
for p in (str(REPO_ROOT), str(BACKEND_DIR), str(WEB_DIR), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_env_toggles(monkeypatch: pytest.MonkeyPatch):
    """Start every test in dev mode with no DSN, proxy trust or strict CSRF.

    Tests that need prod semantics or a token secret set them explicitly.
    """
    for var in (
        "TASKHUB_ENV",
        "TASKHUB_TRUST_PROXY",
        "STRICT_CSRF",
        "TASKS_DATABASE_URL",
        "DATABASE_URL",
        "SUPABASE_DB_URL",
        "SUPABASE_URL",
        "SUPABASE_JWT_SECRET",
        "SUPABASE_JWT_AUDIENCE",
        "ALLOWED_REGISTRATION_DOMAINS",
    ):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(autouse=True)
def _reset_task_repo_between_tests():
    """Give every test a fresh in-memory repository.

    Tests that exercise the Postgres adapter construct `DBTaskRepo` directly
    against a fake psycopg module.
    """
    from teaching.repo_memory import InMemoryTaskRepo  # type: ignore
    import repo_wiring  # type: ignore

    repo_wiring.set_repo(InMemoryTaskRepo())
    yield
    repo_wiring.set_repo(None)


@pytest.fixture(autouse=True)
def _reset_session_store(monkeypatch: pytest.MonkeyPatch):
    """Reset SESSION_STORE and the environment override per test.

    Reset on both module aliases to avoid drift between `main` and
    `backend.web.main` when different tests import different aliases.
    """
    try:
        import main  # type: ignore
        from identity_access.stores import SessionStore  # type: ignore
    except ImportError:
        yield
        return

    shared_session = SessionStore()
    for name in ("main", "backend.web.main"):
        mod = sys.modules.get(name)
        if mod is None:
            try:
                mod = importlib.import_module(name)
            except ImportError:
                continue
        monkeypatch.setattr(mod, "SESSION_STORE", shared_session, raising=False)
        mod.SETTINGS.override_environment(None)
    yield
