"""
Configuration and startup security checks for TaskHub.

Why: A task service holding student data must not be deployed with a guessable
token secret or an unencrypted database link. This module provides a single
guard that enforces minimal production safety constraints without burdening
local development.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os
import re
from urllib.parse import urlparse

DSN_ENV_KEYS = ("TASKS_DATABASE_URL", "DATABASE_URL", "SUPABASE_DB_URL")

_PLACEHOLDER_SECRETS = {"", "dummy_do_not_use", "changeme", "secret", "super-secret-jwt-token-with-at-least-32-characters-long"}


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def current_env() -> str:
    return (os.getenv("TASKHUB_ENV", "dev") or "dev").strip().lower()


def is_prod_like() -> bool:
    return _is_prod_like(current_env())


def _parse_user(dsn_value: str) -> str | None:
    if "://" in dsn_value:
        return urlparse(dsn_value).username
    # Keyword form: host=... user=... dbname=...
    m = re.search(r"\buser\s*=\s*([^\s]+)", dsn_value)
    return m.group(1) if m else None


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Intent: Abort process startup when obviously insecure settings are detected
    in production/staging. Development remains permissive for convenience.

    Checks:
    - SUPABASE_JWT_SECRET must be set and not a known placeholder.
    - No DSN may explicitly disable TLS.
    - No DSN may authenticate as the `postgres` superuser.
    - SUPABASE_URL must use https.
    """

    if not is_prod_like():
        return  # dev/test remain permissive

    # 1) Access token secret
    secret = (os.getenv("SUPABASE_JWT_SECRET", "") or "").strip()
    if secret.lower() in _PLACEHOLDER_SECRETS or secret.upper().startswith("CHANGE_ME"):
        raise SystemExit(
            "Refusing to start: SUPABASE_JWT_SECRET is unset or a placeholder in production."
        )

    for key in DSN_ENV_KEYS:
        val = os.getenv(key, "")
        if not val:
            continue
        # 2) Postgres TLS: basic guard to avoid explicit disable
        if "sslmode=disable" in val:
            raise SystemExit(
                f"Refusing to start: {key} contains sslmode=disable in production. Use sslmode=require or verify TLS."
            )
        # 3) DSN user must not be the superuser
        user = (_parse_user(val) or "").lower()
        if user == "postgres":
            raise SystemExit(
                f"Refusing to start: {key} authenticates as 'postgres' in production. "
                "Use a dedicated login role for the task service."
            )

    # 4) Supabase endpoint must use HTTPS
    url_value = (os.getenv("SUPABASE_URL", "") or "").strip().lower()
    if url_value.startswith("http://"):
        raise SystemExit("Refusing to start: SUPABASE_URL must use https in production (got http).")
