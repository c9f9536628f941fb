"""
Shared authentication utilities.

Why:
    The session cookie is set by the auth router and cleared on logout; both
    must use identical flags or browsers keep a stale cookie around.

Design:
    The helper is framework-agnostic and pure: it accepts an environment string
    and returns the corresponding cookie flags.
"""

from __future__ import annotations

SESSION_COOKIE_NAME = "taskhub_session"


def cookie_opts(environment: str) -> dict:
    """Return hardened cookie flags (dev = prod).

    Returns a mapping with keys:
      - secure: True
      - samesite: "lax"
      - httponly: True
    """
    # Lax keeps the cookie on top-level navigations coming back from the
    # auth provider's hosted pages.
    return {"secure": True, "samesite": "lax", "httponly": True}
