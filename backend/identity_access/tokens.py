"""
Access-token verification for the identity_access bounded context.

Why: Keep cryptographic validation of the auth provider's access tokens outside
the web adapter so we can unit test it independently.

Security: Supabase Auth signs access tokens with the project's JWT secret
(HS256). We verify signature, audience and temporal claims and return the
claims; callers only trust `sub`.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict
import os
import time

from jose import jwt
from jose.exceptions import JOSEError


class AccessTokenVerificationError(Exception):
    """Raised when the access token fails verification."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


@dataclass(frozen=True)
class TokenConfig:
    secret: str
    audience: str = "authenticated"
    algorithm: str = "HS256"


def load_token_config() -> TokenConfig:
    return TokenConfig(
        secret=(os.getenv("SUPABASE_JWT_SECRET") or "").strip(),
        audience=(os.getenv("SUPABASE_JWT_AUDIENCE") or "authenticated").strip(),
    )


MAX_CLOCK_SKEW_SECONDS = 5  # Allow minimal skew between servers


def verify_access_token(*, token: str, cfg: TokenConfig) -> Dict[str, object]:
    """Validate an access token and return its claims.

    Raises
    ------
    AccessTokenVerificationError:
        When the secret is unset or the token is invalid (signature, audience,
        expiry, missing subject).
    """
    if not cfg.secret:
        raise AccessTokenVerificationError("verifier_not_configured")
    if not token:
        raise AccessTokenVerificationError("missing_token")
    try:
        claims = jwt.decode(
            token,
            cfg.secret,
            algorithms=[cfg.algorithm],
            audience=cfg.audience,
            options={
                "verify_signature": True,
                "verify_aud": True,
                "verify_exp": False,
                "verify_iat": False,
                "verify_nbf": False,
            },
        )
    except JOSEError as exc:
        raise AccessTokenVerificationError("invalid_access_token") from exc

    _validate_temporal_claims(claims)
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub:
        raise AccessTokenVerificationError("missing_sub")
    return claims


def _validate_temporal_claims(claims: Dict[str, object]) -> None:
    now = time.time()
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        raise AccessTokenVerificationError("invalid_access_token")
    if exp + MAX_CLOCK_SKEW_SECONDS < now:
        raise AccessTokenVerificationError("expired_access_token")

    iat = claims.get("iat")
    if isinstance(iat, (int, float)):
        if iat - MAX_CLOCK_SKEW_SECONDS > now:
            raise AccessTokenVerificationError("invalid_access_token")

    nbf = claims.get("nbf")
    if isinstance(nbf, (int, float)) and nbf - MAX_CLOCK_SKEW_SECONDS > now:
        raise AccessTokenVerificationError("invalid_access_token")
