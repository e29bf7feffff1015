"""
Identity tokens issued by the practice's authentication service.

This service never authenticates users itself. It only verifies the
HS256 access tokens the auth service signs with the shared secret and
turns them into an :class:`Identity` attached to the request.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from clinic_audit.config.settings import Settings, get_settings


@dataclass(frozen=True, slots=True)
class Identity:
    """The authenticated actor of a request."""

    id: str
    role: str
    email: str | None = None


# ── JWT ───────────────────────────────────────────────────────────────── #


def _now_utc() -> datetime:
    return datetime.now(UTC)


def create_access_token(
    subject: str,
    role: str,
    email: str | None = None,
    settings: Settings | None = None,
    expires_in: timedelta | None = None,
) -> str:
    """
    Create a signed JWT access token in the auth service's format.

    Used by service-to-service tooling and the test suite.
    """
    cfg = settings or get_settings()
    now = _now_utc()
    payload: dict[str, object] = {
        "sub": subject,
        "role": role,
        "iat": now,
        "exp": now + (expires_in or timedelta(minutes=cfg.jwt_access_token_expire_minutes)),
        "type": "access",
        "jti": secrets.token_hex(16),
    }
    if email:
        payload["email"] = email
    return jwt.encode(
        payload,
        cfg.jwt_secret_key.get_secret_value(),
        algorithm=cfg.jwt_algorithm,
    )


def decode_token(token: str, settings: Settings | None = None) -> dict[str, object]:
    """
    Decode and validate a JWT.

    Raises:
        JWTError: If the token is invalid, expired, or tampered with.
    """
    cfg = settings or get_settings()
    return jwt.decode(  # type: ignore[return-value]
        token,
        cfg.jwt_secret_key.get_secret_value(),
        algorithms=[cfg.jwt_algorithm],
    )


def identity_from_token(token: str, settings: Settings | None = None) -> Identity | None:
    """Return the Identity carried by an access token, or None if unusable."""
    try:
        payload = decode_token(token, settings)
    except JWTError:
        return None

    if payload.get("type") != "access":
        return None
    subject = payload.get("sub")
    role = payload.get("role")
    if not isinstance(subject, str) or not subject or not isinstance(role, str):
        return None
    email = payload.get("email")
    return Identity(id=subject, role=role.lower(), email=email if isinstance(email, str) else None)


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


__all__ = [
    "Identity",
    "bearer_token",
    "create_access_token",
    "decode_token",
    "identity_from_token",
]
