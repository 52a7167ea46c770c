"""
Security utilities: JWT access tokens and activity entry signing.

Secrets are never logged. All comparisons are timing-safe.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta

from jose import jwt

from auditchain.config.settings import Settings, get_settings


# ── JWT ───────────────────────────────────────────────────────────────── #


def _now_utc() -> datetime:
    return datetime.now(UTC)


def create_access_token(
    subject: str,
    permissions: Iterable[str],
    name: str | None = None,
    expires_minutes: int = 60,
    settings: Settings | None = None,
) -> str:
    """
    Create a signed JWT access token.

    Tokens are normally minted by the identity provider; this helper exists
    for operators and tests that share the same secret.

    Args:
        subject: The actor ID (``sub`` claim).
        permissions: ``<resource>.<verb>`` capabilities granted to the actor.
        name: Optional display name.
        expires_minutes: Token TTL.

    Returns:
        Signed compact JWT string.
    """
    cfg = settings or get_settings()
    payload: dict[str, object] = {
        "sub": subject,
        "permissions": sorted(set(permissions)),
        "iat": _now_utc(),
        "exp": _now_utc() + timedelta(minutes=expires_minutes),
        "type": "access",
        "jti": secrets.token_hex(16),
    }
    if name:
        payload["name"] = name

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


def safe_str_compare(a: str, b: str) -> bool:
    """Constant-time string comparison to prevent timing attacks."""
    return secrets.compare_digest(a.encode(), b.encode())


# ── Activity entry signing ────────────────────────────────────────────── #


class EntrySigner:
    """
    Detached HMAC-SHA256 signatures over activity entry hashes.

    New entries are always signed with the primary key. Verification also
    accepts the legacy keys so that a key rotation does not invalidate
    existing history.
    """

    def __init__(self, primary_key: str, legacy_keys: Sequence[str] = ()) -> None:
        if not primary_key:
            raise ValueError("primary_key must not be empty")
        self._primary = primary_key.encode("utf-8")
        self._keys = [self._primary, *(k.encode("utf-8") for k in legacy_keys if k)]

    @classmethod
    def from_settings(cls, settings: Settings) -> EntrySigner | None:
        """Build a signer from configuration, or None when signing is disabled."""
        if settings.activity_signing_key is None:
            return None
        return cls(
            settings.activity_signing_key.get_secret_value(),
            [k.get_secret_value() for k in settings.activity_legacy_signing_keys],
        )

    def sign(self, entry_hash: str) -> str:
        return hmac.new(self._primary, entry_hash.encode("ascii"), hashlib.sha256).hexdigest()

    def verify(self, entry_hash: str, signature: str) -> bool:
        """Return True if any configured key produced ``signature``."""
        for key in self._keys:
            expected = hmac.new(key, entry_hash.encode("ascii"), hashlib.sha256).hexdigest()
            if safe_str_compare(expected, signature):
                return True
        return False


__all__ = [
    "EntrySigner",
    "create_access_token",
    "decode_token",
    "safe_str_compare",
]
