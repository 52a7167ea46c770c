"""
FastAPI dependency providers.

Identity is issued elsewhere; this service only validates the bearer token
and checks the ``permissions`` claim. All authorization lives here, not in
routes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated

import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from auditchain.config.settings import Settings
from auditchain.core.errors import AuthError, ErrorCode, ForbiddenError
from auditchain.core.security import decode_token
from auditchain.services.activity.sql_store import SqlAlchemyEntryStore
from auditchain.services.activity.verifier import ChainVerifier

_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, as described by its access token."""

    id: str
    name: str | None = None
    permissions: frozenset[str] = field(default_factory=frozenset)

    def has(self, permission: str) -> bool:
        return permission in self.permissions


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> Principal:
    """
    Validate the JWT Bearer token and return the caller.

    Raises AuthError on any JWT problem.
    """
    if credentials is None:
        raise AuthError(
            ErrorCode.AUTH_TOKEN_INVALID, "Authorization header missing or not Bearer type"
        )

    try:
        payload = decode_token(credentials.credentials, settings)
    except JWTError as exc:
        raise AuthError(ErrorCode.AUTH_TOKEN_INVALID, "Token invalid or expired") from exc

    if payload.get("type") != "access":
        raise AuthError(ErrorCode.AUTH_TOKEN_INVALID, "Token is not an access token")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise AuthError(ErrorCode.AUTH_TOKEN_INVALID, "Token missing subject")

    permissions = payload.get("permissions") or []
    if not isinstance(permissions, list):
        raise AuthError(ErrorCode.AUTH_TOKEN_INVALID, "Token permissions claim is malformed")

    name = payload.get("name")
    structlog.contextvars.bind_contextvars(actor_id=subject)
    return Principal(
        id=subject,
        name=name if isinstance(name, str) else None,
        permissions=frozenset(str(p) for p in permissions),
    )


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]


def require_permission(permission: str):
    """Return a dependency callable that enforces a ``<resource>.<verb>`` permission."""

    async def _check(principal: CurrentPrincipal) -> Principal:
        if not principal.has(permission):
            raise ForbiddenError(f"This action requires the '{permission}' permission.")
        return principal

    return _check


ActivityReader = Depends(require_permission("activity.read"))
ActivityVerifier = Depends(require_permission("activity.verify"))


def get_entry_store(request: Request) -> SqlAlchemyEntryStore:
    return request.app.state.entry_store


def get_chain_verifier(request: Request) -> ChainVerifier:
    return request.app.state.chain_verifier
