"""
Structured error taxonomy for AuditChain.

Every application error has:
  - A stable error code (prefixed by domain)
  - An HTTP status code
  - A human-readable message template
  - An optional detail dict for machine consumers

Chain verification findings (content_modified, chain_break,
invalid_signature) are results, not errors, and never appear here.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Stable, versioned error codes. Never reuse a retired code."""

    # Auth
    AUTH_TOKEN_INVALID = "AUTH_003"
    AUTH_INSUFFICIENT_PERMISSIONS = "AUTH_004"

    # Activity log
    ACTIVITY_SEQUENCE_CONFLICT = "ACT_001"
    ACTIVITY_LOCK_TIMEOUT = "ACT_002"
    ACTIVITY_STORE_UNAVAILABLE = "ACT_003"
    ACTIVITY_SIGNING_KEY_MISSING = "ACT_004"
    ACTIVITY_CANONICALIZATION_FAILED = "ACT_005"
    ACTIVITY_ENTRY_IMMUTABLE = "ACT_006"
    ACTIVITY_NOT_FOUND = "ACT_007"

    # Generic
    VALIDATION_ERROR = "GEN_001"
    INTERNAL_ERROR = "GEN_002"
    NOT_FOUND = "GEN_003"
    RATE_LIMITED = "GEN_004"


class AppError(Exception):
    """Base class for all application errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        http_status: int = 500,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.detail = detail or {}


# ── Typed convenience subclasses ──────────────────────────────────────── #


class NotFoundError(AppError):
    def __init__(
        self, entity: str, entity_id: str | None = None, code: ErrorCode = ErrorCode.NOT_FOUND
    ) -> None:
        detail = {"entity": entity}
        if entity_id:
            detail["id"] = entity_id
        super().__init__(
            code=code,
            message=f"{entity} not found",
            http_status=404,
            detail=detail,
        )


class AuthError(AppError):
    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(code=code, message=message, http_status=401)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Insufficient permissions") -> None:
        super().__init__(
            code=ErrorCode.AUTH_INSUFFICIENT_PERMISSIONS,
            message=message,
            http_status=403,
        )


class ValidationError(AppError):
    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            http_status=422,
            detail=detail,
        )


class ConflictError(AppError):
    def __init__(
        self, code: ErrorCode, message: str, detail: dict[str, Any] | None = None
    ) -> None:
        super().__init__(code=code, message=message, http_status=409, detail=detail)


class ServiceUnavailableError(AppError):
    def __init__(
        self, code: ErrorCode, message: str, detail: dict[str, Any] | None = None
    ) -> None:
        super().__init__(code=code, message=message, http_status=503, detail=detail)


# ── Activity log ──────────────────────────────────────────────────────── #


class SequenceConflictError(ConflictError):
    """Another writer already holds this sequence number. Retry with a fresh tip."""

    def __init__(self, sequence_number: int | None = None) -> None:
        message = (
            f"Activity sequence number {sequence_number} already exists."
            if sequence_number is not None
            else "Another writer extended the activity chain concurrently."
        )
        super().__init__(
            ErrorCode.ACTIVITY_SEQUENCE_CONFLICT,
            message,
            detail={"sequence_number": sequence_number},
        )


class AppendLockTimeoutError(ServiceUnavailableError):
    def __init__(self, timeout_seconds: float | None) -> None:
        super().__init__(
            ErrorCode.ACTIVITY_LOCK_TIMEOUT,
            "Timed out waiting for the activity log writer.",
            detail={"timeout_seconds": timeout_seconds},
        )


class StoreUnavailableError(ServiceUnavailableError):
    def __init__(self, message: str = "Activity store is unavailable.") -> None:
        super().__init__(ErrorCode.ACTIVITY_STORE_UNAVAILABLE, message)


class SigningKeyMissingError(ServiceUnavailableError):
    def __init__(self) -> None:
        super().__init__(
            ErrorCode.ACTIVITY_SIGNING_KEY_MISSING,
            "Signed activity entries found but no signing key is configured.",
        )


class CanonicalizationError(AppError):
    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(
            code=ErrorCode.ACTIVITY_CANONICALIZATION_FAILED,
            message=message,
            http_status=422,
            detail=detail,
        )


class ImmutableEntryError(ConflictError):
    def __init__(self, entry_id: str | None = None) -> None:
        super().__init__(
            ErrorCode.ACTIVITY_ENTRY_IMMUTABLE,
            "Activity entries cannot be modified or deleted.",
            detail={"id": entry_id} if entry_id else None,
        )
