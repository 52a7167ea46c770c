"""
Audit facade used by mutation handlers.

Handlers call one helper per kind of mutation after the business operation
has succeeded. Each helper names the action, shapes the metadata for its
verb and hands the result to the ChainAppender.

    activity = ActivityLogger(appender)
    await record_safely(
        activity.log_update(
            actor,
            "roles",
            ActivityTarget(type="role", id=role.id, display_name=role.name),
            changes=[ChangeRecord(field="name", from_=old, to=role.name)],
        )
    )
"""

from __future__ import annotations

from collections.abc import Awaitable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

from auditchain.core.errors import AppError
from auditchain.core.metrics import LOG_FAILURES, LOGIN_FAILURES_THROTTLED
from auditchain.schemas.activity import ActivityTarget, ChangeRecord
from auditchain.services.activity.appender import ChainAppender
from auditchain.services.activity.model import ActivityRecord
from auditchain.services.activity.payloads import (
    ActorRef,
    ImpersonationContext,
    shape_metadata,
)

_log = structlog.get_logger(__name__)

T = TypeVar("T")

Target = ActivityTarget | Mapping[str, Any]


@dataclass(frozen=True)
class ActivityActor:
    """
    The user an action is attributed to.

    ``impersonated_by`` is the real user when an administrator acts as
    someone else; the entry is attributed to the effective user and the
    real one is kept in ``metadata.impersonation``.
    """

    id: str
    name: str | None = None
    email: str | None = None
    impersonated_by: ActivityActor | None = None

    def ref(self) -> ActorRef:
        return ActorRef(id=self.id, name=self.name, email=self.email)


class ActivityLogger:
    def __init__(
        self,
        appender: ChainAppender,
        *,
        login_failure_limit: str | None = None,
    ) -> None:
        self._appender = appender
        self._login_failure_limit = parse(login_failure_limit) if login_failure_limit else None
        self._login_failures = FixedWindowRateLimiter(MemoryStorage())

    async def log_create(
        self,
        actor: ActivityActor | str | None,
        resource: str,
        target: Target,
        metadata: Mapping[str, Any] | None = None,
        related_targets: Sequence[Target] | None = None,
    ) -> ActivityRecord:
        return await self._log(actor, f"{resource}.create", target, related_targets, metadata)

    async def log_update(
        self,
        actor: ActivityActor | str | None,
        resource: str,
        target: Target,
        changes: Sequence[ChangeRecord | Mapping[str, Any]],
        metadata: Mapping[str, Any] | None = None,
        related_targets: Sequence[Target] | None = None,
    ) -> ActivityRecord | None:
        """
        Record an update. Returns None without writing when every change
        is a no-op.
        """
        effective = [c for c in _changes(changes) if not c.is_noop]
        if not effective:
            _log.debug("activity_update_skipped", resource=resource, reason="no_changes")
            return None
        return await self._log(
            actor,
            f"{resource}.update",
            target,
            related_targets,
            metadata,
            changes=effective,
        )

    async def log_delete(
        self,
        actor: ActivityActor | str | None,
        resource: str,
        target: Target,
        metadata: Mapping[str, Any] | None = None,
        related_targets: Sequence[Target] | None = None,
    ) -> ActivityRecord:
        return await self._log(actor, f"{resource}.delete", target, related_targets, metadata)

    async def log_action(
        self,
        actor: ActivityActor | str | None,
        verb: str,
        resource: str,
        target: Target,
        related_targets: Sequence[Target] | None = None,
        metadata: Mapping[str, Any] | None = None,
        changes: Sequence[ChangeRecord | Mapping[str, Any]] | None = None,
    ) -> ActivityRecord:
        """Record a verb outside create/update/delete, e.g. ``pin`` or ``impersonate_start``."""
        return await self._log(
            actor,
            f"{resource}.{verb}",
            target,
            related_targets,
            metadata,
            changes=_changes(changes) if changes is not None else None,
        )

    async def log_revoke(
        self,
        actor: ActivityActor | str | None,
        resource: str,
        target: Target,
        related_targets: Sequence[Target] | None = None,
        metadata: Mapping[str, Any] | None = None,
        revoke_all: bool = False,
    ) -> ActivityRecord:
        verb = "revoke_all" if revoke_all else "revoke"
        return await self._log(actor, f"{resource}.{verb}", target, related_targets, metadata)

    async def log_login_failure(
        self,
        identifier: str,
        reason: str,
        ip_address: str | None = None,
    ) -> ActivityRecord | None:
        """
        System entry for a failed sign-in; there is no authenticated actor.

        Failures are counted per client IP. Past ``login_failure_limit`` the
        attempt is not recorded and None is returned, so unauthenticated
        callers cannot flood the chain.
        """
        if (
            ip_address
            and self._login_failure_limit is not None
            and not self._login_failures.hit(
                self._login_failure_limit, "login-failure", ip_address
            )
        ):
            LOGIN_FAILURES_THROTTLED.inc()
            _log.info("activity_login_failure_throttled", ip_address=ip_address)
            return None

        metadata: dict[str, Any] = {"identifier": identifier, "reason": reason}
        if ip_address:
            metadata["ip_address"] = ip_address
        return await self._log(
            None,
            "auth.login_failed",
            ActivityTarget(type="user", display_name=identifier),
            None,
            metadata,
        )

    async def _log(
        self,
        actor: ActivityActor | str | None,
        action: str,
        target: Target,
        related_targets: Sequence[Target] | None,
        metadata: Mapping[str, Any] | None,
        changes: list[ChangeRecord] | None = None,
    ) -> ActivityRecord:
        payload: dict[str, Any] = dict(metadata or {})
        if changes is not None:
            payload["changes"] = [c.model_dump(by_alias=True, exclude_unset=True) for c in changes]

        actor_id: str | None
        if isinstance(actor, ActivityActor):
            actor_id = actor.id
            if actor.impersonated_by is not None:
                payload["impersonation"] = ImpersonationContext(
                    actor=actor.impersonated_by.ref(),
                    effective=actor.ref(),
                ).model_dump(exclude_none=True)
        else:
            actor_id = actor

        return await self._appender.append(
            actor_id=actor_id,
            action=action,
            target=target,
            related_targets=list(related_targets or ()),
            metadata=shape_metadata(action, payload),
        )


def _changes(changes: Sequence[ChangeRecord | Mapping[str, Any]]) -> list[ChangeRecord]:
    return [c if isinstance(c, ChangeRecord) else ChangeRecord.model_validate(c) for c in changes]


async def record_safely(call: Awaitable[T]) -> T | None:
    """
    Await an activity write, logging and counting any failure instead of
    raising it. The business operation has already succeeded by the time
    this runs and must not be reported as failed.
    """
    try:
        return await call
    except AppError as exc:
        LOG_FAILURES.labels(code=exc.code.value).inc()
        _log.error(
            "activity_log_failed",
            code=exc.code.value,
            error=exc.message,
            detail=exc.detail,
        )
    except Exception as exc:
        LOG_FAILURES.labels(code="unexpected").inc()
        _log.error("activity_log_failed", error=str(exc), exc_info=True)
    return None
