"""
Chain appender: turns caller content into the next linked entry.

The tip is read and the new entry inserted inside one store writer
section, so two concurrent appends can never attach to the same
``prev_hash``. Appends are not retried here: a retry must read a fresh tip
and stamp a fresh ``created_at``, which only the caller can decide to do.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

import structlog

from auditchain.core.errors import ValidationError
from auditchain.core.metrics import ENTRIES_APPENDED
from auditchain.core.security import EntrySigner
from auditchain.services.activity.canonical import (
    GENESIS_HASH,
    compute_entry_hash,
    normalize_timestamp,
    to_json_value,
)
from auditchain.services.activity.model import ActivityRecord, validate_action
from auditchain.services.activity.store import EntryStore

_log = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ChainAppender:
    """
    Appends activity entries to an EntryStore.

    Usage:
        appender = ChainAppender(store, signer=EntrySigner(key))
        record = await appender.append(
            actor_id=user.id,
            action="sessions.revoke",
            target={"type": "session", "id": session.id},
        )
    """

    def __init__(
        self,
        store: EntryStore,
        *,
        signer: EntrySigner | None = None,
        clock: Callable[[], datetime] = _utcnow,
        lock_timeout: float | None = None,
    ) -> None:
        self._store = store
        self._signer = signer
        self._clock = clock
        self._lock_timeout = lock_timeout

    @property
    def store(self) -> EntryStore:
        return self._store

    async def append(
        self,
        actor_id: str | None,
        action: str,
        target: Mapping[str, Any] | Any,
        related_targets: Sequence[Mapping[str, Any] | Any] = (),
        metadata: Mapping[str, Any] | None = None,
    ) -> ActivityRecord:
        """
        Build, hash, sign and persist the next entry.

        Raises:
            ValidationError: ``action`` is not ``resource.verb``.
            CanonicalizationError: content has no stable JSON form.
            AppendLockTimeoutError, SequenceConflictError, StoreUnavailableError:
                nothing was written; the tip is unchanged.
        """
        validate_action(action)
        target_json = to_json_value(target, "$.target")
        related_json = [
            to_json_value(t, f"$.related_targets[{i}]") for i, t in enumerate(related_targets)
        ]
        if not isinstance(target_json, dict) or not target_json.get("type"):
            raise ValidationError("Activity target must be an object with a type.")
        metadata_json = to_json_value(dict(metadata or {}), "$.metadata")

        async with self._store.writer(self._lock_timeout) as writer:
            tip = await writer.get_tip()
            if tip is None:
                sequence_number, prev_hash = 1, GENESIS_HASH
            else:
                sequence_number, prev_hash = tip.sequence_number + 1, tip.entry_hash

            created_at = normalize_timestamp(self._clock())
            entry_hash = compute_entry_hash(
                sequence_number=sequence_number,
                actor_id=actor_id,
                action=action,
                target=target_json,
                related_targets=related_json,
                metadata=metadata_json,
                created_at=created_at,
                prev_hash=prev_hash,
            )
            record = ActivityRecord(
                id=str(uuid.uuid4()),
                sequence_number=sequence_number,
                actor_id=actor_id,
                action=action,
                target=target_json,
                related_targets=related_json,
                metadata=metadata_json,
                created_at=created_at,
                prev_hash=prev_hash,
                entry_hash=entry_hash,
                signature=self._signer.sign(entry_hash) if self._signer else None,
            )
            await writer.insert(record)

        ENTRIES_APPENDED.labels(resource=record.resource).inc()
        _log.debug(
            "activity_entry_appended",
            action=action,
            actor_id=actor_id,
            sequence_number=sequence_number,
            entry_hash=entry_hash,
        )
        return record
