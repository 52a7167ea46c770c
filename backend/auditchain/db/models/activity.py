"""
Immutable activity entry model.

Entries form a hash chain ordered by ``sequence_number``: each row stores
the SHA-256 hash of its own canonical content and the hash of the entry
before it. Rows are append-only; the ORM refuses to flush an UPDATE or
DELETE for this model.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, String, event
from sqlalchemy.orm import Mapped, mapped_column

from auditchain.core.errors import ImmutableEntryError
from auditchain.db.base import Base, UUIDPrimaryKeyMixin


class ActivityEntry(Base, UUIDPrimaryKeyMixin):
    """Single immutable activity log entry."""

    __tablename__ = "activity_entries"

    sequence_number: Mapped[int] = mapped_column(
        BigInteger, nullable=False, unique=True, index=True
    )
    actor_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    # JSON (not JSONB) so the database does not rewrite the stored values
    target: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    related_targets: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )

    # Hash of the previous entry; all zeros for sequence 1
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    # Hash of this entry's canonical content (everything except itself and signature)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    signature: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<ActivityEntry #{self.sequence_number} {self.action}>"


@event.listens_for(ActivityEntry, "before_update")
def _refuse_update(mapper: Any, connection: Any, target: ActivityEntry) -> None:
    raise ImmutableEntryError(target.id)


@event.listens_for(ActivityEntry, "before_delete")
def _refuse_delete(mapper: Any, connection: Any, target: ActivityEntry) -> None:
    raise ImmutableEntryError(target.id)
