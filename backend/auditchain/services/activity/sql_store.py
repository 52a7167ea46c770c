"""
Relational EntryStore on async SQLAlchemy.

Every operation runs in its own session, so activity writes commit
independently of the business transaction that triggered them. The writer
section combines an in-process lock with a database-level lock on the tip:
``SELECT ... FOR UPDATE`` on the highest-sequence row and, on PostgreSQL, a
transaction-scoped advisory lock that also covers the empty table. The
unique constraint on ``sequence_number`` rejects any insert that slipped
past both.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

import structlog
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.core.errors import SequenceConflictError, StoreUnavailableError
from auditchain.db.models.activity import ActivityEntry
from auditchain.services.activity.canonical import normalize_timestamp
from auditchain.services.activity.model import ActivityRecord
from auditchain.services.activity.store import EntryWriter, acquire_writer_lock

_log = structlog.get_logger(__name__)

# Arbitrary constant shared by every writer process
_ADVISORY_LOCK_KEY = 0x41434354


def to_record(row: ActivityEntry) -> ActivityRecord:
    return ActivityRecord(
        id=row.id,
        sequence_number=row.sequence_number,
        actor_id=row.actor_id,
        action=row.action,
        target=row.target,
        related_targets=list(row.related_targets or []),
        metadata=row.metadata_ or {},
        created_at=normalize_timestamp(row.created_at),
        prev_hash=row.prev_hash,
        entry_hash=row.entry_hash,
        signature=row.signature,
    )


def to_row(record: ActivityRecord) -> ActivityEntry:
    return ActivityEntry(
        id=record.id,
        sequence_number=record.sequence_number,
        actor_id=record.actor_id,
        action=record.action,
        target=record.target,
        related_targets=record.related_targets,
        metadata_=record.metadata,
        created_at=record.created_at,
        prev_hash=record.prev_hash,
        entry_hash=record.entry_hash,
        signature=record.signature,
    )


class _SqlEntryWriter:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_tip(self) -> ActivityRecord | None:
        result = await self._session.execute(
            select(ActivityEntry)
            .order_by(ActivityEntry.sequence_number.desc())
            .limit(1)
            .with_for_update()
        )
        row = result.scalar_one_or_none()
        return to_record(row) if row is not None else None

    async def insert(self, record: ActivityRecord) -> None:
        self._session.add(to_row(record))
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise SequenceConflictError(record.sequence_number) from exc


class SqlAlchemyEntryStore:
    """EntryStore backed by the ``activity_entries`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def writer(self, timeout: float | None = None) -> AsyncIterator[EntryWriter]:
        await acquire_writer_lock(self._lock, timeout)
        try:
            async with self._session_factory() as session:
                try:
                    async with session.begin():
                        if session.bind is not None and session.bind.dialect.name == "postgresql":
                            await session.execute(
                                text("SELECT pg_advisory_xact_lock(:key)"),
                                {"key": _ADVISORY_LOCK_KEY},
                            )
                        yield _SqlEntryWriter(session)
                except IntegrityError as exc:
                    _log.warning("activity_sequence_conflict", error=str(exc.orig))
                    raise SequenceConflictError() from exc
                except SQLAlchemyError as exc:
                    _log.error("activity_store_write_failed", error=str(exc))
                    raise StoreUnavailableError() from exc
        finally:
            self._lock.release()

    async def insert(self, record: ActivityRecord) -> None:
        async with self.writer() as w:
            await w.insert(record)

    @asynccontextmanager
    async def _read(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            _log.error("activity_store_read_failed", error=str(exc))
            raise StoreUnavailableError() from exc

    async def get_tip(self) -> ActivityRecord | None:
        async with self._read() as session:
            result = await session.execute(
                select(ActivityEntry).order_by(ActivityEntry.sequence_number.desc()).limit(1)
            )
            row = result.scalar_one_or_none()
            return to_record(row) if row is not None else None

    async def range(self, from_seq: int, to_seq: int) -> list[ActivityRecord]:
        async with self._read() as session:
            result = await session.execute(
                select(ActivityEntry)
                .where(
                    ActivityEntry.sequence_number >= from_seq,
                    ActivityEntry.sequence_number <= to_seq,
                )
                .order_by(ActivityEntry.sequence_number.asc())
            )
            return [to_record(row) for row in result.scalars().all()]

    async def latest(self, limit: int, up_to_seq: int | None = None) -> list[ActivityRecord]:
        query = select(ActivityEntry)
        if up_to_seq is not None:
            query = query.where(ActivityEntry.sequence_number <= up_to_seq)
        async with self._read() as session:
            result = await session.execute(
                query.order_by(ActivityEntry.sequence_number.desc()).limit(limit)
            )
            rows = list(result.scalars().all())
        rows.reverse()
        return [to_record(row) for row in rows]

    async def count(self, up_to_seq: int | None = None) -> int:
        query = select(func.count()).select_from(ActivityEntry)
        if up_to_seq is not None:
            query = query.where(ActivityEntry.sequence_number <= up_to_seq)
        async with self._read() as session:
            result = await session.execute(query)
            return int(result.scalar_one())

    async def get(self, entry_id: str) -> ActivityRecord | None:
        async with self._read() as session:
            row = await session.get(ActivityEntry, entry_id)
            return to_record(row) if row is not None else None

    # ── Browsing ──────────────────────────────────────────────────────── #

    async def search(
        self,
        *,
        actor_id: str | None = None,
        action: str | None = None,
        resource: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[ActivityRecord], int]:
        """Return one page of entries, newest first, and the filtered total."""
        query = select(ActivityEntry)
        if actor_id:
            query = query.where(ActivityEntry.actor_id == actor_id)
        if action:
            query = query.where(ActivityEntry.action == action)
        if resource:
            query = query.where(ActivityEntry.action.startswith(f"{resource}.", autoescape=True))
        if start is not None:
            query = query.where(ActivityEntry.created_at >= normalize_timestamp(start))
        if end is not None:
            query = query.where(ActivityEntry.created_at <= normalize_timestamp(end))

        async with self._read() as session:
            total = await session.execute(select(func.count()).select_from(query.subquery()))
            result = await session.execute(
                query.order_by(ActivityEntry.sequence_number.desc()).offset(offset).limit(limit)
            )
            return [to_record(row) for row in result.scalars().all()], int(total.scalar_one())

    async def distinct_actions(self) -> list[str]:
        async with self._read() as session:
            result = await session.execute(
                select(ActivityEntry.action).distinct().order_by(ActivityEntry.action)
            )
            return list(result.scalars().all())

    async def distinct_resources(self) -> list[str]:
        # resource is the action prefix; it is not stored outside the hashed content
        actions = await self.distinct_actions()
        return sorted({action.split(".", 1)[0] for action in actions})

    async def action_counts(self, *, since: datetime | None = None) -> list[tuple[str, int]]:
        """Entries per action, most frequent first."""
        n = func.count().label("n")
        query = select(ActivityEntry.action, n).group_by(ActivityEntry.action)
        if since is not None:
            query = query.where(ActivityEntry.created_at >= normalize_timestamp(since))
        async with self._read() as session:
            result = await session.execute(query.order_by(n.desc(), ActivityEntry.action))
            return [(action, int(count)) for action, count in result.all()]
