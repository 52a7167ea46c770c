"""
Append-only entry store interface and an in-memory reference store.

The store owns the chain tip. Writers enter ``writer()``, which admits one
writer at a time, read the tip and insert the next entry inside the same
section; the insert becomes visible only when the section exits cleanly.
Stores expose no update or delete operation.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

from auditchain.core.errors import AppendLockTimeoutError, SequenceConflictError
from auditchain.services.activity.model import ActivityRecord


class EntryWriter(Protocol):
    """Operations available inside the single-writer section."""

    async def get_tip(self) -> ActivityRecord | None: ...

    async def insert(self, record: ActivityRecord) -> None: ...


class EntryStore(Protocol):
    """Persistence boundary consumed by the appender and the verifier."""

    def writer(self, timeout: float | None = None) -> AbstractAsyncContextManager[EntryWriter]:
        ...

    async def insert(self, record: ActivityRecord) -> None: ...

    async def get_tip(self) -> ActivityRecord | None: ...

    async def range(self, from_seq: int, to_seq: int) -> list[ActivityRecord]: ...

    async def latest(self, limit: int, up_to_seq: int | None = None) -> list[ActivityRecord]: ...

    async def count(self, up_to_seq: int | None = None) -> int: ...

    async def get(self, entry_id: str) -> ActivityRecord | None: ...


async def acquire_writer_lock(lock: asyncio.Lock, timeout: float | None) -> None:
    """Acquire ``lock`` within ``timeout`` seconds or raise AppendLockTimeoutError."""
    try:
        await asyncio.wait_for(lock.acquire(), timeout)
    except TimeoutError as exc:
        raise AppendLockTimeoutError(timeout) from exc


class _StagedWriter:
    def __init__(self, store: InMemoryEntryStore) -> None:
        self._store = store
        self.staged: list[ActivityRecord] = []

    async def get_tip(self) -> ActivityRecord | None:
        if self.staged:
            return self.staged[-1]
        return await self._store.get_tip()

    async def insert(self, record: ActivityRecord) -> None:
        taken = {r.sequence_number for r in self.staged}
        if record.sequence_number in taken or record.sequence_number in self._store._by_seq:
            raise SequenceConflictError(record.sequence_number)
        self.staged.append(record)


class InMemoryEntryStore:
    """
    Reference EntryStore kept in process memory.

    Suitable for tests and single-process tools. ``entries`` seeds the store
    as-is (for example a snapshot being re-verified); no chain checks are
    made on seeding.
    """

    def __init__(self, entries: Iterable[ActivityRecord] = ()) -> None:
        self._by_seq: dict[int, ActivityRecord] = {}
        self._by_id: dict[str, ActivityRecord] = {}
        self._lock = asyncio.Lock()
        for record in entries:
            self._by_seq[record.sequence_number] = record
            self._by_id[record.id] = record

    @asynccontextmanager
    async def writer(self, timeout: float | None = None) -> AsyncIterator[EntryWriter]:
        await acquire_writer_lock(self._lock, timeout)
        try:
            staged = _StagedWriter(self)
            yield staged
            for record in staged.staged:
                self._by_seq[record.sequence_number] = record
                self._by_id[record.id] = record
        finally:
            self._lock.release()

    async def insert(self, record: ActivityRecord) -> None:
        async with self.writer() as w:
            await w.insert(record)

    async def get_tip(self) -> ActivityRecord | None:
        if not self._by_seq:
            return None
        return self._by_seq[max(self._by_seq)]

    async def range(self, from_seq: int, to_seq: int) -> list[ActivityRecord]:
        return [self._by_seq[s] for s in sorted(self._by_seq) if from_seq <= s <= to_seq]

    async def latest(self, limit: int, up_to_seq: int | None = None) -> list[ActivityRecord]:
        seqs = sorted(s for s in self._by_seq if up_to_seq is None or s <= up_to_seq)
        return [self._by_seq[s] for s in seqs[-limit:]] if limit > 0 else []

    async def count(self, up_to_seq: int | None = None) -> int:
        if up_to_seq is None:
            return len(self._by_seq)
        return sum(1 for s in self._by_seq if s <= up_to_seq)

    async def get(self, entry_id: str) -> ActivityRecord | None:
        return self._by_id.get(entry_id)

    def __len__(self) -> int:
        return len(self._by_seq)
