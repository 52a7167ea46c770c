"""Unit tests for auditchain.services.activity.sql_store against SQLite."""
import asyncio
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import delete, update

from auditchain.core.errors import ImmutableEntryError, SequenceConflictError
from auditchain.db.models.activity import ActivityEntry
from auditchain.schemas.activity import FailureReason
from auditchain.services.activity.canonical import GENESIS_HASH
from auditchain.services.activity.verifier import ChainVerifier

pytestmark = pytest.mark.asyncio

ROLE = {"type": "role", "id": "r1", "displayName": "Editors"}


async def _append(appender, n: int, action: str = "roles.create", actor_id: str = "user-1"):
    return [
        await appender.append(
            actor_id=actor_id,
            action=action,
            target=ROLE,
            related_targets=[{"type": "user", "id": f"u{i}"}],
            metadata={"index": i, "ratio": 1.0, "note": "Zoë"},
        )
        for i in range(n)
    ]


# ─── Round trip ───────────────────────────────────────────────────────────────

async def test_appended_entries_read_back_unchanged(sql_appender, sql_store):
    written = await _append(sql_appender, 3)
    read = await sql_store.range(1, 3)
    assert read == written


async def test_read_back_entries_verify(sql_appender, sql_store, signer):
    await _append(sql_appender, 4)
    result = await ChainVerifier(sql_store, signer=signer).verify(mode="full")
    assert result.valid is True
    assert result.checked_entries == 4


async def test_tip_and_count(sql_appender, sql_store):
    assert await sql_store.get_tip() is None
    assert await sql_store.count() == 0
    written = await _append(sql_appender, 3)
    tip = await sql_store.get_tip()
    assert tip.sequence_number == 3
    assert tip.entry_hash == written[-1].entry_hash
    assert await sql_store.count() == 3
    assert await sql_store.count(up_to_seq=2) == 2


async def test_first_entry_links_to_genesis(sql_appender, sql_store):
    await _append(sql_appender, 1)
    (entry,) = await sql_store.range(1, 1)
    assert entry.prev_hash == GENESIS_HASH


async def test_latest_returns_ascending_window(sql_appender, sql_store):
    await _append(sql_appender, 6)
    window = await sql_store.latest(3)
    assert [e.sequence_number for e in window] == [4, 5, 6]
    bounded = await sql_store.latest(3, up_to_seq=4)
    assert [e.sequence_number for e in bounded] == [2, 3, 4]


async def test_get_by_id(sql_appender, sql_store):
    (entry,) = await _append(sql_appender, 1)
    assert await sql_store.get(entry.id) == entry
    assert await sql_store.get("missing") is None


async def test_created_at_comes_back_as_utc(sql_appender, sql_store):
    (entry,) = await _append(sql_appender, 1)
    read = await sql_store.get(entry.id)
    assert read.created_at.tzinfo is not None
    assert read.created_at.utcoffset() == timedelta(0)
    assert read.created_at == entry.created_at


# ─── Concurrency ──────────────────────────────────────────────────────────────

async def test_concurrent_appends_form_one_chain(sql_appender, sql_store):
    await asyncio.gather(
        *(
            sql_appender.append(actor_id=f"user-{i}", action="roles.create", target=ROLE)
            for i in range(20)
        )
    )
    entries = await sql_store.range(1, 100)
    assert [e.sequence_number for e in entries] == list(range(1, 21))
    for before, after in zip(entries, entries[1:]):
        assert after.prev_hash == before.entry_hash


async def test_duplicate_sequence_is_rejected(sql_appender, sql_store):
    (entry,) = await _append(sql_appender, 1)
    duplicate = replace(entry, id="another-id", entry_hash="f" * 64)
    with pytest.raises(SequenceConflictError):
        await sql_store.insert(duplicate)
    assert await sql_store.count() == 1


# ─── Immutability ─────────────────────────────────────────────────────────────

async def test_orm_update_is_refused(sql_appender, session_factory):
    (entry,) = await _append(sql_appender, 1)
    async with session_factory() as session:
        row = await session.get(ActivityEntry, entry.id)
        row.action = "roles.delete"
        with pytest.raises(ImmutableEntryError):
            await session.flush()


async def test_orm_delete_is_refused(sql_appender, session_factory):
    (entry,) = await _append(sql_appender, 1)
    async with session_factory() as session:
        row = await session.get(ActivityEntry, entry.id)
        await session.delete(row)
        with pytest.raises(ImmutableEntryError):
            await session.flush()


# ─── Tampering below the ORM ──────────────────────────────────────────────────

async def test_direct_sql_metadata_edit_is_detected(sql_appender, sql_store, session_factory, signer):
    await _append(sql_appender, 5)
    async with session_factory() as session:
        await session.execute(
            update(ActivityEntry.__table__)
            .where(ActivityEntry.__table__.c.sequence_number == 3)
            .values(**{"metadata": {"index": 2, "ratio": 1.0, "note": "edited"}})
        )
        await session.commit()

    result = await ChainVerifier(sql_store, signer=signer).verify(mode="full")
    assert result.valid is False
    assert result.broken_at.sequence_number == 3
    assert result.broken_at.reason == FailureReason.CONTENT_MODIFIED


async def test_direct_sql_delete_is_detected(sql_appender, sql_store, session_factory, signer):
    await _append(sql_appender, 5)
    async with session_factory() as session:
        await session.execute(
            delete(ActivityEntry.__table__).where(
                ActivityEntry.__table__.c.sequence_number == 3
            )
        )
        await session.commit()

    result = await ChainVerifier(sql_store, signer=signer).verify(mode="full")
    assert result.broken_at.sequence_number == 4
    assert result.broken_at.reason == FailureReason.CHAIN_BREAK


async def test_direct_sql_timestamp_edit_is_detected(sql_appender, sql_store, session_factory, signer):
    await _append(sql_appender, 3)
    async with session_factory() as session:
        await session.execute(
            update(ActivityEntry.__table__)
            .where(ActivityEntry.__table__.c.sequence_number == 2)
            .values(created_at=datetime(2020, 1, 1, tzinfo=UTC))
        )
        await session.commit()

    result = await ChainVerifier(sql_store, signer=signer).verify(mode="full")
    assert result.broken_at.sequence_number == 2
    assert result.broken_at.reason == FailureReason.CONTENT_MODIFIED


# ─── Browsing ─────────────────────────────────────────────────────────────────

async def test_search_filters_and_paginates(sql_appender, sql_store):
    await _append(sql_appender, 3, action="roles.create", actor_id="alice")
    await _append(sql_appender, 2, action="sessions.revoke", actor_id="bob")

    items, total = await sql_store.search(limit=2)
    assert total == 5
    assert [e.sequence_number for e in items] == [5, 4]

    items, total = await sql_store.search(actor_id="alice")
    assert total == 3
    assert all(e.actor_id == "alice" for e in items)

    items, total = await sql_store.search(resource="sessions")
    assert total == 2
    assert {e.action for e in items} == {"sessions.revoke"}

    items, total = await sql_store.search(action="roles.create", offset=2, limit=2)
    assert total == 3
    assert [e.sequence_number for e in items] == [1]


async def test_search_by_time_window(sql_appender, sql_store, clock):
    start = clock.now
    await _append(sql_appender, 4)
    items, total = await sql_store.search(
        start=start + timedelta(seconds=1), end=start + timedelta(seconds=2)
    )
    assert total == 2
    assert [e.sequence_number for e in items] == [3, 2]


async def test_distinct_actions(sql_appender, sql_store):
    await _append(sql_appender, 2, action="sessions.revoke")
    await _append(sql_appender, 1, action="roles.create")
    assert await sql_store.distinct_actions() == ["roles.create", "sessions.revoke"]


async def test_distinct_resources(sql_appender, sql_store):
    await _append(sql_appender, 1, action="sessions.revoke")
    await _append(sql_appender, 1, action="sessions.revoke_all")
    await _append(sql_appender, 1, action="roles.create")
    assert await sql_store.distinct_resources() == ["roles", "sessions"]


async def test_action_counts_most_frequent_first(sql_appender, sql_store, clock):
    await _append(sql_appender, 1, action="roles.create")
    since = clock.now
    await _append(sql_appender, 3, action="sessions.revoke")
    await _append(sql_appender, 1, action="roles.create")

    assert await sql_store.action_counts() == [("sessions.revoke", 3), ("roles.create", 2)]
    assert await sql_store.action_counts(since=since) == [
        ("sessions.revoke", 3),
        ("roles.create", 1),
    ]



# ─── Verification alongside appends ───────────────────────────────────────────

async def test_full_verification_runs_alongside_appends(sql_appender, sql_store, signer):
    await _append(sql_appender, 30)

    async def keep_appending():
        for i in range(15):
            await sql_appender.append(
                actor_id="user-2",
                action="roles.update",
                target=ROLE,
                metadata={"changes": [{"field": "n", "from": i, "to": i + 1}]},
            )

    result, _ = await asyncio.gather(
        ChainVerifier(sql_store, signer=signer, chunk_size=10).verify(mode="full"),
        keep_appending(),
    )

    assert result.valid is True
    assert 30 <= result.to_sequence <= 45
    assert result.checked_entries == result.total_entries == result.to_sequence
    assert await sql_store.count() == 45
