from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError, StatementError

from conftest import add_entry, add_questions, add_recipient, get_entry
from db import db
from db.db import OpenInteraction, QueueEntry


def test_build_url_adds_async_drivers():
    assert db._build_url("postgres://u:p@h/d") == "postgresql+asyncpg://u:p@h/d"
    assert db._build_url("postgresql://u:p@h/d") == "postgresql+asyncpg://u:p@h/d"
    assert db._build_url("sqlite:///tmp/x.db") == "sqlite+aiosqlite:///tmp/x.db"


@pytest.mark.asyncio
async def test_insert_naive_datetime_raises(session_maker):
    rid = await add_recipient(session_maker)
    with pytest.raises(StatementError, match="timezone-aware"):
        await add_entry(session_maker, rid, datetime(2025, 4, 25, 15, 0, 0), None)  # Naive!


@pytest.mark.asyncio
async def test_aware_datetime_round_trips_as_utc(session_maker):
    rid = await add_recipient(session_maker)
    plus_two = timezone(timedelta(hours=2))
    entry_id = await add_entry(session_maker, rid, datetime(2025, 4, 25, 15, 0, tzinfo=plus_two), None)

    entry = await get_entry(session_maker, entry_id)
    assert entry.scheduled_for == datetime(2025, 4, 25, 13, 0, tzinfo=timezone.utc)
    assert entry.scheduled_for.tzinfo == timezone.utc


@pytest.mark.asyncio
async def test_one_live_entry_per_slot(session_maker):
    rid = await add_recipient(session_maker)
    slot = datetime(2025, 4, 25, 13, 0, tzinfo=timezone.utc)
    first = await add_entry(session_maker, rid, slot, None)
    with pytest.raises(IntegrityError):
        await add_entry(session_maker, rid, slot, None)

    async with session_maker() as s, s.begin():
        assert await db.resolve_entry(s, first, db.STATUS_FAILED, at=slot, error="x")
    # a failed row frees the slot
    await add_entry(session_maker, rid, slot, None)


@pytest.mark.asyncio
async def test_resolve_entry_is_single_shot(session_maker):
    rid = await add_recipient(session_maker)
    slot = datetime(2025, 4, 25, 13, 0, tzinfo=timezone.utc)
    entry_id = await add_entry(session_maker, rid, slot, None)

    async with session_maker() as s, s.begin():
        assert await db.resolve_entry(s, entry_id, db.STATUS_FAILED, at=slot, error="first")
        assert not await db.resolve_entry(s, entry_id, db.STATUS_SENT, at=slot)
        assert await db.lock_pending_entry(s, entry_id) is None

    entry = await get_entry(session_maker, entry_id)
    assert (entry.status, entry.attempts, entry.error_message) == ("failed", 1, "first")

    async with session_maker() as s:
        with pytest.raises(ValueError):
            await db.resolve_entry(s, entry_id, db.STATUS_PENDING, at=slot)


@pytest.mark.asyncio
async def test_second_open_interaction_violates_partial_index(session_maker):
    qid = (await add_questions(session_maker, 1))[0]
    rid = await add_recipient(session_maker)
    async with session_maker() as s, s.begin():
        s.add(OpenInteraction(recipient_id=rid, content_id=qid, response="A"))
        s.add(OpenInteraction(recipient_id=rid, content_id=qid))
    with pytest.raises(IntegrityError):
        async with session_maker() as s, s.begin():
            s.add(OpenInteraction(recipient_id=rid, content_id=qid))


@pytest.mark.asyncio
async def test_delete_stale_pending_entries_keeps_resolved_rows(session_maker):
    rid = await add_recipient(session_maker)
    old = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
    stale = await add_entry(session_maker, rid, old, None)
    resolved = await add_entry(session_maker, rid, old + timedelta(days=1), None)
    async with session_maker() as s, s.begin():
        await db.resolve_entry(s, resolved, db.STATUS_FAILED, at=old, error="missed window")
        removed = await db.delete_stale_pending_entries(s, old + timedelta(days=30))
    assert removed == 1
    async with session_maker() as s:
        assert await s.get(QueueEntry, stale) is None
        assert await s.get(QueueEntry, resolved) is not None


@pytest.mark.asyncio
async def test_failed_row_reserves_content_only_when_dispatched(session_maker):
    qids = await add_questions(session_maker, 2)
    rid = await add_recipient(session_maker)
    slot = datetime(2025, 4, 25, 13, 0, tzinfo=timezone.utc)
    undelivered = await add_entry(session_maker, rid, slot, qids[0])
    dispatched = await add_entry(session_maker, rid, slot + timedelta(days=1), qids[1])

    async with session_maker() as s, s.begin():
        await db.resolve_entry(s, undelivered, db.STATUS_FAILED, at=slot, error="transport circuit open")
        await db.resolve_entry(
            s, dispatched, db.STATUS_FAILED, at=slot, error="duplicate interaction prevented", dispatched=True
        )

    async with session_maker() as s:
        assert await db.consumed_content_ids(s, rid) == [qids[1]]


@pytest.mark.asyncio
async def test_expire_overdue_entries_only_touches_old_pending_rows(session_maker):
    rid = await add_recipient(session_maker)
    now = datetime(2025, 4, 25, 13, 0, tzinfo=timezone.utc)
    overdue = await add_entry(session_maker, rid, now - timedelta(hours=30), None)
    recent = await add_entry(session_maker, rid, now - timedelta(hours=1), None)

    async with session_maker() as s, s.begin():
        expired = await db.expire_overdue_entries(s, now - timedelta(hours=24), at=now, error="missed window")
    assert expired == 1

    entry = await get_entry(session_maker, overdue)
    assert (entry.status, entry.attempts, entry.error_message) == ("failed", 1, "missed window")
    assert entry.dispatched is False
    assert (await get_entry(session_maker, recent)).status == "pending"
