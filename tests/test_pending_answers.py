import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.services.pending_answers import PendingAnswerTracker
from conftest import add_questions, add_recipient
from db.db import OpenInteraction, Recipient


async def _rows(session_maker, recipient_id):
    async with session_maker() as s:
        stmt = select(OpenInteraction).where(OpenInteraction.recipient_id == recipient_id)
        return (await s.execute(stmt.order_by(OpenInteraction.id))).scalars().all()


@pytest.mark.asyncio
async def test_concurrent_create_if_none_admits_exactly_one(session_maker, clock):
    qid = (await add_questions(session_maker, 1))[0]
    rid = await add_recipient(session_maker)
    tracker = PendingAnswerTracker(session_maker, clock=clock)

    results = await asyncio.gather(*(tracker.create_if_none(rid, qid) for _ in range(5)))

    assert sorted(results) == [False, False, False, False, True]
    assert len(await _rows(session_maker, rid)) == 1


@pytest.mark.asyncio
async def test_create_allowed_again_after_answer(session_maker, clock):
    qids = await add_questions(session_maker, 2)
    rid = await add_recipient(session_maker)
    tracker = PendingAnswerTracker(session_maker, clock=clock)

    assert await tracker.create_if_none(rid, qids[0])
    assert not await tracker.create_if_none(rid, qids[1])
    await tracker.record_response(rid, "a")
    assert await tracker.create_if_none(rid, qids[1])


@pytest.mark.asyncio
async def test_sweep_stale_removes_only_old_open_rows(session_maker, clock, now):
    qid = (await add_questions(session_maker, 1))[0]
    old = await add_recipient(session_maker, "+15550000001")
    fresh = await add_recipient(session_maker, "+15550000002")
    tracker = PendingAnswerTracker(session_maker, clock=clock)

    await tracker.create_if_none(old, qid)
    clock.advance(hours=20)
    await tracker.create_if_none(fresh, qid)
    clock.advance(hours=5)

    assert await tracker.sweep_stale(timedelta(hours=24)) == 1
    assert await _rows(session_maker, old) == []
    assert len(await _rows(session_maker, fresh)) == 1


@pytest.mark.asyncio
async def test_record_response_grades_and_scores(session_maker, clock, now):
    qid = (await add_questions(session_maker, 1, correct="C"))[0]
    rid = await add_recipient(session_maker, current_streak=2, total_score=500)
    tracker = PendingAnswerTracker(session_maker, clock=clock)
    await tracker.create_if_none(rid, qid)

    outcome = await tracker.record_response(rid, " c ")

    assert outcome.status == "recorded"
    assert outcome.is_correct
    assert outcome.correct_answer == "C"
    assert outcome.current_streak == 3
    assert outcome.points_earned == 102
    assert outcome.total_score == 602
    assert "winning bonus" in outcome.message

    (row,) = await _rows(session_maker, rid)
    assert (row.response, row.is_correct, row.points_earned, row.answered_at) == ("C", True, 102, now)
    async with session_maker() as s:
        recipient = await s.get(Recipient, rid)
        assert (recipient.questions_answered, recipient.correct_answers) == (1, 1)


@pytest.mark.asyncio
async def test_wrong_answer_resets_streak(session_maker, clock):
    qid = (await add_questions(session_maker, 1, correct="C"))[0]
    rid = await add_recipient(session_maker, current_streak=9)
    tracker = PendingAnswerTracker(session_maker, clock=clock)
    await tracker.create_if_none(rid, qid)

    outcome = await tracker.record_response(rid, "D")
    assert not outcome.is_correct
    assert outcome.points_earned == 10
    assert outcome.current_streak == 0


@pytest.mark.asyncio
async def test_invalid_and_unexpected_responses(session_maker, clock):
    qid = (await add_questions(session_maker, 1))[0]
    rid = await add_recipient(session_maker)
    tracker = PendingAnswerTracker(session_maker, clock=clock)

    assert (await tracker.record_response(rid, "B")).status == "no_open_interaction"

    await tracker.create_if_none(rid, qid)
    outcome = await tracker.record_response(rid, "maybe")
    assert outcome.status == "invalid_response"
    assert outcome.message == "Reply A, B, C, or D"
    # still open
    assert (await _rows(session_maker, rid))[0].response is None
