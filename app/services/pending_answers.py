"""
Pending-answer tracking: at most one open (unanswered) question per recipient.

The check-and-create runs as one transactional unit. On PostgreSQL the
partial unique index ``uq_open_interactions_one_open`` turns a lost race
into an ``IntegrityError``; on SQLite the engine's BEGIN IMMEDIATE
serialises writers. Either way a lost race is reported as ``False``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.services.scoring import points_breakdown
from app.types.delivery_contract import ResponseOutcome
from db import db
from db.db import OpenInteraction, Question, Recipient

_LOGGER = logging.getLogger(__name__)

VALID_RESPONSES = frozenset("ABCD")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingAnswerTracker:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_maker = session_maker
        self._clock = clock

    # ------------------------------------------------------------------
    # Check-and-create
    # ------------------------------------------------------------------
    async def create_if_none(
        self, recipient_id: int, content_id: int, session: AsyncSession | None = None
    ) -> bool:
        """Open a new interaction unless one is already open. True if created.

        With *session*, runs inside a savepoint of the caller's transaction so
        the caller's queue-row update commits or rolls back together with it.
        """
        if session is not None:
            return await self._create_in(session, recipient_id, content_id)
        async with self._session_maker() as s, s.begin():
            return await self._create_in(s, recipient_id, content_id)

    async def _create_in(self, session: AsyncSession, recipient_id: int, content_id: int) -> bool:
        try:
            async with session.begin_nested():
                if await db.count_open_interactions(session, recipient_id) > 0:
                    _LOGGER.info("Recipient %s already has an open interaction", recipient_id)
                    return False
                session.add(
                    OpenInteraction(
                        recipient_id=recipient_id,
                        content_id=content_id,
                        response=None,
                        created_at=self._clock(),
                    )
                )
                await session.flush()
        except IntegrityError:
            _LOGGER.info("Open interaction for recipient %s created concurrently", recipient_id)
            return False
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    async def sweep_stale(self, max_age: timedelta, now: datetime | None = None) -> int:
        """Delete open interactions older than *max_age* that were never answered."""
        cutoff = (now or self._clock()) - max_age
        async with self._session_maker() as s, s.begin():
            removed = await db.delete_stale_open_interactions(s, cutoff)
        if removed:
            _LOGGER.info("Swept %d stale open interactions (created before %s)", removed, cutoff.isoformat())
        return removed

    # ------------------------------------------------------------------
    # Reply processing
    # ------------------------------------------------------------------
    async def record_response(
        self, recipient_id: int, response: str, now: datetime | None = None
    ) -> ResponseOutcome:
        answered_at = now or self._clock()
        answer = (response or "").strip().upper()

        async with self._session_maker() as s, s.begin():
            interaction = await db.fetch_open_interaction(s, recipient_id)
            if interaction is None:
                return ResponseOutcome(
                    status="no_open_interaction",
                    recipient_id=recipient_id,
                    response=answer or None,
                    message="No recent question found. Please wait for your next daily question.",
                )
            if answer not in VALID_RESPONSES:
                return ResponseOutcome(
                    status="invalid_response",
                    recipient_id=recipient_id,
                    interaction_id=interaction.id,
                    content_id=interaction.content_id,
                    response=answer or None,
                    message="Reply A, B, C, or D",
                )

            recipient = await s.get(Recipient, recipient_id, with_for_update=True)
            question = await s.get(Question, interaction.content_id)
            correct = question.correct_answer.strip().upper() if question else None
            is_correct = answer == correct
            streak = (recipient.current_streak + 1) if (recipient and is_correct) else 0
            points = points_breakdown(is_correct, streak)

            closed = await s.execute(
                update(OpenInteraction)
                .where(OpenInteraction.id == interaction.id, OpenInteraction.response.is_(None))
                .values(
                    response=answer,
                    is_correct=is_correct,
                    points_earned=points.total,
                    answered_at=answered_at,
                )
                .execution_options(synchronize_session=False)
            )
            if closed.rowcount != 1:
                return ResponseOutcome(
                    status="no_open_interaction",
                    recipient_id=recipient_id,
                    response=answer,
                    message="You've already answered this question. Wait for your next daily question!",
                )

            if recipient is not None:
                recipient.questions_answered += 1
                recipient.correct_answers += 1 if is_correct else 0
                recipient.total_score += points.total
                recipient.current_streak = streak

            _LOGGER.info(
                "Recipient %s answered %s on question %s (%s, +%d)",
                recipient_id, answer, interaction.content_id,
                "correct" if is_correct else "incorrect", points.total,
            )
            return ResponseOutcome(
                status="recorded",
                recipient_id=recipient_id,
                interaction_id=interaction.id,
                content_id=interaction.content_id,
                response=answer,
                is_correct=is_correct,
                correct_answer=correct,
                explanation=question.explanation if question else None,
                points_earned=points.total,
                current_streak=streak,
                total_score=recipient.total_score if recipient else points.total,
                message=points.message,
            )
