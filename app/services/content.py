"""
Default content selection: a DB-backed multiple-choice question catalogue.

The scheduler only depends on the :class:`ContentSelector` protocol; this
module is the stock implementation used when nothing else is injected.
"""

from __future__ import annotations

import logging
import random
from typing import Protocol, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.db import Question, Recipient

_LOGGER = logging.getLogger(__name__)

DEFAULT_CATEGORY = "general"
MAX_SMS_CHARS = 1400
_CANDIDATE_POOL = 10


class ContentSelector(Protocol):
    async def select_content(
        self,
        session: AsyncSession,
        recipient_id: int,
        excluded_ids: Sequence[int],
        category_hint: str | None,
    ) -> int | None: ...

    async def render_message(self, session: AsyncSession, content_id: int, recipient: Recipient) -> str | None: ...


def category_hint_for(recipient: Recipient) -> str:
    """Rotate through the recipient's preferred categories, one per answer."""
    prefs = list(recipient.category_preferences or []) or [DEFAULT_CATEGORY]
    return prefs[(recipient.questions_answered or 0) % len(prefs)]


def format_question(question: Question, number: int) -> str:
    message = (
        f"🧠 Q#{number}: {question.question_text}\n\n"
        f"A) {question.option_a}\n"
        f"B) {question.option_b}\n"
        f"C) {question.option_c}\n"
        f"D) {question.option_d}\n\n"
        "Reply A, B, C, or D"
    )
    if len(message) > MAX_SMS_CHARS:
        message = (
            f"🧠 Q#{number}: {question.question_text}\n\n"
            f"A){question.option_a}\nB){question.option_b}\n"
            f"C){question.option_c}\nD){question.option_d}\n\nReply A/B/C/D"
        )
    return message


class QuestionSelector:
    """Least-used-first random pick, never repeating a recipient's questions."""

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    async def _pick(
        self, session: AsyncSession, categories: Sequence[str] | None, excluded_ids: Sequence[int]
    ) -> Question | None:
        stmt = select(Question)
        if categories:
            stmt = stmt.where(Question.category.in_(list(categories)))
        if excluded_ids:
            stmt = stmt.where(Question.id.not_in(list(excluded_ids)))
        stmt = stmt.order_by(Question.usage_count, Question.id).limit(_CANDIDATE_POOL)
        candidates = (await session.execute(stmt)).scalars().all()
        if not candidates:
            return None
        return self._rng.choice(candidates)

    async def select_content(
        self,
        session: AsyncSession,
        recipient_id: int,
        excluded_ids: Sequence[int],
        category_hint: str | None,
    ) -> int | None:
        recipient = await session.get(Recipient, recipient_id)
        preferred = list(recipient.category_preferences or []) if recipient else []

        question = None
        if category_hint:
            question = await self._pick(session, [category_hint], excluded_ids)
        if question is None and preferred:
            _LOGGER.info(
                "No unused %s questions for recipient %s, widening to preferred categories",
                category_hint, recipient_id,
            )
            question = await self._pick(session, preferred, excluded_ids)
        if question is None:
            question = await self._pick(session, None, excluded_ids)
        if question is None:
            _LOGGER.warning("No questions available for recipient %s", recipient_id)
            return None

        await session.execute(
            update(Question)
            .where(Question.id == question.id)
            .values(usage_count=Question.usage_count + 1)
        )
        return question.id

    async def render_message(self, session: AsyncSession, content_id: int, recipient: Recipient) -> str | None:
        question = await session.get(Question, content_id)
        if question is None:
            return None
        return format_question(question, (recipient.questions_answered or 0) + 1)
