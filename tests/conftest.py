import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from db import db
from db.db import Question, Recipient


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeTransport:
    """Records every send; behaviour is set per test."""

    def __init__(self, result: bool = True, exc: Exception | None = None, delay: float = 0.0):
        self.result = result
        self.exc = exc
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    async def send(self, to: str, body: str) -> bool:
        self.calls.append((to, body))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return self.result


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = db.make_engine(f"sqlite:///{tmp_path / 'scheduler.db'}")
    await db.create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return db.make_session_maker(engine)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def now():
    return datetime(2024, 7, 1, 16, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(now):
    return FakeClock(now)


async def add_recipient(session_maker, phone="+15550000001", **kwargs) -> int:
    kwargs.setdefault("preferred_time", "09:00")
    kwargs.setdefault("timezone", "America/New_York")
    kwargs.setdefault("category_preferences", ["general"])
    async with session_maker() as s, s.begin():
        recipient = Recipient(phone_number=phone, **kwargs)
        s.add(recipient)
        await s.flush()
        return recipient.id


async def add_questions(session_maker, count=3, category="general", correct="B") -> list[int]:
    async with session_maker() as s, s.begin():
        questions = [
            Question(
                question_text=f"{category} question {i}?",
                option_a="one",
                option_b="two",
                option_c="three",
                option_d="four",
                correct_answer=correct,
                explanation=f"Because of fact {i}.",
                category=category,
            )
            for i in range(count)
        ]
        s.add_all(questions)
        await s.flush()
        return [q.id for q in questions]


async def add_entry(session_maker, recipient_id, scheduled_for, content_id) -> int:
    async with session_maker() as s, s.begin():
        entry = await db.insert_queue_entry(s, recipient_id, scheduled_for, content_id)
        return entry.id


async def get_entry(session_maker, entry_id):
    async with session_maker() as s:
        return await s.get(db.QueueEntry, entry_id)
