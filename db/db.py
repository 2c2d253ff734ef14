"""
Async DB helpers for the daily delivery scheduler.
Uses SQLAlchemy 2.0 + asyncpg driver (aiosqlite for local/test runs) – no
raw SQL strings in app code.

Every helper takes the caller's ``AsyncSession`` so that the services decide
where transaction boundaries go.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy import (
    JSON, CheckConstraint, DateTime, ForeignKey, Index, String, Text,
    TypeDecorator, delete, event, func, or_, select, text, update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config import settings

# Queue entry lifecycle
STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    SQLite has no TIMESTAMPTZ, so values are normalised to UTC on the way
    in and re-tagged as UTC on the way out. Naive datetimes are rejected.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError("datetime values must be timezone-aware")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ──────────────────────────────────────────────────────────────────────
# 1. Declarative metadata
# ──────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    pass

# ──────────────────────────────────────────────────────────────────────
# 2. Lazy engine / session factory
# ──────────────────────────────────────────────────────────────────────
_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None

def _build_url(url: str | None = None) -> str:
    url = url or os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if url.startswith("sqlite") and "+aiosqlite" not in url:
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if "+asyncpg" not in url and not url.startswith("sqlite"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url

def _serialise_sqlite_writers(sync_engine: Engine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite's implicit BEGIN is deferred, which lets two connections read
    the same "no open interaction" state and then race on the write. BEGIN
    IMMEDIATE turns the read-count-then-insert into a serialised unit.
    """

    @event.listens_for(sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

def make_engine(url: str | None = None, **kwargs: Any) -> AsyncEngine:
    url = _build_url(url)
    if url.startswith("sqlite"):
        engine = create_async_engine(url, **kwargs)
        _serialise_sqlite_writers(engine.sync_engine)
        return engine
    if "poolclass" not in kwargs:
        kwargs.setdefault("pool_size", 5)
        kwargs.setdefault("max_overflow", 5)
    return create_async_engine(url, **kwargs)

def make_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)

def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = make_engine()
    return _engine

def get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _session_maker
    if _session_maker is None:
        _session_maker = make_session_maker(get_engine())
    return _session_maker

# ──────────────────────────────────────────────────────────────────────
# 3. ORM models
# ──────────────────────────────────────────────────────────────────────

class Recipient(Base):
    __tablename__ = "recipients"

    id:                   Mapped[int] = mapped_column(primary_key=True)
    phone_number:         Mapped[str] = mapped_column(String(32), unique=True)
    is_active:            Mapped[bool] = mapped_column(default=True)
    preferred_time:       Mapped[str] = mapped_column(String(5), default=settings.DEFAULT_PREFERRED_TIME)
    timezone:             Mapped[str] = mapped_column(String(64), default=settings.DEFAULT_TIMEZONE)
    category_preferences: Mapped[list[str]] = mapped_column(JSON, default=list)
    questions_answered:   Mapped[int] = mapped_column(default=0)
    correct_answers:      Mapped[int] = mapped_column(default=0)
    current_streak:       Mapped[int] = mapped_column(default=0)
    total_score:          Mapped[int] = mapped_column(default=0)
    last_delivery_at:     Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at:           Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class Question(Base):
    __tablename__ = "questions"

    id:             Mapped[int] = mapped_column(primary_key=True)
    question_text:  Mapped[str] = mapped_column(Text)
    option_a:       Mapped[str] = mapped_column(Text)
    option_b:       Mapped[str] = mapped_column(Text)
    option_c:       Mapped[str] = mapped_column(Text)
    option_d:       Mapped[str] = mapped_column(Text)
    correct_answer: Mapped[str] = mapped_column(String(1))
    explanation:    Mapped[str] = mapped_column(Text, default="")
    category:       Mapped[str] = mapped_column(String(64), index=True)
    usage_count:    Mapped[int] = mapped_column(default=0)
    created_at:     Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class QueueEntry(Base):
    __tablename__ = "delivery_queue"

    id:            Mapped[int] = mapped_column(primary_key=True)
    recipient_id:  Mapped[int] = mapped_column(ForeignKey("recipients.id"), index=True)
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime)
    status:        Mapped[str] = mapped_column(String(16), default=STATUS_PENDING)
    attempts:      Mapped[int] = mapped_column(default=0)
    content_id:    Mapped[int | None] = mapped_column(ForeignKey("questions.id"), nullable=True)
    sent_at:       Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispatched:    Mapped[bool] = mapped_column(default=False)
    created_at:    Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)

    __table_args__ = (
        # one live (non-failed) row per recipient slot
        Index(
            "uq_delivery_queue_live_slot",
            "recipient_id",
            "scheduled_for",
            unique=True,
            postgresql_where=text("status <> 'failed'"),
            sqlite_where=text("status <> 'failed'"),
        ),
        Index("ix_delivery_queue_due", "status", "attempts", "scheduled_for"),
        CheckConstraint("attempts IN (0, 1)", name="ck_delivery_queue_attempts"),
        CheckConstraint(
            "status IN ('pending', 'sent', 'failed')", name="ck_delivery_queue_status"
        ),
    )


class OpenInteraction(Base):
    __tablename__ = "open_interactions"

    id:            Mapped[int] = mapped_column(primary_key=True)
    recipient_id:  Mapped[int] = mapped_column(ForeignKey("recipients.id"), index=True)
    content_id:    Mapped[int] = mapped_column(ForeignKey("questions.id"))
    response:      Mapped[str | None] = mapped_column(String(16), nullable=True)
    is_correct:    Mapped[bool] = mapped_column(default=False)
    points_earned: Mapped[int] = mapped_column(default=0)
    created_at:    Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    answered_at:   Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_open_interactions_one_open",
            "recipient_id",
            unique=True,
            postgresql_where=text("response IS NULL"),
            sqlite_where=text("response IS NULL"),
        ),
    )


# ──────────────────────────────────────────────────────────────────────
# 4. DDL helper (tests and local dev; production uses Alembic)
# ──────────────────────────────────────────────────────────────────────
async def create_all(engine: AsyncEngine | None = None):
    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ──────────────────────────────────────────────────────────────────────
# 5. Query helpers
# ──────────────────────────────────────────────────────────────────────

# 5.1 Recipients -------------------------------------------------------
async def fetch_active_recipients(session: AsyncSession) -> Sequence[Recipient]:
    res = await session.execute(
        select(Recipient).where(Recipient.is_active.is_(True)).order_by(Recipient.id)
    )
    return res.scalars().all()


async def consumed_content_ids(session: AsyncSession, recipient_id: int) -> list[int]:
    """Content already delivered to, or reserved for, a recipient.

    A failed row still counts when its content reached the transport.
    """
    delivered = select(OpenInteraction.content_id).where(
        OpenInteraction.recipient_id == recipient_id
    )
    reserved = select(QueueEntry.content_id).where(
        QueueEntry.recipient_id == recipient_id,
        QueueEntry.content_id.is_not(None),
        or_(QueueEntry.status != STATUS_FAILED, QueueEntry.dispatched.is_(True)),
    )
    res = await session.execute(delivered.union(reserved))
    return sorted(cid for cid in res.scalars() if cid is not None)


# 5.2 Queue population -------------------------------------------------
async def live_entry_exists(
    session: AsyncSession, recipient_id: int, start: datetime, end: datetime
) -> bool:
    stmt = (
        select(QueueEntry.id)
        .where(
            QueueEntry.recipient_id == recipient_id,
            QueueEntry.status != STATUS_FAILED,
            QueueEntry.scheduled_for >= start,
            QueueEntry.scheduled_for < end,
        )
        .limit(1)
    )
    return (await session.execute(stmt)).first() is not None


async def insert_queue_entry(
    session: AsyncSession,
    recipient_id: int,
    scheduled_for: datetime,
    content_id: int | None,
) -> QueueEntry:
    entry = QueueEntry(
        recipient_id=recipient_id,
        scheduled_for=scheduled_for,
        status=STATUS_PENDING,
        attempts=0,
        content_id=content_id,
    )
    session.add(entry)
    await session.flush()
    return entry


# 5.3 Claim / resolve due entries --------------------------------------
async def fetch_due_entry_ids(
    session: AsyncSession, window_start: datetime, window_end: datetime, limit: int
) -> list[int]:
    stmt = (
        select(QueueEntry.id)
        .where(
            QueueEntry.status == STATUS_PENDING,
            QueueEntry.attempts == 0,
            QueueEntry.scheduled_for >= window_start,
            QueueEntry.scheduled_for <= window_end,
        )
        .order_by(QueueEntry.scheduled_for, QueueEntry.id)
        .limit(limit)
    )
    res = await session.execute(stmt)
    return list(res.scalars())


async def lock_pending_entry(session: AsyncSession, entry_id: int) -> QueueEntry | None:
    """Re-read an entry under a row lock; None if another worker resolved it."""
    stmt = (
        select(QueueEntry)
        .where(
            QueueEntry.id == entry_id,
            QueueEntry.status == STATUS_PENDING,
            QueueEntry.attempts == 0,
        )
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def resolve_entry(
    session: AsyncSession,
    entry_id: int,
    status: str,
    *,
    at: datetime,
    content_id: int | None = None,
    error: str | None = None,
    dispatched: bool = False,
) -> bool:
    """Single-attempt transition: pending/0 → sent|failed/1. False if lost.

    *dispatched* marks that the transport was called for this row; a sent
    row always is.
    """
    if status not in (STATUS_SENT, STATUS_FAILED):
        raise ValueError(f"'{status}' is not a terminal queue status")
    values: dict[str, Any] = {"status": status, "attempts": 1}
    if status == STATUS_SENT:
        values.update(sent_at=at, content_id=content_id, error_message=None, dispatched=True)
    else:
        values.update(error_message=error, dispatched=dispatched)
    stmt = (
        update(QueueEntry)
        .where(
            QueueEntry.id == entry_id,
            QueueEntry.status == STATUS_PENDING,
            QueueEntry.attempts == 0,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def expire_overdue_entries(
    session: AsyncSession, older_than: datetime, *, at: datetime, error: str
) -> int:
    """Fail every untouched pending row scheduled before *older_than*."""
    res = await session.execute(
        update(QueueEntry)
        .where(
            QueueEntry.status == STATUS_PENDING,
            QueueEntry.attempts == 0,
            QueueEntry.scheduled_for < older_than,
        )
        .values(status=STATUS_FAILED, attempts=1, error_message=error)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0


# 5.4 Reporting / cleanup ----------------------------------------------
async def fetch_entries_between(
    session: AsyncSession, start: datetime, end: datetime
) -> Sequence[QueueEntry]:
    stmt = (
        select(QueueEntry)
        .where(QueueEntry.scheduled_for >= start, QueueEntry.scheduled_for < end)
        .order_by(QueueEntry.scheduled_for, QueueEntry.id)
    )
    return (await session.execute(stmt)).scalars().all()


async def delete_stale_pending_entries(session: AsyncSession, older_than: datetime) -> int:
    res = await session.execute(
        delete(QueueEntry)
        .where(QueueEntry.status == STATUS_PENDING, QueueEntry.scheduled_for < older_than)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0


# 5.5 Open interactions ------------------------------------------------
async def count_open_interactions(session: AsyncSession, recipient_id: int) -> int:
    res = await session.execute(
        select(func.count())
        .select_from(OpenInteraction)
        .where(OpenInteraction.recipient_id == recipient_id, OpenInteraction.response.is_(None))
    )
    return int(res.scalar_one())


async def fetch_open_interaction(session: AsyncSession, recipient_id: int) -> OpenInteraction | None:
    stmt = (
        select(OpenInteraction)
        .where(OpenInteraction.recipient_id == recipient_id, OpenInteraction.response.is_(None))
        .order_by(OpenInteraction.created_at.desc())
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def delete_stale_open_interactions(session: AsyncSession, older_than: datetime) -> int:
    res = await session.execute(
        delete(OpenInteraction)
        .where(OpenInteraction.response.is_(None), OpenInteraction.created_at < older_than)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0


async def dispose_engine():
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_maker = None
