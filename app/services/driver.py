"""
Scheduler driver: wires the queue populator, delivery executor, pending-answer
tracker and circuit breaker together and exposes the periodic ticks plus the
admin operations.

One driver per process. The circuit breaker is process-local, so the same
driver instance must serve every tick for its state to mean anything; use
``get_driver()`` from long-lived runtimes (Celery worker, FastAPI app).
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.services.circuit_breaker import CircuitBreaker
from app.services.content import ContentSelector, QuestionSelector
from app.services.executor import DeliveryExecutor
from app.services.pending_answers import PendingAnswerTracker
from app.services.populator import QueuePopulator
from app.types.delivery_contract import (
    MaintenanceReport,
    QueueEntryView,
    QueueStatusReport,
    ResponseOutcome,
)
from app.utils.sms import TelnyxTransport, Transport
from config import settings
from db import db

_LOGGER = logging.getLogger(__name__)

POPULATE = "populate"
DELIVERY = "delivery"
MAINTENANCE = "maintenance"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerDriver:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        transport: Transport | None = None,
        content: ContentSelector | None = None,
        breaker: CircuitBreaker | None = None,
        clock: Callable[[], datetime] = _utcnow,
        grace: timedelta | None = None,
        lookbehind: timedelta | None = None,
        batch_size: int | None = None,
        send_delay: float | None = None,
        send_timeout: float | None = None,
    ):
        self._session_maker = session_maker
        self._clock = clock
        self.breaker = breaker or CircuitBreaker(
            name="sms",
            failure_threshold=settings.BREAKER_FAILURE_THRESHOLD,
            cooldown_seconds=settings.BREAKER_COOLDOWN_SECONDS,
        )
        self.transport = transport or TelnyxTransport()
        self.content = content or QuestionSelector()
        self.tracker = PendingAnswerTracker(session_maker, clock=clock)
        self.populator = QueuePopulator(session_maker, self.content)
        self.executor = DeliveryExecutor(
            session_maker,
            self.transport,
            self.breaker,
            self.tracker,
            self.content,
            grace=grace if grace is not None else timedelta(minutes=settings.DELIVERY_GRACE_MINUTES),
            lookbehind=lookbehind if lookbehind is not None else timedelta(hours=settings.DELIVERY_LOOKBEHIND_HOURS),
            batch_size=batch_size if batch_size is not None else settings.DELIVERY_BATCH_SIZE,
            send_delay=send_delay if send_delay is not None else settings.DELIVERY_SEND_DELAY_SECONDS,
            send_timeout=send_timeout if send_timeout is not None else settings.DELIVERY_SEND_TIMEOUT_SECONDS,
            clock=clock,
        )
        self._locks = {kind: threading.Lock() for kind in (POPULATE, DELIVERY, MAINTENANCE)}

    def _try_acquire(self, kind: str) -> bool:
        if self._locks[kind].acquire(blocking=False):
            return True
        _LOGGER.warning("Previous %s tick still running, skipping this one", kind)
        return False

    # ------------------------------------------------------------------
    # Periodic ticks
    # ------------------------------------------------------------------
    async def populate_now(self, target_date: date | None = None) -> int:
        """Populate the queue for *target_date* (default: today, UTC)."""
        target_date = target_date or self._clock().date()
        if not self._try_acquire(POPULATE):
            return 0
        try:
            return await self.populator.populate(target_date)
        finally:
            self._locks[POPULATE].release()

    async def run_daily_populate(self, now: datetime | None = None) -> int:
        """Daily tick: queue tomorrow's deliveries."""
        now = now or self._clock()
        return await self.populate_now(now.date() + timedelta(days=1))

    async def run_delivery_tick(self, now: datetime | None = None) -> int:
        if not self._try_acquire(DELIVERY):
            return 0
        try:
            return await self.executor.run(now or self._clock())
        finally:
            self._locks[DELIVERY].release()

    async def run_maintenance(self, now: datetime | None = None) -> MaintenanceReport:
        now = now or self._clock()
        if not self._try_acquire(MAINTENANCE):
            return MaintenanceReport()
        try:
            swept = await self.tracker.sweep_stale(
                timedelta(hours=settings.INTERACTION_RETENTION_HOURS), now=now
            )
            cutoff = now - timedelta(days=settings.QUEUE_RETENTION_DAYS)
            async with self._session_maker() as s, s.begin():
                stale = await db.delete_stale_pending_entries(s, cutoff)
            if stale:
                _LOGGER.info("Removed %d stale pending entries scheduled before %s", stale, cutoff.isoformat())
            return MaintenanceReport(stale_interactions_removed=swept, stale_entries_removed=stale)
        finally:
            self._locks[MAINTENANCE].release()

    async def startup(self, now: datetime | None = None) -> None:
        """Populate today if nothing is queued for it yet, then tomorrow."""
        now = now or self._clock()
        today = now.date()
        start = datetime.combine(today, time.min, tzinfo=timezone.utc)
        async with self._session_maker() as s:
            queued = await db.fetch_entries_between(s, start, start + timedelta(days=1))
        if not queued:
            _LOGGER.info("Queue empty for %s, populating on startup", today)
            await self.populate_now(today)
        await self.populate_now(today + timedelta(days=1))

    # ------------------------------------------------------------------
    # Admin / reply processing
    # ------------------------------------------------------------------
    async def get_queue_status(self, start: datetime, end: datetime) -> QueueStatusReport:
        async with self._session_maker() as s:
            entries = await db.fetch_entries_between(s, start, end)
        counts = Counter(e.status for e in entries)
        return QueueStatusReport(
            start=start,
            end=end,
            total=len(entries),
            counts={status: counts.get(status, 0) for status in (db.STATUS_PENDING, db.STATUS_SENT, db.STATUS_FAILED)},
            entries=[QueueEntryView.model_validate(e) for e in entries],
        )

    def force_reset_circuit_breaker(self) -> dict:
        self.breaker.force_reset()
        return self.breaker.get_status()

    def circuit_breaker_status(self) -> dict:
        return self.breaker.get_status()

    async def record_response(self, recipient_id: int, response: str) -> ResponseOutcome:
        return await self.tracker.record_response(recipient_id, response)


# ──────────────────────────────────────────────────────────────────────
# Process-wide instance
# ──────────────────────────────────────────────────────────────────────
_driver: Optional[SchedulerDriver] = None
_driver_engine = None


def get_driver() -> SchedulerDriver:
    """Lazily build the process driver.

    Celery tasks drive the async code through ``asyncio.run`` (a fresh loop
    per tick), so pooled connections must not outlive a tick: NullPool.
    """
    global _driver, _driver_engine
    if _driver is None:
        _driver_engine = db.make_engine(poolclass=NullPool)
        _driver = SchedulerDriver(db.make_session_maker(_driver_engine))
    return _driver


def reset_driver() -> None:
    global _driver, _driver_engine
    _driver = None
    _driver_engine = None


async def shutdown_driver() -> None:
    """Dispose the process driver's engine and forget the driver."""
    engine = _driver_engine
    reset_driver()
    if engine is not None:
        await engine.dispose()
