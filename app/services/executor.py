"""
Delivery executor: send every due queue entry exactly once, or fail it.

Each entry is handled in its own transaction that holds the row lock from
the moment it is re-read until its terminal status is written, so a second
worker (or an admin "tick now" running alongside the scheduled tick) skips
it instead of sending twice. There is no retry: ``failed`` is terminal.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.services.circuit_breaker import CircuitBreaker
from app.services.content import ContentSelector
from app.services.pending_answers import PendingAnswerTracker
from app.utils.sms import Transport
from db import db
from db.db import STATUS_FAILED, STATUS_SENT, QueueEntry, Recipient

_LOGGER = logging.getLogger(__name__)

MISSED_WINDOW = "missed window"
RECIPIENT_NOT_FOUND = "recipient not found"
RECIPIENT_INACTIVE = "recipient inactive"
NO_CONTENT = "no content assigned"
CIRCUIT_OPEN = "transport circuit open"
SEND_FAILED = "transport send failed"
SEND_TIMEOUT = "transport timeout"
DUPLICATE_PREVENTED = "duplicate interaction prevented"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryExecutor:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        transport: Transport,
        breaker: CircuitBreaker,
        tracker: PendingAnswerTracker,
        content: ContentSelector,
        *,
        grace: timedelta = timedelta(minutes=5),
        lookbehind: timedelta = timedelta(hours=24),
        batch_size: int = 10,
        send_delay: float = 1.0,
        send_timeout: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_maker = session_maker
        self._transport = transport
        self._breaker = breaker
        self._tracker = tracker
        self._content = content
        self.grace = grace
        self.lookbehind = max(lookbehind, grace)
        self.batch_size = batch_size
        self.send_delay = send_delay
        self.send_timeout = send_timeout
        self._clock = clock

    async def run(self, now: datetime | None = None) -> int:
        """Process due entries around *now*; returns how many were resolved."""
        now = now or self._clock()
        expired = await self._expire_overdue(now)
        async with self._session_maker() as s:
            due = await db.fetch_due_entry_ids(
                s, now - self.lookbehind, now + self.grace, self.batch_size
            )
        if not due:
            _LOGGER.debug("No deliveries due at %s", now.isoformat())
            return expired
        if len(due) >= self.batch_size:
            _LOGGER.warning("Rate limiting: batch of %d full, the rest waits for the next tick", self.batch_size)
        _LOGGER.info("Found %d deliveries to process", len(due))

        processed = expired
        for entry_id in due:
            resolved, sent = await self._process(entry_id, now)
            if resolved:
                processed += 1
            if sent and self.send_delay > 0:
                await asyncio.sleep(self.send_delay)
        return processed

    async def _expire_overdue(self, now: datetime) -> int:
        """Fail pending rows that fell behind the lookbehind window."""
        async with self._session_maker() as s, s.begin():
            expired = await db.expire_overdue_entries(
                s, now - self.lookbehind, at=now, error=MISSED_WINDOW
            )
        if expired:
            _LOGGER.warning("Expired %d deliveries older than %s", expired, self.lookbehind)
        return expired

    # ------------------------------------------------------------------
    # One entry
    # ------------------------------------------------------------------
    async def _process(self, entry_id: int, now: datetime) -> tuple[bool, bool]:
        """Returns (resolved, transport_called)."""
        async with self._session_maker() as s, s.begin():
            entry = await db.lock_pending_entry(s, entry_id)
            if entry is None:
                _LOGGER.info("Delivery %s already handled elsewhere, skipping", entry_id)
                return False, False

            if entry.scheduled_for < now - self.grace:
                await self._fail(s, entry, MISSED_WINDOW, now)
                return True, False

            recipient = await s.get(Recipient, entry.recipient_id)
            if recipient is None:
                await self._fail(s, entry, RECIPIENT_NOT_FOUND, now)
                return True, False
            if not recipient.is_active:
                await self._fail(s, entry, RECIPIENT_INACTIVE, now)
                return True, False

            body = None
            if entry.content_id is not None:
                body = await self._content.render_message(s, entry.content_id, recipient)
            if body is None:
                await self._fail(s, entry, NO_CONTENT, now)
                return True, False

            if not self._breaker.is_healthy():
                await self._fail(s, entry, CIRCUIT_OPEN, now)
                return True, False

            error = await self._send(recipient.phone_number, body)
            if error is not None:
                self._breaker.record_failure()
                await self._fail(s, entry, error, now, dispatched=True)
                return True, True
            self._breaker.record_success()

            if not await self._tracker.create_if_none(recipient.id, entry.content_id, session=s):
                await self._fail(s, entry, DUPLICATE_PREVENTED, now, dispatched=True)
                return True, True

            sent_at = self._clock()
            recipient.last_delivery_at = sent_at
            await db.resolve_entry(s, entry.id, STATUS_SENT, at=sent_at, content_id=entry.content_id)
            _LOGGER.info(
                "Delivery %s sent to recipient %s (scheduled %s)",
                entry.id, recipient.id, entry.scheduled_for.isoformat(),
            )
            return True, True

    async def _send(self, to: str, body: str) -> str | None:
        """Call the transport once. Returns None on success, else the error text."""
        try:
            ok = await asyncio.wait_for(self._transport.send(to, body), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            return SEND_TIMEOUT
        except Exception as exc:  # noqa: BLE001
            return str(exc) or exc.__class__.__name__
        return None if ok else SEND_FAILED

    async def _fail(
        self, session: AsyncSession, entry: QueueEntry, reason: str, now: datetime, *, dispatched: bool = False
    ) -> None:
        won = await db.resolve_entry(
            session, entry.id, STATUS_FAILED, at=now, error=reason, dispatched=dispatched
        )
        if won:
            _LOGGER.warning("Delivery %s for recipient %s failed: %s", entry.id, entry.recipient_id, reason)
        else:
            _LOGGER.error("Delivery %s changed state while failing it (%s)", entry.id, reason)
