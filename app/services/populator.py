"""
Daily queue population.

For every active recipient, work out the UTC instant of their preferred
local time on the target date, pre-select the question they will get, and
store one pending delivery row. Running it twice for the same date adds
nothing the second time.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.services import clock
from app.services.content import ContentSelector, category_hint_for
from app.types.errors import ScheduleInputError
from db import db
from db.db import Recipient

_LOGGER = logging.getLogger(__name__)


class QueuePopulator:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession], content: ContentSelector):
        self._session_maker = session_maker
        self._content = content

    async def populate(self, target_date: date) -> int:
        """Create today's pending entries for *target_date*; returns how many."""
        async with self._session_maker() as s:
            recipients = await db.fetch_active_recipients(s)
        _LOGGER.info("Populating delivery queue for %s (%d active recipients)", target_date, len(recipients))

        created = 0
        for recipient in recipients:
            try:
                if await self._populate_one(recipient, target_date):
                    created += 1
            except ScheduleInputError as exc:
                _LOGGER.error(
                    "Skipping recipient %s: bad schedule %r %r (%s)",
                    recipient.id, recipient.preferred_time, recipient.timezone, exc,
                )
            except IntegrityError:
                _LOGGER.info("Recipient %s already queued for %s by a concurrent run", recipient.id, target_date)
            except DBAPIError:
                # store unreachable: the tick fails as a whole
                raise
            except Exception:
                _LOGGER.exception("Failed to schedule recipient %s for %s", recipient.id, target_date)

        _LOGGER.info("Scheduled %d deliveries for %s", created, target_date)
        return created

    async def _populate_one(self, recipient: Recipient, target_date: date) -> bool:
        day_start, day_end = clock.local_day_bounds(recipient.timezone, target_date)
        send_at = clock.to_utc(recipient.preferred_time, recipient.timezone, target_date)

        async with self._session_maker() as s, s.begin():
            if await db.live_entry_exists(s, recipient.id, day_start, day_end):
                return False

            excluded = await db.consumed_content_ids(s, recipient.id)
            hint = category_hint_for(recipient)
            content_id = await self._content.select_content(s, recipient.id, excluded, hint)
            await db.insert_queue_entry(s, recipient.id, send_at, content_id)

        _LOGGER.info(
            "Scheduled recipient %s for %s (local %s %s %s) with content %s",
            recipient.id, send_at.isoformat(), clock.local_date(send_at, recipient.timezone),
            recipient.preferred_time, recipient.timezone,
            content_id if content_id is not None else "none",
        )
        return True
