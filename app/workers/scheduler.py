"""Periodic scheduler tasks (populate, deliver, maintenance)."""

from __future__ import annotations

import asyncio
from datetime import date
import logging

from celery.signals import worker_ready

from app.celery_app import celery_app
from app.services.driver import get_driver

_LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.scheduler.populate_daily", bind=True, max_retries=0)
def populate_daily(self, target_date: str | None = None):  # noqa: D401
    """Queue tomorrow's deliveries (or *target_date*, ISO format)."""
    driver = get_driver()
    try:
        if target_date:
            created = asyncio.run(driver.populate_now(date.fromisoformat(target_date)))
        else:
            created = asyncio.run(driver.run_daily_populate())
    except Exception:
        _LOGGER.exception("Populate tick failed")
        raise
    return created


@celery_app.task(name="app.workers.scheduler.deliver_due", bind=True, max_retries=0)
def deliver_due(self):  # noqa: D401
    """Run one delivery tick."""
    try:
        processed = asyncio.run(get_driver().run_delivery_tick())
    except Exception:
        _LOGGER.exception("Delivery tick failed")
        raise
    if processed:
        _LOGGER.info("Delivery tick processed %d entries", processed)
    return processed


@celery_app.task(name="app.workers.scheduler.run_maintenance", bind=True, max_retries=0)
def run_maintenance(self):  # noqa: D401
    """Sweep stale open interactions and stale pending queue rows."""
    try:
        report = asyncio.run(get_driver().run_maintenance())
    except Exception:
        _LOGGER.exception("Maintenance tick failed")
        raise
    return report.model_dump()


@celery_app.task(name="app.workers.scheduler.reset_circuit_breaker", bind=True, max_retries=0)
def reset_circuit_breaker(self):  # noqa: D401
    """Close the worker's circuit breaker (sent by the admin API)."""
    status = get_driver().force_reset_circuit_breaker()
    _LOGGER.warning("Circuit breaker reset on admin request")
    return status


@worker_ready.connect
def _populate_on_startup(sender=None, **kwargs):
    try:
        asyncio.run(get_driver().startup())
    except Exception:
        _LOGGER.exception("Startup population failed")
