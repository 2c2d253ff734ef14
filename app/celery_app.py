"""Celery application instance for the delivery scheduler.

Start a worker with the embedded beat scheduler (one process, so the
circuit breaker and tick locks are shared by every tick):
    celery -A app.celery_app worker -B -Q scheduler -l info --concurrency=1
"""

import logging

from celery import Celery
from celery.schedules import crontab

from config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

BROKER_URL = settings.REDIS_URL

celery_app = Celery("daily_sms_scheduler", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings: a tick lost with its worker is not redelivered
celery_app.conf.task_acks_late = False
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True

celery_app.conf.task_routes = {
    "app.workers.scheduler.*": {"queue": "scheduler"},
}

celery_app.conf.beat_schedule = {
    # Queue tomorrow's deliveries once a day
    "populate-delivery-queue": {
        "task": "app.workers.scheduler.populate_daily",
        "schedule": crontab(hour=settings.POPULATE_HOUR_UTC, minute=0),
    },
    # Send whatever is due
    "deliver-due-messages": {
        "task": "app.workers.scheduler.deliver_due",
        "schedule": settings.DELIVERY_TICK_SECONDS,
    },
    # Drop stale open interactions and undeliverable queue rows
    "scheduler-maintenance": {
        "task": "app.workers.scheduler.run_maintenance",
        "schedule": crontab(hour=(settings.POPULATE_HOUR_UTC + 12) % 24, minute=30),
    },
}

# --- Ensure tasks are registered ---
import app.workers.scheduler  # noqa: E402,F401
