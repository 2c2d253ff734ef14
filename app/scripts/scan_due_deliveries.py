"""One-shot delivery tick for cron-style hosts.
Run via Railway schedule every minute:
    python -m app.scripts.scan_due_deliveries

Only sends what is due; queue population belongs to the daily task.
"""

from __future__ import annotations

import asyncio
import logging

from app.services.driver import get_driver, shutdown_driver
from config import settings

_LOGGER = logging.getLogger(__name__)


async def main() -> int:
    try:
        return await get_driver().run_delivery_tick()
    finally:
        await shutdown_driver()


if __name__ == "__main__":  # pragma: no cover
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    _LOGGER.info("[CRON] scan_due_deliveries: job started")
    try:
        processed = asyncio.run(main())
        _LOGGER.info("[CRON] scan_due_deliveries: job completed, %d entries processed", processed)
    except Exception:
        _LOGGER.exception("[CRON] scan_due_deliveries: job failed")
        raise SystemExit(1)
