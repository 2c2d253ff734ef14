import logging
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status

from app.celery_app import celery_app
from app.services.driver import SchedulerDriver, get_driver, shutdown_driver
from app.types.delivery_contract import (
    MaintenanceReport,
    MaintenanceRequest,
    PopulateRequest,
    QueueStatusReport,
    TickRequest,
)
from config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
_LOGGER = logging.getLogger(__name__)

app = FastAPI(title="Daily SMS scheduler admin")

RESET_BREAKER_TASK = "app.workers.scheduler.reset_circuit_breaker"


# --------------------------------------------
# Lifecycle
# --------------------------------------------

def get_scheduler() -> SchedulerDriver:
    return get_driver()


@app.on_event("startup")
async def startup_event():
    driver = get_driver()  # tables are managed via Alembic migrations
    _LOGGER.info("Scheduler driver ready (breaker healthy: %s)", driver.breaker.is_healthy())


@app.on_event("shutdown")
async def shutdown_event():
    await shutdown_driver()


def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    if settings.ADMIN_API_KEY and x_admin_key != settings.ADMIN_API_KEY:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid admin key")


# --------------------------------------------
# Endpoints
# --------------------------------------------

@app.get("/health")
async def health(driver: SchedulerDriver = Depends(get_scheduler)):
    breaker = driver.circuit_breaker_status()
    return {
        "status": "ok" if breaker["healthy"] else "degraded",
        "circuit_breaker": breaker,
        "environment": settings.RAILWAY_ENVIRONMENT,
    }


@app.post("/admin/queue/populate", dependencies=[Depends(require_admin)])
async def populate_queue(
    body: Optional[PopulateRequest] = None,
    driver: SchedulerDriver = Depends(get_scheduler),
):
    target = (body.target_date if body else None) or datetime.now(timezone.utc).date()
    _LOGGER.info("[Admin] populate requested for %s", target)
    created = await driver.populate_now(target)
    return {"target_date": target.isoformat(), "created": created}


@app.post("/admin/queue/tick", dependencies=[Depends(require_admin)])
async def delivery_tick(
    body: Optional[TickRequest] = None,
    driver: SchedulerDriver = Depends(get_scheduler),
):
    now = (body.now if body else None) or datetime.now(timezone.utc)
    _LOGGER.info("[Admin] delivery tick requested at %s", now.isoformat())
    processed = await driver.run_delivery_tick(now)
    return {"now": now, "processed": processed}


@app.get("/admin/queue/status", response_model=QueueStatusReport, dependencies=[Depends(require_admin)])
async def queue_status(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    driver: SchedulerDriver = Depends(get_scheduler),
):
    for value in (start, end):
        if value is not None and value.tzinfo is None:
            raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, "start/end must include a UTC offset")
    if start is None:
        start = datetime.combine(datetime.now(timezone.utc).date(), time.min, tzinfo=timezone.utc)
    if end is None:
        end = start + timedelta(days=1)
    if end <= start:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, "end must be after start")
    return await driver.get_queue_status(start, end)


@app.get("/admin/circuit-breaker", dependencies=[Depends(require_admin)])
async def circuit_breaker_status(driver: SchedulerDriver = Depends(get_scheduler)):
    return driver.circuit_breaker_status()


@app.post("/admin/circuit-breaker/reset", dependencies=[Depends(require_admin)])
async def reset_circuit_breaker(driver: SchedulerDriver = Depends(get_scheduler)):
    """Reset this process's breaker and the worker's, which gates the ticks."""
    _LOGGER.warning("[Admin] circuit breaker reset requested")
    breaker = driver.force_reset_circuit_breaker()
    try:
        result = celery_app.send_task(RESET_BREAKER_TASK, queue="scheduler")
    except Exception:  # noqa: BLE001
        _LOGGER.exception("[Admin] could not reach the scheduler worker")
        return {"circuit_breaker": breaker, "worker_notified": False, "task_id": None}
    return {"circuit_breaker": breaker, "worker_notified": True, "task_id": result.id}


@app.post("/admin/maintenance", response_model=MaintenanceReport, dependencies=[Depends(require_admin)])
async def maintenance(
    body: Optional[MaintenanceRequest] = None,
    driver: SchedulerDriver = Depends(get_scheduler),
):
    return await driver.run_maintenance((body.now if body else None) or datetime.now(timezone.utc))
