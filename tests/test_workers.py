from datetime import date

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.celery_app import celery_app
from app.services import driver as driver_module
from app.services.circuit_breaker import CircuitBreaker
from app.scripts import scan_due_deliveries
from app.workers import scheduler as scheduler_worker
from conftest import FakeTransport


def test_beat_schedule_covers_all_ticks():
    schedule = celery_app.conf.beat_schedule
    tasks = {entry["task"] for entry in schedule.values()}
    assert tasks == {
        "app.workers.scheduler.populate_daily",
        "app.workers.scheduler.deliver_due",
        "app.workers.scheduler.run_maintenance",
    }
    assert schedule["deliver-due-messages"]["schedule"] == 60.0


def test_tasks_never_retry():
    for task in (
        scheduler_worker.populate_daily,
        scheduler_worker.deliver_due,
        scheduler_worker.run_maintenance,
        scheduler_worker.reset_circuit_breaker,
    ):
        assert task.max_retries == 0


class _StubDriver:
    def __init__(self, fail=False):
        self.fail = fail
        self.populated = []

    async def run_delivery_tick(self):
        if self.fail:
            raise RuntimeError("database unreachable")
        return 3

    async def populate_now(self, target_date):
        self.populated.append(target_date)
        return 2


def test_deliver_due_runs_one_tick(monkeypatch):
    monkeypatch.setattr(scheduler_worker, "get_driver", lambda: _StubDriver())
    assert scheduler_worker.deliver_due.apply().get() == 3


def test_deliver_due_propagates_store_errors(monkeypatch):
    monkeypatch.setattr(scheduler_worker, "get_driver", lambda: _StubDriver(fail=True))
    result = scheduler_worker.deliver_due.apply()
    assert result.failed()
    with pytest.raises(RuntimeError, match="database unreachable"):
        result.get()


def test_populate_daily_accepts_explicit_date(monkeypatch):
    driver = _StubDriver()
    monkeypatch.setattr(scheduler_worker, "get_driver", lambda: driver)
    assert scheduler_worker.populate_daily.apply(args=("2024-07-01",)).get() == 2
    assert driver.populated == [date(2024, 7, 1)]


def test_reset_circuit_breaker_closes_the_worker_breaker(monkeypatch):
    # the reset never touches the store
    worker_driver = driver_module.SchedulerDriver(
        async_sessionmaker(), transport=FakeTransport(), breaker=CircuitBreaker(failure_threshold=1)
    )
    worker_driver.breaker.record_failure()
    monkeypatch.setattr(driver_module, "_driver", worker_driver)
    assert not driver_module.get_driver().breaker.is_healthy()

    status = scheduler_worker.reset_circuit_breaker.apply().get()
    assert status["healthy"] is True
    assert driver_module.get_driver().breaker.is_healthy()


@pytest.mark.asyncio
async def test_cron_script_runs_only_the_delivery_tick(monkeypatch):
    class _CronDriver(_StubDriver):
        async def startup(self):
            raise AssertionError("population belongs to the daily task")

    monkeypatch.setattr(driver_module, "_driver", _CronDriver())
    assert await scan_due_deliveries.main() == 3
    assert driver_module._driver is None
