from datetime import datetime, timezone

from app.services.circuit_breaker import CircuitBreaker, CircuitState
from conftest import FakeClock


def _breaker(clock, threshold=3, cooldown=60.0):
    return CircuitBreaker(name="test", failure_threshold=threshold, cooldown_seconds=cooldown, clock=clock)


def test_opens_after_threshold_consecutive_failures():
    breaker = _breaker(FakeClock(datetime(2024, 1, 1, tzinfo=timezone.utc)))
    for _ in range(2):
        breaker.record_failure()
        assert breaker.is_healthy()
    breaker.record_failure()
    assert breaker.state is CircuitState.OPEN
    assert not breaker.is_healthy()


def test_success_resets_the_streak():
    breaker = _breaker(FakeClock(datetime(2024, 1, 1, tzinfo=timezone.utc)))
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    assert breaker.is_healthy()
    assert breaker.consecutive_failures == 1


def test_cooldown_closes_on_next_health_check():
    clock = FakeClock(datetime(2024, 1, 1, tzinfo=timezone.utc))
    breaker = _breaker(clock, threshold=1, cooldown=60)
    breaker.record_failure()
    clock.advance(seconds=59)
    assert not breaker.is_healthy()
    clock.advance(seconds=1)
    assert breaker.is_healthy()
    assert breaker.state is CircuitState.CLOSED
    assert breaker.consecutive_failures == 0


def test_force_reset_and_status():
    clock = FakeClock(datetime(2024, 1, 1, tzinfo=timezone.utc))
    breaker = _breaker(clock, threshold=2)
    breaker.record_failure()
    breaker.record_failure()

    status = breaker.get_status()
    assert status["circuit_open"] is True
    assert status["healthy"] is False
    assert status["consecutive_failures"] == 2
    assert status["last_failure_at"] == clock.now

    breaker.force_reset()
    status = breaker.get_status()
    assert status["healthy"] is True
    assert status["circuit_open"] is False
    assert status["consecutive_failures"] == 0
    assert status["total_failures"] == 2
