from datetime import datetime, timezone
from enum import Enum
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, Optional
import logging

_LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Transport considered down, reject sends


@dataclass
class CircuitBreaker:
    """Consecutive-failure gate in front of the SMS transport.

    Process-local and never persisted. Once open, the first ``is_healthy()``
    call after ``cooldown_seconds`` closes it again (the channel gets an
    optimistic retry; individual deliveries never do).
    """

    name: str = "sms"
    failure_threshold: int = 5
    cooldown_seconds: float = 300.0
    clock: Clock = _utcnow

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _consecutive_failures: int = field(default=0, init=False)
    _total_failures: int = field(default=0, init=False)
    _last_failure_time: Optional[datetime] = field(default=None, init=False)
    _lock: Lock = field(default_factory=Lock, init=False)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def _cooldown_elapsed(self) -> bool:
        """Must be called while holding self._lock."""
        if self._last_failure_time is None:
            return True
        elapsed = (self.clock() - self._last_failure_time).total_seconds()
        return elapsed >= self.cooldown_seconds

    def is_healthy(self) -> bool:
        with self._lock:
            if self._state == CircuitState.OPEN:
                if not self._cooldown_elapsed():
                    return False
                self._state = CircuitState.CLOSED
                self._consecutive_failures = 0
                _LOGGER.warning("Circuit %s: OPEN -> CLOSED (cooldown elapsed, retrying channel)", self.name)
            return True

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            if self._state == CircuitState.OPEN:
                self._state = CircuitState.CLOSED
                _LOGGER.info("Circuit %s: OPEN -> CLOSED (send succeeded)", self.name)

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._total_failures += 1
            self._last_failure_time = self.clock()
            if self._state == CircuitState.CLOSED and self._consecutive_failures >= self.failure_threshold:
                self._state = CircuitState.OPEN
                _LOGGER.warning(
                    "Circuit %s: CLOSED -> OPEN (%d consecutive failures)",
                    self.name,
                    self._consecutive_failures,
                )

    def force_reset(self) -> None:
        """Operator reset: close the breaker and forget the failure streak."""
        with self._lock:
            old_state = self._state
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._last_failure_time = None
        _LOGGER.warning("Circuit %s: manually reset (was %s)", self.name, old_state.value)

    def get_status(self) -> Dict[str, Any]:
        healthy = self.is_healthy()
        with self._lock:
            return {
                "name": self.name,
                "healthy": healthy,
                "circuit_open": self._state == CircuitState.OPEN,
                "consecutive_failures": self._consecutive_failures,
                "total_failures": self._total_failures,
                "last_failure_at": self._last_failure_time,
                "failure_threshold": self.failure_threshold,
                "cooldown_seconds": self.cooldown_seconds,
            }
