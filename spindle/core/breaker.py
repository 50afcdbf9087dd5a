"""Per task type circuit breakers.

A breaker watches a sliding window of recent handler outcomes for one task
type. When the failure rate in the window crosses the configured threshold
the circuit opens and the dispatcher stops invoking that type's handler,
re-queueing its tasks instead. After a cool-down one trial task is let
through (half-open); its outcome closes or re-opens the circuit.

Breaker state lives in memory and is owned by a single dispatcher. Losing it
on restart only costs a few extra failing calls.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Deque, Dict, Tuple

from ..lib.utils import utc_now
from ..schemas.config import BreakerSettings

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerConfig:
    enabled: bool = True
    window_size: int = 20
    window_seconds: float = 300.0
    min_calls: int = 5
    failure_rate_threshold: float = 0.5
    cooldown_seconds: float = 60.0

    @classmethod
    def from_settings(cls, settings: BreakerSettings) -> "BreakerConfig":
        return cls(**settings)


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        config: BreakerConfig,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.name = name
        self.config = config
        self._clock = clock
        self._outcomes: Deque[Tuple[datetime, bool]] = deque(maxlen=config.window_size)
        self._state = CircuitState.CLOSED
        self._opened_at: datetime | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def opened_at(self) -> datetime | None:
        return self._opened_at

    def failure_rate(self) -> float:
        self._prune()
        if not self._outcomes:
            return 0.0
        failures = sum(1 for _, ok in self._outcomes if not ok)
        return failures / len(self._outcomes)

    def allow(self) -> bool:
        """Decide whether a task of this type may run now.

        Moving from open to half-open hands out the single trial slot, so a
        True result in that state obliges the caller to record an outcome or
        call ``abandon``.
        """
        if not self.config.enabled or self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if self._cooldown_remaining() > 0:
                return False
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = True
            logger.info("Circuit for '%s' half-open, allowing one trial task", self.name)
            return True

        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._close()
            return
        self._record(True)

    def record_failure(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._open()
            return
        self._record(False)
        if self._state == CircuitState.CLOSED and self._should_trip():
            self._open()

    def abandon(self) -> None:
        """Release a half-open trial slot without recording an outcome."""
        self._trial_in_flight = False

    def retry_after(self) -> timedelta:
        """How long a short-circuited task should wait before it is claimable."""
        if self._state == CircuitState.OPEN:
            remaining = self._cooldown_remaining()
            return timedelta(seconds=remaining or self.config.cooldown_seconds)
        return timedelta(seconds=self.config.cooldown_seconds)

    def _record(self, success: bool) -> None:
        self._outcomes.append((self._clock(), success))

    def _should_trip(self) -> bool:
        self._prune()
        if len(self._outcomes) < self.config.min_calls:
            return False
        return self.failure_rate() >= self.config.failure_rate_threshold

    def _prune(self) -> None:
        if not self.config.window_seconds:
            return
        horizon = self._clock() - timedelta(seconds=self.config.window_seconds)
        while self._outcomes and self._outcomes[0][0] < horizon:
            self._outcomes.popleft()

    def _cooldown_remaining(self) -> float:
        if self._opened_at is None:
            return 0.0
        elapsed = (self._clock() - self._opened_at).total_seconds()
        return max(self.config.cooldown_seconds - elapsed, 0.0)

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        logger.warning(
            "Circuit for '%s' opened (failure rate %.0f%%), pausing dispatch for %ss",
            self.name,
            self.failure_rate() * 100,
            self.config.cooldown_seconds,
        )

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._opened_at = None
        self._trial_in_flight = False
        self._outcomes.clear()
        logger.info("Circuit for '%s' closed, dispatch resumed", self.name)


class CircuitBreakerBoard:
    """All circuit breakers of one dispatcher, created lazily per task type."""

    def __init__(
        self,
        config: BreakerConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or BreakerConfig()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, task_type: str) -> CircuitBreaker:
        breaker = self._breakers.get(task_type)
        if breaker is None:
            breaker = CircuitBreaker(task_type, self.config, self._clock)
            self._breakers[task_type] = breaker
        return breaker

    def allow(self, task_type: str) -> bool:
        return self.get(task_type).allow()

    def record(self, task_type: str, success: bool) -> None:
        breaker = self.get(task_type)
        if success:
            breaker.record_success()
        else:
            breaker.record_failure()

    def abandon(self, task_type: str) -> None:
        self.get(task_type).abandon()

    def retry_after(self, task_type: str) -> timedelta:
        return self.get(task_type).retry_after()

    def snapshot(self) -> Dict[str, CircuitState]:
        return {name: breaker.state for name, breaker in self._breakers.items()}
