"""
Per-driver circuit breaker.

Prevents a failing provider from being hammered and from degrading unrelated
drivers. Failures are tracked in a sliding time window; the circuit opens when
the failure ratio in that window exceeds the configured threshold.

States:
- CLOSED: calls pass through, outcomes are counted
- OPEN: calls fail fast with CircuitOpenError, no network attempt is made
- HALF_OPEN: after the cooldown a single trial call is admitted; success
  closes the circuit, failure reopens it with a fresh cooldown
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from provisioner.config import Settings
from provisioner.core.errors import CircuitOpenError, TransientProviderError

logger = structlog.get_logger()

T = TypeVar("T")


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitStatus:
    """Circuit breaker status information."""

    driver: str
    state: CircuitState
    calls: int
    failures: int
    retry_after: float

    @property
    def is_allowing_requests(self) -> bool:
        return self.state is not CircuitState.OPEN


class CircuitBreaker:
    """
    Circuit breaker guarding outbound calls to one driver.

    Usage:
        breaker = CircuitBreaker("hetzner-eu")
        task_id = await breaker.call(driver.provision, spec, key)
    """

    def __init__(
        self,
        name: str,
        *,
        failure_ratio: float = 0.5,
        min_calls: int = 5,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 30.0,
        counted_exceptions: tuple[type[BaseException], ...] = (
            TransientProviderError,
            TimeoutError,
        ),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_ratio = failure_ratio
        self.min_calls = min_calls
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self.counted_exceptions = counted_exceptions
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._window: deque[tuple[float, bool]] = deque()
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._cooldown_elapsed():
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("circuit_half_open", driver=self.name)
        return self._state

    def retry_after(self) -> float:
        """Seconds until the circuit will admit a trial call."""
        if self.state is not CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.cooldown_seconds - self._clock())

    def allow_request(self) -> bool:
        state = self.state
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.HALF_OPEN:
            return not self._trial_in_flight
        return False

    def before_call(self) -> None:
        """Admit a call or raise CircuitOpenError."""
        state = self.state
        if state is CircuitState.CLOSED:
            return
        if state is CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            logger.info("circuit_trial_call", driver=self.name)
            return
        retry_after = self.retry_after() if state is CircuitState.OPEN else self.cooldown_seconds
        raise CircuitOpenError(self.name, retry_after)

    def record_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            logger.info("circuit_closed", driver=self.name)
            self._reset()
            return
        self._push(failed=False)

    def record_failure(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            logger.warning("circuit_reopened", driver=self.name)
            self._open()
            return
        self._push(failed=True)
        calls, failures = self._counts()
        if calls >= self.min_calls and failures / calls > self.failure_ratio:
            logger.warning(
                "circuit_opened",
                driver=self.name,
                calls=calls,
                failures=failures,
                cooldown=self.cooldown_seconds,
            )
            self._open()

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` through the breaker."""
        self.before_call()
        try:
            result = await func(*args, **kwargs)
        except self.counted_exceptions:
            self.record_failure()
            raise
        except BaseException:
            # the provider answered (or we were cancelled); not a health signal
            self._release_trial()
            raise
        self.record_success()
        return result

    def status(self) -> CircuitStatus:
        state = self.state
        calls, failures = self._counts()
        return CircuitStatus(
            driver=self.name,
            state=state,
            calls=calls,
            failures=failures,
            retry_after=self.retry_after(),
        )

    def _release_trial(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._trial_in_flight = False

    def _push(self, *, failed: bool) -> None:
        self._window.append((self._clock(), failed))
        self._prune()

    def _counts(self) -> tuple[int, int]:
        self._prune()
        failures = sum(1 for _, failed in self._window if failed)
        return len(self._window), failures

    def _prune(self) -> None:
        horizon = self._clock() - self.window_seconds
        while self._window and self._window[0][0] < horizon:
            self._window.popleft()

    def _cooldown_elapsed(self) -> bool:
        return self._opened_at is not None and self._clock() - self._opened_at >= self.cooldown_seconds

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._window.clear()
        self._trial_in_flight = False

    def _reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._opened_at = None
        self._window.clear()
        self._trial_in_flight = False


class CircuitBreakerRegistry:
    """One independent breaker per driver id, created on first use."""

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._settings = settings
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, driver: str) -> CircuitBreaker:
        breaker = self._breakers.get(driver)
        if breaker is None:
            breaker = CircuitBreaker(
                driver,
                failure_ratio=self._settings.breaker_failure_ratio,
                min_calls=self._settings.breaker_min_calls,
                window_seconds=self._settings.breaker_window_seconds,
                cooldown_seconds=self._settings.breaker_cooldown_seconds,
                clock=self._clock,
            )
            self._breakers[driver] = breaker
        return breaker

    def statuses(self) -> list[CircuitStatus]:
        return [breaker.status() for breaker in self._breakers.values()]
