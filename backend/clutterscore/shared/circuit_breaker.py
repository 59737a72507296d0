from __future__ import annotations

import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, TypeVar

from clutterscore.infra.metrics import metrics

logger = logging.getLogger("clutterscore.circuit")

T = TypeVar("T")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreakerOpenError(RuntimeError):
    def __init__(self, name: str) -> None:
        super().__init__(f"circuit_open:{name}")
        self.name = name


def _always(exc: BaseException) -> bool:
    return True


class CircuitBreaker:
    """Trips after `failure_threshold` counted failures inside `window_seconds`.

    Only exceptions for which `counts(exc)` is true move the breaker; the rest
    propagate untouched. After `recovery_time` one probe call is let through and
    its outcome decides between closing and reopening.
    """

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        window_seconds: float = 60.0,
        counts: Callable[[BaseException], bool] = _always,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_time = max(0.01, recovery_time)
        self.window_seconds = max(0.01, window_seconds)
        self._counts = counts
        self._state = CLOSED
        self._opened_at = 0.0
        self._probing = False
        self._failures: Deque[float] = deque()
        metrics.record_circuit_state(self.name, self._state)

    @property
    def state(self) -> str:
        return self._state

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        self._admit()
        try:
            result = await fn(*args, **kwargs)
        except Exception as exc:
            if self._counts(exc):
                self._record_failure(exc)
            else:
                self._release_probe()
            raise
        self._record_success()
        return result

    def reset(self) -> None:
        self._failures.clear()
        self._probing = False
        self._set_state(CLOSED)

    def _admit(self) -> None:
        if self._state == OPEN:
            if time.monotonic() - self._opened_at < self.recovery_time:
                raise CircuitBreakerOpenError(self.name)
            self._set_state(HALF_OPEN)
        if self._state == HALF_OPEN:
            if self._probing:
                raise CircuitBreakerOpenError(self.name)
            self._probing = True

    def _release_probe(self) -> None:
        self._probing = False

    def _record_failure(self, exc: BaseException) -> None:
        now = time.monotonic()
        self._failures.append(now)
        while self._failures and self._failures[0] < now - self.window_seconds:
            self._failures.popleft()
        logger.warning(
            "circuit_failure",
            extra={"extra": {"name": self.name, "state": self._state, "error": type(exc).__name__}},
        )
        if self._state == HALF_OPEN or len(self._failures) >= self.failure_threshold:
            self._opened_at = now
            self._probing = False
            self._set_state(OPEN)
            logger.warning("circuit_opened", extra={"extra": {"name": self.name}})

    def _record_success(self) -> None:
        if self._state != CLOSED:
            logger.info("circuit_closed", extra={"extra": {"name": self.name}})
        self.reset()

    def _set_state(self, state: str) -> None:
        self._state = state
        metrics.record_circuit_state(self.name, state)


class CircuitBreakers:
    """Lazily built breakers sharing one configuration, keyed by name."""

    def __init__(
        self,
        *,
        failure_threshold: int,
        recovery_time: float,
        window_seconds: float,
        counts: Callable[[BaseException], bool] = _always,
    ) -> None:
        self._options = {
            "failure_threshold": failure_threshold,
            "recovery_time": recovery_time,
            "window_seconds": window_seconds,
            "counts": counts,
        }
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name=name, **self._options)
            self._breakers[name] = breaker
        return breaker

    def states(self) -> dict[str, str]:
        return {name: breaker.state for name, breaker in self._breakers.items()}
