from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Generic, TypeVar

from app.infra.metrics import metrics

logger = logging.getLogger("app.circuit")

T = TypeVar("T")


class CircuitBreakerOpenError(RuntimeError):
    def __init__(self, name: str, reason: str = "open") -> None:
        super().__init__(f"circuit_{reason}:{name}")
        self.name = name
        self.reason = reason


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


class CircuitBreaker(Generic[T]):
    """Async circuit breaker guarding calls to a remote dependency.

    Failures are counted over a sliding ``window_seconds`` window; reaching
    ``failure_threshold`` opens the circuit for ``recovery_time`` seconds, after
    which up to ``half_open_max_calls`` probes are let through. Exceptions in
    ``ignored_exceptions`` describe a bad request rather than an unhealthy
    dependency: they propagate without being counted.
    """

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        window_seconds: float = 60.0,
        half_open_max_calls: int = 1,
        timeout_seconds: float | None = None,
        ignored_exceptions: tuple[type[BaseException], ...] = (),
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_time = max(0.01, recovery_time)
        self.window_seconds = max(0.01, window_seconds)
        self.half_open_max_calls = max(1, half_open_max_calls)
        self.timeout_seconds = None if timeout_seconds is None else max(0.01, timeout_seconds)
        self.ignored_exceptions = ignored_exceptions
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._failure_times: deque[float] = deque()
        self._probes_in_flight = 0
        self._lock = asyncio.Lock()
        metrics.record_circuit_state(self.name, self._state.value)

    @property
    def state(self) -> str:
        return self._state.value

    async def call(
        self,
        fn: Callable[..., T | Awaitable[T]],
        *args,
        timeout_seconds: float | None = None,
        **kwargs,
    ) -> T:
        await self._admit()
        timeout = self.timeout_seconds if timeout_seconds is None else max(0.01, timeout_seconds)
        try:
            result = await self._invoke(fn, args, kwargs, timeout)
        except self.ignored_exceptions:
            await self._release_probe()
            raise
        except Exception as exc:  # noqa: BLE001
            await self._on_failure(exc)
            raise
        await self._on_success()
        return result

    @staticmethod
    async def _invoke(fn, args, kwargs, timeout: float | None):  # noqa: ANN001
        outcome = fn(*args, **kwargs)
        if not inspect.isawaitable(outcome):
            return outcome
        if timeout is None:
            return await outcome
        return await asyncio.wait_for(outcome, timeout=timeout)

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        previous, self._state = self._state, new_state
        metrics.record_circuit_state(self.name, new_state.value)
        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log(
            "circuit_state_changed",
            extra={"extra": {"name": self.name, "from": previous.value, "to": new_state.value}},
        )

    async def _admit(self) -> None:
        async with self._lock:
            if self._state is CircuitState.OPEN:
                if time.monotonic() - self._opened_at < self.recovery_time:
                    raise CircuitBreakerOpenError(self.name)
                self._transition(CircuitState.HALF_OPEN)
                self._probes_in_flight = 0
            if self._state is CircuitState.HALF_OPEN:
                if self._probes_in_flight >= self.half_open_max_calls:
                    raise CircuitBreakerOpenError(self.name, "half_open_limit")
                self._probes_in_flight += 1

    async def _release_probe(self) -> None:
        async with self._lock:
            if self._state is CircuitState.HALF_OPEN and self._probes_in_flight:
                self._probes_in_flight -= 1

    async def _on_failure(self, exc: Exception) -> None:
        async with self._lock:
            now = time.monotonic()
            self._failure_times.append(now)
            cutoff = now - self.window_seconds
            while self._failure_times and self._failure_times[0] < cutoff:
                self._failure_times.popleft()
            logger.warning(
                "circuit_failure",
                extra={"extra": {"name": self.name, "state": self.state, "error": type(exc).__name__}},
            )
            if self._state is CircuitState.HALF_OPEN or len(self._failure_times) >= self.failure_threshold:
                self._opened_at = now
                self._probes_in_flight = 0
                self._transition(CircuitState.OPEN)

    async def _on_success(self) -> None:
        async with self._lock:
            self._failure_times.clear()
            self._probes_in_flight = 0
            self._transition(CircuitState.CLOSED)
