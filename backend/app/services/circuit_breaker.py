"""
Circuit Breaker: stop calling a failing provider for a cool-down period.

States:
  CLOSED     normal operation; consecutive failures are counted
  OPEN       calls are rejected with CircuitOpenError until reset_timeout elapses
  HALF_OPEN  probe calls are let through; success_threshold successes close
             the circuit, any failure re-opens it

Breakers are plain objects owned by whoever calls the provider (one per
provider). There is no module-level registry. The clock is injectable so
tests can move time forward.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable

from app.errors import CircuitOpenError, ExternalServiceError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 30_000,
        success_threshold: int = 2,
        request_timeout_ms: int | None = 60_000,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Callable[[str, CircuitState, CircuitState], None] | None = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout_ms / 1000
        self.success_threshold = success_threshold
        self.request_timeout = request_timeout_ms / 1000 if request_timeout_ms else None
        self._clock = clock
        self._on_state_change = on_state_change

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at: float | None = None

        self.total_requests = 0
        self.total_failures = 0
        self.total_successes = 0

    @property
    def state(self) -> CircuitState:
        """Current state; an OPEN breaker past its reset timeout reports HALF_OPEN."""
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _cooldown_elapsed(self) -> bool:
        return self._opened_at is not None and self._clock() - self._opened_at >= self.reset_timeout

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self._failures = 0
        self._successes = 0
        self._opened_at = self._clock() if new_state == CircuitState.OPEN else None

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log("Circuit '%s' %s -> %s", self.name, old_state.value, new_state.value)
        if self._on_state_change:
            self._on_state_change(self.name, old_state, new_state)

    def record_success(self) -> None:
        self.total_successes += 1
        if self._state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.success_threshold:
                self._transition(CircuitState.CLOSED)
        else:
            self._failures = 0

    def record_failure(self) -> None:
        self.total_failures += 1
        if self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return
        self._failures += 1
        if self._failures >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    async def call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Run `fn` under the breaker.

        Raises CircuitOpenError without calling `fn` while OPEN. A call that
        exceeds request_timeout counts as a failure and raises
        ExternalServiceError.
        """
        self.total_requests += 1
        if self.state == CircuitState.OPEN:
            raise CircuitOpenError(
                f"Circuit breaker '{self.name}' is open",
                provider=self.name,
            )

        try:
            if self.request_timeout:
                result = await asyncio.wait_for(fn(*args, **kwargs), timeout=self.request_timeout)
            else:
                result = await fn(*args, **kwargs)
        except asyncio.TimeoutError as e:
            self.record_failure()
            raise ExternalServiceError(
                f"Provider '{self.name}' timed out after {self.request_timeout}s",
                provider=self.name,
            ) from e
        except Exception:
            self.record_failure()
            raise

        self.record_success()
        return result

    def stats(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self._failures,
            "successes": self._successes,
            "total_requests": self.total_requests,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
        }
