"""Circuit breaker guarding the embedding provider.

closed -> open after `failure_threshold` consecutive transient failures inside
`failure_window_seconds`; open -> half_open once `cooldown_seconds` have
passed; half_open lets exactly one probe through, which closes the circuit on
success and re-opens it on failure.
"""
import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Deque, Optional, TypeVar

from docindex.clock import Clock, SystemClock
from docindex.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        name: str = "embeddings",
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        failure_window_seconds: float = 60.0,
        clock: Optional[Clock] = None,
    ):
        self.name = name
        self.failure_threshold = max(1, int(failure_threshold))
        self.cooldown_seconds = float(cooldown_seconds)
        self.failure_window_seconds = float(failure_window_seconds)
        self.clock = clock or SystemClock()
        self._state = CircuitState.CLOSED
        self._failures: Deque[float] = deque()
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._current_state(self.clock.now())

    def _current_state(self, now: float) -> CircuitState:
        if self._state is CircuitState.OPEN and now - self._opened_at >= self.cooldown_seconds:
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    def _transition(self, state: CircuitState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        if state is CircuitState.OPEN:
            logger.warning("Circuit %s %s -> open (cooldown %.1fs)", self.name, previous.value, self.cooldown_seconds)
        else:
            logger.info("Circuit %s %s -> %s", self.name, previous.value, state.value)

    def _before_call(self) -> bool:
        """Admit a call or raise; returns True when the call is the half-open probe."""
        now = self.clock.now()
        state = self._current_state(now)
        if state is CircuitState.OPEN:
            raise CircuitOpenError(self.name, self._opened_at + self.cooldown_seconds - now)
        if state is CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(self.name, min(1.0, self.cooldown_seconds))
            self._probe_in_flight = True
            return True
        return False

    def _open(self, now: float) -> None:
        self._opened_at = now
        self._failures.clear()
        self._transition(CircuitState.OPEN)

    def record_failure(self, probe: bool = False) -> None:
        now = self.clock.now()
        if probe or self._state is CircuitState.HALF_OPEN:
            self._probe_in_flight = False
            self._open(now)
            return
        self._failures.append(now)
        while self._failures and now - self._failures[0] > self.failure_window_seconds:
            self._failures.popleft()
        if len(self._failures) >= self.failure_threshold:
            self._open(now)

    def record_success(self, probe: bool = False) -> None:
        self._failures.clear()
        if probe or self._state is CircuitState.HALF_OPEN:
            self._probe_in_flight = False
            self._transition(CircuitState.CLOSED)

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        is_failure: Callable[[BaseException], bool] = is_transient,
    ) -> T:
        """Run `operation` through the breaker.

        Exceptions for which `is_failure` is false mean the provider answered,
        so they count as success for the breaker before propagating.

        Raises:
            CircuitOpenError: Circuit open, or a half-open probe already running.
        """
        probe = self._before_call()
        try:
            result = await operation()
        except asyncio.CancelledError:
            if probe:
                self._probe_in_flight = False
            raise
        except Exception as e:
            if is_failure(e):
                self.record_failure(probe)
            else:
                self.record_success(probe)
            raise
        self.record_success(probe)
        return result
