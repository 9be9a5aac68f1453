"""Circuit breaker guarding a flaky backend.

CLOSED counts consecutive failures and opens once ``failure_threshold`` is
reached. OPEN fast-fails every call with :class:`CircuitOpenError` until
``reset_timeout`` seconds have passed, then moves to HALF_OPEN. HALF_OPEN
lets ``half_open_max_attempts`` trial calls through; that many successes
close the circuit again, any failure reopens it.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from shared.exceptions import CircuitOpenError, ConflictError, ValidationError

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        logger,
        name: str = "storage",
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_max_attempts: int = 3,
        excluded: tuple[type[BaseException], ...] = (ConflictError, ValidationError),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1 or half_open_max_attempts < 1:
            raise ValueError("failure_threshold and half_open_max_attempts must be at least 1.")
        self.logging = logger
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_attempts = half_open_max_attempts
        self._excluded = excluded
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._half_open_in_flight = 0
        self._half_open_successes = 0
        self._lock = asyncio.Lock()

    ##########################################
    ################ GETTER ##################
    ##########################################

    @property
    def state(self) -> CircuitState:
        """Current state, promoting OPEN to HALF_OPEN once the reset timeout elapsed."""
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    ##########################################
    ################ EXECUTE #################
    ##########################################

    async def execute(self, operation: Callable[[], Awaitable[T]], context: str = "") -> T:
        """Run an async operation through the breaker.

        Args:
            operation (Callable[[], Awaitable[T]]): Zero-argument coroutine factory.
            context (str): Name of the operation, used in log and error messages.

        Returns:
            T: Whatever the operation returns.

        Raises:
            CircuitOpenError: If the circuit is open or the half-open trial budget is used up.
            Exception: Any error raised by the operation itself.
        """
        async with self._lock:
            state = self.state
            if state == CircuitState.OPEN:
                raise CircuitOpenError(f"Circuit '{self.name}' is open, rejecting '{context}'.")
            if state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight + self._half_open_successes >= self.half_open_max_attempts:
                    raise CircuitOpenError(f"Circuit '{self.name}' is half-open and saturated, rejecting '{context}'.")
                self._half_open_in_flight += 1
            trial = state == CircuitState.HALF_OPEN

        try:
            result = await operation()
        except self._excluded:
            # caller errors say nothing about backend health
            async with self._lock:
                if trial:
                    self._half_open_in_flight -= 1
            raise
        except Exception as e:
            async with self._lock:
                if trial:
                    self._half_open_in_flight -= 1
                self._on_failure(context, e)
            raise

        async with self._lock:
            if trial:
                self._half_open_in_flight -= 1
            self._on_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        self._transition(CircuitState.CLOSED)

    ##########################################
    ################ HELPERS #################
    ##########################################

    def _on_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._half_open_successes += 1
            if self._half_open_successes >= self.half_open_max_attempts:
                self._transition(CircuitState.CLOSED)
        else:
            self._failures = 0

    def _on_failure(self, context: str, error: Exception) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self.logging.warning("Circuit '%s' trial call '%s' failed: %s. Reopening.", self.name, context, error)
            self._transition(CircuitState.OPEN)
            return
        self._failures += 1
        if self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
            self.logging.error(
                "Circuit '%s' opened after %d consecutive failures (last in '%s': %s).",
                self.name, self._failures, context, error,
            )
            self._transition(CircuitState.OPEN)

    def _transition(self, target: CircuitState) -> None:
        if target == self._state:
            return
        self.logging.info("Circuit '%s': %s -> %s", self.name, self._state.value, target.value)
        self._state = target
        self._half_open_in_flight = 0
        self._half_open_successes = 0
        if target == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif target == CircuitState.CLOSED:
            self._failures = 0
