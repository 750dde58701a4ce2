"""Retry with backoff and circuit breaking for calls to external resources.

Wraps database connectivity checks, dump transfers, restores and clone
operations. Purely local work (repository scanning, splitting) is never
wrapped.

Only errors classified as transient (see :func:`src.dbfast.errors.is_transient`)
are retried and counted against the circuit; policy errors propagate on the
first attempt and leave the circuit untouched.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

from loguru import logger
from pydantic import BaseModel, Field

from src.dbfast.errors import CircuitOpenError, is_transient

T = TypeVar("T")


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    EXPONENTIAL_JITTER = "exponential_jitter"


class RetryPolicy(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=0.1, ge=0.0)
    max_delay: float = Field(default=30.0, gt=0.0)
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER

    def compute_delay(self, attempt: int) -> float:
        """Return the delay before retry number *attempt* (1-based)."""
        match self.backoff:
            case BackoffStrategy.FIXED:
                delay = self.initial_delay
            case BackoffStrategy.LINEAR:
                delay = self.initial_delay * attempt
            case _:
                delay = self.initial_delay * (2 ** (attempt - 1))

        delay = min(delay, self.max_delay)
        if self.backoff is BackoffStrategy.EXPONENTIAL_JITTER:
            delay *= random.uniform(0.5, 1.5)  # noqa: S311
        return delay

    @classmethod
    def database_operations(cls) -> RetryPolicy:
        return cls(
            max_attempts=5,
            initial_delay=0.2,
            max_delay=10.0,
            backoff=BackoffStrategy.EXPONENTIAL_JITTER,
        )

    @classmethod
    def network_operations(cls) -> RetryPolicy:
        return cls(
            max_attempts=3,
            initial_delay=0.1,
            max_delay=5.0,
            backoff=BackoffStrategy.EXPONENTIAL_JITTER,
        )


class CircuitBreakerConfig(BaseModel):
    """Thresholds controlling when a circuit opens and recovers."""

    failure_threshold: int = Field(
        default=5, ge=1, description="Consecutive failures that open the circuit."
    )
    failure_rate_threshold: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="Failure rate within the window that opens the circuit.",
    )
    window_size: int = Field(default=20, ge=1)
    minimum_calls: int = Field(
        default=10,
        ge=1,
        description="Calls required in the window before the rate is evaluated.",
    )
    cooldown: float = Field(default=30.0, ge=0.0)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Three-state circuit breaker.

    ``CLOSED`` lets every call through and records outcomes in a sliding
    window. The circuit opens after ``failure_threshold`` consecutive
    failures or when the failure rate in the window reaches
    ``failure_rate_threshold``. While ``OPEN`` calls fail immediately with
    :class:`CircuitOpenError`. After ``cooldown`` seconds the next call becomes
    the single ``HALF_OPEN`` trial: success closes the circuit, failure opens
    it again. Concurrent calls during the trial are rejected.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._window: deque[bool] = deque(maxlen=self.config.window_size)
        self._consecutive_failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_rate(self) -> float:
        if not self._window:
            return 0.0
        return self._window.count(False) / len(self._window)

    def _remaining_cooldown(self) -> float:
        assert self._opened_at is not None  # noqa: S101
        return max(0.0, self.config.cooldown - (self._clock() - self._opened_at))

    def _before_call(self) -> bool:
        """Admit or reject a call. Returns True when the call is the trial."""
        if self._state is CircuitState.OPEN:
            remaining = self._remaining_cooldown()
            if remaining > 0:
                raise CircuitOpenError(self.name, remaining)
            logger.info(f"Circuit '{self.name}' half-open, allowing one trial call")
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False

        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._trial_in_flight = True
            return True
        return False

    def _open(self) -> None:
        logger.warning(
            f"Circuit '{self.name}' opened "
            f"(consecutive={self._consecutive_failures}, rate={self.failure_rate:.0%})"
        )
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False

    def _close(self) -> None:
        logger.info(f"Circuit '{self.name}' closed")
        self._state = CircuitState.CLOSED
        self._window.clear()
        self._consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_success(self, trial: bool = False) -> None:
        self._window.append(True)
        self._consecutive_failures = 0
        if trial:
            self._close()

    def record_failure(self, trial: bool = False) -> None:
        self._window.append(False)
        self._consecutive_failures += 1
        if trial:
            self._open()
            return
        cfg = self.config
        if self._consecutive_failures >= cfg.failure_threshold:
            self._open()
        elif (
            len(self._window) >= cfg.minimum_calls
            and self.failure_rate >= cfg.failure_rate_threshold
        ):
            self._open()

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run *fn* under circuit protection."""
        trial = self._before_call()
        try:
            result = await fn()
        except BaseException as exc:
            if is_transient(exc):
                self.record_failure(trial)
            elif trial:
                # Non-transient outcome says nothing about availability.
                self._trial_in_flight = False
            raise
        self.record_success(trial)
        return result


class Resilience:
    """Retry policy and per-resource circuit breakers applied together."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.breaker_config = breaker_config or CircuitBreakerConfig()
        self._sleep = sleep
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker(self, resource: str) -> CircuitBreaker:
        if resource not in self._breakers:
            self._breakers[resource] = CircuitBreaker(
                resource, self.breaker_config, clock=self._clock
            )
        return self._breakers[resource]

    async def call(
        self,
        resource: str,
        fn: Callable[[], Awaitable[T]],
        *,
        operation: str = "operation",
        policy: RetryPolicy | None = None,
    ) -> T:
        """Execute *fn* against *resource* with retries and circuit breaking.

        Args:
            resource: Circuit key (a database or remote name)
            fn: Zero-argument coroutine factory, invoked once per attempt
            operation: Label used in log messages
            policy: Override for the default retry policy

        Raises:
            CircuitOpenError: If the circuit for *resource* is open
            Exception: The last error once attempts are exhausted, or the
                first non-transient error
        """
        policy = policy or self.policy
        breaker = self.breaker(resource)

        for attempt in range(1, policy.max_attempts + 1):
            try:
                return await breaker.call(fn)
            except CircuitOpenError:
                raise
            except Exception as exc:
                if not is_transient(exc) or attempt >= policy.max_attempts:
                    raise
                delay = policy.compute_delay(attempt)
                logger.warning(
                    f"{operation} on '{resource}' failed "
                    f"(attempt {attempt}/{policy.max_attempts}), "
                    f"retrying in {delay:.2f}s: {exc}"
                )
                await self._sleep(delay)

        raise AssertionError("unreachable")  # pragma: no cover
