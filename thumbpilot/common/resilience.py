"""
Resilience primitives for calls into flaky, quota-limited dependencies.

Three building blocks, composed by ``ResilientCaller`` as

    retry -> circuit breaker -> rate limiter -> raw call

so that a burst of failures opens the breaker, and an open breaker stops
the retry loop instead of burning through its budget.

All state is process-local and owned by one instance per dependency.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

import httpx

from thumbpilot.common.config import DependencySettings, RetrySettings
from thumbpilot.common.exceptions import (
    AuthorizationError,
    CircuitOpenError,
    RetryableError,
)
from thumbpilot.common.logger import get_logger
from thumbpilot.common.metrics import record_retry, set_circuit_state

logger = get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
SleepFunc = Callable[[float], Awaitable[None]]

DEFAULT_RETRYABLE_MARKERS: tuple[str, ...] = (
    "ECONNRESET",
    "ETIMEDOUT",
    "ECONNREFUSED",
    "NETWORK_ERROR",
    "RATE_LIMIT",
)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


# =============================================================================
# Retry with backoff
# =============================================================================

@dataclass
class RetryPolicy:
    """Retry budget: ``max_retries`` retries after the first attempt."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_markers: tuple[str, ...] = DEFAULT_RETRYABLE_MARKERS

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_retries=settings.max_retries,
            initial_delay=settings.initial_delay,
            max_delay=settings.max_delay,
            backoff_multiplier=settings.backoff_multiplier,
        )


def _status_code(error: BaseException) -> int | None:
    status = getattr(error, "status_code", None)
    if status is None and isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
    return status if isinstance(status, int) else None


def is_retryable(
    error: BaseException,
    markers: tuple[str, ...] = DEFAULT_RETRYABLE_MARKERS,
) -> bool:
    """
    Classify an error as transient.

    Retryable: ``RetryableError`` subclasses, network/timeout errors,
    HTTP 429/5xx, or an error code / message carrying one of ``markers``.
    An open circuit and authorization failures never are.
    """
    if isinstance(error, (CircuitOpenError, AuthorizationError)):
        return False
    if isinstance(error, RetryableError):
        return True
    if isinstance(error, (ConnectionError, TimeoutError, httpx.TransportError)):
        return True

    if _status_code(error) in RETRYABLE_STATUS_CODES:
        return True

    code = getattr(error, "code", None)
    if isinstance(code, str) and code in markers:
        return True

    message = str(error).lower()
    return any(marker.lower() in message for marker in markers)


async def retry_async(
    operation: Operation[T],
    policy: RetryPolicy | None = None,
    *,
    name: str = "dependency",
    sleep: SleepFunc = asyncio.sleep,
) -> T:
    """
    Run ``operation``, retrying retryable failures with exponential backoff.

    Non-retryable errors propagate immediately. When the budget is spent
    the last error propagates.
    """
    policy = policy or RetryPolicy()
    delay = policy.initial_delay

    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= policy.max_retries or not is_retryable(e, policy.retryable_markers):
                raise

            logger.warning(
                "Retrying after transient failure",
                dependency=name,
                attempt=attempt + 1,
                max_retries=policy.max_retries,
                delay_s=delay,
                error=str(e),
            )
            record_retry(name)
            await sleep(delay)
            delay = min(delay * policy.backoff_multiplier, policy.max_delay)
            attempt += 1


# =============================================================================
# Rate limiter
# =============================================================================

class RateLimiter:
    """
    Serialize calls to one dependency.

    Callers queue in FIFO order (``asyncio.Lock`` wakes waiters in arrival
    order); one call is in flight at a time, and a call starts no sooner
    than ``min_interval`` seconds after the previous one finished.
    """

    def __init__(
        self,
        min_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call_end: float | None = None
        self._queued = 0

    @property
    def pending(self) -> int:
        """Callers waiting or in flight."""
        return self._queued

    async def execute(self, operation: Operation[T]) -> T:
        self._queued += 1
        try:
            async with self._lock:
                if self._last_call_end is not None:
                    wait = self.min_interval - (self._clock() - self._last_call_end)
                    if wait > 0:
                        await self._sleep(wait)
                try:
                    return await operation()
                finally:
                    self._last_call_end = self._clock()
        finally:
            self._queued -= 1


# =============================================================================
# Circuit breaker
# =============================================================================

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Fail fast against a dependency that keeps failing.

    closed    -> open       after ``failure_threshold`` consecutive failures
    open      -> half_open  on the first call after ``reset_timeout`` seconds
    half_open -> closed     when the trial call succeeds
    half_open -> open       when it fails (cool-down restarts)
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        name: str = "dependency",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        set_circuit_state(name, self._state.value)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    async def execute(self, operation: Operation[T]) -> T:
        if self._state is CircuitState.OPEN:
            if self._clock() - self._opened_at >= self.reset_timeout:
                self._set_state(CircuitState.HALF_OPEN)
            else:
                raise CircuitOpenError(
                    f"Circuit breaker for {self.name} is open",
                    details={"failures": self._failures},
                )

        is_trial = False
        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(
                    f"Circuit breaker for {self.name} is half-open with a trial in flight"
                )
            self._trial_in_flight = True
            is_trial = True

        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        else:
            self._on_success()
            return result
        finally:
            if is_trial:
                self._trial_in_flight = False

    def _on_success(self) -> None:
        self._failures = 0
        if self._state is not CircuitState.CLOSED:
            self._set_state(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        self._failures += 1
        if self._state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            self._opened_at = self._clock()
            if self._state is not CircuitState.OPEN:
                logger.warning(
                    "Circuit breaker opened",
                    dependency=self.name,
                    failures=self._failures,
                    reset_timeout_s=self.reset_timeout,
                )
            self._set_state(CircuitState.OPEN)

    def _set_state(self, state: CircuitState) -> None:
        if state is not self._state:
            logger.info(
                "Circuit breaker state change",
                dependency=self.name,
                previous=self._state.value,
                state=state.value,
            )
        self._state = state
        set_circuit_state(self.name, state.value)


# =============================================================================
# Composition
# =============================================================================

class ResilientCaller:
    """retry -> circuit breaker -> rate limiter -> operation, for one dependency."""

    def __init__(
        self,
        name: str,
        retry_policy: RetryPolicy | None = None,
        rate_limiter: RateLimiter | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.name = name
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name=name)
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        name: str,
        dependency: DependencySettings,
        retry: RetrySettings,
    ) -> ResilientCaller:
        return cls(
            name=name,
            retry_policy=RetryPolicy.from_settings(retry),
            rate_limiter=RateLimiter(min_interval=dependency.min_interval),
            circuit_breaker=CircuitBreaker(
                failure_threshold=dependency.failure_threshold,
                reset_timeout=dependency.reset_timeout,
                name=name,
            ),
        )

    async def call(
        self,
        operation: Operation[T],
        policy: RetryPolicy | None = None,
    ) -> T:
        async def guarded() -> T:
            return await self.circuit_breaker.execute(
                lambda: self.rate_limiter.execute(operation)
            )

        return await retry_async(
            guarded,
            policy or self.retry_policy,
            name=self.name,
            sleep=self._sleep,
        )
