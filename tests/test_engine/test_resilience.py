"""
Tests for retry, rate limiting and the circuit breaker.
"""

import asyncio

import httpx
import pytest

from thumbpilot.common.exceptions import (
    AuthorizationError,
    CircuitOpenError,
    RateLimitError,
    TransientDependencyError,
)
from thumbpilot.common.resilience import (
    CircuitBreaker,
    CircuitState,
    RateLimiter,
    ResilientCaller,
    RetryPolicy,
    is_retryable,
    retry_async,
)


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class RecordingSleep:
    def __init__(self, clock: ManualClock | None = None) -> None:
        self.delays: list[float] = []
        self.clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.now += delay


class FlakyOperation:
    """Fails with ``error`` for the first ``failures`` calls."""

    def __init__(self, error: Exception, failures: int) -> None:
        self.error = error
        self.failures = failures
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


# ==================== Retry ====================

@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_failures() -> None:
    sleep = RecordingSleep()
    operation = FlakyOperation(TransientDependencyError("503", status_code=503), failures=2)

    result = await retry_async(operation, RetryPolicy(max_retries=3), sleep=sleep)

    assert result == "ok"
    assert operation.calls == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_exhaustion_attempts_max_retries_plus_one() -> None:
    sleep = RecordingSleep()
    operation = FlakyOperation(ConnectionError("ECONNRESET"), failures=10)

    with pytest.raises(ConnectionError):
        await retry_async(operation, RetryPolicy(max_retries=3), sleep=sleep)

    assert operation.calls == 4
    assert sleep.delays == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_retry_delay_is_capped() -> None:
    sleep = RecordingSleep()
    operation = FlakyOperation(TimeoutError("ETIMEDOUT"), failures=10)
    policy = RetryPolicy(max_retries=4, initial_delay=10.0, max_delay=15.0)

    with pytest.raises(TimeoutError):
        await retry_async(operation, policy, sleep=sleep)

    assert sleep.delays == [10.0, 15.0, 15.0, 15.0]


@pytest.mark.asyncio
async def test_non_retryable_error_propagates_immediately() -> None:
    sleep = RecordingSleep()
    operation = FlakyOperation(ValueError("bad input"), failures=10)

    with pytest.raises(ValueError):
        await retry_async(operation, RetryPolicy(max_retries=3), sleep=sleep)

    assert operation.calls == 1
    assert sleep.delays == []


def test_is_retryable_classification() -> None:
    request = httpx.Request("GET", "https://example.com")

    assert is_retryable(TransientDependencyError("busy", status_code=503))
    assert is_retryable(RateLimitError("slow down"))
    assert is_retryable(httpx.ConnectError("refused", request=request))
    assert is_retryable(
        httpx.HTTPStatusError(
            "429", request=request, response=httpx.Response(429, request=request)
        )
    )
    assert is_retryable(RuntimeError("upstream said RATE_LIMIT exceeded"))

    assert not is_retryable(
        httpx.HTTPStatusError(
            "404", request=request, response=httpx.Response(404, request=request)
        )
    )
    assert not is_retryable(AuthorizationError("token expired"))
    assert not is_retryable(CircuitOpenError("open"))
    assert not is_retryable(KeyError("missing"))


# ==================== Rate limiter ====================

@pytest.mark.asyncio
async def test_rate_limiter_spaces_calls_from_previous_end() -> None:
    clock = ManualClock()
    sleep = RecordingSleep(clock)
    limiter = RateLimiter(min_interval=0.2, clock=clock, sleep=sleep)

    async def call() -> int:
        return 1

    await limiter.execute(call)
    clock.now += 0.05
    await limiter.execute(call)

    assert sleep.delays == [pytest.approx(0.15)]


@pytest.mark.asyncio
async def test_rate_limiter_is_fifo_and_serial() -> None:
    limiter = RateLimiter(min_interval=0.0)
    order: list[int] = []
    in_flight = 0
    max_in_flight = 0

    def make(i: int):
        async def op() -> int:
            nonlocal in_flight, max_in_flight
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await asyncio.sleep(0)
            order.append(i)
            in_flight -= 1
            return i
        return op

    results = await asyncio.gather(*(limiter.execute(make(i)) for i in range(5)))

    assert results == [0, 1, 2, 3, 4]
    assert order == [0, 1, 2, 3, 4]
    assert max_in_flight == 1
    assert limiter.pending == 0


@pytest.mark.asyncio
async def test_rate_limiter_error_reaches_its_caller_only() -> None:
    limiter = RateLimiter(min_interval=0.0)

    async def boom() -> None:
        raise RuntimeError("boom")

    async def fine() -> str:
        return "fine"

    results = await asyncio.gather(
        limiter.execute(boom), limiter.execute(fine), return_exceptions=True
    )

    assert isinstance(results[0], RuntimeError)
    assert results[1] == "fine"


# ==================== Circuit breaker ====================

async def _fail() -> None:
    raise TransientDependencyError("down", status_code=503)


async def _ok() -> str:
    return "ok"


@pytest.mark.asyncio
async def test_breaker_opens_after_threshold() -> None:
    breaker = CircuitBreaker(failure_threshold=3, reset_timeout=60, clock=ManualClock())

    for _ in range(3):
        with pytest.raises(TransientDependencyError):
            await breaker.execute(_fail)

    assert breaker.state is CircuitState.OPEN

    calls = 0

    async def counted() -> str:
        nonlocal calls
        calls += 1
        return "ok"

    with pytest.raises(CircuitOpenError):
        await breaker.execute(counted)
    assert calls == 0


@pytest.mark.asyncio
async def test_breaker_success_resets_failure_count() -> None:
    breaker = CircuitBreaker(failure_threshold=3, clock=ManualClock())

    for _ in range(2):
        with pytest.raises(TransientDependencyError):
            await breaker.execute(_fail)
    await breaker.execute(_ok)

    assert breaker.failure_count == 0
    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_breaker_half_open_trial_success_closes() -> None:
    clock = ManualClock()
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=30, clock=clock)

    with pytest.raises(TransientDependencyError):
        await breaker.execute(_fail)
    assert breaker.state is CircuitState.OPEN

    clock.now += 30
    assert await breaker.execute(_ok) == "ok"
    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_breaker_half_open_trial_failure_reopens() -> None:
    clock = ManualClock()
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=30, clock=clock)

    with pytest.raises(TransientDependencyError):
        await breaker.execute(_fail)
    clock.now += 31

    with pytest.raises(TransientDependencyError):
        await breaker.execute(_fail)
    assert breaker.state is CircuitState.OPEN

    # cool-down restarted at the trial failure
    clock.now += 10
    with pytest.raises(CircuitOpenError):
        await breaker.execute(_ok)


@pytest.mark.asyncio
async def test_breaker_allows_a_single_trial() -> None:
    clock = ManualClock()
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=5, clock=clock)
    with pytest.raises(TransientDependencyError):
        await breaker.execute(_fail)
    clock.now += 5

    release = asyncio.Event()

    async def slow() -> str:
        await release.wait()
        return "trial"

    trial = asyncio.create_task(breaker.execute(slow))
    await asyncio.sleep(0)
    assert breaker.state is CircuitState.HALF_OPEN

    with pytest.raises(CircuitOpenError):
        await breaker.execute(_ok)

    release.set()
    assert await trial == "trial"
    assert breaker.state is CircuitState.CLOSED


# ==================== Composition ====================

@pytest.mark.asyncio
async def test_open_breaker_stops_the_retry_loop() -> None:
    sleep = RecordingSleep()
    caller = ResilientCaller(
        "platform",
        retry_policy=RetryPolicy(max_retries=5),
        rate_limiter=RateLimiter(min_interval=0.0),
        circuit_breaker=CircuitBreaker(failure_threshold=2, name="platform", clock=ManualClock()),
        sleep=sleep,
    )
    operation = FlakyOperation(TransientDependencyError("down", status_code=503), failures=100)

    with pytest.raises(CircuitOpenError):
        await caller.call(operation)

    assert operation.calls == 2
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_caller_returns_result_after_recovery() -> None:
    caller = ResilientCaller(
        "generator",
        rate_limiter=RateLimiter(min_interval=0.0),
        sleep=RecordingSleep(),
    )
    operation = FlakyOperation(TransientDependencyError("busy", status_code=429), failures=1)

    assert await caller.call(operation) == "ok"
    assert caller.circuit_breaker.state is CircuitState.CLOSED
