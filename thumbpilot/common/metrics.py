"""
Prometheus metrics for the optimization engine.

Provides:
- Iteration / swap / settle counters
- Retry and circuit breaker visibility per dependency
- Scheduler sweep latency
"""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Prometheus Metrics Definitions
# =============================================================================

ITERATIONS_TOTAL = Counter(
    "thumbpilot_iterations_total",
    "Optimization iterations by outcome",
    ["outcome"],
)

SWAPS_TOTAL = Counter(
    "thumbpilot_swaps_total",
    "Creative swap attempts by outcome",
    ["outcome"],
)

SETTLES_TOTAL = Counter(
    "thumbpilot_settles_total",
    "Campaigns settled by reason",
    ["reason"],
)

PIPELINES_TOTAL = Counter(
    "thumbpilot_pipelines_total",
    "Campaign creation pipelines by outcome",
    ["outcome"],
)

RETRY_ATTEMPTS_TOTAL = Counter(
    "thumbpilot_retry_attempts_total",
    "Retries scheduled after a retryable failure",
    ["dependency"],
)

CIRCUIT_STATE = Gauge(
    "thumbpilot_circuit_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["dependency"],
)

SWEEP_DURATION = Histogram(
    "thumbpilot_sweep_duration_seconds",
    "Scheduler sweep duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0),
)

_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


# =============================================================================
# Helper Functions for Recording Engine Metrics
# =============================================================================

def record_iteration(outcome: str) -> None:
    """Record an optimization iteration outcome (settled/continued/failed/skipped)."""
    ITERATIONS_TOTAL.labels(outcome=outcome).inc()


def record_swap(success: bool) -> None:
    """Record a creative swap attempt."""
    SWAPS_TOTAL.labels(outcome="applied" if success else "failed").inc()


def record_settle(reason: str) -> None:
    """Record a campaign settle."""
    SETTLES_TOTAL.labels(reason=reason).inc()


def record_pipeline(success: bool) -> None:
    """Record a creation pipeline outcome."""
    PIPELINES_TOTAL.labels(outcome="completed" if success else "failed").inc()


def record_retry(dependency: str) -> None:
    """Record a scheduled retry."""
    RETRY_ATTEMPTS_TOTAL.labels(dependency=dependency).inc()


def set_circuit_state(dependency: str, state: str) -> None:
    """Publish the current breaker state."""
    CIRCUIT_STATE.labels(dependency=dependency).set(_CIRCUIT_STATE_VALUES.get(state, 0))


def record_sweep_duration(duration: float) -> None:
    """Record scheduler sweep duration."""
    SWEEP_DURATION.observe(duration)
