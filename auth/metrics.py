"""
auth/metrics.py -- Prometheus metrics for token issuance and the gate.

Metrics:
    tokengate_tokens_issued_total           (Counter, labels: type, channel)
    tokengate_token_refresh_total           (Counter, labels: result)
    tokengate_token_reuse_detected_total    (Counter)
    tokengate_logout_total                  (Counter, labels: type)
    tokengate_gate_decisions_total          (Counter, labels: outcome)
    tokengate_store_errors_total            (Counter, labels: operation)
    tokengate_rate_limited_logins_total     (Counter, labels: by)
    tokengate_active_sessions               (Gauge)
    tokengate_operation_duration_seconds    (Histogram, labels: operation, channel, success)

All metrics live on a private CollectorRegistry so importing this module
twice (reloads, test collection) never trips prometheus_client's duplicate
timeseries check, and /metrics exposes only TokenGate series.

These are observers. Nothing here is consulted when deciding whether a
request is authenticated.

tokengate_active_sessions is per process: it goes up on login and down on
logout/revocation, and does not see sessions that simply expire.

Instrumentation is explicit at the call site:

    with instrumented("login", channel=user.channel):
        ...

    @timed("logout")
    def logout(...): ...
"""

from __future__ import annotations

import functools
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TypeVar

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest

F = TypeVar("F", bound=Callable)

REGISTRY = CollectorRegistry(auto_describe=True)

# ---------------------------------------------------------------------------
# Metric definitions
# ---------------------------------------------------------------------------

tokens_issued_total = Counter(
    "tokengate_tokens_issued_total",
    "Tokens minted by the issuer",
    labelnames=["type", "channel"],
    registry=REGISTRY,
)

token_refresh_total = Counter(
    "tokengate_token_refresh_total",
    "Refresh attempts by result",
    labelnames=["result"],
    registry=REGISTRY,
)

token_reuse_detected_total = Counter(
    "tokengate_token_reuse_detected_total",
    "Rotated or revoked refresh tokens presented again",
    registry=REGISTRY,
)

logout_total = Counter(
    "tokengate_logout_total",
    "Logouts by type (single, all, session)",
    labelnames=["type"],
    registry=REGISTRY,
)

gate_decisions_total = Counter(
    "tokengate_gate_decisions_total",
    "Authentication gate outcomes",
    labelnames=["outcome"],
    registry=REGISTRY,
)

store_errors_total = Counter(
    "tokengate_store_errors_total",
    "Revocation store failures by operation",
    labelnames=["operation"],
    registry=REGISTRY,
)

rate_limited_logins_total = Counter(
    "tokengate_rate_limited_logins_total",
    "Login attempts refused by the failure throttle",
    labelnames=["by"],
    registry=REGISTRY,
)

active_sessions = Gauge(
    "tokengate_active_sessions",
    "Sessions opened minus sessions closed by this process",
    registry=REGISTRY,
)

operation_duration_seconds = Histogram(
    "tokengate_operation_duration_seconds",
    "Issuer and gate operation latency in seconds",
    labelnames=["operation", "channel", "success"],
    buckets=(0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
    registry=REGISTRY,
)


# ---------------------------------------------------------------------------
# Instrumentation helpers
# ---------------------------------------------------------------------------


def _label(value: object) -> str:
    if value is None:
        return "none"
    return str(getattr(value, "value", value))


@contextmanager
def instrumented(operation: str, channel: object = None) -> Iterator[None]:
    """Observe the duration of the wrapped block.

    success="false" when the block raises; the exception propagates unchanged.
    """
    start = time.perf_counter()
    success = "false"
    try:
        yield
        success = "true"
    finally:
        operation_duration_seconds.labels(
            operation=operation, channel=_label(channel), success=success
        ).observe(time.perf_counter() - start)


def timed(operation: str) -> Callable[[F], F]:
    """Decorator form of instrumented() for operations without a channel."""

    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            with instrumented(operation):
                return fn(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator


def record_issued(token_type: object, channel: object) -> None:
    tokens_issued_total.labels(type=_label(token_type), channel=_label(channel)).inc()


def record_store_error(operation: str) -> None:
    store_errors_total.labels(operation=operation).inc()


def render_latest() -> tuple[bytes, str]:
    """Exposition body and content type for the /metrics route."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST


def sample(name: str, labels: dict[str, str] | None = None) -> float:
    """Current value of a sample, 0.0 if it was never recorded. Used by tests."""
    value = REGISTRY.get_sample_value(name, labels or {})
    return value if value is not None else 0.0
