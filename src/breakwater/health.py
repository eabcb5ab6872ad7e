from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Protocol

from breakwater.circuit_breaker import BreakerMetrics, CircuitBreaker, CircuitState

REASON_READY = "ready"
REASON_CIRCUIT_OPEN = "circuit_open"
REASON_CIRCUIT_PROBING = "circuit_probing"
REASON_CHECK_FAILED = "check_failed"
_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckResult:
    """Health of one breaker-protected dependency."""

    name: str
    ok: bool
    state: CircuitState | None = None
    reason: str | None = None
    detail: str = ""
    data: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze check metadata mapping to keep snapshots read-only."""
        frozen_data = MappingProxyType(dict(self.data))
        object.__setattr__(self, "data", frozen_data)


@dataclass(frozen=True)
class HealthSnapshot:
    """Immutable snapshot of dependency health across breakers.

    ``status`` is ``"ok"`` when every breaker is ``CLOSED``, and
    ``"degraded"`` otherwise. ``ready`` is ``False`` only while a breaker is
    ``OPEN``; a ``HALF_OPEN`` breaker still admits probes.
    """

    status: str
    ready: bool
    reason: str
    detail: str
    last_checked_at: float
    check_results: tuple[CheckResult, ...]


class SnapshotCallback(Protocol):
    """Callback fired whenever a health snapshot is evaluated."""

    def __call__(self, snapshot: HealthSnapshot) -> None:
        """Handle a fresh health snapshot."""


def check_breaker(breaker: CircuitBreaker) -> CheckResult:
    """Build the health result for one breaker from its metrics snapshot."""
    metrics = breaker.get_metrics()
    data = _metrics_data(metrics)
    if metrics.state == CircuitState.OPEN:
        return CheckResult(
            name=metrics.name,
            ok=False,
            state=metrics.state,
            reason=REASON_CIRCUIT_OPEN,
            detail=f"open for {metrics.time_in_state_ms:.0f}ms",
            data=data,
        )
    if metrics.state == CircuitState.HALF_OPEN:
        return CheckResult(
            name=metrics.name,
            ok=True,
            state=metrics.state,
            reason=REASON_CIRCUIT_PROBING,
            detail=f"probes_in_flight={metrics.half_open_in_flight}",
            data=data,
        )
    return CheckResult(name=metrics.name, ok=True, state=metrics.state, data=data)


def _metrics_data(metrics: BreakerMetrics) -> dict[str, object]:
    return {
        "total_calls": metrics.total_calls,
        "total_failures": metrics.total_failures,
        "total_short_circuited": metrics.total_short_circuited,
        "failure_rate": metrics.failure_rate,
    }


def evaluate_breaker_health(
    breakers: Sequence[CircuitBreaker],
    *,
    now_fn: Callable[[], float] = time.time,
    on_snapshot: SnapshotCallback | None = None,
) -> HealthSnapshot:
    """Evaluate every breaker once and return a health snapshot.

    Snapshot callback errors are logged and suppressed so health endpoints
    keep answering.
    """
    results: list[CheckResult] = []
    for breaker in breakers:
        try:
            results.append(check_breaker(breaker))
        except Exception as exc:
            results.append(
                CheckResult(
                    name=breaker.name,
                    ok=False,
                    reason=REASON_CHECK_FAILED,
                    detail=f"{exc.__class__.__name__}: {exc}",
                )
            )

    ready = all(result.ok for result in results)
    degraded = not ready or any(
        result.state != CircuitState.CLOSED for result in results
    )
    reason = REASON_READY
    detail = ""
    unhealthy = next((result for result in results if not result.ok), None)
    if unhealthy is None:
        unhealthy = next(
            (result for result in results if result.reason is not None), None
        )
    if unhealthy is not None:
        reason = unhealthy.reason or REASON_CHECK_FAILED
        detail = f"{unhealthy.name}: {unhealthy.detail}"

    snapshot = HealthSnapshot(
        status="degraded" if degraded else "ok",
        ready=ready,
        reason=reason,
        detail=detail,
        last_checked_at=now_fn(),
        check_results=tuple(results),
    )
    if on_snapshot is not None:
        callback_name = getattr(on_snapshot, "__name__", on_snapshot.__class__.__name__)
        try:
            on_snapshot(snapshot)
        except Exception:
            _logger.warning(
                "Health snapshot callback failed; continuing",
                exc_info=True,
                extra={
                    "ready": snapshot.ready,
                    "reason": snapshot.reason,
                    "callback": callback_name,
                },
            )
    return snapshot
