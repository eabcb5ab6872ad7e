"""Circuit breaker state primitives."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from types import MappingProxyType

REASON_CLOSED = "closed"
REASON_PROBE_ADMITTED = "probe-admitted"
REASON_PROBE_SLOT = "probe-slot"
REASON_CIRCUIT_OPEN = "circuit-open"
REASON_PROBE_LIMIT_EXCEEDED = "probe-limit-exceeded"
REASON_INVALID_STATE = "invalid-state"
REASON_DISABLED = "disabled"


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class BreakerStateData:
    """Mutable per-breaker state, written only by the state manager.

    Attributes:
        state: Current breaker state.
        consecutive_failures: Failures since the last success while ``CLOSED``.
        consecutive_successes: Successful probes since entering ``HALF_OPEN``.
        last_state_change_at: Monotonic timestamp (seconds) of the last
            transition.
        last_failure_at: Monotonic timestamp (seconds) of the last failure.
        half_open_in_flight: Probe calls currently dispatched while
            ``HALF_OPEN``.
        half_open_epoch: Generation counter bumped on each entry into
            ``HALF_OPEN``; probe slots are only released into their own epoch.
    """

    state: CircuitState
    last_state_change_at: float
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_failure_at: float | None = None
    half_open_in_flight: int = 0
    half_open_epoch: int = 0

    def copy(self) -> "BreakerStateData":
        """Return a detached copy safe to hand to callers."""
        return BreakerStateData(
            state=self.state,
            last_state_change_at=self.last_state_change_at,
            consecutive_failures=self.consecutive_failures,
            consecutive_successes=self.consecutive_successes,
            last_failure_at=self.last_failure_at,
            half_open_in_flight=self.half_open_in_flight,
            half_open_epoch=self.half_open_epoch,
        )


@dataclass(frozen=True)
class StateTransition:
    """Audit record emitted on every state change.

    Attributes:
        from_state: State before the transition.
        to_state: State after the transition.
        reason: Human-readable cause.
        timestamp: Monotonic clock reading (seconds) at the transition.
        occurred_at: Wall-clock UTC time at the transition.
        metadata: Extra read-only context for tracing.
    """

    from_state: CircuitState
    to_state: CircuitState
    reason: str
    timestamp: float
    occurred_at: datetime
    metadata: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze transition metadata to keep history records read-only."""
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


@dataclass(frozen=True)
class ProceedDecision:
    """Outcome of one admission check.

    Attributes:
        allowed: Whether the call may be dispatched.
        reason: Machine-readable admission or rejection reason.
        probe: Whether the admitted call holds a half-open probe slot.
        epoch: Half-open generation the probe slot belongs to.
        retry_after_ms: Milliseconds until a probe may be admitted, set on
            rejections while ``OPEN``.
        transition: Transition triggered by granting the call, if any.
    """

    allowed: bool
    reason: str
    probe: bool = False
    epoch: int = 0
    retry_after_ms: float = 0.0
    transition: StateTransition | None = None
