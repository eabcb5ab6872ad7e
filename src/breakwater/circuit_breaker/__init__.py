"""Framework-agnostic circuit breaker for sync and async callers.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - State is in-memory and lives as long as the ``CircuitBreaker`` instance.
    Each protected dependency gets its own breaker; there is no registry.
  - The open timeout is checked lazily on each admission; no background timer
    runs. The first call admitted after the timeout moves the breaker to
    ``HALF_OPEN`` and becomes a probe.
  - At most ``half_open_max_concurrent_probes`` calls are in flight while
    ``HALF_OPEN``. Any probe failure reopens the circuit.
  - Errors raised by the protected operation are recorded and re-raised
    unchanged. The breaker only adds errors of its own kind for rejections
    and call timeouts.
"""

from breakwater.circuit_breaker.breaker import CircuitBreaker
from breakwater.circuit_breaker.config import MAX_SUCCESS_THRESHOLD, BreakerConfig
from breakwater.circuit_breaker.exceptions import (
    BreakerError,
    BreakerStateError,
    CallTimeoutError,
    CircuitOpenError,
    InvalidConfigError,
    ProbeLimitExceededError,
)
from breakwater.circuit_breaker.metrics import BreakerListener, BreakerMetrics
from breakwater.circuit_breaker.state import (
    BreakerStateData,
    CircuitState,
    ProceedDecision,
    StateTransition,
)
from breakwater.circuit_breaker.state_manager import BreakerStateManager

__all__ = [
    "MAX_SUCCESS_THRESHOLD",
    "BreakerConfig",
    "BreakerError",
    "BreakerListener",
    "BreakerMetrics",
    "BreakerStateData",
    "BreakerStateError",
    "BreakerStateManager",
    "CallTimeoutError",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "InvalidConfigError",
    "ProbeLimitExceededError",
    "ProceedDecision",
    "StateTransition",
]
