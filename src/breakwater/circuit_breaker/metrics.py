"""Observability hooks and metric snapshots for circuit breakers."""

import threading
from dataclasses import dataclass
from typing import Protocol

from breakwater.circuit_breaker.state import CircuitState, StateTransition


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        Hooks are synchronous so they can run from both ``execute`` and
        ``execute_sync``. They are invoked after the state lock is released;
        exceptions they raise are logged and suppressed.
    """

    def on_state_change(self, name: str, transition: StateTransition) -> None:
        """Handle circuit state transitions."""

    def on_call_rejected(self, name: str, reason: str) -> None:
        """Handle call rejection while open or out of probe slots."""

    def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """Handle successful protected call completion."""

    def on_call_failed(self, name: str, exc: BaseException, elapsed: float) -> None:
        """Handle failed protected call completion."""


@dataclass(frozen=True)
class BreakerMetrics:
    """Read-only point-in-time view of one breaker.

    Attributes:
        name: Breaker name.
        state: Breaker state when the snapshot was taken.
        enabled: Whether the breaker guards calls at all.
        total_calls: Every ``execute`` invocation, including rejected ones.
        total_successes: Dispatched calls that completed successfully.
        total_failures: Dispatched calls that raised or timed out.
        total_short_circuited: Calls rejected without invoking the operation.
        total_timeouts: Failures caused by the call timeout.
        consecutive_failures: Current consecutive failure count.
        consecutive_successes: Current half-open success count.
        half_open_in_flight: Probe calls currently dispatched.
        time_in_state_ms: Milliseconds since the last transition.
        success_rate: Percentage of dispatched calls that succeeded.
        failure_rate: Percentage of dispatched calls that failed.
    """

    name: str
    state: CircuitState
    enabled: bool
    total_calls: int
    total_successes: int
    total_failures: int
    total_short_circuited: int
    total_timeouts: int
    consecutive_failures: int
    consecutive_successes: int
    half_open_in_flight: int
    time_in_state_ms: float
    success_rate: float
    failure_rate: float


@dataclass(frozen=True)
class CounterValues:
    """Frozen copy of call counters."""

    total_calls: int = 0
    total_successes: int = 0
    total_failures: int = 0
    total_short_circuited: int = 0
    total_timeouts: int = 0

    @property
    def dispatched(self) -> int:
        return self.total_successes + self.total_failures

    @property
    def success_rate(self) -> float:
        if self.dispatched == 0:
            return 100.0
        return self.total_successes / self.dispatched * 100.0

    @property
    def failure_rate(self) -> float:
        if self.dispatched == 0:
            return 0.0
        return self.total_failures / self.dispatched * 100.0


class CallCounters:
    """Monotonic call counters.

    Increments take a dedicated lock, separate from the state lock, because
    integer updates are not atomic across free-threaded interpreters.

    ``call_started`` returns the current generation. Outcomes reported with an
    older generation belong to calls admitted before the last ``reset`` and
    are ignored, so ``total_successes + total_failures`` never exceeds
    ``total_calls``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._generation = 0
        self._zero()

    def _zero(self) -> None:
        self._calls = 0
        self._successes = 0
        self._failures = 0
        self._short_circuited = 0
        self._timeouts = 0

    def call_started(self) -> int:
        with self._lock:
            self._calls += 1
            return self._generation

    def short_circuited(self, generation: int) -> None:
        with self._lock:
            if generation == self._generation:
                self._short_circuited += 1

    def succeeded(self, generation: int) -> None:
        with self._lock:
            if generation == self._generation:
                self._successes += 1

    def failed(self, generation: int, *, timed_out: bool = False) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._failures += 1
            if timed_out:
                self._timeouts += 1

    def reset(self) -> None:
        with self._lock:
            self._generation += 1
            self._zero()

    def values(self) -> CounterValues:
        with self._lock:
            return CounterValues(
                total_calls=self._calls,
                total_successes=self._successes,
                total_failures=self._failures,
                total_short_circuited=self._short_circuited,
                total_timeouts=self._timeouts,
            )
