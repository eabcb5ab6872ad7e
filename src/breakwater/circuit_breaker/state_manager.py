"""Circuit breaker state machine.

All reads and writes of ``BreakerStateData`` happen inside one
``threading.Lock``. Critical sections never await and never call the protected
operation, so the same lock serializes OS threads and interleaved asyncio tasks
alike.

Transitions::

    CLOSED    --failure_threshold reached-->                OPEN
    OPEN      --open_timeout_ms elapsed & probe admitted--> HALF_OPEN
    HALF_OPEN --success_threshold consecutive successes-->  CLOSED
    HALF_OPEN --any failure-->                              OPEN
"""

import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from datetime import UTC, datetime

from breakwater.circuit_breaker.config import BreakerConfig
from breakwater.circuit_breaker.state import (
    REASON_CIRCUIT_OPEN,
    REASON_CLOSED,
    REASON_INVALID_STATE,
    REASON_PROBE_ADMITTED,
    REASON_PROBE_LIMIT_EXCEEDED,
    REASON_PROBE_SLOT,
    BreakerStateData,
    CircuitState,
    ProceedDecision,
    StateTransition,
)
from breakwater.logging import BreakerLogger, get_logger, log_error

Clock = Callable[[], float]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BreakerStateManager:
    """Decide admission and evolve breaker state after each call outcome."""

    def __init__(
        self,
        config: BreakerConfig,
        *,
        clock: Clock = time.monotonic,
        logger: BreakerLogger | None = None,
        name: str = "default",
    ) -> None:
        """Create a state manager in ``CLOSED``.

        Args:
            config: Validated breaker thresholds and timers.
            clock: Monotonic clock returning seconds.
            logger: Structured logger for defect reporting.
            name: Owning breaker name, used in log events.
        """
        self._config = config
        self._clock = clock
        self._logger = get_logger(__name__) if logger is None else logger
        self._name = name
        self._lock = threading.Lock()
        self._data = BreakerStateData(
            state=CircuitState.CLOSED,
            last_state_change_at=clock(),
        )
        self._failure_times: deque[float] = deque()
        self._history: deque[StateTransition] = deque(
            maxlen=config.max_history_size
        )

    @property
    def config(self) -> BreakerConfig:
        """Return the immutable config driving this state machine."""
        return self._config

    def now(self) -> float:
        """Return the current injected clock reading."""
        return self._clock()

    def snapshot(self) -> BreakerStateData:
        """Return a detached copy of the current state data."""
        with self._lock:
            return self._data.copy()

    def history(self) -> tuple[StateTransition, ...]:
        """Return transition records, oldest first."""
        with self._lock:
            return tuple(self._history)

    def retry_after_ms(self) -> float:
        """Milliseconds left before an ``OPEN`` breaker admits a probe."""
        with self._lock:
            return self._retry_after_ms_locked(self._clock())

    def can_proceed(self) -> ProceedDecision:
        """Decide whether one call may be dispatched now.

        Granting the first call after the open timeout moves the breaker to
        ``HALF_OPEN`` and hands that call the first probe slot.
        """
        with self._lock:
            now = self._clock()
            data = self._data
            match data.state:
                case CircuitState.CLOSED:
                    return ProceedDecision(allowed=True, reason=REASON_CLOSED)
                case CircuitState.OPEN:
                    retry_after_ms = self._retry_after_ms_locked(now)
                    if retry_after_ms > 0:
                        return ProceedDecision(
                            allowed=False,
                            reason=REASON_CIRCUIT_OPEN,
                            retry_after_ms=retry_after_ms,
                        )
                    transition = self._transition_locked(
                        CircuitState.HALF_OPEN,
                        "open timeout elapsed, probe admitted",
                        now,
                    )
                    data.half_open_in_flight = 1
                    return ProceedDecision(
                        allowed=True,
                        reason=REASON_PROBE_ADMITTED,
                        probe=True,
                        epoch=data.half_open_epoch,
                        transition=transition,
                    )
                case CircuitState.HALF_OPEN:
                    limit = self._config.half_open_max_concurrent_probes
                    if data.half_open_in_flight >= limit:
                        return ProceedDecision(
                            allowed=False, reason=REASON_PROBE_LIMIT_EXCEEDED
                        )
                    data.half_open_in_flight += 1
                    return ProceedDecision(
                        allowed=True,
                        reason=REASON_PROBE_SLOT,
                        probe=True,
                        epoch=data.half_open_epoch,
                    )
                case _:
                    state = data.state
        log_error(
            self._logger,
            "circuit_breaker_invalid_state",
            breaker=self._name,
            state=repr(state),
        )
        return ProceedDecision(allowed=False, reason=REASON_INVALID_STATE)

    def record_success(
        self, decision: ProceedDecision | None = None
    ) -> StateTransition | None:
        """Record a successful call and return the transition it caused."""
        with self._lock:
            now = self._clock()
            data = self._data
            self._release_probe_locked(decision)
            if data.state == CircuitState.CLOSED:
                data.consecutive_failures = 0
                return None

            # A success observed while OPEN counts as a half-open success.
            data.consecutive_successes += 1
            threshold = self._config.success_threshold
            if data.consecutive_successes < threshold:
                return None
            return self._transition_locked(
                CircuitState.CLOSED,
                f"success threshold ({threshold}) reached",
                now,
                {"consecutive_successes": data.consecutive_successes},
            )

    def record_failure(
        self, decision: ProceedDecision | None = None
    ) -> StateTransition | None:
        """Record a failed call and return the transition it caused."""
        with self._lock:
            now = self._clock()
            data = self._data
            self._release_probe_locked(decision)
            data.last_failure_at = now

            if data.state == CircuitState.CLOSED:
                data.consecutive_failures += 1
                failure_count = self._count_failure_locked(now)
                threshold = self._config.failure_threshold
                if failure_count < threshold:
                    return None
                return self._transition_locked(
                    CircuitState.OPEN,
                    f"failure threshold ({threshold}) reached",
                    now,
                    {"failure_count": failure_count},
                )

            if data.state == CircuitState.HALF_OPEN:
                return self._transition_locked(
                    CircuitState.OPEN,
                    "probe failed",
                    now,
                    {"consecutive_successes": data.consecutive_successes},
                )

            return None

    def release(self, decision: ProceedDecision) -> None:
        """Free a probe slot without recording an outcome."""
        with self._lock:
            self._release_probe_locked(decision)

    def force_state(
        self,
        state: CircuitState,
        reason: str,
        metadata: Mapping[str, object] | None = None,
    ) -> StateTransition:
        """Override the current state, bypassing the transition rules.

        A transition record is appended even when ``state`` equals the
        current state.
        """
        with self._lock:
            extra = {"forced": True, **(metadata or {})}
            return self._transition_locked(
                CircuitState(state), reason, self._clock(), extra
            )

    def _retry_after_ms_locked(self, now: float) -> float:
        if self._data.state != CircuitState.OPEN:
            return 0.0
        timeout_s = self._config.open_timeout_ms / 1000.0
        deadline = self._data.last_state_change_at + timeout_s
        if now >= deadline:
            return 0.0
        return (deadline - now) * 1000.0

    def _count_failure_locked(self, now: float) -> int:
        window_ms = self._config.rolling_window_ms
        if window_ms is None:
            return self._data.consecutive_failures
        self._failure_times.append(now)
        horizon = now - window_ms / 1000.0
        while self._failure_times and self._failure_times[0] <= horizon:
            self._failure_times.popleft()
        return len(self._failure_times)

    def _release_probe_locked(self, decision: ProceedDecision | None) -> None:
        if decision is None or not decision.probe:
            return
        data = self._data
        if data.state != CircuitState.HALF_OPEN:
            return
        if decision.epoch != data.half_open_epoch:
            return
        data.half_open_in_flight = max(data.half_open_in_flight - 1, 0)

    def _transition_locked(
        self,
        target: CircuitState,
        reason: str,
        now: float,
        metadata: Mapping[str, object] | None = None,
    ) -> StateTransition:
        data = self._data
        transition = StateTransition(
            from_state=data.state,
            to_state=target,
            reason=reason,
            timestamp=now,
            occurred_at=_utcnow(),
            metadata=metadata or {},
        )
        data.state = target
        data.last_state_change_at = now
        data.consecutive_successes = 0
        data.half_open_in_flight = 0
        if target == CircuitState.CLOSED:
            data.consecutive_failures = 0
            self._failure_times.clear()
        elif target == CircuitState.HALF_OPEN:
            data.half_open_epoch += 1
        self._history.append(transition)
        return transition
