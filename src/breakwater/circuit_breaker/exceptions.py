"""Circuit breaker exceptions.

Callers can distinguish between:
  - A call being rejected because the circuit is open.
  - A call being rejected because every half-open probe slot is taken.
  - A dispatched call exceeding the configured call timeout.

Exceptions raised by the protected operation itself are never wrapped; they
propagate to the caller unchanged.
"""

from breakwater.circuit_breaker.state import CircuitState


class BreakerError(Exception):
    """Base exception for the circuit breaker package."""


class InvalidConfigError(BreakerError, ValueError):
    """Raised when breaker configuration values are missing or inconsistent."""


class BreakerStateError(BreakerError):
    """Raised when the breaker reaches a state it cannot reason about.

    The breaker fails closed: the call is rejected rather than allowed through.
    """

    def __init__(self, breaker_name: str, state: object) -> None:
        self.breaker_name = breaker_name
        self.state = state
        super().__init__(f"invalid_state: {breaker_name} state={state!r}")


class CircuitOpenError(BreakerError):
    """Raised when a call is rejected because the circuit is open.

    Attributes:
        breaker_name: Name of the breaker rejecting the call.
        state: Breaker state observed when the call was rejected.
        retry_after_ms: Milliseconds until a half-open probe may be attempted.
    """

    def __init__(
        self,
        breaker_name: str,
        retry_after_ms: float,
        *,
        state: CircuitState = CircuitState.OPEN,
    ) -> None:
        """Initialize a circuit-open exception payload.

        Args:
            breaker_name: Breaker rejecting the call.
            retry_after_ms: Milliseconds until the next probe window opens.
            state: Breaker state at rejection time.
        """
        self.breaker_name = breaker_name
        self.state = state
        self.retry_after_ms = retry_after_ms
        super().__init__(
            f"circuit_open: {breaker_name} retry_after_ms={retry_after_ms:g}"
        )


class ProbeLimitExceededError(BreakerError):
    """Raised when a half-open breaker has no free probe slots.

    Attributes:
        breaker_name: Name of the breaker rejecting the call.
        max_probes: Configured concurrent probe limit.
    """

    def __init__(self, breaker_name: str, max_probes: int) -> None:
        self.breaker_name = breaker_name
        self.state = CircuitState.HALF_OPEN
        self.max_probes = max_probes
        super().__init__(
            f"probe_limit_exceeded: {breaker_name} max_probes={max_probes}"
        )


class CallTimeoutError(BreakerError, TimeoutError):
    """Raised when a dispatched call does not settle within the call timeout."""

    def __init__(self, breaker_name: str, timeout_ms: int) -> None:
        self.breaker_name = breaker_name
        self.timeout_ms = timeout_ms
        super().__init__(f"call_timeout: {breaker_name} timeout_ms={timeout_ms}")
