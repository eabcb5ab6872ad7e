"""Immutable circuit breaker configuration."""

from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields, replace

from breakwater.circuit_breaker.exceptions import InvalidConfigError

MAX_SUCCESS_THRESHOLD = 20

_REQUIRED_POSITIVE_INTS = (
    "failure_threshold",
    "success_threshold",
    "open_timeout_ms",
    "half_open_max_concurrent_probes",
    "max_history_size",
)
_OPTIONAL_POSITIVE_INTS = ("rolling_window_ms", "call_timeout_ms")


def _check_positive_int(name: str, value: object) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfigError(f"{name} must be an integer, got {value!r}")
    if value <= 0:
        raise InvalidConfigError(f"{name} must be > 0")


@dataclass(frozen=True, slots=True)
class BreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Failures required while ``CLOSED`` before opening.
        success_threshold: Consecutive half-open successes required to close.
        open_timeout_ms: Milliseconds to stay ``OPEN`` before admitting a probe.
        half_open_max_concurrent_probes: In-flight calls allowed while
            ``HALF_OPEN``.
        rolling_window_ms: Count failures inside this window instead of
            consecutively. ``None`` selects consecutive counting.
        call_timeout_ms: Per-call timeout. ``None`` disables call timeouts.
        max_history_size: Transition records kept before the oldest is evicted.
        enabled: When ``False`` calls pass straight through the breaker.
    """

    failure_threshold: int = 5
    success_threshold: int = 1
    open_timeout_ms: int = 30_000
    half_open_max_concurrent_probes: int = 1
    rolling_window_ms: int | None = None
    call_timeout_ms: int | None = None
    max_history_size: int = 100
    enabled: bool = True

    def __post_init__(self) -> None:
        for name in _REQUIRED_POSITIVE_INTS:
            value = getattr(self, name)
            if value is None:
                raise InvalidConfigError(f"{name} is required")
            _check_positive_int(name, value)
        for name in _OPTIONAL_POSITIVE_INTS:
            value = getattr(self, name)
            if value is not None:
                _check_positive_int(name, value)
        if not isinstance(self.enabled, bool):
            raise InvalidConfigError(f"enabled must be a bool, got {self.enabled!r}")
        if self.success_threshold > MAX_SUCCESS_THRESHOLD:
            raise InvalidConfigError(
                f"success_threshold must be <= {MAX_SUCCESS_THRESHOLD}"
            )
        if self.success_threshold > self.half_open_max_concurrent_probes:
            raise InvalidConfigError(
                "success_threshold must be <= half_open_max_concurrent_probes"
            )

    @classmethod
    def create(
        cls,
        values: Mapping[str, object] | None = None,
        /,
        **overrides: object,
    ) -> "BreakerConfig":
        """Validate raw values and build a config.

        Raises:
            InvalidConfigError: When a field is unknown, missing, non-positive,
                or the thresholds cannot be satisfied.
        """
        merged: dict[str, object] = dict(values or {})
        merged.update(overrides)
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(merged) - known)
        if unknown:
            raise InvalidConfigError(f"unknown config fields: {', '.join(unknown)}")
        return cls(**merged)  # type: ignore[arg-type]

    @property
    def windowed(self) -> bool:
        """Whether failures are counted inside a rolling window."""
        return self.rolling_window_ms is not None

    def replace(self, **changes: object) -> "BreakerConfig":
        """Return a new validated config with ``changes`` applied."""
        return replace(self, **changes)  # type: ignore[arg-type]

    def summary(self) -> dict[str, object]:
        """Return config values as a plain mapping for logging."""
        return asdict(self)
