from __future__ import annotations

import time
from collections.abc import Sequence

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from breakwater.circuit_breaker.breaker import CircuitBreaker
from breakwater.circuit_breaker.config import MAX_SUCCESS_THRESHOLD, BreakerConfig
from breakwater.circuit_breaker.metrics import BreakerListener
from breakwater.circuit_breaker.state_manager import Clock
from breakwater.logging import (
    BreakerLogger,
    configure_structlog,
    get_log_level_value,
    set_breaker_log_level,
)

DEFAULT_ENV_PREFIX = "CIRCUIT_BREAKER_"


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class BreakerSettings(BaseSettings):
    """Environment-driven breaker tunables.

    Variables are read as ``CIRCUIT_BREAKER_<FIELD>``. Subclass with
    ``model_config = prefixed_settings_config("STORAGE_BREAKER_")`` to give a
    second dependency its own set of variables.
    """

    model_config = prefixed_settings_config(DEFAULT_ENV_PREFIX)

    name: str = "default"
    enabled: bool = True
    failure_threshold: int = 5
    success_threshold: int = 1
    open_timeout_ms: int = 30_000
    half_open_max_concurrent_probes: int = 1
    rolling_window_ms: int | None = None
    call_timeout_ms: int | None = None
    max_history_size: int = 100
    log_level: str = "INFO"

    @field_validator("name", mode="before")
    @classmethod
    def _validate_name(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if not normalized:
            raise ValueError("name must be non-empty")
        return normalized

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        get_log_level_value(value)
        return value.strip().upper()

    @field_validator(
        "failure_threshold",
        "success_threshold",
        "open_timeout_ms",
        "half_open_max_concurrent_probes",
        "max_history_size",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be > 0")
        return value

    @field_validator("rolling_window_ms", "call_timeout_ms")
    @classmethod
    def _validate_optional_positive(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("must be > 0 when provided")
        return value

    @model_validator(mode="after")
    def _validate_thresholds(self) -> BreakerSettings:
        if self.success_threshold > MAX_SUCCESS_THRESHOLD:
            raise ValueError(f"success_threshold must be <= {MAX_SUCCESS_THRESHOLD}")
        if self.success_threshold > self.half_open_max_concurrent_probes:
            raise ValueError(
                "success_threshold must be <= half_open_max_concurrent_probes"
            )
        return self

    def to_config(self) -> BreakerConfig:
        """Build the immutable breaker config from these settings."""
        return BreakerConfig.create(
            failure_threshold=self.failure_threshold,
            success_threshold=self.success_threshold,
            open_timeout_ms=self.open_timeout_ms,
            half_open_max_concurrent_probes=self.half_open_max_concurrent_probes,
            rolling_window_ms=self.rolling_window_ms,
            call_timeout_ms=self.call_timeout_ms,
            max_history_size=self.max_history_size,
            enabled=self.enabled,
        )

    def build_breaker(
        self,
        *,
        clock: Clock = time.monotonic,
        listeners: Sequence[BreakerListener] | None = None,
        logger: BreakerLogger | None = None,
        configure_logging: bool = False,
    ) -> CircuitBreaker:
        """Build a breaker named ``self.name`` from these settings.

        ``log_level`` is applied to the ``breakwater`` logger namespace. With
        ``configure_logging`` the process-wide structlog pipeline is installed
        at that level as well.
        """
        if configure_logging:
            configure_structlog(log_level=self.log_level)
        set_breaker_log_level(self.log_level)
        return CircuitBreaker(
            self.name,
            config=self.to_config(),
            clock=clock,
            listeners=listeners,
            logger=logger,
        )
