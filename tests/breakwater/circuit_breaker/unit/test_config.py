from __future__ import annotations

import dataclasses

import pytest

from breakwater.circuit_breaker import (
    MAX_SUCCESS_THRESHOLD,
    BreakerConfig,
    BreakerError,
    InvalidConfigError,
)


def test_defaults_are_valid() -> None:
    config = BreakerConfig()

    assert config.failure_threshold == 5
    assert config.success_threshold == 1
    assert config.open_timeout_ms == 30_000
    assert config.half_open_max_concurrent_probes == 1
    assert config.rolling_window_ms is None
    assert config.call_timeout_ms is None
    assert config.enabled is True
    assert config.windowed is False


def test_create_merges_mapping_and_overrides() -> None:
    config = BreakerConfig.create(
        {"failure_threshold": 3, "open_timeout_ms": 500},
        open_timeout_ms=750,
    )

    assert config.failure_threshold == 3
    assert config.open_timeout_ms == 750


@pytest.mark.parametrize(
    "field_name",
    [
        "failure_threshold",
        "success_threshold",
        "open_timeout_ms",
        "half_open_max_concurrent_probes",
        "max_history_size",
        "rolling_window_ms",
        "call_timeout_ms",
    ],
)
@pytest.mark.parametrize("value", [0, -1])
def test_non_positive_values_are_rejected(field_name: str, value: int) -> None:
    with pytest.raises(InvalidConfigError, match=field_name):
        BreakerConfig.create({field_name: value})


def test_success_threshold_above_probe_limit_is_rejected() -> None:
    with pytest.raises(InvalidConfigError, match="half_open_max_concurrent_probes"):
        BreakerConfig.create(success_threshold=2, half_open_max_concurrent_probes=1)


def test_success_threshold_above_hard_bound_is_rejected() -> None:
    with pytest.raises(InvalidConfigError, match=str(MAX_SUCCESS_THRESHOLD)):
        BreakerConfig.create(
            success_threshold=MAX_SUCCESS_THRESHOLD + 1,
            half_open_max_concurrent_probes=MAX_SUCCESS_THRESHOLD + 1,
        )


def test_missing_required_field_is_rejected() -> None:
    with pytest.raises(InvalidConfigError, match="failure_threshold is required"):
        BreakerConfig.create(failure_threshold=None)


def test_unknown_field_is_rejected() -> None:
    with pytest.raises(InvalidConfigError, match="unknown config fields: bogus"):
        BreakerConfig.create(bogus=1)


@pytest.mark.parametrize("value", [1.5, "3", True])
def test_non_integer_values_are_rejected(value: object) -> None:
    with pytest.raises(InvalidConfigError, match="must be an integer"):
        BreakerConfig.create(failure_threshold=value)


def test_invalid_config_is_a_value_error_and_breaker_error() -> None:
    with pytest.raises(ValueError):
        BreakerConfig(failure_threshold=0)
    with pytest.raises(BreakerError):
        BreakerConfig(failure_threshold=0)


def test_config_is_immutable() -> None:
    config = BreakerConfig()

    with pytest.raises(dataclasses.FrozenInstanceError):
        config.failure_threshold = 10  # type: ignore[misc]


def test_replace_builds_new_validated_config() -> None:
    config = BreakerConfig(failure_threshold=3)

    updated = config.replace(failure_threshold=7, rolling_window_ms=1_000)

    assert config.failure_threshold == 3
    assert updated.failure_threshold == 7
    assert updated.windowed is True
    with pytest.raises(InvalidConfigError):
        config.replace(success_threshold=4)


def test_summary_lists_every_field() -> None:
    summary = BreakerConfig(call_timeout_ms=250).summary()

    assert summary["call_timeout_ms"] == 250
    assert summary["enabled"] is True
    assert set(summary) == {item.name for item in dataclasses.fields(BreakerConfig)}
