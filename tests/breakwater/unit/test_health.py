from __future__ import annotations

import pytest

from breakwater.circuit_breaker import BreakerConfig, CircuitBreaker, CircuitState
from breakwater.health import (
    REASON_CHECK_FAILED,
    REASON_CIRCUIT_OPEN,
    REASON_CIRCUIT_PROBING,
    REASON_READY,
    HealthSnapshot,
    check_breaker,
    evaluate_breaker_health,
)
from tests.breakwater.support.fakes import FakeClock, FakeLogger


def _breaker(name: str, clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        config=BreakerConfig(failure_threshold=1, open_timeout_ms=1_000),
        clock=clock,
        logger=FakeLogger(),
    )


def test_all_closed_is_ready(fake_clock: FakeClock) -> None:
    breakers = [_breaker("db", fake_clock), _breaker("storage", fake_clock)]

    snapshot = evaluate_breaker_health(breakers, now_fn=lambda: 123.0)

    assert snapshot.status == "ok"
    assert snapshot.ready is True
    assert snapshot.reason == REASON_READY
    assert snapshot.last_checked_at == 123.0
    assert [result.name for result in snapshot.check_results] == ["db", "storage"]


def test_open_breaker_is_not_ready(fake_clock: FakeClock) -> None:
    storage = _breaker("storage", fake_clock)
    storage.force_open("outage")
    fake_clock.advance_ms(400)

    snapshot = evaluate_breaker_health([_breaker("db", fake_clock), storage])

    assert snapshot.status == "degraded"
    assert snapshot.ready is False
    assert snapshot.reason == REASON_CIRCUIT_OPEN
    assert snapshot.detail == "storage: open for 400ms"


def test_half_open_breaker_is_degraded_but_ready(fake_clock: FakeClock) -> None:
    breaker = _breaker("auth", fake_clock)
    breaker.force_state(CircuitState.HALF_OPEN, "probing")

    result = check_breaker(breaker)
    snapshot = evaluate_breaker_health([breaker])

    assert result.ok is True
    assert result.reason == REASON_CIRCUIT_PROBING
    assert snapshot.ready is True
    assert snapshot.status == "degraded"
    assert snapshot.reason == REASON_CIRCUIT_PROBING


def test_check_result_data_is_read_only(fake_clock: FakeClock) -> None:
    result = check_breaker(_breaker("db", fake_clock))

    assert result.data["total_calls"] == 0
    with pytest.raises(TypeError):
        result.data["total_calls"] = 1  # type: ignore[index]


def test_broken_breaker_reports_check_failed(fake_clock: FakeClock) -> None:
    breaker = _breaker("db", fake_clock)

    def _explode() -> None:
        raise RuntimeError("metrics unavailable")

    breaker.get_metrics = _explode  # type: ignore[method-assign]

    snapshot = evaluate_breaker_health([breaker])

    assert snapshot.ready is False
    assert snapshot.reason == REASON_CHECK_FAILED
    assert "RuntimeError: metrics unavailable" in snapshot.detail


def test_snapshot_callback_errors_are_suppressed(
    fake_clock: FakeClock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    seen: list[HealthSnapshot] = []

    def _record(snapshot: HealthSnapshot) -> None:
        seen.append(snapshot)
        raise RuntimeError("sink down")

    snapshot = evaluate_breaker_health([_breaker("db", fake_clock)], on_snapshot=_record)

    assert seen == [snapshot]
    assert "Health snapshot callback failed" in caplog.text
