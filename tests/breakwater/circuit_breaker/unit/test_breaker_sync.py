from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from breakwater.circuit_breaker import (
    BreakerConfig,
    CallTimeoutError,
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    ProbeLimitExceededError,
)
from tests.breakwater.support.fakes import FakeClock, FakeLogger


class _QueryFailed(Exception):
    pass


def _breaker(clock: FakeClock, **overrides: object) -> CircuitBreaker:
    values: dict[str, object] = {"failure_threshold": 3, "open_timeout_ms": 1_000}
    values.update(overrides)
    return CircuitBreaker(
        "postgres",
        config=BreakerConfig.create(values),
        clock=clock,
        logger=FakeLogger(),
    )


def _fail() -> None:
    raise _QueryFailed("connection reset")


def _trip(breaker: CircuitBreaker) -> None:
    for _ in range(breaker.config.failure_threshold):
        with pytest.raises(_QueryFailed):
            breaker.execute_sync(_fail)


def test_execute_sync_round_trip(fake_clock: FakeClock) -> None:
    breaker = _breaker(fake_clock)

    assert breaker.execute_sync(lambda: "row") == "row"
    _trip(breaker)
    with pytest.raises(CircuitOpenError):
        breaker.execute_sync(lambda: "row")

    fake_clock.advance_ms(1_000)
    assert breaker.execute_sync(lambda: "row") == "row"
    assert breaker.state == CircuitState.CLOSED


def test_execute_sync_rejects_coroutine_operations(fake_clock: FakeClock) -> None:
    breaker = _breaker(fake_clock)

    async def _coro() -> None:
        return None

    with pytest.raises(TypeError, match="synchronous"):
        breaker.execute_sync(_coro)


def test_execute_sync_timeout_returns_at_deadline(fake_clock: FakeClock) -> None:
    breaker = _breaker(fake_clock, failure_threshold=1, call_timeout_ms=20)
    unblock = threading.Event()

    def _blocked() -> str:
        unblock.wait(5)
        return "late"

    try:
        with pytest.raises(CallTimeoutError):
            breaker.execute_sync(_blocked)
    finally:
        unblock.set()

    assert breaker.state == CircuitState.OPEN
    assert breaker.get_metrics().total_timeouts == 1


def test_execute_sync_timeout_propagates_worker_errors(fake_clock: FakeClock) -> None:
    breaker = _breaker(fake_clock, call_timeout_ms=1_000)

    with pytest.raises(_QueryFailed, match="connection reset"):
        breaker.execute_sync(_fail)
    assert breaker.execute_sync(lambda: 7) == 7
    assert breaker.get_metrics().total_failures == 1


def test_parallel_threads_admit_exactly_one_probe(fake_clock: FakeClock) -> None:
    breaker = _breaker(fake_clock)
    _trip(breaker)
    fake_clock.advance_ms(1_000)

    callers = 12
    barrier = threading.Barrier(callers)
    release = threading.Event()
    all_rejected = threading.Event()
    rejected_lock = threading.Lock()
    rejected = 0

    def _probe() -> str:
        release.wait(5)
        return "ok"

    def _call() -> object:
        nonlocal rejected
        barrier.wait()
        try:
            return breaker.execute_sync(_probe)
        except (CircuitOpenError, ProbeLimitExceededError) as exc:
            with rejected_lock:
                rejected += 1
                if rejected == callers - 1:
                    all_rejected.set()
            return exc

    with ThreadPoolExecutor(max_workers=callers) as pool:
        futures = [pool.submit(_call) for _ in range(callers)]
        assert all_rejected.wait(5)
        release.set()
        results = [future.result(5) for future in futures]

    assert results.count("ok") == 1
    assert all(
        isinstance(result, ProbeLimitExceededError)
        for result in results
        if result != "ok"
    )
    assert breaker.state == CircuitState.CLOSED


def test_protect_wraps_plain_function(fake_clock: FakeClock) -> None:
    breaker = _breaker(fake_clock, failure_threshold=1)
    calls: list[tuple[int, int]] = []

    @breaker.protect
    def lookup(user_id: int, *, version: int = 1) -> str:
        calls.append((user_id, version))
        if user_id < 0:
            raise _QueryFailed("bad id")
        return f"user-{user_id}"

    assert lookup(5, version=2) == "user-5"
    with pytest.raises(_QueryFailed):
        lookup(-1)
    with pytest.raises(CircuitOpenError):
        lookup(5)
    assert calls == [(5, 2), (-1, 1)]
