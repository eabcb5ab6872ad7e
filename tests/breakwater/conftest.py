from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

from tests.breakwater.support.fakes import FakeClock, FakeLogger


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Provide a manually advanced monotonic clock per test."""
    return FakeClock()


@pytest.fixture(autouse=True)
def _restore_breakwater_log_level() -> Iterator[None]:
    """Undo namespace level changes made by settings-driven breakers."""
    namespace = logging.getLogger("breakwater")
    level = namespace.level
    yield
    namespace.setLevel(level)
