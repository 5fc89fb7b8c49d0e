"""Global pytest configuration and fixtures."""

from __future__ import annotations

import os

import pytest

from tests.fakes import FakeClock, FakeCoordinationBackend, FakeSupervisor


@pytest.fixture
def clock() -> FakeClock:
    """Manually advanced wall clock."""
    return FakeClock()


@pytest.fixture
def backend(clock: FakeClock) -> FakeCoordinationBackend:
    """In-memory coordination service sharing the test clock."""
    return FakeCoordinationBackend(clock)


@pytest.fixture
def supervisor() -> FakeSupervisor:
    """Fake systemd whose units start successfully."""
    return FakeSupervisor()


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep LEADER_ELECT_* variables from the host out of the tests."""
    for name in list(os.environ):
        if name.startswith("LEADER_ELECT_"):
            monkeypatch.delenv(name)
