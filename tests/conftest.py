"""Shared test fixtures for agentswarm."""

from __future__ import annotations

from pathlib import Path
from typing import List
from unittest.mock import MagicMock

import pytest

from agentswarm.control_plane import ControlPlaneClient
from agentswarm.models import CommandResult


class FakeClock:
    """Monotonic clock that only moves when sleep() is called."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_client() -> MagicMock:
    """ControlPlaneClient mock returning an empty result by default."""
    client = MagicMock(spec=ControlPlaneClient)
    client.execute.return_value = CommandResult(service="ec2", command="cmd")
    return client


@pytest.fixture
def swarm_home(tmp_path: Path) -> Path:
    """Temporary agentswarm home with a config directory."""
    home = tmp_path / ".agentswarm"
    (home / "config").mkdir(parents=True)
    return home
