"""Shared pytest fixtures for session supervisor tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from session_supervisor.notifier import Notifier
from session_supervisor.tmux_controller import TmuxController


@pytest.fixture
def mock_driver() -> MagicMock:
    """
    Mock TmuxController for testing without a real tmux session.

    Returns:
        MagicMock with every driver operation as an AsyncMock
    """
    mock = MagicMock(spec=TmuxController)
    mock.session_name = "claude-test"
    mock.exists = AsyncMock(return_value=True)
    mock.ensure = AsyncMock(return_value=None)
    mock.send = AsyncMock(return_value=None)
    mock.capture = AsyncMock(return_value="Mock tmux output")
    mock.kill = AsyncMock(return_value=None)
    mock.info = AsyncMock(return_value="claude-test 200x50 claude")
    return mock


@pytest.fixture
def mock_notifier() -> MagicMock:
    """
    Mock Notifier that records notifications and always succeeds.

    Returns:
        MagicMock whose notify() is an AsyncMock returning True
    """
    mock = MagicMock(spec=Notifier)
    mock.notify = AsyncMock(return_value=True)
    return mock


class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    def set_minutes(self, minutes: float):
        self.now = minutes * 60


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
