"""Integration tests for the /health and /status endpoints."""

import pytest
from fastapi.testclient import TestClient

from session_supervisor.context_monitor import ContextMonitor
from session_supervisor.output_monitor import OutputMonitor
from session_supervisor.restart_service import RestartService
from session_supervisor.server import create_app
from session_supervisor.tmux_controller import TmuxError


@pytest.fixture
def components(mock_driver, mock_notifier, clock):
    output_monitor = OutputMonitor()
    context_monitor = ContextMonitor(mock_driver, mock_notifier, notify_user_id=1)
    restart_service = RestartService(mock_driver, mock_notifier, notify_user_id=1, clock=clock)
    return output_monitor, context_monitor, restart_service


@pytest.fixture
def test_client(mock_driver, components):
    output_monitor, context_monitor, restart_service = components
    app = create_app(
        driver=mock_driver,
        output_monitor=output_monitor,
        context_monitor=context_monitor,
        restart_service=restart_service,
    )
    return TestClient(app)


def test_health(test_client):
    response = test_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_status_snapshot(test_client, components, clock):
    _, context_monitor, restart_service = components
    context_monitor.last_usage = 0.42
    context_monitor.compactions = 2
    restart_service.restart_count = 5
    clock.set_minutes(5)

    data = test_client.get("/status").json()

    assert data["session_alive"] is True
    assert data["session_error"] is None
    assert data["output_monitor"]["phase"] == "idle"
    assert data["output_monitor"]["running"] is False
    assert data["context_usage"] == 0.42
    assert data["compactions"] == 2
    assert data["context_monitor_running"] is False
    assert data["health"]["consecutive_failures"] == 0
    assert data["restarts_in_window"] == 0
    assert data["max_restarts"] == 3
    assert data["total_restarts"] == 5


@pytest.mark.asyncio
async def test_status_counts_recent_restarts(mock_driver, components, clock):
    output_monitor, context_monitor, restart_service = components
    restart_service.settle_seconds = 0
    await restart_service.handle_unhealthy()
    clock.set_minutes(10)
    await restart_service.handle_unhealthy()

    app = create_app(mock_driver, output_monitor, context_monitor, restart_service)
    data = TestClient(app).get("/status").json()

    assert data["restarts_in_window"] == 2
    assert data["total_restarts"] == 2


def test_status_reports_driver_error(mock_driver, test_client):
    mock_driver.exists.side_effect = TmuxError("tmux server not running")

    response = test_client.get("/status")

    assert response.status_code == 200
    data = response.json()
    assert data["session_alive"] is None
    assert "tmux server not running" in data["session_error"]


def test_status_without_components():
    data = TestClient(create_app()).get("/status").json()

    assert data["session_alive"] is None
    assert data["output_monitor"] is None
    assert data["health"] is None
