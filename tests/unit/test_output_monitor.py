"""Unit tests for the OutputMonitor polling state machine."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from session_supervisor.models import MonitorPhase
from session_supervisor.output_monitor import OutputMonitor
from session_supervisor.tmux_controller import TmuxError

# Long enough that the background ticker never fires during a test;
# ticks are driven by calling monitor.tick() directly.
MANUAL_INTERVAL = 3600


async def _run_until_stopped(monitor: OutputMonitor, limit: int = 100) -> int:
    """Drive ticks until the run stops; return how many ticks it took."""
    for _ in range(limit):
        if not monitor.is_running():
            break
        await monitor.tick()
    return monitor.state.ticks


@pytest.mark.asyncio
async def test_stall_timeout_after_exactly_15_unchanged_ticks(mock_driver):
    mock_driver.capture.return_value = "A"
    on_complete = AsyncMock()
    monitor = OutputMonitor()

    monitor.start(mock_driver, on_complete, poll_interval=MANUAL_INTERVAL)
    ticks = await _run_until_stopped(monitor)

    # First tick sees a change ("" -> "A"), then 15 unchanged ticks
    assert ticks == 16
    assert monitor.state.unchanged_ticks == 15
    assert monitor.state.phase == MonitorPhase.STALLED_TIMEOUT
    assert not monitor.is_running()
    on_complete.assert_awaited_once_with("A")


@pytest.mark.asyncio
async def test_completes_when_prompt_appears(mock_driver):
    mock_driver.capture.side_effect = ["A", "A\nanswer\nclaude>"]
    on_complete = AsyncMock()
    monitor = OutputMonitor()

    monitor.start(mock_driver, on_complete, poll_interval=MANUAL_INTERVAL)
    ticks = await _run_until_stopped(monitor)

    assert ticks == 2
    assert monitor.state.phase == MonitorPhase.COMPLETED
    on_complete.assert_awaited_once_with("A\nanswer\nclaude>")


@pytest.mark.asyncio
async def test_change_resets_unchanged_counter(mock_driver):
    mock_driver.capture.side_effect = ["A", "A", "A", "AB", "AB"]
    monitor = OutputMonitor()
    monitor.start(mock_driver, AsyncMock(), poll_interval=MANUAL_INTERVAL)

    try:
        for _ in range(3):
            await monitor.tick()
        assert monitor.state.unchanged_ticks == 2

        await monitor.tick()
        assert monitor.state.unchanged_ticks == 0
        assert monitor.state.last_output == "AB"

        await monitor.tick()
        assert monitor.state.unchanged_ticks == 1
        assert monitor.is_running()
    finally:
        monitor.stop()


@pytest.mark.asyncio
async def test_stall_ceiling_is_configurable(mock_driver):
    mock_driver.capture.return_value = "working"
    on_complete = AsyncMock()
    monitor = OutputMonitor(max_unchanged_ticks=3)

    monitor.start(mock_driver, on_complete, poll_interval=MANUAL_INTERVAL)
    ticks = await _run_until_stopped(monitor)

    assert ticks == 4
    on_complete.assert_awaited_once_with("working")


@pytest.mark.asyncio
async def test_capture_failure_stops_without_completion(mock_driver):
    mock_driver.capture.side_effect = TmuxError("session gone")
    on_complete = AsyncMock()
    on_error = AsyncMock()
    monitor = OutputMonitor()

    monitor.start(mock_driver, on_complete, poll_interval=MANUAL_INTERVAL, on_error=on_error)
    await monitor.tick()

    assert not monitor.is_running()
    assert monitor.state.phase == MonitorPhase.FAILED
    on_complete.assert_not_awaited()
    on_error.assert_awaited_once()
    assert isinstance(on_error.await_args.args[0], TmuxError)

    # A later tick does nothing: the run is over
    await monitor.tick()
    assert mock_driver.capture.await_count == 1


@pytest.mark.asyncio
async def test_start_while_running_is_rejected(mock_driver):
    monitor = OutputMonitor()
    first = AsyncMock()
    second = AsyncMock()

    handle = monitor.start(mock_driver, first, poll_interval=MANUAL_INTERVAL)
    try:
        state = monitor.state
        assert handle is not None

        assert monitor.start(mock_driver, second, poll_interval=MANUAL_INTERVAL) is None
        assert monitor.state is state
    finally:
        monitor.stop()


@pytest.mark.asyncio
async def test_restart_after_completion_gets_fresh_state(mock_driver):
    mock_driver.capture.side_effect = ["x\n> \n", "y\nclaude>"]
    monitor = OutputMonitor()

    first = AsyncMock()
    monitor.start(mock_driver, first, poll_interval=MANUAL_INTERVAL)
    await _run_until_stopped(monitor)
    first.assert_awaited_once()

    second = AsyncMock()
    assert monitor.start(mock_driver, second, poll_interval=MANUAL_INTERVAL) is not None
    assert monitor.state.ticks == 0
    assert monitor.state.last_output == ""
    await _run_until_stopped(monitor)
    second.assert_awaited_once_with("y\nclaude>")


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_ends_run(mock_driver):
    on_complete = AsyncMock()
    monitor = OutputMonitor()
    monitor.start(mock_driver, on_complete, poll_interval=MANUAL_INTERVAL)

    monitor.stop()
    monitor.stop()

    assert not monitor.is_running()
    assert monitor.state.phase == MonitorPhase.IDLE
    await monitor.tick()
    mock_driver.capture.assert_not_awaited()
    on_complete.assert_not_awaited()


@pytest.mark.asyncio
async def test_stop_during_capture_discards_result(mock_driver):
    monitor = OutputMonitor()
    on_complete = AsyncMock()

    async def capture_then_stop():
        monitor.stop()
        return "done\nclaude>"

    mock_driver.capture.side_effect = capture_then_stop
    monitor.start(mock_driver, on_complete, poll_interval=MANUAL_INTERVAL)
    await monitor.tick()

    on_complete.assert_not_awaited()
    assert monitor.state.last_output == ""


@pytest.mark.asyncio
async def test_callback_error_does_not_escape(mock_driver):
    mock_driver.capture.return_value = "answer\nclaude>"
    on_complete = AsyncMock(side_effect=RuntimeError("consumer broke"))
    monitor = OutputMonitor()

    monitor.start(mock_driver, on_complete, poll_interval=MANUAL_INTERVAL)
    await monitor.tick()

    on_complete.assert_awaited_once()
    assert not monitor.is_running()


@pytest.mark.asyncio
async def test_scheduled_run_completes_on_its_own(mock_driver):
    mock_driver.capture.side_effect = ["thinking", "thinking\nmore", "thinking\nmore\nclaude>"]
    done = asyncio.Event()
    received = []

    async def on_complete(output: str):
        received.append(output)
        done.set()

    monitor = OutputMonitor()
    handle = monitor.start(mock_driver, on_complete, poll_interval=0.01)

    await asyncio.wait_for(done.wait(), timeout=2)
    await asyncio.wait_for(handle.wait(), timeout=2)

    assert received == ["thinking\nmore\nclaude>"]
    assert not handle.running
    assert mock_driver.capture.await_count == 3


@pytest.mark.asyncio
async def test_external_stop_does_not_cancel_capture_in_flight(mock_driver):
    capturing = asyncio.Event()
    release = asyncio.Event()
    outcome = []

    async def slow_capture():
        capturing.set()
        try:
            await release.wait()
        except asyncio.CancelledError:
            outcome.append("cancelled")
            raise
        outcome.append("returned")
        return "answer\nclaude>"

    mock_driver.capture.side_effect = slow_capture
    on_complete = AsyncMock()
    monitor = OutputMonitor()
    handle = monitor.start(mock_driver, on_complete, poll_interval=0.01)

    await asyncio.wait_for(capturing.wait(), timeout=1)
    monitor.stop()
    release.set()
    await asyncio.wait_for(handle.wait(), timeout=1)

    # The capture finished normally and its result was discarded
    assert outcome == ["returned"]
    on_complete.assert_not_awaited()
    assert monitor.state.last_output == ""
    assert not monitor.is_running()
