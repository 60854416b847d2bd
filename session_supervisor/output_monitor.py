"""Polls the session pane until a response is complete."""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from .diff_detector import DiffDetector
from .models import MonitorPhase, MonitorState
from .scheduler import PeriodicTask
from .tmux_controller import SessionDriver

CompletionCallback = Callable[[str], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]


class OutputMonitor:
    """
    Detects the end of a Claude response by polling captures.

    One run at a time: ``start()`` while a run is active is rejected.
    A run ends when the idle prompt shows up (COMPLETED) or when the
    capture stays identical for ``max_unchanged_ticks`` ticks
    (STALLED_TIMEOUT). Either way the completion callback gets the
    current capture exactly once and the run stops itself.

    The stall ceiling counts ticks, not seconds, so the real timeout is
    ``max_unchanged_ticks * poll_interval``.
    """

    def __init__(
        self,
        max_unchanged_ticks: int = 15,  # ~30s at the default 2s interval
        diff_detector: Optional[DiffDetector] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.max_unchanged_ticks = max_unchanged_ticks
        self.logger = logger or logging.getLogger(__name__)
        self.diff_detector = diff_detector or DiffDetector(logger=self.logger)

        self._state = MonitorState()
        self._handle: Optional[PeriodicTask] = None
        self._driver: Optional[SessionDriver] = None
        self._on_complete: Optional[CompletionCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._delivered = False

    @property
    def state(self) -> MonitorState:
        return self._state

    def is_running(self) -> bool:
        return self._state.running

    def start(
        self,
        driver: SessionDriver,
        on_complete: CompletionCallback,
        poll_interval: float = 2.0,
        on_error: Optional[ErrorCallback] = None,
    ) -> Optional[PeriodicTask]:
        """
        Begin polling ``driver`` every ``poll_interval`` seconds.

        Returns the ticker handle, or None when a run is already active.
        """
        if self._state.running:
            self.logger.warning("OutputMonitor is already running, ignoring start")
            return None

        self.logger.info(f"Started monitoring output (poll_interval={poll_interval}s)")
        self._driver = driver
        self._on_complete = on_complete
        self._on_error = on_error
        self._delivered = False
        self._state = MonitorState(
            running=True,
            phase=MonitorPhase.POLLING,
            started_at=datetime.now(),
        )
        self._handle = PeriodicTask("output-monitor", poll_interval, self.tick, logger=self.logger)
        return self._handle.start()

    def stop(self):
        """Stop polling. Safe to call repeatedly and from inside a tick."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

        if self._state.running:
            self._state.running = False
            if self._state.phase == MonitorPhase.POLLING:
                self._state.phase = MonitorPhase.IDLE
            self.logger.info(f"Stopped monitoring output ({self._state.phase.value})")

    async def tick(self):
        """Capture once and advance the state machine."""
        if not self._state.running:
            return

        state = self._state
        state.ticks += 1

        try:
            current = await self._driver.capture()
        except Exception as e:
            self.logger.error(f"Error capturing output, stopping monitor: {e}")
            self._finish(MonitorPhase.FAILED)
            await self._report_error(e)
            return

        # stop() may have been called while the capture was in flight
        if state is not self._state or not state.running:
            return

        if not self.diff_detector.has_changed(state.last_output, current):
            state.unchanged_ticks += 1
            self.logger.debug(f"Output unchanged ({state.unchanged_ticks}/{self.max_unchanged_ticks})")

            if state.unchanged_ticks >= self.max_unchanged_ticks:
                self.logger.warning(
                    f"Output unchanged for {state.unchanged_ticks} ticks, delivering as-is"
                )
                self._finish(MonitorPhase.STALLED_TIMEOUT)
                await self._deliver(current)
            return

        state.unchanged_ticks = 0
        new_content = self.diff_detector.extract_new_content(state.last_output, current)
        state.last_output = current

        if self.diff_detector.detect_response_end(current):
            self.logger.info("Response end detected")
            self._finish(MonitorPhase.COMPLETED)
            await self._deliver(current)
        else:
            self.logger.debug(f"Output changed (+{len(new_content)} chars), still waiting")

    def _finish(self, phase: MonitorPhase):
        self._state.phase = phase
        self.stop()

    async def _deliver(self, output: str):
        if self._delivered or self._on_complete is None:
            return
        self._delivered = True
        try:
            await self._on_complete(output)
        except Exception as e:
            self.logger.error(f"Completion callback failed: {e}")

    async def _report_error(self, error: Exception):
        if self._on_error is None:
            return
        try:
            await self._on_error(error)
        except Exception as e:
            self.logger.error(f"Error callback failed: {e}")
