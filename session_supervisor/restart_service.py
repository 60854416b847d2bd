"""Rate-limited automatic restart of the managed session."""

import asyncio
import logging
import time
from typing import Callable, Optional

from .health_check import HealthCheck
from .models import RestartRecord
from .notifier import Notifier
from .scheduler import PeriodicTask
from .tmux_controller import SessionDriver


class RestartService:
    """
    Restarts the session when the health check escalates.

    At most ``max_restarts`` restarts are attempted within any rolling
    ``restart_window_seconds``; beyond that the operator is told to step in
    and nothing is touched until older attempts age out of the window.
    """

    def __init__(
        self,
        driver: SessionDriver,
        notifier: Notifier,
        notify_user_id: Optional[int],
        health_check: Optional[HealthCheck] = None,
        max_restarts: int = 3,
        restart_window_seconds: float = 60 * 60,  # 1 hour
        settle_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        self.driver = driver
        self.notifier = notifier
        self.notify_user_id = notify_user_id
        self.max_restarts = max_restarts
        self.restart_window_seconds = restart_window_seconds
        self.settle_seconds = settle_seconds
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self.health_check = health_check or HealthCheck(driver, logger=self.logger)

        self.restart_count = 0  # Lifetime total
        self._records: list[RestartRecord] = []

    def start(self) -> PeriodicTask:
        """Start the health check with this service as its unhealthy callback."""
        self.logger.info("Started auto-restart service")
        return self.health_check.start(self.handle_unhealthy)

    def stop(self):
        self.health_check.stop()
        self.logger.info("Stopped auto-restart service")

    def is_running(self) -> bool:
        return self.health_check.is_running()

    def _prune(self, now: float):
        self._records = self._in_window(now)

    def _in_window(self, now: float) -> list[RestartRecord]:
        return [r for r in self._records if now - r.at < self.restart_window_seconds]

    def recent_restarts(self) -> list[RestartRecord]:
        """Restart attempts still inside the rolling window (read-only view)."""
        return self._in_window(self.clock())

    def has_capacity(self) -> bool:
        return len(self.recent_restarts()) < self.max_restarts

    async def handle_unhealthy(self):
        """Escalation entry point: restart if the budget allows, otherwise refuse."""
        now = self.clock()
        self._prune(now)

        if len(self._records) >= self.max_restarts:
            self.logger.error(
                f"Restart limit reached ({len(self._records)} in "
                f"{self.restart_window_seconds}s), not restarting"
            )
            await self._notify(
                f"Claude Code session is unhealthy, but the restart limit was reached "
                f"({self.max_restarts} per {self._window_label()}).\n\nPlease check it manually."
            )
            return

        self._records.append(RestartRecord(at=now))
        self.restart_count += 1
        self.logger.warning(
            f"tmux session unhealthy, restarting (total={self.restart_count}, "
            f"recent={len(self._records)})"
        )
        await self.restart()

    async def restart(self) -> bool:
        """Kill and recreate the session. Returns True on success."""
        await self._notify(
            f"Claude Code session is unhealthy, restarting... "
            f"({len(self._records)}/{self.max_restarts})"
        )

        try:
            await self.driver.kill()
        except Exception as e:
            self.logger.warning(f"Error killing session (may already be gone): {e}")

        await asyncio.sleep(self.settle_seconds)

        try:
            await self.driver.ensure()
        except Exception as e:
            self.logger.error(f"Failed to restart session: {e}")
            await self._notify("Failed to restart Claude Code session, please check it manually")
            return False

        self.logger.info("tmux session restarted")
        await self._notify("Claude Code session restarted")
        return True

    def _window_label(self) -> str:
        window = self.restart_window_seconds
        if window % 3600 == 0:
            hours = int(window // 3600)
            return "hour" if hours == 1 else f"{hours} hours"
        if window >= 3600:
            return f"{window / 3600:g} hours"
        if window >= 60 and window % 60 == 0:
            return f"{int(window // 60)} minutes"
        return f"{window:g} seconds"

    async def _notify(self, text: str) -> bool:
        if self.notify_user_id is None:
            self.logger.debug(f"No operator configured, not sending: {text}")
            return False
        return await self.notifier.notify(self.notify_user_id, text)
