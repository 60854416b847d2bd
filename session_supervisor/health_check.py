"""Liveness probe for the managed tmux session."""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from .models import HealthState
from .scheduler import PeriodicTask
from .tmux_controller import SessionDriver

UnhealthyCallback = Callable[[], Awaitable[None]]


class HealthCheck:
    """
    Probes ``driver.exists()`` on a fixed interval.

    After ``max_consecutive_failures`` failed probes in a row the unhealthy
    callback is invoked once and the counter goes back to zero, whatever
    the callback's outcome.
    """

    def __init__(
        self,
        driver: SessionDriver,
        check_interval: float = 10.0,
        max_consecutive_failures: int = 3,
        logger: Optional[logging.Logger] = None,
    ):
        self.driver = driver
        self.check_interval = check_interval
        self.max_consecutive_failures = max_consecutive_failures
        self.logger = logger or logging.getLogger(__name__)

        self.state = HealthState()
        self._on_unhealthy: Optional[UnhealthyCallback] = None
        self._handle: Optional[PeriodicTask] = None

    @property
    def consecutive_failures(self) -> int:
        return self.state.consecutive_failures

    def start(self, on_unhealthy: UnhealthyCallback) -> PeriodicTask:
        if self._handle is not None and self._handle.running:
            self.logger.warning("HealthCheck is already running")
            return self._handle

        self.logger.info(f"Started health check (interval={self.check_interval}s)")
        self._on_unhealthy = on_unhealthy
        self._handle = PeriodicTask("health-check", self.check_interval, self.tick, logger=self.logger)
        return self._handle.start()

    def stop(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            self.logger.info("Stopped health check")

    def is_running(self) -> bool:
        return self._handle is not None and self._handle.running

    async def check(self) -> bool:
        """Run one probe. Driver errors count as unhealthy."""
        try:
            exists = await self.driver.exists()
        except Exception as e:
            self.logger.error(f"Health probe failed: {e}")
            return False

        if not exists:
            self.logger.warning("tmux session does not exist")
            return False

        self.logger.debug("Health check passed")
        return True

    async def tick(self):
        healthy = await self.check()
        self.state.last_check = datetime.now()
        self.state.last_healthy = healthy

        if healthy:
            self.state.consecutive_failures = 0
            return

        self.state.consecutive_failures += 1
        self.logger.warning(
            f"Health check failed ({self.state.consecutive_failures}/{self.max_consecutive_failures})"
        )

        if self.state.consecutive_failures >= self.max_consecutive_failures:
            self.logger.error("Consecutive health checks failed, escalating")
            self.state.escalations += 1
            try:
                if self._on_unhealthy is not None:
                    await self._on_unhealthy()
            except Exception as e:
                self.logger.error(f"Unhealthy callback failed: {e}")
            finally:
                self.state.consecutive_failures = 0
