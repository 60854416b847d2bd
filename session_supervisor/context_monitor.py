"""Watches context window usage and compacts the session when it runs high."""

import asyncio
import logging
from typing import Any, Optional

import httpx

from .models import ResourceStatus
from .notifier import Notifier
from .scheduler import PeriodicTask
from .tmux_controller import SessionDriver

logger = logging.getLogger(__name__)

DEFAULT_STATUS_URL = "http://localhost:37777/api/status"


def parse_status(data: Any) -> Optional[ResourceStatus]:
    """
    Build a ResourceStatus from a status payload.

    Expects ``{"contextWindow": {"usage": 0.42, "tokenCount": ..., "maxTokens": ...}}``.
    Anything else (missing block, non-numeric or out-of-range usage) is None.
    """
    if not isinstance(data, dict):
        return None
    window = data.get("contextWindow")
    if not isinstance(window, dict):
        return None

    usage = window.get("usage")
    if isinstance(usage, bool) or not isinstance(usage, (int, float)):
        return None
    if not 0.0 <= usage <= 1.0:
        return None

    token_count = window.get("tokenCount", 0)
    max_tokens = window.get("maxTokens", 200_000)
    if not isinstance(token_count, int) or isinstance(token_count, bool):
        token_count = 0
    if not isinstance(max_tokens, int) or isinstance(max_tokens, bool) or max_tokens <= 0:
        max_tokens = 200_000

    return ResourceStatus(usage=float(usage), token_count=token_count, max_tokens=max_tokens)


class StatusSource:
    """Fetches context window status over HTTP (claude-mem worker API)."""

    def __init__(
        self,
        url: str = DEFAULT_STATUS_URL,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def fetch(self) -> Optional[ResourceStatus]:
        """Return the current status, or None when unreachable or malformed."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.url)
            if response.status_code != 200:
                logger.warning(f"Status endpoint returned {response.status_code}")
                return None
            return parse_status(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Could not reach status endpoint {self.url}: {e}")
            return None


class ContextMonitor:
    """Sends a compaction command when context usage crosses a threshold."""

    def __init__(
        self,
        driver: SessionDriver,
        notifier: Notifier,
        notify_user_id: Optional[int],
        status_source: Optional[StatusSource] = None,
        threshold: float = 0.8,
        check_interval: float = 30.0,
        compact_grace_seconds: float = 5.0,
        compact_command: str = "/compact",
        logger: Optional[logging.Logger] = None,
    ):
        self.driver = driver
        self.notifier = notifier
        self.notify_user_id = notify_user_id
        self.status_source = status_source or StatusSource()
        self.threshold = threshold
        self.check_interval = check_interval
        self.compact_grace_seconds = compact_grace_seconds
        self.compact_command = compact_command
        self.logger = logger or logging.getLogger(__name__)

        self.last_usage: Optional[float] = None
        self.compactions = 0
        self._compact_lock = asyncio.Lock()
        self._handle: Optional[PeriodicTask] = None

    def start(self) -> PeriodicTask:
        if self._handle is not None and self._handle.running:
            self.logger.warning("ContextMonitor is already running")
            return self._handle

        self.logger.info(
            f"Started context monitor (threshold={self.threshold}, interval={self.check_interval}s)"
        )
        self._handle = PeriodicTask("context-monitor", self.check_interval, self.tick, logger=self.logger)
        return self._handle.start()

    def stop(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            self.logger.info("Stopped context monitor")

    def is_running(self) -> bool:
        return self._handle is not None and self._handle.running

    async def tick(self):
        status = await self.status_source.fetch()
        if status is None:
            self.logger.debug("Context status unavailable, skipping")
            return

        if status.usage >= self.threshold:
            self.logger.warning(f"Context window at {status.percentage}, compacting")
            await self.compact(status)
        else:
            self.logger.debug(f"Context window usage normal ({status.percentage})")
            self.last_usage = status.usage

    async def compact(self, status: Optional[ResourceStatus] = None) -> Optional[ResourceStatus]:
        """
        Run one compaction and report before/after usage to the operator.

        ``status`` is the reading that triggered it; None (manual /compact
        with the status source down) reports the starting usage as unknown.
        Returns the re-fetched status (None if unknown). A compaction that is
        already in progress is not started twice.
        """
        if self._compact_lock.locked():
            self.logger.info("Compaction already in progress, skipping")
            return None

        async with self._compact_lock:
            before = status.percentage if status else "unknown"
            try:
                await self._notify(f"Context window at {before}, running {self.compact_command}...")
                await self.driver.send(self.compact_command)
                self.compactions += 1

                await asyncio.sleep(self.compact_grace_seconds)

                new_status = await self.status_source.fetch()
                after = new_status.percentage if new_status else "unknown"
                await self._notify(f"Context window compacted ({before} -> {after})")

                self.logger.info(f"Compaction finished ({before} -> {after})")
                self.last_usage = new_status.usage if new_status else None
                return new_status

            except Exception as e:
                self.logger.error(f"Compaction failed: {e}")
                await self._notify(f"Failed to run {self.compact_command}: {e}")
                return None

    async def _notify(self, text: str) -> bool:
        if self.notify_user_id is None:
            self.logger.debug(f"No operator configured, not sending: {text}")
            return False
        return await self.notifier.notify(self.notify_user_id, text)
