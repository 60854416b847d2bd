"""Main entry point - orchestrates all components."""

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Optional

import uvicorn
import yaml

from .context_monitor import ContextMonitor, StatusSource, DEFAULT_STATUS_URL
from .diff_detector import DiffDetector
from .formatter import format_full_output, format_status
from .health_check import HealthCheck
from .models import CompletedOutput, MonitorPhase
from .notifier import Notifier, strip_ansi
from .output_monitor import OutputMonitor
from .restart_service import RestartService
from .server import create_app
from .telegram_bot import ReplyFn, TelegramBot
from .tmux_controller import TmuxController, TmuxError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def load_config(config_path: str = "config.yaml") -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path)

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_user_ids(value: str) -> list[int]:
    """Parse a comma separated list of Telegram user IDs."""
    ids = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError:
            raise ValueError(f"Invalid user ID: {part}")
    return ids


def apply_env_overrides(config: dict, environ: Optional[dict] = None) -> dict:
    """Overlay secrets and common settings from environment variables."""
    env = os.environ if environ is None else environ

    telegram = config.setdefault("telegram", {})
    if env.get("TELEGRAM_BOT_TOKEN"):
        telegram["token"] = env["TELEGRAM_BOT_TOKEN"]
    if env.get("ALLOWED_USER_IDS"):
        telegram["allowed_user_ids"] = parse_user_ids(env["ALLOWED_USER_IDS"])

    tmux = config.setdefault("tmux", {})
    if env.get("TMUX_SESSION_NAME"):
        tmux["session_name"] = env["TMUX_SESSION_NAME"]
    if env.get("CLAUDE_COMMAND"):
        tmux["command"] = env["CLAUDE_COMMAND"]

    if env.get("LOG_LEVEL"):
        config.setdefault("logging", {})["level"] = env["LOG_LEVEL"]

    return config


class SupervisorApp:
    """Main application orchestrator."""

    def __init__(self, config: dict, telegram_bot: Optional[TelegramBot] = None):
        self.config = config

        # Server config
        server_config = config.get("server", {})
        self.server_enabled = server_config.get("enabled", True)
        self.host = server_config.get("host", "127.0.0.1")
        self.port = server_config.get("port", 8430)

        tmux_config = config.get("tmux", {})
        self.tmux = TmuxController(
            session_name=tmux_config.get("session_name", "claude-tg-bot"),
            command=tmux_config.get("command", "claude --dangerously-skip-permissions"),
            capture_lines=tmux_config.get("capture_lines", 3000),
            config=config,
        )

        # Telegram bot (optional)
        telegram_config = config.get("telegram", {})
        self.telegram_bot = telegram_bot
        if self.telegram_bot is None and telegram_config.get("token"):
            self.telegram_bot = TelegramBot(
                token=telegram_config["token"],
                allowed_user_ids=telegram_config.get("allowed_user_ids"),
                rate_limit_per_minute=telegram_config.get("rate_limit_per_minute", 10),
            )

        # Operator who receives supervision notices (first allowed user by default)
        allowed = telegram_config.get("allowed_user_ids") or []
        self.notify_user_id: Optional[int] = telegram_config.get(
            "notify_user_id", allowed[0] if allowed else None
        )

        self.notifier = Notifier(telegram_bot=self.telegram_bot)

        monitor_config = config.get("monitor", {})
        self.poll_interval = monitor_config.get("poll_interval", 2.0)
        self.diff_detector = DiffDetector()
        self.output_monitor = OutputMonitor(
            max_unchanged_ticks=monitor_config.get("max_unchanged_ticks", 15),
            diff_detector=self.diff_detector,
        )

        context_config = config.get("context", {})
        self.context_enabled = context_config.get("enabled", True)
        self.context_monitor = ContextMonitor(
            driver=self.tmux,
            notifier=self.notifier,
            notify_user_id=self.notify_user_id,
            status_source=StatusSource(
                url=context_config.get("status_url", DEFAULT_STATUS_URL),
                timeout=context_config.get("status_timeout_seconds", 5.0),
            ),
            threshold=context_config.get("threshold", 0.8),
            check_interval=context_config.get("check_interval", 30.0),
            compact_grace_seconds=context_config.get("compact_grace_seconds", 5.0),
            compact_command=context_config.get("compact_command", "/compact"),
        )

        health_config = config.get("health", {})
        restart_config = config.get("restart", {})
        self.restart_service = RestartService(
            driver=self.tmux,
            notifier=self.notifier,
            notify_user_id=self.notify_user_id,
            health_check=HealthCheck(
                self.tmux,
                check_interval=health_config.get("check_interval", 10.0),
                max_consecutive_failures=health_config.get("max_consecutive_failures", 3),
            ),
            max_restarts=restart_config.get("max_restarts", 3),
            restart_window_seconds=restart_config.get("window_seconds", 3600),
            settle_seconds=restart_config.get("settle_seconds", 2.0),
        )

        reset_config = config.get("reset", {})
        self.clear_command = reset_config.get("clear_command", "/clear")
        self.reset_settle_seconds = reset_config.get("settle_seconds", 2.0)

        # Last completed response per user (memory only)
        self.last_outputs: dict[int, CompletedOutput] = {}
        self._ask_lock = asyncio.Lock()

        if self.telegram_bot:
            self._setup_telegram_handlers()

        self.app = create_app(
            driver=self.tmux,
            output_monitor=self.output_monitor,
            context_monitor=self.context_monitor,
            restart_service=self.restart_service,
        )

        self._shutdown_event = asyncio.Event()

    def _setup_telegram_handlers(self):
        """Wire up Telegram bot handlers to the supervisor."""
        self.telegram_bot.set_ask_handler(self.ask)
        self.telegram_bot.set_detail_handler(self.detail)
        self.telegram_bot.set_status_handler(self.status)
        self.telegram_bot.set_reset_handler(self.reset)
        self.telegram_bot.set_compact_handler(self.compact)

    async def ask(self, user_id: int, prompt: str, reply: ReplyFn) -> str:
        """
        Send a prompt and relay the response when the output monitor finishes.

        Only one prompt is in flight at a time; a second one is refused.
        """
        if self._ask_lock.locked() or self.output_monitor.is_running():
            return "Still working on the previous prompt, please wait for it to finish."

        async with self._ask_lock:
            await self.tmux.ensure()
            baseline = await self.tmux.capture()
            await self.tmux.send(prompt)

            async def on_complete(output: str):
                stalled = self.output_monitor.state.phase == MonitorPhase.STALLED_TIMEOUT
                response = strip_ansi(self.diff_detector.extract_new_content(baseline, output)).strip()
                self.last_outputs[user_id] = CompletedOutput(
                    user_id=user_id,
                    prompt=prompt,
                    output=response,
                    stalled=stalled,
                )
                logger.info(f"Response complete for user {user_id} ({len(response)} chars, stalled={stalled})")

                header = "Response (no prompt seen, may be incomplete)" if stalled else "Response"
                for message in format_full_output(response, header=header):
                    await reply(message)

            async def on_error(error: Exception):
                await reply(f"Stopped waiting for a response: {error}")

            self.output_monitor.start(self.tmux, on_complete, self.poll_interval, on_error=on_error)

        return "Working on it..."

    async def detail(self, user_id: int) -> Optional[list[str]]:
        """Last full response for ``user_id``, split for Telegram."""
        completed = self.last_outputs.get(user_id)
        if completed is None:
            return None
        return format_full_output(completed.output, header=f"Full output for: {completed.prompt[:50]}")

    async def status(self) -> str:
        session_active = await self.tmux.exists()
        session_info = None
        if session_active:
            try:
                session_info = await self.tmux.info()
            except TmuxError as e:
                logger.warning(f"Could not get session info: {e}")

        return format_status(
            session_active=session_active,
            session_info=session_info,
            context_usage=self.context_monitor.last_usage,
            monitor_phase=self.output_monitor.state.phase.value,
            recent_restarts=len(self.restart_service.recent_restarts()),
            max_restarts=self.restart_service.max_restarts,
        )

    async def reset(self) -> bool:
        """Clear the Claude conversation inside the running session."""
        try:
            await self.tmux.send(self.clear_command)
        except TmuxError as e:
            logger.error(f"Reset failed: {e}")
            return False

        await asyncio.sleep(self.reset_settle_seconds)
        logger.info("Session reset")
        return True

    async def compact(self) -> str:
        """Manual compaction; the monitor notifies before/after usage."""
        status = await self.context_monitor.status_source.fetch()
        new_status = await self.context_monitor.compact(status)
        if new_status is None:
            return "Compaction finished (usage unknown)."
        return f"Compaction finished, context usage now {new_status.percentage}."

    async def start(self):
        """Start all components."""
        logger.info("Starting session supervisor...")

        if await self.tmux.exists():
            logger.info(f"Found existing tmux session {self.tmux.session_name}, taking it over")
            try:
                logger.info(f"Session info: {await self.tmux.info()}")
            except TmuxError as e:
                logger.warning(f"Could not get session info: {e}")
        else:
            logger.info(f"Creating tmux session {self.tmux.session_name}")
            await self.tmux.ensure()

        if self.context_enabled:
            self.context_monitor.start()
        self.restart_service.start()

        if self.telegram_bot:
            await self.telegram_bot.start()

        if not self.server_enabled:
            logger.info("All services started")
            await self._shutdown_event.wait()
            return

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        server = uvicorn.Server(config)

        logger.info(f"Starting server on http://{self.host}:{self.port}")

        # Run until shutdown
        await server.serve()

    def request_shutdown(self):
        self._shutdown_event.set()

    async def stop(self):
        """Stop all components."""
        logger.info("Stopping session supervisor...")

        self.output_monitor.stop()
        self.context_monitor.stop()
        self.restart_service.stop()

        if self.telegram_bot:
            await self.telegram_bot.stop()

        logger.info("Shutdown complete")


def setup_logging(config: dict):
    level_name = str(config.get("logging", {}).get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
    )


async def main(config_path: str = "config.yaml"):
    """Main entry point."""
    config = apply_env_overrides(load_config(config_path))
    setup_logging(config)

    app = SupervisorApp(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.request_shutdown)

    try:
        await app.start()
    finally:
        await app.stop()


def run():
    """Entry point for console script."""
    parser = argparse.ArgumentParser(description="Supervise a Claude Code session in tmux")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config file")
    args = parser.parse_args()
    asyncio.run(main(args.config))


if __name__ == "__main__":
    run()
