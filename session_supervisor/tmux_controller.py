"""tmux operations for driving a single Claude Code session."""

import asyncio
import logging
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

SESSION_INFO_FORMAT = "#{session_name} #{pane_width}x#{pane_height} #{pane_current_command}"


class TmuxError(RuntimeError):
    """A tmux command failed, timed out, or the session is missing."""


class SessionDriver(Protocol):
    """Operations the supervisor needs from the managed session."""

    async def exists(self) -> bool: ...

    async def ensure(self) -> None: ...

    async def send(self, text: str) -> None: ...

    async def capture(self) -> str: ...

    async def kill(self) -> None: ...

    async def info(self) -> str: ...


class TmuxController:
    """Controls the tmux session that hosts Claude Code."""

    def __init__(
        self,
        session_name: str = "claude-tg-bot",
        command: str = "claude --dangerously-skip-permissions",
        capture_lines: int = 3000,
        config: Optional[dict] = None,
    ):
        self.session_name = session_name
        self.command = command
        self.capture_lines = capture_lines
        self.config = config or {}

        # Load timeout configuration with fallbacks
        timeouts = self.config.get("timeouts", {})
        tmux_timeouts = timeouts.get("tmux", {})

        self.command_timeout_seconds = tmux_timeouts.get("command_timeout_seconds", 5)
        self.send_keys_settle_seconds = tmux_timeouts.get("send_keys_settle_seconds", 0.3)

    async def _run_tmux(self, *args: str) -> tuple[int, str, str]:
        """Run a tmux command and return (returncode, stdout, stderr)."""
        cmd = ["tmux"] + list(args)
        logger.debug(f"Running tmux command: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TmuxError(f"Failed to run tmux: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.command_timeout_seconds
            )
        except asyncio.TimeoutError:
            self._kill_process(proc)
            raise TmuxError(f"Timeout running tmux {args[0]} on {self.session_name}")
        except asyncio.CancelledError:
            # Don't leave the tmux client running behind a cancelled caller
            self._kill_process(proc)
            raise

        return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    @staticmethod
    def _kill_process(proc: asyncio.subprocess.Process):
        try:
            proc.kill()
        except ProcessLookupError:
            pass

    async def _check(self, *args: str) -> str:
        """Run a tmux command that must succeed; return its stdout."""
        returncode, stdout, stderr = await self._run_tmux(*args)
        if returncode != 0:
            raise TmuxError(f"tmux {args[0]} failed: {stderr.strip()}")
        return stdout

    async def _require_session(self):
        if not await self.exists():
            raise TmuxError(f'tmux session "{self.session_name}" does not exist')

    async def exists(self) -> bool:
        """Check if the tmux session exists."""
        returncode, _, _ = await self._run_tmux("has-session", "-t", self.session_name)
        return returncode == 0

    async def ensure(self) -> None:
        """Create the session running Claude Code, unless it already exists."""
        if await self.exists():
            return

        await self._check("new-session", "-d", "-s", self.session_name, self.command)
        logger.info(f"Created session {self.session_name} running {self.command!r}")

    async def send(self, text: str) -> None:
        """
        Send input text followed by Enter.

        Text and Enter are separate send-keys calls: Claude Code treats a
        rapid burst as a paste, in which Enter would not submit.
        """
        await self._require_session()

        await self._check("send-keys", "-t", self.session_name, "--", text)
        await asyncio.sleep(self.send_keys_settle_seconds)
        await self._check("send-keys", "-t", self.session_name, "Enter")
        logger.info(f"Sent input to {self.session_name}: {text[:50]}...")

    async def capture(self) -> str:
        """Capture the last ``capture_lines`` lines of the pane."""
        await self._require_session()

        return await self._check(
            "capture-pane",
            "-t", self.session_name,
            "-p",  # Print to stdout
            "-S", f"-{self.capture_lines}",  # Start from N lines back
        )

    async def kill(self) -> None:
        """Kill the session. Missing session is not an error."""
        if not await self.exists():
            logger.warning(f"Session {self.session_name} does not exist")
            return

        await self._check("kill-session", "-t", self.session_name)
        logger.info(f"Killed session {self.session_name}")

    async def info(self) -> str:
        """One-line description of the session (name, size, foreground command)."""
        await self._require_session()

        stdout = await self._check(
            "display-message", "-t", self.session_name, "-p", SESSION_INFO_FORMAT,
        )
        return stdout.strip()
