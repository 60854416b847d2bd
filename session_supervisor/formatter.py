"""Formatting of relayed output and status for Telegram."""

import logging
from typing import Optional

logger = logging.getLogger(__name__)

TELEGRAM_MAX_LENGTH = 4096
CONTINUED_MARKER = "\n\n(continued)"


def format_full_output(output: str, header: str = "Full output") -> list[str]:
    """
    Split output into messages that fit Telegram's length limit.

    The header goes on the first message; every message but the last
    ends with a continuation marker.
    """
    prefix = f"{header}\n\n"
    if not output.strip():
        return [f"{prefix}(no output)"]

    if len(prefix) + len(output) <= TELEGRAM_MAX_LENGTH:
        return [prefix + output]

    logger.info(f"Output too long ({len(output)} chars), splitting")

    # Leave room for the prefix and the marker
    chunk_size = TELEGRAM_MAX_LENGTH - len(prefix) - len(CONTINUED_MARKER)
    messages = []
    position = 0
    while position < len(output):
        chunk = output[position:position + chunk_size]
        message = prefix + chunk if position == 0 else chunk
        position += chunk_size
        if position < len(output):
            message += CONTINUED_MARKER
        messages.append(message)

    return messages


def format_status(
    session_active: bool,
    session_info: Optional[str] = None,
    context_usage: Optional[float] = None,
    monitor_phase: Optional[str] = None,
    recent_restarts: int = 0,
    max_restarts: int = 3,
) -> str:
    """Render the /status reply."""
    lines = ["Claude Code status", ""]
    lines.append(f"Session: {'running' if session_active else 'not running'}")
    if context_usage is not None:
        lines.append(f"Context usage: {context_usage * 100:.1f}%")
    else:
        lines.append("Context usage: unknown")
    if monitor_phase:
        lines.append(f"Output monitor: {monitor_phase}")
    lines.append(f"Auto-restarts in window: {recent_restarts}/{max_restarts}")
    if session_info:
        lines.append("")
        lines.append(f"Session info: {session_info}")
    return "\n".join(lines)
