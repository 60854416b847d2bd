"""Delivers operator notifications over Telegram."""

import logging
import re
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .telegram_bot import TelegramBot

logger = logging.getLogger(__name__)

# Regex to match ANSI escape codes (comprehensive)
ANSI_ESCAPE_RE = re.compile(
    r'\x1b\[[0-9;?]*[a-zA-Z]|'  # CSI sequences (including private modes like ?2026h)
    r'\x1b\][^\x07]*\x07|'       # OSC sequences (title, etc.)
    r'\x1b[PX^_].*?\x1b\\|'      # DCS, SOS, PM, APC sequences
    r'\x1b[\(\)][AB012]|'        # Character set selection
    r'\x1b[=>]|'                 # Keypad modes
    r'\x1b[78]|'                 # Save/restore cursor
    r'\x1b[DMEHc]|'              # Various single-char commands
    r'[\x00-\x08\x0b\x0c\x0e-\x1f]'  # Other control characters
)


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes and control characters from captured output."""
    text = ANSI_ESCAPE_RE.sub('', text)
    # Clean up multiple blank lines
    text = re.sub(r'\n{3,}', '\n\n', text)
    return text


class Notifier:
    """Sends plain-text notices to an operator's Telegram chat."""

    def __init__(self, telegram_bot: Optional["TelegramBot"] = None):
        self.telegram = telegram_bot
        self.sent = 0
        self.failed = 0

    async def notify(self, recipient_id: int, text: str) -> bool:
        """
        Send ``text`` to ``recipient_id``.

        Returns:
            True if the message was delivered. Failures are logged and never
            retried.
        """
        if not self.telegram:
            logger.warning(f"Telegram not configured, dropping notification: {text[:80]}")
            self.failed += 1
            return False

        try:
            msg_id = await self.telegram.send_notification(chat_id=recipient_id, message=text)
        except Exception as e:
            logger.error(f"Failed to notify {recipient_id}: {e}")
            self.failed += 1
            return False

        if msg_id is None:
            logger.warning(f"Notification to {recipient_id} was not delivered")
            self.failed += 1
            return False

        self.sent += 1
        return True
