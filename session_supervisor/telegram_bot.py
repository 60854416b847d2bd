"""Telegram bot for relaying prompts to the supervised Claude session."""

import logging
import time
from typing import Awaitable, Callable, Optional

from telegram import Bot, Update
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

logger = logging.getLogger(__name__)

ReplyFn = Callable[[str], Awaitable[None]]

HELP_TEXT = """Claude Code remote control

Commands:
/ask <prompt> - Send a prompt to Claude Code (plain messages work too)
/detail - Show the last full response
/status - Show session status
/reset - Clear the Claude Code conversation
/compact - Compact the context window now"""


class RateLimiter:
    """Sliding-window request limit per user."""

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._requests: dict[int, list[float]] = {}

    def allow(self, user_id: int) -> bool:
        """Record a request and return False if the user is over the limit."""
        now = self.clock()
        recent = [t for t in self._requests.get(user_id, []) if now - t < self.window_seconds]
        if len(recent) >= self.max_requests:
            self._requests[user_id] = recent
            return False
        recent.append(now)
        self._requests[user_id] = recent
        return True


class TelegramBot:
    """Telegram front end. Session operations are injected as handlers."""

    def __init__(
        self,
        token: str,
        allowed_user_ids: Optional[list[int]] = None,
        rate_limit_per_minute: int = 10,
    ):
        """
        Args:
            token: Telegram bot token from BotFather
            allowed_user_ids: User IDs allowed to use the bot (None = allow all)
            rate_limit_per_minute: Max requests per user per minute
        """
        self.token = token
        self.allowed_user_ids = set(allowed_user_ids) if allowed_user_ids else None
        if self.allowed_user_ids is None:
            logger.warning("No allowed_user_ids configured, bot will answer anyone")
        self.rate_limiter = RateLimiter(max_requests=rate_limit_per_minute)
        self.application: Optional[Application] = None
        self.bot: Optional[Bot] = None

        # Callbacks for session operations
        self._on_ask: Optional[Callable[[int, str, ReplyFn], Awaitable[str]]] = None
        self._on_detail: Optional[Callable[[int], Awaitable[Optional[list[str]]]]] = None
        self._on_status: Optional[Callable[[], Awaitable[str]]] = None
        self._on_reset: Optional[Callable[[], Awaitable[bool]]] = None
        self._on_compact: Optional[Callable[[], Awaitable[str]]] = None

    def set_ask_handler(self, handler: Callable[[int, str, ReplyFn], Awaitable[str]]):
        """Handler receives (user_id, prompt, reply) and returns an acknowledgement."""
        self._on_ask = handler

    def set_detail_handler(self, handler: Callable[[int], Awaitable[Optional[list[str]]]]):
        """Handler receives user_id and returns the last response as Telegram messages."""
        self._on_detail = handler

    def set_status_handler(self, handler: Callable[[], Awaitable[str]]):
        self._on_status = handler

    def set_reset_handler(self, handler: Callable[[], Awaitable[bool]]):
        self._on_reset = handler

    def set_compact_handler(self, handler: Callable[[], Awaitable[str]]):
        self._on_compact = handler

    def _is_allowed(self, user_id: Optional[int]) -> bool:
        """Check if a user is allowed to use the bot."""
        if self.allowed_user_ids is None:
            return True
        return user_id is not None and user_id in self.allowed_user_ids

    async def _guard(self, update: Update) -> Optional[int]:
        """Authorize and rate-limit a request. Returns the user ID when allowed."""
        user = update.effective_user
        user_id = user.id if user else None

        if user_id is None:
            logger.warning("Received update without a user ID")
            await update.message.reply_text("Could not identify user.")
            return None

        if not self._is_allowed(user_id):
            logger.warning(f"Unauthorized user {user_id}")
            await update.message.reply_text("Unauthorized.")
            return None

        if not self.rate_limiter.allow(user_id):
            logger.warning(f"User {user_id} exceeded rate limit")
            await update.message.reply_text("Too many requests, please try again later.")
            return None

        return user_id

    async def _cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /start and /help."""
        if await self._guard(update) is None:
            return
        await update.message.reply_text(HELP_TEXT)

    async def _cmd_ask(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /ask <prompt>."""
        user_id = await self._guard(update)
        if user_id is None:
            return
        prompt = " ".join(context.args or []).strip()
        await self._ask(update, user_id, prompt)

    async def _handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Plain text messages are treated as prompts."""
        user_id = await self._guard(update)
        if user_id is None:
            return
        await self._ask(update, user_id, (update.message.text or "").strip())

    async def _ask(self, update: Update, user_id: int, prompt: str):
        if not prompt:
            await update.message.reply_text("Please provide a prompt.\n\nExample: /ask What is asyncio?")
            return

        if not self._on_ask:
            await update.message.reply_text("Prompt relay not configured.")
            return

        chat_id = update.effective_chat.id

        async def reply(text: str):
            await self.send_notification(chat_id=chat_id, message=text)

        logger.info(f"User {user_id} asked: {prompt[:50]}")
        try:
            ack = await self._on_ask(user_id, prompt, reply)
        except Exception as e:
            logger.error(f"/ask failed: {e}")
            await update.message.reply_text(f"Failed to send prompt: {e}")
            return

        await update.message.reply_text(ack)

    async def _cmd_detail(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /detail - resend the last full response."""
        user_id = await self._guard(update)
        if user_id is None:
            return

        if not self._on_detail:
            await update.message.reply_text("Output history not configured.")
            return

        messages = await self._on_detail(user_id)
        if not messages:
            await update.message.reply_text("No recent response found.")
            return

        for message in messages:
            await update.message.reply_text(message)

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /status."""
        if await self._guard(update) is None:
            return

        if not self._on_status:
            await update.message.reply_text("Status check not configured.")
            return

        try:
            await update.message.reply_text(await self._on_status())
        except Exception as e:
            logger.error(f"/status failed: {e}")
            await update.message.reply_text(f"Error getting status: {e}")

    async def _cmd_reset(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /reset - clear the Claude conversation."""
        if await self._guard(update) is None:
            return

        if not self._on_reset:
            await update.message.reply_text("Reset not configured.")
            return

        await update.message.reply_text("Resetting Claude Code session...")
        if await self._on_reset():
            await update.message.reply_text("Claude Code session reset.")
        else:
            await update.message.reply_text("Reset failed.")

    async def _cmd_compact(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /compact - run the compaction flow on demand."""
        if await self._guard(update) is None:
            return

        if not self._on_compact:
            await update.message.reply_text("Compaction not configured.")
            return

        await update.message.reply_text(await self._on_compact())

    async def send_notification(
        self,
        chat_id: int,
        message: str,
        parse_mode: Optional[str] = None,
    ) -> Optional[int]:
        """
        Send a message.

        Returns:
            Message ID of sent message, or None on failure
        """
        if not self.bot:
            logger.error("Bot not initialized")
            return None

        try:
            msg = await self.bot.send_message(
                chat_id=chat_id,
                text=message,
                parse_mode=parse_mode,
            )
            return msg.message_id

        except Exception as e:
            # If markdown parsing fails, retry without parse_mode
            if parse_mode:
                logger.warning(f"Send with {parse_mode} failed ({e}), retrying as plain text")
                return await self.send_notification(chat_id, message)
            logger.error(f"Failed to send notification: {e}")
            return None

    async def start(self):
        """Start the bot."""
        self.application = (
            Application.builder()
            .token(self.token)
            .build()
        )

        self.bot = self.application.bot

        # Register handlers
        self.application.add_handler(CommandHandler("start", self._cmd_start))
        self.application.add_handler(CommandHandler("help", self._cmd_start))
        self.application.add_handler(CommandHandler("ask", self._cmd_ask))
        self.application.add_handler(CommandHandler("detail", self._cmd_detail))
        self.application.add_handler(CommandHandler("status", self._cmd_status))
        self.application.add_handler(CommandHandler("reset", self._cmd_reset))
        self.application.add_handler(CommandHandler("compact", self._cmd_compact))

        # Plain text (not commands) is relayed as a prompt
        self.application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_message))

        # Start polling
        await self.application.initialize()
        await self.application.start()
        await self.application.updater.start_polling()

        logger.info("Telegram bot started")

    async def stop(self):
        """Stop the bot."""
        if self.application:
            await self.application.updater.stop()
            await self.application.stop()
            await self.application.shutdown()
            logger.info("Telegram bot stopped")
