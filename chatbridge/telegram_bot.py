"""Telegram side of the bridge."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from telegram import Bot, Update
from telegram.error import NetworkError, TelegramError
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .models import BridgeCommand, InboundEvent

logger = logging.getLogger(__name__)

# Telegram rejects messages over 4096 characters
MAX_MESSAGE_CHARS = 4000

Reply = Callable[[str], Awaitable[bool]]
MessageHandlerCallback = Callable[[InboundEvent, Reply], Awaitable[object]]
CommandHandlerCallback = Callable[[BridgeCommand, str, Reply, str], Awaitable[object]]
ConnectionListener = Callable[[bool], None]


def split_message(text: str, limit: int = MAX_MESSAGE_CHARS) -> list[str]:
    """Split text into chunks of at most ``limit`` characters, on line boundaries where possible."""
    if len(text) <= limit:
        return [text] if text else []

    chunks = []
    current = ""
    for line in text.split("\n"):
        # A single line longer than the limit is cut hard
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]

        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate

    if current:
        chunks.append(current)
    return chunks


def event_id(update: Update) -> str:
    """Dedup key of an update; a redelivered update keeps its message id."""
    return f"telegram_{update.message.chat_id}_{update.message.message_id}"


class TelegramBot:
    """Telegram bot bound to a single chat."""

    def __init__(
        self,
        token: str,
        chat_id: int,
        allowed_user_ids: Optional[list[int]] = None,
        config: Optional[dict] = None,
    ):
        """
        Args:
            token: Telegram bot token from BotFather
            chat_id: The only chat the bridge talks to
            allowed_user_ids: Users allowed to drive the session (None = anyone in the chat)
            config: Full bridge config (reads ``telegram`` and ``timeouts.telegram``)
        """
        self.token = token
        self.chat_id = int(chat_id)
        self.allowed_user_ids = set(allowed_user_ids) if allowed_user_ids else None
        self.config = config or {}
        self.application: Optional[Application] = None
        self.bot: Optional[Bot] = None

        timeouts = self.config.get("timeouts", {})
        telegram_timeouts = timeouts.get("telegram", {})
        self.health_check_interval = telegram_timeouts.get("health_check_interval_seconds", 60)
        self.health_check_timeout = telegram_timeouts.get("health_check_timeout_seconds", 10)

        self._connected = False
        self._connection_listeners: list[ConnectionListener] = []
        self._health_task: Optional[asyncio.Task] = None

        self._on_message: Optional[MessageHandlerCallback] = None
        self._on_command: Optional[CommandHandlerCallback] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    def add_connection_listener(self, listener: ConnectionListener):
        self._connection_listeners.append(listener)

    def set_message_handler(self, handler: MessageHandlerCallback):
        """Set the handler for plain chat messages."""
        self._on_message = handler

    def set_command_handler(self, handler: CommandHandlerCallback):
        """Set the handler for bridge commands."""
        self._on_command = handler

    def _set_connected(self, connected: bool):
        if connected == self._connected:
            return
        self._connected = connected
        logger.info(f"Telegram {'connected' if connected else 'disconnected'}")
        for listener in self._connection_listeners:
            try:
                listener(connected)
            except Exception as e:
                logger.error(f"Connection listener failed: {e}")

    def _is_allowed(self, chat_id: int, user_id: Optional[int] = None) -> bool:
        """Check if a chat/user is allowed to use the bot."""
        if chat_id != self.chat_id:
            return False
        if self.allowed_user_ids is not None:
            if user_id is None or user_id not in self.allowed_user_ids:
                return False
        return True

    def _check_update(self, update: Update) -> bool:
        if update.effective_chat is None or update.message is None:
            return False
        user_id = update.effective_user.id if update.effective_user else None
        if not self._is_allowed(update.effective_chat.id, user_id):
            logger.warning(f"Unauthorized: chat_id={update.effective_chat.id}, user_id={user_id}")
            return False
        return True

    def _command_callback(self, command: BridgeCommand):
        async def callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
            if not self._check_update(update) or not self._on_command:
                return
            argument = " ".join(context.args or [])
            await self._on_command(command, argument, self.send_text, event_id(update))

        return callback

    async def _handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle plain text (and slash commands the bridge does not own)."""
        if not self._check_update(update) or not self._on_message:
            return

        message = update.message
        event = InboundEvent(
            id=event_id(update),
            text=message.text or "",
            channel_id=str(message.chat_id),
            is_bot=bool(message.from_user and message.from_user.is_bot),
        )
        await self._on_message(event, self.send_text)

    async def _error_handler(self, update: object, context: ContextTypes.DEFAULT_TYPE):
        if isinstance(context.error, NetworkError):
            logger.warning(f"Telegram network error: {context.error}")
            self._set_connected(False)
        else:
            logger.error(f"Telegram handler error: {context.error}")

    def _polling_error(self, error: TelegramError):
        """Updater error callback (must not be a coroutine)."""
        logger.warning(f"Telegram polling error: {error}")
        if isinstance(error, NetworkError):
            self._set_connected(False)

    async def send_text(self, text: str) -> bool:
        """Send text to the bridge chat, split into chunks Telegram accepts."""
        if not self.bot:
            logger.error("Bot not initialized")
            return False

        try:
            for chunk in split_message(text):
                await self.bot.send_message(chat_id=self.chat_id, text=chunk)
            return True
        except NetworkError as e:
            logger.error(f"Failed to send Telegram message: {e}")
            self._set_connected(False)
            return False
        except TelegramError as e:
            logger.error(f"Failed to send Telegram message: {e}")
            return False

    async def _health_loop(self):
        while True:
            await asyncio.sleep(self.health_check_interval)
            try:
                await asyncio.wait_for(self.bot.get_me(), timeout=self.health_check_timeout)
                self._set_connected(True)
            except (TelegramError, asyncio.TimeoutError) as e:
                logger.warning(f"Telegram health check failed: {e!r}")
                self._set_connected(False)

    async def start(self):
        """Start the bot. Raises TelegramError if Telegram cannot be reached."""
        self.application = (
            Application.builder()
            .token(self.token)
            .build()
        )

        self.bot = self.application.bot

        for command in BridgeCommand:
            self.application.add_handler(CommandHandler(command.value, self._command_callback(command)))

        # Everything else, including slash commands meant for the agent (/compact etc.)
        self.application.add_handler(MessageHandler(filters.TEXT, self._handle_message))
        self.application.add_error_handler(self._error_handler)

        await self.application.initialize()
        await self.application.start()
        await self.application.updater.start_polling(error_callback=self._polling_error)

        self._set_connected(True)
        self._health_task = asyncio.create_task(self._health_loop())
        logger.info("Telegram bot started")

    async def stop(self):
        """Stop the bot."""
        if self._health_task:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        if self.application:
            if self.application.updater and self.application.updater.running:
                await self.application.updater.stop()
            if self.application.running:
                await self.application.stop()
            await self.application.shutdown()
            self.application = None
            logger.info("Telegram bot stopped")

        self._set_connected(False)
