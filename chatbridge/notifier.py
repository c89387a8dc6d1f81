"""Turns state changes into chat messages, with outbound dedup."""

import asyncio
import hashlib
import logging
import re
from typing import Optional

from .idempotency_cache import IdempotencyCache
from .models import ClassificationResult, SessionState
from .session_registry import SessionRegistry, clean_for_notification

logger = logging.getLogger(__name__)

DEFAULT_NOTIFY = {
    SessionState.INPUT_PROMPT: True,
    SessionState.COMPLETED: True,
    SessionState.ERROR: True,
    SessionState.IDLE_INPUT: False,
    SessionState.PLAN_MODE: False,
    SessionState.TESTING: False,
    SessionState.GIT_OPERATION: False,
    SessionState.WARNING: False,
}

HEADLINES = {
    SessionState.INPUT_PROMPT: "⏳ {session} is waiting for input",
    SessionState.COMPLETED: "✅ {session} finished",
    SessionState.ERROR: "❌ {session} hit an error",
    SessionState.IDLE_INPUT: "💤 {session} is idle",
    SessionState.PLAN_MODE: "📋 {session} proposed a plan",
    SessionState.TESTING: "🧪 {session} is running tests",
    SessionState.GIT_OPERATION: "🌿 {session} is running git",
    SessionState.WARNING: "⚠️ {session} printed a warning",
}


def fingerprint(text: str) -> str:
    """SHA-1 of the text with whitespace runs collapsed."""
    normalized = re.sub(r'\s+', ' ', text).strip()
    return hashlib.sha1(normalized.encode("utf-8")).hexdigest()


class Notifier:
    """Sends notifications through the chat collaborator.

    Automated messages (state changes, watch output, session notices) go through
    the outbound cache so the same text is not sent twice within its TTL.
    Replies to user commands bypass it.
    """

    def __init__(
        self,
        chat,
        outbound_cache: IdempotencyCache,
        registry: Optional[SessionRegistry] = None,
        config: Optional[dict] = None,
    ):
        self.chat = chat
        self.outbound_cache = outbound_cache
        self.registry = registry
        self.config = config or {}

        monitor_config = self.config.get("monitor", {})
        self.max_lines = monitor_config.get("notification_max_lines", 30)
        self.notify = dict(DEFAULT_NOTIFY)
        for name, enabled in monitor_config.get("notify", {}).items():
            try:
                self.notify[SessionState(name)] = bool(enabled)
            except ValueError:
                logger.warning(f"Ignoring notify flag for unknown state {name!r}")

        timeouts = self.config.get("timeouts", {})
        self.send_timeout = timeouts.get("notifier", {}).get("send_timeout_seconds", 10)

        self.sent_total = 0
        self.suppressed_total = 0
        self.failed_total = 0

    async def handle_state_change(self, result: ClassificationResult) -> bool:
        """State-change handler for the monitoring loop."""
        if not self.notify.get(result.type, False):
            logger.debug(f"Not notifying for state {result.type.value}")
            return False
        return await self.send_automated(self._format_message(result))

    async def send_automated(self, text: str, key: Optional[str] = None) -> bool:
        """
        Send a message that was not requested by the user.

        Args:
            text: Message text
            key: Dedup key (default: fingerprint of the text)

        Returns:
            True if the message was sent now
        """
        key = key or fingerprint(text)
        if self.outbound_cache.is_processed(key):
            self.suppressed_total += 1
            logger.info(f"Suppressing duplicate notification {key[:12]}")
            return False

        if not await self._send(text):
            # Not marked; the next natural state change may try again
            return False

        self.outbound_cache.mark_processed(key)
        return True

    async def send_direct(self, text: str) -> bool:
        """Reply to a user command; never deduplicated."""
        return await self._send(text)

    async def _send(self, text: str) -> bool:
        try:
            sent = await asyncio.wait_for(self.chat.send_text(text), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Sending message timed out after {self.send_timeout}s")
            sent = False
        except Exception as e:
            logger.error(f"Failed to send message: {e}")
            sent = False

        if sent:
            self.sent_total += 1
        else:
            self.failed_total += 1
        return bool(sent)

    def _format_message(self, result: ClassificationResult) -> str:
        """Format a classification result as message text."""
        session = (self.registry.current if self.registry else None) or "session"
        lines = [HEADLINES.get(result.type, "{session}: " + result.type.value).format(session=session)]

        content = clean_for_notification(result.content, self.max_lines)
        if content:
            lines.append("")
            lines.append(content)

        if result.type == SessionState.INPUT_PROMPT:
            lines.append("")
            lines.append("Reply with yes/no, an option number via /tab, or custom input")

        return "\n".join(lines)

    def stats(self) -> dict:
        return {
            "sent": self.sent_total,
            "suppressed": self.suppressed_total,
            "failed": self.failed_total,
        }
