"""Single entry point for chat text and bridge commands."""

import asyncio
import logging
import re
from collections import deque
from typing import Awaitable, Callable, Optional

from .idempotency_cache import IdempotencyCache
from .models import BridgeCommand, CommandRecord, InboundEvent, NormalizedMessage
from .notifier import Notifier
from .output_monitor import OutputMonitor
from .process_manager import ProcessManager
from .session_registry import (
    SessionRegistry,
    clean_for_notification,
    is_valid_session_name,
    new_lines,
    strip_ansi,
)
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

Reply = Callable[[str], Awaitable[object]]

DEFAULT_CONFIRM_WORDS = ["yes", "y", "confirm", "确认", "是"]
DEFAULT_CANCEL_WORDS = ["no", "n", "cancel", "取消", "否"]

HELP_TEXT = (
    "tmux chat bridge\n\n"
    "Messages:\n"
    "  text        - typed into the session\n"
    "  yes / y     - confirm the agent's request\n"
    "  no / n      - cancel the agent's request\n"
    "  {prefix}command   - run a shell command in the session and show its output\n\n"
    "Commands:\n"
    "/switch - List tmux sessions\n"
    "/switch <name> - Monitor another session\n"
    "/tab <numbers> - Pick option(s) by number, e.g. /tab 2 or /tab 1,3\n"
    "/show - Show the current pane\n"
    "/new <name> - Create a session running the agent\n"
    "/kill - Kill the current session\n"
    "/reset - Clear the agent's context\n"
    "/status - Monitoring status\n"
    "/history - Recent inputs\n"
    "/watch - Toggle live output relay\n"
    "/clear - Clear the output buffer\n"
    "/dedupstats - Dedup cache statistics\n"
    "/config - Current settings\n"
    "/help - Show this message"
)


class MessageRouter:
    """Decides what to do with chat text and runs bridge commands.

    Plain text goes to the active session. The monitor's context is only read
    here, except for the watch flag and the baseline reset, which go through
    the monitor itself.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        tmux: TmuxController,
        process_manager: ProcessManager,
        monitor: OutputMonitor,
        notifier: Notifier,
        inbound_cache: IdempotencyCache,
        outbound_cache: Optional[IdempotencyCache] = None,
        config: Optional[dict] = None,
        channel_id: Optional[str] = None,
    ):
        self.registry = registry
        self.tmux = tmux
        self.process_manager = process_manager
        self.monitor = monitor
        self.notifier = notifier
        self.inbound_cache = inbound_cache
        self.outbound_cache = outbound_cache
        self.config = config or {}
        self.channel_id = channel_id

        router_config = self.config.get("router", {})
        self.command_prefix = router_config.get("command_prefix", "!")
        self.confirm_words = {str(w).lower() for w in router_config.get("confirm_words", DEFAULT_CONFIRM_WORDS)}
        self.cancel_words = {str(w).lower() for w in router_config.get("cancel_words", DEFAULT_CANCEL_WORDS)}
        self.confirm_keys = list(router_config.get("confirm_keys", ["Enter"]))
        self.cancel_keys = list(router_config.get("cancel_keys", ["Escape"]))
        self.agent_command = router_config.get("agent_command", "claude")
        self.working_dir = router_config.get("working_dir")
        self.reset_input = router_config.get("reset_input", "/clear")
        self.command_settle = router_config.get("command_settle_seconds", 1.5)
        self.max_output_chars = router_config.get("max_output_chars", 3500)
        self.max_error_chars = router_config.get("max_error_chars", 300)
        self.show_lines = router_config.get("show_lines", 40)

        self.history: deque[CommandRecord] = deque(maxlen=router_config.get("history_size", 20))
        self.routed_total = 0
        self.duplicates_dropped = 0

        self._handlers = {
            BridgeCommand.SWITCH: self._cmd_switch,
            BridgeCommand.TAB: self._cmd_tab,
            BridgeCommand.SHOW: self._cmd_show,
            BridgeCommand.NEW: self._cmd_new,
            BridgeCommand.KILL: self._cmd_kill,
            BridgeCommand.RESET: self._cmd_reset,
            BridgeCommand.STATUS: self._cmd_status,
            BridgeCommand.HISTORY: self._cmd_history,
            BridgeCommand.HELP: self._cmd_help,
            BridgeCommand.WATCH: self._cmd_watch,
            BridgeCommand.CLEAR: self._cmd_clear,
            BridgeCommand.DEDUPSTATS: self._cmd_dedupstats,
            BridgeCommand.CONFIG: self._cmd_config,
        }
        missing = set(BridgeCommand) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for commands: {sorted(c.value for c in missing)}")

    # Inbound messages

    async def handle_inbound(self, event: InboundEvent, reply: Optional[Reply] = None) -> bool:
        """
        Entry point for chat events.

        Returns:
            True if the event was routed, False if it was filtered or a duplicate
        """
        if self.channel_id is not None and str(event.channel_id) != str(self.channel_id):
            return False
        if event.is_bot:
            return False
        if not event.text or not event.text.strip():
            return False

        if self._is_duplicate(event.id):
            return False

        preview = event.text[:50] + ("..." if len(event.text) > 50 else "")
        logger.info(f"Handling message {event.id}: {preview}")
        await self.route(NormalizedMessage(text=event.text, is_bot=event.is_bot), reply)
        return True

    async def handle_command(
        self,
        command: BridgeCommand,
        argument: str = "",
        reply: Optional[Reply] = None,
        event_id: Optional[str] = None,
    ) -> bool:
        """Entry point for chat commands; a redelivered command runs once.

        Returns:
            True if the command ran, False if it was a duplicate
        """
        if event_id is not None and self._is_duplicate(event_id):
            return False
        await self.execute(command, argument, reply)
        return True

    def _is_duplicate(self, event_id: str) -> bool:
        """Check and mark in one step, with no await in between."""
        if self.inbound_cache.is_processed(event_id):
            self.duplicates_dropped += 1
            logger.info(f"Ignoring duplicate event {event_id}")
            return True
        self.inbound_cache.mark_processed(event_id)
        return False

    async def route(self, message: NormalizedMessage, reply: Optional[Reply] = None):
        """Confirmation token, shell command, or plain input, checked in that order."""
        if message.is_bot:
            return

        reply = reply or self.notifier.send_direct
        text = message.text.strip()
        if not text:
            return

        session = self.registry.current
        if session is None:
            await reply("❌ No active session. Use /switch or /new.")
            return

        self.routed_total += 1
        try:
            word = text.lower()
            if word in self.confirm_words:
                await self._send_keys(session, self.confirm_keys, "confirm", text, reply)
            elif word in self.cancel_words:
                await self._send_keys(session, self.cancel_keys, "cancel", text, reply)
            elif self.command_prefix and text.startswith(self.command_prefix):
                await self._run_shell(session, text[len(self.command_prefix):].strip(), reply)
            else:
                await self._send_input(session, message.text, reply)
        except Exception as e:
            logger.error(f"Routing message failed: {e}")
            await reply(self._error_text("Sending to the session", e))

    async def _send_keys(self, session: str, keys: list[str], kind: str, text: str, reply: Reply):
        if await self.tmux.send_key_sequence(session, keys):
            self.history.append(CommandRecord(text=text, kind=kind))
        else:
            await reply(f"❌ Failed to send {kind} to {session}")

    async def _send_input(self, session: str, text: str, reply: Reply):
        if await self.tmux.send_input_async(session, text):
            self.history.append(CommandRecord(text=text, kind="input"))
        else:
            await reply(f"❌ Failed to send input to {session}")

    async def _run_shell(self, session: str, command: str, reply: Reply):
        if not command:
            await reply(f"Usage: {self.command_prefix}<command>")
            return

        before = await self._capture(session, self.show_lines * 5) or ""
        if not await self.tmux.send_input_async(session, command):
            await reply(f"❌ Failed to run command in {session}")
            return
        self.history.append(CommandRecord(text=command, kind="shell"))

        await asyncio.sleep(self.command_settle)
        after = await self._capture(session, self.show_lines * 5)
        if after is None:
            await reply(f"$ {command}\n(could not capture output)")
            return

        output = "\n".join(new_lines(strip_ansi(before), strip_ansi(after))).strip()
        if len(output) > self.max_output_chars:
            output = "...\n" + output[-self.max_output_chars:]
        await reply(f"$ {command}\n{output or '(no output)'}")

    async def _capture(self, session: str, lines: int) -> Optional[str]:
        result = await self.process_manager.run("tmux", self.tmux.capture_args(session, lines))
        if not result.ok or result.returncode != 0:
            logger.warning(f"Capture of {session} failed: {result.outcome.value} {result.stderr.strip()}")
            return None
        return result.output

    # Commands

    async def execute(self, command: BridgeCommand, argument: str = "", reply: Optional[Reply] = None):
        """Run a bridge command and send its reply. Never raises."""
        reply = reply or self.notifier.send_direct
        logger.info(f"Command /{command.value} {argument}".rstrip())
        try:
            text = await self._handlers[command]((argument or "").strip())
        except Exception as e:
            logger.error(f"Command /{command.value} failed: {e}")
            text = self._error_text(f"/{command.value}", e)
        if text:
            await reply(text)

    def _error_text(self, what: str, error: Exception) -> str:
        detail = str(error) or error.__class__.__name__
        if len(detail) > self.max_error_chars:
            detail = detail[:self.max_error_chars] + "..."
        return f"❌ {what} failed: {detail}"

    def _require_session(self) -> str:
        session = self.registry.current
        if session is None:
            raise LookupError("no active session, use /switch or /new")
        return session

    async def _cmd_switch(self, argument: str) -> str:
        if not argument:
            sessions = self.registry.refresh()
            if not sessions:
                return "No tmux sessions. Use /new <name> to create one."
            lines = ["Sessions:"]
            for session in sessions:
                marker = "▶" if session.name == self.registry.current else " "
                lines.append(f"{marker} {session.name}")
            return "\n".join(lines)

        if self.registry.switch(argument):
            return f"✅ Now monitoring {argument}"
        return f"❌ Session {argument} not found"

    async def _cmd_tab(self, argument: str) -> str:
        numbers = [n for n in re.split(r'[,\s]+', argument) if n]
        if not numbers or not all(n.isdigit() for n in numbers):
            return "Usage: /tab <numbers>, e.g. /tab 2 or /tab 1,3"

        session = self._require_session()
        if not await self.tmux.send_key_sequence(session, numbers):
            return f"❌ Failed to send keys to {session}"
        self.history.append(CommandRecord(text=" ".join(numbers), kind="keys"))
        return f"✅ Selected {', '.join(numbers)}"

    async def _cmd_show(self, argument: str) -> str:
        session = self._require_session()
        output = await self._capture(session, self.show_lines * 2)
        if output is None:
            return f"❌ Could not capture {session}"
        content = clean_for_notification(output, self.show_lines)
        return f"📺 {session}\n{content or '(empty)'}"

    async def _cmd_new(self, argument: str) -> str:
        if not argument:
            return "Usage: /new <name>"
        if not is_valid_session_name(argument):
            return "❌ Invalid name: use letters, digits, '-' or '_' (max 64)"
        if not self.registry.create(argument, working_dir=self.working_dir, command=self.agent_command):
            return f"❌ Could not create session {argument}"
        return f"✅ Created {argument} and switched to it"

    async def _cmd_kill(self, argument: str) -> str:
        session = self._require_session()
        killed = self.registry.kill_current()
        if killed is None:
            return f"❌ Failed to kill {session}"
        current = self.registry.current
        suffix = f" Now monitoring {current}." if current else " No sessions left."
        return f"✅ Killed {killed}.{suffix}"

    async def _cmd_reset(self, argument: str) -> str:
        session = self._require_session()
        if not await self.tmux.send_input_async(session, self.reset_input):
            return f"❌ Failed to reset {session}"
        self.history.append(CommandRecord(text=self.reset_input, kind="input"))
        self.monitor.reset_baseline()
        return f"✅ Sent {self.reset_input} to {session}"

    async def _cmd_status(self, argument: str) -> str:
        context = self.monitor.context
        snapshot = self.registry.snapshot()
        last_sample = context.last_sample_at.strftime("%H:%M:%S") if context.last_sample_at else "never"
        lines = [
            f"Session: {snapshot['current'] or '(none)'}",
            f"State: {context.current_state.value}",
            f"Monitoring: {'paused' if context.is_paused else context.phase.value}",
            f"Poll interval: {context.poll_interval:.1f}s",
            f"Watch: {'on' if context.watching else 'off'}",
            f"Samples: {context.samples_taken} (last {last_sample})",
            f"Known sessions: {len(snapshot['sessions'])}",
            f"Buffer: {snapshot['buffer_chars']} chars",
            f"Inputs sent: {len(self.history)}",
        ]
        return "\n".join(lines)

    async def _cmd_history(self, argument: str) -> str:
        if not self.history:
            return "No inputs sent yet."
        lines = ["Recent inputs:"]
        for record in self.history:
            text = record.text if len(record.text) <= 80 else record.text[:77] + "..."
            lines.append(f"{record.sent_at.strftime('%H:%M:%S')} [{record.kind}] {text}")
        return "\n".join(lines)

    async def _cmd_help(self, argument: str) -> str:
        return HELP_TEXT.format(prefix=self.command_prefix)

    async def _cmd_watch(self, argument: str) -> str:
        watching = not self.monitor.context.watching
        self.monitor.set_watching(watching)
        if watching:
            return "👀 Watch on: new output will be relayed"
        return "Watch off"

    async def _cmd_clear(self, argument: str) -> str:
        self.monitor.reset_baseline()
        return "✅ Output buffer cleared"

    async def _cmd_dedupstats(self, argument: str) -> str:
        lines = []
        for cache in (self.inbound_cache, self.outbound_cache):
            if cache is None:
                continue
            stats = cache.stats()
            lines.append(
                f"{stats['name']}: {stats['size']}/{stats['max_size']} keys, "
                f"ttl {stats['ttl_seconds']}s, hits {stats['hits']}, misses {stats['misses']}, "
                f"evicted {stats['evictions']}, expired {stats['expired_removed']}"
            )
        lines.append(f"Duplicate messages dropped: {self.duplicates_dropped}")
        notifier_stats = self.notifier.stats()
        lines.append(
            f"Notifications: {notifier_stats['sent']} sent, "
            f"{notifier_stats['suppressed']} suppressed, {notifier_stats['failed']} failed"
        )
        return "\n".join(lines)

    async def _cmd_config(self, argument: str) -> str:
        detector = self.monitor.detector
        enabled = sorted(state.value for state, on in self.notifier.notify.items() if on)
        lines = [
            f"Poll interval: {detector.min_interval}s - {detector.max_interval}s (backoff x{detector.backoff_factor})",
            f"Sample: {self.monitor.sample_lines} lines, timeout {self.monitor.sample_timeout}s",
            f"Notify on: {', '.join(enabled) or 'nothing'}",
            f"Command prefix: {self.command_prefix}",
            f"Confirm: {', '.join(sorted(self.confirm_words))} -> {' '.join(self.confirm_keys)}",
            f"Cancel: {', '.join(sorted(self.cancel_words))} -> {' '.join(self.cancel_keys)}",
            f"Agent command: {self.agent_command}",
        ]
        return "\n".join(lines)
