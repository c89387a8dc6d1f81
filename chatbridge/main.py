"""Main entry point - builds the components and runs the bridge."""

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import uvicorn
import yaml
from telegram.error import TelegramError

from .context import BridgeContext
from .idempotency_cache import IdempotencyCache
from .message_router import MessageRouter
from .models import BridgeCommand, InboundEvent
from .notifier import Notifier
from .output_monitor import OutputMonitor
from .process_manager import ProcessManager
from .server import create_app
from .session_registry import SessionRegistry
from .state_detector import StateDetector
from .telegram_bot import TelegramBot
from .tmux_controller import TmuxController
from .transcript_relay import TranscriptRelay

logger = logging.getLogger(__name__)

# name -> (storage_file, ttl_seconds, max_size, cleanup_interval_seconds)
DEDUP_DEFAULTS = {
    "inbound": ("/tmp/chatbridge-inbound-dedup.json", 3600, 1000, 300),
    "outbound": ("/tmp/chatbridge-sent-messages.json", 300, 500, 60),
}


class StartupError(Exception):
    """The bridge cannot run (missing credentials, chat unreachable)."""


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file (``CHATBRIDGE_CONFIG`` overrides the path)."""
    path = Path(config_path or os.environ.get("CHATBRIDGE_CONFIG", "config.yaml")).expanduser()

    if not path.exists():
        logger.warning(f"Config file not found: {path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def build_cache(config: dict, name: str) -> IdempotencyCache:
    """Idempotency cache from the ``dedup.<name>`` section."""
    cache_config = config.get("dedup", {}).get(name, {})
    storage_file, ttl, max_size, cleanup_interval = DEDUP_DEFAULTS[name]
    return IdempotencyCache(
        name=name,
        ttl=cache_config.get("ttl_seconds", ttl),
        max_size=cache_config.get("max_size", max_size),
        cleanup_interval=cache_config.get("cleanup_interval_seconds", cleanup_interval),
        storage_file=cache_config.get("storage_file", storage_file),
        save_debounce=cache_config.get("save_debounce_seconds", 1.0),
    )


class BridgeApp:
    """Main application orchestrator."""

    def __init__(self, config: dict, chat=None):
        """
        Args:
            config: Parsed configuration
            chat: Chat collaborator; built from ``telegram`` config when omitted
        """
        self.config = config

        # Server config
        server_config = config.get("server", {})
        self.server_enabled = server_config.get("enabled", True)
        self.host = server_config.get("host", "127.0.0.1")
        self.port = server_config.get("port", 8430)

        paths = config.get("paths", {})
        monitor_config = config.get("monitor", {})

        self.chat = chat if chat is not None else self._build_chat()

        tmux = TmuxController(config=config)
        process_manager = ProcessManager(config=config)
        registry = SessionRegistry(
            tmux,
            session_file=paths.get("session_file", "/tmp/chatbridge-session.json"),
            buffer_max_chars=monitor_config.get("buffer_max_chars", 20000),
        )
        detector = StateDetector(config=config)
        monitor = OutputMonitor(
            registry,
            process_manager,
            detector,
            tmux,
            config=config,
            is_connected=lambda: self.chat is not None and self.chat.is_connected,
        )
        inbound_cache = build_cache(config, "inbound")
        outbound_cache = build_cache(config, "outbound")
        notifier = Notifier(self.chat, outbound_cache, registry=registry, config=config)
        router = MessageRouter(
            registry,
            tmux,
            process_manager,
            monitor,
            notifier,
            inbound_cache,
            outbound_cache=outbound_cache,
            config=config,
            channel_id=str(self.chat.chat_id) if getattr(self.chat, "chat_id", None) else None,
        )
        transcript = TranscriptRelay(
            registry,
            tmux,
            config=config,
            is_connected=lambda: self.chat is not None and self.chat.is_connected,
        )

        self.context = BridgeContext(
            config=config,
            tmux=tmux,
            process_manager=process_manager,
            registry=registry,
            detector=detector,
            monitor=monitor,
            notifier=notifier,
            router=router,
            inbound_cache=inbound_cache,
            outbound_cache=outbound_cache,
            chat=self.chat,
            transcript=transcript,
        )

        monitor.set_state_change_callback(notifier.handle_state_change)
        monitor.set_notice_callback(notifier.send_automated)
        transcript.set_send_callback(notifier.send_automated)
        if self.chat is not None:
            self._setup_chat_handlers()

        self.app = create_app(self.context)
        self._server: Optional[uvicorn.Server] = None
        self._shutdown_event = asyncio.Event()
        self._started = False
        self._stopped = False

    def _build_chat(self) -> Optional[TelegramBot]:
        telegram_config = self.config.get("telegram", {})
        token = telegram_config.get("token")
        chat_id = telegram_config.get("chat_id")
        if not token or not chat_id:
            return None
        return TelegramBot(
            token=token,
            chat_id=int(chat_id),
            allowed_user_ids=telegram_config.get("allowed_user_ids"),
            config=self.config,
        )

    def _setup_chat_handlers(self):
        """Wire chat events to the router and connectivity to the monitor."""
        router = self.context.router

        async def on_message(event: InboundEvent, reply):
            try:
                await router.handle_inbound(event, reply)
            except Exception as e:
                logger.error(f"Error handling message {event.id}: {e}")

        async def on_command(command: BridgeCommand, argument: str, reply, event_id: str):
            await router.handle_command(command, argument, reply, event_id=event_id)

        self.chat.set_message_handler(on_message)
        self.chat.set_command_handler(on_command)
        self.chat.add_connection_listener(self.context.monitor.on_connection_change)

    async def start(self):
        """Start all components. Raises StartupError if the bridge cannot run."""
        logger.info("Starting tmux chat bridge...")
        self._started = True

        if self.chat is None:
            raise StartupError("telegram.token and telegram.chat_id are required")

        self.context.process_manager.start()
        await self.context.inbound_cache.start()
        await self.context.outbound_cache.start()

        try:
            await self.chat.start()
        except TelegramError as e:
            raise StartupError(f"Cannot connect to Telegram: {e}") from e

        session = self.context.registry.auto_select()
        self.context.monitor.start()
        self.context.transcript.start()

        if session:
            await self.context.notifier.send_direct(f"🤖 Bridge started, monitoring {session}")
        else:
            await self.context.notifier.send_direct("🤖 Bridge started. No tmux sessions; use /new <name>.")

    async def serve(self):
        """Run until shutdown is requested."""
        if not self.server_enabled:
            await self._shutdown_event.wait()
            return

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        self._server = uvicorn.Server(config)
        logger.info(f"Starting status API on http://{self.host}:{self.port}")
        await self._server.serve()

    def request_shutdown(self):
        logger.info("Shutdown requested")
        self._shutdown_event.set()
        if self._server is not None:
            self._server.should_exit = True

    async def stop(self):
        """Stop all components, in dependency order. Safe to call twice."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping tmux chat bridge...")

        # Nothing may write to the caches after their final flush, so the
        # chat (inbound handlers) stops before them
        await self.context.monitor.stop()
        await self.context.transcript.stop()
        if self.chat is not None and self._started:
            await self.chat.stop()
        await self.context.process_manager.stop()
        await self.context.inbound_cache.destroy()
        await self.context.outbound_cache.destroy()

        if self._server is not None:
            self._server.should_exit = True

        logger.info("Shutdown complete")


async def main() -> int:
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = load_config()
    level = config.get("logging", {}).get("level", "INFO")
    logging.getLogger().setLevel(level.upper())
    # The Telegram client logs every poll at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    app = BridgeApp(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.request_shutdown)

    try:
        await app.start()
    except StartupError as e:
        logger.error(f"Startup failed: {e}")
        await app.stop()
        return 1

    try:
        await app.serve()
    finally:
        await app.stop()
    return 0


def run():
    """Entry point for console script."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
