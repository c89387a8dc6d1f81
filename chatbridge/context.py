"""Components of a running bridge, built once at startup."""

from dataclasses import dataclass
from typing import Optional

from .idempotency_cache import IdempotencyCache
from .message_router import MessageRouter
from .notifier import Notifier
from .output_monitor import OutputMonitor
from .process_manager import ProcessManager
from .session_registry import SessionRegistry
from .state_detector import StateDetector
from .tmux_controller import TmuxController
from .transcript_relay import TranscriptRelay


@dataclass
class BridgeContext:
    """Everything a component may need, passed explicitly instead of module globals."""
    config: dict
    tmux: TmuxController
    process_manager: ProcessManager
    registry: SessionRegistry
    detector: StateDetector
    monitor: OutputMonitor
    notifier: Notifier
    router: MessageRouter
    inbound_cache: IdempotencyCache
    outbound_cache: IdempotencyCache
    chat: Optional[object] = None  # TelegramBot, or any object with send_text/is_connected
    transcript: Optional[TranscriptRelay] = None

    @property
    def chat_connected(self) -> bool:
        return bool(self.chat is not None and self.chat.is_connected)
