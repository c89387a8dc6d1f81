"""Shared pytest fixtures for tmux chat bridge tests."""

import asyncio
from pathlib import Path
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from chatbridge.context import BridgeContext
from chatbridge.idempotency_cache import IdempotencyCache
from chatbridge.message_router import MessageRouter
from chatbridge.models import SampleOutcome, SampleResult
from chatbridge.notifier import Notifier
from chatbridge.output_monitor import OutputMonitor
from chatbridge.process_manager import ProcessManager
from chatbridge.server import create_app
from chatbridge.session_registry import SessionRegistry
from chatbridge.state_detector import StateDetector
from chatbridge.tmux_controller import TmuxController
from chatbridge.transcript_relay import TranscriptRelay


SESSION_NAME = "agent"


class ScriptedProcessManager:
    """Stands in for ProcessManager.run; returns queued pane captures in order.

    The last capture repeats once the queue runs out. Strings become OK results,
    SampleResult instances are returned as is. While ``gate`` is set to an
    unset Event every capture blocks on it, as a slow tmux would.
    """

    def __init__(self, outputs: Optional[list] = None):
        self.outputs = list(outputs or [])
        self.calls: list[tuple[str, list[str]]] = []
        self.gate: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0
        self._last = SampleResult(outcome=SampleOutcome.OK, output="", returncode=0)
        self.active_count = 0
        self.spawned_total = 0
        self.timed_out_total = 0

    def push(self, *outputs):
        self.outputs.extend(outputs)

    async def run(self, command: str, args: list[str], timeout: Optional[float] = None) -> SampleResult:
        self.calls.append((command, list(args)))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.outputs:
                item = self.outputs.pop(0)
                if isinstance(item, str):
                    item = SampleResult(outcome=SampleOutcome.OK, output=item, returncode=0)
                self._last = item
            return self._last
        finally:
            self.in_flight -= 1

    async def stop(self):
        pass

    def start(self):
        pass


@pytest.fixture
def mock_tmux() -> MagicMock:
    """
    Mock TmuxController for testing without actual tmux sessions.

    Returns:
        MagicMock with common tmux methods configured
    """
    mock = MagicMock(spec=TmuxController)
    mock.session_exists.return_value = True
    mock.list_sessions.return_value = [SESSION_NAME]
    mock.new_session.return_value = True
    mock.kill_session.return_value = True
    mock.send_input_async = AsyncMock(return_value=True)
    mock.send_key_sequence = AsyncMock(return_value=True)
    mock.pane_current_path.return_value = "/home/dev/app"
    mock.capture_args.side_effect = lambda session, lines=500: [
        "capture-pane", "-p", "-t", session, "-S", f"-{lines}",
    ]
    return mock


@pytest.fixture
def fake_chat() -> MagicMock:
    """Connected chat collaborator that records sent text."""
    chat = MagicMock()
    chat.chat_id = 42
    chat.is_connected = True
    chat.send_text = AsyncMock(return_value=True)
    chat.start = AsyncMock()
    chat.stop = AsyncMock()
    return chat


@pytest.fixture
def registry(mock_tmux: MagicMock, tmp_path: Path) -> SessionRegistry:
    """Registry attached to the mocked 'agent' session."""
    reg = SessionRegistry(mock_tmux, session_file=str(tmp_path / "session.json"))
    reg.auto_select()
    return reg


@pytest.fixture
def scripted_pm() -> ScriptedProcessManager:
    return ScriptedProcessManager()


@pytest.fixture
def inbound_cache() -> IdempotencyCache:
    return IdempotencyCache("inbound", ttl=3600, max_size=100)


@pytest.fixture
def outbound_cache() -> IdempotencyCache:
    return IdempotencyCache("outbound", ttl=300, max_size=100)


@pytest.fixture
def detector() -> StateDetector:
    """Detector with intervals short enough for loop tests."""
    return StateDetector(config={"monitor": {"min_interval": 0.01, "max_interval": 0.05}})


@pytest.fixture
def monitor(registry, scripted_pm, detector, mock_tmux, fake_chat) -> OutputMonitor:
    """Monitor with a short poll interval, wired to the fake chat's connectivity."""
    config = {"monitor": {"poll_interval": 0.01, "min_interval": 0.01, "max_interval": 0.05}}
    return OutputMonitor(
        registry,
        scripted_pm,
        detector,
        mock_tmux,
        config=config,
        is_connected=lambda: fake_chat.is_connected,
    )


@pytest.fixture
def notifier(fake_chat, outbound_cache, registry) -> Notifier:
    return Notifier(fake_chat, outbound_cache, registry=registry)


@pytest.fixture
def router(registry, mock_tmux, scripted_pm, monitor, notifier, inbound_cache, outbound_cache) -> MessageRouter:
    config = {"router": {"command_settle_seconds": 0}}
    return MessageRouter(
        registry,
        mock_tmux,
        scripted_pm,
        monitor,
        notifier,
        inbound_cache,
        outbound_cache=outbound_cache,
        config=config,
        channel_id="42",
    )


@pytest.fixture
def projects_dir(tmp_path: Path) -> Path:
    """Transcript directory of the mocked session's working directory (/home/dev/app)."""
    path = tmp_path / "projects" / "-home-dev-app"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def transcript(registry, mock_tmux, fake_chat, projects_dir) -> TranscriptRelay:
    config = {"transcript": {"projects_dir": str(projects_dir.parent), "check_interval": 0.01}}
    return TranscriptRelay(registry, mock_tmux, config=config, is_connected=lambda: fake_chat.is_connected)


@pytest.fixture
def bridge_context(
    registry, mock_tmux, scripted_pm, detector, monitor, notifier, router, inbound_cache, outbound_cache, fake_chat,
    transcript,
) -> BridgeContext:
    monitor.set_state_change_callback(notifier.handle_state_change)
    monitor.set_notice_callback(notifier.send_automated)
    transcript.set_send_callback(notifier.send_automated)
    return BridgeContext(
        config={},
        tmux=mock_tmux,
        process_manager=scripted_pm,
        registry=registry,
        detector=detector,
        monitor=monitor,
        notifier=notifier,
        router=router,
        inbound_cache=inbound_cache,
        outbound_cache=outbound_cache,
        chat=fake_chat,
        transcript=transcript,
    )


@pytest.fixture
def test_client(bridge_context: BridgeContext) -> TestClient:
    """
    Create a FastAPI TestClient for testing API endpoints.

    Returns:
        TestClient configured with the app and the test bridge context
    """
    app = create_app(bridge_context)
    return TestClient(app)


@pytest.fixture
def process_manager() -> ProcessManager:
    """Real process manager with a short kill grace period."""
    return ProcessManager(config={"timeouts": {"process": {"default_seconds": 5, "kill_grace_seconds": 0.3}}})
