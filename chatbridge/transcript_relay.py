"""Relays the agent's replies from its JSONL transcript to the chat.

Claude Code appends one JSON object per line to
``~/.claude/projects/<project>/<session-id>.jsonl``, where ``<project>`` is
the working directory with every non-alphanumeric character replaced by '-'.
The newest file in that directory belongs to the running agent. Screen
scraping only sees what fits in the pane; the transcript has the full text
of every reply.
"""

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .session_registry import SessionRegistry
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

SendHandler = Callable[[str, Optional[str]], Awaitable[object]]


def project_dir_name(working_dir: str) -> str:
    return re.sub(r'[^a-zA-Z0-9]', '-', working_dir)


def assistant_text(entry: dict) -> Optional[str]:
    """Visible text of an assistant entry; None for anything else (tool use, user turns)."""
    if entry.get("type") != "assistant":
        return None

    message = entry.get("message") or {}
    content = message.get("content", [])
    if isinstance(content, str):
        text = content
    else:
        texts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                texts.append(item.get("text", ""))
        text = "\n".join(texts)

    return text.strip() or None


def read_new_entries(path: Path, offset: int) -> tuple[list[dict], int]:
    """
    Parse the complete lines written after ``offset``.

    A trailing line without its newline is still being written and is left
    for the next read.

    Returns:
        Tuple of (entries, new offset)
    """
    with open(path, "rb") as f:
        size = f.seek(0, 2)
        if size < offset:
            # File was replaced or truncated
            offset = 0
        f.seek(offset)
        data = f.read()

    end = data.rfind(b"\n")
    if end < 0:
        return [], offset
    complete = data[:end + 1]

    entries = []
    for raw in complete.splitlines():
        if not raw.strip():
            continue
        try:
            entry = json.loads(raw)
        except ValueError as e:
            logger.debug(f"Skipping malformed JSON line in transcript: {e}")
            continue
        if isinstance(entry, dict):
            entries.append(entry)

    return entries, offset + len(complete)


class TranscriptRelay:
    """Follows the transcript of the active session and sends new replies.

    When it attaches to a session, replies already in the transcript are
    skipped. A transcript that appears later (agent started, or ``/clear``
    opened a new one) is read from its first line.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        tmux: TmuxController,
        config: Optional[dict] = None,
        is_connected: Optional[Callable[[], bool]] = None,
    ):
        self.registry = registry
        self.tmux = tmux
        self.config = config or {}
        self._is_connected = is_connected or (lambda: True)

        transcript_config = self.config.get("transcript", {})
        self.enabled = transcript_config.get("enabled", True)
        self.projects_dir = Path(transcript_config.get("projects_dir", "~/.claude/projects")).expanduser()
        self.check_interval = transcript_config.get("check_interval", 1.0)
        self.max_chars = transcript_config.get("max_chars", 3500)

        self._send_handler: Optional[SendHandler] = None
        self._task: Optional[asyncio.Task] = None

        self._session: Optional[str] = None
        self._project_dir: Optional[Path] = None
        self._path: Optional[Path] = None
        self._offset = 0
        self._skip_existing = True

        self.relayed_total = 0

    def set_send_callback(self, callback: SendHandler):
        """Set the callback that sends ``(text, dedup_key)`` to the chat."""
        self._send_handler = callback

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def transcript_path(self) -> Optional[Path]:
        return self._path

    def start(self) -> bool:
        if not self.enabled:
            logger.info("Transcript relay disabled")
            return False
        if self.is_running:
            return True
        self._task = asyncio.create_task(self._relay_loop())
        logger.info(f"Transcript relay started ({self.projects_dir})")
        return True

    async def stop(self):
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Transcript relay stopped")

    async def _relay_loop(self):
        while True:
            await asyncio.sleep(self.check_interval)

            # Offsets are kept, so replies written while disconnected go out on reconnect
            if not self._is_connected():
                continue

            try:
                await self.poll()
            except Exception as e:
                logger.error(f"Transcript poll failed: {e}")

    def _attach(self, session: Optional[str]):
        self._session = session
        self._path = None
        self._offset = 0
        self._skip_existing = True
        self._project_dir = None

        if session is None:
            return
        working_dir = self.tmux.pane_current_path(session)
        if working_dir is None:
            logger.warning(f"Working directory of {session} unknown, not following its transcript")
            return
        self._project_dir = self.projects_dir / project_dir_name(working_dir)
        logger.info(f"Following transcripts of {session} in {self._project_dir}")

    def _newest_transcript(self) -> Optional[Path]:
        if self._project_dir is None or not self._project_dir.is_dir():
            return None
        candidates = list(self._project_dir.glob("*.jsonl"))
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.stat().st_mtime)

    async def poll(self) -> int:
        """Send replies added since the last poll. Returns how many were sent."""
        session = self.registry.current
        if session != self._session:
            self._attach(session)
        if session is None or self._project_dir is None:
            return 0

        try:
            path = await asyncio.to_thread(self._newest_transcript)
            if path is None:
                self._skip_existing = False
                return 0

            if path != self._path:
                self._offset = path.stat().st_size if self._skip_existing else 0
                self._skip_existing = False
                self._path = path
                logger.info(f"Reading transcript {path.name} from offset {self._offset}")

            entries, self._offset = await asyncio.to_thread(read_new_entries, path, self._offset)
        except OSError as e:
            logger.warning(f"Cannot read transcript of {session}: {e}")
            return 0

        sent = 0
        for entry in entries:
            text = assistant_text(entry)
            if text is None:
                continue
            if await self._relay(session, text, entry.get("uuid")):
                sent += 1
        return sent

    async def _relay(self, session: str, text: str, uuid: Optional[str]) -> bool:
        if self._send_handler is None:
            return False
        if len(text) > self.max_chars:
            text = text[:self.max_chars] + "\n..."
        key = f"transcript:{uuid}" if uuid else None
        sent = await self._send_handler(f"💬 {session}\n{text}", key)
        if sent:
            self.relayed_total += 1
        return bool(sent)
