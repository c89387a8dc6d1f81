"""Known tmux sessions, the active one, and its rolling output buffer."""

import difflib
import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import Session
from .tmux_controller import TmuxController

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
    r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]'  # Other control characters
)

# Agent UI chrome that carries no information in a chat message
CHROME_LINE_RE = re.compile(
    r'^\s*[─━═╭╮╰╯│┃\-_=]{3,}\s*$|'            # Horizontal rules and box edges
    r'^\s*[╭╰][─━]+|'                            # Input box top/bottom
    r'\?\s+for shortcuts|'
    r'^\s*⏵⏵|'                                   # Mode indicator bar
    r'auto-accept edits on|'
    r'\(shift\+tab to cycle\)'
)

SESSION_NAME_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$')


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes and control characters from text."""
    text = ANSI_ESCAPE_RE.sub('', text)
    # Remove any remaining escape sequences we might have missed
    text = re.sub(r'\x1b[^a-zA-Z]*[a-zA-Z]', '', text)
    return text


def new_lines(previous: str, current: str) -> list[str]:
    """Lines of ``current`` that were inserted or changed relative to ``previous``.

    Pane captures overlap heavily between samples (the pane scrolls, the agent
    redraws its status area), so a line diff finds what actually changed.
    """
    if not previous:
        return current.splitlines()
    if previous == current:
        return []

    old = previous.splitlines()
    new = current.splitlines()
    matcher = difflib.SequenceMatcher(None, old, new, autojunk=False)
    added = []
    for tag, _, _, j1, j2 in matcher.get_opcodes():
        if tag in ("insert", "replace"):
            added.extend(new[j1:j2])
    return added


def clean_for_notification(content: str, max_lines: int = 30) -> str:
    """Make terminal output fit for a chat message.

    Strips escape sequences and agent UI chrome, collapses blank runs and keeps
    the last ``max_lines`` lines.
    """
    if not content:
        return ""

    lines = []
    for line in strip_ansi(content).splitlines():
        line = line.rstrip()
        if CHROME_LINE_RE.search(line):
            continue
        if not line.strip() and (not lines or not lines[-1].strip()):
            continue
        lines.append(line)

    while lines and not lines[-1].strip():
        lines.pop()

    return "\n".join(lines[-max_lines:])


def is_valid_session_name(name: str) -> bool:
    """tmux treats ':' and '.' specially in targets; keep names simple."""
    return bool(SESSION_NAME_RE.match(name or ""))


class RollingBuffer:
    """Accumulated recent output of one session, capped at ``max_chars``."""

    def __init__(self, max_chars: int = 20000):
        self.max_chars = max_chars
        self.latest = ""
        self._text = ""

    @property
    def text(self) -> str:
        return self._text

    def __len__(self) -> int:
        return len(self._text)

    def update(self, snapshot: str) -> str:
        """Record a new pane snapshot; append what it adds. Returns the appended text."""
        added = "\n".join(new_lines(self.latest, snapshot))
        self.latest = snapshot
        if added:
            self.append(added)
        return added

    def append(self, text: str):
        self._text = f"{self._text}\n{text}" if self._text else text
        if len(self._text) > self.max_chars:
            self._text = self._text[-self.max_chars:]

    def clear(self):
        self.latest = ""
        self._text = ""

    def clean_for_notification(self, content: Optional[str] = None, max_lines: int = 30) -> str:
        return clean_for_notification(self._text if content is None else content, max_lines)


class SessionRegistry:
    """Tracks tmux sessions and which one the bridge is attached to."""

    def __init__(
        self,
        tmux: TmuxController,
        session_file: Optional[str] = None,
        buffer_max_chars: int = 20000,
    ):
        self.tmux = tmux
        self.session_file = Path(session_file).expanduser() if session_file else None
        self.buffer = RollingBuffer(max_chars=buffer_max_chars)
        self.sessions: dict[str, Session] = {}
        self._current: Optional[str] = None
        self._load_state()

    @property
    def current(self) -> Optional[str]:
        return self._current

    def get_current_session(self) -> Optional[Session]:
        if self._current is None:
            return None
        return self.sessions.get(self._current)

    def refresh(self) -> list[Session]:
        """Sync the known sessions with ``tmux list-sessions``."""
        live = self.tmux.list_sessions()
        for name in live:
            if name not in self.sessions:
                self.sessions[name] = Session(name=name)
                logger.info(f"Discovered tmux session {name}")
            self.sessions[name].alive = True

        for name in list(self.sessions):
            if name not in live:
                logger.info(f"Tmux session {name} no longer exists")
                del self.sessions[name]

        return list(self.sessions.values())

    def snapshot(self) -> dict:
        return {
            "current": self._current,
            "sessions": [s.to_dict() for s in self.sessions.values()],
            "buffer_chars": len(self.buffer),
        }

    def auto_select(self) -> Optional[str]:
        """Attach to the remembered session if alive, else the first live one."""
        self.refresh()
        if self._current and self._current in self.sessions:
            logger.info(f"Using session {self._current}")
            return self._current

        if self._current:
            logger.warning(f"Remembered session {self._current} is gone")

        if self.sessions:
            self._set_current(next(iter(self.sessions)))
            logger.info(f"Auto-selected session {self._current}")
        else:
            self._set_current(None)
        return self._current

    def switch(self, name: str) -> bool:
        """Make ``name`` the active session. Clears the buffer on change."""
        if not self.tmux.session_exists(name):
            return False
        self.sessions.setdefault(name, Session(name=name)).alive = True
        if name != self._current:
            self._set_current(name)
            logger.info(f"Switched to session {name}")
        return True

    def create(self, name: str, working_dir: Optional[str] = None, command: Optional[str] = None) -> bool:
        if not is_valid_session_name(name):
            return False
        if not self.tmux.new_session(name, working_dir=working_dir, command=command):
            return False
        self.sessions[name] = Session(name=name)
        self._set_current(name)
        return True

    def kill_current(self) -> Optional[str]:
        """Kill the active session. Returns its name, or None if nothing was killed."""
        name = self._current
        if name is None:
            return None
        if not self.tmux.kill_session(name):
            return None
        self.sessions.pop(name, None)
        self._set_current(None)
        self.auto_select()
        return name

    def handle_missing(self) -> Optional[str]:
        """The active session vanished from tmux; fall back to another one."""
        name = self._current
        if name and name in self.sessions:
            self.sessions[name].alive = False
            del self.sessions[name]
        self._set_current(None)
        return self.auto_select()

    def _set_current(self, name: Optional[str]):
        if name != self._current:
            self.buffer.clear()
        self._current = name
        self._save_state()

    def _load_state(self):
        if not self.session_file or not self.session_file.exists():
            return
        try:
            with open(self.session_file) as f:
                data = json.load(f)
            self._current = data.get("current_session")
            logger.info(f"Remembered session: {self._current}")
        except (OSError, ValueError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable session file {self.session_file}: {e}")

    def _save_state(self) -> bool:
        """Persist the active session name (temp file + rename)."""
        if not self.session_file:
            return False

        temp_file = self.session_file.with_suffix(self.session_file.suffix + ".tmp")
        try:
            self.session_file.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w") as f:
                json.dump(
                    {"current_session": self._current, "updated_at": datetime.now().isoformat()},
                    f,
                    indent=2,
                )
            temp_file.replace(self.session_file)
            return True
        except OSError as e:
            logger.error(f"Failed to save session file {self.session_file}: {e}")
            return False
