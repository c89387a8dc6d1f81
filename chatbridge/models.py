"""Data models for the tmux chat bridge."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


# Signal value reported to on_exit when a supervised process hit its deadline
TIMEOUT_SIGNAL = "TIMEOUT"


class SessionState(Enum):
    """Semantic state of the terminal session, as classified from its output."""
    IDLE_INPUT = "idle_input"        # Agent prompt is empty, waiting for a new task
    INPUT_PROMPT = "input_prompt"    # Agent asked a question / permission
    COMPLETED = "completed"          # Agent finished a turn
    ERROR = "error"
    PLAN_MODE = "plan_mode"
    TESTING = "testing"
    GIT_OPERATION = "git_operation"
    WARNING = "warning"
    NONE = "none"


class SampleOutcome(Enum):
    """Outcome of a supervised sampling process."""
    OK = "ok"                    # Process exited on its own (any exit code)
    TIMED_OUT = "timed_out"      # Deadline fired, process was killed
    SPAWN_ERROR = "spawn_error"  # Process could not be started


class MonitorPhase(Enum):
    """Monitoring loop lifecycle."""
    STOPPED = "stopped"
    SCHEDULED = "scheduled"
    SAMPLING = "sampling"
    EVALUATING = "evaluating"


class BridgeCommand(Enum):
    """Commands exposed to the chat channel."""
    SWITCH = "switch"
    TAB = "tab"
    SHOW = "show"
    NEW = "new"
    KILL = "kill"
    RESET = "reset"
    STATUS = "status"
    HISTORY = "history"
    HELP = "help"
    WATCH = "watch"
    CLEAR = "clear"
    DEDUPSTATS = "dedupstats"
    CONFIG = "config"


@dataclass(frozen=True)
class ClassificationResult:
    """One classification pass over new terminal output."""
    type: SessionState
    content: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class IdempotencyEntry:
    """A processed key and the wall-clock time it was first seen."""
    key: str
    first_seen: float

    def to_dict(self) -> dict:
        return {"key": self.key, "first_seen": self.first_seen}

    @classmethod
    def from_dict(cls, data: dict) -> "IdempotencyEntry":
        return cls(key=str(data["key"]), first_seen=float(data["first_seen"]))


@dataclass
class Session:
    """A named tmux session known to the registry."""
    name: str
    alive: bool = True
    discovered_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "alive": self.alive,
            "discovered_at": self.discovered_at.isoformat(),
        }


@dataclass
class SampleResult:
    """Result of running one supervised process to completion."""
    outcome: SampleOutcome
    output: str = ""
    stderr: str = ""
    returncode: Optional[int] = None
    signal: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.outcome == SampleOutcome.OK


@dataclass
class MonitorContext:
    """Mutable state owned by the monitoring loop; read by the router and API."""
    current_state: SessionState = SessionState.NONE
    poll_interval: float = 2.0
    is_paused: bool = False
    phase: MonitorPhase = MonitorPhase.STOPPED
    watching: bool = False
    last_sample_at: Optional[datetime] = None
    last_result: Optional[ClassificationResult] = None
    samples_taken: int = 0

    def to_dict(self) -> dict:
        return {
            "current_state": self.current_state.value,
            "poll_interval": self.poll_interval,
            "is_paused": self.is_paused,
            "phase": self.phase.value,
            "watching": self.watching,
            "last_sample_at": self.last_sample_at.isoformat() if self.last_sample_at else None,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "samples_taken": self.samples_taken,
        }


@dataclass
class InboundEvent:
    """Chat event as delivered by the chat collaborator."""
    id: str
    text: str
    channel_id: str
    is_bot: bool = False


@dataclass
class NormalizedMessage:
    """Text handed to the router."""
    text: str
    is_bot: bool = False
    source_tag: str = "chat"


@dataclass
class CommandRecord:
    """An input the router sent to the session (for /history)."""
    text: str
    kind: str  # "input", "shell", "confirm", "cancel", "keys"
    sent_at: datetime = field(default_factory=datetime.now)
