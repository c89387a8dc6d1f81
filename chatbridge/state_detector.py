"""Pattern-based classification of agent terminal output.

Each sample is a full pane capture. Only the lines that changed since the
previous sample are classified, so a state is reported once when it appears
and not again while the screen stays the same.

When several categories match the same delta, the highest one in
``STATE_PRECEDENCE`` wins:

    error > input_prompt > plan_mode > testing > git_operation > warning
          > completed > idle_input

An explicit error outranks a question, a question outranks activity
markers, and the bare "prompt is empty" signal is the weakest.
"""

import logging
import re
from typing import Optional

from .models import ClassificationResult, SessionState
from .session_registry import new_lines, strip_ansi

logger = logging.getLogger(__name__)


STATE_PRECEDENCE = (
    SessionState.ERROR,
    SessionState.INPUT_PROMPT,
    SessionState.PLAN_MODE,
    SessionState.TESTING,
    SessionState.GIT_OPERATION,
    SessionState.WARNING,
    SessionState.COMPLETED,
    SessionState.IDLE_INPUT,
)

# Patterns that indicate errors (case-sensitive: "error" in prose is common)
ERROR_PATTERNS = [
    r'Error:',
    r'ERROR:',
    r'error:',
    r'Failed to',
    r'Exception:',
    r'Traceback \(most recent call last\)',
    r'command not found',
    r'Permission denied',
    r'API Error',
    r'FATAL',
    r'panic:',
]

# Patterns that indicate the agent is waiting for an answer
INPUT_PROMPT_PATTERNS = [
    r'\[Y/n\]',
    r'\[y/N\]',
    r'\[Yes/no\]',
    r'Allow .+\?',
    r'Do you want to (proceed|make this edit|create|run)',
    r'Permission required',
    r'Press Enter to continue',
    r'Approve\?',
    r'Run command\?',
    r'Allow once',
    r"Yes, and don't ask again",
    r'Yes, and always allow',
    r'❯\s*\d+\.\s',
    r'Enter to select',
    r'↑↓ to navigate',
]

PLAN_MODE_PATTERNS = [
    r'plan mode on',
    r'⏸\s*plan mode',
    r"Here is Claude's plan",
    r'Ready to code\?',
]

TESTING_PATTERNS = [
    r'\bpytest\b',
    r'=+ test session starts =+',
    r'\bnpm (run )?test\b',
    r'\b(jest|vitest|mocha)\b',
    r'\b(go|cargo) test\b',
    r'Running \d+ tests?',
    r'\b\d+ (passed|failed)\b',
    r'\bTests?:\s+\d+',
]

GIT_OPERATION_PATTERNS = [
    r'\bgit (commit|push|pull|merge|rebase|checkout|switch|fetch|clone|stash|reset|add|tag)\b',
    r'^\s*\[[\w./-]+ [0-9a-f]{7,}\]',  # "[main 1a2b3c4] message"
    r'Switched to (a new )?branch',
    r'Your branch is (up to date|ahead|behind)',
    r'\b\d+ files? changed\b',
]

WARNING_PATTERNS = [
    r'\b[Ww]arning:',
    r'\bWARN(ING)?\b',
    r'DeprecationWarning',
    r'⚠',
]

# Claude Code prints "✻ <Verb> for 1m 3s" when a turn finishes
COMPLETION_PATTERNS = [
    r'Task complete',
    r'All tests passed',
    r'[✻✽✢*]\s+\w+ for \d+[hms]',
    r'^\s*Done\.',
    r'^\s*Finished\.',
]

# Empty prompt line or the shortcut hint under the input box
IDLE_INPUT_PATTERNS = [
    r'^\s*[│|]?\s*[>❯]\s*[│|]?\s*$',
    r'\?\s+for shortcuts',
]

# Agent is busy; not a reportable state, only shortens the poll interval
ACTIVE_PATTERNS = [
    r'esc to interrupt',
    r'[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]',
    r'[✶✳✢·✻✽]\s*\w+…',
]

_state_res = {
    SessionState.ERROR: re.compile('|'.join(ERROR_PATTERNS)),
    SessionState.INPUT_PROMPT: re.compile('|'.join(INPUT_PROMPT_PATTERNS), re.IGNORECASE),
    SessionState.PLAN_MODE: re.compile('|'.join(PLAN_MODE_PATTERNS), re.IGNORECASE),
    SessionState.TESTING: re.compile('|'.join(TESTING_PATTERNS)),
    SessionState.GIT_OPERATION: re.compile('|'.join(GIT_OPERATION_PATTERNS)),
    SessionState.WARNING: re.compile('|'.join(WARNING_PATTERNS)),
    SessionState.COMPLETED: re.compile('|'.join(COMPLETION_PATTERNS), re.IGNORECASE),
    SessionState.IDLE_INPUT: re.compile('|'.join(IDLE_INPUT_PATTERNS)),
}
_active_re = re.compile('|'.join(ACTIVE_PATTERNS), re.IGNORECASE)

# Lines of context kept around the matching line: (before, after)
SNIPPET_CONTEXT = {
    SessionState.INPUT_PROMPT: (3, 8),
    SessionState.PLAN_MODE: (10, 5),
    SessionState.ERROR: (5, 5),
}
DEFAULT_SNIPPET_CONTEXT = (5, 2)
MAX_SNIPPET_CHARS = 1500

# Seconds until the next sample, by state
DEFAULT_STATE_INTERVALS = {
    SessionState.TESTING: 1.0,
    SessionState.GIT_OPERATION: 1.0,
    SessionState.PLAN_MODE: 2.0,
    SessionState.WARNING: 2.0,
    SessionState.ERROR: 2.0,
    SessionState.INPUT_PROMPT: 3.0,
    SessionState.COMPLETED: 4.0,
    SessionState.IDLE_INPUT: 5.0,
    SessionState.NONE: 2.0,
}


def _sanitize(text: str) -> str:
    """Drop escape sequences, NULs and undecodable bytes from a capture."""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    text = strip_ansi(text)
    return text.replace("\x00", "").replace("�", "")


class StateDetector:
    """Classifies pane captures and picks the next poll interval."""

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}
        monitor_config = self.config.get("monitor", {})

        self.min_interval = monitor_config.get("min_interval", 1.0)
        self.max_interval = monitor_config.get("max_interval", 15.0)
        self.backoff_factor = monitor_config.get("backoff_factor", 1.5)

        self.state_intervals = dict(DEFAULT_STATE_INTERVALS)
        for name, seconds in monitor_config.get("state_intervals", {}).items():
            try:
                self.state_intervals[SessionState(name)] = float(seconds)
            except ValueError:
                logger.warning(f"Ignoring interval for unknown state {name!r}")

        self._previous = ""
        self._current_state = SessionState.NONE
        self._unchanged_samples = 0
        self._active = False
        self.last_delta = ""

    def reset(self):
        """Forget the baseline (session switched or cleared)."""
        self._previous = ""
        self._current_state = SessionState.NONE
        self._unchanged_samples = 0
        self._active = False
        self.last_delta = ""

    def get_current_state(self) -> SessionState:
        return self._current_state

    def get_poll_interval(self) -> float:
        """Seconds until the next sample.

        Busy or transitional states poll fast; every unchanged sample in a row
        stretches the interval by ``backoff_factor``.
        """
        if self._active:
            interval = self.min_interval
        else:
            interval = self.state_intervals.get(self._current_state, self.state_intervals[SessionState.NONE])

        # Cap the exponent; the clamp below bounds the value anyway
        interval *= self.backoff_factor ** min(self._unchanged_samples, 20)
        return max(self.min_interval, min(self.max_interval, interval))

    async def detect(self, text: str) -> Optional[ClassificationResult]:
        """
        Classify what changed since the previous capture.

        Returns:
            A result when a new state appeared, None when nothing new was
            classified. Never raises.
        """
        try:
            return self._detect(text)
        except Exception as e:
            logger.warning(f"State detection failed, treating sample as unchanged: {e!r}")
            return None

    def _detect(self, text: str) -> Optional[ClassificationResult]:
        if text is None:
            return None

        text = _sanitize(text)
        delta = [line.rstrip() for line in new_lines(self._previous, text)]
        self._previous = text
        delta = [line for line in delta if line.strip()]
        self.last_delta = "\n".join(delta)

        if not delta:
            self._unchanged_samples += 1
            return None

        self._unchanged_samples = 0
        self._active = any(_active_re.search(line) for line in delta)

        match = self._classify(delta)
        if match is None:
            return None

        state, index = match
        self._current_state = state
        result = ClassificationResult(type=state, content=self._snippet(delta, index, state))
        logger.info(f"Detected state {state.value}")
        return result

    def _classify(self, lines: list[str]) -> Optional[tuple[SessionState, int]]:
        """Highest-precedence state present in ``lines`` and its last matching line."""
        for state in STATE_PRECEDENCE:
            pattern = _state_res[state]
            for index in range(len(lines) - 1, -1, -1):
                if pattern.search(lines[index]):
                    return state, index
        return None

    def _snippet(self, lines: list[str], index: int, state: SessionState) -> str:
        before, after = SNIPPET_CONTEXT.get(state, DEFAULT_SNIPPET_CONTEXT)
        snippet = "\n".join(lines[max(0, index - before):index + after + 1]).strip()
        if len(snippet) > MAX_SNIPPET_CHARS:
            snippet = snippet[-MAX_SNIPPET_CHARS:]
        return snippet
