"""tmux operations for the bridged agent sessions."""

import asyncio
import subprocess
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class TmuxController:
    """Controls tmux sessions running the CLI agent."""

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}

        # Load timeout configuration with fallbacks
        timeouts = self.config.get("timeouts", {})
        tmux_timeouts = timeouts.get("tmux", {})

        self.command_timeout_seconds = tmux_timeouts.get("command_timeout_seconds", 5)
        self.send_keys_timeout_seconds = tmux_timeouts.get("send_keys_timeout_seconds", 5)
        self.send_keys_settle_seconds = tmux_timeouts.get("send_keys_settle_seconds", 0.3)

    def _run_tmux(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a tmux command."""
        cmd = ["tmux"] + list(args)
        logger.debug(f"Running tmux command: {' '.join(cmd)}")
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=check,
            timeout=self.command_timeout_seconds,
        )

    def session_exists(self, session_name: str) -> bool:
        """Check if a tmux session exists."""
        try:
            result = self._run_tmux("has-session", "-t", f"={session_name}", check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"tmux has-session failed: {e}")
            return False
        return result.returncode == 0

    def list_sessions(self) -> list[str]:
        """List all tmux sessions."""
        try:
            result = self._run_tmux("list-sessions", "-F", "#{session_name}", check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"tmux list-sessions failed: {e}")
            return []
        if result.returncode != 0:
            return []
        return [s.strip() for s in result.stdout.strip().split("\n") if s.strip()]

    def new_session(
        self,
        session_name: str,
        working_dir: Optional[str] = None,
        command: Optional[str] = None,
    ) -> bool:
        """
        Create a detached tmux session, optionally starting the agent in it.

        Args:
            session_name: Name for the tmux session
            working_dir: Directory to start in (default: home)
            command: Command typed into the new shell (e.g. 'claude')

        Returns:
            True if session created successfully
        """
        if self.session_exists(session_name):
            logger.warning(f"Session {session_name} already exists")
            return False

        working_path = Path(working_dir or "~").expanduser().resolve()
        if not working_path.exists():
            logger.error(f"Working directory does not exist: {working_dir}")
            return False

        try:
            self._run_tmux(
                "new-session",
                "-d",
                "-s", session_name,
                "-c", str(working_path),
            )

            if command:
                self._run_tmux(
                    "send-keys",
                    "-t", session_name,
                    command,
                    "Enter",
                )

            logger.info(f"Created session {session_name} in {working_path}")
            return True

        except subprocess.CalledProcessError as e:
            logger.error(f"Failed to create session: {e.stderr}")
            return False
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to create session: {e}")
            return False

    def kill_session(self, session_name: str) -> bool:
        """
        Kill a tmux session.

        Args:
            session_name: Session to kill

        Returns:
            True if session killed successfully
        """
        if not self.session_exists(session_name):
            logger.warning(f"Session {session_name} does not exist")
            return True  # Already gone

        try:
            self._run_tmux("kill-session", "-t", session_name)
            logger.info(f"Killed session {session_name}")
            return True

        except subprocess.CalledProcessError as e:
            logger.error(f"Failed to kill session: {e.stderr}")
            return False
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to kill session: {e}")
            return False

    async def _send_async(self, *args: str) -> bool:
        proc = await asyncio.create_subprocess_exec(
            "tmux", *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.send_keys_timeout_seconds
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode != 0:
            logger.error(f"tmux {args[0]} failed: {stderr.decode(errors='replace').strip()}")
            return False
        return True

    async def send_input_async(self, session_name: str, text: str) -> bool:
        """
        Send input text to a tmux session followed by Enter (non-blocking).

        Args:
            session_name: Target session name
            text: Text to send (Enter is added at the end)

        Returns:
            True if input sent successfully
        """
        if not self.session_exists(session_name):
            logger.error(f"Session {session_name} does not exist")
            return False

        try:
            if not await self._send_async("send-keys", "-t", session_name, "-l", "--", text):
                return False

            # The agent TUI treats a fast burst ending in Enter as a paste;
            # a short gap makes Enter arrive as a separate submit keystroke.
            await asyncio.sleep(self.send_keys_settle_seconds)

            if not await self._send_async("send-keys", "-t", session_name, "Enter"):
                return False

            logger.info(f"Sent input to {session_name}: {text[:50]}...")
            return True

        except asyncio.TimeoutError:
            logger.error(f"Timeout sending input to {session_name}")
            return False
        except OSError as e:
            logger.error(f"Failed to send input: {e}")
            return False

    async def send_key_sequence(self, session_name: str, keys: list[str]) -> bool:
        """Send tmux key names one at a time with the settle delay between them."""
        if not self.session_exists(session_name):
            logger.error(f"Session {session_name} does not exist")
            return False

        try:
            for index, key in enumerate(keys):
                if index:
                    await asyncio.sleep(self.send_keys_settle_seconds)
                if not await self._send_async("send-keys", "-t", session_name, key):
                    return False
            logger.info(f"Sent keys to {session_name}: {' '.join(keys)}")
            return True

        except asyncio.TimeoutError:
            logger.error(f"Timeout sending keys to {session_name}")
            return False
        except OSError as e:
            logger.error(f"Failed to send keys: {e}")
            return False

    def pane_current_path(self, session_name: str) -> Optional[str]:
        """Working directory of the session's active pane, None if unknown."""
        try:
            result = self._run_tmux(
                "display-message", "-p", "-t", session_name, "#{pane_current_path}", check=False
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"tmux display-message failed: {e}")
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def capture_args(self, session_name: str, lines: int = 500) -> list[str]:
        """Arguments for a ``tmux`` process that prints the pane to stdout."""
        return ["capture-pane", "-p", "-t", session_name, "-S", f"-{lines}"]
