"""Supervised short-lived subprocesses (pane sampling, shell helpers)."""

import asyncio
import logging
import os
import signal as signal_module
import time
from typing import Callable, Optional

from .models import SampleOutcome, SampleResult, TIMEOUT_SIGNAL

logger = logging.getLogger(__name__)

ExitCallback = Callable[[Optional[int], Optional[str]], None]
ErrorCallback = Callable[[BaseException], None]


def _signal_name(returncode: Optional[int]) -> Optional[str]:
    """asyncio reports death-by-signal as a negative return code."""
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal_module.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


class ManagedProcess:
    """Handle for one supervised process."""

    def __init__(
        self,
        command: str,
        args: list[str],
        timeout: float,
        on_exit: Optional[ExitCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ):
        self.command = command
        self.args = list(args)
        self.timeout = timeout
        self.on_exit = on_exit
        self.on_error = on_error
        self.spawn_time = time.monotonic()
        self.deadline = self.spawn_time + timeout
        self.process: Optional[asyncio.subprocess.Process] = None
        self.timed_out = False
        self._stdout: list[bytes] = []
        self._stderr: list[bytes] = []
        self._task: Optional[asyncio.Task] = None
        self._result: Optional[SampleResult] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def output(self) -> str:
        """Output accumulated so far."""
        return b"".join(self._stdout).decode("utf-8", errors="replace")

    @property
    def done(self) -> bool:
        return self._result is not None

    async def wait(self) -> SampleResult:
        """Wait for the process to finish and return its result."""
        if self._result is not None:
            return self._result
        if self._task is not None:
            await asyncio.shield(self._task)
        return self._result

    def __repr__(self) -> str:
        return f"ManagedProcess({self.command} {' '.join(self.args)}, pid={self.pid})"


class ProcessManager:
    """Spawns, tracks and tears down child processes.

    Every spawned process is tracked until it is reaped. ``stop()`` returns only
    after each tracked process has exited or been killed.
    """

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}

        timeouts = self.config.get("timeouts", {})
        process_timeouts = timeouts.get("process", {})
        self.default_timeout = process_timeouts.get("default_seconds", 10)
        self.kill_grace = process_timeouts.get("kill_grace_seconds", 2)

        self._processes: dict[int, ManagedProcess] = {}
        self._stopping = False
        self._stop_task: Optional[asyncio.Task] = None
        # Spawns still waiting on the OS; stop() lets them land before sweeping
        self._spawning = 0
        self._spawns_settled = asyncio.Event()
        self._spawns_settled.set()
        self.spawned_total = 0
        self.timed_out_total = 0

    @property
    def active_count(self) -> int:
        return len(self._processes)

    def start(self):
        """Allow spawning again after a stop (used on restart in tests)."""
        self._stopping = False
        self._stop_task = None
        logger.info("Process manager started")

    async def spawn(
        self,
        command: str,
        args: list[str],
        timeout: Optional[float] = None,
        on_exit: Optional[ExitCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> ManagedProcess:
        """
        Spawn a supervised process.

        Args:
            command: Executable name or path
            args: Arguments
            timeout: Seconds before the process is forcibly terminated
            on_exit: Called with (returncode, signal) once the process is gone;
                signal is TIMEOUT_SIGNAL when the deadline fired
            on_error: Called with the exception when the process cannot start

        Returns:
            Handle; ``await handle.wait()`` yields the SampleResult
        """
        handle = ManagedProcess(
            command,
            args,
            timeout if timeout is not None else self.default_timeout,
            on_exit=on_exit,
            on_error=on_error,
        )

        if self._stopping:
            self._fail_spawn(handle, RuntimeError("Process manager is stopped"))
            return handle

        self._spawning += 1
        self._spawns_settled.clear()
        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    command,
                    *handle.args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                )
            except OSError as e:
                self._fail_spawn(handle, e)
                return handle

            # Register before yielding to the loop so stop() always sees it
            handle.process = proc
            self._processes[proc.pid] = handle
            self.spawned_total += 1
            handle._task = asyncio.create_task(self._supervise(handle))
        finally:
            self._spawning -= 1
            if self._spawning == 0:
                self._spawns_settled.set()

        if self._stopping:
            logger.info(f"{handle} started while stopping, it will be terminated")
        else:
            logger.debug(f"Spawned {handle}")
        return handle

    async def run(
        self,
        command: str,
        args: list[str],
        timeout: Optional[float] = None,
    ) -> SampleResult:
        """Spawn and wait; the result says whether it finished, timed out or failed to start."""
        handle = await self.spawn(command, args, timeout=timeout)
        return await handle.wait()

    def _fail_spawn(self, handle: ManagedProcess, error: BaseException):
        logger.error(f"Failed to spawn {handle.command}: {error}")
        handle._result = SampleResult(outcome=SampleOutcome.SPAWN_ERROR, error=error)
        if handle.on_error:
            try:
                handle.on_error(error)
            except Exception as e:
                logger.error(f"on_error callback raised for {handle.command}: {e}")

    async def _read_stream(self, stream: Optional[asyncio.StreamReader], sink: list[bytes]):
        if stream is None:
            return
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                break
            sink.append(chunk)

    async def _supervise(self, handle: ManagedProcess):
        proc = handle.process
        try:
            try:
                await asyncio.wait_for(
                    asyncio.gather(
                        self._read_stream(proc.stdout, handle._stdout),
                        self._read_stream(proc.stderr, handle._stderr),
                        proc.wait(),
                    ),
                    timeout=handle.timeout,
                )
            except asyncio.TimeoutError:
                handle.timed_out = True
                self.timed_out_total += 1
                logger.warning(f"{handle} exceeded {handle.timeout}s, terminating")
                await self._terminate(handle)
        except asyncio.CancelledError:
            # Supervisor cancelled (loop shutdown); never leave the child behind
            await self._terminate(handle)
            raise
        finally:
            self._processes.pop(proc.pid, None)
            self._finish(handle)

    def _signal(self, handle: ManagedProcess, sig: int, whole_group: bool = False) -> bool:
        """Signal the process group of ``handle``. False if it is already gone.

        With ``whole_group`` the group is signalled even after the leader
        exited, for grandchildren still holding the output pipes.
        """
        proc = handle.process
        if proc is None or (proc.returncode is not None and not whole_group):
            return False
        try:
            # start_new_session=True makes the child its own group leader
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError:
            if proc.returncode is not None:
                return False
            proc.send_signal(sig)
        return True

    async def _terminate(self, handle: ManagedProcess):
        """SIGTERM, wait ``kill_grace`` seconds, then SIGKILL."""
        if not self._signal(handle, signal_module.SIGTERM):
            return
        try:
            await asyncio.wait_for(handle.process.wait(), timeout=self.kill_grace)
            return
        except asyncio.TimeoutError:
            logger.warning(f"{handle} ignored SIGTERM, killing")
        if self._signal(handle, signal_module.SIGKILL):
            await handle.process.wait()

    def _finish(self, handle: ManagedProcess):
        if handle._result is not None:
            return

        proc = handle.process
        returncode = proc.returncode if proc else None
        if handle.timed_out:
            outcome = SampleOutcome.TIMED_OUT
            sig = TIMEOUT_SIGNAL
        else:
            outcome = SampleOutcome.OK
            sig = _signal_name(returncode)

        handle._result = SampleResult(
            outcome=outcome,
            output=handle.output,
            stderr=b"".join(handle._stderr).decode("utf-8", errors="replace"),
            returncode=returncode,
            signal=sig,
        )

        if handle.on_exit:
            try:
                handle.on_exit(returncode, sig)
            except Exception as e:
                logger.error(f"on_exit callback raised for {handle}: {e}")

    async def stop(self):
        """Terminate every tracked process. Safe to call more than once."""
        if self._stop_task is None:
            self._stopping = True
            self._stop_task = asyncio.create_task(self._stop_all())
        await asyncio.shield(self._stop_task)

    async def _stop_all(self):
        if self._spawning:
            logger.info(f"Waiting for {self._spawning} spawn(s) in progress")
            await self._spawns_settled.wait()

        handles = list(self._processes.values())
        if not handles:
            logger.info("Process manager stopped")
            return

        logger.info(f"Stopping {len(handles)} tracked process(es)")
        for handle in handles:
            self._signal(handle, signal_module.SIGTERM)

        tasks = [h._task for h in handles if h._task is not None]
        _, pending = await asyncio.wait(tasks, timeout=self.kill_grace)

        if pending:
            for handle in handles:
                if not handle.done and self._signal(handle, signal_module.SIGKILL, whole_group=True):
                    logger.warning(f"{handle} still running after {self.kill_grace}s, killed")
            await asyncio.wait(pending)

        logger.info("Process manager stopped")
