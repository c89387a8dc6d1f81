"""Adaptive polling of the active tmux pane."""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from .models import ClassificationResult, MonitorContext, MonitorPhase, SampleOutcome
from .process_manager import ProcessManager
from .session_registry import SessionRegistry, clean_for_notification
from .state_detector import StateDetector
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

StateChangeHandler = Callable[[ClassificationResult], Awaitable[None]]
NoticeHandler = Callable[[str], Awaitable[object]]


class OutputMonitor:
    """Samples the active session on a timer and reports state changes.

    One asyncio task runs the loop; a tick finishes (sample, classify, notify)
    before the next sleep starts, so there is never more than one capture in
    flight. The loop exits while the chat is disconnected and is restarted by
    ``on_connection_change(True)``.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        process_manager: ProcessManager,
        detector: StateDetector,
        tmux: TmuxController,
        config: Optional[dict] = None,
        is_connected: Optional[Callable[[], bool]] = None,
    ):
        self.registry = registry
        self.process_manager = process_manager
        self.detector = detector
        self.tmux = tmux
        self.config = config or {}
        self._is_connected = is_connected or (lambda: True)

        monitor_config = self.config.get("monitor", {})
        self.sample_lines = monitor_config.get("sample_lines", 500)
        self.liveness_check_every = max(1, monitor_config.get("liveness_check_every", 10))
        self.watch_max_lines = monitor_config.get("watch_max_lines", 30)

        timeouts = self.config.get("timeouts", {})
        monitor_timeouts = timeouts.get("monitor", {})
        self.sample_timeout = monitor_timeouts.get("sample_timeout_seconds", 10)
        self.handler_timeout = monitor_timeouts.get("handler_timeout_seconds", 15)

        self.context = MonitorContext(poll_interval=monitor_config.get("poll_interval", 2.0))

        self._state_change_handler: Optional[StateChangeHandler] = None
        self._notice_handler: Optional[NoticeHandler] = None
        self._task: Optional[asyncio.Task] = None
        self._sampled_session: Optional[str] = None

        self.ticks = 0
        self.in_flight = 0
        self.max_in_flight = 0

    def set_state_change_callback(self, callback: StateChangeHandler):
        """Set the callback for non-null classification results."""
        self._state_change_handler = callback

    def set_notice_callback(self, callback: NoticeHandler):
        """Set the callback for automated notices (watch output, vanished session)."""
        self._notice_handler = callback

    def set_watching(self, watching: bool):
        self.context.watching = watching
        logger.info(f"Watch mode {'on' if watching else 'off'}")

    def reset_baseline(self):
        """Drop the buffer and the classifier baseline of the active session."""
        self.registry.buffer.clear()
        self.detector.reset()
        self.context.current_state = self.detector.get_current_state()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Schedule the first tick. Returns False (paused) if the chat is disconnected."""
        if self.is_running:
            return True

        if not self._is_connected():
            self.context.is_paused = True
            self.context.phase = MonitorPhase.STOPPED
            logger.info("Chat not connected, monitoring paused")
            return False

        self.context.is_paused = False
        self.context.phase = MonitorPhase.SCHEDULED
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info(f"Started monitoring (interval {self.context.poll_interval:.1f}s)")
        return True

    async def stop(self):
        """Cancel the pending tick and wait for the loop to exit."""
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.context.phase = MonitorPhase.STOPPED
        logger.info("Stopped monitoring")

    def on_connection_change(self, connected: bool):
        """Chat connectivity listener."""
        if connected:
            if not self.is_running:
                logger.info("Chat connected, resuming monitoring")
                self.start()
        else:
            # The loop sees the flag at its next tick and exits
            self.context.is_paused = True
            logger.info("Chat disconnected, monitoring will pause")

    async def _monitor_loop(self):
        while True:
            self.context.phase = MonitorPhase.SCHEDULED
            await asyncio.sleep(self.context.poll_interval)

            if not self._is_connected():
                self.context.is_paused = True
                self.context.phase = MonitorPhase.STOPPED
                logger.info("Chat disconnected, monitoring paused")
                return

            self.context.is_paused = False
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Monitor tick failed: {e}")

            self.context.poll_interval = self.detector.get_poll_interval()

    async def tick(self) -> Optional[ClassificationResult]:
        """Take one sample of the active session and evaluate it."""
        self.ticks += 1
        check_liveness = self.ticks % self.liveness_check_every == 0

        session = self.registry.current
        if session is None:
            if check_liveness:
                self.registry.auto_select()
            return None

        if session != self._sampled_session:
            self.detector.reset()
            self._sampled_session = session

        if check_liveness and not self.tmux.session_exists(session):
            await self._handle_session_gone(session)
            return None

        self.context.phase = MonitorPhase.SAMPLING
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            sample = await self.process_manager.run(
                "tmux",
                self.tmux.capture_args(session, self.sample_lines),
                timeout=self.sample_timeout,
            )
        finally:
            self.in_flight -= 1

        self.context.samples_taken += 1
        self.context.last_sample_at = datetime.now()

        if sample.outcome == SampleOutcome.TIMED_OUT:
            logger.warning(f"Sampling {session} timed out after {self.sample_timeout}s")
            return None
        if sample.outcome == SampleOutcome.SPAWN_ERROR:
            logger.error(f"Could not sample {session}: {sample.error}")
            return None
        if sample.returncode != 0:
            logger.warning(f"capture-pane for {session} exited {sample.returncode}: {sample.stderr.strip()}")
            return None

        # Session may have been switched while the capture ran
        if self.registry.current != session:
            logger.debug(f"Discarding sample of {session}, active session changed")
            return None

        self.context.phase = MonitorPhase.EVALUATING
        self.registry.buffer.update(sample.output)
        result = await self.detector.detect(sample.output)
        self.context.current_state = self.detector.get_current_state()

        if self.context.watching and self.detector.last_delta:
            text = clean_for_notification(self.detector.last_delta, self.watch_max_lines)
            if text:
                await self._call(self._notice_handler, f"📺 {session}\n{text}")

        if result is not None:
            self.context.last_result = result
            await self._call(self._state_change_handler, result)

        return result

    async def _handle_session_gone(self, name: str):
        logger.info(f"Tmux session {name} no longer exists")
        replacement = self.registry.handle_missing()
        self.detector.reset()
        self._sampled_session = None

        if replacement:
            notice = f"⚠️ Session {name} is gone. Now monitoring {replacement}."
        else:
            notice = f"⚠️ Session {name} is gone. No sessions left; use /new or /switch."
        await self._call(self._notice_handler, notice)

    async def _call(self, handler, argument):
        """Run a handler with a deadline; its failures never stop the loop."""
        if handler is None:
            return
        try:
            await asyncio.wait_for(handler(argument), timeout=self.handler_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Monitor handler timed out after {self.handler_timeout}s")
        except Exception as e:
            logger.error(f"Monitor handler failed: {e}")
