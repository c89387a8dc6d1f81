"""Local HTTP API for status and operator input."""

import logging
import time
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from .context import BridgeContext
from .models import NormalizedMessage

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Warn about requests slower than ``timeouts.server.slow_request_threshold_seconds``."""

    def __init__(self, app, config: Optional[dict] = None):
        super().__init__(app)
        server_timeouts = (config or {}).get("timeouts", {}).get("server", {})
        self.slow_threshold = server_timeouts.get("slow_request_threshold_seconds", 1.0)

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start
        if elapsed > self.slow_threshold:
            logger.warning(f"SLOW REQUEST: {request.method} {request.url.path} took {elapsed:.2f}s")
        return response


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded"]
    chat_connected: bool
    monitor_running: bool
    active_processes: int


class SessionInfo(BaseModel):
    name: str
    alive: bool
    current: bool
    discovered_at: str


class SessionsResponse(BaseModel):
    current: Optional[str] = None
    sessions: List[SessionInfo]


class StatusResponse(BaseModel):
    session: Optional[str] = None
    chat_connected: bool
    monitor: Dict[str, Any]
    ticks: int
    max_in_flight: int
    processes: Dict[str, int]
    buffer_chars: int
    inputs_sent: int
    transcript: Optional[Dict[str, Any]] = None


class SendInputRequest(BaseModel):
    text: str


class SendInputResponse(BaseModel):
    session: str
    replies: List[str]


def create_app(context: BridgeContext, lifespan=None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        context: Components of the running bridge
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="tmux chat bridge",
        description="Status and input API for the tmux chat bridge",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestTimingMiddleware, config=context.config)
    app.state.context = context

    @app.get("/")
    async def root():
        return {"status": "ok", "service": "tmux-chat-bridge"}

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Healthy when the chat is connected and the monitoring loop runs."""
        chat_connected = context.chat_connected
        monitor_running = context.monitor.is_running
        return HealthResponse(
            status="healthy" if chat_connected and monitor_running else "degraded",
            chat_connected=chat_connected,
            monitor_running=monitor_running,
            active_processes=context.process_manager.active_count,
        )

    @app.get("/status", response_model=StatusResponse)
    async def status():
        monitor = context.monitor
        manager = context.process_manager
        return StatusResponse(
            session=context.registry.current,
            chat_connected=context.chat_connected,
            monitor=monitor.context.to_dict(),
            ticks=monitor.ticks,
            max_in_flight=monitor.max_in_flight,
            processes={
                "active": manager.active_count,
                "spawned": manager.spawned_total,
                "timed_out": manager.timed_out_total,
            },
            buffer_chars=len(context.registry.buffer),
            inputs_sent=len(context.router.history),
            transcript=_transcript_status(),
        )

    def _transcript_status() -> Optional[dict]:
        relay = context.transcript
        if relay is None:
            return None
        path = relay.transcript_path
        return {
            "running": relay.is_running,
            "path": str(path) if path else None,
            "relayed": relay.relayed_total,
        }

    def _session_info(session) -> SessionInfo:
        return SessionInfo(
            name=session.name,
            alive=session.alive,
            current=session.name == context.registry.current,
            discovered_at=session.discovered_at.isoformat(),
        )

    @app.get("/sessions", response_model=SessionsResponse)
    async def list_sessions():
        sessions = context.registry.refresh()
        return SessionsResponse(
            current=context.registry.current,
            sessions=[_session_info(s) for s in sessions],
        )

    @app.get("/sessions/{name}", response_model=SessionInfo)
    async def get_session(name: str):
        session = context.registry.sessions.get(name)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return _session_info(session)

    @app.get("/dedup/stats")
    async def dedup_stats():
        return {
            "inbound": context.inbound_cache.stats(),
            "outbound": context.outbound_cache.stats(),
            "duplicates_dropped": context.router.duplicates_dropped,
            "notifications": context.notifier.stats(),
        }

    @app.post("/input", response_model=SendInputResponse)
    async def send_input(request: SendInputRequest):
        """Route text exactly like a chat message; replies are returned instead of sent."""
        session = context.registry.current
        if session is None:
            raise HTTPException(status_code=503, detail="No active session")
        if not request.text.strip():
            raise HTTPException(status_code=400, detail="Empty input")

        replies: List[str] = []

        async def collect(text: str) -> bool:
            replies.append(text)
            return True

        await context.router.route(NormalizedMessage(text=request.text, source_tag="api"), reply=collect)
        return SendInputResponse(session=session, replies=replies)

    return app
