"""
HTTP transport for Turnkeeper.

It exposes the following endpoints:
- **GET /health**  - liveness probe for health checks.
- **POST /sessions** - create a new session, returns a session ID.
- **GET /sessions** - list all active sessions.
- **POST /agent**   - multi-turn interaction: {"message": "...", "session_id": "..."}
- **GET /sessions/{session_id}/history** - stored history and memory of a session.
- **DELETE /sessions/{session_id}/history** - forget the history, keep the memory.

The session store and the orchestrator live on ``app.state``; :func:`create_app` wires them.
"""

import json
import logging
from typing import (
    List,
    Optional,
)

from fastapi import (
    FastAPI,
    HTTPException,
    Request,
)
from fastapi.middleware.cors import CORSMiddleware

from turnkeeper.agent.model_client import (
    BaseModelClient,
    load_model_client,
)
from turnkeeper.agent.orchestrator import (
    APOLOGY_MESSAGE,
    Orchestrator,
)
from turnkeeper.api.models import (
    ClearResponse,
    HealthResponse,
    MessageRequest,
    MessageResponse,
    SessionRequest,
    SessionResponse,
    ToolResult,
)
from turnkeeper.common import (
    AnsiColors,
    colored_print,
)
from turnkeeper.config import settings
from turnkeeper.core.errors import ModelInvocationError
from turnkeeper.core.schema import (
    ConversationContext,
    Message,
)
from turnkeeper.memory.memory_store import load_context_store
from turnkeeper.memory.session_store import SessionStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------
def _sessions(request: Request) -> SessionStore:
    return request.app.state.sessions


def _orchestrator(request: Request) -> Orchestrator:
    """Return the app's orchestrator, loading the configured model client on first use."""
    state = request.app.state
    if state.orchestrator is None:
        state.orchestrator = Orchestrator(load_model_client())
    return state.orchestrator


def _tool_results(messages: List[Message]) -> List[ToolResult] | None:
    results = []
    for msg in messages:
        try:
            payload = json.loads(msg.content)
        except json.JSONDecodeError:
            payload = msg.content
        results.append(
            ToolResult(tool_call_id=msg.tool_call_id or "", name=msg.name or "", result=payload)
        )
    return results or None


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
def create_app(
    sessions: Optional[SessionStore] = None,
    model_client: Optional[BaseModelClient] = None,
) -> FastAPI:
    """
    Build the API application.

    Parameters
    ----------
    sessions:
        Session store to serve; by default one backed by the configured context store.
    model_client:
        Model provider; by default ``settings.MODEL_PROVIDER`` is loaded on the first turn.
    """
    app = FastAPI(
        title="Turnkeeper API", version="0.1.0", description="Turn orchestration for booking chat"
    )

    # Add CORS middleware to allow requests from local frontends
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[f"http://localhost:{settings.API_PORT}"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if sessions is None:
        sessions = SessionStore(load_context_store(settings))
    app.state.sessions = sessions
    app.state.orchestrator = Orchestrator(model_client) if model_client is not None else None

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------
    @app.get("/health", response_model=HealthResponse, summary="Health check")
    async def health(request: Request) -> HealthResponse:
        """Return a simple liveness payload."""
        return HealthResponse(status="ok", sessions=len(_sessions(request)))

    @app.post("/sessions", response_model=SessionResponse, summary="Create a new session")
    async def create_session(
        request: Request, req: Optional[SessionRequest] = None
    ) -> SessionResponse:
        """Create a new conversation session."""
        req = req or SessionRequest()
        session = _sessions(request).get_or_create(role=req.role)
        return SessionResponse(session_id=session.id, role=session.role)

    @app.get("/sessions", response_model=List[str], summary="List active sessions")
    async def list_sessions(request: Request) -> List[str]:
        """List all active session IDs."""
        return _sessions(request).session_ids()

    @app.get(
        "/sessions/{session_id}/history",
        response_model=ConversationContext,
        summary="Show a session's context",
    )
    async def get_history(session_id: str, request: Request) -> ConversationContext:
        """Return the stored history and memory of a session."""
        session = _sessions(request).get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Unknown session '{session_id}'")
        return session.context

    @app.delete(
        "/sessions/{session_id}/history",
        response_model=ClearResponse,
        summary="Clear a session's history",
    )
    async def clear_history(session_id: str, request: Request) -> ClearResponse:
        """Drop the conversation history of a session; its memory is kept."""
        if not _sessions(request).clear_history(session_id):
            raise HTTPException(status_code=404, detail=f"Unknown session '{session_id}'")
        return ClearResponse(session_id=session_id, cleared=True)

    @app.post("/agent", response_model=MessageResponse, summary="Process a message")
    async def agent_endpoint(req: MessageRequest, request: Request) -> MessageResponse:
        """Run one turn for the session (created on first use) and persist its context."""
        store = _sessions(request)
        session = store.get_or_create(req.session_id, role=req.role)
        orchestrator = _orchestrator(request)

        try:
            result = await orchestrator.run_turn(session, req.message)
        except ModelInvocationError as exc:
            logger.warning("Turn failed for session %s: %s", session.id, exc)
            return MessageResponse(reply=APOLOGY_MESSAGE, session_id=session.id, failed=True)

        store.persist(session)
        return MessageResponse(
            reply=result.output_text,
            session_id=session.id,
            history_repaired=result.history_repaired,
            failed=result.failed,
            tool_results=_tool_results(result.tool_messages),
        )

    @app.get("/", summary="API root")
    async def root() -> dict[str, str]:
        """Return a simple welcome message."""
        return {"message": "Welcome to the Turnkeeper API! Use /docs for API documentation."}

    return app


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting the app built by :func:`create_app`.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload (useful in dev docker-compose).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn an optional dependency at pkg‑import time
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:  # Use the default from settings if not provided
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting Turnkeeper API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    logger.debug(
        "API settings: %s", settings.model_dump(exclude={"OPENAI_API_KEY", "ANTHROPIC_API_KEY"})
    )

    colored_print(f"🔑 Turnkeeper API is running at http://localhost:{port}.", AnsiColors.GREEN)
    colored_print(f"Visit http://localhost:{port}/docs for API documentation.", AnsiColors.BLUE)
    uvicorn.run(
        "turnkeeper.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m turnkeeper.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)
