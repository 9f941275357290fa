"""
Stageflow API
=============

HTTP surface for conversation sessions.

Endpoints:
- POST /api/sessions                  create a session
- GET  /api/sessions/{id}             session record
- POST /api/sessions/{id}/turns       run a turn (Server-Sent Events)
- POST /api/sessions/{id}/retry       retry the last failed turn (SSE)
- POST /api/sessions/{id}/reset       move the session to a stage
- GET  /api/sessions/{id}/health      health and recovery advice
- GET  /api/health                    service health

Turn streams carry one ``data:`` frame per snapshot and end with the
terminal sentinel. A client disconnect closes the snapshot generator,
which pauses the session.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from stageflow import __version__
from stageflow.agent.directives import build_directive_prefix
from stageflow.agent.orchestrator import StageOrchestrator
from stageflow.api.validation import (
    ResetRequest,
    SessionCreatedResponse,
    SessionStatusResponse,
    TurnRequest,
)
from stageflow.database.repository import create_repository
from stageflow.database.retry import get_retry_stats
from stageflow.llm.provider_router import create_model_client
from stageflow.streaming.framing import SSE_HEADERS, frame_stream
from stageflow.utils.config import Config
from stageflow.utils.errors import (
    SessionAlreadyRunningError,
    SessionNotFoundError,
    StageflowError,
    ValidationError,
)
from stageflow.utils.logging import clear_context, get_logger, set_request_id

logger = get_logger(__name__)

IDLE_SWEEP_INTERVAL = 300  # seconds


def _status_code(exc: StageflowError) -> int:
    if isinstance(exc, SessionNotFoundError):
        return 404
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, SessionAlreadyRunningError):
        return 409
    return 503 if exc.recoverable else 500


def build_orchestrator(config: Config) -> StageOrchestrator:
    """Wire repository, model client and orchestrator from configuration."""
    repository = create_repository(config)
    client = create_model_client(config)
    return StageOrchestrator(repository, client, config)


def create_app(orchestrator: Optional[StageOrchestrator] = None,
               config: Optional[Config] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        orchestrator: Pre-built orchestrator (tests inject one); built from
            config when omitted
        config: Configuration (loaded from the default locations when omitted)
    """
    if config is None:
        config = orchestrator.config if orchestrator is not None else Config.load_default()
    if orchestrator is None:
        orchestrator = build_orchestrator(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("API starting up...")
        connect = getattr(orchestrator.repository, "connect", None)
        if connect is not None:
            await connect()
            await orchestrator.repository.ensure_schema()

        async def sweep_idle_sessions():
            """Periodically mark idle sessions abandoned."""
            while True:
                try:
                    await asyncio.sleep(IDLE_SWEEP_INTERVAL)
                    abandoned = await orchestrator.abandon_idle_sessions()
                    if abandoned:
                        logger.info(f"Idle sweep: abandoned {len(abandoned)} session(s)")
                except asyncio.CancelledError:
                    logger.info("Idle sweep task cancelled")
                    break
                except StageflowError as e:
                    logger.error(f"Error in idle sweep: {e}")

        sweep_task = asyncio.create_task(sweep_idle_sessions())

        yield

        logger.info("API shutting down...")
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
        await orchestrator.client.aclose()
        await orchestrator.repository.close()
        logger.info("API shutdown complete")

    app = FastAPI(
        title="Stageflow API",
        description="Staged agent conversations with incrementally streamed responses",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_context()
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(StageflowError)
    async def stageflow_error_handler(request: Request, exc: StageflowError):
        """Handle Stageflow errors with structured responses."""
        status_code = _status_code(exc)
        log = logger.warning if status_code < 500 else logger.error
        log(
            f"Stageflow error: {exc.error_code}",
            extra={
                "error_code": exc.error_code,
                "category": exc.category.value,
                "recoverable": exc.recoverable,
                "context": exc.context,
            }
        )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    def stream_response(snapshots) -> StreamingResponse:
        return StreamingResponse(
            frame_stream(
                snapshots,
                tag_events=config.streaming.tag_events,
                sentinel=config.streaming.terminal_sentinel,
            ),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    # =========================================================================
    # Health
    # =========================================================================

    @app.get("/api/health")
    async def health_check() -> Dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "version": __version__,
            "provider": orchestrator.client.provider_name,
            "session_store": config.database.session_store,
            "database_retries": get_retry_stats(),
        }

    # =========================================================================
    # Sessions
    # =========================================================================

    @app.post("/api/sessions", response_model=SessionCreatedResponse, status_code=201)
    async def create_session():
        session_id = await orchestrator.create_session()
        return SessionCreatedResponse(session_id=session_id)

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str) -> Dict[str, Any]:
        session = await orchestrator.get_session(session_id)
        return session.to_dict()

    @app.post("/api/sessions/{session_id}/turns")
    async def run_turn(session_id: str, body: TurnRequest):
        """
        Run one turn and stream its snapshots.

        Structured ``force_stage``/``test_mode`` fields are rendered as
        leading directives, so they behave exactly like typed ones.
        """
        await orchestrator.get_session(session_id)
        raw_input = build_directive_prefix(body.force_stage, body.test_mode) + body.message
        return stream_response(orchestrator.process_turn(session_id, raw_input))

    @app.post("/api/sessions/{session_id}/retry")
    async def retry_turn(session_id: str):
        await orchestrator.get_session(session_id)
        return stream_response(orchestrator.retry_last_turn(session_id))

    @app.post("/api/sessions/{session_id}/reset", response_model=SessionStatusResponse)
    async def reset_session(session_id: str, body: ResetRequest):
        await orchestrator.reset_to_stage(session_id, body.stage)
        return SessionStatusResponse(**await orchestrator.get_session_status(session_id))

    @app.get("/api/sessions/{session_id}/health")
    async def session_health(session_id: str, error: Optional[str] = None) -> Dict[str, Any]:
        """Health assessment, plus recovery advice when an error message is given."""
        health = await orchestrator.get_session_health(session_id)
        result: Dict[str, Any] = {"session_id": session_id, **health.to_dict()}
        if error:
            recommendation = await orchestrator.get_recovery_recommendation(session_id, error)
            result["recovery"] = recommendation.to_dict()
        return result

    return app
