"""FastAPI server for the sync engine.

Routes:
    GET  /health                   liveness and queue counts
    POST /sync                     orchestrated run for one tenant
    POST /sync/{entity}            one worker invocation (resumable)
    POST /webhooks/qbo             QuickBooks change notifications
    GET  /rate-limits/{tenant_id}  current rate window usage
    GET  /sessions/{session_id}    session progress
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Literal

import structlog
from fastapi import APIRouter, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from qbo_sync import __version__
from qbo_sync.config import SyncSettings
from qbo_sync.conflicts import ConflictStrategy
from qbo_sync.engine import SyncEngine
from qbo_sync.errors import (
    ConfigurationError,
    InvalidSignatureError,
    MissingCredentialError,
    QBOAPIError,
    SessionConflictError,
)
from qbo_sync.orchestrator import OrchestrationResult, SyncRequest
from qbo_sync.sessions import SyncMode, SyncSession
from qbo_sync.workers import WorkerResult

logger = structlog.get_logger(__name__)

router = APIRouter()


class EntitySyncRequest(BaseModel):
    """Body of POST /sync/{entity}."""
    tenant_id: str = Field(..., min_length=1)
    direction: Literal["pull", "push"] = "pull"
    session_id: str | None = None
    offset: int | None = Field(None, ge=0)
    batch_size: int | None = Field(None, ge=1, le=1000)
    sync_mode: SyncMode = "full"
    conflict_resolution: ConflictStrategy = ConflictStrategy.NEWEST_WINS


class SessionResponse(BaseModel):
    session: SyncSession
    progress_percent: float | None


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.engine


@router.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """Health check endpoint."""
    engine = get_engine(request)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "queue": await engine.queue.get_stats(),
        "client": engine.client.get_stats(),
    }


@router.post("/sync", response_model=OrchestrationResult)
async def run_sync(body: SyncRequest, request: Request) -> OrchestrationResult:
    return await get_engine(request).orchestrator.run(body)


@router.post("/sync/{entity}", response_model=WorkerResult)
async def run_entity_sync(entity: str, body: EntitySyncRequest, request: Request) -> WorkerResult:
    return await get_engine(request).orchestrator.run_worker(
        body.tenant_id,
        entity,
        body.direction,
        session_id=body.session_id,
        offset=body.offset,
        batch_size=body.batch_size,
        sync_mode=body.sync_mode,
        conflict_resolution=body.conflict_resolution,
    )


@router.post("/webhooks/qbo")
async def receive_webhook(
    request: Request,
    intuit_signature: str | None = Header(None, alias="intuit-signature"),
) -> JSONResponse:
    """
    Always 200 unless the signature is wrong; QuickBooks redelivers on
    anything else.
    """
    raw_body = await request.body()
    try:
        result = await get_engine(request).ingestor.ingest(raw_body, intuit_signature)
    except InvalidSignatureError:
        raise
    except Exception as e:
        logger.error("Webhook handler error", error=str(e))
        result = {"success": False, "processed": 0, "errors": [str(e)]}
    return JSONResponse(result, status_code=200)


@router.get("/rate-limits/{tenant_id}")
async def rate_limits(tenant_id: str, request: Request) -> dict[str, Any]:
    return get_engine(request).rate_limiter.get_stats(tenant_id)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, request: Request) -> SessionResponse:
    session = await get_engine(request).sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return SessionResponse(session=session, progress_percent=session.progress_percent)


def _error_response(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        logger.warning(
            "Request failed",
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return JSONResponse({"success": False, "error": str(exc)}, status_code=status_code)
    return handler


def create_app(
    settings: SyncSettings | None = None,
    engine: SyncEngine | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    engine = engine or SyncEngine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Sync API starting up", environment=engine.settings.environment)
        yield
        await engine.aclose()
        logger.info("Sync API shut down")

    app = FastAPI(
        title="QuickBooks Sync Engine",
        description="Bidirectional ERP <-> QuickBooks Online sync orchestration",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_exception_handler(ConfigurationError, _error_response(400))
    app.add_exception_handler(InvalidSignatureError, _error_response(401))
    app.add_exception_handler(MissingCredentialError, _error_response(404))
    app.add_exception_handler(SessionConflictError, _error_response(409))
    app.add_exception_handler(QBOAPIError, _error_response(502))

    app.include_router(router, tags=["Sync"])
    return app
