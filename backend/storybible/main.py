from __future__ import annotations

import asyncio
import contextlib
import logging
import sqlite3
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from storybible.agents import build_agent_suite
from storybible.db import _connect
from storybible.llm import DummyProvider, LLMProvider, get_llm_client
from storybible.pipeline.deduplication import DeduplicationReconciler
from storybible.pipeline.errors import DocumentValidationError
from storybible.pipeline.orchestrator import PipelineOrchestrator
from storybible.pipeline.registry import SessionRegistry
from storybible.pipeline.store import ResultStore
from storybible.schemas import CreateExtractionRequest, CreateExtractionResponse
from storybible.settings import settings
from storybible.worker import run_session_sweeper

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)


def _build_llm() -> LLMProvider:
    if settings.dummy_mode:
        logger.info("Dummy mode: agents use the offline provider")
        return DummyProvider()
    return get_llm_client(settings.llm_provider.value, openai_base_url=settings.openai_base_url)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application startup and shutdown lifecycle."""
    # Startup
    try:
        logger.info("Starting Story Bible API...")
        archive_path = None
        if settings.archive_results:
            settings.db_path.parent.mkdir(parents=True, exist_ok=True)
            archive_path = settings.db_path

        registry = SessionRegistry(queue_size=settings.subscriber_queue_size)
        store = ResultStore(archive_path=archive_path)
        orchestrator = PipelineOrchestrator(
            registry,
            store,
            build_agent_suite(_build_llm(), settings.resolved_llm_model),
            reconciler=DeduplicationReconciler(
                settings.dedup_precedence,
                partial_matches=settings.dedup_partial_matches,
            ),
            stage_timeout_s=settings.stage_timeout_s,
            agent_timeout_s=settings.agent_timeout_s,
            max_document_chars=settings.max_document_chars,
        )
        app.state.registry = registry
        app.state.store = store
        app.state.orchestrator = orchestrator

        stop_event = asyncio.Event()
        app.state.sweeper_stop_event = stop_event
        app.state.sweeper_task = asyncio.create_task(
            run_session_sweeper(
                registry=registry,
                store=store,
                settings=settings,
                stop_event=stop_event,
            )
        )
        logger.info("Story Bible API started successfully")
    except Exception as e:
        logger.error(f"FATAL: Startup failed: {e}", exc_info=True)
        raise

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down Story Bible API...")
    try:
        app.state.sweeper_stop_event.set()
        task = app.state.sweeper_task
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        await app.state.orchestrator.aclose()
        logger.info("Shutdown complete")
    except Exception as e:
        logger.error(f"Error during shutdown: {e}", exc_info=True)


app = FastAPI(title="Story bible extractor", version="0.1.0", lifespan=lifespan)

app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Try again later."}
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
from storybible.routers import extractions as extractions_router  # noqa: E402

app.include_router(extractions_router.router)


@app.get("/health")
@limiter.limit("60/minute")
def health_check(request: Request) -> dict:
    """Health check endpoint. Returns 503 if the result archive is unreachable."""
    registry: SessionRegistry = request.app.state.registry
    if settings.archive_results:
        try:
            with _connect(settings.db_path) as conn:
                conn.execute("SELECT 1").fetchone()
        except sqlite3.Error:
            return JSONResponse(
                status_code=503,
                content={"status": "degraded", "db": "unavailable"}
            )
    return {"status": "healthy", "sessions": len(registry)}


@app.post("/api/extractions", response_model=CreateExtractionResponse)
@limiter.limit(settings.create_rate_limit)
async def create_extraction(request: Request, req: CreateExtractionRequest) -> CreateExtractionResponse:
    """
    Create an extraction session. The pipeline waits for the start handshake
    sent through /events?start=true, /start or the websocket.
    """
    orchestrator: PipelineOrchestrator = request.app.state.orchestrator
    session_id = uuid.uuid4().hex
    try:
        orchestrator.start(session_id, req.text, req.options)
    except DocumentValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return CreateExtractionResponse(
        session_id=session_id,
        message="Extraction session created; join the event stream and send start",
    )
