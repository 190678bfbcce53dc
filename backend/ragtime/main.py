"""
FastAPI Application — Entry Point

RagTime document ingestion API.

Wiring (lifespan):
  Settings ──► AsyncEngine ──► session factory ──► SqlMetadataStore
                                              └──► PgVectorStore
           ──► aioboto3.Session ──────────────────► S3ObjectStore
           ──► AsyncOpenAI ───────────────────────► OpenAIEmbeddingClient
  stores + embedder ──► IngestionPipeline  (app.state.pipeline)
  stores ─────────────► DocumentService    (app.state.documents)

Nothing connects at import time; the engine and the OpenAI client are closed
on shutdown.

Middleware / handlers:
  - Correlation id: lifted from X-Correlation-ID / X-Request-ID or generated
    (AUTO-…), stored on request.state and echoed on every response
  - Request log line with latency, stamped with the correlation id
  - PipelineError → structured error body with the error's HTTP status
  - Request validation errors → VALIDATION_FAILED (400)
  - Anything else → classified by ErrorClassifier, never a bare 500 page
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass

import aioboto3
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from openai import AsyncOpenAI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ragtime.api.errors import error_response
from ragtime.api.v1.documents import router as documents_router
from ragtime.core.config import Settings, get_settings
from ragtime.core.correlation import (
    AUTO_PREFIX,
    CORRELATION_HEADER,
    extract_correlation_id,
    new_correlation_id,
)
from ragtime.core.error_handler import ErrorClassifier
from ragtime.core.errors import ErrorContext, PipelineError, validation_error
from ragtime.core.logger import configure_logging
from ragtime.db.metadata_store import SqlMetadataStore
from ragtime.db.session import check_db_health, create_engine, create_session_factory
from ragtime.processing.embeddings import OpenAIEmbeddingClient
from ragtime.services.documents import DocumentService
from ragtime.services.ingestion import IngestionPipeline
from ragtime.storage.s3 import S3ObjectStore
from ragtime.vectorstore.pgvector_store import PgVectorStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Collaborator wiring
# ---------------------------------------------------------------------------

@dataclass
class Collaborators:
    object_store:   S3ObjectStore
    metadata_store: SqlMetadataStore
    vector_store:   PgVectorStore


def build_collaborators(
    settings:        Settings,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    aws_session:     aioboto3.Session,
) -> Collaborators:
    return Collaborators(
        object_store=S3ObjectStore(
            aws_session,
            bucket=settings.s3_bucket,
            region=settings.aws_region,
            connect_timeout=settings.s3_connect_timeout,
            read_timeout=settings.s3_read_timeout,
        ),
        metadata_store=SqlMetadataStore(session_factory),
        vector_store=PgVectorStore(session_factory),
    )


def build_pipeline(
    settings:      Settings,
    stores:        Collaborators,
    *,
    openai_client: AsyncOpenAI,
    classifier:    ErrorClassifier | None = None,
) -> IngestionPipeline:
    return IngestionPipeline(
        object_store=stores.object_store,
        metadata_store=stores.metadata_store,
        embedder=OpenAIEmbeddingClient(
            openai_client,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            timeout=settings.embedding_timeout,
        ),
        vector_store=stores.vector_store,
        classifier=classifier,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        max_file_size_bytes=settings.max_file_size_bytes,
    )


# ---------------------------------------------------------------------------
# Application lifespan — startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info(
        "Starting RagTime | env=%s bucket=%s model=%s",
        settings.app_env, settings.s3_bucket, settings.embedding_model,
    )

    engine = create_engine(settings)
    session_factory = create_session_factory(engine)
    # Retries are the caller's decision (PipelineError.retryable)
    openai_client = AsyncOpenAI(
        api_key=settings.openai_api_key,
        timeout=settings.embedding_timeout,
        max_retries=0,
    )

    stores = build_collaborators(
        settings, session_factory=session_factory, aws_session=aioboto3.Session(),
    )
    app.state.engine         = engine
    app.state.metadata_store = stores.metadata_store
    app.state.pipeline       = build_pipeline(
        settings, stores, openai_client=openai_client, classifier=app.state.classifier,
    )
    app.state.documents      = DocumentService(
        metadata_store=stores.metadata_store,
        object_store=stores.object_store,
        vector_store=stores.vector_store,
        classifier=app.state.classifier,
    )

    try:
        yield
    finally:
        logger.info("Shutting down RagTime")
        await openai_client.close()
        await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="RagTime Document Ingestion",
        description="Stores, chunks, embeds and indexes tenant documents for retrieval.",
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.settings   = settings
    app.state.classifier = ErrorClassifier()

    # ----------------------------------------------------------------
    # Correlation id + request logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def correlation_and_logging(request: Request, call_next):
        cid = extract_correlation_id(request.headers) or new_correlation_id(AUTO_PREFIX)
        request.state.correlation_id = cid
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers[CORRELATION_HEADER] = cid

        logger.info(
            "HTTP %s %s %d %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={"correlation_id": cid},
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers — uniform structured error responses
    # ----------------------------------------------------------------

    def _context(request: Request, operation: str | None = None) -> ErrorContext:
        return ErrorContext(
            operation=operation or f"{request.method} {request.url.path}",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
        return error_response(exc, include_details=settings.include_error_details)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = [
            {"field": ".".join(str(loc) for loc in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        message = problems[0]["message"] if problems else "Request validation failed"
        error = validation_error(
            message, _context(request, "validate_request"), {"errors": problems}, user_message=message,
        )
        return error_response(error, include_details=settings.include_error_details)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        classifier: ErrorClassifier = app.state.classifier
        error = classifier.classify(exc, _context(request))
        classifier.log_error(error)
        return error_response(error, include_details=settings.include_error_details)

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (used by load balancer)
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], summary="Liveness check")
    async def health() -> dict:
        return {"status": "ok", "service": "ragtime"}

    @app.get("/health/ready", tags=["Operations"], summary="Readiness check")
    async def readiness(request: Request) -> JSONResponse:
        engine = getattr(request.app.state, "engine", None)
        if engine is None:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": {"status": "not_configured"}},
            )
        db_status = await check_db_health(engine)
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "ragtime.main:app",
        host="0.0.0.0",
        port=8000,
        reload=_settings.app_env == "development",
        log_level="debug" if _settings.debug else "info",
        access_log=True,
    )
