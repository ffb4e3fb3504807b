"""Application factory and CLI entry point.

``create_app()`` builds the FastAPI application with:
  - Lifespan handler that loads the role catalog and builds the pipeline once
  - CORS middleware
  - Global exception handlers (SDK errors → 404/409/422/502/503)
  - All API routes mounted under ``/api/v1``
  - A ``/health`` endpoint for readiness checks

The ``cli()`` function is the ``radiance-server`` console-script entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from radiance_db.engine import dispose_engine, ping
from radiance_pipeline.errors import (
    PersistenceError,
    PreconditionError,
    UpstreamError,
    ValidationError,
)
from radiance_pipeline.interfaces import CompletionClient, SessionStore
from radiance_pipeline.llm import build_client
from radiance_pipeline.normalizer import StubTextExtractor
from radiance_pipeline.pipeline import DiagnosisPipeline
from radiance_pipeline.prompt import PromptManager
from radiance_pipeline.roles import RoleCatalog
from radiance_pipeline.stages import build_processors
from radiance_pipeline.store import DatabaseSessionStore, InMemorySessionStore

from radiance_server.config import STORAGE_MEMORY, ServerSettings, load_settings
from radiance_server.errors import (
    generic_error_handler,
    persistence_error_handler,
    precondition_error_handler,
    upstream_error_handler,
    validation_error_handler,
    value_error_handler,
)
from radiance_server.routes import register_routes

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Lifespan — runs once at startup/shutdown
# ------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Initialise shared resources at startup, tear down on shutdown.

    Startup:
      1. Load the role catalog from YAML
      2. Build the completion client (demo client when no API key is set),
         the stage processors and the session store
      3. Build ``DiagnosisPipeline`` and stash everything on ``app.state``

    Shutdown:
      1. Dispose the database engine's connection pool
    """
    settings: ServerSettings = app.state.settings

    # --- Load roles ---
    catalog = RoleCatalog().load()
    logger.info("RoleCatalog loaded successfully")

    # --- Build pipeline ---
    client: CompletionClient = app.state.completion_client or build_client(
        settings.api_key,
        catalog=catalog,
        base_url=settings.api_base_url,
        timeout=settings.llm_timeout,
    )
    processors = build_processors(
        client, catalog, PromptManager(), timeout=settings.llm_timeout,
    )

    store: SessionStore
    if settings.storage_backend == STORAGE_MEMORY:
        store = InMemorySessionStore()
        logger.warning("Using in-memory session storage; sessions are not durable")
    else:
        store = DatabaseSessionStore()

    pipeline = DiagnosisPipeline(
        store, processors, settle_delay=settings.stream_settle_seconds,
    )

    app.state.catalog = catalog
    app.state.processors = processors
    app.state.pipeline = pipeline
    app.state.extractor = StubTextExtractor()

    yield

    # --- Shutdown ---
    if settings.storage_backend != STORAGE_MEMORY:
        await dispose_engine()
        logger.info("Database engine disposed")


# ------------------------------------------------------------------
# Factory
# ------------------------------------------------------------------

def create_app(
    settings: ServerSettings | None = None,
    *,
    completion_client: CompletionClient | None = None,
) -> FastAPI:
    """Build and return the configured FastAPI application.

    ``completion_client`` replaces the client derived from settings
    (tests pass scripted clients).
    """
    if settings is None:
        settings = load_settings()

    # --- Configure logging ---
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app = FastAPI(
        title="Radiance API Server",
        description="REST API for the Radiance chain-diagnosis pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store settings so the lifespan handler can read them
    app.state.settings = settings
    app.state.completion_client = completion_client

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Exception handlers ---
    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(PreconditionError, precondition_error_handler)
    app.add_exception_handler(UpstreamError, upstream_error_handler)
    app.add_exception_handler(PersistenceError, persistence_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(Exception, generic_error_handler)

    # --- Health check (outside /api/v1 prefix) ---
    @app.get("/health")
    async def health() -> dict:
        """Readiness check — verifies DB connectivity when the DB backs sessions."""
        if settings.storage_backend == STORAGE_MEMORY:
            return {"status": "ok", "storage": STORAGE_MEMORY}
        try:
            await ping()
            return {"status": "ok", "storage": settings.storage_backend}
        except Exception as exc:
            logger.error("Health check failed: %s", exc)
            return {"status": "error", "detail": "Database unreachable"}

    # --- Mount all API routes ---
    register_routes(app)

    return app


# ------------------------------------------------------------------
# Module-level ASGI export (for uvicorn radiance_server.app:app)
# ------------------------------------------------------------------
app = create_app()


# ------------------------------------------------------------------
# CLI entry point
# ------------------------------------------------------------------

def cli() -> None:
    """Console-script entry point: ``radiance-server``."""
    import uvicorn

    settings = load_settings()
    uvicorn.run(
        "radiance_server.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False,
    )
