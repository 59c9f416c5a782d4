"""
Deep Search Server Main Application
FastAPI server answering questions from live web search with cited synthesis
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Import configuration and setup
from config import settings, setup_logging
from core.exceptions import AppException, CacheBackendError
from deepsearch.analyzer import AnalysisMetricsRegistry
from deepsearch.context_cache import CharRatioEstimator, ContextCache
from deepsearch.conversation import ConversationService
from deepsearch.kv_store import InMemoryTTLStore, KeyValueStore, RedisKeyValueStore, build_store
from deepsearch.orchestrator import SearchPipeline

# Import API routers
from api.search import router as search_router

# Configure logging
setup_logging()
logger = logging.getLogger("deepsearch_server")

VERSION = "1.0.0"


async def _open_store(ttl: int) -> KeyValueStore:
    """Build the configured store; an unreachable Redis degrades to process memory"""
    store = build_store(settings, ttl)
    if isinstance(store, RedisKeyValueStore):
        try:
            await store.connect()
        except CacheBackendError as e:
            logger.warning(f"Redis unavailable, using in-memory context cache: {e.message}")
            await store.close()
            store = InMemoryTTLStore(default_ttl=ttl, check_period=settings.check_period)
    if isinstance(store, InMemoryTTLStore):
        store.start_sweeper()
    return store


# Lifespan event handler for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan events
    """
    # Startup
    logger.info("Starting Deep Search Server")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Completion backend: {settings.llm_backend}, search backend: {settings.search_backend}")

    pipeline = None
    cache = None
    try:
        pipeline = SearchPipeline.from_settings(
            settings,
            metrics=AnalysisMetricsRegistry(settings.metrics_history_size)
        )

        full_store = await _open_store(settings.cache_ttl)
        chunk_store = await _open_store(settings.chunk_cache_ttl)
        cache = ContextCache(
            full_store,
            chunk_store,
            max_context_tokens=settings.max_context_tokens,
            chunk_target_tokens=settings.chunk_target_tokens,
            estimator=CharRatioEstimator(settings.chars_per_token),
            full_ttl=settings.cache_ttl,
            chunk_ttl=settings.chunk_cache_ttl,
            text_chunk_chars=settings.chunk_target_tokens * settings.chars_per_token,
            backend_timeout=settings.cache_timeout
        )
        logger.info(f"Context cache ready ({full_store.name}, budget {settings.max_context_tokens} tokens)")

        app.state.pipeline = pipeline
        app.state.context_cache = cache
        app.state.conversation = ConversationService(
            pipeline,
            cache,
            completion_timeout=settings.completion_timeout,
            model=settings.synthesis_model
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise
    finally:
        # Shutdown
        logger.info("Shutting down Deep Search Server")
        if pipeline is not None:
            await pipeline.close()
        if cache is not None:
            await cache.close()
        logger.info("Provider clients and cache connections closed")


# Create FastAPI application
app = FastAPI(
    title="Deep Search Server",
    description="Planned web search, multi-pass analysis and cited answers",
    version=VERSION,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

# Add middleware
if settings.enable_cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Tag every request with an id for error envelopes and logs"""
    request.state.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    response = await call_next(request)
    response.headers["X-Request-ID"] = request.state.request_id
    return response


# Include API routers
app.include_router(search_router)


# Root endpoint
@app.get("/")
async def root():
    """Basic service information"""
    return {
        "service": "Deep Search Server",
        "version": VERSION,
        "environment": settings.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "health": "/api/v1/health",
    }


# =============================================================================
# Exception Handlers - Unified Response Format
# =============================================================================

@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    """
    Handle all AppException instances with unified response format.

    Response format:
    {
        "success": false,
        "data": null,
        "meta": {"timestamp": "...", "request_id": "...", "path": "..."},
        "errors": [{"code": "ERR_xxxx", "message": "...", "details": {...}}]
    }
    """
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "data": None,
            "meta": {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "request_id": getattr(request.state, "request_id", None),
                "path": str(request.url.path)
            },
            "errors": [exc.to_dict()]
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unhandled errors.

    Logs the error and returns unified error response format.
    """
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    error_details = {"type": type(exc).__name__}
    if settings.debug:
        error_details["detail"] = str(exc)

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "data": None,
            "meta": {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "request_id": getattr(request.state, "request_id", None),
                "path": str(request.url.path)
            },
            "errors": [{
                "code": "ERR_9001",
                "message": "An unexpected error occurred" if not settings.debug else str(exc),
                "details": error_details
            }]
        }
    )


if __name__ == "__main__":
    # Run the server
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info" if not settings.debug else "debug",
        access_log=True
    )
