"""
Deep Search API Router

REST endpoints for web-search answers and cached conversation sessions.

Endpoints:
- POST /api/v1/search - Answer a query with search, analysis and citations
- POST /api/v1/sessions - Start a conversation session
- GET /api/v1/sessions/{session_id} - Session summary
- DELETE /api/v1/sessions/{session_id} - Forget a session and its cached context
- POST /api/v1/sessions/{session_id}/messages - Send a message in a session
- GET /api/v1/sessions/{session_id}/history - Cached message history
- GET /api/v1/metrics/cache - Context cache statistics
- GET /api/v1/metrics/analysis - Multi-pass analysis metrics
- GET /api/v1/health - Service health

Services are created in the application lifespan and read from app.state.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request

from core.exceptions import AppException, ErrorCode, NotFoundError, ValidationError
from deepsearch.context_cache import ContextCache
from deepsearch.conversation import ConversationService
from deepsearch.models import MessageRequest, SearchRequest
from deepsearch.orchestrator import SearchPipeline

logger = logging.getLogger("api.search")

router = APIRouter(prefix="/api/v1", tags=["deepsearch"])

MIN_QUERY_LENGTH = 2
API_VERSION = "1.0.0"


def get_pipeline(request: Request) -> SearchPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise AppException(ErrorCode.SERVICE_UNAVAILABLE, "Search pipeline is not initialized", status_code=503)
    return pipeline


def get_cache(request: Request) -> ContextCache:
    cache = getattr(request.app.state, "context_cache", None)
    if cache is None:
        raise AppException(ErrorCode.SERVICE_UNAVAILABLE, "Context cache is not initialized", status_code=503)
    return cache


def get_conversation(request: Request) -> ConversationService:
    conversation = getattr(request.app.state, "conversation", None)
    if conversation is None:
        raise AppException(ErrorCode.SERVICE_UNAVAILABLE, "Conversation service is not initialized", status_code=503)
    return conversation


def _meta(**extra) -> Dict[str, Any]:
    return {"timestamp": datetime.now(timezone.utc).isoformat(), "version": API_VERSION, **extra}


def _check_text(value: str, field: str) -> str:
    value = value.strip()
    if len(value) < MIN_QUERY_LENGTH:
        raise ValidationError(
            f"{field} must be at least {MIN_QUERY_LENGTH} characters",
            field=field,
            code=ErrorCode.QUERY_TOO_SHORT
        )
    return value


# =============================================================================
# Search
# =============================================================================

@router.post("/search")
async def search(
    request: SearchRequest,
    pipeline: SearchPipeline = Depends(get_pipeline)
) -> Dict[str, Any]:
    """
    Answer a query with web search.

    The response always carries the full answer shape. A fatal pipeline
    failure is reported with success=false and an ERR_4012 entry, while
    data still holds the error-shaped answer and its trace.
    """
    query = _check_text(request.query, "query")
    answer = await pipeline.answer_with_search(query, session_id=request.session_id)

    errors: List[Dict[str, Any]] = []
    if answer.is_error:
        message = answer.thinking_process.steps[-1].content if answer.thinking_process.steps else answer.text
        logger.warning(f"Search request {answer.request_id} failed: {message}")
        errors.append({"code": ErrorCode.PIPELINE_FATAL.value, "message": message})

    return {
        "success": not answer.is_error,
        "data": answer.model_dump(mode="json"),
        "meta": _meta(
            request_id=answer.request_id,
            citation_count=len(answer.citations),
            result_count=len(answer.search_results),
        ),
        "errors": errors,
    }


# =============================================================================
# Sessions
# =============================================================================

@router.post("/sessions")
async def start_session(
    session_id: Optional[str] = Query(default=None, description="Reuse a client-chosen id"),
    conversation: ConversationService = Depends(get_conversation)
) -> Dict[str, Any]:
    """Start a conversation session"""
    new_id = conversation.start_session(session_id)
    return {"success": True, "data": {"session_id": new_id}, "meta": _meta()}


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    conversation: ConversationService = Depends(get_conversation)
) -> Dict[str, Any]:
    info = await conversation.get_session(session_id)
    if info is None:
        raise NotFoundError("Session", session_id, code=ErrorCode.SESSION_NOT_FOUND)
    return {"success": True, "data": info, "meta": _meta()}


@router.delete("/sessions/{session_id}")
async def delete_session(
    session_id: str,
    conversation: ConversationService = Depends(get_conversation)
) -> Dict[str, Any]:
    """Forget a session and delete every cached representation of it"""
    existed = await conversation.clear_session(session_id)
    if not existed:
        raise NotFoundError("Session", session_id, code=ErrorCode.SESSION_NOT_FOUND)
    return {"success": True, "data": {"session_id": session_id, "cleared": True}, "meta": _meta()}


@router.post("/sessions/{session_id}/messages")
async def send_message(
    session_id: str,
    request: MessageRequest,
    conversation: ConversationService = Depends(get_conversation)
) -> Dict[str, Any]:
    """
    Send a message in a session.

    enable_search forces search on or off; when omitted the message is
    searched if it looks like a question.
    """
    message = _check_text(request.message, "message")
    reply = await conversation.send_message(session_id, message, enable_search=request.enable_search)
    return {
        "success": not reply["is_error"],
        "data": reply,
        "meta": _meta(session_id=session_id),
    }


@router.get("/sessions/{session_id}/history")
async def get_history(
    session_id: str,
    conversation: ConversationService = Depends(get_conversation)
) -> Dict[str, Any]:
    history = await conversation.get_history(session_id)
    if history is None:
        raise NotFoundError("Session", session_id, code=ErrorCode.SESSION_NOT_FOUND)
    return {
        "success": True,
        "data": {"session_id": session_id, "messages": history},
        "meta": _meta(message_count=len(history)),
    }


# =============================================================================
# Metrics & Health
# =============================================================================

@router.get("/metrics/cache")
async def cache_metrics(cache: ContextCache = Depends(get_cache)) -> Dict[str, Any]:
    """Hit/miss/expiry counters for the full and chunked context stores"""
    return {"success": True, "data": await cache.stats(), "meta": _meta()}


@router.get("/metrics/analysis")
async def analysis_metrics(
    request_id: Optional[str] = Query(default=None, description="Return a single run"),
    limit: int = Query(default=20, ge=1, le=200),
    pipeline: SearchPipeline = Depends(get_pipeline)
) -> Dict[str, Any]:
    """Timing and completion of recent multi-pass analyses"""
    registry = pipeline.metrics
    if request_id:
        entry = registry.get(request_id)
        if entry is None:
            raise NotFoundError("Analysis run", request_id)
        return {"success": True, "data": entry.to_dict(), "meta": _meta()}

    return {
        "success": True,
        "data": {
            "summary": registry.summary(),
            "recent": [entry.to_dict() for entry in registry.all()[-limit:]],
        },
        "meta": _meta(),
    }


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    """Which components are initialized and which backends they use"""
    state = request.app.state
    pipeline: Optional[SearchPipeline] = getattr(state, "pipeline", None)
    cache: Optional[ContextCache] = getattr(state, "context_cache", None)

    components = {
        "pipeline": {
            "status": "healthy" if pipeline else "unavailable",
            "completion_provider": pipeline.completion_provider.name if pipeline else None,
            "search_provider": pipeline.search_provider.name if pipeline else None,
        },
        "context_cache": {
            "status": "healthy" if cache else "unavailable",
            "backend": cache.full_store.name if cache else None,
        },
        "conversation": {
            "status": "healthy" if getattr(state, "conversation", None) else "unavailable",
        },
    }
    healthy = all(c["status"] == "healthy" for c in components.values())
    return {
        "success": True,
        "data": {"status": "healthy" if healthy else "degraded", "components": components},
        "meta": _meta(),
    }
