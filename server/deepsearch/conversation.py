"""
Conversation Service

Multi-turn sessions on top of the context cache and the search pipeline.
Each exchange reads the cached context first, answers either through the
search pipeline or with a plain completion over recent history, then
writes the updated {messages: [...]} context back to the cache.
"""

import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.exceptions import ProviderUnavailableError
from .context_cache import ContextCache
from .orchestrator import SearchPipeline
from .prompts import conversation_prompt
from .providers import CompletionGateway, CompletionProvider
from .synthesizer import split_thinking

logger = logging.getLogger("deepsearch.conversation")

SEARCH_INDICATORS = (
    "search for",
    "find information",
    "look up",
    "tell me about",
    "what is",
    "who is",
    "when did",
    "where is",
    "how to",
    "why does",
)


def is_search_query(message: str) -> bool:
    """Heuristic: does this message look like it needs a web search?"""
    lowered = message.strip().lower()
    return (
        any(indicator in lowered for indicator in SEARCH_INDICATORS)
        or "?" in lowered
        or lowered.startswith("/search")
        or lowered.startswith("search:")
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConversationService:
    """
    Session-scoped chat with optional web search.

    Session bookkeeping (created/last active, recent analysis summaries)
    is process-local. Message history lives in the context cache so it
    follows the cache backend's TTLs.
    """

    def __init__(
        self,
        pipeline: SearchPipeline,
        cache: ContextCache,
        completion_provider: Optional[CompletionProvider] = None,
        completion_timeout: Optional[float] = 60.0,
        model: Optional[str] = None,
        history_turns: int = 20,
        max_analysis_results: int = 10
    ):
        self.pipeline = pipeline
        self.cache = cache
        self.completion_provider = completion_provider or pipeline.completion_provider
        self.completion_timeout = completion_timeout
        self.model = model
        self.history_turns = history_turns
        self.max_analysis_results = max_analysis_results
        self._sessions: Dict[str, Dict[str, Any]] = {}

    def start_session(self, session_id: Optional[str] = None) -> str:
        session_id = session_id or f"session_{uuid.uuid4().hex[:16]}"
        if session_id not in self._sessions:
            self._sessions[session_id] = {
                "created_at": _now(),
                "last_active": _now(),
                "analysis_results": deque(maxlen=self.max_analysis_results),
            }
            logger.info(f"Started session {session_id}")
        return session_id

    async def session_exists(self, session_id: str) -> bool:
        if session_id in self._sessions:
            return True
        return await self.cache.get(session_id) is not None

    async def send_message(
        self,
        session_id: str,
        message: str,
        enable_search: Optional[bool] = None
    ) -> Dict[str, Any]:
        """
        Handle one user message in a session.

        Args:
            session_id: Session identifier; unknown sessions are created
            message: The user's message
            enable_search: True/False forces search on/off, None uses is_search_query

        Returns:
            Dict with text, used_search, citations, search_results,
            thinking_process, is_error and context flags
        """
        self.start_session(session_id)
        session = self._sessions[session_id]
        session["last_active"] = _now()

        context = await self.cache.get(session_id)
        context_partial = bool(isinstance(context, dict) and context.get("is_partial"))
        messages: List[Dict[str, Any]] = []
        if isinstance(context, dict) and isinstance(context.get("messages"), list):
            messages = list(context["messages"])
        if context_partial:
            logger.warning(f"Session {session_id} continues from partial context ({len(messages)} messages)")

        use_search = is_search_query(message) if enable_search is None else enable_search
        history = messages[-self.history_turns:]
        messages.append({"role": "user", "content": message, "timestamp": _now()})

        reply: Dict[str, Any] = {
            "citations": [],
            "search_results": [],
            "thinking_process": None,
            "is_error": False,
        }

        if use_search:
            answer = await self.pipeline.answer_with_search(message, session_id=session_id)
            text = answer.text
            reply.update(
                citations=[c.model_dump(mode="json") for c in answer.citations],
                search_results=[r.model_dump(mode="json") for r in answer.search_results],
                thinking_process=answer.thinking_process.model_dump(mode="json"),
                is_error=answer.is_error,
            )
            if answer.analysis is not None:
                session["analysis_results"].append({
                    "query": message,
                    "request_id": answer.request_id,
                    "timestamp": _now(),
                    "passes_completed": answer.analysis.meta.passes_completed,
                    "unresolved_conflicts": len(answer.analysis.unresolved_conflicts),
                    "confidence_score": answer.thinking_process.confidence_score,
                })
        else:
            llm = CompletionGateway(self.completion_provider, timeout=self.completion_timeout)
            try:
                raw = await llm.complete(conversation_prompt(history, message), model=self.model, stage="conversation")
            except ProviderUnavailableError as e:
                logger.error(f"Conversation reply failed for session {session_id}: {e.message}")
                text = "I could not reach the language model just now. Please try again in a moment."
                reply["is_error"] = True
            else:
                thinking, text = split_thinking(raw.strip())
                if thinking:
                    reply["thinking_process"] = {"steps": thinking}

        messages.append({
            "role": "assistant",
            "content": text,
            "timestamp": _now(),
            "used_search": use_search,
            "citations": [c["url"] for c in reply["citations"]],
        })

        stored = await self.cache.store(session_id, {
            "session_id": session_id,
            "messages": messages,
            "updated_at": _now(),
        })
        if not stored:
            logger.warning(f"Context for session {session_id} was not cached")

        return {
            "session_id": session_id,
            "text": text,
            "used_search": use_search,
            "context_partial": context_partial,
            "context_stored": stored,
            **reply,
        }

    async def get_history(self, session_id: str) -> Optional[List[Dict[str, Any]]]:
        """Cached messages for a session, or None for an unknown session"""
        context = await self.cache.get(session_id)
        if isinstance(context, dict) and isinstance(context.get("messages"), list):
            return context["messages"]
        return [] if session_id in self._sessions else None

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        session = self._sessions.get(session_id)
        history = await self.get_history(session_id)
        if session is None and history is None:
            return None
        session = session or {}
        return {
            "session_id": session_id,
            "created_at": session.get("created_at"),
            "last_active": session.get("last_active"),
            "message_count": len(history or []),
            "cache": self.cache.session_info(session_id),
            "analysis_results": list(session.get("analysis_results", [])),
        }

    async def clear_session(self, session_id: str) -> bool:
        """Forget a session. Returns False if it was unknown."""
        existed = await self.session_exists(session_id)
        await self.cache.clear(session_id)
        self._sessions.pop(session_id, None)
        return existed
