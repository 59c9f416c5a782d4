"""
Hierarchical Context Cache

Stores conversation state per session. Small contexts are written as one
entry; contexts whose estimated size exceeds the token budget are split
into chunks plus a metadata record:

    session:{id}:full
    session:{id}:chunk:{n}
    session:{id}:chunks:meta   {count, created_at, kind, envelope}

A session has exactly one representation at a time. Every store() writes
the new representation and then deletes whatever the previous one left
behind. If a chunk expires on its own, get() returns what remains with
is_partial set instead of failing.
"""

import asyncio
import json
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from core.exceptions import CacheBackendError, ProviderUnavailableError
from .kv_store import KeyValueStore
from .providers import with_deadline

logger = logging.getLogger("deepsearch.context_cache")

KIND_MESSAGES = "messages"
KIND_TEXT = "text"


class TokenEstimator(Protocol):
    def estimate(self, text: str) -> int:
        ...


class CharRatioEstimator:
    """Crude token estimate: one token per N characters, rounded up"""

    def __init__(self, chars_per_token: int = 4):
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self.chars_per_token = chars_per_token

    def estimate(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token)


def full_key(session_id: str) -> str:
    return f"session:{session_id}:full"


def chunk_key(session_id: str, index: int) -> str:
    return f"session:{session_id}:chunk:{index}"


def meta_key(session_id: str) -> str:
    return f"session:{session_id}:chunks:meta"


class ContextCache:
    """
    Session context cache over two injected key-value stores.

    Full entries and chunked entries live in separate stores so each can
    carry its own TTL (chunked entries default to twice the full TTL).
    """

    def __init__(
        self,
        full_store: KeyValueStore,
        chunk_store: Optional[KeyValueStore] = None,
        max_context_tokens: int = 32768,
        chunk_target_tokens: int = 8000,
        estimator: Optional[TokenEstimator] = None,
        full_ttl: int = 3600,
        chunk_ttl: Optional[int] = None,
        text_chunk_chars: Optional[int] = None,
        backend_timeout: Optional[float] = 5.0
    ):
        self.full_store = full_store
        self.chunk_store = chunk_store or full_store
        self.max_context_tokens = max_context_tokens
        self.chunk_target_tokens = chunk_target_tokens
        self.estimator = estimator or CharRatioEstimator()
        self.full_ttl = full_ttl
        self.chunk_ttl = chunk_ttl if chunk_ttl is not None else full_ttl * 2
        self.text_chunk_chars = text_chunk_chars or chunk_target_tokens * 4
        self.backend_timeout = backend_timeout
        self._sessions: Dict[str, Dict[str, Any]] = {}

    async def _call(self, awaitable):
        return await with_deadline(awaitable, self.backend_timeout, "cache")

    @staticmethod
    def _serialize(context: Any) -> str:
        return json.dumps(context, ensure_ascii=False, default=str)

    # =========================================================================
    # Store
    # =========================================================================

    async def store(self, session_id: str, context: Any, ttl: Optional[int] = None) -> bool:
        """
        Store a session context, replacing any previous representation.

        Returns:
            True on success, False if the backend failed
        """
        serialized = self._serialize(context)
        tokens = self.estimator.estimate(serialized)

        try:
            previous_chunks = await self._previous_chunk_count(session_id)

            if tokens <= self.max_context_tokens:
                full_ttl = ttl if ttl is not None else self.full_ttl
                await self._call(self.full_store.set(full_key(session_id), context, full_ttl))
                await self._delete_chunks(session_id, 0, previous_chunks, include_meta=True)
                representation, chunk_count = "full", 0
            else:
                kind, chunks, envelope = self._chunk(context, serialized)
                chunk_ttl = ttl if ttl is not None else self.chunk_ttl
                # No meta may exist while chunks are being rewritten
                await self._call(self.chunk_store.delete(meta_key(session_id)))
                for index, chunk in enumerate(chunks):
                    await self._call(self.chunk_store.set(chunk_key(session_id, index), chunk, chunk_ttl))
                await self._call(self.chunk_store.set(
                    meta_key(session_id),
                    {
                        "count": len(chunks),
                        "created_at": datetime.now(timezone.utc).isoformat(),
                        "kind": kind,
                        "envelope": envelope,
                        "token_estimate": tokens,
                    },
                    chunk_ttl
                ))
                await self._delete_chunks(session_id, len(chunks), previous_chunks, include_meta=False)
                await self._call(self.full_store.delete(full_key(session_id)))
                representation, chunk_count = "chunked", len(chunks)

        except (CacheBackendError, ProviderUnavailableError) as e:
            logger.error(f"Failed to store context for session {session_id}: {e}")
            return False

        self._sessions[session_id] = {
            "representation": representation,
            "chunk_count": chunk_count,
            "token_estimate": tokens,
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }
        logger.debug(f"Stored session {session_id} as {representation} (~{tokens} tokens, {chunk_count} chunks)")
        return True

    def _chunk(self, context: Any, serialized: str) -> Tuple[str, List[Dict[str, Any]], Dict[str, Any]]:
        """Split a context into chunk payloads. Returns (kind, chunks, envelope)."""
        if isinstance(context, dict) and isinstance(context.get("messages"), list):
            envelope = {k: v for k, v in context.items() if k != "messages"}
            chunks: List[Dict[str, Any]] = []
            current: List[Any] = []
            current_tokens = 0
            for message in context["messages"]:
                size = self.estimator.estimate(self._serialize(message))
                # An oversized message still forms its own chunk
                if current and current_tokens + size > self.chunk_target_tokens:
                    chunks.append({"index": len(chunks), "messages": current})
                    current, current_tokens = [], 0
                current.append(message)
                current_tokens += size
            if current or not chunks:
                chunks.append({"index": len(chunks), "messages": current})
            return KIND_MESSAGES, chunks, envelope

        step = max(1, self.text_chunk_chars)
        chunks = [
            {"index": n, "text": serialized[start:start + step]}
            for n, start in enumerate(range(0, len(serialized), step))
        ]
        return KIND_TEXT, chunks, {}

    async def _previous_chunk_count(self, session_id: str) -> int:
        known = self._sessions.get(session_id, {}).get("chunk_count", 0)
        meta = await self._call(self.chunk_store.get(meta_key(session_id)))
        stored = meta.get("count", 0) if isinstance(meta, dict) else 0
        return max(known, stored)

    async def _delete_chunks(self, session_id: str, start: int, end: int, include_meta: bool) -> None:
        keys = [chunk_key(session_id, i) for i in range(start, end)]
        if include_meta:
            keys.append(meta_key(session_id))
        if keys:
            await self._call(self.chunk_store.delete(*keys))

    # =========================================================================
    # Retrieve
    # =========================================================================

    async def get(self, session_id: str) -> Optional[Any]:
        """
        Retrieve a session context.

        Returns the exact stored context when every piece is present, a
        partial reconstruction flagged with is_partial when some chunks
        expired, or None when nothing is cached.
        """
        try:
            full = await self._call(self.full_store.get(full_key(session_id)))
            if full is not None:
                return full

            meta = await self._call(self.chunk_store.get(meta_key(session_id)))
            if not isinstance(meta, dict):
                return None

            count = int(meta.get("count", 0))
            chunks = await asyncio.gather(*(
                self._call(self.chunk_store.get(chunk_key(session_id, i)))
                for i in range(count)
            ))
        except (CacheBackendError, ProviderUnavailableError) as e:
            logger.error(f"Failed to read context for session {session_id}: {e}")
            return None

        present = [chunk for chunk in chunks if chunk is not None]
        missing = [i for i, chunk in enumerate(chunks) if chunk is None]
        if count and not present:
            logger.warning(f"All {count} chunks expired for session {session_id}")
            return None

        if meta.get("kind", KIND_MESSAGES) == KIND_MESSAGES:
            context = dict(meta.get("envelope") or {})
            context["messages"] = [m for chunk in present for m in chunk.get("messages", [])]
            if missing:
                context["is_partial"] = True
                context["missing_chunks"] = missing
                logger.warning(f"Partial context for session {session_id}: missing chunks {missing}")
            return context

        text = "".join(chunk.get("text", "") for chunk in present)
        if not missing:
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                logger.warning(f"Chunked text for session {session_id} did not reassemble into JSON")
        else:
            logger.warning(f"Partial context for session {session_id}: missing chunks {missing}")
        return {"content": text, "is_partial": True, "missing_chunks": missing}

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def clear(self, session_id: str) -> bool:
        """Remove every representation of a session"""
        try:
            previous_chunks = await self._previous_chunk_count(session_id)
            await self._call(self.full_store.delete(full_key(session_id)))
            await self._delete_chunks(session_id, 0, previous_chunks, include_meta=True)
        except (CacheBackendError, ProviderUnavailableError) as e:
            logger.error(f"Failed to clear session {session_id}: {e}")
            return False
        self._sessions.pop(session_id, None)
        logger.info(f"Cleared cached context for session {session_id}")
        return True

    def session_info(self, session_id: str) -> Optional[Dict[str, Any]]:
        info = self._sessions.get(session_id)
        return dict(info) if info else None

    async def stats(self) -> Dict[str, Any]:
        full_stats = await self.full_store.stats()
        chunk_stats = full_stats if self.chunk_store is self.full_store else await self.chunk_store.stats()
        return {
            "full_cache": full_stats,
            "chunked_cache": chunk_stats,
            "session_count": len(self._sessions),
        }

    async def close(self) -> None:
        await self.full_store.close()
        if self.chunk_store is not self.full_store:
            await self.chunk_store.close()
