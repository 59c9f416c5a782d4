"""
Provider clients for the Deep Search pipeline

Two external collaborators are consumed through small interfaces:
- SearchProvider: search(query) -> List[RawResult]; may return [] or raise
- CompletionProvider: complete(prompt) -> str; output is untrusted text

Concrete clients talk HTTP via a shared httpx.AsyncClient:
- OllamaCompletionProvider  (/api/generate)
- GeminiCompletionProvider  (v1beta generateContent REST endpoint)
- CompanionSearchProvider   (scraping search backend, /api/enhanced-search)
- SearXNGSearchProvider     (self-hosted metasearch JSON API)

Every call made by the pipeline goes through with_deadline() so a hung
provider surfaces as ProviderTimeoutError instead of stalling the query.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, TypeVar
from urllib.parse import urlparse

import httpx

from core.exceptions import ProviderTimeoutError, ProviderUnavailableError
from .models import EnrichedContent, RawResult

logger = logging.getLogger("deepsearch.providers")

T = TypeVar("T")


async def with_deadline(awaitable: Awaitable[T], timeout: Optional[float], service: str) -> T:
    """
    Await a provider call with a deadline.

    Raises ProviderTimeoutError when the deadline passes. Cancellation of
    the caller propagates unchanged.
    """
    if timeout is None or timeout <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning(f"{service} call exceeded {timeout}s deadline")
        raise ProviderTimeoutError(service, timeout_seconds=timeout) from e


def hostname(url: str) -> str:
    """Host part of a URL without the www. prefix"""
    try:
        return urlparse(url).netloc.replace("www.", "")
    except ValueError:
        return ""


class _HTTPProvider:
    """Shared httpx client handling for provider implementations"""

    def __init__(self, timeout: float = 60.0):
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20)
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


# =============================================================================
# Completion providers
# =============================================================================

class CompletionProvider(ABC):
    """Base class for text-completion providers"""

    name: str = "completion"

    @abstractmethod
    async def complete(self, prompt: str, model: Optional[str] = None) -> str:
        """Return generated text for the prompt. Must be implemented by subclasses."""
        pass

    async def close(self) -> None:
        pass


class OllamaCompletionProvider(_HTTPProvider, CompletionProvider):
    """Local Ollama server via the non-streaming /api/generate endpoint"""

    name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "qwen3:8b",
        temperature: float = 0.3,
        num_predict: int = 2048,
        timeout: float = 120.0
    ):
        super().__init__(timeout=timeout)
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.num_predict = num_predict

    async def complete(self, prompt: str, model: Optional[str] = None) -> str:
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}/api/generate",
                json={
                    "model": model or self.model,
                    "prompt": prompt,
                    "stream": False,
                    "options": {
                        "temperature": self.temperature,
                        "num_predict": self.num_predict
                    }
                }
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(self.name, str(e) or type(e).__name__) from e
        except ValueError as e:
            raise ProviderUnavailableError(self.name, f"invalid response body: {e}") from e

        return data.get("response", "") or ""


class GeminiCompletionProvider(_HTTPProvider, CompletionProvider):
    """Google generative-language REST API (generateContent)"""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash",
        base_url: str = "https://generativelanguage.googleapis.com",
        temperature: float = 0.3,
        timeout: float = 120.0
    ):
        super().__init__(timeout=timeout)
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature

    async def complete(self, prompt: str, model: Optional[str] = None) -> str:
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}/v1beta/models/{model or self.model}:generateContent",
                params={"key": self.api_key},
                json={
                    "contents": [{"role": "user", "parts": [{"text": prompt}]}],
                    "generationConfig": {"temperature": self.temperature}
                }
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(self.name, str(e) or type(e).__name__) from e
        except ValueError as e:
            raise ProviderUnavailableError(self.name, f"invalid response body: {e}") from e

        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


class CompletionGateway:
    """
    Per-request wrapper around a CompletionProvider.

    Applies the completion deadline and counts outcomes, which the pipeline
    uses to tell a degraded run apart from a run where the provider was
    never reachable.
    """

    def __init__(self, provider: CompletionProvider, timeout: Optional[float] = 60.0):
        self.provider = provider
        self.timeout = timeout
        self.calls = 0
        self.successes = 0
        self.failures = 0
        self.last_error: Optional[str] = None

    async def complete(self, prompt: str, model: Optional[str] = None, stage: str = "") -> str:
        self.calls += 1
        start = time.time()
        try:
            text = await with_deadline(
                self.provider.complete(prompt, model=model),
                self.timeout,
                self.provider.name,
            )
        except Exception as e:
            self.failures += 1
            self.last_error = str(e)
            logger.warning(f"Completion failed ({stage or 'unnamed'}): {e}")
            raise
        self.successes += 1
        logger.debug(
            f"Completion ok ({stage or 'unnamed'}): {len(text)} chars "
            f"in {(time.time() - start) * 1000:.0f}ms"
        )
        return text

    @property
    def unreachable(self) -> bool:
        """True when every call so far failed"""
        return self.calls > 0 and self.successes == 0


# =============================================================================
# Search providers
# =============================================================================

class SearchProvider(ABC):
    """Base class for search providers"""

    name: str = "search"

    @abstractmethod
    async def search(self, query: str, max_results: int = 10) -> List[RawResult]:
        """Search for the query and return results. Must be implemented by subclasses."""
        pass

    async def close(self) -> None:
        pass


class CompanionSearchProvider(_HTTPProvider, SearchProvider):
    """
    Companion scraping search backend.

    The enhanced endpoint returns plain results plus an enhancedResults list
    carrying scraped page content (summary, extracted dates, metadata) for
    the first few hits. That content is attached to the matching result by url.
    """

    name = "companion"

    def __init__(
        self,
        base_url: str = "http://localhost:3001",
        fetch_content: bool = True,
        max_content_results: int = 3,
        timeout: float = 30.0
    ):
        super().__init__(timeout=timeout)
        self.base_url = base_url.rstrip("/")
        self.fetch_content = fetch_content
        self.max_content_results = max_content_results

    async def search(self, query: str, max_results: int = 10) -> List[RawResult]:
        client = await self._get_client()
        if self.fetch_content:
            url = f"{self.base_url}/api/enhanced-search"
            payload: Dict[str, Any] = {
                "query": query,
                "options": {
                    "fetchContent": True,
                    "maxContentResults": self.max_content_results,
                    "depth": "moderate"
                }
            }
        else:
            url = f"{self.base_url}/api/search"
            payload = {"query": query}

        try:
            response = await client.post(url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(self.name, str(e) or type(e).__name__) from e
        except ValueError as e:
            raise ProviderUnavailableError(self.name, f"invalid response body: {e}") from e

        items = data.get("results") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise ProviderUnavailableError(self.name, "invalid response format from search API")

        enhanced = {
            entry.get("url"): entry.get("enhancedContent")
            for entry in data.get("enhancedResults") or []
            if isinstance(entry, dict) and entry.get("enhancedContent")
        }

        now = datetime.now(timezone.utc).isoformat()
        results = []
        for item in items[:max_results]:
            if not isinstance(item, dict) or not item.get("url"):
                continue
            result_url = item["url"]
            enriched = enhanced.get(result_url)
            results.append(RawResult(
                title=item.get("title", ""),
                url=result_url,
                snippet=item.get("snippet", "") or "",
                relevance_score=float(item.get("relevanceScore") or 0.5),
                source=hostname(result_url),
                timestamp=now,
                enriched_content=EnrichedContent.model_validate(enriched) if enriched else None
            ))

        logger.info(f"Companion search returned {len(results)} results for: {query[:50]}")
        return results


class SearXNGSearchProvider(_HTTPProvider, SearchProvider):
    """SearXNG self-hosted metasearch provider (JSON output format)"""

    name = "searxng"

    def __init__(self, base_url: str = "http://localhost:8888", timeout: float = 30.0):
        super().__init__(timeout=timeout)
        self.base_url = base_url.rstrip("/")

    async def search(self, query: str, max_results: int = 10) -> List[RawResult]:
        client = await self._get_client()
        try:
            response = await client.get(
                f"{self.base_url}/search",
                params={"q": query, "format": "json", "language": "en-US"}
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(self.name, str(e) or type(e).__name__) from e
        except ValueError as e:
            raise ProviderUnavailableError(self.name, f"invalid response body: {e}") from e

        now = datetime.now(timezone.utc).isoformat()
        results = []
        for item in (data.get("results") or [])[:max_results]:
            url = item.get("url", "")
            if not url:
                continue
            engines = item.get("engines") or ["searxng"]
            # SearXNG can return scores > 1, cap to 0.9 to leave room for boost
            score = min(0.9, float(item.get("score", 0.7)))
            if len(engines) > 1:
                score = min(1.0, score + 0.05 * len(engines))
            results.append(RawResult(
                title=item.get("title", ""),
                url=url,
                snippet=item.get("content", "") or "",
                relevance_score=score,
                source=hostname(url),
                timestamp=item.get("publishedDate") or now
            ))

        logger.info(f"SearXNG returned {len(results)} results for: {query[:50]}")
        return results


# =============================================================================
# Factories
# =============================================================================

def build_completion_provider(settings) -> CompletionProvider:
    """Create the completion provider selected by settings.llm_backend"""
    if settings.llm_backend == "gemini":
        if not settings.gemini_api_key:
            raise ValueError("DEEPSEARCH_GEMINI_API_KEY is required for the gemini backend")
        return GeminiCompletionProvider(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_api_url,
            timeout=settings.completion_timeout
        )
    return OllamaCompletionProvider(
        base_url=settings.ollama_base_url,
        model=settings.ollama_model,
        timeout=settings.completion_timeout
    )


def build_search_provider(settings) -> SearchProvider:
    """Create the search provider selected by settings.search_backend"""
    if settings.search_backend == "searxng":
        return SearXNGSearchProvider(
            base_url=settings.searxng_url,
            timeout=settings.search_timeout
        )
    return CompanionSearchProvider(
        base_url=settings.search_api_url,
        fetch_content=settings.fetch_page_content,
        max_content_results=settings.max_content_results,
        timeout=settings.search_timeout
    )
