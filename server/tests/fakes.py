"""
Test doubles for the provider interfaces.

FakeCompletionProvider routes each prompt to a scripted reply by the kind
of prompt it is (classification, planning, surface scan, ...). A reply can
be a string, an exception to raise, or a callable taking the prompt.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from core.exceptions import ProviderUnavailableError
from deepsearch.models import RawResult
from deepsearch.providers import CompletionProvider, SearchProvider

PROMPT_MARKERS = (
    ("classification", "expert search query analyzer"),
    ("planning", "expert search planner"),
    ("subquery_analysis", "expert search analyst"),
    ("surface_scan", "Surface Scanning Pass"),
    ("grounding", "Contextual Grounding Pass"),
    ("chain_of_agents", "Chain-of-Agents"),
    ("resolution", "Conflict Resolution Pass"),
    ("synthesis", "providing direct, informative responses"),
    ("conversation", "ongoing conversation"),
)

Reply = Union[str, BaseException, Callable[[str], str]]


def prompt_kind(prompt: str) -> str:
    for kind, marker in PROMPT_MARKERS:
        if marker in prompt:
            return kind
    return "unknown"


def make_result(
    n: int,
    title: Optional[str] = None,
    url: Optional[str] = None,
    snippet: Optional[str] = None,
    relevance: float = 0.5,
    source: Optional[str] = None
) -> RawResult:
    url = url or f"https://site{n}.example.com/page"
    return RawResult(
        title=title or f"Result {n}",
        url=url,
        snippet=snippet or f"Snippet for result {n}.",
        relevance_score=relevance,
        source=source or f"site{n}.example.com",
    )


class FakeCompletionProvider(CompletionProvider):
    """Scripted completion provider. Unscripted prompt kinds raise ProviderUnavailableError."""

    name = "fake-llm"

    def __init__(self, replies: Optional[Dict[str, Reply]] = None, delay: float = 0.0):
        self.replies = dict(replies or {})
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    async def complete(self, prompt: str, model: Optional[str] = None) -> str:
        kind = prompt_kind(prompt)
        self.calls.append({"kind": kind, "model": model, "prompt": prompt})
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.replies.get(kind)
        if reply is None:
            raise ProviderUnavailableError(self.name, f"no scripted reply for {kind}")
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply

    def kinds(self) -> List[str]:
        return [call["kind"] for call in self.calls]

    async def close(self) -> None:
        self.closed = True


class FakeSearchProvider(SearchProvider):
    """
    Search provider returning canned results.

    by_substring maps a query fragment to a result list (or an exception);
    anything unmatched gets `results`, or raises `error` when set.
    """

    name = "fake-search"

    def __init__(
        self,
        results: Optional[Sequence[RawResult]] = None,
        by_substring: Optional[Dict[str, Union[Sequence[RawResult], BaseException]]] = None,
        error: Optional[BaseException] = None,
        delay: float = 0.0
    ):
        self.results = list(results or [])
        self.by_substring = dict(by_substring or {})
        self.error = error
        self.delay = delay
        self.queries: List[str] = []
        self.closed = False

    async def search(self, query: str, max_results: int = 10) -> List[RawResult]:
        self.queries.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        for fragment, outcome in self.by_substring.items():
            if fragment in query:
                if isinstance(outcome, BaseException):
                    raise outcome
                return list(outcome)[:max_results]
        if self.error is not None:
            raise self.error
        return list(self.results)[:max_results]

    async def close(self) -> None:
        self.closed = True
