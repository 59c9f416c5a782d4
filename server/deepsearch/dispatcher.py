"""
Search Dispatcher - Parallel Sub-Query Execution

Runs every planned sub-query against the search provider concurrently
and joins all branches before merging. A failed branch contributes zero
results and never aborts the batch. After fan-in, results are merged in
plan order, deduplicated by url (first occurrence wins) and sorted by
relevance.

When nothing usable comes back, the dispatcher returns exactly one
synthetic result with source "error" so later stages always receive a
non-empty input.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .models import PlannedSubQuery, RawResult, SearchInsight, SearchPlan
from .prompts import subquery_analysis_prompt
from .providers import SearchProvider, with_deadline

logger = logging.getLogger("deepsearch.dispatcher")


def optimize_search_query(query: str, domain: str, query_type: str) -> str:
    """Append domain-specific terms that steer the search provider"""
    optimized = query.strip()
    lowered = optimized.lower()
    domain = (domain or "").lower()

    if domain == "history":
        if "when" in lowered:
            return f"{optimized} exact dates timeline"
        if "who" in lowered:
            return f"{optimized} historical figures biography"
        if "where" in lowered:
            return f"{optimized} historical location map"
        return f"{optimized} historical facts timeline"

    if domain == "technology":
        if query_type == "comparative":
            return f"{optimized} comparison technical specifications"
        if "how" in lowered:
            return f"{optimized} tutorial step by step"
        return f"{optimized} latest information technical details"

    if domain == "science":
        return f"{optimized} scientific explanation research"

    if domain == "health":
        return f"{optimized} medical information health guidelines"

    if domain == "entertainment":
        if "release" in lowered or "when" in lowered:
            return f"{optimized} official release date"
        return f"{optimized} entertainment news official information"

    # General optimization
    if query_type == "factual":
        return f"{optimized} facts information"
    if query_type == "explanatory":
        return f"{optimized} explanation guide"
    if query_type == "comparative":
        return f"{optimized} comparison differences"
    return optimized


def deduplicate_results(results: Iterable[RawResult]) -> List[RawResult]:
    """Drop repeated urls, keeping the first occurrence. Idempotent."""
    seen_urls = set()
    unique = []
    for result in results:
        if result.url in seen_urls:
            continue
        seen_urls.add(result.url)
        unique.append(result)
    return unique


def rank_results(results: Iterable[RawResult]) -> List[RawResult]:
    """Sort descending by relevance score. Ties keep their merge order."""
    return sorted(results, key=lambda r: r.relevance_score, reverse=True)


def error_result(message: str) -> RawResult:
    """The synthetic placeholder returned when no real results exist"""
    return RawResult(
        title="Search Error",
        url="#",
        snippet=(
            f"We couldn't retrieve search results at this time. Error: {message}. "
            "Please try again later."
        ),
        relevance_score=0.0,
        source="error",
    )


@dataclass
class BranchOutcome:
    """Result of one sub-query branch"""
    step: PlannedSubQuery
    optimized_query: str
    results: List[RawResult] = field(default_factory=list)
    error: Optional[str] = None
    insight: Optional[SearchInsight] = None
    duration_ms: float = 0.0


@dataclass
class DispatchResult:
    """Merged output of one dispatch round"""
    results: List[RawResult]
    insights: List[SearchInsight] = field(default_factory=list)
    optimized_queries: List[str] = field(default_factory=list)
    failed_subqueries: List[str] = field(default_factory=list)
    provider_unreachable: bool = False
    used_placeholder: bool = False
    branch_durations_ms: Dict[str, float] = field(default_factory=dict)

    @property
    def usable_results(self) -> List[RawResult]:
        return [r for r in self.results if not r.is_error]


class SearchDispatcher:
    """
    Fans a SearchPlan out to the search provider and fans the results back in.

    Features:
    - Domain-specific query rewriting per sub-query
    - Per-branch deadline; a timed-out or failed branch yields zero results
    - Optional per-branch completion call producing a short analysis that
      is kept as provenance for the trace
    """

    def __init__(
        self,
        provider: SearchProvider,
        search_timeout: Optional[float] = 30.0,
        max_rounds: int = 10,
        max_results_per_query: int = 10,
        analysis_model: Optional[str] = None,
        analyze_subqueries: bool = True
    ):
        self.provider = provider
        self.search_timeout = search_timeout
        self.max_rounds = max_rounds
        self.max_results_per_query = max_results_per_query
        self.analysis_model = analysis_model
        self.analyze_subqueries = analyze_subqueries

    async def dispatch(
        self,
        plan: SearchPlan,
        domain: str,
        query_type: str = "factual",
        llm=None
    ) -> DispatchResult:
        """
        Execute all planned sub-queries concurrently and merge the results.

        Args:
            plan: The search plan (only the first max_rounds steps run)
            domain: Classified domain, used for query rewriting
            query_type: Classified query type, used for query rewriting
            llm: Optional completion gateway for per-branch analyses

        Returns:
            DispatchResult whose results list is never empty
        """
        steps = list(plan.steps[:self.max_rounds])
        start = time.time()

        outcomes = await asyncio.gather(
            *(self._run_branch(step, domain, query_type, llm) for step in steps),
            return_exceptions=True
        )

        branches: List[BranchOutcome] = []
        for step, outcome in zip(steps, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error(f"Branch '{step.subquery[:50]}' raised unexpectedly: {outcome}")
                branches.append(BranchOutcome(
                    step=step,
                    optimized_query=step.subquery,
                    error=str(outcome) or type(outcome).__name__
                ))
            else:
                branches.append(outcome)

        merged = [result for branch in branches for result in branch.results]
        results = rank_results(deduplicate_results(merged))

        failed = [b.step.subquery for b in branches if b.error is not None]
        provider_unreachable = bool(branches) and len(failed) == len(branches)
        used_placeholder = False

        if not results:
            errors = [b.error for b in branches if b.error]
            message = errors[0] if errors else "No results found for any search query"
            results = [error_result(message)]
            used_placeholder = True
            logger.warning(f"No usable search results ({len(failed)}/{len(branches)} branches failed)")

        durations = {b.optimized_query: round(b.duration_ms, 1) for b in branches}
        slowest = max(branches, key=lambda b: b.duration_ms, default=None)
        slowest_note = f", slowest '{slowest.optimized_query[:50]}' {slowest.duration_ms:.0f}ms" if slowest else ""
        logger.info(
            f"Dispatched {len(branches)} sub-queries in {(time.time() - start) * 1000:.0f}ms: "
            f"{len(merged)} raw, {len(results)} after dedup, {len(failed)} failed"
            f"{slowest_note}"
        )

        return DispatchResult(
            results=results,
            insights=[b.insight for b in branches if b.insight is not None],
            optimized_queries=[b.optimized_query for b in branches],
            failed_subqueries=failed,
            provider_unreachable=provider_unreachable,
            used_placeholder=used_placeholder,
            branch_durations_ms=durations,
        )

    async def _run_branch(
        self,
        step: PlannedSubQuery,
        domain: str,
        query_type: str,
        llm
    ) -> BranchOutcome:
        optimized = optimize_search_query(step.subquery, domain, query_type)
        outcome = BranchOutcome(step=step, optimized_query=optimized)
        start = time.time()

        try:
            results = await with_deadline(
                self.provider.search(optimized, max_results=self.max_results_per_query),
                self.search_timeout,
                self.provider.name,
            )
            outcome.results = list(results or [])
        except Exception as e:
            outcome.error = str(e) or type(e).__name__
            logger.warning(f"Search failed for '{optimized[:60]}': {outcome.error}")

        outcome.duration_ms = (time.time() - start) * 1000

        if llm is not None and self.analyze_subqueries and outcome.results:
            outcome.insight = await self._analyze_branch(step, optimized, outcome.results, llm)
        else:
            outcome.insight = SearchInsight(
                subquery=step.subquery,
                optimized_query=optimized,
                purpose=step.purpose,
                result_count=len(outcome.results),
                findings="" if outcome.results else "No results returned",
                failed=outcome.error is not None,
            )

        return outcome

    async def _analyze_branch(
        self,
        step: PlannedSubQuery,
        optimized: str,
        results: List[RawResult],
        llm
    ) -> SearchInsight:
        prompt = subquery_analysis_prompt(optimized, step.purpose, step.expected_information, results)
        try:
            findings = (await llm.complete(prompt, model=self.analysis_model, stage="subquery_analysis")).strip()
        except Exception as e:
            logger.debug(f"Sub-query analysis unavailable for '{optimized[:50]}': {e}")
            findings = "Analysis unavailable"

        return SearchInsight(
            subquery=step.subquery,
            optimized_query=optimized,
            purpose=step.purpose,
            result_count=len(results),
            findings=findings or "Analysis unavailable",
        )
