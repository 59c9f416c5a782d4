"""
Search Pipeline Orchestrator

Runs one query end to end:

    Query Planner -> Search Dispatcher -> Multi-Pass Analyzer -> Synthesizer

and keeps the ThinkingProcess trace current while doing so. The caller
always receives a SearchAnswer. Degraded runs (fallback plan, failed
branches, skipped passes) still produce a normal answer. Only a genuine
fatal condition produces an error-shaped answer:

- every search branch failed AND the completion provider never answered
- the whole run exceeded the pipeline deadline
- an unexpected exception escaped a stage

In that case the trace ends with exactly one step of type "error".
"""

import asyncio
import logging
import time
import uuid
from typing import List, Optional

from core.exceptions import PipelineFatalError, ProviderTimeoutError
from .analyzer import AnalysisMetricsRegistry, MultiPassAnalyzer
from .dispatcher import SearchDispatcher, error_result
from .models import AnalysisState, RawResult, SearchAnswer, StepStatus
from .planner import QueryPlanner
from .providers import (
    CompletionGateway,
    CompletionProvider,
    SearchProvider,
    build_completion_provider,
    build_search_provider,
    with_deadline,
)
from .synthesizer import MAX_CITATIONS, Synthesizer, build_citations
from .trace import ProgressCallback, ThinkingTracker

logger = logging.getLogger("deepsearch.orchestrator")


class _RunState:
    """What a run has produced so far, kept for the error-shaped answer"""

    def __init__(self):
        self.results: List[RawResult] = []
        self.analysis: Optional[AnalysisState] = None


class SearchPipeline:
    """
    Answers a question with web search, staged analysis and cited synthesis.

    Usage:
    ```python
    pipeline = SearchPipeline.from_settings(settings)
    answer = await pipeline.answer_with_search("When did the Berlin Wall fall?")
    print(answer.text, [c.url for c in answer.citations])
    ```
    """

    def __init__(
        self,
        completion_provider: CompletionProvider,
        search_provider: SearchProvider,
        planner: Optional[QueryPlanner] = None,
        dispatcher: Optional[SearchDispatcher] = None,
        analyzer: Optional[MultiPassAnalyzer] = None,
        synthesizer: Optional[Synthesizer] = None,
        completion_timeout: Optional[float] = 60.0,
        pipeline_timeout: Optional[float] = 300.0
    ):
        self.completion_provider = completion_provider
        self.search_provider = search_provider
        self.planner = planner or QueryPlanner()
        self.dispatcher = dispatcher or SearchDispatcher(search_provider)
        self.analyzer = analyzer or MultiPassAnalyzer()
        self.synthesizer = synthesizer or Synthesizer()
        self.completion_timeout = completion_timeout
        self.pipeline_timeout = pipeline_timeout

    @classmethod
    def from_settings(
        cls,
        settings,
        completion_provider: Optional[CompletionProvider] = None,
        search_provider: Optional[SearchProvider] = None,
        metrics: Optional[AnalysisMetricsRegistry] = None
    ) -> "SearchPipeline":
        """Wire every component from SearchSettings"""
        completion_provider = completion_provider or build_completion_provider(settings)
        search_provider = search_provider or build_search_provider(settings)

        return cls(
            completion_provider=completion_provider,
            search_provider=search_provider,
            planner=QueryPlanner(model=settings.planner_model),
            dispatcher=SearchDispatcher(
                search_provider,
                search_timeout=settings.search_timeout,
                max_rounds=settings.max_search_rounds,
                max_results_per_query=settings.max_results_per_query,
                analysis_model=settings.planner_model,
            ),
            analyzer=MultiPassAnalyzer(
                surface_model=settings.surface_model,
                grounding_model=settings.grounding_model,
                resolution_model=settings.resolution_model,
                experimental_resolution_model=settings.experimental_resolution_model,
                enable_chain_of_agents=settings.enable_chain_of_agents,
                enable_conflict_resolution=settings.enable_conflict_resolution,
                metrics=metrics or AnalysisMetricsRegistry(settings.metrics_history_size),
            ),
            synthesizer=Synthesizer(
                model=settings.synthesis_model,
                max_citations=settings.max_citations,
            ),
            completion_timeout=settings.completion_timeout,
            pipeline_timeout=settings.pipeline_timeout,
        )

    @property
    def metrics(self) -> AnalysisMetricsRegistry:
        return self.analyzer.metrics

    async def answer_with_search(
        self,
        query: str,
        session_id: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> SearchAnswer:
        """
        Answer a query. Never raises except on cancellation.

        Args:
            query: The user's question
            session_id: Optional session, used for log correlation only
            progress_callback: Called with the live ThinkingProcess after each
                stage transition (sync or async)

        Returns:
            SearchAnswer; is_error is set only for a fatal run
        """
        request_id = str(uuid.uuid4())
        tracker = ThinkingTracker(on_update=progress_callback)
        llm = CompletionGateway(self.completion_provider, timeout=self.completion_timeout)
        run = _RunState()
        start = time.time()

        logger.info(f"[{request_id[:8]}] Search started (session={session_id}): {query[:80]}")

        try:
            answer = await with_deadline(
                self._run(query, request_id, tracker, llm, run),
                self.pipeline_timeout,
                "pipeline",
            )
            logger.info(
                f"[{request_id[:8]}] Search finished in {time.time() - start:.1f}s: "
                f"{len(answer.citations)} citations, {llm.calls} completion calls"
            )
            return answer
        except asyncio.CancelledError:
            logger.info(f"[{request_id[:8]}] Search cancelled")
            raise
        except PipelineFatalError as e:
            logger.error(f"[{request_id[:8]}] Fatal: {e.message}")
            message = e.message
        except ProviderTimeoutError as e:
            logger.error(f"[{request_id[:8]}] Pipeline deadline exceeded: {e.message}")
            message = f"The search did not finish within {self.pipeline_timeout}s"
        except Exception as e:
            logger.error(f"[{request_id[:8]}] Pipeline failed unexpectedly: {e}", exc_info=True)
            message = str(e) or type(e).__name__

        return await self._error_answer(query, request_id, tracker, run, message)

    async def _run(
        self,
        query: str,
        request_id: str,
        tracker: ThinkingTracker,
        llm: CompletionGateway,
        run: _RunState
    ) -> SearchAnswer:
        process = tracker.process

        # Stage 1: Query Understanding
        tracker.start_stage(1, "Working out what is being asked")
        await tracker.notify()
        planning = await self.planner.plan(query, llm)
        classification, plan = planning.classification, planning.plan

        process.domain_context = classification.domain
        process.subtopics = list(classification.subtopics)
        tracker.add_step(
            f"Identified a {classification.query_type} question in the {classification.domain} domain",
            status=StepStatus.COMPLETE,
        )
        if classification.entities:
            tracker.add_step(
                "Key entities: " + ", ".join(classification.entities[:8]),
                status=StepStatus.COMPLETE,
            )
        tracker.add_reasoning(
            thought=f"Interpreting the query as {classification.intent or 'informational'}",
            action="Classified query",
            outcome=f"domain={classification.domain}, type={classification.query_type}",
        )
        tracker.complete_stage()

        # Stage 2: Search Planning
        tracker.start_stage(2, f"Planning {len(plan.steps)} searches")
        for step in plan.steps:
            label = f"Planned search: {step.subquery}"
            if step.purpose:
                label += f" ({step.purpose})"
            tracker.add_step(label, status=StepStatus.COMPLETE)
        if plan.is_fallback:
            tracker.add_step("Using the default search plan", status=StepStatus.COMPLETE)
        tracker.complete_stage()
        await tracker.notify()

        # Stage 3: Iterative Search
        tracker.start_stage(3, f"Running {len(plan.steps)} searches in parallel")
        await tracker.notify()
        dispatch = await self.dispatcher.dispatch(plan, classification.domain, classification.query_type, llm)
        run.results = dispatch.results

        process.search_queries = list(dispatch.optimized_queries)
        process.search_insights = list(dispatch.insights)
        for insight in dispatch.insights:
            tracker.add_search_step(insight.optimized_query or insight.subquery, insight.result_count, insight.failed)

        if dispatch.provider_unreachable and llm.unreachable:
            raise PipelineFatalError(
                f"Search and completion providers are both unreachable. "
                f"Last completion error: {llm.last_error}",
                failed_subqueries=len(dispatch.failed_subqueries),
            )

        usable = dispatch.usable_results
        tracker.advance(55, f"Analysing {len(usable)} results")
        await tracker.notify()

        # Runs on the placeholder too when nothing usable came back
        state = await self.analyzer.analyze(query, dispatch.results, llm, request_id=request_id)
        run.analysis = state

        tracker.add_step(
            f"Analysis completed {state.meta.passes_completed} of 3 passes",
            status=StepStatus.COMPLETE,
        )
        if state.unresolved_conflicts:
            tracker.add_reasoning(
                thought=f"Sources disagree on {len(state.unresolved_conflicts)} point(s)",
                action="Kept conflicting claims for the answer",
                outcome="Conflicts will be reported rather than resolved arbitrarily",
            )
        tracker.complete_stage()
        await tracker.notify()

        # Stages 4 and 5 are driven by the synthesizer
        synthesis = await self.synthesizer.synthesize(
            query, state, dispatch.results, classification, tracker, llm
        )
        process = tracker.finish()
        await tracker.notify()

        return SearchAnswer(
            text=synthesis.text,
            citations=synthesis.citations,
            search_results=dispatch.results,
            thinking_process=process,
            analysis=state,
            request_id=request_id,
        )

    async def _error_answer(
        self,
        query: str,
        request_id: str,
        tracker: ThinkingTracker,
        run: _RunState,
        message: str
    ) -> SearchAnswer:
        results = run.results or [error_result(message)]
        citations = build_citations(results, getattr(self.synthesizer, "max_citations", MAX_CITATIONS))
        process = tracker.fail(message)
        process.citations = citations
        await tracker.notify()

        return SearchAnswer(
            text=(
                f'I was unable to complete a search for "{query}". {message} [1]\n\n'
                "Please try again later."
            ),
            citations=citations,
            search_results=results,
            thinking_process=process,
            analysis=run.analysis,
            request_id=request_id,
            is_error=True,
        )

    async def close(self) -> None:
        await self.completion_provider.close()
        await self.search_provider.close()
