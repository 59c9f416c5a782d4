"""
Unit Tests for the Search Pipeline

End-to-end runs of answer_with_search() against scripted providers:
happy path, degraded runs, the fatal condition, deadlines and progress.
"""

import asyncio
import json

import pytest

from deepsearch.dispatcher import SearchDispatcher
from deepsearch.models import StepType
from deepsearch.orchestrator import SearchPipeline
from fakes import FakeCompletionProvider, FakeSearchProvider, make_result


ANSWER = "The Berlin Wall fell on 9 November 1989 [1]; demolition started the next day [2]."


def full_script(**overrides):
    replies = {
        "classification": json.dumps({"domain": "history", "queryType": "factual", "entities": ["Berlin Wall"]}),
        "planning": json.dumps({"searchQueries": [
            {"query": "Berlin Wall fall date", "purpose": "date"},
            {"query": "Berlin Wall demolition", "purpose": "demolition"},
            {"query": "Berlin Wall 1989 timeline", "purpose": "timeline"},
        ]}),
        "subquery_analysis": "Sources agree on November 1989 [1].",
        "surface_scan": json.dumps({
            "keyDates": ["1989-11-09"],
            "contradictions": [{"description": "Dates differ", "resultIndices": [1, 2]}],
        }),
        "grounding": json.dumps({"credibilityScores": {"1": 0.9}}),
        "resolution": json.dumps({"synthesizedUnderstanding": "Opened 9 Nov 1989."}),
        "synthesis": ANSWER,
    }
    replies.update(overrides)
    return FakeCompletionProvider(replies)


def error_steps(answer):
    return [s for s in answer.thinking_process.steps if s.type == StepType.ERROR]


# =============================================================================
# NORMAL RUNS
# =============================================================================

class TestAnswerWithSearch:
    """Tests for SearchPipeline.answer_with_search()."""

    @pytest.mark.asyncio
    async def test_happy_path(self, berlin_wall_results):
        """Test a full run produces a cited answer and a complete trace."""
        search = FakeSearchProvider(results=berlin_wall_results)
        llm = full_script()
        pipeline = SearchPipeline(llm, search)

        answer = await pipeline.answer_with_search("When did the Berlin Wall fall?")

        assert answer.is_error is False
        assert answer.text == ANSWER
        assert len(answer.citations) == 2
        assert answer.search_results == berlin_wall_results
        assert answer.analysis.meta.passes_completed == 3
        # The contradiction survives into the final state
        assert len(answer.analysis.unresolved_conflicts) == 1

        process = answer.thinking_process
        assert process.progress == 100
        assert process.domain_context == "history"
        assert len(process.search_queries) == 3
        assert len(process.search_insights) == 3
        assert error_steps(answer) == []
        assert len(search.queries) == 3
        assert pipeline.metrics.get(answer.request_id) is not None

    @pytest.mark.asyncio
    async def test_zero_hits(self):
        """Test empty search results give the insufficient-information answer citing [1]."""
        llm = full_script()
        pipeline = SearchPipeline(llm, FakeSearchProvider())

        answer = await pipeline.answer_with_search("xqzvv unknown term")

        assert answer.is_error is False
        assert len(answer.citations) == 1
        assert "[1]" in answer.text
        assert answer.search_results[0].source == "error"
        for kind in ("surface_scan", "grounding", "resolution"):
            assert kind in llm.kinds()
        assert answer.analysis.meta.passes_completed == 3
        assert "synthesis" not in llm.kinds()

    @pytest.mark.asyncio
    async def test_zero_hits_with_dead_completion_provider(self):
        """Test the placeholder is analysed without raising when every completion fails."""
        llm = FakeCompletionProvider({})
        pipeline = SearchPipeline(llm, FakeSearchProvider())

        answer = await pipeline.answer_with_search("When will X season 2 release")

        assert answer.is_error is False
        assert len(answer.citations) == 1
        assert "surface_scan" in llm.kinds()
        assert answer.analysis.meta.passes_completed == 0

    @pytest.mark.asyncio
    async def test_completion_down_is_degraded_not_fatal(self, berlin_wall_results):
        """Test a dead completion provider still yields a normal answer from snippets."""
        pipeline = SearchPipeline(FakeCompletionProvider(), FakeSearchProvider(results=berlin_wall_results))
        answer = await pipeline.answer_with_search("When did the Berlin Wall fall?")

        assert answer.is_error is False
        assert answer.analysis.meta.passes_completed == 0
        assert "[1]" in answer.text
        assert answer.thinking_process.progress == 100

    @pytest.mark.asyncio
    async def test_search_down_is_degraded_not_fatal(self, failing_search_provider):
        """Test a dead search provider with a working completion provider is not fatal."""
        pipeline = SearchPipeline(full_script(), failing_search_provider)
        answer = await pipeline.answer_with_search("When did the Berlin Wall fall?")

        assert answer.is_error is False
        assert len(answer.citations) == 1
        assert "connection refused" in answer.search_results[0].snippet

    @pytest.mark.parametrize("count", [3, 25])
    @pytest.mark.asyncio
    async def test_citation_count(self, count):
        """Test len(citations) == min(20, len(results))."""
        results = [make_result(n, relevance=1 - n / 100) for n in range(1, count + 1)]
        search = FakeSearchProvider(results=results)
        pipeline = SearchPipeline(
            full_script(synthesis="Answer [1]."),
            search,
            dispatcher=SearchDispatcher(search, max_results_per_query=50, analyze_subqueries=False),
        )
        answer = await pipeline.answer_with_search("many results")

        assert len(answer.search_results) == count
        assert len(answer.citations) == min(20, count)


# =============================================================================
# FATAL RUNS
# =============================================================================

class TestFatalRuns:
    """Tests for the error-shaped answer."""

    @pytest.mark.asyncio
    async def test_both_providers_down(self, failing_search_provider):
        """Test the fatal answer has one error step and cites the placeholder."""
        pipeline = SearchPipeline(FakeCompletionProvider(), failing_search_provider)
        answer = await pipeline.answer_with_search("When did the Berlin Wall fall?")

        assert answer.is_error is True
        assert len(error_steps(answer)) == 1
        assert len(answer.citations) == 1
        assert "[1]" in answer.text
        assert answer.thinking_process.stage_progress.current_stage == "Error"
        assert answer.thinking_process.progress < 100

    @pytest.mark.asyncio
    async def test_pipeline_deadline(self, berlin_wall_results):
        """Test a run exceeding the pipeline deadline returns the error answer."""
        slow = FakeCompletionProvider(full_script().replies, delay=1.0)
        pipeline = SearchPipeline(
            slow,
            FakeSearchProvider(results=berlin_wall_results),
            completion_timeout=None,
            pipeline_timeout=0.1,
        )
        answer = await pipeline.answer_with_search("slow question")

        assert answer.is_error is True
        assert "did not finish" in answer.text
        assert len(error_steps(answer)) == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception(self, berlin_wall_results):
        """Test a stage crash is turned into the error answer."""

        class ExplodingSynthesizer:
            max_citations = 20

            async def synthesize(self, *args, **kwargs):
                raise RuntimeError("synthesizer crashed")

        pipeline = SearchPipeline(
            full_script(),
            FakeSearchProvider(results=berlin_wall_results),
            synthesizer=ExplodingSynthesizer(),
        )
        answer = await pipeline.answer_with_search("q")

        assert answer.is_error is True
        assert "synthesizer crashed" in answer.text
        # Results gathered before the crash are kept
        assert len(answer.citations) == 2

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, berlin_wall_results):
        """Test cancelling the caller cancels the run."""
        slow = FakeCompletionProvider(full_script().replies, delay=5.0)
        pipeline = SearchPipeline(slow, FakeSearchProvider(results=berlin_wall_results), completion_timeout=None)

        task = asyncio.create_task(pipeline.answer_with_search("q"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


# =============================================================================
# PROGRESS TESTS
# =============================================================================

class TestProgress:
    """Tests for the progress callback."""

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self, berlin_wall_results):
        """Test the callback sees non-decreasing progress ending at 100."""
        seen = []
        pipeline = SearchPipeline(full_script(), FakeSearchProvider(results=berlin_wall_results))
        await pipeline.answer_with_search("q", progress_callback=lambda p: seen.append(p.progress))

        assert seen
        assert seen == sorted(seen)
        assert seen[-1] == 100

    @pytest.mark.asyncio
    async def test_close(self):
        """Test close() closes both providers."""
        llm, search = FakeCompletionProvider(), FakeSearchProvider()
        await SearchPipeline(llm, search).close()
        assert llm.closed and search.closed
