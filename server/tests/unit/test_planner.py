"""
Unit Tests for the Query Planner

Tests classification, plan parsing and the deterministic fallbacks.
"""

import json

import pytest
from pydantic import ValidationError

from deepsearch.planner import (
    MAX_PLAN_STEPS,
    MIN_PLAN_STEPS,
    QueryPlanner,
    fallback_steps,
    heuristic_classification,
)
from deepsearch.providers import CompletionGateway
from fakes import FakeCompletionProvider


CLASSIFICATION = json.dumps({
    "domain": "History",
    "queryType": "factual",
    "entities": ["Berlin Wall"],
    "temporalAspect": "historical",
    "queryIntent": "informational",
    "subtopics": ["Cold War", "reunification"],
    "searchStrategy": "focused",
    "potentialSources": ["encyclopedia"],
})


def plan_reply(*queries: str) -> str:
    return json.dumps({
        "searchQueries": [
            {"query": q, "purpose": f"purpose of {q}", "expectedInformation": "facts"}
            for q in queries
        ],
        "informationNeeds": ["exact date"],
        "synthesisStrategy": "chronological",
    })


def gateway(replies) -> CompletionGateway:
    return CompletionGateway(FakeCompletionProvider(replies), timeout=2.0)


# =============================================================================
# HEURISTIC FALLBACK TESTS
# =============================================================================

class TestHeuristics:
    """Tests for keyword classification and the fallback plan."""

    @pytest.mark.parametrize("query,domain,query_type", [
        ("When did the Berlin Wall fall", "history", "factual"),
        ("how to bake sourdough bread", "instructional", "explanatory"),
        ("python vs rust performance", "comparative", "comparative"),
        ("best hiking boots", "general", "factual"),
    ])
    def test_heuristic_classification(self, query, domain, query_type):
        """Test keyword rules pick the expected domain and type."""
        classification = heuristic_classification(query)
        assert classification.domain == domain
        assert classification.query_type == query_type
        assert classification.is_fallback is True

    def test_heuristic_uses_word_boundaries(self):
        """Test that 'war' inside 'software' does not trigger history."""
        assert heuristic_classification("software licensing costs").domain == "general"

    def test_fallback_steps(self):
        """Test the three fallback variants of the query."""
        steps = fallback_steps("solar panels")
        assert [s.subquery for s in steps] == [
            "solar panels",
            "solar panels latest research",
            "solar panels explained in detail",
        ]


# =============================================================================
# PLANNING TESTS
# =============================================================================

class TestQueryPlanner:
    """Tests for QueryPlanner.plan()."""

    @pytest.mark.asyncio
    async def test_plan_from_completion(self):
        """Test a well-formed classification and plan are used as given."""
        llm = gateway({
            "classification": CLASSIFICATION,
            "planning": plan_reply("Berlin Wall fall date", "Berlin Wall 1989 events", "Cold War end"),
        })
        result = await QueryPlanner().plan("When did the Berlin Wall fall?", llm)

        assert result.classification.domain == "history"
        assert result.classification.intent == "informational"
        assert result.classification.subtopics == ["Cold War", "reunification"]
        assert result.plan.is_fallback is False
        assert result.plan.subqueries == ["Berlin Wall fall date", "Berlin Wall 1989 events", "Cold War end"]
        assert result.plan.information_needs == ("exact date",)
        assert result.plan.synthesis_strategy == "chronological"

    @pytest.mark.asyncio
    async def test_garbage_output_falls_back(self):
        """Test that unparseable completions yield the heuristic plan."""
        llm = gateway({"classification": "I am not sure.", "planning": "{{{ nope"})
        result = await QueryPlanner().plan("When did the Berlin Wall fall?", llm)

        assert result.classification.is_fallback is True
        assert result.classification.domain == "history"
        assert result.plan.is_fallback is True
        assert len(result.plan.steps) == 3
        assert result.plan.steps[0].subquery == "When did the Berlin Wall fall?"

    @pytest.mark.asyncio
    async def test_provider_down_falls_back(self):
        """Test that a failing provider still produces a non-empty plan."""
        result = await QueryPlanner().plan("quantum error correction", gateway({}))
        assert result.plan.is_fallback is True
        assert len(result.plan.steps) >= 1

    @pytest.mark.asyncio
    async def test_short_plan_is_padded(self):
        """Test that a one-step plan is padded to the minimum from fallback variants."""
        llm = gateway({"classification": CLASSIFICATION, "planning": plan_reply("Berlin Wall 1989")})
        result = await QueryPlanner().plan("Berlin Wall", llm)

        assert len(result.plan.steps) == MIN_PLAN_STEPS
        assert result.plan.subqueries[0] == "Berlin Wall 1989"
        assert result.plan.subqueries[1] == "Berlin Wall"
        assert result.plan.is_fallback is False

    @pytest.mark.asyncio
    async def test_long_plan_is_capped_and_deduplicated(self):
        """Test duplicates are removed and the plan is capped at the maximum."""
        queries = ["a topic", "A Topic", "b topic", "c topic", "d topic", "e topic", "f topic"]
        llm = gateway({"classification": CLASSIFICATION, "planning": plan_reply(*queries)})
        result = await QueryPlanner().plan("topics", llm)

        assert len(result.plan.steps) == MAX_PLAN_STEPS
        assert result.plan.subqueries == ["a topic", "b topic", "c topic", "d topic", "e topic"]

    @pytest.mark.asyncio
    async def test_plan_without_valid_steps_is_fallback(self):
        """Test that a plan with only malformed steps is marked as fallback."""
        reply = json.dumps({"searchQueries": [{"purpose": "no query"}, 42, {"query": ""}]})
        llm = gateway({"classification": CLASSIFICATION, "planning": reply})
        result = await QueryPlanner().plan("Berlin Wall", llm)

        assert result.plan.is_fallback is True
        assert len(result.plan.steps) == MIN_PLAN_STEPS

    @pytest.mark.asyncio
    async def test_string_steps_are_accepted(self):
        """Test that plain string sub-queries are accepted."""
        reply = json.dumps({"searchQueries": ["one query", "two query", "three query"]})
        llm = gateway({"classification": CLASSIFICATION, "planning": reply})
        result = await QueryPlanner().plan("numbers", llm)
        assert result.plan.subqueries == ["one query", "two query", "three query"]

    @pytest.mark.asyncio
    async def test_plan_is_immutable(self):
        """Test that the returned plan cannot be modified."""
        result = await QueryPlanner().plan("anything", gateway({}))
        with pytest.raises(ValidationError):
            result.plan.steps = ()
