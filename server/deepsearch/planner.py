"""
Query Planner - Classification and Sub-Query Planning

Two completion calls per query:
1. Classify the query (domain, type, entities, temporal aspect, intent)
2. Produce a 3-5 step sub-query plan seeded with the classification

Both calls parse completion output defensively and fall back to
deterministic heuristics, so plan() always returns a non-empty plan.
"""

import logging
import re
from typing import List, Optional

from pydantic import ValidationError

from core.exceptions import MalformedOutputError
from .json_extract import extract_json_object
from .models import PlannedSubQuery, PlanningResult, QueryClassification, SearchPlan
from .prompts import classification_prompt, plan_prompt

logger = logging.getLogger("deepsearch.planner")

MIN_PLAN_STEPS = 3
MAX_PLAN_STEPS = 5

HISTORY_TERMS = ("when", "history", "war", "century", "ancient")
INSTRUCTIONAL_TERMS = ("how to", "steps to", "guide")
COMPARATIVE_TERMS = ("vs", "compare", "difference")


def _mentions(text: str, terms) -> bool:
    return any(re.search(rf"\b{re.escape(term)}\b", text) for term in terms)


def heuristic_classification(query: str) -> QueryClassification:
    """Keyword fallback used when the classification call fails or is unparseable"""
    lowered = query.lower()

    if _mentions(lowered, HISTORY_TERMS):
        domain, query_type = "history", "factual"
    elif _mentions(lowered, INSTRUCTIONAL_TERMS):
        domain, query_type = "instructional", "explanatory"
    elif _mentions(lowered, COMPARATIVE_TERMS):
        domain, query_type = "comparative", "comparative"
    else:
        domain, query_type = "general", "factual"

    return QueryClassification(
        domain=domain,
        query_type=query_type,
        entities=[],
        temporal_aspect="historical" if domain == "history" else "none",
        intent="informational",
        search_strategy="focused",
        is_fallback=True,
    )


def fallback_steps(query: str) -> List[PlannedSubQuery]:
    """The original query, a latest-research variant and an explained-in-detail variant"""
    return [
        PlannedSubQuery(
            subquery=query,
            purpose="Direct answer to the original question",
            expected_information="Primary facts",
        ),
        PlannedSubQuery(
            subquery=f"{query} latest research",
            purpose="Recent developments",
            expected_information="Current findings and updates",
        ),
        PlannedSubQuery(
            subquery=f"{query} explained in detail",
            purpose="Background and context",
            expected_information="Detailed explanation",
        ),
    ]


class QueryPlanner:
    """
    Classifies a query and decomposes it into an ordered sub-query plan.

    Never raises: provider errors, deadlines and malformed output all
    degrade to the heuristic classification and the fallback plan.
    """

    def __init__(self, model: Optional[str] = None, max_steps: int = MAX_PLAN_STEPS):
        self.model = model
        self.max_steps = max(MIN_PLAN_STEPS, min(max_steps, MAX_PLAN_STEPS))

    async def plan(self, query: str, llm) -> PlanningResult:
        """
        Classify the query and build its search plan.

        Args:
            query: The user's original question
            llm: Completion gateway used for both calls

        Returns:
            PlanningResult with a classification and a non-empty plan
        """
        query = query.strip()
        classification = await self.classify(query, llm)
        plan = await self.build_plan(query, classification, llm)
        logger.info(
            f"Planned {len(plan.steps)} sub-queries for '{query[:50]}' "
            f"(domain={classification.domain}, type={classification.query_type}, "
            f"fallback={plan.is_fallback})"
        )
        return PlanningResult(classification=classification, plan=plan)

    async def classify(self, query: str, llm) -> QueryClassification:
        try:
            text = await llm.complete(classification_prompt(query), model=self.model, stage="classification")
            data = extract_json_object(text)
            if data is None:
                raise MalformedOutputError("classification")
            classification = QueryClassification.model_validate(data)
            if not classification.domain:
                raise MalformedOutputError("classification", "empty domain")
            return classification
        except Exception as e:
            logger.warning(f"Classification failed, using keyword heuristics: {e}")
            return heuristic_classification(query)

    async def build_plan(self, query: str, classification: QueryClassification, llm) -> SearchPlan:
        try:
            text = await llm.complete(plan_prompt(query, classification), model=self.model, stage="planning")
            data = extract_json_object(text)
            if data is None:
                raise MalformedOutputError("planning")
        except Exception as e:
            logger.warning(f"Planning failed, using fallback plan: {e}")
            return SearchPlan(
                original_query=query,
                steps=tuple(fallback_steps(query)),
                is_fallback=True,
            )

        steps = self._parse_steps(data.get("searchQueries") or data.get("search_queries"))
        is_fallback = not steps

        # Pad short plans from the fallback variants
        seen = {step.subquery.lower() for step in steps}
        for extra in fallback_steps(query):
            if len(steps) >= MIN_PLAN_STEPS:
                break
            if extra.subquery.lower() not in seen:
                steps.append(extra)
                seen.add(extra.subquery.lower())

        needs = data.get("informationNeeds") or data.get("information_needs") or []
        strategy = data.get("synthesisStrategy") or data.get("synthesis_strategy") or ""

        return SearchPlan(
            original_query=query,
            steps=tuple(steps[:self.max_steps]),
            information_needs=tuple(str(n) for n in needs if n) if isinstance(needs, list) else (),
            synthesis_strategy=str(strategy),
            is_fallback=is_fallback,
        )

    def _parse_steps(self, raw) -> List[PlannedSubQuery]:
        """Keep well-formed, distinct sub-queries in the order given"""
        if not isinstance(raw, list):
            return []

        steps = []
        seen = set()
        for item in raw:
            if isinstance(item, str):
                item = {"query": item}
            if not isinstance(item, dict):
                continue
            try:
                step = PlannedSubQuery.model_validate(item)
            except ValidationError:
                continue
            subquery = step.subquery.strip()
            if len(subquery) < 2 or subquery.lower() in seen:
                continue
            seen.add(subquery.lower())
            steps.append(step if subquery == step.subquery else step.model_copy(update={"subquery": subquery}))
        return steps
