"""
Multi-Pass Analyzer - Staged Analysis of Search Results

Three sequential completion passes over a shared AnalysisState:
1. Surface Scan          - entities, relationships, clusters, relevance, contradictions
2. Contextual Grounding  - credibility, fact validation, gaps, missing perspectives
3. Conflict Resolution   - resolved claims, unresolved conflicts, synthesized understanding
                           (optionally the Chain-of-Agents prompt, which simulates four
                           reviewers in one call)

Each pass validates its JSON against a pydantic model. A pass that fails
contributes nothing, records its error in state.meta, and the previous
state flows on unchanged. analyze() never raises.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Type

from pydantic import BaseModel

from core.exceptions import MalformedOutputError
from .json_extract import extract_json_object
from .models import (
    AnalysisState,
    GroundingOutput,
    RawResult,
    ResolutionOutput,
    SurfaceScanOutput,
    UnresolvedConflict,
    ValidationStatus,
)
from .prompts import (
    chain_of_agents_prompt,
    grounding_prompt,
    resolution_prompt,
    surface_scan_prompt,
)

logger = logging.getLogger("deepsearch.analyzer")

SURFACE_SCAN = "surface_scan"
CONTEXTUAL_GROUNDING = "contextual_grounding"
CONFLICT_RESOLUTION = "conflict_resolution"

CARRIED_FORWARD_EXPLANATION = "Flagged in an earlier pass and not settled by conflict resolution"


@dataclass
class AnalysisMetrics:
    """Timing and outcome of one analyze() call"""
    request_id: str
    query: str
    result_count: int = 0
    started_at: float = field(default_factory=time.time)
    stage_durations_ms: Dict[str, float] = field(default_factory=dict)
    passes_completed: int = 0
    completed: bool = False
    failed_stages: List[str] = field(default_factory=list)
    total_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "query": self.query,
            "result_count": self.result_count,
            "started_at": datetime.fromtimestamp(self.started_at, timezone.utc).isoformat(),
            "stage_durations_ms": {k: round(v, 1) for k, v in self.stage_durations_ms.items()},
            "passes_completed": self.passes_completed,
            "completed": self.completed,
            "failed_stages": list(self.failed_stages),
            "total_ms": round(self.total_ms, 1),
        }


class AnalysisMetricsRegistry:
    """Bounded in-memory history of analysis runs, newest last"""

    def __init__(self, max_entries: int = 200):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, AnalysisMetrics]" = OrderedDict()

    def record(self, metrics: AnalysisMetrics) -> None:
        self._entries[metrics.request_id] = metrics
        self._entries.move_to_end(metrics.request_id)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def get(self, request_id: str) -> Optional[AnalysisMetrics]:
        return self._entries.get(request_id)

    def all(self) -> List[AnalysisMetrics]:
        return list(self._entries.values())

    def summary(self) -> Dict[str, Any]:
        entries = self.all()
        if not entries:
            return {"runs": 0, "completion_rate": 0.0, "avg_passes": 0.0, "avg_total_ms": 0.0, "stage_avg_ms": {}}

        stage_totals: Dict[str, List[float]] = {}
        for entry in entries:
            for stage, ms in entry.stage_durations_ms.items():
                stage_totals.setdefault(stage, []).append(ms)

        return {
            "runs": len(entries),
            "completion_rate": round(sum(1 for e in entries if e.completed) / len(entries), 3),
            "avg_passes": round(sum(e.passes_completed for e in entries) / len(entries), 2),
            "avg_total_ms": round(sum(e.total_ms for e in entries) / len(entries), 1),
            "stage_avg_ms": {
                stage: round(sum(values) / len(values), 1)
                for stage, values in stage_totals.items()
            },
        }


def flatten_chain_of_agents(data: Dict[str, Any]) -> Dict[str, Any]:
    """Lift the synthesizedAnalysis block of a Chain-of-Agents reply to the top level"""
    nested = data.get("synthesizedAnalysis") or data.get("synthesized_analysis")
    if not isinstance(nested, dict):
        return data
    flat = dict(nested)
    agents = data.get("agentAnalyses") or data.get("agent_analyses")
    if isinstance(agents, dict):
        flat["agentAnalyses"] = agents
    return flat


def preserve_conflicts(state: AnalysisState) -> int:
    """
    Carry unaddressed contradictions and disputed facts into unresolved_conflicts.

    A contradiction counts as addressed when one resolved claim or one
    unresolved conflict references all of its result indices. Returns the
    number of conflicts added.
    """
    covered = [set(c.supporting_result_indices) for c in state.resolved_claims]
    covered.extend(set(c.result_indices) for c in state.unresolved_conflicts)
    descriptions = {c.description.strip().lower() for c in state.unresolved_conflicts}

    def is_covered(indices: set, description: str) -> bool:
        if indices:
            return any(indices <= group for group in covered)
        return description.strip().lower() in descriptions

    candidates = [
        (c.description, [], set(c.result_indices))
        for c in state.contradictions
    ]
    candidates.extend(
        (f"Disputed claim: {f.claim}", [f.claim], set(f.result_indices))
        for f in state.fact_validation
        if f.validation_status == ValidationStatus.DISPUTED
    )

    added = 0
    for description, claims, indices in candidates:
        if not description and not indices:
            continue
        if is_covered(indices, description):
            continue
        state.unresolved_conflicts.append(UnresolvedConflict(
            description=description,
            competing_claims=claims,
            explanation=CARRIED_FORWARD_EXPLANATION,
            result_indices=sorted(indices),
        ))
        covered.append(indices)
        descriptions.add(description.strip().lower())
        added += 1

    if added:
        logger.info(f"Carried {added} unaddressed conflict(s) forward")
    return added


class MultiPassAnalyzer:
    """
    Runs the three analysis passes and degrades gracefully.

    passes_completed is the highest stage that succeeded, so a run can end
    with 3, 2, 1 or 0 passes (raw results only).
    """

    def __init__(
        self,
        surface_model: Optional[str] = None,
        grounding_model: Optional[str] = None,
        resolution_model: Optional[str] = None,
        experimental_resolution_model: Optional[str] = None,
        enable_chain_of_agents: bool = False,
        enable_conflict_resolution: bool = True,
        metrics: Optional[AnalysisMetricsRegistry] = None
    ):
        self.surface_model = surface_model
        self.grounding_model = grounding_model
        self.resolution_model = resolution_model
        self.experimental_resolution_model = experimental_resolution_model
        self.enable_chain_of_agents = enable_chain_of_agents
        self.enable_conflict_resolution = enable_conflict_resolution
        self.metrics = metrics or AnalysisMetricsRegistry()

    async def analyze(
        self,
        query: str,
        results: Sequence[RawResult],
        llm,
        request_id: str = ""
    ) -> AnalysisState:
        """
        Run the analysis passes over the results.

        Args:
            query: Original user query
            results: Ranked results; prompt numbering is 1-based in this order
            llm: Completion gateway
            request_id: Key for the metrics registry

        Returns:
            AnalysisState with meta.passes_completed in 0..3
        """
        state = AnalysisState(query=query)
        metrics = AnalysisMetrics(
            request_id=request_id or f"analysis-{int(time.time() * 1000)}",
            query=query,
            result_count=len(results),
        )
        expected_passes = 3 if self.enable_conflict_resolution else 2

        try:
            await self._run_stage(
                1, SURFACE_SCAN,
                surface_scan_prompt(query, results),
                SurfaceScanOutput, self.surface_model,
                state, llm, metrics
            )

            await self._run_stage(
                2, CONTEXTUAL_GROUNDING,
                grounding_prompt(query, results, state.prior_analysis()),
                GroundingOutput, self.grounding_model,
                state, llm, metrics
            )

            if self.enable_conflict_resolution:
                if self.enable_chain_of_agents:
                    prompt = chain_of_agents_prompt(query, results, state.prior_analysis())
                    model = self.experimental_resolution_model or self.resolution_model
                    transform = flatten_chain_of_agents
                else:
                    prompt = resolution_prompt(query, results, state.prior_analysis())
                    model = self.resolution_model
                    transform = None
                await self._run_stage(
                    3, CONFLICT_RESOLUTION,
                    prompt, ResolutionOutput, model,
                    state, llm, metrics,
                    transform=transform
                )

            preserve_conflicts(state)

        except Exception as e:
            logger.error(f"Analysis aborted after {state.meta.passes_completed} passes: {e}", exc_info=True)
            state.meta.record_failure("analysis", str(e))

        state.meta.analysis_complete = (
            state.meta.passes_completed >= expected_passes and not state.meta.failed_stages
        )
        state.meta.timestamp = datetime.now(timezone.utc).isoformat()

        metrics.passes_completed = state.meta.passes_completed
        metrics.completed = state.meta.analysis_complete
        metrics.failed_stages = list(state.meta.failed_stages)
        metrics.total_ms = (time.time() - metrics.started_at) * 1000
        self.metrics.record(metrics)

        logger.info(
            f"Analysis finished: {state.meta.passes_completed}/{expected_passes} passes, "
            f"{len(state.resolved_claims)} resolved, {len(state.unresolved_conflicts)} unresolved "
            f"in {metrics.total_ms:.0f}ms"
        )
        return state

    def get_metrics(self, request_id: str) -> Optional[AnalysisMetrics]:
        return self.metrics.get(request_id)

    def all_metrics(self) -> List[AnalysisMetrics]:
        return self.metrics.all()

    async def _run_stage(
        self,
        stage: int,
        name: str,
        prompt: str,
        output_model: Type[BaseModel],
        model: Optional[str],
        state: AnalysisState,
        llm,
        metrics: AnalysisMetrics,
        transform: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
    ) -> bool:
        start = time.time()
        try:
            text = await llm.complete(prompt, model=model, stage=name)
            data = extract_json_object(text)
            if data is None:
                raise MalformedOutputError(name)
            if transform is not None:
                data = transform(data)
            output = output_model.model_validate(data)
        except Exception as e:
            logger.warning(f"Pass {stage} ({name}) failed, keeping prior state: {e}")
            state.meta.record_failure(name, str(e))
            return False
        finally:
            metrics.stage_durations_ms[name] = (time.time() - start) * 1000

        state.merge(output)
        state.meta.record_pass(stage)
        logger.debug(f"Pass {stage} ({name}) merged fields: {sorted(output.model_fields_set)}")
        return True
