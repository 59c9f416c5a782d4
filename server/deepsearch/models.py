"""
Pydantic models for the Deep Search pipeline

Defines the data structures passed between the planner, dispatcher,
multi-pass analyzer and synthesizer. Models that are parsed out of
completion output accept the camelCase keys the prompts ask for as well
as their snake_case field names.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
import uuid


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CompletionModel(BaseModel):
    """Base for models validated from untrusted completion output"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class StepType(str, Enum):
    """Kinds of entries in the thinking trace"""
    THINKING = "thinking"
    SEARCH = "search"
    ERROR = "error"


class StepStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    ERROR = "error"


class ValidationStatus(str, Enum):
    """Fact validation verdicts from contextual grounding"""
    CONFIRMED = "confirmed"
    DISPUTED = "disputed"
    UNCERTAIN = "uncertain"


# Search Inputs

class EnrichedContent(CompletionModel):
    """Scraped page detail attached to a search result"""
    summary: str = ""
    extracted_dates: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RawResult(CompletionModel):
    """Individual search result as returned by a search provider"""
    title: str = ""
    url: str
    snippet: str = ""
    relevance_score: float = 0.0
    source: str = ""
    timestamp: str = Field(default_factory=_utc_now)
    enriched_content: Optional[EnrichedContent] = None

    @property
    def is_error(self) -> bool:
        """True for the synthetic placeholder used when no real results exist"""
        return self.source == "error"


class QueryClassification(CompletionModel):
    """Result of classifying the user query"""
    domain: str = "general"
    query_type: str = "factual"
    entities: List[str] = Field(default_factory=list)
    temporal_aspect: str = "none"
    intent: str = Field(default="", validation_alias=AliasChoices("queryIntent", "intent"))
    search_strategy: str = ""
    subtopics: List[str] = Field(default_factory=list)
    potential_sources: List[str] = Field(default_factory=list)
    is_fallback: bool = False

    @field_validator("domain", "query_type", mode="before")
    @classmethod
    def normalize_label(cls, v):
        if v is None:
            return v
        return str(v).strip().lower()

    @field_validator("entities", "subtopics", "potential_sources", mode="before")
    @classmethod
    def coerce_string_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return [str(item) for item in v if item]


class PlannedSubQuery(CompletionModel):
    """One step of a search plan"""
    model_config = ConfigDict(frozen=True)

    subquery: str = Field(..., min_length=1, validation_alias=AliasChoices("query", "subquery"))
    purpose: str = ""
    expected_information: str = ""

    @field_validator("purpose", "expected_information", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return "" if v is None else str(v)


class SearchPlan(BaseModel):
    """Ordered sub-query plan. Immutable once created and never empty."""
    model_config = ConfigDict(frozen=True)

    original_query: str
    steps: Tuple[PlannedSubQuery, ...] = Field(..., min_length=1)
    information_needs: Tuple[str, ...] = ()
    synthesis_strategy: str = ""
    is_fallback: bool = False

    @property
    def subqueries(self) -> List[str]:
        return [step.subquery for step in self.steps]


class PlanningResult(BaseModel):
    """Output of the query planner"""
    classification: QueryClassification
    plan: SearchPlan


class SearchInsight(BaseModel):
    """Per-sub-query analysis kept as provenance for the trace"""
    subquery: str
    optimized_query: str
    purpose: str = ""
    result_count: int = 0
    findings: str = ""
    failed: bool = False


# Analysis State Models

class Contradiction(CompletionModel):
    description: str = ""
    result_indices: List[int] = Field(default_factory=list)


class FactValidation(CompletionModel):
    claim: str = ""
    result_indices: List[int] = Field(default_factory=list)
    validation_status: ValidationStatus = ValidationStatus.UNCERTAIN
    confidence: float = 0.0

    @field_validator("validation_status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        value = str(v or "").strip().lower()
        if value in {s.value for s in ValidationStatus}:
            return value
        return ValidationStatus.UNCERTAIN.value


class ResolvedClaim(CompletionModel):
    claim: str = ""
    resolution: str = ""
    confidence: float = 0.0
    supporting_result_indices: List[int] = Field(
        default_factory=list,
        validation_alias=AliasChoices(
            "supportingResultIndices", "sourceIndices", "resultIndices",
            "supporting_result_indices",
        ),
    )


class UnresolvedConflict(CompletionModel):
    description: str = ""
    competing_claims: List[str] = Field(default_factory=list)
    explanation: str = ""
    result_indices: List[int] = Field(default_factory=list)


class SurfaceScanOutput(CompletionModel):
    """Pass 1 contributions"""
    entities: List[Dict[str, Any]] = Field(default_factory=list)
    relationships: List[Dict[str, Any]] = Field(default_factory=list)
    clusters: List[Dict[str, Any]] = Field(default_factory=list)
    relevance_scores: Dict[str, float] = Field(default_factory=dict)
    contradictions: List[Contradiction] = Field(default_factory=list)
    key_dates: List[str] = Field(default_factory=list)


class GroundingOutput(CompletionModel):
    """Pass 2 contributions"""
    credibility_scores: Dict[str, float] = Field(default_factory=dict)
    fact_validation: List[FactValidation] = Field(default_factory=list)
    information_gaps: List[str] = Field(default_factory=list)
    missing_perspectives: List[str] = Field(default_factory=list)
    enhanced_entities: List[Dict[str, Any]] = Field(default_factory=list)
    recommended_followup_queries: List[str] = Field(default_factory=list)


class ResolutionOutput(CompletionModel):
    """Pass 3 contributions"""
    resolved_claims: List[ResolvedClaim] = Field(default_factory=list)
    confidence_scores: Dict[str, float] = Field(default_factory=dict)
    unresolved_conflicts: List[UnresolvedConflict] = Field(default_factory=list)
    synthesized_understanding: str = ""
    reliability_assessment: Dict[str, Any] = Field(default_factory=dict)
    agent_analyses: Dict[str, Any] = Field(default_factory=dict)


class AnalysisMeta(BaseModel):
    """Bookkeeping for the multi-pass analyzer"""
    passes_completed: int = Field(default=0, ge=0, le=3)
    analysis_complete: bool = False
    timestamp: Optional[str] = None
    error: Optional[str] = None
    failed_stages: List[str] = Field(default_factory=list)

    def record_pass(self, stage: int) -> None:
        """Mark a stage as succeeded. The counter only moves forward."""
        self.passes_completed = min(3, max(self.passes_completed, stage))

    def record_failure(self, stage_name: str, error: str) -> None:
        self.failed_stages.append(stage_name)
        self.error = f"{stage_name}: {error}"


class AnalysisState(BaseModel):
    """State threaded through the three analysis passes"""
    query: str = ""

    # Pass 1: surface scan
    entities: List[Dict[str, Any]] = Field(default_factory=list)
    relationships: List[Dict[str, Any]] = Field(default_factory=list)
    clusters: List[Dict[str, Any]] = Field(default_factory=list)
    relevance_scores: Dict[str, float] = Field(default_factory=dict)
    contradictions: List[Contradiction] = Field(default_factory=list)
    key_dates: List[str] = Field(default_factory=list)

    # Pass 2: contextual grounding
    credibility_scores: Dict[str, float] = Field(default_factory=dict)
    fact_validation: List[FactValidation] = Field(default_factory=list)
    information_gaps: List[str] = Field(default_factory=list)
    missing_perspectives: List[str] = Field(default_factory=list)
    enhanced_entities: List[Dict[str, Any]] = Field(default_factory=list)
    recommended_followup_queries: List[str] = Field(default_factory=list)

    # Pass 3: conflict resolution
    resolved_claims: List[ResolvedClaim] = Field(default_factory=list)
    confidence_scores: Dict[str, float] = Field(default_factory=dict)
    unresolved_conflicts: List[UnresolvedConflict] = Field(default_factory=list)
    synthesized_understanding: str = ""
    reliability_assessment: Dict[str, Any] = Field(default_factory=dict)
    agent_analyses: Dict[str, Any] = Field(default_factory=dict)

    meta: AnalysisMeta = Field(default_factory=AnalysisMeta)

    def merge(self, output: BaseModel) -> None:
        """Shallow-overwrite the fields a stage produced onto the state"""
        for name in output.model_fields_set:
            if name in AnalysisState.model_fields:
                setattr(self, name, getattr(output, name))

    def prior_analysis(self) -> Dict[str, Any]:
        """Snapshot of earlier passes for inclusion in a later prompt"""
        return self.model_dump(
            by_alias=False,
            exclude={"query", "meta"},
            mode="json",
        )


# Trace Models

class Citation(BaseModel):
    """A numbered reference binding an [id] marker to a result"""
    id: int = Field(..., ge=1)
    title: str
    url: str
    snippet: str = ""
    source: str = ""
    relevance: float = 0.0


class ThinkingStep(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    type: StepType = StepType.THINKING
    content: str
    status: StepStatus = StepStatus.IN_PROGRESS
    timestamp: str = Field(default_factory=_utc_now)


class ReasoningStep(BaseModel):
    thought: str
    action: str = ""
    outcome: str = ""


class StageProgress(BaseModel):
    current_stage: str = "Query Understanding"
    stage_number: int = 1
    total_stages: int = 5
    percent_complete: int = Field(default=0, ge=0, le=100)
    detail: str = ""


class SourceDiversity(BaseModel):
    domains: List[str] = Field(default_factory=list)
    types: List[str] = Field(default_factory=list)
    perspectives: List[str] = Field(default_factory=list)


class ThinkingProcess(BaseModel):
    """Structured record of pipeline progress shown to the caller"""
    steps: List[ThinkingStep] = Field(default_factory=list)
    active_step: Optional[str] = None
    stage_progress: StageProgress = Field(default_factory=StageProgress)
    progress: int = 0
    search_queries: List[str] = Field(default_factory=list)
    citations: List[Citation] = Field(default_factory=list)
    reasoning_path: List[ReasoningStep] = Field(default_factory=list)
    confidence_score: float = 0.0
    source_diversity: SourceDiversity = Field(default_factory=SourceDiversity)
    domain_context: str = ""
    subtopics: List[str] = Field(default_factory=list)
    information_gaps: List[str] = Field(default_factory=list)
    search_insights: List[SearchInsight] = Field(default_factory=list)


# Response Models

class SearchAnswer(BaseModel):
    """Well-formed answer returned for every query, including failures"""
    text: str
    citations: List[Citation] = Field(default_factory=list)
    search_results: List[RawResult] = Field(default_factory=list)
    thinking_process: ThinkingProcess = Field(default_factory=ThinkingProcess)
    analysis: Optional[AnalysisState] = None
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    is_error: bool = False


class SearchRequest(BaseModel):
    """Request body for POST /api/v1/search"""
    query: str = Field(..., description="User query", min_length=1)
    session_id: Optional[str] = None


class MessageRequest(BaseModel):
    """Request body for POST /api/v1/sessions/{id}/messages"""
    message: str = Field(..., min_length=1)
    enable_search: Optional[bool] = Field(
        default=None,
        description="Force web search on/off. None lets the heuristic decide",
    )
