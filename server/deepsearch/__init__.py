"""
Deep Search Module

Answers questions from live web search:
- Planner: classifies the query and decomposes it into 3-5 sub-queries
- Dispatcher: runs the sub-queries in parallel and merges the results
- Analyzer: three completion passes (surface scan, grounding, conflict resolution)
- Synthesizer: cited answer plus source diversity and confidence
- Trace: five-stage ThinkingProcess for live progress

Session state is kept by the hierarchical ContextCache, which stores a
context whole or in chunks depending on its estimated token size.
"""

from .analyzer import AnalysisMetricsRegistry, MultiPassAnalyzer
from .context_cache import CharRatioEstimator, ContextCache, TokenEstimator
from .conversation import ConversationService, is_search_query
from .dispatcher import DispatchResult, SearchDispatcher
from .kv_store import InMemoryTTLStore, KeyValueStore, RedisKeyValueStore, build_store
from .models import (
    AnalysisState,
    Citation,
    RawResult,
    SearchAnswer,
    SearchPlan,
    ThinkingProcess,
)
from .orchestrator import SearchPipeline
from .planner import QueryPlanner
from .providers import (
    CompanionSearchProvider,
    CompletionGateway,
    CompletionProvider,
    GeminiCompletionProvider,
    OllamaCompletionProvider,
    SearchProvider,
    SearXNGSearchProvider,
)
from .synthesizer import Synthesizer
from .trace import ThinkingTracker

__all__ = [
    # Pipeline
    "SearchPipeline",
    "QueryPlanner",
    "SearchDispatcher",
    "DispatchResult",
    "MultiPassAnalyzer",
    "AnalysisMetricsRegistry",
    "Synthesizer",
    "ThinkingTracker",
    # Sessions
    "ConversationService",
    "is_search_query",
    "ContextCache",
    "TokenEstimator",
    "CharRatioEstimator",
    "KeyValueStore",
    "InMemoryTTLStore",
    "RedisKeyValueStore",
    "build_store",
    # Providers
    "CompletionProvider",
    "CompletionGateway",
    "OllamaCompletionProvider",
    "GeminiCompletionProvider",
    "SearchProvider",
    "CompanionSearchProvider",
    "SearXNGSearchProvider",
    # Models
    "AnalysisState",
    "Citation",
    "RawResult",
    "SearchAnswer",
    "SearchPlan",
    "ThinkingProcess",
]
