"""
Synthesizer - Cited Answer Generation

Turns the final AnalysisState and the top-ranked results into an answer
with inline [n] markers, a matching 1-based Citation list, source
diversity metrics and an overall confidence score. It also drives the
last two trace stages (Information Synthesis, Citation & Formatting).

Post-processing guarantees on the answer text:
- [n] markers outside 1..len(citations) are removed
- URLs that do not appear in the result set are removed
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set, Tuple

from .models import (
    AnalysisState,
    Citation,
    QueryClassification,
    RawResult,
    SourceDiversity,
    StepStatus,
)
from .prompts import synthesis_prompt
from .providers import hostname
from .trace import ThinkingTracker

logger = logging.getLogger("deepsearch.synthesizer")

MAX_CITATIONS = 20

_MARKDOWN_LINK = re.compile(r"\[([^\]]+)\]\((https?://[^)\s]+)\)")
_BARE_URL = re.compile(r"https?://[^\s<>\"'\)\]]+")
# Citation markers are 1-3 digits; longer bracketed numbers such as [2024] are text
_MARKER = re.compile(r"\[(\d{1,3}(?:\s*,\s*\d{1,3})*)\]")
_TRAILING_PUNCTUATION = ".,;:!?"


@dataclass
class SynthesisOutput:
    """What the synthesizer hands back to the pipeline"""
    text: str
    citations: List[Citation]
    confidence_score: float
    source_diversity: SourceDiversity
    used_fallback: bool = False
    insufficient_information: bool = False
    thinking: List[str] = field(default_factory=list)


def build_citations(results: Sequence[RawResult], limit: int = MAX_CITATIONS) -> List[Citation]:
    """One citation per result, in result order, ids starting at 1"""
    return [
        Citation(
            id=index,
            title=result.title or result.url,
            url=result.url,
            snippet=result.snippet,
            source=result.source or hostname(result.url),
            relevance=result.relevance_score,
        )
        for index, result in enumerate(results[:min(limit, MAX_CITATIONS)], 1)
    ]


def split_thinking(text: str) -> Tuple[List[str], str]:
    """
    Separate "Thinking: ... Answer: ..." output from reasoning models.

    Returns (thinking lines, answer). Text without an Answer: section is
    returned unchanged as the answer.
    """
    match = re.search(r"(?im)^\s*answer\s*:\s*", text)
    if not match or not re.search(r"(?i)thinking\s*:", text[:match.start()]):
        return [], text

    thinking_block = re.sub(r"(?i)^\s*thinking\s*:\s*", "", text[:match.start()].strip())
    thinking = [line.strip() for line in thinking_block.splitlines() if line.strip()]
    return thinking, text[match.end():].strip()


def sanitize_answer(text: str, allowed_urls: Set[str], citation_count: int) -> str:
    """Drop invented URLs and out-of-range citation markers"""

    def keep_link(match: re.Match) -> str:
        label, url = match.group(1), match.group(2)
        return match.group(0) if url in allowed_urls else label

    def keep_url(match: re.Match) -> str:
        url = match.group(0)
        stripped = url.rstrip(_TRAILING_PUNCTUATION)
        suffix = url[len(stripped):]
        return url if stripped in allowed_urls else suffix

    def keep_marker(match: re.Match) -> str:
        numbers = [int(n) for n in re.split(r"\s*,\s*", match.group(1))]
        valid = [n for n in numbers if 1 <= n <= citation_count]
        if not valid:
            return ""
        return "[" + ", ".join(str(n) for n in valid) + "]"

    text = _MARKDOWN_LINK.sub(keep_link, text)
    text = _BARE_URL.sub(keep_url, text)
    text = _MARKER.sub(keep_marker, text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r" +([.,;:])", r"\1", text)
    return text.strip()


def source_types(results: Sequence[RawResult], domain: str) -> List[str]:
    """Infer kinds of sources from the domain and the result urls"""
    types = ["article"]
    domain_types = {
        "history": ["reference", "academic"],
        "technology": ["review", "technical"],
        "science": ["research", "academic"],
        "health": ["medical", "advisory"],
        "entertainment": ["news", "review"],
    }
    for kind in domain_types.get((domain or "").lower(), ["reference", "news"]):
        if kind not in types:
            types.append(kind)

    for result in results:
        url = result.url.lower()
        if "wikipedia" in url or "britannica" in url:
            kind = "encyclopedia"
        elif "youtube" in url or "vimeo" in url:
            kind = "video"
        elif "scholar" in url or "research" in url or ".edu" in url:
            kind = "academic"
        elif "news" in url or "cnn" in url or "bbc" in url:
            kind = "news"
        elif ".gov" in url:
            kind = "government"
        else:
            continue
        if kind not in types:
            types.append(kind)
    return types


def source_perspectives(results: Sequence[RawResult], domain: str, query_type: str) -> List[str]:
    """Infer which perspectives the result set represents"""
    perspectives = ["informational"]

    def add(*values):
        for value in values:
            if value not in perspectives:
                perspectives.append(value)

    if query_type == "comparative":
        add("comparative")
    elif query_type == "opinion":
        add("opinion", "subjective")

    domain = (domain or "").lower()
    if domain == "history":
        add("historical")
        if any("different perspectives" in (r.snippet or "").lower() for r in results):
            add("multiple-viewpoints")
    elif domain == "politics":
        add("political", "multiple-viewpoints")
    elif domain == "science":
        add("scientific", "evidence-based")
    return perspectives


def compute_confidence(usable_results: int, passes_completed: int) -> float:
    """Blend of result volume and analysis completeness, in [0, 1]"""
    score = 0.1 + 0.5 * min(usable_results / 10, 1.0) + 0.4 * (min(passes_completed, 3) / 3)
    if usable_results == 0:
        score = min(score, 0.2)
    return round(min(score, 1.0), 2)


class Synthesizer:
    """
    Produces the final cited answer.

    Features:
    - Weights information by the credibility/confidence from analysis
    - Surfaces unresolved conflicts instead of picking a side
    - Deterministic insufficient-information answer when only the
      synthetic error result is available
    - Snippet compilation fallback when the completion call fails
    """

    def __init__(self, model: Optional[str] = None, max_citations: int = MAX_CITATIONS):
        self.model = model
        self.max_citations = max(1, min(max_citations, MAX_CITATIONS))

    async def synthesize(
        self,
        query: str,
        state: AnalysisState,
        results: Sequence[RawResult],
        classification: QueryClassification,
        tracker: ThinkingTracker,
        llm
    ) -> SynthesisOutput:
        """
        Synthesize the answer for a query.

        Args:
            query: Original user query
            state: Final analysis state
            results: Ranked, deduplicated results (never empty)
            classification: Planner classification, used for diversity metrics
            tracker: Trace to update for the last two stages
            llm: Completion gateway

        Returns:
            SynthesisOutput with len(citations) == min(max_citations, len(results))
        """
        top = list(results[:self.max_citations])
        citations = build_citations(top, self.max_citations)
        usable = [r for r in results if not r.is_error]

        tracker.start_stage(4, "Combining analysed sources into an answer")
        await tracker.notify()

        thinking: List[str] = []
        used_fallback = False
        insufficient = not usable

        if insufficient:
            text = self._insufficient_information_answer(query, top)
        else:
            prompt = synthesis_prompt(
                query,
                top,
                self._analysis_summary(state),
                self._conflict_lines(state),
            )
            try:
                raw = await llm.complete(prompt, model=self.model, stage="synthesis")
                thinking, text = split_thinking(raw.strip())
                if not text:
                    raise ValueError("empty synthesis")
            except Exception as e:
                logger.error(f"Synthesis failed, compiling snippets instead: {e}")
                text = self._fallback_synthesis(query, top, state)
                used_fallback = True

        for line in thinking[:10]:
            tracker.add_step(line, status=StepStatus.COMPLETE)
        tracker.complete_stage()

        tracker.start_stage(5, "Validating citation markers and links")
        text = sanitize_answer(text, {r.url for r in results}, len(citations))

        diversity = SourceDiversity(
            domains=sorted({hostname(r.url) for r in usable if hostname(r.url)}),
            types=source_types(usable, classification.domain),
            perspectives=source_perspectives(usable, classification.domain, classification.query_type),
        )
        confidence = compute_confidence(len(usable), state.meta.passes_completed)

        process = tracker.process
        process.citations = citations
        process.source_diversity = diversity
        process.confidence_score = confidence
        process.information_gaps = list(state.information_gaps)
        tracker.add_reasoning(
            thought=f"Synthesized answer from {len(usable)} usable results",
            action="Attached citations and validated markers",
            outcome=f"{len(citations)} citations, confidence {confidence}",
        )

        logger.info(
            f"Synthesis complete: {len(citations)} citations, confidence={confidence}, "
            f"fallback={used_fallback}, insufficient={insufficient}"
        )

        return SynthesisOutput(
            text=text,
            citations=citations,
            confidence_score=confidence,
            source_diversity=diversity,
            used_fallback=used_fallback,
            insufficient_information=insufficient,
            thinking=thinking,
        )

    def _analysis_summary(self, state: AnalysisState) -> str:
        lines = []
        if state.synthesized_understanding:
            lines.append(f"Understanding: {state.synthesized_understanding}")
        if state.credibility_scores:
            ranked = sorted(state.credibility_scores.items(), key=lambda kv: kv[1], reverse=True)
            lines.append("Source credibility: " + ", ".join(f"[{k}] {v:.2f}" for k, v in ranked[:10]))
        for claim in state.resolved_claims[:10]:
            refs = "".join(f"[{i}]" for i in claim.supporting_result_indices)
            lines.append(f"Resolved ({claim.confidence:.2f}): {claim.claim} {refs}".rstrip())
        for fact in state.fact_validation[:10]:
            refs = "".join(f"[{i}]" for i in fact.result_indices)
            lines.append(f"Fact {fact.validation_status.value} ({fact.confidence:.2f}): {fact.claim} {refs}".rstrip())
        if state.key_dates:
            lines.append("Key dates: " + ", ".join(state.key_dates[:10]))
        if state.information_gaps:
            lines.append("Information gaps: " + "; ".join(state.information_gaps[:5]))
        return "\n".join(lines)

    def _conflict_lines(self, state: AnalysisState) -> List[str]:
        lines = []
        for conflict in state.unresolved_conflicts:
            refs = "".join(f"[{i}]" for i in conflict.result_indices)
            claims = " vs ".join(conflict.competing_claims)
            text = conflict.description or claims
            if claims and conflict.description:
                text = f"{conflict.description} ({claims})"
            lines.append(f"{text} {refs}".rstrip())
        return lines

    def _insufficient_information_answer(self, query: str, top: Sequence[RawResult]) -> str:
        reason = top[0].snippet if top else "No search results were returned."
        return (
            f'I could not find enough reliable information to answer "{query}". '
            f"The web search did not return usable results [1]. {reason}\n\n"
            "Try rephrasing the question or asking again later."
        )

    def _fallback_synthesis(self, query: str, top: Sequence[RawResult], state: AnalysisState) -> str:
        """Deterministic compilation of the best snippets when synthesis fails"""
        lines = [f'Here is what the sources report about "{query}":', ""]
        for index, result in enumerate(top[:5], 1):
            if result.is_error or not result.snippet:
                continue
            lines.append(f"- {result.snippet.strip()} [{index}]")

        conflicts = self._conflict_lines(state)
        if conflicts:
            lines.extend(["", "Sources disagree on:"])
            lines.extend(f"- {c}" for c in conflicts[:5])

        return "\n".join(lines)
