"""
Prompt templates for the Deep Search pipeline

Every structured prompt ends with an explicit JSON schema using camelCase
keys. Completion output is still treated as untrusted text and parsed with
json_extract.extract_json_object().
"""

import json
from typing import Any, Dict, List, Optional, Sequence

from .models import QueryClassification, RawResult


def format_results_for_prompt(results: Sequence[RawResult], limit: Optional[int] = None) -> str:
    """Render results as numbered blocks. Numbers are 1-based and match citation ids."""
    if not results:
        return "No search results available."

    blocks = []
    for index, result in enumerate(results[:limit] if limit else results, 1):
        lines = [
            f'[{index}] "{result.title}"',
            f"URL: {result.url}",
            f"Source: {result.source or 'unknown'}",
            f"Snippet: {result.snippet or 'No snippet available'}",
        ]
        if result.timestamp:
            lines.append(f"Date: {result.timestamp[:10]}")

        enriched = result.enriched_content
        if enriched is not None:
            if enriched.summary:
                lines.append(f"Summary: {enriched.summary}")
            if enriched.extracted_dates:
                lines.append(f"Extracted Dates: {', '.join(enriched.extracted_dates)}")
            for key in ("description", "keywords", "author", "publishedDate"):
                value = enriched.metadata.get(key)
                if value:
                    lines.append(f"{key[0].upper()}{key[1:]}: {value}")

        blocks.append("\n".join(lines))

    return "\n\n".join(blocks)


def _dump(data: Dict[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


# =============================================================================
# Planner
# =============================================================================

def classification_prompt(query: str) -> str:
    return f"""You are an expert search query analyzer.

Analyze this search query and identify:
1. The domain (e.g., technology, entertainment, science, health, history, sports, politics, finance, education)
2. The query type (factual, explanatory, comparative, instructional, opinion)
3. Key entities that need to be researched (specific names, concepts, products, etc.)
4. Any temporal aspects (recent, historical, future, none)
5. Query intent (informational, navigational, transactional)
6. Specific subtopics or aspects that should be covered
7. Search strategy (focused, comprehensive, exploratory)
8. Potential information sources (academic, news, technical documentation, etc.)

Query: "{query}"

Return ONLY a valid JSON object with the following format (no markdown, no code blocks, just the JSON):
{{
  "domain": "string",
  "queryType": "string",
  "entities": ["string"],
  "temporalAspect": "string",
  "queryIntent": "string",
  "subtopics": ["string"],
  "searchStrategy": "string",
  "potentialSources": ["string"]
}}"""


def plan_prompt(query: str, classification: QueryClassification) -> str:
    return f"""You are an expert search planner.

For the query: "{query}"

Domain: {classification.domain}
Query type: {classification.query_type}
Entities: {', '.join(classification.entities) or 'none identified'}
Intent: {classification.intent or 'informational'}
Temporal aspect: {classification.temporal_aspect}

Create a search plan that includes:
1. A list of 3-5 specific search queries, ordered from most specific to most general
2. Key information that needs to be found for each query
3. A strategy for synthesizing the information into a coherent answer

Return ONLY a valid JSON object with the following format:
{{
  "searchQueries": [
    {{"query": "string", "purpose": "string", "expectedInformation": "string"}}
  ],
  "informationNeeds": ["string"],
  "synthesisStrategy": "string"
}}"""


# =============================================================================
# Dispatcher
# =============================================================================

def subquery_analysis_prompt(
    subquery: str,
    purpose: str,
    expected_information: str,
    results: Sequence[RawResult]
) -> str:
    return f"""You are an expert search analyst.

Query: "{subquery}"
Purpose of this search: {purpose or 'general coverage'}
Expected information: {expected_information or 'not specified'}

SEARCH RESULTS ({len(results)} total results):
{format_results_for_prompt(results)}

In at most five sentences, state what these results establish for the purpose above,
note any dates or figures that disagree between results (cite result numbers),
and name what is still missing. Plain text only."""


# =============================================================================
# Multi-pass analyzer
# =============================================================================

def surface_scan_prompt(query: str, results: Sequence[RawResult]) -> str:
    return f"""
# Task: Surface Scanning Pass
You are performing the initial surface scanning pass on search results for the query: "{query}"

## Instructions
1. Identify key entities, concepts, dates, and numerical data
2. Build a basic entity relationship graph
3. Flag any obvious contradictions or inconsistencies, listing the result numbers on each side
4. Identify potential result clusters by topic
5. Assess initial relevance of each result

## Search Results
{format_results_for_prompt(results)}

## Output Format (JSON)
Respond ONLY with a JSON object with the following structure:
{{
  "entities": [{{"name": "entity name", "type": "person|organization|location|concept|date", "mentions": [1, 5, 8]}}],
  "relationships": [{{"from": "entity1", "to": "entity2", "type": "relationship type"}}],
  "clusters": [{{"topic": "topic name", "resultIndices": [1, 2, 5]}}],
  "relevanceScores": {{"1": 0.95, "2": 0.85}},
  "contradictions": [{{"description": "contradiction description", "resultIndices": [2, 7]}}],
  "keyDates": ["2023-04-15", "2021-08-22"]
}}
"""


def grounding_prompt(query: str, results: Sequence[RawResult], prior: Dict[str, Any]) -> str:
    return f"""
# Task: Contextual Grounding Pass
You are performing the second analytical pass (contextual grounding) on search results for: "{query}"

## First Pass Results
{_dump(prior)}

## Instructions
1. Cross-reference claims across different search results
2. Validate factual assertions against your knowledge base
3. Calculate credibility scores for each source based on:
   - Domain authority
   - Publication date
   - Consistency with other sources
   - Citation patterns
4. Identify information gaps and missing perspectives

## Search Results
{format_results_for_prompt(results)}

## Output Format (JSON)
Respond ONLY with a JSON object with the following structure:
{{
  "credibilityScores": {{"1": 0.92, "2": 0.78}},
  "factValidation": [
    {{"claim": "claim text", "resultIndices": [1, 3], "validationStatus": "confirmed|disputed|uncertain", "confidence": 0.85}}
  ],
  "informationGaps": ["gap description 1", "gap description 2"],
  "missingPerspectives": ["perspective 1", "perspective 2"],
  "enhancedEntities": [
    {{"name": "entity name", "type": "person|organization|location|concept", "validatedInfo": {{}}, "confidence": 0.9}}
  ],
  "recommendedFollowupQueries": ["query 1", "query 2"]
}}
"""


def resolution_prompt(query: str, results: Sequence[RawResult], prior: Dict[str, Any]) -> str:
    return f"""
# Task: Conflict Resolution Pass
You are performing the final analytical pass (conflict resolution) on search results for: "{query}"

## Previous Analysis Results
{_dump(prior)}

## Instructions
1. Resolve contradictions identified in previous passes
2. Determine the most reliable information when sources disagree
3. Generate confidence scores for key conclusions
4. Create a synthesized understanding that accounts for all credible information
5. Provide explicit reasoning for how conflicts were resolved
6. Every contradiction must appear either as a resolved claim or as an unresolved conflict,
   and must keep the result numbers of every side

## Original Search Results
{format_results_for_prompt(results)}

## Output Format (JSON)
Respond ONLY with a JSON object with the following structure:
{{
  "resolvedClaims": [
    {{"claim": "claim text", "resolution": "resolution explanation", "confidence": 0.88, "supportingResultIndices": [1, 5, 8]}}
  ],
  "confidenceScores": {{"claim1": 0.95, "claim2": 0.65}},
  "unresolvedConflicts": [
    {{"description": "conflict description", "competingClaims": ["claim 1", "claim 2"], "explanation": "why this remains unresolved", "resultIndices": [2, 7]}}
  ],
  "synthesizedUnderstanding": "comprehensive explanation that resolves conflicts and integrates information",
  "reliabilityAssessment": {{
    "overallConfidence": 0.82,
    "keyClaims": [
      {{"claim": "claim text", "confidence": 0.9, "supportingEvidence": "evidence summary"}}
    ]
  }}
}}
"""


def chain_of_agents_prompt(query: str, results: Sequence[RawResult], prior: Dict[str, Any]) -> str:
    return f"""
# Task: Advanced Conflict Resolution using Chain-of-Agents
You will act as a coordinator for a team of specialized agents analyzing search results for: "{query}"

## Previous Analysis
{_dump(prior)}

## Chain-of-Agents Protocol
Analyze the search results by simulating these specialized agents:

1. First Agent: Fact Verification Agent
   - Focus: Verify factual claims against your knowledge
   - Method: Cross-reference dates, statistics, and events
   - Output: Fact verification report with confidence scores

2. Second Agent: Temporal Consistency Agent
   - Focus: Analyze chronological consistency
   - Method: Create timeline, identify anachronisms
   - Output: Temporal analysis with inconsistency resolution

3. Third Agent: Source Authority Agent
   - Focus: Evaluate credibility of each source
   - Method: Domain reputation analysis, publication patterns
   - Output: Authority scores with specific reasoning

4. Fourth Agent: Synthesis Agent
   - Focus: Integrate all agent findings
   - Method: Weighted consensus
   - Output: Final integrated analysis

## Search Results
{format_results_for_prompt(results)}

## Instructions
1. Run each agent analysis IN SEQUENCE
2. Conclude with the Synthesis Agent's final analysis
3. Keep the result numbers of every side of every conflict
4. Format the final output as a JSON object

## Output Format (JSON)
{{
  "agentAnalyses": {{
    "factVerification": {{}},
    "temporalConsistency": {{}},
    "sourceAuthority": {{}}
  }},
  "synthesizedAnalysis": {{
    "resolvedClaims": [
      {{"claim": "claim text", "resolution": "resolution explanation", "confidence": 0.88, "supportingResultIndices": [1, 5]}}
    ],
    "confidenceScores": {{"claim1": 0.95, "claim2": 0.65}},
    "unresolvedConflicts": [
      {{"description": "conflict description", "competingClaims": ["claim 1", "claim 2"], "resultIndices": [2, 7]}}
    ],
    "synthesizedUnderstanding": "comprehensive explanation"
  }}
}}
"""


# =============================================================================
# Synthesizer
# =============================================================================

def synthesis_prompt(
    query: str,
    results: Sequence[RawResult],
    analysis_summary: str,
    conflicts: List[str]
) -> str:
    conflict_block = "\n".join(f"- {c}" for c in conflicts) if conflicts else "- none recorded"
    return f"""You are a helpful assistant providing direct, informative responses based on search results.

When answering the query: "{query}"

Carefully consider ALL of the following search results:

{format_results_for_prompt(results)}

## Prior Analysis
{analysis_summary or 'No structured analysis available.'}

## Unresolved Conflicts
{conflict_block}

## Instructions
1. State the direct answer first, in one or two sentences
2. Weight information by the credibility and confidence scores above
3. Present each unresolved conflict explicitly with both sides and their sources; do not silently pick one
4. Cite sources with bracket numbers like [1] or [2][5] that match the numbered results above
5. Only use numbers between 1 and {len(results)}
6. Never include a URL that does not appear in the results above
7. If the results do not answer the question, say so plainly

Your answer:"""


def conversation_prompt(history: List[Dict[str, Any]], message: str) -> str:
    lines = [
        "You are a helpful assistant in an ongoing conversation.",
        "",
        "Conversation so far:",
    ]
    for turn in history:
        role = turn.get("role", "user")
        lines.append(f"{role}: {turn.get('content', '')}")
    lines.extend(["", f"user: {message}", "assistant:"])
    return "\n".join(lines)
