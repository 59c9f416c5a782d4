"""
Defensive JSON extraction for completion output.

Completion providers give no structured-output guarantee: responses arrive
wrapped in prose, inside markdown fences, truncated mid-object, or empty.
Every stage that expects JSON goes through extract_json_object() and
supplies its own fallback when it returns None.
"""

import json
import logging
import re
from typing import Any, Dict, Iterator, Optional

logger = logging.getLogger("deepsearch.json_extract")

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


def _balanced_objects(text: str) -> Iterator[str]:
    """
    Yield every balanced {...} span in order of its opening brace.

    Braces inside JSON strings are ignored. Scanning stops at the first
    opening brace that is never closed, since anything after it is part
    of a truncated object.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        end = -1
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = i
                    break
        if end == -1:
            return
        yield text[start:end + 1]
        start = text.find("{", start + 1)


def _loads_object(candidate: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def extract_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Return the first JSON object embedded in a completion, or None.

    Order of attempts:
    1. The whole text, stripped
    2. The contents of each fenced code block
    3. Each balanced {...} substring, first opening brace first
    4. The span from the first "{" to the last "}"
    """
    if not text or not isinstance(text, str):
        return None

    stripped = text.strip()
    if not stripped:
        return None

    parsed = _loads_object(stripped)
    if parsed is not None:
        return parsed

    for fenced in _FENCE_PATTERN.findall(stripped):
        parsed = _loads_object(fenced.strip())
        if parsed is not None:
            return parsed

    for candidate in _balanced_objects(stripped):
        parsed = _loads_object(candidate)
        if parsed is not None:
            return parsed

    first, last = stripped.find("{"), stripped.rfind("}")
    if first != -1 and last > first:
        parsed = _loads_object(stripped[first:last + 1])
        if parsed is not None:
            return parsed

    logger.debug(f"No JSON object found in completion ({len(stripped)} chars)")
    return None
