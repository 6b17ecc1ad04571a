"""Output parsing for action responses.

Parses raw model text into the action's declared shape: free text, a JSON
value, or an array.
"""

import json
import logging
import re
from typing import Any, List, Optional

from council.pipeline.schema import OutputShape

logger = logging.getLogger(__name__)

_LIST_MARKER = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")


class OutputParseError(ValueError):
    """Raised when a response cannot be parsed into the declared shape."""


def parse_output(raw: Any, shape: OutputShape) -> Any:
    """
    Parse a raw response into ``shape``.

    Non-string values (for example outputs of non-agent actions) are passed
    through when they already have the requested shape.

    Raises:
        OutputParseError: If the response does not match the shape
    """
    shape = OutputShape(shape)

    if shape == OutputShape.TEXT:
        if isinstance(raw, str):
            return raw.strip()
        return raw

    if shape == OutputShape.JSON:
        if isinstance(raw, (dict, list)):
            return raw
        extracted = extract_json(str(raw or ""))
        if extracted is None:
            raise OutputParseError("No valid JSON found in output")
        return json.loads(extracted)

    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict):
        raise OutputParseError("Expected an array but got an object")
    return _parse_array(str(raw or ""))


def _parse_array(text: str) -> List[Any]:
    extracted = extract_json(text)
    if extracted is not None:
        value = json.loads(extracted)
        if isinstance(value, list):
            return value
        if isinstance(value, dict):
            for candidate in value.values():
                if isinstance(candidate, list):
                    return candidate

    items = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("```"):
            continue
        items.append(_LIST_MARKER.sub("", stripped, count=1))
    if not items:
        raise OutputParseError("No array items found in output")
    return items


def extract_json(text: str) -> Optional[str]:
    """
    Extract JSON from text, handling fenced code blocks and plain JSON.
    """
    # Prefer fenced JSON blocks first
    fenced_pattern = r"```(?:json|[a-zA-Z0-9_-]+)?\s*([\s\S]*?)```"
    for match in re.finditer(fenced_pattern, text, flags=re.IGNORECASE):
        candidate = match.group(1).strip()
        if not candidate or candidate[0] not in "{[":
            continue
        try:
            json.loads(candidate)
            return candidate
        except json.JSONDecodeError:
            continue

    # Whole text
    stripped = text.strip()
    if stripped and stripped[0] in "{[":
        try:
            json.loads(stripped)
            return stripped
        except json.JSONDecodeError:
            pass

    # First balanced object or array
    for opener, closer in (("{", "}"), ("[", "]")):
        blob = _extract_balanced(text, opener, closer)
        if blob:
            return blob

    return None


def _extract_balanced(text: str, opener: str, closer: str) -> Optional[str]:
    """Extract first balanced JSON blob delimited by opener/closer."""
    start_idx = text.find(opener)
    while start_idx != -1:
        depth = 0
        for idx in range(start_idx, len(text)):
            char = text[idx]
            if char == opener:
                depth += 1
            elif char == closer:
                depth -= 1
                if depth == 0:
                    candidate = text[start_idx : idx + 1]
                    try:
                        json.loads(candidate)
                        return candidate
                    except json.JSONDecodeError:
                        break
        start_idx = text.find(opener, start_idx + 1)
    return None
