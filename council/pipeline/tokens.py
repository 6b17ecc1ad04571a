"""In-process ``{{token}}`` substitution.

Used directly by ``TokenPromptResolver`` and as the fallback when the
configured prompt resolver is missing or fails.
"""

import logging
import re
from typing import Any, Dict, Mapping, Optional

from council.utils.helpers import get_path, stringify

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][\w.\-]*)\s*\}\}")

MAX_NESTING_DEPTH = 5

# camelCase names accepted in templates
TOKEN_ALIASES = {
    "previousOutput": "previous_output",
    "previousResponse": "previous_response",
    "phaseInput": "phase_input",
    "pipelineInput": "input",
}

_MISSING = object()


class TokenDepthError(ValueError):
    """Raised when nested tokens keep expanding past the depth cap."""


def lookup_token(name: str, context: Mapping[str, Any], default: Any = _MISSING) -> Any:
    """
    Resolve a token name against the resolution context.

    ``variables.x`` and ``globals.x`` are plain dotted paths; a bare name
    falls back to run variables, then globals.
    """
    head, _, rest = name.partition(".")
    head = TOKEN_ALIASES.get(head, head)
    path = f"{head}.{rest}" if rest else head

    value = get_path(context, path, _MISSING)
    if value is not _MISSING:
        return value
    if not rest:
        for scope in ("variables", "globals"):
            value = get_path(context, f"{scope}.{head}", _MISSING)
            if value is not _MISSING:
                return value
    return default


def has_tokens(text: Optional[str]) -> bool:
    return bool(text) and TOKEN_PATTERN.search(text) is not None


def substitute_tokens(
    template: str,
    context: Mapping[str, Any],
    preserve_unresolved: bool = True,
    max_depth: int = MAX_NESTING_DEPTH,
) -> str:
    """
    Replace ``{{path}}`` tokens with values from ``context``.

    Substituted values may themselves contain tokens; those are resolved on
    further passes, up to ``max_depth`` levels of nesting.

    Args:
        template: Text containing tokens
        context: Resolution context (input, previous_output, variables, ...)
        preserve_unresolved: Keep unknown tokens verbatim instead of blanking them
        max_depth: Maximum nesting depth

    Returns:
        Resolved text

    Raises:
        TokenDepthError: If resolution is still expanding after max_depth levels
    """
    if not template:
        return ""

    text = template
    for _ in range(max_depth + 1):
        substituted = False

        def replace(match):
            nonlocal substituted
            value = lookup_token(match.group(1), context)
            if value is _MISSING:
                return match.group(0) if preserve_unresolved else ""
            substituted = True
            return stringify(value)

        text = TOKEN_PATTERN.sub(replace, text)
        if not substituted or not has_tokens(text):
            return text

    raise TokenDepthError(f"Token nesting exceeds maximum depth of {max_depth}")


def build_resolution_context(
    *,
    input_value: Any,
    previous_output: Any,
    variables: Dict[str, Any],
    globals_: Dict[str, Any],
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Assemble the mapping tokens are resolved against."""
    context = {
        "input": input_value,
        "previous_output": previous_output,
        "variables": variables,
        "globals": globals_,
    }
    if extra:
        context.update(extra)
    return context
