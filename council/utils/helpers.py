import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

_MISSING = object()


def _debug_runs_enabled() -> bool:
    value = os.environ.get("COUNCIL_DEBUG_RUNS", "")
    return value.lower() not in {"", "0", "false", "no"}


def debug_run_log(message: str) -> None:
    if not _debug_runs_enabled():
        return
    logger.info(message)


def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def truncate_text(text: Optional[str], limit: int = 500) -> str:
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + f"... [{len(text) - limit} more chars]"


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token estimate (about four characters per token)."""
    if not text:
        return 0
    return max(1, (len(text) + 3) // 4)


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """
    Resolve a dotted path such as ``variables.summary`` against nested
    mappings, objects and lists.
    """
    current = data
    for part in path.split("."):
        if current is None:
            return default
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else _MISSING
        else:
            current = getattr(current, part, _MISSING)
        if current is _MISSING:
            return default
    return current


def stringify(value: Any) -> str:
    """Render a step value as prompt text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    import json

    try:
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)
