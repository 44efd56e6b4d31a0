"""Shared utility functions used across eventscout modules."""
from __future__ import annotations

import json
import math
import re
from typing import Any

_MISSING = object()

_JSON_BLOCK_RE = re.compile(r"\{.*\}", re.DOTALL)


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def extract_json_block(text: str) -> str | None:
    """Return the outermost ``{...}`` span of *text*, or None."""
    m = _JSON_BLOCK_RE.search(text or "")
    return m.group(0) if m else None


def clamp_int(value: Any, low: int = 0, high: int = 100, default: int = 0) -> int:
    """Coerce *value* to a rounded int within [low, high]."""
    try:
        num = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(num):
        return default
    if math.isinf(num):
        return high if num > 0 else low
    return int(max(low, min(high, round(num))))
