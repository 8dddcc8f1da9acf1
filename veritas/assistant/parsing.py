from __future__ import annotations

"""
Strict parsing of completion output into a raw action object.

Design intent:
- Accept exactly one JSON object, optionally wrapped in a single code fence.
- Surrounding prose, truncated objects and non-finite numbers are not repaired.
- Return None for anything else so the engine can fall back to NONE.
"""

import json
import re
from typing import Any

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} in completion output")


def parse_json_object(raw: str) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        data = json.loads(raw, parse_constant=_reject_constant)
    except ValueError:
        return None
    if isinstance(data, dict):
        return data
    return None


def strip_code_fences(raw: str) -> str:
    return _FENCE_RE.sub("", (raw or "").strip())


def parse_completion_output(raw: str) -> dict[str, Any] | None:
    data = parse_json_object(strip_code_fences(raw))
    if data is None or "action" not in data:
        return None
    return data
