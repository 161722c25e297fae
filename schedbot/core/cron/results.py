"""Agent result payload parsing.

The job API's ``result`` object has no fixed shape: ``answer``, ``output``,
``text``, ``content``, or the answer buried inside nested JSON. These helpers
pull a readable text and a failure reason out of whatever came back.
"""

from __future__ import annotations

import json
import re
from typing import Any

_TEXT_KEYS = ("answer", "output", "text", "content")
_NESTED_ANSWER_RE = re.compile(r'"(?:answer|final_answer|output)"\s*:\s*"((?:[^"\\]|\\.)*)"')

EMPTY_RESULT_ERROR = (
    "Agent returned empty results. Check your prompt or engine configuration."
)
GENERIC_RUN_ERROR = "Run failed"


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def _dump(value: Any, indent: int | None = None) -> str:
    return json.dumps(value, indent=indent, ensure_ascii=False, default=str)


def extract_result_text(result: Any) -> str | None:
    """Best-effort human-readable text from a run result, or None if empty."""
    if result is None or result == "" or result == {} or result == []:
        return None
    if isinstance(result, str):
        return result

    if isinstance(result, dict):
        for key in _TEXT_KEYS:
            value = result.get(key)
            if isinstance(value, str) and value:
                return value

        if all(_is_blank(v) for v in result.values()):
            return None

        match = _NESTED_ANSWER_RE.search(_dump(result))
        if match:
            try:
                return json.loads(f'"{match.group(1)}"')
            except ValueError:
                return match.group(1)

    try:
        return _dump(result, indent=2)
    except (TypeError, ValueError):
        return str(result)


def extract_error(completed: dict[str, Any]) -> str:
    """Failure reason for a job the API reported as failed.

    An explicit error (on the result, then on the run) wins; an all-empty
    result gets its own message; anything else is a generic failure.
    """
    result = completed.get("result")
    if isinstance(result, dict):
        if "error" in result:
            return str(result["error"])
    top_level = completed.get("error")
    if isinstance(top_level, str) and top_level:
        return top_level
    if isinstance(result, dict) and all(_is_blank(v) for v in result.values()):
        return EMPTY_RESULT_ERROR
    return GENERIC_RUN_ERROR
