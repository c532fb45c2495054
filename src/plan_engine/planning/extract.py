"""Locate and decode the JSON object inside noisy oracle text.

Fallback chain: fenced code block, then the first balanced-brace span, then
fail with `PlanParseError`. Nothing else in the package inspects raw oracle
text.
"""

from __future__ import annotations

import json
import re
from typing import Any

from plan_engine.errors import PlanParseError

FENCED_BLOCK = re.compile(r"```[ \t]*(?:json|JSON)?[ \t]*\n?([\s\S]*?)```")


def extract_json_object(text: str) -> dict[str, Any]:
    span = locate_json_span(text)
    if span is None:
        raise PlanParseError("Oracle response did not contain a JSON object")
    try:
        parsed = json.loads(span)
    except json.JSONDecodeError as exc:
        raise PlanParseError(f"Oracle response JSON could not be parsed: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise PlanParseError("Oracle response JSON must be an object")
    return parsed


def locate_json_span(text: str) -> str | None:
    if not isinstance(text, str) or not text.strip():
        return None

    fenced = FENCED_BLOCK.search(text)
    if fenced:
        span = find_balanced_object(fenced.group(1))
        if span is not None:
            return span

    return find_balanced_object(text)


def find_balanced_object(text: str) -> str | None:
    """Return the first `{...}` span whose braces balance, ignoring braces in strings."""
    start = text.find("{")
    while start != -1:
        end = _matching_brace(text, start)
        if end is not None:
            return text[start : end + 1]
        start = text.find("{", start + 1)
    return None


def _matching_brace(text: str, start: int) -> int | None:
    depth = 0
    in_string = False
    escaped = False
    for position in range(start, len(text)):
        char = text[position]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return position
    return None
