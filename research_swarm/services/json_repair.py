# =============================================================================
# Lenient JSON Parsing — Recover Structured Output from Messy Model Text
# =============================================================================
#
# Structured-output calls are asked for JSON, but models still wrap it in
# markdown fences, add prose around it, or get truncated mid-object.
# `parse_lenient()` tries four strategies in order and only gives up
# (raising Unparseable) when all of them fail:
#
#   1. Direct json.loads
#   2. Strip ```json / ``` fences
#   3. Slice the outermost {...} span
#   4. Close unbalanced strings, brackets and braces (truncation repair)
# =============================================================================

from __future__ import annotations

import json
import re
from typing import Any

_FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)


class Unparseable(ValueError):
    """No strategy could recover a JSON value from the text."""


def parse_lenient(text: str) -> Any:
    """
    Parse a JSON value from model output.

    Raises:
        Unparseable: Empty text, or all four strategies failed.
    """
    if not text or not text.strip():
        raise Unparseable("Empty response text")

    # Strategy 1: direct parse
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Strategy 2: markdown code fences
    cleaned = _FENCE_PATTERN.sub("", text).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Strategy 3: outermost object span
    first_open = cleaned.find("{")
    last_close = cleaned.rfind("}")
    if first_open != -1 and last_close > first_open:
        try:
            return json.loads(cleaned[first_open:last_close + 1])
        except json.JSONDecodeError:
            pass

    # Strategy 4: balance a truncated payload
    try:
        return json.loads(balance_json(cleaned))
    except json.JSONDecodeError:
        pass

    raise Unparseable("Unable to parse JSON structure from response.")


def balance_json(text: str) -> str:
    """
    Append the closers a truncated JSON string is missing.

    Scans with a string-aware stack: brackets inside string literals are
    ignored, and an unterminated string is closed before the brackets.

    Example:
        '{"a": [1,2'  →  '{"a": [1,2]}'
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    processed = text.strip()

    for char in processed:
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
            stack.append("}")
        elif char == "[":
            stack.append("]")
        elif char in "}]" and stack and stack[-1] == char:
            stack.pop()

    if in_string:
        processed += '"'
    while stack:
        processed += stack.pop()
    return processed
