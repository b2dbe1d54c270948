"""Layered parsing of structured objects out of free-form LLM output.

LLM text is untrusted input. Parsing proceeds in stages and never raises:

1. ``strict``: the whole (stripped) text is a JSON object.
2. ``extracted``: a fenced code block or the first bracket-balanced
   ``{...}`` substring that decodes to a JSON object.
3. ``failed``: nothing usable; the result carries a ``ResponseParseError``
   and callers substitute a typed fallback.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from core.errors import ResponseParseError

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

STAGE_STRICT = "strict"
STAGE_EXTRACTED = "extracted"
STAGE_FAILED = "failed"


@dataclass
class ParseResult:
    value: dict[str, Any] | None
    stage: str
    error: ResponseParseError | None = None

    @property
    def ok(self) -> bool:
        return self.value is not None


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def balanced_objects(text: str) -> list[str]:
    """Return every top-level ``{...}`` span, honouring JSON string escapes."""
    spans: list[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and depth > 0:
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                spans.append(text[start : index + 1])
    return spans


def parse_json_object(text: str | None) -> ParseResult:
    """Parse a JSON object from ``text`` using the staged strategy above."""
    if not text:
        return ParseResult(None, STAGE_FAILED, ResponseParseError("empty response"))
    stripped = text.strip()
    value = _loads_object(stripped)
    if value is not None:
        return ParseResult(value, STAGE_STRICT)

    candidates = [block.strip() for block in _FENCE_RE.findall(stripped)]
    candidates.extend(balanced_objects(stripped))
    for candidate in candidates:
        value = _loads_object(candidate)
        if value is not None:
            return ParseResult(value, STAGE_EXTRACTED)
    return ParseResult(
        None,
        STAGE_FAILED,
        ResponseParseError(f"no JSON object in {len(candidates)} candidate span(s)"),
    )
