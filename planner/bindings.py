"""``{{stepId.path}}`` placeholders binding one step's args to earlier results.

Paths accept dotted keys and list indices in either ``a[0].b`` or ``a.0.b``
form. A string that is exactly one placeholder takes the referenced value
with its type intact; placeholders embedded in longer strings are replaced
by their text form.
"""

from __future__ import annotations

import json
import re
from typing import Any

from core.errors import BindingResolutionError

PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}\s]+?)\s*\}\}")
_STEP_RE = re.compile(r"^([A-Za-z0-9_\-]+)(.*)$")
_TOKEN_RE = re.compile(r"\.([^.\[\]]+)|\[(\d+)\]")


def split_reference(reference: str) -> tuple[str, list[str | int]]:
    """Split ``step1.data[0].id`` into ``("step1", ["data", 0, "id"])``."""
    match = _STEP_RE.match(reference)
    if match is None:
        raise BindingResolutionError(f"Malformed binding: {{{{{reference}}}}}")
    step_id, rest = match.groups()
    return step_id, _tokens(rest, reference)


def parse_path(path: str) -> list[str | int]:
    """Tokenise a bare path such as ``a.b[0].c`` or ``[1].name``."""
    text = path.strip()
    if text and not text.startswith(("[", ".")):
        text = "." + text
    return _tokens(text, path)


def _tokens(rest: str, reference: str) -> list[str | int]:
    tokens: list[str | int] = []
    position = 0
    while position < len(rest):
        token = _TOKEN_RE.match(rest, position)
        if token is None:
            raise BindingResolutionError(f"Malformed binding path: {reference}")
        key, index = token.groups()
        tokens.append(int(index) if index is not None else key)
        position = token.end()
    return tokens


def references(value: Any) -> set[str]:
    """Step ids referenced anywhere inside ``value``."""
    found: set[str] = set()
    if isinstance(value, str):
        for ref in PLACEHOLDER_RE.findall(value):
            match = _STEP_RE.match(ref)
            if match is not None:
                found.add(match.group(1))
    elif isinstance(value, dict):
        for item in value.values():
            found |= references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            found |= references(item)
    return found


def lookup(value: Any, tokens: list[str | int], reference: str = "") -> Any:
    """Walk ``tokens`` into ``value``; digit keys index into lists."""
    current = value
    for token in tokens:
        if isinstance(current, str):
            try:
                current = json.loads(current)
            except ValueError:
                raise BindingResolutionError(
                    f"Cannot index text result with {token!r} in {reference}"
                ) from None
        if isinstance(current, (list, tuple)):
            try:
                index = int(token)
                current = current[index]
            except (ValueError, IndexError):
                raise BindingResolutionError(f"No element {token!r} in {reference}") from None
        elif isinstance(current, dict):
            if token in current:
                current = current[token]
            elif str(token) in current:
                current = current[str(token)]
            else:
                raise BindingResolutionError(f"No key {token!r} in {reference}")
        else:
            raise BindingResolutionError(f"Cannot descend into {type(current).__name__} in {reference}")
    return current


def _text(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def resolve(value: Any, results: dict[str, Any]) -> Any:
    """Return ``value`` with every placeholder replaced from ``results``."""
    if isinstance(value, str):
        whole = PLACEHOLDER_RE.fullmatch(value.strip())
        if whole is not None:
            step_id, tokens = split_reference(whole.group(1))
            if step_id not in results:
                raise BindingResolutionError(f"Step {step_id!r} has no result to bind")
            return lookup(results[step_id], tokens, whole.group(0))

        def _substitute(match: re.Match[str]) -> str:
            step_id, tokens = split_reference(match.group(1))
            if step_id not in results:
                raise BindingResolutionError(f"Step {step_id!r} has no result to bind")
            return _text(lookup(results[step_id], tokens, match.group(0)))

        return PLACEHOLDER_RE.sub(_substitute, value)
    if isinstance(value, dict):
        return {key: resolve(item, results) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve(item, results) for item in value]
    return value
