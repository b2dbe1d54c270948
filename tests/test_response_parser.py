"""Staged JSON extraction from LLM output."""

from __future__ import annotations

from core.errors import ResponseParseError
from llm.prompt_engine.response_parser import (
    STAGE_EXTRACTED,
    STAGE_FAILED,
    STAGE_STRICT,
    balanced_objects,
    parse_json_object,
)


def test_strict_object() -> None:
    result = parse_json_object('  {"type": "conversation", "confidence": 0.9}\n')
    assert result.stage == STAGE_STRICT
    assert result.value == {"type": "conversation", "confidence": 0.9}


def test_fenced_block_is_extracted() -> None:
    text = 'Sure! Here you go:\n```json\n{"steps": [], "clarification": "Which user?"}\n```'
    result = parse_json_object(text)
    assert result.stage == STAGE_EXTRACTED
    assert result.value == {"steps": [], "clarification": "Which user?"}


def test_balanced_substring_with_braces_in_strings() -> None:
    text = 'Plan: {"steps": [{"id": "s1", "args": {"url": "http://x/{{a}}"}}]} hope that helps }'
    result = parse_json_object(text)
    assert result.stage == STAGE_EXTRACTED
    assert result.value is not None
    assert result.value["steps"][0]["args"]["url"] == "http://x/{{a}}"


def test_unusable_output_fails_without_raising() -> None:
    for text in (None, "", "I cannot help with that", "[1, 2, 3]", "{broken json"):
        result = parse_json_object(text)
        assert result.stage == STAGE_FAILED
        assert not result.ok
        assert isinstance(result.error, ResponseParseError)
    assert parse_json_object("{}").error is None


def test_balanced_objects_lists_top_level_spans() -> None:
    assert balanced_objects('a {"x": {"y": 1}} b {"z": "}"} c') == ['{"x": {"y": 1}}', '{"z": "}"}']
