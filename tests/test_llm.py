"""Provider factory, retry policy and the offline mock provider."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import httpx
import openai
import pytest

from core.errors import LLMProviderError, LLMTimeout
from executor.cancellation import CancellationToken
from llm.llm_factory import build_llm
from llm.local.ollama_provider import OllamaProvider
from llm.prompt_engine.memory_injection import inject_memory, render_memory_block
from llm.providers.mock_provider import MockProvider
from llm.providers.openai_provider import OpenAIProvider
from llm.retry import call_with_retry
from memory.context_assembler import AssembledContext
from memory.types.context import MemoryContext
from memory.types.episodic import EpisodicMemory, EpisodicMetadata


def _models(active: str, **provider: Any) -> dict[str, Any]:
    return {"models": {"llm": {"active_provider": active, "providers": {active: provider}}}}


def test_factory_selects_provider() -> None:
    assert isinstance(build_llm({}), MockProvider)
    assert isinstance(build_llm(_models("mock", type="mock")), MockProvider)

    remote = build_llm(_models("openai", type="openai", model="gpt-4o-mini", timeout_seconds=5))
    assert isinstance(remote, OpenAIProvider)
    assert remote.model == "gpt-4o-mini"
    assert remote.timeout_seconds == 5.0

    local = build_llm(_models("local", type="ollama", model="llama3.1"))
    assert isinstance(local, OllamaProvider)
    assert local.base_url == "http://localhost:11434/v1"


def test_openai_without_key_raises_provider_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(LLMProviderError):
        OpenAIProvider().complete("hello")


class _FakeCompletions:
    def __init__(self, outcome: Any) -> None:
        self.outcome = outcome
        self.requests: list[dict[str, Any]] = []

    def create(self, **request: Any) -> Any:
        self.requests.append(request)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _provider_with(outcome: Any) -> tuple[OpenAIProvider, _FakeCompletions]:
    completions = _FakeCompletions(outcome)
    provider = OpenAIProvider(api_key="test-key")
    provider._client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return provider, completions


def test_openai_maps_responses_and_errors() -> None:
    reply = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="hi there"))])
    provider, completions = _provider_with(reply)
    assert provider.complete("hello", system="be brief", temperature=0.1) == "hi there"
    sent = completions.requests[0]
    assert sent["messages"][0] == {"role": "system", "content": "be brief"}
    assert sent["temperature"] == 0.1

    timeout = openai.APITimeoutError(request=httpx.Request("POST", "https://api.openai.com/v1"))
    with pytest.raises(LLMTimeout):
        _provider_with(timeout)[0].complete("hello")

    empty = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=""))])
    with pytest.raises(LLMProviderError):
        _provider_with(empty)[0].complete("hello")


def test_retry_backs_off_exponentially() -> None:
    sleeps: list[float] = []
    attempts: list[int] = []

    def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise LLMTimeout("slow")
        return "ok"

    assert call_with_retry(flaky, max_retries=2, backoff_seconds=0.5, sleep=sleeps.append) == "ok"
    assert sleeps == [0.5, 1.0]


def test_retry_gives_up_and_reraises_last_error() -> None:
    def down() -> str:
        raise LLMProviderError("down")

    with pytest.raises(LLMProviderError, match="down"):
        call_with_retry(down, max_retries=1, backoff_seconds=0, sleep=lambda _: None)


def test_retry_does_not_start_after_cancellation() -> None:
    token = CancellationToken()
    token.cancel()
    calls: list[int] = []

    with pytest.raises(LLMProviderError, match="cancelled"):
        call_with_retry(lambda: calls.append(1) or "x", max_retries=3, backoff_seconds=0, cancel_token=token)
    assert calls == []


def test_retry_leaves_other_errors_alone() -> None:
    def broken() -> str:
        raise KeyError("bug")

    with pytest.raises(KeyError):
        call_with_retry(broken, max_retries=3, backoff_seconds=0)


def test_mock_classifies_and_plans_by_system_prompt() -> None:
    mock = MockProvider()
    classified = json.loads(
        mock.complete(
            '- calculator: math\n- api_call: http\n\nClassify this user query:\n"calculate 4 * 5"',
            system="You are an intent classifier",
        )
    )
    assert classified["type"] == "tool_execution"
    assert classified["requiredTools"] == ["calculator"]

    planned = json.loads(
        mock.complete(
            '[{"name": "api_call"}]\n\nRequest: show the posts of user 3 with comments',
            system="You are a tool-chain planner",
        )
    )
    assert [step["id"] for step in planned["steps"]] == ["step1", "step2"]
    assert planned["steps"][0]["args"]["url"].endswith("/posts?userId=3")
    assert planned["steps"][1]["dependsOn"] == ["step1"]

    assert mock.complete("User: hello").startswith("Local fallback response")


def test_memory_block_rendering() -> None:
    assert render_memory_block(None) == ""
    memory = EpisodicMemory(
        user_id="u1",
        session_id="s1",
        content="I live in Berlin",
        timestamp=datetime(2026, 3, 1, 9, 30, tzinfo=UTC),
        metadata=EpisodicMetadata(source="user"),
    )
    assembled = AssembledContext(
        context=MemoryContext(user_id="u1", session_id="s1", episodic_memories=[memory]),
        summary="User moved last year",
    )

    block = render_memory_block(assembled)

    assert block == (
        "Relevant memories:\n"
        "- [2026-03-01 09:30] user: I live in Berlin\n"
        "- [context summary] User moved last year"
    )
    messages = inject_memory([{"role": "user", "content": "hi"}], assembled)
    assert messages[0] == {"role": "system", "content": block}
    assert render_memory_block(assembled, max_lines=1).count("\n") == 1
