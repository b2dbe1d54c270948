"""Shared fixtures: scripted LLMs, stores and a wired runtime."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest

from core.orchestrator import Orchestrator, RuntimeBundle
from core.policy_runtime import load_effective_config, merge_dicts
from llm.providers.mock_provider import MockProvider
from memory.stores.sql_store import SQLStore
from tools.data_tools.calculator import CalculatorTool
from tools.data_tools.json_reader import JsonReaderTool
from tools.tool_registry import ToolRegistry
from tools.web_tools.api_call import ApiCallTool

ROOT = Path(__file__).resolve().parents[1]

FAST = {
    "classifier": {"backoff_seconds": 0},
    "planner": {"backoff_seconds": 0},
    "extraction": {"backoff_seconds": 0},
    "execution": {"backoff_seconds": 0, "step_timeout_seconds": 5},
}


class ScriptedLLM(MockProvider):
    """Mock provider whose answer can be pinned per task.

    ``scripts`` maps a phrase of the task's system prompt to a reply: a
    string, a JSON-able object, an exception to raise, a callable taking the
    prompt, or a list of those consumed one per call (the last one repeats).
    Unscripted tasks fall through to :class:`MockProvider`.
    """

    def __init__(self, scripts: dict[str, Any] | None = None) -> None:
        self.scripts = dict(scripts or {})
        self.calls: list[tuple[str, str]] = []

    def chat(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        system = " ".join(m["content"] for m in messages if m.get("role") == "system").lower()
        prompt = messages[-1]["content"]
        self.calls.append((system, prompt))
        for marker, script in self.scripts.items():
            if marker not in system:
                continue
            value = script
            if isinstance(script, list):
                value = script.pop(0) if len(script) > 1 else script[0]
            if isinstance(value, Exception):
                raise value
            if callable(value):
                return value(prompt)
            return value if isinstance(value, str) else json.dumps(value)
        return super().chat(messages, **kwargs)

    def prompts_for(self, marker: str) -> list[str]:
        return [prompt for system, prompt in self.calls if marker in system]


def json_transport(routes: dict[tuple[str, str], Any]) -> httpx.MockTransport:
    """Serve ``{(method, path?query): body | httpx.Response}``; anything else is 404."""

    def handler(request: httpx.Request) -> httpx.Response:
        target = request.url.raw_path.decode()
        reply = routes.get((request.method, target))
        if reply is None:
            return httpx.Response(404, json={"error": "not found"})
        if isinstance(reply, httpx.Response):
            return reply
        if callable(reply):
            return reply(request)
        return httpx.Response(200, json=reply)

    return httpx.MockTransport(handler)


@pytest.fixture
def config() -> dict[str, Any]:
    return load_effective_config(ROOT, FAST)


@pytest.fixture
def sql_store(tmp_path: Path) -> Iterator[SQLStore]:
    store = SQLStore(tmp_path / "mta.db")
    store.create_all()
    yield store
    store.dispose()


@pytest.fixture
def make_registry() -> Callable[..., ToolRegistry]:
    """Default tools, with ``api_call`` served from an in-memory transport."""

    def factory(routes: dict[tuple[str, str], Any] | None = None) -> ToolRegistry:
        registry = ToolRegistry()
        registry.register(CalculatorTool())
        registry.register(JsonReaderTool())
        registry.register(ApiCallTool(transport=json_transport(routes or {})))
        return registry

    return factory


@pytest.fixture
def make_runtime(tmp_path: Path) -> Iterator[Callable[..., RuntimeBundle]]:
    bundles: list[RuntimeBundle] = []

    def factory(
        llm: Any | None = None,
        registry: ToolRegistry | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> RuntimeBundle:
        paths = {
            "paths": {
                "workspace_dir": str(tmp_path / "workspace"),
                "db_path": str(tmp_path / "workspace" / "mta.db"),
                "audit_log_path": str(tmp_path / "logs" / "audit.jsonl"),
            }
        }
        bundle = Orchestrator(
            root=ROOT,
            config_overrides=merge_dicts(merge_dicts(FAST, paths), overrides or {}),
            llm=llm,
            tool_registry=registry,
        ).build()
        bundles.append(bundle)
        return bundle

    yield factory
    for bundle in bundles:
        bundle.close()


@pytest.fixture
def scripted() -> type[ScriptedLLM]:
    return ScriptedLLM
