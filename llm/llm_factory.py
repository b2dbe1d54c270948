"""LLM provider factory."""

from __future__ import annotations

from typing import Any

from llm.base_llm import BaseLLM
from llm.local.ollama_provider import OllamaProvider
from llm.providers.mock_provider import MockProvider
from llm.providers.openai_provider import OpenAIProvider


def build_llm(config: dict[str, Any]) -> BaseLLM:
    """Build an LLM provider from configuration, defaulting safely to mock."""
    models_cfg = config.get("models", {}).get("llm", {})
    active = models_cfg.get("active_provider", "mock")
    providers = models_cfg.get("providers", {})
    active_cfg = providers.get(active, {})
    provider_type = active_cfg.get("type", active)
    timeout = float(active_cfg.get("timeout_seconds", models_cfg.get("timeout_seconds", 60)))

    if provider_type == "openai":
        return OpenAIProvider(
            model=active_cfg.get("model", "gpt-4o-mini"),
            base_url=active_cfg.get("base_url"),
            timeout_seconds=timeout,
        )
    if provider_type == "ollama":
        return OllamaProvider(
            model=active_cfg.get("model", "llama3.1"),
            base_url=active_cfg.get("base_url", "http://localhost:11434/v1"),
            timeout_seconds=timeout,
        )
    return MockProvider()
