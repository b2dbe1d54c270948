"""Ollama provider over its OpenAI-compatible endpoint."""

from __future__ import annotations

from llm.providers.openai_provider import OpenAIProvider


class OllamaProvider(OpenAIProvider):
    """Local Ollama server; no real API key is needed."""

    def __init__(
        self,
        model: str = "llama3.1",
        *,
        base_url: str = "http://localhost:11434/v1",
        timeout_seconds: float = 120.0,
    ) -> None:
        super().__init__(
            model=model,
            api_key="ollama",
            base_url=base_url,
            timeout_seconds=timeout_seconds,
        )
