"""OpenAI chat-completions provider."""

from __future__ import annotations

import logging
import os
from typing import Any

import openai

from core.errors import LLMProviderError, LLMTimeout
from llm.base_llm import BaseLLM

logger = logging.getLogger("mta.llm.openai")


class OpenAIProvider(BaseLLM):
    """OpenAI API adapter. Requires ``OPENAI_API_KEY`` unless a key is passed."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.model = model
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self._api_key = api_key
        self._client: openai.OpenAI | None = None

    def _resolve_api_key(self) -> str:
        api_key = self._api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise LLMProviderError("OPENAI_API_KEY not set. Use the mock provider or configure credentials.")
        return api_key

    def _get_client(self) -> openai.OpenAI:
        if self._client is None:
            self._client = openai.OpenAI(
                api_key=self._resolve_api_key(),
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                max_retries=0,
            )
        return self._client

    def chat(self, messages: list[dict[str, str]], **kwargs: Any) -> str:
        request: dict[str, Any] = {
            "model": kwargs.get("model") or self.model,
            "messages": messages,
        }
        if kwargs.get("temperature") is not None:
            request["temperature"] = kwargs["temperature"]
        if kwargs.get("max_tokens") is not None:
            request["max_tokens"] = kwargs["max_tokens"]
        try:
            response = self._get_client().chat.completions.create(**request)
        except openai.APITimeoutError as exc:
            logger.warning("%s request timed out: %s", type(self).__name__, exc)
            raise LLMTimeout(str(exc)) from exc
        except openai.OpenAIError as exc:
            logger.warning("%s request failed: %s", type(self).__name__, exc)
            raise LLMProviderError(str(exc)) from exc
        content = response.choices[0].message.content
        if not content:
            raise LLMProviderError("provider returned an empty response")
        return content
