"""Embedding providers used by semantic memory."""

from __future__ import annotations

import hashlib
import logging
import math
import os
import re
from abc import ABC, abstractmethod
from typing import Any

import openai

from core.errors import MemoryStoreError

logger = logging.getLogger("mta.embeddings")

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> list[str]:
    """Lowercase alphanumeric tokens."""
    return _TOKEN_RE.findall(text.lower())


class BaseEmbedder(ABC):
    """Maps text to a fixed-width float vector."""

    dimensions: int

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Return an embedding of length ``dimensions``."""


class HashingEmbedder(BaseEmbedder):
    """Deterministic feature-hashing embedder that needs no network.

    Tokens and adjacent token pairs are hashed into signed buckets and the
    result is L2-normalised, so identical texts embed identically and texts
    sharing most words land close together.
    """

    def __init__(self, dimensions: int = 256) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self.dimensions = dimensions

    def _bucket(self, feature: str) -> tuple[int, float]:
        digest = hashlib.sha256(feature.encode("utf-8")).digest()
        index = int.from_bytes(digest[:4], "big") % self.dimensions
        sign = 1.0 if digest[4] & 1 else -1.0
        return index, sign

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        tokens = tokenize(text)
        features = tokens + [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]
        for feature in features:
            index, sign = self._bucket(feature)
            vector[index] += sign
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]


class OpenAIEmbedder(BaseEmbedder):
    """OpenAI embeddings endpoint adapter."""

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int = 256,
        api_key: str | None = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self._api_key = api_key or os.getenv("OPENAI_API_KEY")
        self._client: openai.OpenAI | None = None

    def _get_client(self) -> openai.OpenAI:
        if self._client is None:
            if not self._api_key:
                raise MemoryStoreError("OPENAI_API_KEY not set; cannot embed text.")
            self._client = openai.OpenAI(api_key=self._api_key)
        return self._client

    def embed(self, text: str) -> list[float]:
        try:
            response = self._get_client().embeddings.create(
                model=self.model, input=text, dimensions=self.dimensions
            )
        except openai.OpenAIError as exc:
            logger.warning("Embedding request failed: %s", exc)
            raise MemoryStoreError(f"embedding failed: {exc}") from exc
        return list(response.data[0].embedding)


def build_embedder(config: dict[str, Any]) -> BaseEmbedder:
    """Build the configured embedder, defaulting to the offline hashing one."""
    embed_cfg = config.get("embedding", {})
    provider = embed_cfg.get("provider", "hashing")
    dimensions = int(embed_cfg.get("dimensions", 256))
    if provider == "openai":
        return OpenAIEmbedder(
            model=embed_cfg.get("model", "text-embedding-3-small"), dimensions=dimensions
        )
    return HashingEmbedder(dimensions=dimensions)
