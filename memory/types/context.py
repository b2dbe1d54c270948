"""Assembled memory context models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from memory.types.episodic import EpisodicMemory
from memory.types.semantic import SemanticMemory


class ContextWindow(BaseModel):
    start_time: datetime | None = None
    end_time: datetime | None = None
    relevance_score: float = 0.0


class MemoryContext(BaseModel):
    """Per-request view over episodic and semantic memory. Never persisted."""

    user_id: str
    session_id: str
    episodic_memories: list[EpisodicMemory] = Field(default_factory=list)
    semantic_memories: list[SemanticMemory] = Field(default_factory=list)
    context_window: ContextWindow = Field(default_factory=ContextWindow)

    def is_empty(self) -> bool:
        return not self.episodic_memories and not self.semantic_memories
