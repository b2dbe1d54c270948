"""Classified query intent."""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class IntentType(str, Enum):
    CONVERSATION = "conversation"
    MEMORY_CHAT = "memory_chat"
    TOOL_EXECUTION = "tool_execution"
    HYBRID = "hybrid"
    KNOWLEDGE_SEARCH = "knowledge_search"
    UNKNOWN = "unknown"


TOOL_INTENTS = frozenset({IntentType.TOOL_EXECUTION, IntentType.HYBRID})
MEMORY_INTENTS = frozenset(
    {IntentType.MEMORY_CHAT, IntentType.HYBRID, IntentType.KNOWLEDGE_SEARCH}
)


class QueryIntent(BaseModel):
    """One classification per query; immutable once produced.

    ``confirmation`` is set when the query answers a pending confirmation;
    ``override`` names the follow-up rule that rewrote the model output.
    """

    model_config = ConfigDict(frozen=True)

    type: IntentType = IntentType.UNKNOWN
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    required_tools: tuple[str, ...] = ()
    reasoning: str = ""
    memory_context: bool = False
    confirmation: Literal["affirm", "deny"] | None = None
    override: str | None = None

    @property
    def needs_tools(self) -> bool:
        return self.type in TOOL_INTENTS

    @classmethod
    def fallback(cls, reasoning: str) -> QueryIntent:
        return cls(type=IntentType.UNKNOWN, confidence=0.0, reasoning=reasoning)
