"""High-level memory facade over episodic and semantic managers."""

from __future__ import annotations

import logging
from typing import Any

from memory.context_assembler import AssembledContext, MemoryContextAssembler
from memory.episodic import EpisodicMemoryManager
from memory.semantic import ExtractionReport, SemanticMemoryManager
from memory.types.episodic import EpisodicMemory, EpisodicMetadata

logger = logging.getLogger("mta.memory")

SEARCH_KINDS = ("episodic", "semantic", "both")


class MemoryManager:
    """Single entry point for the upward memory operations."""

    def __init__(
        self,
        episodic: EpisodicMemoryManager,
        semantic: SemanticMemoryManager,
        assembler: MemoryContextAssembler,
    ) -> None:
        self.episodic = episodic
        self.semantic = semantic
        self.assembler = assembler

    def remember_turn(
        self,
        user_id: str,
        session_id: str,
        content: str,
        source: str,
        context: dict[str, Any] | None = None,
        importance: float = 0.5,
        tags: list[str] | None = None,
    ) -> str:
        memory = EpisodicMemory(
            user_id=user_id,
            session_id=session_id,
            content=content,
            context=context or {},
            metadata=EpisodicMetadata(source=source, importance=importance, tags=tags or []),
        )
        return self.episodic.store(memory)

    def search_memories(
        self,
        user_id: str,
        query: str,
        kind: str = "both",
        session_id: str | None = None,
        limit: int = 10,
        threshold: float | None = None,
    ) -> dict[str, list[dict[str, Any]]]:
        """Search episodic and/or semantic memory; results carry their scores."""
        if kind not in SEARCH_KINDS:
            raise ValueError(f"kind must be one of {SEARCH_KINDS}")
        results: dict[str, list[dict[str, Any]]] = {"episodic": [], "semantic": []}
        if kind in ("episodic", "both"):
            results["episodic"] = [
                {"memory": memory.model_dump(mode="json"), "score": round(score, 6)}
                for memory, score in self.episodic.search_scored(
                    user_id, session_id=session_id, query=query, limit=limit
                )
            ]
        if kind in ("semantic", "both"):
            results["semantic"] = [
                {
                    "memory": memory.model_dump(mode="json", exclude={"embedding"}),
                    "score": round(score, 6),
                }
                for memory, score in self.semantic.search(
                    user_id, query, threshold=threshold, limit=limit
                )
            ]
        return results

    def get_memory_context(
        self,
        user_id: str,
        session_id: str,
        query: str = "",
        token_budget: int | None = None,
    ) -> AssembledContext:
        return self.assembler.assemble(user_id, session_id, query, token_budget=token_budget)

    def get_memory_stats(self, user_id: str) -> dict[str, Any]:
        return {
            "episodic": self.episodic.stats(user_id),
            "semantic": self.semantic.stats(user_id),
        }

    def extract_knowledge(self, user_id: str, session_id: str | None = None) -> ExtractionReport:
        return self.semantic.extract_from_episodic(user_id, session_id)

    def clear_user_memories(self, user_id: str) -> dict[str, int]:
        """Explicit user-initiated wipe of both memory kinds."""
        cleared = {
            "episodic": self.episodic.clear_user(user_id),
            "semantic": self.semantic.clear_user(user_id),
        }
        logger.info("Cleared memories for %s: %s", user_id, cleared)
        return cleared

    def clear_session(self, user_id: str, session_id: str) -> int:
        return self.episodic.clear_session(user_id, session_id)
