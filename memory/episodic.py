"""Graph-backed episodic memory: conversation events with relevance search."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from core.errors import MemoryStoreError
from memory.scoring import as_utc, composite_score, keyword_overlap, recency_score
from memory.stores.graph_store import GraphStore
from memory.types.episodic import EpisodicMemory

logger = logging.getLogger("mta.memory.episodic")

LABEL = "EpisodicMemory"
REL_NEXT = "NEXT"
REL_PREVIOUS = "PREVIOUS"
REL_RELATED = "RELATED"


class EpisodicMemoryManager:
    """Stores conversation events as graph nodes chained per user/session."""

    def __init__(self, graph: GraphStore, config: dict[str, Any] | None = None) -> None:
        self.graph = graph
        mem_cfg = (config or {}).get("memory", {})
        self.context_limit = int(mem_cfg.get("context_limit", 50))
        self.w_recency = float(mem_cfg.get("w_recency", 0.4))
        self.w_importance = float(mem_cfg.get("w_importance", 0.3))
        self.w_keyword = float(mem_cfg.get("w_keyword", 0.3))
        self.half_life_hours = float(mem_cfg.get("recency_half_life_hours", 24.0))

    @staticmethod
    def _to_memory(row: dict[str, Any]) -> EpisodicMemory:
        return EpisodicMemory.model_validate(row["props"])

    def _rows(self, user_id: str, session_id: str | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"user_id": user_id}
        if session_id is not None:
            params["session_id"] = session_id
        return self.graph.query(LABEL, params)

    def store(self, memory: EpisodicMemory) -> str:
        """Persist ``memory`` and chain it after the session's latest event."""
        previous = self._rows(memory.user_id, memory.session_id)
        prev_id = previous[-1]["id"] if previous else None

        node = memory.model_copy(deep=True)
        node.id = memory.id or str(uuid.uuid4())
        node.relationships.previous = prev_id
        node.relationships.next = None
        related: list[str] = []
        for related_id in node.relationships.related:
            if self.graph.get_node(related_id) is None:
                logger.warning("Dropping related link to unknown memory %s", related_id)
                continue
            related.append(related_id)
        node.relationships.related = related

        node_id = self.graph.create_node(LABEL, node.model_dump(mode="json"))
        if prev_id is not None:
            self.graph.create_relationship(prev_id, node_id, REL_NEXT)
            self.graph.create_relationship(node_id, prev_id, REL_PREVIOUS)
            prev_relationships = dict(previous[-1]["props"].get("relationships") or {})
            prev_relationships["next"] = node_id
            self.graph.update_node(prev_id, {"relationships": prev_relationships})
        for related_id in related:
            self.graph.create_relationship(node_id, related_id, REL_RELATED)
        logger.debug("Stored episodic memory %s for %s/%s", node_id, memory.user_id, memory.session_id)
        return node_id

    def search_scored(
        self,
        user_id: str,
        session_id: str | None = None,
        query: str | None = None,
        tags: list[str] | None = None,
        time_range: tuple[datetime | None, datetime | None] | None = None,
        importance: float | None = None,
        limit: int = 10,
    ) -> list[tuple[EpisodicMemory, float]]:
        """Filter then rank by the weighted recency/importance/keyword score.

        Recency is measured against the newest candidate rather than the wall
        clock, so repeated reads without writes rank identically. Ties keep
        insertion order.
        """
        candidates: list[tuple[int, EpisodicMemory]] = []
        for row in self._rows(user_id, session_id):
            memory = self._to_memory(row)
            if tags and not set(tags) & set(memory.metadata.tags):
                continue
            if importance is not None and memory.metadata.importance < importance:
                continue
            if time_range is not None:
                start, end = time_range
                if start is not None and memory.timestamp < as_utc(start):
                    continue
                if end is not None and memory.timestamp > as_utc(end):
                    continue
            candidates.append((row["seq"], memory))
        scores = self.score_memories([memory for _, memory in candidates], query)
        ranked = sorted(
            ((scores[memory.id], seq, memory) for seq, memory in candidates),
            key=lambda item: (-item[0], item[1]),
        )
        return [(memory, score) for score, _, memory in ranked[: max(0, limit)]]

    def score_memories(
        self,
        memories: list[EpisodicMemory],
        query: str | None = None,
    ) -> dict[str, float]:
        """Composite score per memory id, with recency relative to the newest one."""
        if not memories:
            return {}
        reference = max(memory.timestamp for memory in memories)
        return {
            memory.id: composite_score(
                recency=recency_score(memory.timestamp, reference, self.half_life_hours),
                importance=memory.metadata.importance,
                overlap=keyword_overlap(query, memory.content) if query else 0.0,
                w_recency=self.w_recency,
                w_importance=self.w_importance,
                w_keyword=self.w_keyword,
            )
            for memory in memories
        }

    def search(self, user_id: str, **kwargs: Any) -> list[EpisodicMemory]:
        return [memory for memory, _ in self.search_scored(user_id, **kwargs)]

    def get_context(
        self,
        user_id: str,
        session_id: str,
        limit: int | None = None,
    ) -> list[EpisodicMemory]:
        """Most recent events of the session, oldest first."""
        cap = self.context_limit if limit is None else limit
        rows = self._rows(user_id, session_id)
        memories = [(row["seq"], self._to_memory(row)) for row in rows]
        memories.sort(key=lambda item: (item[1].timestamp, item[0]))
        recent = memories[-cap:] if cap > 0 else []
        return [memory for _, memory in recent]

    def get(self, memory_id: str) -> EpisodicMemory | None:
        row = self.graph.get_node(memory_id)
        return self._to_memory(row) if row is not None else None

    def update_metadata(
        self,
        memory_id: str,
        *,
        importance: float | None = None,
        tags: list[str] | None = None,
        location: str | None = None,
        source: str | None = None,
    ) -> EpisodicMemory:
        """Update mutable metadata; content is immutable after creation."""
        memory = self.get(memory_id)
        if memory is None:
            raise MemoryStoreError(f"episodic memory not found: {memory_id}")
        updates: dict[str, Any] = {}
        if importance is not None:
            updates["importance"] = max(0.0, min(1.0, importance))
        if tags is not None:
            updates["tags"] = list(tags)
        if location is not None:
            updates["location"] = location
        if source is not None:
            updates["source"] = source
        metadata = memory.metadata.model_copy(update=updates)
        self.graph.update_node(memory_id, {"metadata": metadata.model_dump(mode="json")})
        memory.metadata = metadata
        return memory

    def related(self, memory_id: str, rel_type: str | None = None) -> list[EpisodicMemory]:
        return [self._to_memory(row) for row in self.graph.neighbors(memory_id, rel_type)]

    def last_turn(
        self,
        user_id: str,
        session_id: str,
        source: str = "agent",
    ) -> EpisodicMemory | None:
        """Latest event of the session written by ``source``."""
        for memory in reversed(self.get_context(user_id, session_id)):
            if memory.metadata.source == source:
                return memory
        return None

    def clear_session(self, user_id: str, session_id: str) -> int:
        ids = [row["id"] for row in self._rows(user_id, session_id)]
        deleted = self.graph.delete_nodes(ids)
        logger.info("Cleared %d episodic memories for %s/%s", deleted, user_id, session_id)
        return deleted

    def clear_user(self, user_id: str) -> int:
        ids = [row["id"] for row in self._rows(user_id)]
        deleted = self.graph.delete_nodes(ids)
        logger.info("Cleared %d episodic memories for %s", deleted, user_id)
        return deleted

    def stats(self, user_id: str) -> dict[str, Any]:
        memories = [self._to_memory(row) for row in self._rows(user_id)]
        if not memories:
            return {"count": 0, "oldest": None, "newest": None}
        timestamps = sorted(memory.timestamp for memory in memories)
        return {"count": len(memories), "oldest": timestamps[0], "newest": timestamps[-1]}
