"""Vector-backed semantic memory with near-duplicate merging and extraction."""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from core.errors import LLMError, MemoryStoreError
from llm.base_llm import BaseLLM
from llm.prompt_engine.response_parser import parse_json_object
from llm.retry import call_with_retry
from memory.embeddings import BaseEmbedder
from memory.episodic import EpisodicMemoryManager
from memory.stores.vector_store import VectorStore
from memory.types.episodic import EpisodicMemory
from memory.types.semantic import SemanticMemory, SemanticMetadata, SemanticRelationships

logger = logging.getLogger("mta.memory.semantic")

DEFAULT_CATEGORIES = (
    "person",
    "place",
    "preference",
    "fact",
    "event",
    "skill",
    "topic",
    "organization",
)
RELATIONS = ("similar", "parent", "child")

EXTRACTION_SYSTEM = (
    "You extract durable knowledge from conversation history. "
    "Return ONLY a JSON object, no prose."
)


@dataclass
class StoreOutcome:
    id: str
    merged: bool


@dataclass
class ExtractionReport:
    extracted_concepts: int = 0
    extracted_relationships: int = 0
    processing_time_ms: float = 0.0
    batches: int = 0
    failed_batches: int = 0


class SemanticMemoryManager:
    """Concept store over a vector index, keyed per user."""

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: BaseEmbedder,
        episodic: EpisodicMemoryManager | None = None,
        llm: BaseLLM | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.vector_store = vector_store
        self.embedder = embedder
        self.episodic = episodic
        self.llm = llm
        cfg = config or {}
        mem_cfg = cfg.get("memory", {})
        ext_cfg = cfg.get("extraction", {})
        self.dedup_threshold = float(mem_cfg.get("dedup_threshold", 0.92))
        self.search_threshold = float(mem_cfg.get("search_threshold", 0.7))
        self.candidate_pool = int(mem_cfg.get("semantic_candidate_pool", 200))
        self.batch_size = max(1, int(ext_cfg.get("batch_size", 5)))
        self.max_concepts = int(ext_cfg.get("max_concepts_per_batch", 5))
        self.min_confidence = float(ext_cfg.get("min_confidence", 0.6))
        self.recent_limit = int(ext_cfg.get("recent_limit", 50))
        self.max_retries = int(ext_cfg.get("max_retries", 1))
        self.backoff_seconds = float(ext_cfg.get("backoff_seconds", 0.5))
        self.categories = tuple(ext_cfg.get("categories") or DEFAULT_CATEGORIES)
        self._write_lock = threading.Lock()

    @staticmethod
    def _metadata_for(memory: SemanticMemory) -> dict[str, Any]:
        payload = memory.model_dump(mode="json", exclude={"embedding"})
        payload["category"] = memory.metadata.category
        return payload

    @staticmethod
    def _to_memory(item: dict[str, Any], with_embedding: bool = False) -> SemanticMemory:
        payload = {k: v for k, v in item["metadata"].items() if k != "category"}
        if with_embedding:
            payload["embedding"] = item.get("embedding", [])
        return SemanticMemory.model_validate(payload)

    def _save(self, memory: SemanticMemory) -> None:
        self.vector_store.upsert(memory.id, memory.embedding, self._metadata_for(memory))

    def store(
        self,
        user_id: str,
        concept: str,
        description: str = "",
        category: str = "fact",
        confidence: float = 0.5,
        source: str = "explicit",
        relationships: SemanticRelationships | None = None,
    ) -> StoreOutcome:
        """Insert a concept, or merge it into an existing near-duplicate."""
        candidate = SemanticMemory(
            user_id=user_id,
            concept=concept.strip(),
            description=description.strip(),
            metadata=SemanticMetadata(
                category=category,
                confidence=max(0.0, min(1.0, confidence)),
                source=source,
            ),
            relationships=relationships or SemanticRelationships(),
        )
        embedding = self.embedder.embed(candidate.embedding_text())
        with self._write_lock:
            hits = self.vector_store.query(embedding, top_k=1, flt={"user_id": user_id})
            if hits and hits[0]["score"] >= self.dedup_threshold:
                existing_item = self.vector_store.get(hits[0]["id"])
                if existing_item is None:
                    raise MemoryStoreError(f"vector {hits[0]['id']} vanished during merge")
                existing = self._to_memory(existing_item, with_embedding=True)
                existing.metadata.access_count += 1
                existing.metadata.last_accessed = datetime.now(UTC)
                existing.metadata.confidence = max(
                    existing.metadata.confidence, candidate.metadata.confidence
                )
                if not existing.description and candidate.description:
                    existing.description = candidate.description
                self._save(existing)
                logger.debug(
                    "Merged concept %r into %s (similarity %.3f)",
                    concept,
                    existing.id,
                    hits[0]["score"],
                )
                return StoreOutcome(id=existing.id, merged=True)

            candidate.id = str(uuid.uuid4())
            candidate.embedding = embedding
            self._save(candidate)
        return StoreOutcome(id=candidate.id, merged=False)

    def search(
        self,
        user_id: str,
        query: str,
        threshold: float | None = None,
        limit: int = 10,
        categories: list[str] | None = None,
    ) -> list[tuple[SemanticMemory, float]]:
        """Concepts with similarity >= threshold; similarity desc, then confidence desc."""
        floor = self.search_threshold if threshold is None else threshold
        flt: dict[str, Any] = {"user_id": user_id}
        if categories:
            flt["category"] = list(categories)
        hits = self.vector_store.query(
            self.embedder.embed(query), top_k=max(limit, self.candidate_pool), flt=flt
        )
        results = [(self._to_memory(hit), float(hit["score"])) for hit in hits if hit["score"] >= floor]
        results.sort(key=lambda pair: (-pair[1], -pair[0].metadata.confidence, pair[0].id))
        return results[: max(0, limit)]

    def get(self, memory_id: str) -> SemanticMemory | None:
        item = self.vector_store.get(memory_id)
        return self._to_memory(item, with_embedding=True) if item is not None else None

    def delete(self, memory_id: str) -> bool:
        return self.vector_store.delete([memory_id]) > 0

    def clear_user(self, user_id: str) -> int:
        ids = [item["id"] for item in self.vector_store.list({"user_id": user_id})]
        deleted = self.vector_store.delete(ids)
        logger.info("Cleared %d semantic memories for %s", deleted, user_id)
        return deleted

    def stats(self, user_id: str) -> dict[str, Any]:
        categories: dict[str, int] = {}
        items = self.vector_store.list({"user_id": user_id})
        for item in items:
            category = item["metadata"].get("category", "fact")
            categories[category] = categories.get(category, 0) + 1
        return {"count": len(items), "categories": categories}

    def link(self, source_id: str, target_id: str, relation: str) -> None:
        """Record a typed relationship as weak id references on both concepts.

        ``parent`` means ``target`` is the parent of ``source``; ``child`` the reverse.
        """
        if relation not in RELATIONS:
            raise ValueError(f"Unknown relation: {relation}")
        if source_id == target_id:
            return
        source = self.get(source_id)
        target = self.get(target_id)
        if source is None or target is None:
            raise MemoryStoreError(f"cannot link missing concepts {source_id} -> {target_id}")
        if relation == "similar":
            _append_unique(source.relationships.similar, target_id)
            _append_unique(target.relationships.similar, source_id)
        elif relation == "parent":
            source.relationships.parent = target_id
            _append_unique(target.relationships.children, source_id)
        else:
            target.relationships.parent = source_id
            _append_unique(source.relationships.children, target_id)
        with self._write_lock:
            self._save(source)
            self._save(target)

    def _recent_episodes(self, user_id: str, session_id: str | None) -> list[EpisodicMemory]:
        if self.episodic is None:
            return []
        if session_id is not None:
            return self.episodic.get_context(user_id, session_id, limit=self.recent_limit)
        episodes = self.episodic.search(user_id, limit=self.recent_limit)
        return sorted(episodes, key=lambda memory: memory.timestamp)

    def _extraction_prompt(self, batch: list[EpisodicMemory]) -> str:
        lines = [
            f"- [{memory.metadata.source}] {memory.content}" for memory in batch
        ]
        schema = {
            "concepts": [
                {
                    "concept": "short label",
                    "description": "one sentence",
                    "category": "|".join(self.categories),
                    "confidence": 0.0,
                }
            ],
            "relationships": [
                {"source": "concept label", "target": "concept label", "type": "|".join(RELATIONS)}
            ],
        }
        return (
            f"Extract at most {self.max_concepts} concepts worth remembering about the user "
            "from the conversation below. Use only these categories: "
            f"{', '.join(self.categories)}. Confidence is between 0 and 1.\n"
            f"Respond with JSON shaped like:\n{json.dumps(schema)}\n\n"
            "Conversation:\n" + "\n".join(lines)
        )

    def extract_from_episodic(
        self,
        user_id: str,
        session_id: str | None = None,
        cancel_token: Any | None = None,
    ) -> ExtractionReport:
        """Distil recent episodic memories into semantic concepts, batch by batch."""
        started = time.perf_counter()
        report = ExtractionReport()
        if self.llm is None:
            logger.warning("Semantic extraction skipped: no LLM configured")
            return report
        llm = self.llm
        episodes = self._recent_episodes(user_id, session_id)
        for offset in range(0, len(episodes), self.batch_size):
            if cancel_token is not None and cancel_token.is_cancelled():
                logger.info("Semantic extraction cancelled after %d batches", report.batches)
                break
            batch = episodes[offset : offset + self.batch_size]
            report.batches += 1
            prompt = self._extraction_prompt(batch)
            try:
                raw = call_with_retry(
                    lambda: llm.complete(prompt, system=EXTRACTION_SYSTEM, temperature=0.0),
                    max_retries=self.max_retries,
                    backoff_seconds=self.backoff_seconds,
                    label="extraction",
                    cancel_token=cancel_token,
                )
            except LLMError as exc:
                report.failed_batches += 1
                logger.warning("Extraction batch %d skipped: %s", report.batches, exc)
                continue
            parsed = parse_json_object(raw)
            if not parsed.ok:
                report.failed_batches += 1
                logger.warning("Extraction batch %d skipped: %s", report.batches, parsed.error)
                continue
            concepts, relationships = self._store_batch(user_id, parsed.value or {})
            report.extracted_concepts += concepts
            report.extracted_relationships += relationships

        report.processing_time_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "Extracted %d concepts and %d relationships for %s in %.1fms",
            report.extracted_concepts,
            report.extracted_relationships,
            user_id,
            report.processing_time_ms,
        )
        return report

    def _store_batch(self, user_id: str, payload: dict[str, Any]) -> tuple[int, int]:
        stored: dict[str, str] = {}
        raw_concepts = payload.get("concepts")
        if not isinstance(raw_concepts, list):
            raw_concepts = []
        accepted = 0
        for item in raw_concepts:
            if accepted >= self.max_concepts:
                break
            if not isinstance(item, dict):
                continue
            concept = str(item.get("concept") or "").strip()
            category = str(item.get("category") or "").strip().lower()
            try:
                confidence = float(item.get("confidence", 0.0))
            except (TypeError, ValueError):
                continue
            if not concept or category not in self.categories or confidence < self.min_confidence:
                continue
            outcome = self.store(
                user_id,
                concept,
                description=str(item.get("description") or ""),
                category=category,
                confidence=confidence,
                source="extraction",
            )
            stored[concept.lower()] = outcome.id
            accepted += 1

        linked = 0
        raw_relationships = payload.get("relationships")
        if not isinstance(raw_relationships, list):
            raw_relationships = []
        for rel in raw_relationships:
            if not isinstance(rel, dict):
                continue
            source_id = stored.get(str(rel.get("source") or "").strip().lower())
            target_id = stored.get(str(rel.get("target") or "").strip().lower())
            relation = str(rel.get("type") or "").strip().lower()
            if source_id is None or target_id is None or relation not in RELATIONS:
                continue
            if source_id == target_id:
                continue
            self.link(source_id, target_id, relation)
            linked += 1
        return accepted, linked


def _append_unique(items: list[str], value: str) -> None:
    if value not in items:
        items.append(value)
