"""Semantic memory de-duplication, search and extraction tests."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy import select

from core.errors import LLMProviderError, MemoryStoreError
from memory.embeddings import HashingEmbedder
from memory.episodic import EpisodicMemoryManager
from memory.schemas import VectorRecord
from memory.semantic import SemanticMemoryManager
from memory.stores.graph_store import SQLGraphStore
from memory.stores.sql_store import SQLStore
from memory.stores.vector_store import SQLVectorStore, cosine
from memory.types.episodic import EpisodicMemory, EpisodicMetadata


def build_semantic(sql_store: SQLStore, llm=None, config: dict | None = None) -> SemanticMemoryManager:
    episodic = EpisodicMemoryManager(SQLGraphStore(sql_store), config=config)
    return SemanticMemoryManager(
        SQLVectorStore(sql_store),
        HashingEmbedder(128),
        episodic=episodic,
        llm=llm,
        config=config,
    )


def test_hashing_embedder_is_deterministic_and_normalised() -> None:
    embedder = HashingEmbedder(64)
    first = embedder.embed("Python programming language")
    assert first == embedder.embed("Python programming language")
    assert cosine(first, first) == pytest.approx(1.0)
    assert cosine(first, embedder.embed("banana bread recipe")) < 0.5
    assert embedder.embed("") == [0.0] * 64


def test_near_duplicate_concepts_merge(sql_store: SQLStore) -> None:
    semantic = build_semantic(sql_store)
    first = semantic.store("u1", "Python", "programming language", category="skill", confidence=0.6)
    second = semantic.store("u1", "python", "Programming language", category="skill", confidence=0.9)

    assert first.merged is False
    assert second.merged is True
    assert second.id == first.id
    merged = semantic.get(first.id)
    assert merged is not None
    assert merged.metadata.access_count == 2
    assert merged.metadata.confidence == 0.9
    assert semantic.stats("u1") == {"count": 1, "categories": {"skill": 1}}


def test_duplicates_are_scoped_per_user(sql_store: SQLStore) -> None:
    semantic = build_semantic(sql_store)
    semantic.store("u1", "Berlin", "city the user lives in", category="place")
    outcome = semantic.store("u2", "Berlin", "city the user lives in", category="place")

    assert outcome.merged is False
    assert semantic.stats("u2")["count"] == 1


def test_search_orders_by_similarity_then_confidence(sql_store: SQLStore) -> None:
    semantic = build_semantic(sql_store)
    semantic.store("u1", "jazz music", category="preference", confidence=0.7)
    semantic.store("u1", "rock climbing", category="skill", confidence=0.9)
    semantic.store("u1", "tax deadline", "april", category="event", confidence=0.8)

    hits = semantic.search("u1", "jazz music", threshold=0.1)
    assert hits[0][0].concept == "jazz music"
    assert hits[0][1] == pytest.approx(1.0)
    assert all(score >= 0.1 for _, score in hits)

    skills = semantic.search("u1", "jazz music", threshold=-1.0, categories=["skill"])
    assert [memory.concept for memory, _ in skills] == ["rock climbing"]
    assert semantic.search("u1", "completely unrelated words", threshold=0.99) == []


def test_search_does_not_touch_access_stats(sql_store: SQLStore) -> None:
    semantic = build_semantic(sql_store)
    stored = semantic.store("u1", "green tea", category="preference")
    semantic.search("u1", "green tea", threshold=0.0)
    semantic.search("u1", "green tea", threshold=0.0)

    memory = semantic.get(stored.id)
    assert memory is not None
    assert memory.metadata.access_count == 1


def test_link_records_both_directions(sql_store: SQLStore) -> None:
    semantic = build_semantic(sql_store)
    animal = semantic.store("u1", "animal", category="topic").id
    dog = semantic.store("u1", "dog", "a pet", category="topic").id

    semantic.link(dog, animal, "parent")

    child = semantic.get(dog)
    parent = semantic.get(animal)
    assert child is not None and parent is not None
    assert child.relationships.parent == animal
    assert parent.relationships.children == [dog]
    with pytest.raises(ValueError):
        semantic.link(dog, animal, "cousin")
    with pytest.raises(MemoryStoreError):
        semantic.link(dog, "missing", "similar")


def _seed_conversation(semantic: SemanticMemoryManager, lines: list[str]) -> None:
    assert semantic.episodic is not None
    for index, line in enumerate(lines):
        semantic.episodic.store(
            EpisodicMemory(
                user_id="u1",
                session_id="s1",
                timestamp=datetime(2026, 3, 1, 9, index, tzinfo=UTC),
                content=line,
                metadata=EpisodicMetadata(source="user"),
            )
        )


def test_extraction_filters_and_links(sql_store: SQLStore, scripted) -> None:
    llm = scripted(
        {
            "extract durable knowledge": {
                "concepts": [
                    {"concept": "Berlin", "description": "user's city", "category": "place", "confidence": 0.9},
                    {"concept": "Germany", "description": "country", "category": "place", "confidence": 0.8},
                    {"concept": "maybe cats", "category": "preference", "confidence": 0.2},
                    {"concept": "spaceship", "category": "vehicle", "confidence": 0.9},
                ],
                "relationships": [
                    {"source": "Berlin", "target": "Germany", "type": "parent"},
                    {"source": "Berlin", "target": "Atlantis", "type": "parent"},
                ],
            }
        }
    )
    semantic = build_semantic(sql_store, llm=llm)
    _seed_conversation(semantic, ["I live in Berlin", "Berlin is in Germany"])

    report = semantic.extract_from_episodic("u1", "s1")

    assert report.batches == 1
    assert report.failed_batches == 0
    assert report.extracted_concepts == 2
    assert report.extracted_relationships == 1
    berlin = semantic.search("u1", "Berlin: user's city", threshold=0.9)[0][0]
    assert berlin.metadata.source == "extraction"
    assert berlin.relationships.parent is not None
    assert "I live in Berlin" in llm.prompts_for("extract durable knowledge")[0]


def test_extraction_counts_failed_batches(sql_store: SQLStore, scripted) -> None:
    llm = scripted(
        {"extract durable knowledge": [LLMProviderError("down"), LLMProviderError("down"), "not json"]}
    )
    config = {"extraction": {"batch_size": 1, "max_retries": 1, "backoff_seconds": 0}}
    semantic = build_semantic(sql_store, llm=llm, config=config)
    _seed_conversation(semantic, ["first", "second"])

    report = semantic.extract_from_episodic("u1", "s1")

    assert report.batches == 2
    assert report.failed_batches == 2
    assert report.extracted_concepts == 0


def test_vector_owner_column_scopes_reads(sql_store: SQLStore) -> None:
    store = SQLVectorStore(sql_store)
    store.upsert("a", [1.0, 0.0], {"user_id": "u1", "category": "place"})
    store.upsert("b", [1.0, 0.0], {"user_id": "u2", "category": "place"})
    store.upsert("c", [0.0, 1.0], {"user_id": "u1", "category": "person"})

    assert [item["id"] for item in store.list({"user_id": "u1"})] == ["a", "c"]
    hits = store.query([1.0, 0.0], 5, {"user_id": "u1", "category": ["place"]})
    assert [hit["id"] for hit in hits] == ["a"]

    store.upsert("b", [1.0, 0.0], {"user_id": "u1", "category": "place"})
    with sql_store.session() as session:
        owners = dict(session.execute(select(VectorRecord.vector_id, VectorRecord.user_id)).all())
    assert owners == {"a": "u1", "b": "u1", "c": "u1"}
    assert store.list({"user_id": "u2"}) == []
