"""Vector store with cosine similarity over stored embeddings."""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from core.errors import MemoryStoreError
from memory.schemas import VectorRecord
from memory.stores.sql_store import SQLStore


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for zero vectors or mismatched widths."""
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _matches(metadata: dict[str, Any], flt: dict[str, Any] | None) -> bool:
    if not flt:
        return True
    for key, expected in flt.items():
        value = metadata.get(key)
        if isinstance(expected, (list, tuple, set)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def _owner(metadata: dict[str, Any]) -> str | None:
    value = metadata.get("user_id")
    return str(value) if value is not None else None


class VectorStore(ABC):
    """Embedding index contract.

    ``query`` returns ``[{"id", "score", "metadata"}]`` sorted by score desc.
    Filters are metadata equality; a list value means "any of".
    """

    @abstractmethod
    def upsert(self, item_id: str, embedding: list[float], metadata: dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def query(
        self,
        embedding: list[float],
        top_k: int,
        flt: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def get(self, item_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, item_ids: list[str]) -> int:
        raise NotImplementedError

    @abstractmethod
    def list(self, flt: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError


class SQLVectorStore(VectorStore):
    """Brute-force cosine index persisted in the ``vectors`` table."""

    def __init__(self, sql_store: SQLStore) -> None:
        self.sql_store = sql_store

    def upsert(self, item_id: str, embedding: list[float], metadata: dict[str, Any]) -> None:
        try:
            with self.sql_store.session() as session:
                record = session.scalar(
                    select(VectorRecord).where(VectorRecord.vector_id == item_id)
                )
                if record is None:
                    session.add(
                        VectorRecord(
                            vector_id=item_id,
                            user_id=_owner(metadata),
                            embedding=list(embedding),
                            metadata_json=dict(metadata),
                        )
                    )
                else:
                    record.embedding = list(embedding)
                    record.metadata_json = dict(metadata)
                    record.user_id = _owner(metadata)
        except SQLAlchemyError as exc:
            raise MemoryStoreError(f"vector upsert failed: {exc}") from exc

    def _load(self, flt: dict[str, Any] | None) -> list[VectorRecord]:
        remaining = dict(flt or {})
        stmt = select(VectorRecord)
        owner = remaining.get("user_id")
        if isinstance(owner, str):
            stmt = stmt.where(VectorRecord.user_id == remaining.pop("user_id"))
        try:
            with self.sql_store.session() as session:
                records = session.scalars(stmt.order_by(VectorRecord.seq)).all()
        except SQLAlchemyError as exc:
            raise MemoryStoreError(f"vector read failed: {exc}") from exc
        return [r for r in records if _matches(r.metadata_json or {}, remaining)]

    def query(
        self,
        embedding: list[float],
        top_k: int,
        flt: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        scored = [
            {
                "id": record.vector_id,
                "score": cosine(embedding, record.embedding or []),
                "metadata": dict(record.metadata_json or {}),
            }
            for record in self._load(flt)
        ]
        scored.sort(key=lambda item: (-item["score"], item["id"]))
        return scored[: max(0, top_k)]

    def get(self, item_id: str) -> dict[str, Any] | None:
        try:
            with self.sql_store.session() as session:
                record = session.scalar(
                    select(VectorRecord).where(VectorRecord.vector_id == item_id)
                )
                if record is None:
                    return None
                return {
                    "id": record.vector_id,
                    "embedding": list(record.embedding or []),
                    "metadata": dict(record.metadata_json or {}),
                }
        except SQLAlchemyError as exc:
            raise MemoryStoreError(f"vector get failed: {exc}") from exc

    def delete(self, item_ids: list[str]) -> int:
        if not item_ids:
            return 0
        try:
            with self.sql_store.session() as session:
                result = session.execute(
                    delete(VectorRecord).where(VectorRecord.vector_id.in_(item_ids))
                )
                return int(result.rowcount or 0)
        except SQLAlchemyError as exc:
            raise MemoryStoreError(f"vector delete failed: {exc}") from exc

    def list(self, flt: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        return [
            {
                "id": record.vector_id,
                "embedding": list(record.embedding or []),
                "metadata": dict(record.metadata_json or {}),
            }
            for record in self._load(flt)
        ]
