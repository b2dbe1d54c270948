"""Graph store for time-ordered memory nodes and their typed relationships."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import Any

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError

from core.errors import MemoryStoreError
from memory.schemas import GraphEdgeRecord, GraphNodeRecord
from memory.stores.sql_store import SQLStore


class GraphStore(ABC):
    """Node/edge store contract.

    Rows returned by :meth:`query` and :meth:`get_node` are mappings with
    ``id``, ``seq`` (insertion order) and ``props``.
    """

    @abstractmethod
    def create_node(self, label: str, props: dict[str, Any]) -> str:
        raise NotImplementedError

    @abstractmethod
    def create_relationship(self, from_id: str, to_id: str, rel_type: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def query(self, pattern: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Return nodes with label ``pattern`` whose props equal every ``params`` entry."""
        raise NotImplementedError

    @abstractmethod
    def get_node(self, node_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def update_node(self, node_id: str, props: dict[str, Any]) -> None:
        """Shallow-merge ``props`` into the node's properties."""
        raise NotImplementedError

    @abstractmethod
    def neighbors(self, node_id: str, rel_type: str | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def delete_nodes(self, node_ids: list[str]) -> int:
        raise NotImplementedError


def _owner(props: dict[str, Any]) -> str | None:
    value = props.get("user_id")
    return str(value) if value is not None else None


def _row(record: GraphNodeRecord) -> dict[str, Any]:
    return {"id": record.node_id, "seq": record.seq, "props": dict(record.props or {})}


class SQLGraphStore(GraphStore):
    """Property graph persisted in two SQL tables."""

    def __init__(self, sql_store: SQLStore) -> None:
        self.sql_store = sql_store

    def create_node(self, label: str, props: dict[str, Any]) -> str:
        node_id = str(props.get("id") or uuid.uuid4())
        try:
            with self.sql_store.session() as session:
                session.add(
                    GraphNodeRecord(
                        node_id=node_id,
                        label=label,
                        user_id=_owner(props),
                        props={**props, "id": node_id},
                    )
                )
        except SQLAlchemyError as exc:
            raise MemoryStoreError(f"create_node failed: {exc}") from exc
        return node_id

    def create_relationship(self, from_id: str, to_id: str, rel_type: str) -> None:
        try:
            with self.sql_store.session() as session:
                session.add(GraphEdgeRecord(from_id=from_id, to_id=to_id, rel_type=rel_type))
        except SQLAlchemyError as exc:
            raise MemoryStoreError(f"create_relationship failed: {exc}") from exc

    def query(self, pattern: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        filters = dict(params or {})
        stmt = select(GraphNodeRecord).where(GraphNodeRecord.label == pattern)
        if isinstance(filters.get("user_id"), str):
            stmt = stmt.where(GraphNodeRecord.user_id == filters.pop("user_id"))
        try:
            with self.sql_store.session() as session:
                records = session.scalars(stmt.order_by(GraphNodeRecord.seq.asc())).all()
                rows = [_row(record) for record in records]
        except SQLAlchemyError as exc:
            raise MemoryStoreError(f"query failed: {exc}") from exc
        return [
            row
            for row in rows
            if all(row["props"].get(key) == value for key, value in filters.items())
        ]

    def get_node(self, node_id: str) -> dict[str, Any] | None:
        try:
            with self.sql_store.session() as session:
                record = session.scalar(
                    select(GraphNodeRecord).where(GraphNodeRecord.node_id == node_id)
                )
                return _row(record) if record is not None else None
        except SQLAlchemyError as exc:
            raise MemoryStoreError(f"get_node failed: {exc}") from exc

    def update_node(self, node_id: str, props: dict[str, Any]) -> None:
        try:
            with self.sql_store.session() as session:
                record = session.scalar(
                    select(GraphNodeRecord).where(GraphNodeRecord.node_id == node_id)
                )
                if record is None:
                    raise MemoryStoreError(f"node not found: {node_id}")
                record.props = {**(record.props or {}), **props}
                if "user_id" in props:
                    record.user_id = _owner(props)
        except SQLAlchemyError as exc:
            raise MemoryStoreError(f"update_node failed: {exc}") from exc

    def neighbors(self, node_id: str, rel_type: str | None = None) -> list[dict[str, Any]]:
        try:
            with self.sql_store.session() as session:
                stmt = select(GraphEdgeRecord.to_id).where(GraphEdgeRecord.from_id == node_id)
                if rel_type is not None:
                    stmt = stmt.where(GraphEdgeRecord.rel_type == rel_type)
                target_ids = list(session.scalars(stmt).all())
                if not target_ids:
                    return []
                records = session.scalars(
                    select(GraphNodeRecord)
                    .where(GraphNodeRecord.node_id.in_(target_ids))
                    .order_by(GraphNodeRecord.seq.asc())
                ).all()
                return [_row(record) for record in records]
        except SQLAlchemyError as exc:
            raise MemoryStoreError(f"neighbors failed: {exc}") from exc

    def delete_nodes(self, node_ids: list[str]) -> int:
        if not node_ids:
            return 0
        try:
            with self.sql_store.session() as session:
                session.execute(
                    delete(GraphEdgeRecord).where(
                        or_(
                            GraphEdgeRecord.from_id.in_(node_ids),
                            GraphEdgeRecord.to_id.in_(node_ids),
                        )
                    )
                )
                result = session.execute(
                    delete(GraphNodeRecord).where(GraphNodeRecord.node_id.in_(node_ids))
                )
                return int(result.rowcount or 0)
        except SQLAlchemyError as exc:
            raise MemoryStoreError(f"delete_nodes failed: {exc}") from exc
