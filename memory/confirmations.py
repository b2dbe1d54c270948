"""Pending confirmations persisted per user/session with expiry."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from core.errors import MemoryStoreError
from memory.schemas import PendingConfirmationRecord
from memory.stores.sql_store import SQLStore
from planner.execution_plan import ChainPlan

logger = logging.getLogger("mta.memory.confirmations")


@dataclass
class PendingConfirmation:
    user_id: str
    session_id: str
    plan: ChainPlan
    message: str
    created_at: datetime
    expires_at: datetime


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=UTC)


class PendingConfirmationStore:
    """At most one pending plan per ``(user_id, session_id)``."""

    def __init__(self, sql_store: SQLStore, config: dict[str, Any] | None = None) -> None:
        self.sql_store = sql_store
        self.ttl = timedelta(
            seconds=float((config or {}).get("confirmation", {}).get("ttl_seconds", 600))
        )

    def save(
        self,
        user_id: str,
        session_id: str,
        plan: ChainPlan,
        message: str = "",
        now: datetime | None = None,
    ) -> PendingConfirmation:
        created = now or datetime.now(UTC)
        expires = created + self.ttl
        try:
            with self.sql_store.session() as session:
                session.execute(
                    delete(PendingConfirmationRecord).where(
                        PendingConfirmationRecord.user_id == user_id,
                        PendingConfirmationRecord.session_id == session_id,
                    )
                )
                session.add(
                    PendingConfirmationRecord(
                        user_id=user_id,
                        session_id=session_id,
                        plan_json=plan.model_dump(mode="json"),
                        message=message,
                        created_at=created,
                        expires_at=expires,
                    )
                )
        except SQLAlchemyError as exc:
            raise MemoryStoreError(f"saving pending confirmation failed: {exc}") from exc
        logger.info("Pending confirmation saved for %s/%s", user_id, session_id)
        return PendingConfirmation(user_id, session_id, plan, message, created, expires)

    def get(
        self,
        user_id: str,
        session_id: str,
        now: datetime | None = None,
    ) -> PendingConfirmation | None:
        """Return the live pending confirmation; expired ones are removed."""
        current = now or datetime.now(UTC)
        try:
            with self.sql_store.session() as session:
                record = session.scalar(
                    select(PendingConfirmationRecord)
                    .where(
                        PendingConfirmationRecord.user_id == user_id,
                        PendingConfirmationRecord.session_id == session_id,
                    )
                    .order_by(PendingConfirmationRecord.id.desc())
                )
                if record is None:
                    return None
                if _aware(record.expires_at) <= current:
                    session.delete(record)
                    logger.info("Pending confirmation for %s/%s expired", user_id, session_id)
                    return None
                return PendingConfirmation(
                    user_id=record.user_id,
                    session_id=record.session_id,
                    plan=ChainPlan.model_validate(record.plan_json),
                    message=record.message,
                    created_at=_aware(record.created_at),
                    expires_at=_aware(record.expires_at),
                )
        except SQLAlchemyError as exc:
            raise MemoryStoreError(f"loading pending confirmation failed: {exc}") from exc

    def clear(self, user_id: str, session_id: str) -> bool:
        try:
            with self.sql_store.session() as session:
                result = session.execute(
                    delete(PendingConfirmationRecord).where(
                        PendingConfirmationRecord.user_id == user_id,
                        PendingConfirmationRecord.session_id == session_id,
                    )
                )
                return bool(result.rowcount)
        except SQLAlchemyError as exc:
            raise MemoryStoreError(f"clearing pending confirmation failed: {exc}") from exc
