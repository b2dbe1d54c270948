"""Episodic memory models."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class EpisodicMetadata(BaseModel):
    """Mutable metadata of an episodic event."""

    source: str = "user"
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)
    location: str | None = None


class EpisodicRelationships(BaseModel):
    """Weak id references to neighbouring events."""

    previous: str | None = None
    next: str | None = None
    related: list[str] = Field(default_factory=list)


class EpisodicMemory(BaseModel):
    """Time-ordered record of one conversational event."""

    id: str = ""
    user_id: str
    session_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    content: str
    context: dict[str, Any] = Field(default_factory=dict)
    metadata: EpisodicMetadata = Field(default_factory=EpisodicMetadata)
    relationships: EpisodicRelationships = Field(default_factory=EpisodicRelationships)

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
