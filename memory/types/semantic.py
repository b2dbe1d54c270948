"""Semantic memory models."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field


class SemanticMetadata(BaseModel):
    category: str = "fact"
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    source: str = "explicit"
    last_accessed: datetime = Field(default_factory=lambda: datetime.now(UTC))
    access_count: int = 1


class SemanticRelationships(BaseModel):
    similar: list[str] = Field(default_factory=list)
    parent: str | None = None
    children: list[str] = Field(default_factory=list)


class SemanticMemory(BaseModel):
    """Distilled, de-duplicated concept with its embedding."""

    id: str = ""
    user_id: str
    concept: str
    description: str = ""
    embedding: list[float] = Field(default_factory=list)
    metadata: SemanticMetadata = Field(default_factory=SemanticMetadata)
    relationships: SemanticRelationships = Field(default_factory=SemanticRelationships)

    def embedding_text(self) -> str:
        return f"{self.concept}: {self.description}" if self.description else self.concept
