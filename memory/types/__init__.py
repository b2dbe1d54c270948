"""Typed memory payload models."""

from memory.types.context import ContextWindow, MemoryContext
from memory.types.episodic import EpisodicMemory, EpisodicMetadata, EpisodicRelationships
from memory.types.semantic import SemanticMemory, SemanticMetadata, SemanticRelationships

__all__ = [
    "ContextWindow",
    "EpisodicMemory",
    "EpisodicMetadata",
    "EpisodicRelationships",
    "MemoryContext",
    "SemanticMemory",
    "SemanticMetadata",
    "SemanticRelationships",
]
