"""Scoring helpers for memory retrieval."""

from __future__ import annotations

import math
from datetime import UTC, datetime

from memory.embeddings import tokenize

_STOPWORDS = frozenset(
    "a an and are as at be but by did do for from i in is it me my of on or "
    "so the to was we what when where who why with you your".split()
)


def keywords(text: str) -> set[str]:
    """Content-bearing tokens of ``text``."""
    return {token for token in tokenize(text) if token not in _STOPWORDS}


def keyword_overlap(query: str, text: str) -> float:
    """Share of query keywords present in ``text``, in [0,1]."""
    q_tokens = keywords(query)
    if not q_tokens:
        return 0.0
    return len(q_tokens & keywords(text)) / len(q_tokens)


def as_utc(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=UTC)


def recency_score(timestamp: datetime, reference: datetime, half_life_hours: float) -> float:
    """Exponential decay of age relative to ``reference``; 1.0 at the reference."""
    if half_life_hours <= 0:
        return 1.0
    age_hours = max(0.0, (as_utc(reference) - as_utc(timestamp)).total_seconds() / 3600.0)
    return math.pow(0.5, age_hours / half_life_hours)


def composite_score(
    recency: float,
    importance: float,
    overlap: float,
    w_recency: float,
    w_importance: float,
    w_keyword: float,
) -> float:
    """Weighted episodic relevance score."""
    return w_recency * recency + w_importance * importance + w_keyword * overlap
