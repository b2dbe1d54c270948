"""Token-budgeted assembly of episodic and semantic memory into prompt context."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any

from core.errors import LLMError, MemoryStoreError
from llm.base_llm import BaseLLM
from memory.episodic import EpisodicMemoryManager
from memory.semantic import SemanticMemoryManager
from memory.types.context import ContextWindow, MemoryContext
from memory.types.episodic import EpisodicMemory
from memory.types.semantic import SemanticMemory

logger = logging.getLogger("mta.memory.context")

SUMMARY_PREFIX = "[context summary] "

SUMMARY_SYSTEM = (
    "You compress conversation memory. Keep names, numbers, places and user "
    "preferences. Reply with the summary text only."
)


def semantic_line(memory: SemanticMemory) -> str:
    text = f"{memory.concept}: {memory.description}" if memory.description else memory.concept
    return f"[concept/{memory.metadata.category}] {text}"


def episodic_line(memory: EpisodicMemory) -> str:
    stamp = memory.timestamp.strftime("%Y-%m-%d %H:%M")
    return f"[{stamp}] {memory.metadata.source}: {memory.content}"


@dataclass
class _Candidate:
    kind: str
    memory: SemanticMemory | EpisodicMemory
    score: float
    line: str


@dataclass
class AssembledContext:
    context: MemoryContext
    compression_ratio: float = 0.0
    serialized_size: int = 0
    token_budget: int = 0
    summary: str | None = None
    dropped_items: int = 0
    truncated: bool = False
    warnings: list[str] = field(default_factory=list)

    def lines(self) -> list[str]:
        out = [semantic_line(memory) for memory in self.context.semantic_memories]
        out.extend(episodic_line(memory) for memory in self.context.episodic_memories)
        if self.summary:
            out.append(SUMMARY_PREFIX + self.summary)
        return out

    def render(self) -> str:
        return "\n".join(self.lines())


class MemoryContextAssembler:
    """Merges semantic hits and recent episodes under a token budget."""

    def __init__(
        self,
        episodic: EpisodicMemoryManager,
        semantic: SemanticMemoryManager | None = None,
        llm: BaseLLM | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.episodic = episodic
        self.semantic = semantic
        self.llm = llm
        cfg = config or {}
        ctx_cfg = cfg.get("context", {})
        self.token_budget = int(ctx_cfg.get("token_budget", 2000))
        self.chars_per_token = max(1, int(ctx_cfg.get("chars_per_token", 4)))
        self.compression_trigger = float(ctx_cfg.get("compression_trigger", 0.5))
        self.semantic_limit = int(cfg.get("memory", {}).get("semantic_search_limit", 10))

    def token_size(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token)

    def _candidates(
        self,
        user_id: str,
        session_id: str,
        query: str,
        warnings: list[str],
    ) -> list[_Candidate]:
        candidates: list[_Candidate] = []
        if self.semantic is not None and query.strip():
            try:
                hits = self.semantic.search(user_id, query, limit=self.semantic_limit)
            except MemoryStoreError as exc:
                logger.warning("Semantic search failed, using episodic context only: %s", exc)
                warnings.append(f"semantic memory unavailable: {exc}")
                hits = []
            candidates.extend(
                _Candidate("semantic", memory, score, semantic_line(memory)) for memory, score in hits
            )

        episodes = self.episodic.get_context(user_id, session_id)
        scores = self.episodic.score_memories(episodes, query)
        candidates.extend(
            _Candidate("episodic", memory, scores.get(memory.id, 0.0), episodic_line(memory))
            for memory in reversed(episodes)
        )
        return candidates

    def _summarize(self, dropped: list[_Candidate], max_chars: int, cancel_token: Any | None) -> str | None:
        if self.llm is None or max_chars <= 0:
            return None
        if cancel_token is not None and cancel_token.is_cancelled():
            return None
        prompt = (
            f"Summarize these earlier memory items in under {max_chars} characters:\n"
            + "\n".join(item.line for item in dropped)
        )
        try:
            text = self.llm.complete(prompt, system=SUMMARY_SYSTEM, temperature=0.0)
        except LLMError as exc:
            logger.warning("Context compression failed, dropping summary: %s", exc)
            return None
        text = " ".join(text.split())
        return text[:max_chars].rstrip() or None

    def assemble(
        self,
        user_id: str,
        session_id: str,
        query: str,
        token_budget: int | None = None,
        cancel_token: Any | None = None,
    ) -> AssembledContext:
        """Build the prompt context; never exceeds ``token_budget`` tokens.

        Raises ``MemoryStoreError`` only when episodic memory is unreadable.
        """
        budget = self.token_budget if token_budget is None else int(token_budget)
        warnings: list[str] = []
        candidates = self._candidates(user_id, session_id, query, warnings)
        char_budget = max(0, budget) * self.chars_per_token

        kept: list[_Candidate] = []
        used_chars = 0
        for candidate in candidates:
            extra = len(candidate.line) + (1 if kept else 0)
            if used_chars + extra > char_budget:
                break
            kept.append(candidate)
            used_chars += extra
        dropped = candidates[len(kept) :]

        summary = None
        if candidates and len(dropped) / len(candidates) > self.compression_trigger:
            separator = 1 if kept else 0
            room = char_budget - used_chars - separator - len(SUMMARY_PREFIX)
            summary = self._summarize(dropped, room, cancel_token)

        semantic_kept = [c for c in kept if c.kind == "semantic"]
        episodic_kept = [c for c in kept if c.kind == "episodic"]
        episodic_memories = [c.memory for c in reversed(episodic_kept)]
        timestamps = [memory.timestamp for memory in episodic_memories]
        relevance = sum(c.score for c in kept) / len(kept) if kept else 0.0

        context = MemoryContext(
            user_id=user_id,
            session_id=session_id,
            episodic_memories=episodic_memories,
            semantic_memories=[c.memory for c in semantic_kept],
            context_window=ContextWindow(
                start_time=min(timestamps) if timestamps else None,
                end_time=max(timestamps) if timestamps else None,
                relevance_score=relevance,
            ),
        )
        assembled = AssembledContext(
            context=context,
            token_budget=budget,
            summary=summary,
            dropped_items=len(dropped),
            truncated=bool(dropped),
            warnings=warnings,
        )
        assembled.serialized_size = self.token_size(assembled.render())
        if summary is not None:
            candidate_size = self.token_size("\n".join(c.line for c in candidates))
            assembled.compression_ratio = (
                1.0 - assembled.serialized_size / candidate_size if candidate_size else 0.0
            )
        if dropped:
            logger.info(
                "Context for %s/%s kept %d of %d items (%d tokens, budget %d)",
                user_id,
                session_id,
                len(kept),
                len(candidates),
                assembled.serialized_size,
                budget,
            )
        return assembled
