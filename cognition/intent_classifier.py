"""Two-stage intent classification: model output, then deterministic follow-up rules."""

from __future__ import annotations

import logging
from typing import Any

from cognition.followup_rules import FollowUpContext, apply_rules, confirmation_kind
from cognition.query_intent import MEMORY_INTENTS, TOOL_INTENTS, IntentType, QueryIntent
from core.errors import LLMError
from core.event_bus import TURN_CLASSIFIED, EventBus
from llm.base_llm import BaseLLM
from llm.prompt_engine.response_parser import parse_json_object
from llm.retry import call_with_retry
from tools.tool_registry import ToolRegistry

logger = logging.getLogger("mta.cognition.intent")

_CLASSIFIER_SYSTEM_PROMPT = """\
You are an intent classifier for an assistant that holds memory-aware
conversations, runs tools, and combines both.

Intent types:
1. memory_chat: conversation that depends on earlier conversation or stored
   memories. "What did we discuss yesterday?", "Remember that I like Python"
2. tool_execution: calculations, API calls, data processing with a tool.
   "Calculate 5 + 3", "Fetch the posts for user 1"
3. hybrid: tool use that also needs the user's memory or preferences.
   "Based on my preferences, find a restaurant"
4. knowledge_search: looking up stored knowledge without chatting.
   "What do I know about machine learning?"
5. conversation: general chat. "Hello", "Tell me a joke"
6. unknown: cannot be classified.

Respond with ONLY a JSON object:
{"type": "...", "confidence": 0.0-1.0, "requiredTools": ["tool", ...],
 "memoryContext": true|false, "reasoning": "short explanation"}
"""


def _tail_lines(conversation_tail: list[Any] | None, limit: int) -> list[str]:
    lines: list[str] = []
    for item in (conversation_tail or [])[-limit:]:
        content = getattr(item, "content", None)
        if content is not None:
            source = getattr(getattr(item, "metadata", None), "source", "user")
            lines.append(f"{source}: {content}")
        else:
            lines.append(str(item))
    return lines


class IntentClassifier:
    """Maps a query to a :class:`QueryIntent`; never raises."""

    def __init__(
        self,
        llm: BaseLLM,
        registry: ToolRegistry,
        config: dict[str, Any] | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.llm = llm
        self.registry = registry
        cls_cfg = (config or {}).get("classifier", {})
        self.max_retries = int(cls_cfg.get("max_retries", 2))
        self.backoff_seconds = float(cls_cfg.get("backoff_seconds", 0.5))
        self.tail_limit = int(cls_cfg.get("conversation_tail", 6))
        self.event_bus = event_bus

    def build_prompt(
        self,
        query: str,
        tools: list[str],
        prior_intent: QueryIntent | None,
        conversation_tail: list[Any] | None,
    ) -> str:
        lines = ["Available tools:"]
        for schema in self.registry.schemas(tools):
            required = ", ".join(schema["parameters"].get("required", [])) or "none"
            lines.append(f"- {schema['name']}: {schema['description']} (required: {required})")
        if len(lines) == 1:
            lines.append("- none")
        tail = _tail_lines(conversation_tail, self.tail_limit)
        if tail:
            lines += ["", "Recent conversation:", *tail]
        if prior_intent is not None:
            lines += ["", f"Previous intent: {prior_intent.type.value}"]
        lines += ["", f'Classify this user query:\n"{query}"']
        return "\n".join(lines)

    def normalize(self, payload: dict[str, Any], tools: list[str], query: str) -> QueryIntent:
        """Coerce an untrusted model payload into a valid intent."""
        raw_type = str(payload.get("type", "")).strip().lower()
        try:
            intent_type = IntentType(raw_type)
        except ValueError:
            intent_type = IntentType.UNKNOWN
        try:
            confidence = float(payload.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        confidence = max(0.0, min(1.0, confidence))

        raw_tools = payload.get("requiredTools", payload.get("required_tools", []))
        if not isinstance(raw_tools, list):
            raw_tools = []
        required = [str(t) for t in raw_tools if str(t) in tools]
        if intent_type in TOOL_INTENTS and not required:
            required = [t for t in self.registry.match_tools(query) if t in tools]

        memory_context = payload.get("memoryContext", payload.get("memory_context"))
        if not isinstance(memory_context, bool):
            memory_context = intent_type in MEMORY_INTENTS
        return QueryIntent(
            type=intent_type,
            confidence=confidence,
            required_tools=tuple(dict.fromkeys(required)),
            reasoning=str(payload.get("reasoning") or ""),
            memory_context=memory_context,
        )

    def _model_intent(
        self,
        query: str,
        tools: list[str],
        prior_intent: QueryIntent | None,
        conversation_tail: list[Any] | None,
        cancel_token: Any | None,
    ) -> QueryIntent:
        prompt = self.build_prompt(query, tools, prior_intent, conversation_tail)
        try:
            raw = call_with_retry(
                lambda: self.llm.complete(prompt, system=_CLASSIFIER_SYSTEM_PROMPT, temperature=0.0),
                max_retries=self.max_retries,
                backoff_seconds=self.backoff_seconds,
                label="classifier",
                cancel_token=cancel_token,
            )
        except LLMError as exc:
            logger.warning("Classification unavailable, degrading to unknown: %s", exc)
            return QueryIntent.fallback(f"classification unavailable: {exc}")
        parsed = parse_json_object(raw)
        if not parsed.ok:
            logger.warning("Classifier output unparseable (%s): %.200s", parsed.error, raw)
            return QueryIntent.fallback("parse failure")
        return self.normalize(parsed.value or {}, tools, query)

    def classify(
        self,
        query: str,
        prior_intent: QueryIntent | None = None,
        available_tools: list[str] | None = None,
        conversation_tail: list[Any] | None = None,
        pending_confirmation: bool = False,
        cancel_token: Any | None = None,
    ) -> QueryIntent:
        tools = [t for t in (available_tools or self.registry.names()) if t in self.registry]
        if pending_confirmation and confirmation_kind(query) is not None:
            intent = QueryIntent.fallback("reply to pending confirmation")
        else:
            intent = self._model_intent(query, tools, prior_intent, conversation_tail, cancel_token)

        ctx = FollowUpContext(
            query=query,
            prior_intent=prior_intent,
            pending_confirmation=pending_confirmation,
            derive_tools=lambda q: [t for t in self.registry.match_tools(q) if t in tools],
        )
        final = apply_rules(intent, ctx)
        if final.override:
            logger.info(
                "Follow-up rule %s rewrote %s -> %s",
                final.override,
                intent.type.value,
                final.type.value,
            )
        if self.event_bus is not None:
            self.event_bus.emit(TURN_CLASSIFIED, {"query": query, "intent": final.model_dump(mode="json")})
        return final
