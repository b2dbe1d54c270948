"""Deterministic follow-up overrides applied after model classification.

Short elliptical follow-ups ("now do X", "yes") carry too little signal for
the model alone. Each rule looks at the model's intent plus the turn's
surroundings and either returns a replacement intent or ``None``. Rules are
tried in order and the first match wins.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field

from cognition.query_intent import IntentType, QueryIntent

AFFIRMATIONS = frozenset(
    {"yes", "y", "yeah", "yep", "do it", "proceed", "go ahead", "execute", "confirm", "ok", "okay", "sure"}
)
NEGATIONS = frozenset(
    {"no", "n", "nope", "cancel", "stop", "abort", "don't", "dont", "nevermind", "never mind"}
)
_FILLERS = frozenset({"please", "thanks", "thank you", "now"})

CONTINUATION_RE = re.compile(
    r"^(?:and then|okay now|ok now|after that|and now|now|then|also|next)\b",
    re.IGNORECASE,
)


def _phrases(text: str) -> list[str] | None:
    """Split ``text`` into known confirmation phrases, or ``None`` if anything else remains."""
    words = re.sub(r"[^\w\s']", " ", text.lower()).split()
    known = AFFIRMATIONS | NEGATIONS | _FILLERS
    phrases: list[str] = []
    index = 0
    while index < len(words):
        pair = " ".join(words[index : index + 2])
        if index + 1 < len(words) and pair in known:
            phrases.append(pair)
            index += 2
        elif words[index] in known:
            phrases.append(words[index])
            index += 1
        else:
            return None
    return phrases


def confirmation_kind(text: str) -> str | None:
    """``"affirm"``, ``"deny"`` or ``None`` for a yes/no style reply."""
    phrases = _phrases(text)
    if not phrases:
        return None
    affirm = any(p in AFFIRMATIONS for p in phrases)
    deny = any(p in NEGATIONS for p in phrases)
    if affirm and not deny:
        return "affirm"
    if deny and not affirm:
        return "deny"
    return None


def is_continuation(text: str) -> bool:
    return CONTINUATION_RE.match(text.strip()) is not None


def _no_tools(_query: str) -> list[str]:
    return []


@dataclass
class FollowUpContext:
    query: str
    prior_intent: QueryIntent | None = None
    pending_confirmation: bool = False
    derive_tools: Callable[[str], list[str]] = field(default=_no_tools)


@dataclass
class OverrideRule:
    name: str
    apply: Callable[[QueryIntent, FollowUpContext], QueryIntent | None]


def _confirmation_reply(intent: QueryIntent, ctx: FollowUpContext) -> QueryIntent | None:
    if not ctx.pending_confirmation:
        return None
    kind = confirmation_kind(ctx.query)
    if kind is None:
        return None
    return intent.model_copy(
        update={
            "type": IntentType.TOOL_EXECUTION,
            "confidence": 1.0,
            "confirmation": kind,
            "reasoning": f"Reply to pending confirmation ({kind}).",
            "memory_context": False,
        }
    )


def _tool_continuation(intent: QueryIntent, ctx: FollowUpContext) -> QueryIntent | None:
    if ctx.prior_intent is None or ctx.prior_intent.type is not IntentType.TOOL_EXECUTION:
        return None
    if not is_continuation(ctx.query):
        return None
    tools = intent.required_tools or tuple(ctx.derive_tools(ctx.query))
    if not tools:
        tools = ctx.prior_intent.required_tools
    reasoning = "Continuation of a previous tool request."
    if intent.type is not IntentType.TOOL_EXECUTION:
        reasoning += f" Model said {intent.type.value}."
    return intent.model_copy(
        update={
            "type": IntentType.TOOL_EXECUTION,
            "confidence": max(intent.confidence, 0.8),
            "required_tools": tuple(tools),
            "reasoning": reasoning,
        }
    )


RULES: tuple[OverrideRule, ...] = (
    OverrideRule("confirmation_reply", _confirmation_reply),
    OverrideRule("tool_continuation", _tool_continuation),
)


def apply_rules(
    intent: QueryIntent,
    ctx: FollowUpContext,
    rules: tuple[OverrideRule, ...] = RULES,
) -> QueryIntent:
    """Return the first rule's rewrite of ``intent``, or ``intent`` unchanged."""
    for rule in rules:
        rewritten = rule.apply(intent, ctx)
        if rewritten is not None:
            return rewritten.model_copy(update={"override": rule.name})
    return intent
