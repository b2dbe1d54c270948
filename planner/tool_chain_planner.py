"""Query-to-chain-plan planning: LLM proposal followed by strict validation.

The model proposes steps; nothing it says is trusted. Validation strips
unknown tools, dangling dependencies and cycles, holds back steps that
still lack required inputs, and layers the survivors into parallel groups.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from core.errors import LLMError, ToolNotFoundError
from core.event_bus import PLAN_BUILT, EventBus
from llm.base_llm import BaseLLM
from llm.prompt_engine.response_parser import parse_json_object
from llm.retry import call_with_retry
from planner.bindings import references
from planner.dependency_graph import DependencyGraph
from planner.execution_plan import ChainPlan, ChainStep, RejectedStep
from tools.tool_registry import ToolRegistry

logger = logging.getLogger("mta.planner")

_PLANNER_SYSTEM_PROMPT = """\
You are a tool-chain planner. Turn the user's request into the smallest list
of tool calls that fulfils it, using ONLY the tools listed.

Rules:
- Each step: {"id": "step1", "tool": "<tool name>", "args": {...}, "dependsOn": ["stepN", ...]}.
- To use an earlier step's result, write {{stepId.path}} inside an argument,
  e.g. {{step1.data[0].id}} or {{step1.data.0.id}}. Paths follow the result
  shape given in the tool description.
- A step that needs another step's output must list it in dependsOn.
- Independent steps must not depend on each other so they can run in parallel.
- Never invent tools, URLs or values the user did not give or imply.
- If required information is missing, return no steps and ask one short
  question in "clarification".

Return ONLY JSON: {"steps": [...], "clarification": null}
"""

_ANGLE_SLOT_RE = re.compile(r"\s*<[A-Za-z_ ]+>\s*")
_BRACE_SLOT_RE = re.compile(r"(?<!\{)\{[A-Za-z_][A-Za-z0-9_]*\}(?!\})")


def _unfilled(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return (
            not value.strip()
            or _ANGLE_SLOT_RE.fullmatch(value) is not None
            or _BRACE_SLOT_RE.search(value) is not None
        )
    return False


class ToolChainPlanner:
    """Builds validated :class:`ChainPlan` objects."""

    def __init__(
        self,
        llm: BaseLLM,
        registry: ToolRegistry,
        config: dict[str, Any] | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.llm = llm
        self.registry = registry
        plan_cfg = (config or {}).get("planner", {})
        self.max_retries = int(plan_cfg.get("max_retries", 1))
        self.backoff_seconds = float(plan_cfg.get("backoff_seconds", 0.5))
        self.max_steps = int(plan_cfg.get("max_steps", 8))
        self.event_bus = event_bus

    def _prompt(self, query: str, tools: list[str], context: str) -> str:
        parts = ["Available tools:", json.dumps(self.registry.schemas(tools), indent=2)]
        if context:
            parts += ["", "Conversation memory:", context]
        parts += ["", f"Request: {query}"]
        return "\n".join(parts)

    def plan(
        self,
        query: str,
        available_tools: list[str] | None = None,
        context: str = "",
        cancel_token: Any | None = None,
    ) -> ChainPlan:
        """Plan ``query``; always returns a well-typed plan."""
        tools = [t for t in (available_tools or self.registry.names()) if t in self.registry]
        if not tools:
            return ChainPlan(
                query=query,
                needs_more_info=True,
                clarification="No tools are available to carry out that request.",
            )

        prompt = self._prompt(query, tools, context)
        try:
            raw = call_with_retry(
                lambda: self.llm.complete(prompt, system=_PLANNER_SYSTEM_PROMPT, temperature=0.0),
                max_retries=self.max_retries,
                backoff_seconds=self.backoff_seconds,
                label="planner",
                cancel_token=cancel_token,
            )
        except LLMError as exc:
            logger.warning("Planning failed, asking for more information: %s", exc)
            return ChainPlan(
                query=query,
                needs_more_info=True,
                clarification="I couldn't work out the steps for that. Could you rephrase or add detail?",
            )

        parsed = parse_json_object(raw)
        if not parsed.ok:
            logger.warning("Planner output unparseable (%s): %.200s", parsed.error, raw)
            return ChainPlan(
                query=query,
                needs_more_info=True,
                clarification="I couldn't work out the steps for that. Could you rephrase or add detail?",
            )
        payload = parsed.value or {}
        steps = self._coerce_steps(payload.get("steps"))
        clarification = payload.get("clarification")
        plan = self.validate(
            steps,
            query=query,
            available_tools=tools,
            clarification=clarification if isinstance(clarification, str) and clarification.strip() else None,
        )
        if self.event_bus is not None:
            self.event_bus.emit(
                PLAN_BUILT,
                {
                    "query": query,
                    "steps": plan.step_ids(),
                    "rejected": [r.step_id for r in plan.rejected],
                    "needs_more_info": plan.needs_more_info,
                },
            )
        return plan

    def _coerce_steps(self, raw_steps: Any) -> list[ChainStep]:
        if not isinstance(raw_steps, list):
            return []
        steps: list[ChainStep] = []
        for index, item in enumerate(raw_steps[: self.max_steps], start=1):
            if not isinstance(item, dict):
                continue
            tool = item.get("tool") or item.get("toolName") or item.get("tool_name") or ""
            args = item.get("args") if isinstance(item.get("args"), dict) else {}
            deps = item.get("dependsOn", item.get("depends_on", []))
            if isinstance(deps, str):
                deps = [deps]
            if not isinstance(deps, list):
                deps = []
            steps.append(
                ChainStep(
                    id=str(item.get("id") or f"step{index}"),
                    tool_name=str(tool),
                    args=args,
                    depends_on=[str(dep) for dep in deps],
                )
            )
        return steps

    def validate(
        self,
        steps: list[ChainStep],
        query: str = "",
        available_tools: list[str] | None = None,
        clarification: str | None = None,
    ) -> ChainPlan:
        """Turn proposed steps into an executable DAG plus held-back and rejected steps."""
        allowed = set(available_tools or self.registry.names())
        rejected: list[RejectedStep] = []
        candidates: dict[str, ChainStep] = {}

        for step in steps:
            if step.id in candidates:
                rejected.append(
                    RejectedStep(step_id=step.id, tool_name=step.tool_name, reason="duplicate step id")
                )
                continue
            try:
                if step.tool_name not in allowed:
                    raise ToolNotFoundError(step.tool_name)
                self.registry.require(step.tool_name)
            except ToolNotFoundError as exc:
                logger.warning("Stripping step %s: %s", step.id, exc)
                rejected.append(
                    RejectedStep(step_id=step.id, tool_name=step.tool_name, reason="unknown tool")
                )
                continue
            deps = list(dict.fromkeys([*step.depends_on, *sorted(references(step.args))]))
            candidates[step.id] = step.model_copy(update={"depends_on": deps})

        # Dependencies on stripped or never-proposed steps invalidate the dependent.
        changed = True
        while changed:
            changed = False
            for step_id, step in list(candidates.items()):
                missing = [dep for dep in step.depends_on if dep not in candidates]
                if missing:
                    rejected.append(
                        RejectedStep(
                            step_id=step_id,
                            tool_name=step.tool_name,
                            reason=f"depends on unavailable step(s): {', '.join(missing)}",
                        )
                    )
                    del candidates[step_id]
                    changed = True

        graph = DependencyGraph.from_dependencies({sid: s.depends_on for sid, s in candidates.items()})
        _, blocked = graph.layers()
        for step_id in [sid for sid in candidates if sid in blocked]:
            logger.warning("Stripping step %s: part of or downstream of a dependency cycle", step_id)
            rejected.append(
                RejectedStep(
                    step_id=step_id,
                    tool_name=candidates[step_id].tool_name,
                    reason="dependency cycle",
                )
            )
            del candidates[step_id]

        incomplete_roots: set[str] = set()
        missing_params: dict[str, list[str]] = {}
        for step_id, step in candidates.items():
            tool = self.registry.require(step.tool_name)
            missing = [
                name for name in tool.required_params() if name not in step.args or _unfilled(step.args[name])
            ]
            if missing:
                incomplete_roots.add(step_id)
                missing_params[step_id] = missing

        graph = DependencyGraph.from_dependencies({sid: s.depends_on for sid, s in candidates.items()})
        held = incomplete_roots | graph.downstream(incomplete_roots)
        incomplete = [step for sid, step in candidates.items() if sid in held]
        ready = {sid: step for sid, step in candidates.items() if sid not in held}

        graph = DependencyGraph.from_dependencies({sid: s.depends_on for sid, s in ready.items()})
        layers, _ = graph.layers()
        group_of = {sid: index for index, layer in enumerate(layers) for sid in layer}
        executable = [
            step.model_copy(update={"parallel_group": group_of[sid]}) for sid, step in ready.items()
        ]

        needs_more_info = not executable or bool(incomplete)
        if needs_more_info and clarification is None:
            clarification = self._clarification(incomplete, missing_params, allowed)
        plan = ChainPlan(
            query=query,
            steps=executable,
            needs_more_info=needs_more_info,
            clarification=clarification if needs_more_info else None,
            incomplete_steps=incomplete,
            rejected=rejected,
        )
        logger.info(
            "Plan: %d executable, %d incomplete, %d rejected",
            len(executable),
            len(incomplete),
            len(rejected),
        )
        return plan

    @staticmethod
    def _clarification(
        incomplete: list[ChainStep],
        missing_params: dict[str, list[str]],
        allowed: set[str],
    ) -> str:
        for step in incomplete:
            if step.id in missing_params:
                params = ", ".join(missing_params[step.id])
                return f"To use {step.tool_name} I still need: {params}. Could you provide it?"
        return (
            "I couldn't map that request to an available tool "
            f"({', '.join(sorted(allowed))}). What exactly should I do?"
        )
