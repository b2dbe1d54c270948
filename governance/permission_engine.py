"""Confirmation-gate policy for tool invocations."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from planner.execution_plan import ChainPlan
from tools.tool_registry import ToolRegistry


@dataclass
class PermissionDecision:
    """Whether a step (or plan) may run without asking the user first."""

    requires_confirmation: bool
    reason: str
    steps: list[str] = field(default_factory=list)


class PermissionEngine:
    """Decides which tool calls need explicit user approval.

    Order of precedence: the ``require_confirmation_for`` list, then the
    ``safe_tools`` allow-list, then the tool's own mutating flag.
    """

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        cfg = config or {}
        self.safe_tools = set(cfg.get("safe_tools", []))
        self.require_confirmation_for = set(cfg.get("require_confirmation_for", []))

    @classmethod
    def from_yaml(cls, path: Path) -> PermissionEngine:
        """Build engine from YAML file path."""
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise ValueError("permissions.yaml must be a mapping.")
        return cls(config=data)

    def check_step(
        self,
        tool_name: str,
        args: dict[str, Any],
        registry: ToolRegistry,
    ) -> PermissionDecision:
        if tool_name in self.require_confirmation_for:
            return PermissionDecision(True, f"'{tool_name}' always requires confirmation.")
        if tool_name in self.safe_tools:
            return PermissionDecision(False, f"'{tool_name}' is a safe read-only tool.")
        tool = registry.get(tool_name)
        if tool is not None and tool.is_mutating(args):
            return PermissionDecision(True, f"'{tool_name}' changes external state.")
        return PermissionDecision(False, "Allowed by policy.")

    def check_plan(self, plan: ChainPlan, registry: ToolRegistry) -> PermissionDecision:
        """Plan-level gate: confirmation is needed if any step needs it."""
        flagged: list[str] = []
        reasons: list[str] = []
        for step in plan.steps:
            decision = self.check_step(step.tool_name, step.args, registry)
            if decision.requires_confirmation:
                flagged.append(step.id)
                reasons.append(f"{step.id}: {decision.reason}")
        if flagged:
            return PermissionDecision(True, "; ".join(reasons), flagged)
        return PermissionDecision(False, "No mutating steps.")
