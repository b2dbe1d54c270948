"""Chain plan models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ChainStep(BaseModel):
    """One tool invocation; ``args`` may hold ``{{stepId.path}}`` bindings."""

    id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    parallel_group: int = 0


class RejectedStep(BaseModel):
    step_id: str
    tool_name: str
    reason: str


class ChainPlan(BaseModel):
    """Validated DAG of steps.

    ``steps`` are executable: every tool exists, every dependency is another
    executable step, and the dependency graph is acyclic. Steps that lack
    required inputs are held in ``incomplete_steps``.
    """

    query: str = ""
    steps: list[ChainStep] = Field(default_factory=list)
    needs_more_info: bool = False
    clarification: str | None = None
    incomplete_steps: list[ChainStep] = Field(default_factory=list)
    rejected: list[RejectedStep] = Field(default_factory=list)

    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]

    def get(self, step_id: str) -> ChainStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def tool_names(self) -> list[str]:
        return [step.tool_name for step in self.steps]

    def groups(self) -> list[list[ChainStep]]:
        """Steps bucketed by ``parallel_group`` in ascending order."""
        buckets: dict[int, list[ChainStep]] = {}
        for step in self.steps:
            buckets.setdefault(step.parallel_group, []).append(step)
        return [buckets[key] for key in sorted(buckets)]
