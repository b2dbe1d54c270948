"""Chain-plan execution with a confirmation gate and partial-failure handling.

State machine::

    PLANNED -> (CONFIRMING) -> EXECUTING -> COMPLETED | PARTIAL | FAILED

A plan with any mutating step parks in CONFIRMING until the user's next
turn. Ready steps (every dependency succeeded) run concurrently up to
``max_concurrency``; steps downstream of a failure are skipped.
"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from cognition.followup_rules import confirmation_kind
from core.errors import BindingResolutionError
from core.event_bus import (
    CONFIRMATION_REQUESTED,
    EXECUTION_FINISHED,
    STEP_COMPLETED,
    EventBus,
)
from executor.cancellation import CancellationToken
from executor.safe_runner import SafeRunner, StepRun
from governance.permission_engine import PermissionEngine
from memory.confirmations import PendingConfirmationStore
from planner.bindings import resolve
from planner.execution_plan import ChainPlan, ChainStep
from tools.tool_registry import ToolRegistry

logger = logging.getLogger("mta.executor.engine")

USER_CANCELLED = "user_cancelled"


class ExecutionState(str, Enum):
    PLANNED = "planned"
    CONFIRMING = "confirming"
    EXECUTING = "executing"
    PARTIAL = "partial"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ToolExecutionResult:
    step_id: str
    tool_name: str
    success: bool
    result: Any = None
    error: str | None = None
    duration_ms: float = 0.0
    status: StepStatus = StepStatus.FAILED
    attempts: int = 0
    args: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "tool_name": self.tool_name,
            "success": self.success,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 3),
            "attempts": self.attempts,
        }


@dataclass
class ExecutionOutcome:
    state: ExecutionState
    plan: ChainPlan
    results: list[ToolExecutionResult] = field(default_factory=list)
    reason: str | None = None
    confirmation_message: str | None = None

    @property
    def executed(self) -> list[ToolExecutionResult]:
        return [r for r in self.results if r.status is not StepStatus.SKIPPED]

    def summary(self) -> dict[str, Any]:
        """Compact, JSON-safe description for memory write-back."""
        return {
            "state": self.state.value,
            "reason": self.reason,
            "steps": [
                {
                    "step_id": r.step_id,
                    "tool_name": r.tool_name,
                    "status": r.status.value,
                    "error": r.error,
                }
                for r in self.results
            ],
        }


def _skipped(step: ChainStep, error: str) -> ToolExecutionResult:
    return ToolExecutionResult(
        step_id=step.id,
        tool_name=step.tool_name,
        success=False,
        error=error,
        status=StepStatus.SKIPPED,
    )


def _failed(step: ChainStep, error: str, args: dict[str, Any] | None = None) -> ToolExecutionResult:
    return ToolExecutionResult(
        step_id=step.id,
        tool_name=step.tool_name,
        success=False,
        error=error,
        status=StepStatus.FAILED,
        args=args or {},
    )


class ToolExecutionEngine:
    """Runs validated chain plans."""

    def __init__(
        self,
        registry: ToolRegistry,
        runner: SafeRunner,
        permissions: PermissionEngine,
        confirmations: PendingConfirmationStore,
        config: dict[str, Any] | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.registry = registry
        self.runner = runner
        self.permissions = permissions
        self.confirmations = confirmations
        self.max_concurrency = max(1, int((config or {}).get("execution", {}).get("max_concurrency", 4)))
        self.event_bus = event_bus or EventBus()

    def run(
        self,
        plan: ChainPlan,
        user_id: str,
        session_id: str,
        cancel_token: CancellationToken | None = None,
    ) -> ExecutionOutcome:
        """Gate ``plan`` on confirmation if needed, otherwise execute it."""
        if not plan.steps:
            return ExecutionOutcome(ExecutionState.FAILED, plan, reason="plan has no executable steps")
        decision = self.permissions.check_plan(plan, self.registry)
        if decision.requires_confirmation:
            message = self.confirmation_message(plan, decision.steps)
            self.confirmations.save(user_id, session_id, plan, message)
            self.event_bus.emit(
                CONFIRMATION_REQUESTED,
                {"user_id": user_id, "session_id": session_id, "steps": decision.steps},
            )
            logger.info("Plan for %s/%s awaits confirmation: %s", user_id, session_id, decision.reason)
            return ExecutionOutcome(
                ExecutionState.CONFIRMING,
                plan,
                reason=decision.reason,
                confirmation_message=message,
            )
        return self.execute(plan, cancel_token)

    def resolve_confirmation(
        self,
        user_id: str,
        session_id: str,
        reply: str,
        cancel_token: CancellationToken | None = None,
    ) -> ExecutionOutcome | None:
        """Act on a yes/no reply; ``None`` when nothing is pending or the reply is neither."""
        pending = self.confirmations.get(user_id, session_id)
        if pending is None:
            return None
        kind = reply if reply in ("affirm", "deny") else confirmation_kind(reply)
        if kind is None:
            return None
        self.confirmations.clear(user_id, session_id)
        if kind == "deny":
            logger.info("User cancelled pending plan for %s/%s", user_id, session_id)
            outcome = ExecutionOutcome(ExecutionState.FAILED, pending.plan, reason=USER_CANCELLED)
            self.event_bus.emit(EXECUTION_FINISHED, {"state": outcome.state.value, "reason": USER_CANCELLED})
            return outcome
        return self.execute(pending.plan, cancel_token)

    def confirmation_message(self, plan: ChainPlan, flagged: list[str]) -> str:
        lines = ["The following actions change external state:"]
        for step in plan.steps:
            if step.id in flagged:
                lines.append(f"- {step.id}: {step.tool_name} {step.args}")
        lines.append("Reply 'yes' to proceed or 'no' to cancel.")
        return "\n".join(lines)

    def execute(
        self,
        plan: ChainPlan,
        cancel_token: CancellationToken | None = None,
    ) -> ExecutionOutcome:
        """Run every step of ``plan`` respecting dependencies."""
        logger.info("Executing plan with %d steps", len(plan.steps))
        results: dict[str, ToolExecutionResult] = {}
        outputs: dict[str, Any] = {}
        pending: list[ChainStep] = list(plan.steps)
        running: dict[Future[StepRun], tuple[ChainStep, dict[str, Any]]] = {}

        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="chain") as pool:
            while pending or running:
                pending = self._skip_blocked(pending, results)

                if cancel_token is not None and cancel_token.is_cancelled():
                    for step in pending:
                        results[step.id] = _skipped(step, "cancelled")
                    pending = []
                else:
                    for step in [s for s in pending if self._ready(s, results)]:
                        if len(running) >= self.max_concurrency:
                            break
                        pending.remove(step)
                        submitted = self._submit(pool, step, outputs, cancel_token)
                        if isinstance(submitted, ToolExecutionResult):
                            results[step.id] = submitted
                            self._emit_step(submitted)
                        else:
                            running[submitted[0]] = (step, submitted[1])

                if not running:
                    if pending and not any(self._ready(s, results) for s in pending):
                        for step in pending:
                            results[step.id] = _skipped(step, "unsatisfiable dependencies")
                        pending = []
                    continue

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    step, args = running.pop(future)
                    step_run = future.result()
                    result = ToolExecutionResult(
                        step_id=step.id,
                        tool_name=step.tool_name,
                        success=step_run.success,
                        result=step_run.result,
                        error=step_run.error,
                        duration_ms=step_run.duration_ms,
                        status=StepStatus.SUCCEEDED if step_run.success else StepStatus.FAILED,
                        attempts=step_run.attempts,
                        args=args,
                    )
                    results[step.id] = result
                    if step_run.success:
                        outputs[step.id] = step_run.result
                    self._emit_step(result)

        ordered = [results[step.id] for step in plan.steps]
        succeeded = sum(1 for r in ordered if r.success)
        if succeeded == len(ordered):
            state = ExecutionState.COMPLETED
        elif succeeded:
            state = ExecutionState.PARTIAL
        else:
            state = ExecutionState.FAILED
        reason = None
        if cancel_token is not None and cancel_token.is_cancelled():
            reason = "cancelled"
        elif state is not ExecutionState.COMPLETED:
            reason = "; ".join(f"{r.step_id}: {r.error}" for r in ordered if r.error)
        logger.info("Plan finished %s (%d/%d steps succeeded)", state.value, succeeded, len(ordered))
        self.event_bus.emit(EXECUTION_FINISHED, {"state": state.value, "reason": reason})
        return ExecutionOutcome(state, plan, ordered, reason=reason)

    @staticmethod
    def _ready(step: ChainStep, results: dict[str, ToolExecutionResult]) -> bool:
        return all(dep in results and results[dep].success for dep in step.depends_on)

    @staticmethod
    def _skip_blocked(
        pending: list[ChainStep],
        results: dict[str, ToolExecutionResult],
    ) -> list[ChainStep]:
        remaining = list(pending)
        changed = True
        while changed:
            changed = False
            for step in list(remaining):
                blocked = [
                    dep for dep in step.depends_on if dep in results and not results[dep].success
                ]
                if blocked:
                    results[step.id] = _skipped(step, f"dependency failed: {', '.join(blocked)}")
                    logger.warning("Skipping step %s: dependency %s failed", step.id, blocked[0])
                    remaining.remove(step)
                    changed = True
        return remaining

    def _submit(
        self,
        pool: ThreadPoolExecutor,
        step: ChainStep,
        outputs: dict[str, Any],
        cancel_token: CancellationToken | None,
    ) -> ToolExecutionResult | tuple[Future[StepRun], dict[str, Any]]:
        tool = self.registry.get(step.tool_name)
        if tool is None:
            return _failed(step, f"Tool '{step.tool_name}' is not registered.")
        try:
            args = resolve(step.args, outputs)
        except BindingResolutionError as exc:
            return _failed(step, str(exc))
        return pool.submit(self.runner.run, step.id, tool, args, cancel_token), args

    def _emit_step(self, result: ToolExecutionResult) -> None:
        self.event_bus.emit(STEP_COMPLETED, result.to_dict())
