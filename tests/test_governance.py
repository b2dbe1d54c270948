"""Confirmation policy, audit logging and safe step execution."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from core.errors import ToolExecutionError
from executor.cancellation import CancellationToken
from executor.safe_runner import SafeRunner
from governance.audit_logger import AuditLogger
from governance.permission_engine import PermissionEngine
from planner.execution_plan import ChainPlan, ChainStep
from tools.base_tool import BaseTool
from tools.data_tools.calculator import CalculatorTool
from tools.tool_registry import ToolRegistry
from tools.web_tools.api_call import ApiCallTool


class _NoParams(BaseModel):
    pass


class FlakyTool(BaseTool):
    """Fails transiently ``failures`` times, then succeeds."""

    name = "flaky"
    parameter_schema = _NoParams

    def __init__(self, failures: int, transient: bool = True) -> None:
        super().__init__()
        self.failures = failures
        self.transient = transient
        self.calls = 0

    def _run(self, params: Any) -> dict[str, Any]:
        self.calls += 1
        if self.calls <= self.failures:
            raise ToolExecutionError("temporary glitch", transient=self.transient)
        return {"calls": self.calls}


class SlowTool(BaseTool):
    name = "slow"
    parameter_schema = _NoParams

    def _run(self, params: Any) -> str:
        time.sleep(1.0)
        return "late"


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(CalculatorTool())
    registry.register(ApiCallTool())
    return registry


def test_permission_engine_flags_mutating_steps() -> None:
    permissions = PermissionEngine(config={"safe_tools": ["calculator"], "require_confirmation_for": []})
    registry = _registry()

    assert not permissions.check_step("calculator", {"expression": "1+1"}, registry).requires_confirmation
    get = permissions.check_step("api_call", {"url": "https://x", "method": "GET"}, registry)
    delete = permissions.check_step("api_call", {"url": "https://x", "method": "DELETE"}, registry)
    assert not get.requires_confirmation
    assert delete.requires_confirmation

    plan = ChainPlan(
        steps=[
            ChainStep(id="s1", tool_name="api_call", args={"url": "https://x"}),
            ChainStep(id="s2", tool_name="api_call", args={"url": "https://x", "method": "POST"}),
        ]
    )
    decision = permissions.check_plan(plan, registry)
    assert decision.requires_confirmation
    assert decision.steps == ["s2"]


def test_permission_engine_explicit_list_wins() -> None:
    permissions = PermissionEngine(
        config={"safe_tools": ["calculator"], "require_confirmation_for": ["calculator"]}
    )
    assert permissions.check_step("calculator", {}, _registry()).requires_confirmation


def test_permission_engine_loads_yaml(tmp_path: Path) -> None:
    path = tmp_path / "permissions.yaml"
    path.write_text("safe_tools: [calculator]\nrequire_confirmation_for: [api_call]\n", encoding="utf-8")
    permissions = PermissionEngine.from_yaml(path)
    assert permissions.safe_tools == {"calculator"}
    assert permissions.require_confirmation_for == {"api_call"}


def test_runner_retries_transient_failures_and_audits(tmp_path: Path) -> None:
    audit = AuditLogger(tmp_path / "audit.jsonl")
    sleeps: list[float] = []
    runner = SafeRunner(audit, max_retries=2, backoff_seconds=0.1, sleep=sleeps.append)
    tool = FlakyTool(failures=2)

    run = runner.run("s1", tool, {})

    assert run.success
    assert run.attempts == 3
    assert run.result == {"calls": 3}
    assert sleeps == [0.1, 0.2]
    events = audit.read()
    assert len(events) == 1
    assert events[0]["tool"] == "flaky"
    assert events[0]["outcome"] == "success"
    assert events[0]["attempts"] == 3
    assert len(events[0]["inputs_hash"]) == 64


def test_runner_does_not_retry_permanent_failures() -> None:
    runner = SafeRunner(max_retries=3, backoff_seconds=0)
    tool = FlakyTool(failures=5, transient=False)

    run = runner.run("s1", tool, {})

    assert not run.success
    assert run.attempts == 1
    assert tool.calls == 1
    assert "temporary glitch" in (run.error or "")


def test_runner_gives_up_after_max_retries() -> None:
    runner = SafeRunner(max_retries=1, backoff_seconds=0)
    run = runner.run("s1", FlakyTool(failures=5), {})
    assert not run.success
    assert run.attempts == 2
    assert run.transient


def test_runner_validation_errors_are_not_retried() -> None:
    runner = SafeRunner(max_retries=3, backoff_seconds=0)
    run = runner.run("s1", CalculatorTool(), {"expression": "import os"})
    assert not run.success
    assert run.attempts == 1


def test_runner_enforces_step_timeout() -> None:
    runner = SafeRunner(timeout_seconds=0.05, max_retries=0)
    run = runner.run("s1", SlowTool(), {})
    assert not run.success
    assert "no result within" in (run.error or "")


def test_runner_stops_retrying_when_cancelled() -> None:
    token = CancellationToken()
    token.cancel("user left")
    runner = SafeRunner(max_retries=5, backoff_seconds=0)
    tool = FlakyTool(failures=5)

    run = runner.run("s1", tool, {}, cancel_token=token)

    assert run.attempts == 1
    assert tool.calls == 1
