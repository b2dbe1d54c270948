"""Chain execution: bindings, partial failure, confirmation gate and cancellation."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from core.event_bus import CONFIRMATION_REQUESTED, STEP_COMPLETED, EventBus
from executor.cancellation import CancellationToken
from executor.safe_runner import SafeRunner
from executor.tool_execution_engine import (
    USER_CANCELLED,
    ExecutionState,
    StepStatus,
    ToolExecutionEngine,
)
from governance.permission_engine import PermissionEngine
from memory.confirmations import PendingConfirmationStore
from memory.stores.sql_store import SQLStore
from planner.execution_plan import ChainPlan, ChainStep

BASE = "https://jsonplaceholder.typicode.com"


def build_engine(sql_store: SQLStore, registry, events: list[dict[str, Any]] | None = None):
    bus = EventBus()
    if events is not None:
        bus.subscribe("*", events.append)
    confirmations = PendingConfirmationStore(sql_store, {"confirmation": {"ttl_seconds": 60}})
    engine = ToolExecutionEngine(
        registry,
        SafeRunner(max_retries=1, backoff_seconds=0, timeout_seconds=5),
        PermissionEngine({"safe_tools": ["calculator", "json_reader"]}),
        confirmations,
        config={"execution": {"max_concurrency": 4}},
        event_bus=bus,
    )
    return engine, confirmations


def test_chained_api_calls_bind_earlier_results(sql_store: SQLStore, make_registry) -> None:
    registry = make_registry(
        {
            ("GET", "/posts?userId=1"): [{"id": 11, "title": "first"}, {"id": 12, "title": "second"}],
            ("GET", "/comments?postId=11"): [{"postId": 11, "body": "nice"}],
        }
    )
    engine, _ = build_engine(sql_store, registry)
    plan = ChainPlan(
        steps=[
            ChainStep(id="step1", tool_name="api_call", args={"url": f"{BASE}/posts?userId=1"}),
            ChainStep(
                id="step2",
                tool_name="api_call",
                args={"url": BASE + "/comments?postId={{step1.data[0].id}}"},
                depends_on=["step1"],
                parallel_group=1,
            ),
        ]
    )

    outcome = engine.run(plan, "u1", "s1")

    assert outcome.state is ExecutionState.COMPLETED
    assert [r.step_id for r in outcome.results] == ["step1", "step2"]
    assert outcome.results[1].args["url"].endswith("/comments?postId=11")
    assert outcome.results[1].result["data"] == [{"postId": 11, "body": "nice"}]


def test_failed_step_skips_dependents_but_not_siblings(sql_store: SQLStore, make_registry) -> None:
    registry = make_registry({("GET", "/users/1"): {"id": 1, "name": "Leanne"}})
    events: list[dict[str, Any]] = []
    engine, _ = build_engine(sql_store, registry, events)
    plan = ChainPlan(
        steps=[
            ChainStep(id="a", tool_name="api_call", args={"url": f"{BASE}/missing"}),
            ChainStep(
                id="b",
                tool_name="calculator",
                args={"expression": "{{a.data.count}} + 1"},
                depends_on=["a"],
            ),
            ChainStep(id="c", tool_name="api_call", args={"url": f"{BASE}/users/1"}),
            ChainStep(id="d", tool_name="calculator", args={"expression": "6 * 7"}),
        ]
    )

    outcome = engine.run(plan, "u1", "s1")

    assert outcome.state is ExecutionState.PARTIAL
    by_id = {r.step_id: r for r in outcome.results}
    assert by_id["a"].status is StepStatus.FAILED
    assert "404" in (by_id["a"].error or "")
    assert by_id["b"].status is StepStatus.SKIPPED
    assert by_id["c"].result["data"]["name"] == "Leanne"
    assert by_id["d"].result["result"] == 42
    assert len(outcome.executed) == 3
    completed = [e["step_id"] for e in events if e["event"] == STEP_COMPLETED]
    assert sorted(completed) == ["a", "c", "d"]


def test_failed_root_with_only_dependents_fails_the_plan(sql_store: SQLStore, make_registry) -> None:
    engine, _ = build_engine(sql_store, make_registry())
    plan = ChainPlan(
        steps=[
            ChainStep(id="step1", tool_name="api_call", args={"url": f"{BASE}/posts?userId=999"}),
            ChainStep(
                id="step2",
                tool_name="api_call",
                args={"url": BASE + "/comments?postId={{step1.data[0].id}}"},
                depends_on=["step1"],
            ),
        ]
    )

    outcome = engine.run(plan, "u1", "s1")

    assert outcome.state is ExecutionState.FAILED
    assert outcome.results[0].status is StepStatus.FAILED
    assert outcome.results[1].status is StepStatus.SKIPPED
    assert outcome.results[1].error == "dependency failed: step1"
    assert outcome.reason is not None and outcome.reason.startswith("step1: ")


def test_binding_failure_fails_only_that_step(sql_store: SQLStore, make_registry) -> None:
    engine, _ = build_engine(sql_store, make_registry())
    plan = ChainPlan(
        steps=[
            ChainStep(id="s1", tool_name="calculator", args={"expression": "2 + 2"}),
            ChainStep(
                id="s2",
                tool_name="json_reader",
                args={"json_string": "{{s1.nothing}}"},
                depends_on=["s1"],
            ),
        ]
    )

    outcome = engine.run(plan, "u1", "s1")

    assert outcome.state is ExecutionState.PARTIAL
    assert outcome.results[1].status is StepStatus.FAILED
    assert "nothing" in (outcome.results[1].error or "")


def test_independent_steps_run_concurrently(sql_store: SQLStore, make_registry) -> None:
    barrier = threading.Barrier(2, timeout=2)

    def rendezvous(request: httpx.Request) -> httpx.Response:
        barrier.wait()
        return httpx.Response(200, json={"path": request.url.path})

    registry = make_registry({("GET", "/a"): rendezvous, ("GET", "/b"): rendezvous})
    engine, _ = build_engine(sql_store, registry)
    plan = ChainPlan(
        steps=[
            ChainStep(id="s1", tool_name="api_call", args={"url": f"{BASE}/a"}),
            ChainStep(id="s2", tool_name="api_call", args={"url": f"{BASE}/b"}),
        ]
    )

    outcome = engine.run(plan, "u1", "s1")

    assert outcome.state is ExecutionState.COMPLETED


def _post_plan() -> ChainPlan:
    return ChainPlan(
        query="create a post",
        steps=[
            ChainStep(
                id="step1",
                tool_name="api_call",
                args={"url": f"{BASE}/posts", "method": "POST", "body": {"title": "hi"}},
            )
        ],
    )


def test_mutating_plan_waits_for_confirmation(sql_store: SQLStore, make_registry) -> None:
    registry = make_registry({("POST", "/posts"): httpx.Response(201, json={"id": 101})})
    events: list[dict[str, Any]] = []
    engine, confirmations = build_engine(sql_store, registry, events)

    gated = engine.run(_post_plan(), "u1", "s1")

    assert gated.state is ExecutionState.CONFIRMING
    assert gated.results == []
    assert "yes" in (gated.confirmation_message or "")
    assert confirmations.get("u1", "s1") is not None
    assert any(e["event"] == CONFIRMATION_REQUESTED for e in events)
    assert engine.resolve_confirmation("u1", "s1", "what?") is None

    approved = engine.resolve_confirmation("u1", "s1", "yes please")

    assert approved is not None
    assert approved.state is ExecutionState.COMPLETED
    assert approved.results[0].result["data"] == {"id": 101}
    assert confirmations.get("u1", "s1") is None


def test_denied_confirmation_executes_nothing(sql_store: SQLStore, make_registry) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(201, json={})

    engine, confirmations = build_engine(sql_store, make_registry({("POST", "/posts"): handler}))
    engine.run(_post_plan(), "u1", "s1")

    denied = engine.resolve_confirmation("u1", "s1", "no")

    assert denied is not None
    assert denied.state is ExecutionState.FAILED
    assert denied.reason == USER_CANCELLED
    assert calls == []
    assert confirmations.get("u1", "s1") is None


def test_expired_confirmation_is_discarded(sql_store: SQLStore) -> None:
    confirmations = PendingConfirmationStore(sql_store, {"confirmation": {"ttl_seconds": 60}})
    created = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
    confirmations.save("u1", "s1", _post_plan(), "confirm?", now=created)

    assert confirmations.get("u1", "s1", now=created + timedelta(seconds=30)) is not None
    assert confirmations.get("u1", "s1", now=created + timedelta(seconds=61)) is None
    assert confirmations.get("u1", "s1", now=created) is None


def test_confirmation_replaced_per_session(sql_store: SQLStore) -> None:
    confirmations = PendingConfirmationStore(sql_store)
    confirmations.save("u1", "s1", _post_plan(), "first")
    confirmations.save("u1", "s1", ChainPlan(query="second"), "second")
    confirmations.save("u1", "s2", _post_plan(), "other session")

    pending = confirmations.get("u1", "s1")
    assert pending is not None
    assert pending.message == "second"
    assert pending.plan.query == "second"
    assert confirmations.clear("u1", "s2") is True
    assert confirmations.get("u1", "s2") is None


def test_cancelled_request_starts_no_steps(sql_store: SQLStore, make_registry) -> None:
    engine, _ = build_engine(sql_store, make_registry())
    token = CancellationToken()
    token.cancel()
    plan = ChainPlan(steps=[ChainStep(id="s1", tool_name="calculator", args={"expression": "1+1"})])

    outcome = engine.run(plan, "u1", "s1", cancel_token=token)

    assert outcome.state is ExecutionState.FAILED
    assert outcome.reason == "cancelled"
    assert outcome.results[0].status is StepStatus.SKIPPED


def test_empty_plan_is_rejected(sql_store: SQLStore, make_registry) -> None:
    engine, _ = build_engine(sql_store, make_registry())
    outcome = engine.run(ChainPlan(query="nothing"), "u1", "s1")
    assert outcome.state is ExecutionState.FAILED
    assert outcome.results == []
