"""Configuration loading, runtime paths and the event bus."""

from __future__ import annotations

from pathlib import Path

import pytest

from core.event_bus import PLAN_BUILT, STEP_COMPLETED, EventBus
from core.policy_runtime import ensure_runtime_dirs, load_effective_config, merge_dicts, section

ROOT = Path(__file__).resolve().parents[1]


def test_effective_config_merges_all_files() -> None:
    config = load_effective_config(ROOT, {"context": {"token_budget": 64}})

    assert config["context"]["token_budget"] == 64
    assert config["context"]["chars_per_token"] == 4
    assert config["models"]["llm"]["active_provider"] == "mock"
    assert config["tools_cfg"]["api_call"]["enabled"] is True
    assert "calculator" in config["permissions"]["safe_tools"]


def test_config_dir_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "default.yaml").write_text("planner:\n  max_steps: 3\n", encoding="utf-8")
    monkeypatch.setenv("MTA_CONFIG_DIR", str(tmp_path))

    config = load_effective_config(ROOT)

    assert config["planner"] == {"max_steps": 3}
    assert config["models"] == {}


def test_non_mapping_config_is_rejected(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "default.yaml").write_text("- just\n- a list\n", encoding="utf-8")
    monkeypatch.setenv("MTA_CONFIG_DIR", str(tmp_path))
    with pytest.raises(ValueError):
        load_effective_config(ROOT)


def test_merge_and_section_helpers() -> None:
    merged = merge_dicts({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}, "c": 4})
    assert merged == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}
    assert section({"a": "oops"}, "a") == {}
    assert section({}, "missing") == {}


def test_runtime_dirs_follow_home_and_db_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MTA_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("MTA_DB_PATH", raising=False)
    config = {"paths": {"workspace_dir": "ws", "db_path": "ws/agent.db", "audit_log_path": "logs/a.jsonl"}}

    paths = ensure_runtime_dirs(ROOT, config)

    assert paths["db_path"] == (tmp_path / "home" / "ws" / "agent.db").resolve()
    assert paths["workspace_dir"].is_dir()
    assert paths["audit_log_path"].parent.is_dir()

    monkeypatch.setenv("MTA_DB_PATH", str(tmp_path / "elsewhere" / "x.db"))
    assert ensure_runtime_dirs(ROOT, config)["db_path"] == (tmp_path / "elsewhere" / "x.db").resolve()


def test_event_bus_wildcard_and_failing_handlers() -> None:
    bus = EventBus()
    seen: list[str] = []

    def broken(event: dict) -> None:
        raise RuntimeError("handler bug")

    bus.subscribe(PLAN_BUILT, broken)
    bus.subscribe(PLAN_BUILT, lambda event: seen.append(f"plan:{event['steps']}"))
    bus.subscribe("*", lambda event: seen.append(f"any:{event['event']}"))

    bus.emit(PLAN_BUILT, {"steps": 2})
    bus.emit(STEP_COMPLETED, {"step_id": "s1"})

    assert seen == ["plan:2", "any:plan_built", "any:step_completed"]

    bus.unsubscribe(PLAN_BUILT, broken)
    bus.emit(PLAN_BUILT, {"steps": 0})
    assert seen[-2:] == ["plan:0", "any:plan_built"]
