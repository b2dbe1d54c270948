"""Typer command handlers."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path

import typer

from core.orchestrator import Orchestrator, RuntimeBundle


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _runtime(root: Path | None = None) -> RuntimeBundle:
    bundle = Orchestrator(root=root).build()
    return bundle


def _print_turn(bundle: RuntimeBundle, query: str, user_id: str, session_id: str) -> None:
    result = bundle.agent.execute_agent_turn(query, user_id=user_id, session_id=session_id)
    prefix = "assistant (low confidence)" if result.low_confidence else "assistant"
    typer.echo(f"{prefix}: {result.response}")
    for warning in result.warnings:
        typer.echo(f"warning: {warning}", err=True)


def chat(user_id: str, session_id: str) -> None:
    """Run interactive chat loop."""
    bundle = _runtime()
    typer.echo("Chat mode. Type 'exit' to quit.")
    try:
        while True:
            user_text = typer.prompt("you")
            if user_text.strip().lower() in {"exit", "quit"}:
                typer.echo("bye")
                break
            _print_turn(bundle, user_text, user_id, session_id)
    finally:
        bundle.close()


def ask(query: str, user_id: str, session_id: str, as_json: bool = False) -> None:
    """Run one agent turn and print the response."""
    bundle = _runtime()
    try:
        if as_json:
            result = bundle.agent.execute_agent_turn(query, user_id=user_id, session_id=session_id)
            typer.echo(json.dumps(_json_safe(result.to_dict()), indent=2))
        else:
            _print_turn(bundle, query, user_id, session_id)
        bundle.agent.wait_for_background()
    finally:
        bundle.close()


def classify(query: str, user_id: str, session_id: str) -> None:
    bundle = _runtime()
    try:
        intent = bundle.agent.classify_query(query, user_id=user_id, session_id=session_id)
        typer.echo(json.dumps(intent.model_dump(mode="json"), indent=2))
    finally:
        bundle.close()


def memory_search(query: str, user_id: str, kind: str, limit: int) -> None:
    """Search episodic and semantic memory."""
    bundle = _runtime()
    try:
        results = bundle.agent.search_memories(user_id, query, kind=kind, limit=limit)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    finally:
        bundle.close()
    typer.echo(json.dumps(_json_safe(results), indent=2))


def memory_context(user_id: str, session_id: str, query: str, token_budget: int | None) -> None:
    bundle = _runtime()
    try:
        assembled = bundle.memory.get_memory_context(
            user_id, session_id, query, token_budget=token_budget
        )
    finally:
        bundle.close()
    typer.echo(assembled.render() or "(no memories)")
    typer.echo(
        f"-- {assembled.serialized_size}/{assembled.token_budget} tokens, "
        f"compression {assembled.compression_ratio:.2f}, dropped {assembled.dropped_items}"
    )


def memory_stats(user_id: str) -> None:
    bundle = _runtime()
    try:
        stats = bundle.agent.get_memory_stats(user_id)
    finally:
        bundle.close()
    typer.echo(json.dumps(_json_safe(stats), indent=2))


def memory_extract(user_id: str, session_id: str | None) -> None:
    """Run knowledge extraction over stored conversation turns."""
    bundle = _runtime()
    try:
        report = bundle.memory.extract_knowledge(user_id, session_id)
    finally:
        bundle.close()
    typer.echo(json.dumps(_json_safe(asdict(report)), indent=2))


def memory_clear(user_id: str, session_id: str | None) -> None:
    bundle = _runtime()
    try:
        if session_id:
            removed = bundle.memory.clear_session(user_id, session_id)
            bundle.confirmations.clear(user_id, session_id)
            typer.echo(f"Removed {removed} episodic memories from session {session_id}")
        else:
            cleared = bundle.memory.clear_user_memories(user_id)
            typer.echo(json.dumps(cleared))
    finally:
        bundle.close()


def config_show() -> None:
    """Show effective runtime config."""
    bundle = _runtime()
    bundle.close()
    typer.echo(json.dumps(_json_safe(bundle.config), indent=2))


def tools_list() -> None:
    """List tools and enabled flags."""
    bundle = _runtime()
    bundle.close()
    for tool in bundle.tool_registry.list_tools():
        flags = "enabled" if tool.enabled else "disabled"
        if tool.mutating:
            flags += ", mutating"
        typer.echo(f"{tool.name}: {flags} - {tool.description}")


def _json_safe(payload: object) -> object:
    """Convert datetimes to strings for JSON output."""
    if isinstance(payload, dict):
        return {k: _json_safe(v) for k, v in payload.items()}
    if isinstance(payload, list):
        return [_json_safe(v) for v in payload]
    if hasattr(payload, "isoformat"):
        return payload.isoformat()
    return payload
