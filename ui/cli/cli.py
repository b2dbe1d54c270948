"""CLI entrypoint for memory-tool-agent."""

from __future__ import annotations

import typer

from ui.cli import commands

app = typer.Typer(help="Memory-aware conversational agent with tool chaining")
memory_app = typer.Typer(help="Memory commands")
config_app = typer.Typer(help="Configuration commands")
tools_app = typer.Typer(help="Tool commands")

USER_OPTION = typer.Option("local", "--user", "-u", help="User id")
SESSION_OPTION = typer.Option("default", "--session", "-s", help="Session id")


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    commands.configure_logging(verbose)


@app.command("chat")
def chat_cmd(user: str = USER_OPTION, session: str = SESSION_OPTION) -> None:
    """Interactive chat session."""
    commands.chat(user_id=user, session_id=session)


@app.command("ask")
def ask_cmd(
    query: str = typer.Argument(..., help="Message to send"),
    user: str = USER_OPTION,
    session: str = SESSION_OPTION,
    as_json: bool = typer.Option(False, "--json", help="Print the full turn result as JSON"),
) -> None:
    """Run a single agent turn."""
    commands.ask(query=query, user_id=user, session_id=session, as_json=as_json)


@app.command("classify")
def classify_cmd(
    query: str = typer.Argument(..., help="Query to classify"),
    user: str = USER_OPTION,
    session: str = SESSION_OPTION,
) -> None:
    """Classify a query without acting on it."""
    commands.classify(query=query, user_id=user, session_id=session)


@memory_app.command("search")
def memory_search_cmd(
    query: str = typer.Argument(..., help="Search text"),
    user: str = USER_OPTION,
    kind: str = typer.Option("both", help="episodic, semantic or both"),
    limit: int = typer.Option(10, min=1, max=100),
) -> None:
    """Search stored memories."""
    commands.memory_search(query=query, user_id=user, kind=kind, limit=limit)


@memory_app.command("context")
def memory_context_cmd(
    user: str = USER_OPTION,
    session: str = SESSION_OPTION,
    query: str = typer.Option("", help="Query used to select semantic memories"),
    budget: int | None = typer.Option(None, min=1, help="Token budget override"),
) -> None:
    """Show the assembled memory context."""
    commands.memory_context(user_id=user, session_id=session, query=query, token_budget=budget)


@memory_app.command("stats")
def memory_stats_cmd(user: str = USER_OPTION) -> None:
    """Show memory statistics."""
    commands.memory_stats(user_id=user)


@memory_app.command("extract")
def memory_extract_cmd(
    user: str = USER_OPTION,
    session: str | None = typer.Option(None, "--session", "-s", help="Limit to one session"),
) -> None:
    """Extract semantic knowledge from episodic memory."""
    commands.memory_extract(user_id=user, session_id=session)


@memory_app.command("clear")
def memory_clear_cmd(
    user: str = USER_OPTION,
    session: str | None = typer.Option(None, "--session", "-s", help="Only clear this session"),
    yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt"),
) -> None:
    """Delete stored memories."""
    if not yes:
        target = f"session '{session}'" if session else "all memories"
        typer.confirm(f"Delete {target} for user '{user}'?", abort=True)
    commands.memory_clear(user_id=user, session_id=session)


@config_app.command("show")
def config_show_cmd() -> None:
    """Show effective configuration."""
    commands.config_show()


@tools_app.command("list")
def tools_list_cmd() -> None:
    """List tool status."""
    commands.tools_list()


app.add_typer(memory_app, name="memory")
app.add_typer(config_app, name="config")
app.add_typer(tools_app, name="tools")


def main() -> None:
    """Console script entrypoint."""
    app()


if __name__ == "__main__":
    main()
