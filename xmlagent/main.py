"""Command line entry point for xmlagent."""

import asyncio
import os
import sys
import uuid
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from xmlagent.config import Config, set_config
from xmlagent.driver import create_driver
from xmlagent.events import AgentEvent
from xmlagent.logging import configure_logging, log
from xmlagent.protocol import (
    DecodeFailure,
    Edit,
    ErrorResponse,
    ToolCall,
    decode,
    envelope_kind,
)
from xmlagent.session import create_store

app = typer.Typer(help="xmlagent - a ReAct agent speaking an XML response envelope")
console = Console()

_KIND_STYLES = {
    "thought": "dim",
    "tool": "cyan",
    "observation": "green",
    "feedback": "yellow",
    "error": "bold red",
    "final": "bold",
    "chat": "bold",
}


def _load_config(config: str, model: str, verbose: bool, log_file: str = "") -> Config:
    if verbose:
        os.environ["XMLAGENT_LOGGING__LEVEL"] = "DEBUG"
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except Exception as e:
            log.error("Failed to load config", error=str(e))
            cfg = Config.load()
    else:
        cfg = Config.load()
    if model:
        cfg.model.model = model
    if log_file:
        cfg.logging.file = log_file
    set_config(cfg)
    configure_logging()
    return cfg


def _event_body(event: AgentEvent) -> str:
    parsed = decode(event.text)
    if isinstance(parsed, DecodeFailure):
        return event.text
    match parsed:
        case ToolCall():
            return f"{parsed.tool_name} {parsed.arguments}" + (f"\n{parsed.rationale}" if parsed.rationale else "")
        case Edit():
            return f"{parsed.target_file}: {len(parsed.changes)} change(s)"
        case ErrorResponse():
            return parsed.content
    content = getattr(parsed, "content", None)
    path = getattr(parsed, "path", None)
    if path is not None:
        return f"{path}\n{content}"
    return content if content is not None else event.text


def render_event(event: AgentEvent) -> None:
    """Print one stream event."""
    if event.kind == "user":
        return
    if event.final:
        style = "red" if event.kind == "error" else "green"
        console.print(f"[{style}]-- exchange ended ({event.kind})[/{style}]")
        return
    style = _KIND_STYLES.get(event.kind, "")
    console.print(Panel(_event_body(event), title=event.kind, border_style=style or "white"))


async def _run_prompt(cfg: Config, thread_id: str, prompt: str) -> int:
    driver = create_driver(cfg)
    cancel_event = asyncio.Event()
    exit_code = 0
    try:
        async for event in driver.stream(thread_id, prompt, cancel_event):
            render_event(event)
            if event.final and event.kind == "error":
                exit_code = 1
    finally:
        await driver.loop.provider.close()
        await driver.store.close()
    return exit_code


@app.command()
def run(
    prompt: str = typer.Argument(..., help="User input for this exchange"),
    thread: str = typer.Option("", "-t", "--thread", help="Thread id to continue"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    yes: bool = typer.Option(False, "-y", "--yes", help="Approve tool calls automatically"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
    log_file: str = typer.Option("", "--log-file", help="Write logs to this file instead of stderr"),
) -> None:
    """Run one exchange against a session."""
    cfg = _load_config(config, model, verbose, log_file)
    if yes:
        cfg.interaction.channel = "auto"
        cfg.interaction.auto_answer = "yes"
    thread_id = thread or uuid.uuid4().hex[:12]
    cfg.resolved_workspace_path(Path.cwd()).mkdir(parents=True, exist_ok=True)
    console.print(f"[dim]thread {thread_id}[/dim]")

    try:
        code = asyncio.run(_run_prompt(cfg, thread_id, prompt))
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(130)
    except Exception as e:
        log.error("Fatal error", error=str(e))
        sys.exit(1)
    raise typer.Exit(code)


async def _show(cfg: Config, thread_id: str, limit: int) -> None:
    store = create_store(cfg.session)
    try:
        if not thread_id:
            table = Table(title="Sessions")
            table.add_column("thread")
            table.add_column("status")
            table.add_column("entries", justify="right")
            table.add_column("updated")
            for info in await store.list_checkpoints(limit):
                table.add_row(info.thread_id, info.status, str(info.entries), info.updated_at)
            console.print(table)
            return

        state = await store.load(thread_id)
        if state is None:
            console.print(f"[red]No session named {thread_id}[/red]")
            raise typer.Exit(1)
        console.print(
            f"[bold]{state.thread_id}[/bold] status={state.status.value} "
            f"iterations={state.iteration_count} entries={len(state.conversation)}"
        )
        for entry in state.conversation:
            if entry.role == "user":
                console.print(Panel(entry.content, title="user", border_style="blue"))
            else:
                render_event(AgentEvent(thread_id=thread_id, kind=envelope_kind(entry.content) or "chat", text=entry.content))
    finally:
        await store.close()


@app.command()
def show(
    thread: str = typer.Argument("", help="Thread id; omit to list sessions"),
    limit: int = typer.Option(10, "-n", "--limit", help="Sessions to list"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Show a stored session, or list recent sessions."""
    cfg = _load_config(config, "", False)
    asyncio.run(_show(cfg, thread, limit))


@app.command()
def version() -> None:
    """Show version information."""
    from xmlagent import __version__
    console.print(f"xmlagent v{__version__}")


if __name__ == "__main__":
    app()
