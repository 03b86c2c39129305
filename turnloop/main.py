"""Main CLI entry point for turnloop."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from turnloop import __version__
from turnloop.config.loader import find_config_file, load_config
from turnloop.config.models import ApprovalMode, EngineConfig
from turnloop.core.agent import AgentClient
from turnloop.core.session import Session
from turnloop.exec.runner import run_non_interactive
from turnloop.llm.generator import create_content_generator
from turnloop.output import jsonl
from turnloop.output.processor import OutputProcessor
from turnloop.tools.registry import ToolRegistry
from turnloop.utils.cancellation import CancellationToken

app = typer.Typer(
    name="turnloop",
    help="Agentic turn-loop engine",
    add_completion=False,
)

console = Console(stderr=True)


def version_callback(value: bool):
    if value:
        console.print(f"turnloop v{__version__}")
        raise typer.Exit()


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="[%(asctime)s] [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
):
    """turnloop - drive a model through multi-turn tool use."""
    pass


async def _run(config: EngineConfig, prompt: str, output: OutputProcessor) -> str:
    session = Session(config=config)
    generator = create_content_generator(config)
    client = AgentClient(session, generator, ToolRegistry()).initialize()
    if output.json_mode:
        jsonl.emit(jsonl.SessionStartedEvent(session_id=session.id, model=session.model))
    try:
        text = await run_non_interactive(
            client,
            prompt,
            f"{session.id}########0",
            cancel=CancellationToken(),
            on_event=output,
        )
    except Exception as e:
        if output.json_mode:
            jsonl.emit(jsonl.SessionFailedEvent(session_id=session.id, error={"message": str(e)}))
        raise
    finally:
        await generator.close()

    if output.json_mode:
        jsonl.emit(
            jsonl.SessionCompletedEvent(
                session_id=session.id,
                usage=session.usage.to_dict(),
                turns=client.session_turn_count,
            )
        )
    return text


@app.command("exec")
def exec_command(
    prompt: str = typer.Argument(..., help="The prompt to run"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model to use"),
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file",
    ),
    json_mode: bool = typer.Option(False, "--json", help="Output in JSONL format"),
    yolo: bool = typer.Option(False, "--yolo", help="Run tool calls without confirmation"),
    max_session_turns: Optional[int] = typer.Option(
        None, "--max-session-turns", help="Maximum turns for the session (0 = unlimited)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Run a prompt non-interactively."""
    setup_logging(verbose)

    config_path = config_file or find_config_file()
    overrides = {
        "model": model,
        "max_session_turns": max_session_turns,
        "approval_mode": ApprovalMode.YOLO if yolo else None,
    }

    try:
        config = load_config(config_path, overrides)
    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        raise typer.Exit(1)

    output = OutputProcessor(json_mode=json_mode)
    if not json_mode:
        console.print(f"[bold blue]turnloop v{__version__}[/bold blue]")
        console.print(f"Model: [cyan]{config.model}[/cyan]")
        console.print()

    try:
        asyncio.run(_run(config, prompt, output))
    except KeyboardInterrupt:
        console.print("[dim]Operation cancelled.[/dim]")
        raise typer.Exit(130)
    except Exception as e:
        if verbose:
            console.print_exception()
        elif not json_mode:
            console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    if not json_mode:
        print()


@app.command("config")
def show_config(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Show current configuration."""
    path = config_file or find_config_file()
    if path:
        console.print(f"Loading config from: {path}")
        config = load_config(path)
    else:
        console.print("No config file found, using defaults")
        config = load_config()

    console.print(config.model_dump_json(indent=2))


if __name__ == "__main__":
    app()
