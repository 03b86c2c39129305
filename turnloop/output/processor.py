"""Renders stream events as JSON lines or for a human at a terminal."""

from __future__ import annotations

import sys
from typing import Optional, TextIO

from rich.console import Console

from turnloop.output import jsonl
from turnloop.output.events import StreamEvent, StreamEventType


class OutputProcessor:
    """Routes each event to JSONL on stdout or to a rich console on stderr."""

    def __init__(
        self,
        json_mode: bool = False,
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
    ):
        self.json_mode = json_mode
        self.stdout = stdout
        self.console = Console(file=stderr) if stderr is not None else Console(stderr=True)

    def __call__(self, event: StreamEvent) -> None:
        self.emit(event)

    def emit(self, event: StreamEvent) -> None:
        if self.json_mode:
            jsonl.emit(event)
        else:
            self._emit_human(event)

    def _emit_human(self, event: StreamEvent) -> None:
        value = event.value

        if event.type == StreamEventType.CONTENT:
            print(value, end="", file=self.stdout or sys.stdout, flush=True)

        elif event.type == StreamEventType.THOUGHT:
            subject = value.subject or "Thinking"
            self.console.print(f"[dim]{subject}...[/dim]")

        elif event.type == StreamEventType.TOOL_CALL_REQUEST:
            self.console.print()
            self.console.print(f"[yellow]> {value.name}[/yellow]")

        elif event.type == StreamEventType.TOOL_CALL_RESPONSE:
            status = "[red]FAILED[/red]" if value.error is not None else "[green]OK[/green]"
            self.console.print(f"[dim]  {status}[/dim]")
            display = value.result_display
            if isinstance(display, str) and display:
                lines = display.split("\n")
                if len(lines) > 10:
                    display = "\n".join(lines[:5] + ["...", f"({len(lines) - 5} more lines)"])
                self.console.print(display, style="dim", markup=False)

        elif event.type == StreamEventType.TOOL_CALL_CONFIRMATION:
            self.console.print(f"[magenta]? {value.details.title}[/magenta]")

        elif event.type == StreamEventType.CHAT_COMPRESSED and value is not None:
            self.console.print(
                f"[dim]Chat compressed from {value.original_token_count} "
                f"to {value.new_token_count} tokens[/dim]"
            )

        elif event.type == StreamEventType.LOOP_DETECTED:
            self.console.print("[yellow]A potential loop was detected; the request was halted.[/yellow]")

        elif event.type == StreamEventType.MAX_SESSION_TURNS:
            self.console.print("[yellow]Reached the maximum number of turns for this session.[/yellow]")

        elif event.type == StreamEventType.USER_CANCELLED:
            self.console.print("[dim]Request cancelled.[/dim]")

        elif event.type == StreamEventType.ERROR:
            self.console.print(f"[red]Error: {value.message}[/red]")
