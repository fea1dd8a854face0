"""Rich-based console logging for MCP tool calls.

Renders tool-call start/end panels and the server startup banner on stderr so
they never interleave with a stdio transport on stdout.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from rich import box
from rich.console import Console, Group, RenderableType
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

# Global console instance for logging
console = Console(stderr=True, soft_wrap=True)


@dataclass
class ToolCallContext:
    """Context information for a tool call."""

    tool_name: str
    kwargs: dict[str, Any]
    session: Optional[str] = None
    start_time: float = field(default_factory=time.perf_counter)
    end_time: Optional[float] = None
    result: Any = None
    error: Optional[Exception] = None
    success: bool = True
    _created_at: datetime = field(default_factory=datetime.now)

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds."""
        end = self.end_time if self.end_time else time.perf_counter()
        return (end - self.start_time) * 1000

    @property
    def timestamp(self) -> str:
        """Get formatted timestamp (captured at creation)."""
        return self._created_at.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


def _safe_json_format(data: Any, max_length: int = 2000) -> str:
    """Format data as JSON with truncation."""
    json_str = json.dumps(data, indent=2, default=str, ensure_ascii=False)
    if len(json_str) > max_length:
        json_str = json_str[:max_length] + "\n... (truncated)"
    return json_str


def _create_syntax_panel(title: str, content: str, border_style: str) -> Panel:
    syntax = Syntax(
        content,
        "json",
        theme="monokai",
        line_numbers=False,
        word_wrap=True,
        background_color="default",
    )
    return Panel(syntax, title=f"[bold]{title}[/bold]", border_style=border_style, box=box.ROUNDED, padding=(0, 1))


def _create_info_table(ctx: ToolCallContext) -> Table:
    table = Table(show_header=False, box=box.SIMPLE, padding=(0, 1), show_edge=False)
    table.add_column("Key", style="bold bright_yellow", width=12)
    table.add_column("Value", style="white", overflow="fold")

    table.add_row("Tool", f"[bold bright_green]{ctx.tool_name}[/bold bright_green]")
    table.add_row("Timestamp", f"[dim]{ctx.timestamp}[/dim]")
    if ctx.session:
        table.add_row("Session", f"[bright_cyan]{escape(ctx.session)}[/bright_cyan]")
    if ctx.end_time:
        # Long durations are normal for ask_user; they are the operator's think time
        table.add_row("Duration", f"{ctx.duration_ms / 1000:.2f}s")
        if ctx.success:
            table.add_row("Status", "[bold bright_green]SUCCESS[/bold bright_green]")
        else:
            table.add_row("Status", "[bold bright_red]FAILED[/bold bright_red]")
    return table


def _create_result_display(ctx: ToolCallContext) -> Panel:
    if ctx.error:
        error_info: dict[str, Any] = {
            "error_type": type(ctx.error).__name__,
            "error_message": str(ctx.error),
        }
        if hasattr(ctx.error, "error_type"):
            error_info["error_code"] = ctx.error.error_type
        return _create_syntax_panel("Error Details", _safe_json_format(error_info), "bright_red")
    return _create_syntax_panel("Result", _safe_json_format(ctx.result), "bright_green")


def log_tool_call_start(ctx: ToolCallContext) -> None:
    """Log the start of a tool call with its parameters."""
    components: list[RenderableType] = [Rule(style="bright_blue"), _create_info_table(ctx)]
    params = {k: v for k, v in ctx.kwargs.items() if k not in {"ctx", "context", "_ctx"}}
    if params:
        components.append(_create_syntax_panel("Input Parameters", _safe_json_format(params), "bright_blue"))
    console.print(
        Panel(
            Group(*components),
            title="[bold]MCP TOOL CALL STARTED[/bold]",
            border_style="bright_blue",
            box=box.DOUBLE,
            padding=(0, 1),
        )
    )


def log_tool_call_end(ctx: ToolCallContext) -> None:
    """Log the end of a tool call with its result or error."""
    if not ctx.end_time:
        ctx.end_time = time.perf_counter()
    border_style = "bright_green" if ctx.success else "bright_red"
    title = "MCP TOOL CALL COMPLETED" if ctx.success else "MCP TOOL CALL FAILED"
    console.print(
        Panel(
            Group(_create_info_table(ctx), _create_result_display(ctx)),
            title=f"[bold]{title}[/bold]",
            border_style=border_style,
            box=box.DOUBLE,
            padding=(0, 1),
        )
    )


def display_startup_banner(settings: Any, mailbox_status: dict[str, Any], transport: str) -> None:
    """Show the resolved configuration and the current mailbox contents."""
    table = Table(
        box=box.ROUNDED,
        border_style="bright_blue",
        show_header=True,
        header_style="bold bright_white on bright_blue",
        title="[bold bright_yellow]MCP Ask User[/bold bright_yellow]",
        padding=(0, 1),
    )
    table.add_column("Setting", style="bold bright_cyan", width=20)
    table.add_column("Value", style="white", overflow="fold")
    table.add_row("Environment", settings.environment)
    table.add_row("Transport", transport)
    table.add_row("Mailbox", str(mailbox_status.get("mailbox_dir", "")))
    table.add_row("Pending questions", str(mailbox_status.get("pending_questions", 0)))
    table.add_row("Default timeout", f"{settings.mailbox.default_timeout_seconds}s")
    table.add_row("Poll interval", f"{settings.mailbox.poll_interval_ms}ms")
    table.add_row(
        "Tool Logging",
        "[bold bright_green]ENABLED[/bold bright_green]" if settings.tools_log_enabled else "[dim]disabled[/dim]",
    )
    console.print()
    console.print(table)
    console.print(Text("Run `mcp-ask-user respond` in another terminal to answer questions.", style="dim"))
    console.print()
