"""Command-line interface surface for the MCP Ask User service."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from contextlib import suppress
from pathlib import Path
from typing import Any, Optional

import structlog
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .asker import request_user_input
from .config import Settings, clear_settings_cache, get_settings
from .models import AskOutcome
from .responder import Responder
from .storage import Mailbox, ensure_mailbox, list_pending_questions, mailbox_status, open_mailbox, prune_mailbox

console = Console()

_LOGGING_CONFIGURED = False


def configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    # Idempotent setup
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "question_id"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level, format="%(message)s")
    _LOGGING_CONFIGURED = True


def _mailbox_from_option(mailbox_dir: Optional[Path]) -> Mailbox:
    if mailbox_dir is not None:
        return open_mailbox(mailbox_dir)
    return ensure_mailbox(get_settings())


app = typer.Typer(help="Ask a human operator questions through a shared mailbox directory.")
config_app = typer.Typer(help="Inspect resolved settings")
app.add_typer(config_app, name="config")


@app.command("respond")
def respond(
    mailbox_dir: Optional[Path] = typer.Option(None, "--mailbox", help="Mailbox directory. Defaults to ASK_USER_MAILBOX_DIR."),
) -> None:
    """Answer agent questions interactively in this terminal."""
    settings = get_settings()
    configure_logging(settings)
    responder = Responder(
        _mailbox_from_option(mailbox_dir),
        console=console,
        poll_interval_seconds=settings.mailbox.responder_poll_interval_seconds,
    )
    responder.run_forever()


async def _ask_with_interrupt(
    mailbox: Mailbox,
    question: str,
    title: Optional[str],
    timeout: Optional[float],
    poll_interval_seconds: float,
) -> AskOutcome:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = False
    # Signal handlers are unavailable on some platforms and outside the main thread
    with suppress(NotImplementedError, RuntimeError, ValueError):
        loop.add_signal_handler(signal.SIGINT, cancel.set)
        installed = True
    try:
        return await request_user_input(
            mailbox,
            question,
            title=title,
            timeout_seconds=timeout,
            cancel_signal=cancel,
            origin={"source": "cli", "pid": str(os.getpid())},
            poll_interval_seconds=poll_interval_seconds,
        )
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


@app.command("ask")
def ask(
    question: str = typer.Argument(..., help="Question to put to the operator."),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Short context label."),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds to wait. Defaults to ASK_USER_DEFAULT_TIMEOUT_SECONDS."),
    mailbox_dir: Optional[Path] = typer.Option(None, "--mailbox", help="Mailbox directory. Defaults to ASK_USER_MAILBOX_DIR."),
) -> None:
    """Ask a question from the shell and print the JSON outcome."""
    settings = get_settings()
    configure_logging(settings)
    effective_timeout = timeout if timeout is not None else float(settings.mailbox.default_timeout_seconds)
    try:
        outcome = asyncio.run(
            _ask_with_interrupt(
                _mailbox_from_option(mailbox_dir),
                question,
                title,
                effective_timeout,
                settings.mailbox.poll_interval_seconds,
            )
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    typer.echo(json.dumps(outcome.to_payload()))
    if not outcome.responded:
        raise typer.Exit(code=1)


@app.command("pending")
def pending(
    json_output: bool = typer.Option(False, "--json", help="Emit JSON instead of a table."),
    mailbox_dir: Optional[Path] = typer.Option(None, "--mailbox", help="Mailbox directory. Defaults to ASK_USER_MAILBOX_DIR."),
) -> None:
    """List questions still waiting for an answer."""
    questions = list_pending_questions(_mailbox_from_option(mailbox_dir))
    if json_output:
        payload = [
            {
                "id": q.id,
                "title": q.title,
                "question": q.question,
                "origin": q.origin,
                "created_at": q.created_at.isoformat(),
            }
            for q in questions
        ]
        typer.echo(json.dumps(payload, indent=2))
        return
    if not questions:
        console.print("[dim]No pending questions.[/]")
        return
    table = Table(title=f"Pending questions ({len(questions)})", show_lines=False)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Created", style="dim")
    table.add_column("Title")
    table.add_column("Question", overflow="fold")
    for q in questions:
        first_line = q.question.splitlines()[0] if q.question else ""
        table.add_row(q.id, q.created_at.astimezone().strftime("%Y-%m-%d %H:%M:%S"), q.title or "", first_line)
    console.print(table)


@app.command("status")
def status(
    mailbox_dir: Optional[Path] = typer.Option(None, "--mailbox", help="Mailbox directory. Defaults to ASK_USER_MAILBOX_DIR."),
) -> None:
    """Summarize mailbox contents."""
    summary = mailbox_status(_mailbox_from_option(mailbox_dir))
    table = Table(title="Mailbox status", show_header=False)
    table.add_column("Key", style="bold cyan")
    table.add_column("Value")
    entries = summary.pop("entries")
    for key, value in summary.items():
        table.add_row(key, str(value))
    console.print(table)
    for label, key in (("Orphaned responses", "orphaned_responses"), ("Temp files", "temp_files")):
        if entries[key]:
            console.print(f"[yellow]{label}:[/]")
            for name in entries[key]:
                console.print(f"  [dim]{escape(name)}[/]")


@app.command("prune")
def prune(
    older_than: Optional[int] = typer.Option(None, "--older-than", help="Age in seconds. Defaults to ASK_USER_STALE_AFTER_SECONDS."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be removed without deleting."),
    mailbox_dir: Optional[Path] = typer.Option(None, "--mailbox", help="Mailbox directory. Defaults to ASK_USER_MAILBOX_DIR."),
) -> None:
    """Remove orphaned responses and abandoned temp files."""
    settings = get_settings()
    threshold = older_than if older_than is not None else settings.mailbox.stale_after_seconds
    if threshold < 0:
        raise typer.BadParameter("--older-than must be zero or positive")
    result = prune_mailbox(_mailbox_from_option(mailbox_dir), older_than_seconds=threshold, dry_run=dry_run)
    verb = "Would remove" if dry_run else "Removed"
    console.print(f"[green]{verb} {len(result['removed'])} file(s).[/]")
    for name in result["removed"]:
        console.print(f"  [dim]{name}[/]")


@app.command("serve-stdio")
def serve_stdio() -> None:
    """Run the MCP server over stdio transport for CLI integration.

    All logging is redirected to stderr to avoid corrupting the stdio protocol,
    and tool debug panels are disabled.
    """
    from .app import build_mcp_server

    os.environ["TOOLS_LOG_ENABLED"] = "false"
    os.environ["LOG_RICH_ENABLED"] = "false"
    clear_settings_cache()
    configure_logging(get_settings())

    print("MCP Ask User - Starting stdio transport...", file=sys.stderr)
    server = build_mcp_server()
    server.run(transport="stdio")


@app.command("serve-http")
def serve_http(
    host: Optional[str] = typer.Option(None, help="Host interface for HTTP transport. Defaults to HTTP_HOST setting."),
    port: Optional[int] = typer.Option(None, help="Port for HTTP transport. Defaults to HTTP_PORT setting."),
    path: Optional[str] = typer.Option(None, help="HTTP path where the MCP endpoint is exposed."),
) -> None:
    """Run the MCP server over the Streamable HTTP transport."""
    from . import rich_logger
    from .app import build_mcp_server

    settings = get_settings()
    configure_logging(settings)
    resolved_host = host or settings.http.host
    resolved_port = port or settings.http.port
    resolved_path = path or settings.http.path

    if settings.log_rich_enabled:
        rich_logger.display_startup_banner(
            settings,
            mailbox_status(ensure_mailbox(settings)),
            f"http://{resolved_host}:{resolved_port}{resolved_path}",
        )
    server = build_mcp_server()
    server.run(transport="http", host=resolved_host, port=resolved_port, path=resolved_path)


@config_app.command("show")
def config_show() -> None:
    """Print the resolved settings."""
    settings = get_settings()
    table = Table(title="MCP Ask User settings", show_header=False)
    table.add_column("Setting", style="bold cyan")
    table.add_column("Value")
    table.add_row("environment", settings.environment)
    table.add_row("mailbox_dir", str(Path(settings.mailbox.root).expanduser()))
    table.add_row("poll_interval_ms", str(settings.mailbox.poll_interval_ms))
    table.add_row("responder_poll_interval_ms", str(settings.mailbox.responder_poll_interval_ms))
    table.add_row("default_timeout_seconds", str(settings.mailbox.default_timeout_seconds))
    table.add_row("stale_after_seconds", str(settings.mailbox.stale_after_seconds))
    table.add_row("http", f"{settings.http.host}:{settings.http.port}{settings.http.path}")
    table.add_row("log_level", settings.log_level)
    table.add_row("tools_log_enabled", str(settings.tools_log_enabled))
    console.print(table)
