"""Operator-side loop: discover questions, collect answers, publish responses."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Optional

import structlog
from rich import box
from rich.console import Console, Group, RenderableType
from rich.markup import escape
from rich.padding import Padding
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from .models import QuestionRecord, ResponseRecord
from .storage import (
    Mailbox,
    ResponseConflictError,
    discard,
    list_pending_questions,
    question_exists,
    response_exists,
    write_response,
)

_logger = structlog.get_logger(__name__)

CANCEL_TOKEN = "cancel"
_INDENT = "     "


def collect_answer(read_line: Callable[[], str]) -> tuple[str, bool]:
    """Read lines until the operator finishes and return ``(text, answered)``.

    Input ends on an empty line once something was typed, or on two empty lines
    in a row before anything was typed; a line holding only spaces is content.
    Lines are joined with newlines and trimmed; the single word ``cancel`` (any case) declines the question.
    EOFError from ``read_line`` propagates.
    """
    lines: list[str] = []
    empty_run = 0
    while True:
        line = read_line().rstrip("\r\n")
        if line == "":
            if lines:
                break
            empty_run += 1
            if empty_run >= 2:
                break
            continue
        lines.append(line)

    text = "\n".join(lines).strip()
    if text.lower() == CANCEL_TOKEN:
        return "", False
    return text, True


def render_question(question: QuestionRecord) -> RenderableType:
    parts: list[RenderableType] = []
    if question.title:
        parts.append(Text(f"📋 {question.title}", style="bold yellow"))
        parts.append(Text())
    parts.append(Text("❓ Question:", style="bold cyan"))
    parts.append(Text())
    parts.append(Padding(Text(question.question), (0, 0, 0, 3)))
    parts.append(Text())

    footer: list[str] = []
    session_id = question.origin.get("session_id")
    if session_id:
        footer.append(f"Session: {escape(session_id[:12])}...")
    footer.append(f"Time: {question.created_at.astimezone().strftime('%H:%M:%S')}")
    parts.append(Text(" | ".join(footer), style="dim"))
    return Panel(Group(*parts), box=box.DOUBLE, border_style="bright_blue", padding=(1, 2))


class Responder:
    """Serves pending questions to one operator, strictly one at a time.

    ``seen`` lives only as long as this object: a restarted responder offers any
    still-pending question again, while a question already retired by its asker
    is gone from the mailbox and never shown.
    """

    def __init__(
        self,
        mailbox: Mailbox,
        *,
        console: Optional[Console] = None,
        read_line: Optional[Callable[[], str]] = None,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        self.mailbox = mailbox
        self.console = console or Console()
        self._read_line = read_line or (lambda: self.console.input(_INDENT))
        self.poll_interval_seconds = poll_interval_seconds
        self.seen: set[str] = set()

    def discover(self) -> list[QuestionRecord]:
        return [q for q in list_pending_questions(self.mailbox) if q.id not in self.seen]

    def print_header(self) -> None:
        self.console.print()
        self.console.print(Text("  🤖 ask_user responder", style="bold cyan"))
        self.console.print(Text(f"  Mailbox: {self.mailbox.root}", style="dim"))
        self.console.print(Text("  Waiting for questions from the agent... Press Ctrl+C to exit", style="dim"))
        self.console.print(Rule(style="dim"))

    def handle(self, question: QuestionRecord) -> Optional[ResponseRecord]:
        """Present one question and publish the operator's response.

        Returns the published record, or None when nothing was delivered
        (question expired or another responder answered first).
        """
        self.seen.add(question.id)
        _logger.info("question_presented", question_id=question.id)
        self.console.print()
        self.console.print(render_question(question))
        self.console.print(
            Text(
                "  ✏️  Your response (press Enter twice to submit, or type 'cancel' to cancel):",
                style="green",
            )
        )
        text, answered = collect_answer(self._read_line)

        if not question_exists(self.mailbox, question.id):
            self.console.print(Text("  ⌛ The agent stopped waiting; response not sent", style="yellow"))
            _logger.info("question_expired", question_id=question.id)
            return None

        record = ResponseRecord(id=question.id, response=text, answered=answered)
        try:
            write_response(self.mailbox, record)
        except ResponseConflictError:
            self.console.print(Text("  ⚠️  Already answered elsewhere; response not sent", style="yellow"))
            _logger.warning("response_conflict", question_id=question.id)
            return None

        # Question gone but our response still here: the asker gave up in between
        if not question_exists(self.mailbox, question.id) and response_exists(self.mailbox, question.id):
            discard(self.mailbox.response_path(question.id))
            self.console.print(Text("  ⌛ The agent stopped waiting; response discarded", style="yellow"))
            _logger.info("late_response_discarded", question_id=question.id)
            return None

        if answered:
            self.console.print(Text("  ✅ Response sent!", style="bold green"))
        else:
            self.console.print(Text("  ⚠️  Response cancelled", style="yellow"))
        _logger.info("response_published", question_id=question.id, answered=answered)
        return record

    def run_once(self) -> int:
        """Serve every newly discovered question; returns how many were presented."""
        try:
            pending = self.discover()
        except OSError as exc:
            _logger.error("mailbox_scan_failed", error=str(exc))
            return 0
        presented = 0
        for question in pending:
            try:
                # Withdrawn by its asker while an earlier question was being answered
                if not question_exists(self.mailbox, question.id):
                    self.seen.add(question.id)
                    _logger.info("question_withdrawn", question_id=question.id)
                    continue
                presented += 1
                self.handle(question)
            except OSError as exc:
                _logger.error("interaction_failed", question_id=question.id, error=str(exc))
                self.console.print(Text(f"  ❌ Could not deliver response: {exc}", style="bold red"))
            self.console.print(Text("  Waiting for more questions...", style="dim"))
        return presented

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        self.print_header()
        try:
            while stop_event is None or not stop_event.is_set():
                self.run_once()
                if stop_event is not None:
                    if stop_event.wait(self.poll_interval_seconds):
                        break
                else:
                    time.sleep(self.poll_interval_seconds)
        except (KeyboardInterrupt, EOFError):
            pass
        self.console.print()
        self.console.print(Text("  👋 Goodbye!", style="yellow"))
