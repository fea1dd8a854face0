"""Asking side of the mailbox handshake.

The asker publishes one question record, then polls for the matching response
while checking, in this order on every tick: its cancellation signal, its own
deadline, and the response file. Exactly one AskOutcome is returned per call.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import math
import time
from collections.abc import Mapping
from typing import Any, Callable, Optional, Protocol, TypeVar

from .models import (
    REASON_ABORTED,
    REASON_USER_CANCELLED,
    AskOutcome,
    QuestionRecord,
    ResponseRecord,
    timeout_reason,
)
from .storage import Mailbox, discard, read_response, write_question
from .utils import generate_question_id

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_POLL_INTERVAL_SECONDS = 0.5

T = TypeVar("T")


class CancelSignal(Protocol):
    """Anything exposing ``is_set()``: asyncio.Event, threading.Event, or a test double."""

    def is_set(self) -> bool: ...


async def _to_thread(func: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
    return await asyncio.to_thread(func, *args, **kwargs)


def _validate_timeout(timeout_seconds: Optional[float]) -> float:
    if timeout_seconds is None:
        return DEFAULT_TIMEOUT_SECONDS
    if isinstance(timeout_seconds, bool) or not isinstance(timeout_seconds, (int, float)):
        raise ValueError(f"timeout must be a number of seconds, got {timeout_seconds!r}")
    if not math.isfinite(timeout_seconds) or timeout_seconds <= 0:
        raise ValueError(f"timeout must be a positive number of seconds, got {timeout_seconds!r}")
    return float(timeout_seconds)


def _cleanup(mailbox: Mailbox, question_id: str) -> None:
    """Best-effort removal of both records for ``question_id``."""
    for path in (mailbox.question_path(question_id), mailbox.response_path(question_id)):
        try:
            discard(path)
        except OSError:
            logger.warning("ask_cleanup_failed", extra={"question_id": question_id, "path": str(path)})


def _cleanup_after(future: asyncio.Future[Any], mailbox: Mailbox, question_id: str) -> None:
    if not future.cancelled():
        future.exception()
    _cleanup(mailbox, question_id)


def _consume(mailbox: Mailbox, question_id: str) -> None:
    # Response goes first: a question missing while its response remains then
    # always means the asker gave up, which the responder uses to spot late replies.
    discard(mailbox.response_path(question_id))
    discard(mailbox.question_path(question_id))


def _outcome_from_response(response: ResponseRecord) -> AskOutcome:
    if response.answered:
        return AskOutcome.answered(response.response)
    return AskOutcome.cancelled_because(REASON_USER_CANCELLED)


async def request_user_input(
    mailbox: Mailbox,
    question: str,
    *,
    title: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
    cancel_signal: Optional[CancelSignal] = None,
    origin: Optional[Mapping[str, str]] = None,
    poll_interval_seconds: Optional[float] = None,
) -> AskOutcome:
    """Ask the operator ``question`` through ``mailbox`` and wait for the outcome.

    Returns an AskOutcome for every business result (answer, operator cancel,
    agent abort, timeout). Raises ValueError for invalid arguments before any file
    is written, and re-raises I/O failures and task cancellation after removing
    this call's records.
    """
    if not isinstance(question, str) or not question.strip():
        raise ValueError("question must be a non-empty string")
    timeout = _validate_timeout(timeout_seconds)
    interval = poll_interval_seconds if poll_interval_seconds and poll_interval_seconds > 0 else DEFAULT_POLL_INTERVAL_SECONDS

    record = QuestionRecord(
        id=generate_question_id(),
        question=question,
        title=title or None,
        origin={str(k): str(v) for k, v in (origin or {}).items()},
    )
    question_id = record.id
    published = asyncio.ensure_future(_to_thread(write_question, mailbox, record))

    try:
        # The worker thread outlives a cancellation; cleanup then waits for it to finish
        await asyncio.shield(published)
        logger.info("question_created", extra={"question_id": question_id, "timeout_seconds": timeout})
        started = time.monotonic()

        while True:
            if cancel_signal is not None and cancel_signal.is_set():
                await _to_thread(_cleanup, mailbox, question_id)
                logger.info("question_aborted", extra={"question_id": question_id})
                return AskOutcome.cancelled_because(REASON_ABORTED)

            if time.monotonic() - started > timeout:
                await _to_thread(_cleanup, mailbox, question_id)
                logger.info("question_timed_out", extra={"question_id": question_id})
                return AskOutcome.cancelled_because(timeout_reason(timeout))

            # None covers both "not written yet" and "caught mid-write"; the next tick rereads it
            response = await _to_thread(read_response, mailbox, question_id)
            if response is not None:
                await _to_thread(_consume, mailbox, question_id)
                logger.info(
                    "question_resolved",
                    extra={"question_id": question_id, "answered": response.answered},
                )
                return _outcome_from_response(response)

            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        if published.done():
            _cleanup(mailbox, question_id)
        else:
            published.add_done_callback(functools.partial(_cleanup_after, mailbox=mailbox, question_id=question_id))
        logger.info("question_task_cancelled", extra={"question_id": question_id})
        raise
    except Exception:
        with contextlib.suppress(Exception):
            _cleanup(mailbox, question_id)
        logger.exception("question_failed", extra={"question_id": question_id})
        raise
