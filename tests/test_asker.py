import asyncio
import os
import threading
import time

import pytest

from mcp_ask_user.asker import request_user_input
from mcp_ask_user.models import QuestionRecord, ResponseRecord
from mcp_ask_user.storage import list_pending_questions, write_question, write_response

POLL = 0.05


async def _wait_for_question(mailbox, *, count: int = 1, timeout: float = 5.0) -> list[QuestionRecord]:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        pending = list_pending_questions(mailbox)
        if len(pending) >= count:
            return pending
        await asyncio.sleep(0.01)
    raise AssertionError("question never appeared in the mailbox")


@pytest.mark.asyncio
async def test_answer_is_returned_and_files_removed(mailbox):
    task = asyncio.create_task(
        request_user_input(
            mailbox,
            "Which database?",
            title="Setup",
            origin={"session_id": "sess-1"},
            poll_interval_seconds=POLL,
        )
    )
    [question] = await _wait_for_question(mailbox)
    assert question.question == "Which database?"
    assert question.title == "Setup"
    assert question.origin == {"session_id": "sess-1"}

    write_response(mailbox, ResponseRecord(id=question.id, response="Use PostgreSQL", answered=True))
    outcome = await asyncio.wait_for(task, 5)

    assert outcome.to_payload() == {"responded": True, "response": "Use PostgreSQL", "cancelled": False}
    assert os.listdir(mailbox.root) == []


@pytest.mark.asyncio
async def test_operator_cancel_is_reported(mailbox):
    task = asyncio.create_task(request_user_input(mailbox, "Delete branch?", poll_interval_seconds=POLL))
    [question] = await _wait_for_question(mailbox)
    write_response(mailbox, ResponseRecord(id=question.id, response="", answered=False))
    outcome = await asyncio.wait_for(task, 5)

    assert outcome.responded is False
    assert outcome.cancelled is True
    assert outcome.reason == "User cancelled the request"
    assert os.listdir(mailbox.root) == []


@pytest.mark.asyncio
async def test_empty_answer_counts_as_responded(mailbox):
    task = asyncio.create_task(request_user_input(mailbox, "Anything to add?", poll_interval_seconds=POLL))
    [question] = await _wait_for_question(mailbox)
    write_response(mailbox, ResponseRecord(id=question.id, response="", answered=True))
    outcome = await asyncio.wait_for(task, 5)
    assert outcome.responded is True
    assert outcome.response == ""
    assert outcome.reason is None


@pytest.mark.asyncio
async def test_timeout_resolves_close_to_deadline(mailbox):
    started = time.monotonic()
    outcome = await request_user_input(mailbox, "Still there?", timeout_seconds=1, poll_interval_seconds=0.5)
    elapsed = time.monotonic() - started

    assert 1.0 <= elapsed < 2.5
    assert outcome.cancelled is True
    assert "Timeout" in outcome.reason
    assert outcome.reason == "Timeout after 1 seconds waiting for user response"
    assert os.listdir(mailbox.root) == []


@pytest.mark.asyncio
async def test_external_abort_cleans_up(mailbox):
    cancel = asyncio.Event()
    task = asyncio.create_task(
        request_user_input(mailbox, "Continue?", cancel_signal=cancel, poll_interval_seconds=POLL)
    )
    await _wait_for_question(mailbox)
    cancel.set()
    outcome = await asyncio.wait_for(task, 5)

    assert outcome.to_payload() == {
        "responded": False,
        "response": "",
        "cancelled": True,
        "reason": "Agent aborted the request",
    }
    assert os.listdir(mailbox.root) == []


@pytest.mark.asyncio
async def test_threading_event_is_an_accepted_signal(mailbox):
    cancel = threading.Event()
    cancel.set()
    outcome = await request_user_input(mailbox, "Continue?", cancel_signal=cancel, poll_interval_seconds=POLL)
    assert outcome.reason == "Agent aborted the request"
    assert os.listdir(mailbox.root) == []


class _AnswerThenAbort:
    """Publishes a reply during the first check, then reports the abort."""

    def __init__(self, mailbox):
        self.mailbox = mailbox

    def is_set(self) -> bool:
        for question in list_pending_questions(self.mailbox):
            write_response(self.mailbox, ResponseRecord(id=question.id, response="too late", answered=True))
        return True


@pytest.mark.asyncio
async def test_abort_wins_over_reply_present_on_same_tick(mailbox):
    outcome = await request_user_input(
        mailbox,
        "Continue?",
        cancel_signal=_AnswerThenAbort(mailbox),
        poll_interval_seconds=POLL,
    )
    assert outcome.reason == "Agent aborted the request"
    assert os.listdir(mailbox.root) == []


@pytest.mark.asyncio
async def test_partial_response_is_not_consumed(mailbox):
    task = asyncio.create_task(request_user_input(mailbox, "Name?", poll_interval_seconds=POLL))
    [question] = await _wait_for_question(mailbox)
    response_path = mailbox.response_path(question.id)
    response_path.write_text('{"id": "' + question.id + '", "respon', encoding="utf-8")

    await asyncio.sleep(POLL * 4)
    assert not task.done()
    assert response_path.exists()

    response_path.unlink()
    write_response(mailbox, ResponseRecord(id=question.id, response="Ada", answered=True))
    outcome = await asyncio.wait_for(task, 5)
    assert outcome.response == "Ada"


@pytest.mark.asyncio
async def test_reply_after_timeout_never_reaches_a_later_question(mailbox):
    first = await request_user_input(mailbox, "First?", timeout_seconds=0.1, poll_interval_seconds=POLL)
    assert first.cancelled is True

    task = asyncio.create_task(request_user_input(mailbox, "Second?", poll_interval_seconds=POLL))
    [second] = await _wait_for_question(mailbox)
    assert second.question == "Second?"
    # A stray reply for a different id must not resolve the second question
    write_response(mailbox, ResponseRecord(id="q_0000000000000001_00000000", response="stale", answered=True))
    await asyncio.sleep(POLL * 4)
    assert not task.done()

    write_response(mailbox, ResponseRecord(id=second.id, response="fresh", answered=True))
    outcome = await asyncio.wait_for(task, 5)
    assert outcome.response == "fresh"


@pytest.mark.asyncio
async def test_concurrent_questions_get_their_own_answers(mailbox):
    task_a = asyncio.create_task(request_user_input(mailbox, "A?", poll_interval_seconds=POLL))
    await _wait_for_question(mailbox, count=1)
    task_b = asyncio.create_task(request_user_input(mailbox, "B?", poll_interval_seconds=POLL))
    questions = await _wait_for_question(mailbox, count=2)
    by_text = {q.question: q for q in questions}

    write_response(mailbox, ResponseRecord(id=by_text["B?"].id, response="answer B", answered=True))
    write_response(mailbox, ResponseRecord(id=by_text["A?"].id, response="answer A", answered=True))

    outcome_a, outcome_b = await asyncio.wait_for(asyncio.gather(task_a, task_b), 5)
    assert outcome_a.response == "answer A"
    assert outcome_b.response == "answer B"


@pytest.mark.asyncio
async def test_task_cancellation_removes_records(mailbox):
    task = asyncio.create_task(request_user_input(mailbox, "Wait?", poll_interval_seconds=POLL))
    await _wait_for_question(mailbox)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert os.listdir(mailbox.root) == []


@pytest.mark.asyncio
async def test_io_failure_propagates_after_cleanup(mailbox, monkeypatch):
    def broken_read(mailbox, question_id):
        raise PermissionError("mailbox not readable")

    monkeypatch.setattr("mcp_ask_user.asker.read_response", broken_read)
    with pytest.raises(PermissionError):
        await request_user_input(mailbox, "Readable?", poll_interval_seconds=POLL)
    assert os.listdir(mailbox.root) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("timeout", [0, -5, float("nan"), float("inf"), True, "10"])
async def test_invalid_timeout_rejected_before_writing(mailbox, timeout):
    with pytest.raises(ValueError):
        await request_user_input(mailbox, "Hello?", timeout_seconds=timeout)
    assert os.listdir(mailbox.root) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("question", ["", "   \n  "])
async def test_blank_question_rejected(mailbox, question):
    with pytest.raises(ValueError):
        await request_user_input(mailbox, question)
    assert os.listdir(mailbox.root) == []


@pytest.mark.asyncio
async def test_cancel_during_publication_still_removes_question(mailbox, monkeypatch):
    def slow_write(mailbox, record):
        time.sleep(0.3)
        return write_question(mailbox, record)

    monkeypatch.setattr("mcp_ask_user.asker.write_question", slow_write)
    task = asyncio.create_task(request_user_input(mailbox, "Slow disk?", poll_interval_seconds=POLL))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await asyncio.sleep(0.5)
    assert os.listdir(mailbox.root) == []
