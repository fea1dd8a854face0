import asyncio
import io
import os
import threading
from collections.abc import Iterable

import pytest
from rich.console import Console

from mcp_ask_user.asker import request_user_input
from mcp_ask_user.models import QuestionRecord, ResponseRecord
from mcp_ask_user.responder import Responder, collect_answer
from mcp_ask_user.storage import discard, list_pending_questions, read_response, write_question, write_response
from mcp_ask_user.utils import generate_question_id


def _script(lines: Iterable[str]):
    feed = iter(lines)

    def read_line() -> str:
        try:
            return next(feed)
        except StopIteration:
            raise EOFError from None

    return read_line


def _responder(mailbox, lines: Iterable[str]) -> tuple[Responder, io.StringIO]:
    buffer = io.StringIO()
    console = Console(file=buffer, force_terminal=False, width=100)
    return Responder(mailbox, console=console, read_line=_script(lines), poll_interval_seconds=0.01), buffer


def _pending(mailbox, text: str = "Which color?", **kwargs) -> QuestionRecord:
    record = QuestionRecord(id=generate_question_id(), question=text, **kwargs)
    write_question(mailbox, record)
    return record


@pytest.mark.parametrize(
    ("lines", "expected"),
    [
        (["blue", ""], ("blue", True)),
        (["first line", "second line", ""], ("first line\nsecond line", True)),
        (["  padded  ", ""], ("padded", True)),
        (["", "", "ignored"], ("", True)),
        (["", "late start", ""], ("late start", True)),
        (["   ", "\t", "after blanks", ""], ("after blanks", True)),
        (["line one", "   ", "line three", ""], ("line one\n   \nline three", True)),
        (["   ", ""], ("", True)),
        (["cancel", ""], ("", False)),
        (["  CANCEL ", ""], ("", False)),
        (["cancel", "really", ""], ("cancel\nreally", True)),
    ],
)
def test_collect_answer_rules(lines, expected):
    assert collect_answer(_script(lines)) == expected


def test_collect_answer_propagates_eof():
    with pytest.raises(EOFError):
        collect_answer(_script(["half an answer"]))


def test_handle_publishes_response(mailbox):
    question = _pending(mailbox, title="Theme", origin={"session_id": "0123456789abcdefXYZ"})
    responder, buffer = _responder(mailbox, ["Dark", ""])

    record = responder.handle(question)

    assert record is not None
    assert record.response == "Dark"
    assert read_response(mailbox, question.id).answered is True
    output = buffer.getvalue()
    assert "Theme" in output
    assert "Which color?" in output
    assert "Session: 0123456789ab..." in output
    assert "Response sent!" in output


def test_handle_publishes_cancel(mailbox):
    question = _pending(mailbox)
    responder, buffer = _responder(mailbox, ["cancel", ""])
    record = responder.handle(question)
    assert record is not None
    assert record.answered is False
    assert record.response == ""
    assert "Response cancelled" in buffer.getvalue()


def test_each_question_presented_once_per_session(mailbox):
    question = _pending(mailbox)
    responder, _ = _responder(mailbox, ["yes", ""])
    assert responder.run_once() == 1
    assert responder.run_once() == 0
    assert question.id in responder.seen


def test_restarted_responder_offers_still_pending_question(mailbox):
    question = _pending(mailbox)
    first, _ = _responder(mailbox, ["", ""])
    first.seen.add(question.id)
    assert first.run_once() == 0

    restarted, _ = _responder(mailbox, ["here now", ""])
    assert [q.id for q in restarted.discover()] == [question.id]
    assert restarted.run_once() == 1
    assert read_response(mailbox, question.id).response == "here now"


def test_retired_question_is_never_shown(mailbox):
    question = _pending(mailbox)
    discard(mailbox.question_path(question.id))
    responder, _ = _responder(mailbox, [])
    assert responder.discover() == []
    assert responder.run_once() == 0


def test_answer_for_expired_question_is_not_sent(mailbox):
    question = _pending(mailbox)

    def read_line_then_expire():
        discard(mailbox.question_path(question.id))
        return "too slow"

    lines = iter([read_line_then_expire, lambda: ""])
    responder = Responder(
        mailbox,
        console=Console(file=io.StringIO()),
        read_line=lambda: next(lines)(),
    )
    assert responder.handle(question) is None
    assert os.listdir(mailbox.root) == []


def test_question_withdrawn_while_answering_another_is_skipped(mailbox):
    first = _pending(mailbox, "FIRST-Q")
    second = _pending(mailbox, "SECOND-Q")
    calls: list[str] = []
    feed = iter(["answer one", ""])

    def read_line() -> str:
        if not calls:
            discard(mailbox.question_path(second.id))
        line = next(feed)
        calls.append(line)
        return line

    buffer = io.StringIO()
    responder = Responder(mailbox, console=Console(file=buffer, width=100), read_line=read_line)

    assert responder.run_once() == 1
    assert calls == ["answer one", ""]
    assert "SECOND-Q" not in buffer.getvalue()
    assert second.id in responder.seen
    assert read_response(mailbox, first.id).response == "answer one"


def test_reply_racing_asker_retirement_is_discarded(mailbox, monkeypatch):
    question = _pending(mailbox)
    real_write = write_response

    def write_then_asker_gives_up(mb, record):
        path = real_write(mb, record)
        discard(mb.question_path(record.id))
        return path

    monkeypatch.setattr("mcp_ask_user.responder.write_response", write_then_asker_gives_up)
    responder, buffer = _responder(mailbox, ["answer", ""])
    assert responder.handle(question) is None
    assert os.listdir(mailbox.root) == []
    assert "response discarded" in buffer.getvalue()


def test_second_responder_loses_conflict(mailbox):
    question = _pending(mailbox)
    write_response(mailbox, ResponseRecord(id=question.id, response="from elsewhere", answered=True))
    responder, buffer = _responder(mailbox, ["mine", ""])

    assert responder.handle(question) is None
    assert read_response(mailbox, question.id).response == "from elsewhere"
    assert "Already answered elsewhere" in buffer.getvalue()


def test_io_failure_on_one_question_does_not_stop_the_loop(mailbox, monkeypatch):
    broken = _pending(mailbox, "first")
    healthy = _pending(mailbox, "second")
    real_write = write_response

    def flaky_write(mb, record):
        if record.id == broken.id:
            raise PermissionError("read-only mailbox")
        return real_write(mb, record)

    monkeypatch.setattr("mcp_ask_user.responder.write_response", flaky_write)
    responder, buffer = _responder(mailbox, ["one", "", "two", ""])

    assert responder.run_once() == 2
    assert read_response(mailbox, broken.id) is None
    assert read_response(mailbox, healthy.id).response == "two"
    assert "Could not deliver response" in buffer.getvalue()


def test_run_forever_exits_on_eof(mailbox):
    _pending(mailbox)
    responder, buffer = _responder(mailbox, ["partial"])
    responder.run_forever()
    output = buffer.getvalue()
    assert "ask_user responder" in output
    assert "Goodbye!" in output


def test_run_forever_honours_stop_event(mailbox):
    responder, buffer = _responder(mailbox, [])
    stop = threading.Event()
    stop.set()
    responder.run_forever(stop_event=stop)
    assert "Goodbye!" in buffer.getvalue()


@pytest.mark.asyncio
async def test_two_askers_one_responder_in_arrival_order(mailbox):
    task_a = asyncio.create_task(request_user_input(mailbox, "A?", poll_interval_seconds=0.05))
    while len(list_pending_questions(mailbox)) < 1:
        await asyncio.sleep(0.01)
    task_b = asyncio.create_task(request_user_input(mailbox, "B?", poll_interval_seconds=0.05))
    while len(list_pending_questions(mailbox)) < 2:
        await asyncio.sleep(0.01)

    responder, buffer = _responder(mailbox, ["answer A", "", "answer B", ""])
    presented = await asyncio.to_thread(responder.run_once)
    outcome_a, outcome_b = await asyncio.wait_for(asyncio.gather(task_a, task_b), 5)

    assert presented == 2
    assert outcome_a.response == "answer A"
    assert outcome_b.response == "answer B"
    output = buffer.getvalue()
    assert output.index("A?") < output.index("B?")
    assert os.listdir(mailbox.root) == []
