"""Filesystem mailbox helpers for MCP Ask User.

Layout (one flat directory shared by both processes):
- question_<id>.json   written once by the asking side, deleted only by it
- response_<id>.json   written once by the responder, deleted by the asking side
- .<name>.tmp-<hex>    in-flight writes; never matched by readers

Key Design Decisions:
1. No lock files and no daemon: every record is immutable and published atomically
2. Questions are published with os.replace; responses with os.link so that a
   second responder loses deterministically instead of overwriting
3. Readers treat a missing or undecodable file as "not ready", never as an error
4. Deletes are idempotent; either side may race the other to a missing file
"""

from __future__ import annotations

import contextlib
import errno
import logging
import os
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .config import Settings
from .models import QuestionRecord, RecordDecodeError, ResponseRecord
from .utils import validate_question_id_format

_logger = logging.getLogger(__name__)

QUESTION_PREFIX = "question_"
RESPONSE_PREFIX = "response_"
RECORD_SUFFIX = ".json"
_TMP_MARKER = ".tmp-"
# link(2) failures meaning "this filesystem has no hard links"
_NO_HARDLINK_ERRNOS = frozenset({errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP, errno.ENOSYS})
_QUESTION_NAME_RE = re.compile(r"^question_(?P<id>.+)\.json$")
_RESPONSE_NAME_RE = re.compile(r"^response_(?P<id>.+)\.json$")


class ResponseConflictError(FileExistsError):
    """Another responder already published a response for this question."""

    def __init__(self, question_id: str, path: Path):
        super().__init__(f"Response for question '{question_id}' already exists at {path}")
        self.question_id = question_id
        self.path = path


@dataclass(slots=True, frozen=True)
class Mailbox:
    """Handle on the shared mailbox directory."""

    root: Path

    def question_path(self, question_id: str) -> Path:
        return self.root / f"{QUESTION_PREFIX}{_checked_id(question_id)}{RECORD_SUFFIX}"

    def response_path(self, question_id: str) -> Path:
        return self.root / f"{RESPONSE_PREFIX}{_checked_id(question_id)}{RECORD_SUFFIX}"


def _checked_id(question_id: str) -> str:
    if not validate_question_id_format(question_id):
        raise ValueError(f"Invalid question id: {question_id!r}")
    return question_id


def resolve_mailbox_root(settings: Settings) -> Path:
    return Path(settings.mailbox.root).expanduser().resolve()


def open_mailbox(root: str | Path) -> Mailbox:
    """Return a Mailbox for ``root``, creating the directory if needed."""
    path = Path(root).expanduser().resolve()
    # exist_ok makes concurrent first-use from both processes safe
    path.mkdir(parents=True, exist_ok=True)
    return Mailbox(root=path)


def ensure_mailbox(settings: Settings) -> Mailbox:
    return open_mailbox(resolve_mailbox_root(settings))


def _temp_sibling(path: Path) -> Path:
    return path.with_name(f".{path.name}{_TMP_MARKER}{secrets.token_hex(4)}")


def _write_temp(path: Path, content: str) -> Path:
    tmp = _temp_sibling(path)
    try:
        with tmp.open("w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
    except OSError:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise
    return tmp


def write_question(mailbox: Mailbox, record: QuestionRecord) -> Path:
    """Publish a question record atomically and return its path."""
    path = mailbox.question_path(record.id)
    tmp = _write_temp(path, record.to_json())
    try:
        os.replace(tmp, path)
    except OSError:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise
    _logger.debug("question_written", extra={"question_id": record.id, "path": str(path)})
    return path


def _create_exclusive(path: Path, content: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
        fh.write(content)
        fh.flush()
        os.fsync(fh.fileno())


def _publish_exclusive(tmp: Path, path: Path, content: str) -> None:
    try:
        os.link(tmp, path)
    except FileExistsError:
        raise
    except OSError as exc:
        if exc.errno not in _NO_HARDLINK_ERRNOS:
            raise
        # Created in place; readers treat the file as not ready until it decodes
        _logger.debug("hardlink_unsupported", extra={"path": str(path), "errno": exc.errno})
        _create_exclusive(path, content)


def write_response(mailbox: Mailbox, record: ResponseRecord) -> Path:
    """Publish a response record exactly once.

    Uses a hard link from a fully written temp file; on filesystems without hard
    links the record is created with O_EXCL instead, which keeps the
    first-writer-wins rule but may be observed mid-write.

    Raises ResponseConflictError if a response for the same id is already present.
    """
    path = mailbox.response_path(record.id)
    content = record.to_json()
    tmp = _write_temp(path, content)
    try:
        _publish_exclusive(tmp, path, content)
    except FileExistsError as exc:
        raise ResponseConflictError(record.id, path) from exc
    finally:
        with contextlib.suppress(OSError):
            tmp.unlink()
    _logger.debug("response_written", extra={"question_id": record.id, "answered": record.answered})
    return path


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def read_question(path: Path) -> Optional[QuestionRecord]:
    """Decode a question file; ``None`` if it vanished, is partial, or disagrees with its name."""
    match = _QUESTION_NAME_RE.match(path.name)
    if match is None or not validate_question_id_format(match.group("id")):
        return None
    raw = _read_text(path)
    if raw is None:
        return None
    try:
        record = QuestionRecord.from_json(raw)
    except RecordDecodeError:
        return None
    if record.id != match.group("id"):
        _logger.warning("question_id_mismatch", extra={"path": str(path), "question_id": record.id})
        return None
    return record


def read_response(mailbox: Mailbox, question_id: str) -> Optional[ResponseRecord]:
    """Decode the response for ``question_id``; ``None`` until a complete, matching one exists."""
    raw = _read_text(mailbox.response_path(question_id))
    if raw is None:
        return None
    try:
        record = ResponseRecord.from_json(raw)
    except RecordDecodeError:
        return None
    if record.id != question_id:
        return None
    return record


def question_exists(mailbox: Mailbox, question_id: str) -> bool:
    return mailbox.question_path(question_id).exists()


def response_exists(mailbox: Mailbox, question_id: str) -> bool:
    return mailbox.response_path(question_id).exists()


def discard(path: Path) -> bool:
    """Delete ``path`` if present. Returns True when a file was removed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def _question_ids(mailbox: Mailbox) -> list[str]:
    ids: list[str] = []
    for name in sorted(os.listdir(mailbox.root)):
        match = _QUESTION_NAME_RE.match(name)
        if match and validate_question_id_format(match.group("id")):
            ids.append(match.group("id"))
    return ids


def list_pending_questions(mailbox: Mailbox) -> list[QuestionRecord]:
    """Return readable questions in filename order (which follows creation order)."""
    records: list[QuestionRecord] = []
    for question_id in _question_ids(mailbox):
        record = read_question(mailbox.question_path(question_id))
        if record is not None:
            records.append(record)
    return records


@dataclass(slots=True)
class MailboxEntries:
    questions: list[str]
    responses: list[str]
    orphaned_responses: list[str]
    temp_files: list[str]


def scan_mailbox(mailbox: Mailbox) -> MailboxEntries:
    names = sorted(os.listdir(mailbox.root))
    question_ids: set[str] = set()
    response_ids: list[str] = []
    temp_files: list[str] = []
    for name in names:
        if name.startswith(".") and _TMP_MARKER in name:
            temp_files.append(name)
            continue
        q_match = _QUESTION_NAME_RE.match(name)
        if q_match and validate_question_id_format(q_match.group("id")):
            question_ids.add(q_match.group("id"))
            continue
        r_match = _RESPONSE_NAME_RE.match(name)
        if r_match and validate_question_id_format(r_match.group("id")):
            response_ids.append(r_match.group("id"))
    return MailboxEntries(
        questions=sorted(question_ids),
        responses=response_ids,
        orphaned_responses=[rid for rid in response_ids if rid not in question_ids],
        temp_files=temp_files,
    )


def mailbox_status(mailbox: Mailbox) -> dict[str, Any]:
    entries = scan_mailbox(mailbox)
    return {
        "mailbox_dir": str(mailbox.root),
        "pending_questions": len(entries.questions),
        "responses": len(entries.responses),
        "orphaned_responses": len(entries.orphaned_responses),
        "temp_files": len(entries.temp_files),
        "entries": {
            "questions": list(entries.questions),
            "responses": list(entries.responses),
            "orphaned_responses": list(entries.orphaned_responses),
            "temp_files": list(entries.temp_files),
        },
    }


def _age_seconds(path: Path, now: float) -> Optional[float]:
    try:
        return now - path.stat().st_mtime
    except FileNotFoundError:
        return None


def prune_mailbox(mailbox: Mailbox, *, older_than_seconds: float, dry_run: bool = False) -> dict[str, Any]:
    """Remove orphaned responses and abandoned temp files older than the threshold.

    Question records are never touched; only the asking side may retire them.
    """
    entries = scan_mailbox(mailbox)
    now = time.time()
    candidates = [mailbox.response_path(rid) for rid in entries.orphaned_responses]
    candidates.extend(mailbox.root / name for name in entries.temp_files)
    removed: list[str] = []
    for path in candidates:
        age = _age_seconds(path, now)
        if age is None or age < older_than_seconds:
            continue
        if dry_run or discard(path):
            removed.append(path.name)
    if removed and not dry_run:
        _logger.info("mailbox_pruned", extra={"removed": len(removed), "mailbox": str(mailbox.root)})
    return {"removed": removed, "dry_run": dry_run, "older_than_seconds": older_than_seconds}
