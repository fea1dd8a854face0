"""Utility helpers for the MCP Ask User service."""

from __future__ import annotations

import re
import secrets
import threading
import time
from datetime import datetime, timezone
from typing import Optional

_QUESTION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

# Last issued microsecond stamp; ids from one process never share or reverse a stamp.
_LAST_STAMP_US = 0
_STAMP_LOCK = threading.Lock()


def _next_stamp_us() -> int:
    global _LAST_STAMP_US
    with _STAMP_LOCK:
        stamp = time.time_ns() // 1000
        if stamp <= _LAST_STAMP_US:
            stamp = _LAST_STAMP_US + 1
        _LAST_STAMP_US = stamp
        return stamp


def generate_question_id() -> str:
    """Return a new question id of the form ``q_<usec>_<hex>``.

    The fixed-width microsecond prefix makes lexicographic order follow creation
    order, which is what the responder relies on to present questions in arrival order.
    """
    return f"q_{_next_stamp_us():016d}_{secrets.token_hex(4)}"


def validate_question_id_format(question_id: str) -> bool:
    """Validate that a question id is safe to embed in a mailbox filename.

    Enforces:
    - ASCII alphanumerics plus '.', '_', '-'
    - Must start with an alphanumeric character
    - Max length 128
    """
    candidate = question_id or ""
    if not candidate:
        return False
    return _QUESTION_ID_RE.fullmatch(candidate) is not None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: object) -> Optional[datetime]:
    """Parse ISO-8601 with Z/offset support and normalize to UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_seconds(value: float) -> str:
    """Render a duration without a trailing ``.0`` for whole numbers."""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"
