"""Mailbox record types and their JSON codec."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .utils import format_seconds, parse_iso_datetime, utc_now

REASON_ABORTED = "Agent aborted the request"
REASON_USER_CANCELLED = "User cancelled the request"


def timeout_reason(timeout_seconds: float) -> str:
    return f"Timeout after {format_seconds(timeout_seconds)} seconds waiting for user response"


class RecordDecodeError(ValueError):
    """Raised when a mailbox file does not hold a complete, well-formed record.

    Readers treat this as "not written yet" rather than as corruption: a file
    observed mid-write decodes the same way as a truncated one.
    """


def _load_object(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RecordDecodeError(f"invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise RecordDecodeError("record must be a JSON object")
    return payload


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise RecordDecodeError(f"field '{key}' must be a string")
    return value


def _require_timestamp(payload: dict[str, Any], key: str) -> datetime:
    value = parse_iso_datetime(_require_str(payload, key))
    if value is None:
        raise RecordDecodeError(f"field '{key}' must be an ISO-8601 timestamp")
    return value


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


@dataclass(slots=True, frozen=True)
class QuestionRecord:
    """One outstanding question, written once by the asking side."""

    id: str
    question: str
    title: Optional[str] = None
    # Caller bookkeeping (session/message ids); passed through, never interpreted
    origin: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def to_json(self) -> str:
        return _dumps(
            {
                "id": self.id,
                "question": self.question,
                "title": self.title,
                "origin": dict(self.origin),
                "created_at": self.created_at.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> QuestionRecord:
        payload = _load_object(raw)
        title = payload.get("title")
        if title is not None and not isinstance(title, str):
            raise RecordDecodeError("field 'title' must be a string or null")
        origin = payload.get("origin", {})
        if not isinstance(origin, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in origin.items()
        ):
            raise RecordDecodeError("field 'origin' must map strings to strings")
        return cls(
            id=_require_str(payload, "id"),
            question=_require_str(payload, "question"),
            title=title,
            origin=dict(origin),
            created_at=_require_timestamp(payload, "created_at"),
        )


@dataclass(slots=True, frozen=True)
class ResponseRecord:
    """The operator's resolution of one question; never rewritten once published."""

    id: str
    response: str
    answered: bool
    created_at: datetime = field(default_factory=utc_now)

    def to_json(self) -> str:
        return _dumps(
            {
                "id": self.id,
                "response": self.response,
                "answered": self.answered,
                "created_at": self.created_at.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> ResponseRecord:
        payload = _load_object(raw)
        answered = payload.get("answered")
        if not isinstance(answered, bool):
            raise RecordDecodeError("field 'answered' must be a boolean")
        return cls(
            id=_require_str(payload, "id"),
            response=_require_str(payload, "response"),
            answered=answered,
            created_at=_require_timestamp(payload, "created_at"),
        )


@dataclass(slots=True, frozen=True)
class AskOutcome:
    """Result handed back to the agent for one ask."""

    responded: bool
    response: str = ""
    cancelled: bool = False
    reason: Optional[str] = None

    @classmethod
    def answered(cls, text: str) -> AskOutcome:
        return cls(responded=True, response=text, cancelled=False)

    @classmethod
    def cancelled_because(cls, reason: str) -> AskOutcome:
        return cls(responded=False, response="", cancelled=True, reason=reason)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "responded": self.responded,
            "response": self.response,
            "cancelled": self.cancelled,
        }
        if self.cancelled:
            payload["reason"] = self.reason or ""
        return payload
