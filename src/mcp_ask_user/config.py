"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")


def _build_decouple_config() -> DecoupleConfig:
    # Gracefully handle missing .env (e.g., in CI/tests) by falling back to an empty repository.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        # Fall back to an empty repository (reads only os.environ; all .env lookups use defaults)
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """HTTP transport related settings."""

    host: str
    port: int
    path: str


@dataclass(slots=True, frozen=True)
class MailboxSettings:
    """Shared mailbox directory and polling configuration.

    Both the agent-side server and the operator's ``respond`` loop must resolve
    the same ``root``; set ``ASK_USER_MAILBOX_DIR`` identically for both.

    Example .env:
        ASK_USER_MAILBOX_DIR=~/.mcp_ask_user/mailbox
        ASK_USER_POLL_INTERVAL_MS=500
        ASK_USER_DEFAULT_TIMEOUT_SECONDS=300
    """

    root: str
    poll_interval_ms: int
    responder_poll_interval_ms: int
    default_timeout_seconds: int
    # Orphaned responses / temp files older than this are removed by `prune`
    stale_after_seconds: int

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def responder_poll_interval_seconds(self) -> float:
        return self.responder_poll_interval_ms / 1000.0


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    http: HttpSettings
    mailbox: MailboxSettings
    # Logging
    log_rich_enabled: bool
    log_level: str
    log_json_enabled: bool
    # Tools logging
    tools_log_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _positive_int(value: str, *, default: int) -> int:
    parsed = _int(value, default=default)
    return parsed if parsed > 0 else default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    http_settings = HttpSettings(
        host=_decouple_config("HTTP_HOST", default="127.0.0.1"),
        port=_int(_decouple_config("HTTP_PORT", default="8766"), default=8766),
        path=_decouple_config("HTTP_PATH", default="/mcp/"),
    )

    mailbox_settings = MailboxSettings(
        # Default to a user-scoped directory both processes can agree on without extra config
        root=_decouple_config("ASK_USER_MAILBOX_DIR", default="~/.mcp_ask_user/mailbox"),
        poll_interval_ms=_positive_int(_decouple_config("ASK_USER_POLL_INTERVAL_MS", default="500"), default=500),
        responder_poll_interval_ms=_positive_int(
            _decouple_config("ASK_USER_RESPONDER_POLL_INTERVAL_MS", default="500"), default=500
        ),
        default_timeout_seconds=_positive_int(
            _decouple_config("ASK_USER_DEFAULT_TIMEOUT_SECONDS", default="300"), default=300
        ),
        stale_after_seconds=_positive_int(_decouple_config("ASK_USER_STALE_AFTER_SECONDS", default="3600"), default=3600),
    )

    return Settings(
        environment=environment,
        http=http_settings,
        mailbox=mailbox_settings,
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        tools_log_enabled=_bool(_decouple_config("TOOLS_LOG_ENABLED", default="true"), default=True),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
