from pathlib import Path

import pytest

from mcp_ask_user.config import clear_settings_cache
from mcp_ask_user.storage import Mailbox, open_mailbox


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Point settings at a temporary mailbox with fast polling and reset caches."""
    mailbox_root: Path = tmp_path / "mailbox"
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("ASK_USER_MAILBOX_DIR", str(mailbox_root))
    monkeypatch.setenv("ASK_USER_POLL_INTERVAL_MS", "50")
    monkeypatch.setenv("ASK_USER_RESPONDER_POLL_INTERVAL_MS", "50")
    monkeypatch.setenv("TOOLS_LOG_ENABLED", "false")
    clear_settings_cache()
    try:
        yield mailbox_root
    finally:
        clear_settings_cache()


@pytest.fixture
def mailbox(tmp_path) -> Mailbox:
    return open_mailbox(tmp_path / "mailbox")
