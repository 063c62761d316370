"""Shared fixtures for agswitch tests."""

import sqlite3
from unittest import mock

import pytest

from agswitch.config import Settings
from agswitch.service import AccountService
from agswitch.web.accounts import AccountStore
from agswitch.web.oauth import TokenData


@pytest.fixture
def store(tmp_path):
    """Empty account store under a temporary data dir."""
    return AccountStore(tmp_path / "accounts.json")


@pytest.fixture
def state_db(tmp_path):
    """A state.vscdb with Antigravity's ItemTable schema and some unrelated rows."""
    path = tmp_path / "globalStorage" / "state.vscdb"
    path.parent.mkdir(parents=True)
    conn = sqlite3.connect(str(path))
    with conn:
        conn.execute(
            "CREATE TABLE ItemTable (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)"
        )
        conn.executemany(
            "INSERT INTO ItemTable (key, value) VALUES (?, ?)",
            [
                ("workbench.colorTheme", "Default Dark"),
                ("google.geminicodeassist", "{}"),
                ("google.geminicodeassist.hasRunOnce", "true"),
                ("google.geminicodeassist.session.1", "x"),
                ("google.geminicodeassistant", "keep"),
                ("geminiCodeAssist.chatThreads", "[]"),
                ("geminiCodeAssist.chatThreads.abc", "[]"),
            ],
        )
    conn.close()
    return path


def read_items(path) -> dict:
    conn = sqlite3.connect(str(path))
    try:
        return dict(conn.execute("SELECT key, value FROM ItemTable").fetchall())
    finally:
        conn.close()


@pytest.fixture
def items():
    """Callable returning ItemTable as a dict."""
    return read_items


class RecordingController:
    """Application controller stand-in that records stop/start calls."""

    def __init__(self, db_path):
        self.db_path = db_path
        self.calls = []

    def state_db_path(self):
        return self.db_path

    def stop(self):
        self.calls.append("stop")

    def start(self):
        self.calls.append("start")


@pytest.fixture
def oauth():
    """OAuth client whose refresh grant always succeeds with ``at-<refresh token>``."""
    client = mock.MagicMock()
    client.refresh = mock.AsyncMock(
        side_effect=lambda rt: TokenData(access_token=f"at-{rt}", refresh_token=rt)
    )
    return client


@pytest.fixture
def service(tmp_path, state_db, oauth):
    """AccountService over temp storage with fake OAuth and controller."""
    settings = Settings(data_dir=tmp_path / "data", state_db_path=state_db)
    svc = AccountService(settings, oauth=oauth, controller=RecordingController(state_db))
    svc.orchestrator.settle_delay = 0
    return svc


@pytest.fixture
def make_controller():
    """Factory for extra RecordingControllers."""
    return RecordingController
