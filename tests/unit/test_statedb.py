"""Unit tests for the state.vscdb adapter."""

import base64
import json
import os

import pytest

from agswitch.codec import encode
from agswitch.errors import InjectionFailed
from agswitch.statedb import (
    AUTH_STATE_KEY,
    AUTH_STATUS_KEY,
    StateDatabase,
    clear_lock_files,
    like_prefix,
    sidecar_paths,
)


def test_inject_inserts_both_keys(state_db, items):
    StateDatabase(state_db).inject_credentials("at", "rt", 1234, "alice@x.com")
    rows = items(state_db)

    assert base64.b64decode(rows[AUTH_STATE_KEY]) == encode("at", "rt", 1234)
    assert json.loads(rows[AUTH_STATUS_KEY]) == {
        "email": "alice@x.com",
        "apiKey": "at",
        "name": "alice",
    }


def test_inject_updates_existing_row(state_db, items):
    db = StateDatabase(state_db)
    db.inject_credentials("old", "rt", 1, "a@x.com")
    db.inject_credentials("new", "rt2", 2, "b@x.com")
    rows = items(state_db)
    assert base64.b64decode(rows[AUTH_STATE_KEY]) == encode("new", "rt2", 2)
    assert json.loads(rows[AUTH_STATUS_KEY])["email"] == "b@x.com"
    assert db.keys().count(AUTH_STATE_KEY) == 1


def test_inject_purges_cache_keys_and_prefixes(state_db, items):
    StateDatabase(state_db).inject_credentials("at", "rt", 1, "a@x.com")
    keys = set(items(state_db))
    assert "google.geminicodeassist" not in keys
    assert "google.geminicodeassist.hasRunOnce" not in keys
    assert "google.geminicodeassist.session.1" not in keys
    assert "geminiCodeAssist.chatThreads" not in keys
    assert "geminiCodeAssist.chatThreads.abc" not in keys
    # same leading characters but not a dotted child
    assert "google.geminicodeassistant" in keys
    assert "workbench.colorTheme" in keys


def test_inject_is_idempotent(state_db, items):
    db = StateDatabase(state_db)
    db.inject_credentials("at", "rt", 1, "a@x.com")
    first = items(state_db)
    db.inject_credentials("at", "rt", 1, "a@x.com")
    assert items(state_db) == first


def test_inject_missing_database(tmp_path):
    with pytest.raises(InjectionFailed, match="not found"):
        StateDatabase(tmp_path / "nope.vscdb").inject_credentials("a", "r", 1, "a@x.com")
    assert not (tmp_path / "nope.vscdb").exists()


def test_inject_without_table_fails(tmp_path):
    path = tmp_path / "empty.vscdb"
    path.write_bytes(b"")
    with pytest.raises(InjectionFailed, match="Database update failed"):
        StateDatabase(path).inject_credentials("a", "r", 1, "a@x.com")


@pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
def test_inject_makes_file_writable(state_db):
    os.chmod(state_db, 0o444)
    StateDatabase(state_db).inject_credentials("a", "r", 1, "a@x.com")
    assert state_db.stat().st_mode & 0o777 == 0o644


def test_get_and_exists(state_db):
    db = StateDatabase(state_db)
    assert db.get("workbench.colorTheme") == "Default Dark"
    assert db.exists("workbench.colorTheme") is True
    assert db.get("missing") is None


def test_like_prefix_escapes_wildcards():
    assert like_prefix("a_b%c") == "a\\_b\\%c.%"


def test_clear_lock_files(state_db):
    for p in sidecar_paths(state_db):
        p.write_bytes(b"lock")
    assert clear_lock_files(state_db) == 2
    assert not any(p.exists() for p in sidecar_paths(state_db))
    assert clear_lock_files(state_db) == 0
