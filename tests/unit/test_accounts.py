"""Unit tests for the JSON-file account store.

Covers insertion order, the single-active invariant, merge-by-email for
OAuth results and imports, and the on-disk format.
"""

import json
import os
import threading

import pytest

from agswitch.errors import AccountNotFound, DuplicateAccount, NoValidAccounts
from agswitch.web.accounts import AccountStore, local_part
from agswitch.web.oauth import TokenData, UserInfo


class _Clock:
    """Deterministic millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def store(tmp_path, clock):
    return AccountStore(tmp_path / "data" / "accounts.json", clock=clock)


def _active(store):
    return [a.email for a in store.load() if a.is_active]


def test_load_without_file_is_empty(store):
    assert store.load() == []
    assert store.get_active() is None


def test_first_account_becomes_active(store):
    first = store.add("a@x.com", "rt-a")
    second = store.add("b@x.com", "rt-b")
    assert first.is_active is True
    assert second.is_active is False
    assert [a.email for a in store.load()] == ["a@x.com", "b@x.com"]
    assert _active(store) == ["a@x.com"]


def test_add_defaults_name_and_applies_token_data(store, clock):
    account = store.add("alice@x.com", "rt", token_data=TokenData(
        access_token="at", refresh_token="rt", expires_in=3600
    ))
    assert account.name == "alice"
    assert account.access_token == "at"
    assert account.expires_at == clock.now + 3_600_000
    assert account.added_at == clock.now


def test_add_duplicate_email(store):
    store.add("a@x.com", "rt")
    with pytest.raises(DuplicateAccount):
        store.add("a@x.com", "other")
    assert len(store.load()) == 1


def test_delete(store):
    a = store.add("a@x.com", "rt")
    store.delete(a.id)
    assert store.load() == []


def test_delete_unknown(store):
    store.add("a@x.com", "rt")
    with pytest.raises(AccountNotFound):
        store.delete("missing")
    assert len(store.load()) == 1


def test_set_active_is_exclusive(store, clock):
    a = store.add("a@x.com", "rt")
    b = store.add("b@x.com", "rt")
    c = store.add("c@x.com", "rt")
    clock.now += 5_000

    result = store.set_active(c.id)
    assert result.id == c.id
    accounts = {acc.id: acc for acc in store.load()}
    assert [acc.id for acc in accounts.values() if acc.is_active] == [c.id]
    assert accounts[c.id].last_switched == clock.now
    assert accounts[a.id].last_switched is None
    assert accounts[b.id].is_active is False


def test_set_active_unknown_leaves_state(store):
    store.add("a@x.com", "rt")
    with pytest.raises(AccountNotFound):
        store.set_active("missing")
    assert _active(store) == ["a@x.com"]


def test_update_token_and_mark_checked(store, clock):
    a = store.add("a@x.com", "rt")
    store.update_token(a.id, "fresh", 60)
    store.mark_checked(a.id)
    stored = store.get(a.id)
    assert stored.access_token == "fresh"
    assert stored.expires_at == clock.now + 60_000
    assert stored.last_checked == clock.now


def test_update_token_unknown_id_is_noop(store):
    store.add("a@x.com", "rt")
    before = store.load()
    store.update_token("missing", "fresh", 60)
    store.mark_checked("missing")
    assert store.load() == before


def test_upsert_oauth_merges_by_email(store, clock):
    original = store.add("a@x.com", "old-rt", name="Old")
    clock.now += 1_000
    merged = store.upsert_oauth(
        UserInfo(email="a@x.com", name=None, picture="http://pic"),
        TokenData(access_token="at", refresh_token="new-rt", expires_in=100),
    )
    assert merged.id == original.id
    assert merged.added_at == original.added_at
    assert merged.refresh_token == "new-rt"
    assert merged.name == "a"  # falls back to the local part
    assert merged.picture == "http://pic"
    assert len(store.load()) == 1


def test_upsert_oauth_appends_inactive_when_not_empty(store):
    store.add("a@x.com", "rt")
    new = store.upsert_oauth(
        UserInfo(email="b@x.com", name="Bee"),
        TokenData(access_token="at", refresh_token="rt-b"),
    )
    assert new.is_active is False
    assert new.name == "Bee"
    assert [a.email for a in store.load()] == ["a@x.com", "b@x.com"]


def test_file_is_pretty_json_array(store):
    store.add("a@x.com", "rt")
    text = store.path.read_text(encoding="utf-8")
    data = json.loads(text)
    assert isinstance(data, list)
    assert data[0]["email"] == "a@x.com"
    assert "\n  " in text
    assert not any(p.name.startswith(".accounts_tmp_") for p in store.path.parent.iterdir())


@pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
def test_file_is_owner_only(store):
    store.add("a@x.com", "rt")
    assert store.path.stat().st_mode & 0o777 == 0o600


def test_export_matches_file(store):
    store.add("a@x.com", "rt")
    assert json.loads(store.export_json()) == json.loads(store.path.read_text())


def test_corrupt_file_propagates(store):
    store.path.parent.mkdir(parents=True)
    store.path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        store.load()


def test_concurrent_adds_are_serialized(store):
    errors = []

    def _add(i):
        try:
            store.add(f"user{i}@x.com", "rt")
        except Exception as e:  # pragma: no cover - reported below
            errors.append(e)

    threads = [threading.Thread(target=_add, args=(i,)) for i in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    accounts = store.load()
    assert len(accounts) == 10
    assert sum(a.is_active for a in accounts) == 1


# ------------------------------------------------------------------
# import
# ------------------------------------------------------------------


def test_import_empty_email_is_rejected(store):
    with pytest.raises(NoValidAccounts) as exc_info:
        store.import_accounts([{"email": "", "refresh_token": "x"}])
    assert exc_info.value.skipped == 1
    assert store.load() == []


def test_import_same_email_twice_updates(store, clock):
    record = {"email": "a@b.com", "refresh_token": "r"}
    assert store.import_accounts([record]) == (1, 0)
    added_at = store.load()[0].added_at
    clock.now += 10_000

    assert store.import_accounts([dict(record, refresh_token="r2")]) == (0, 1)
    accounts = store.load()
    assert len(accounts) == 1
    assert accounts[0].added_at == added_at
    assert accounts[0].refresh_token == "r2"


def test_import_skips_invalid_but_commits_valid(store):
    added, updated = store.import_accounts([
        {"email": "no-at-sign", "refresh_token": "r"},
        {"email": "a@b.com", "refresh_token": ""},
        {"email": "ok@b.com", "refresh_token": "r", "name": ""},
        {"email": None, "refresh_token": None},
    ])
    assert (added, updated) == (1, 0)
    only = store.load()[0]
    assert only.email == "ok@b.com"
    assert only.name == "ok"


def test_import_regenerates_colliding_or_missing_ids(store):
    existing = store.add("a@x.com", "rt")
    store.import_accounts([
        {"id": existing.id, "email": "b@x.com", "refresh_token": "r"},
        {"email": "c@x.com", "refresh_token": "r"},
        {"id": "keep-me", "email": "d@x.com", "refresh_token": "r"},
    ])
    ids = [a.id for a in store.load()]
    assert len(set(ids)) == 4
    assert ids[0] == existing.id
    assert ids[1] != existing.id
    assert ids[2]
    assert ids[3] == "keep-me"


def test_import_keeps_single_active(store):
    a = store.add("a@x.com", "rt")
    store.import_accounts([
        {"email": "b@x.com", "refresh_token": "r", "is_active": True},
        {"email": "a@x.com", "refresh_token": "r2", "is_active": False},
    ])
    accounts = store.load()
    assert [x.id for x in accounts if x.is_active] == [a.id]


def test_import_into_empty_store_activates_first(store):
    store.import_accounts([
        {"email": "b@x.com", "refresh_token": "r"},
        {"email": "c@x.com", "refresh_token": "r"},
    ])
    assert _active(store) == ["b@x.com"]


def test_import_round_trips_export(tmp_path, store):
    store.add("a@x.com", "rt-a", name="Alice")
    store.add("b@x.com", "rt-b")
    other = AccountStore(tmp_path / "other.json")
    assert other.import_accounts(json.loads(store.export_json())) == (2, 0)
    assert [(a.id, a.name, a.is_active) for a in other.load()] == [
        (a.id, a.name, a.is_active) for a in store.load()
    ]


def test_local_part():
    assert local_part("bob@example.com") == "bob"
    assert local_part("@example.com") == "Unknown"
