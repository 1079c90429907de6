import sqlite3

import pytest

from roche_limit.api_keys import ApiKeyStore
from roche_limit.hash_util import sha256_hex
from roche_limit.records import NewApiKeyRecord, UpdateApiKeyRecord
from roche_limit.sqlite import StoreError

SCHEMA = """
CREATE TABLE api_keys (
    id INTEGER PRIMARY KEY,
    key_hash TEXT NOT NULL,
    key_lookup_hash TEXT NOT NULL,
    key_prefix TEXT,
    service_name TEXT,
    access_level INTEGER NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    expires_at TEXT,
    last_used_at TEXT,
    last_used_ip TEXT,
    last_failed_at TEXT,
    failed_attempts INTEGER NOT NULL DEFAULT 0,
    note TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""

PAST = "2000-01-01 00:00:00"
FUTURE = "2999-01-01 00:00:00"


@pytest.fixture
def store(tmp_path):
    path = tmp_path / "auth.sqlite3"
    db = sqlite3.connect(path)
    db.executescript(SCHEMA)
    db.close()
    return ApiKeyStore(path)


def new_key(label, **kwargs):
    kwargs.setdefault("access_level", 1)
    return NewApiKeyRecord(
        key_hash=sha256_hex("hash-" + label),
        key_lookup_hash=sha256_hex(label),
        **kwargs,
    )


def test_insert_and_get_round_trip(store):
    key_id = store.insert_api_key(
        new_key("alpha", key_prefix="rl_a", service_name="svc", access_level=3, note="n")
    )
    record = store.get_api_key(key_id)
    assert record.id == key_id
    assert record.key_hash == sha256_hex("hash-alpha")
    assert record.key_lookup_hash == sha256_hex("alpha")
    assert record.key_prefix == "rl_a"
    assert record.service_name == "svc"
    assert record.access_level == 3
    assert record.enabled is True
    assert record.failed_attempts == 0
    assert record.expires_at is None
    assert record.note == "n"


def test_get_missing_returns_none(store):
    assert store.get_api_key(42) is None


def test_find_prefers_service_specific_key(store):
    generic = store.insert_api_key(new_key("alpha"))
    specific = store.insert_api_key(new_key("alpha", service_name="svc"))
    assert store.find_api_key(sha256_hex("alpha"), "svc").id == specific
    assert store.find_api_key(sha256_hex("alpha"), "other").id == generic


def test_find_ignores_keys_of_other_services(store):
    store.insert_api_key(new_key("alpha", service_name="svc"))
    assert store.find_api_key(sha256_hex("alpha"), "other") is None
    assert store.find_api_key(sha256_hex("beta"), "svc") is None


def test_expired_key_is_disabled_on_lookup(store):
    key_id = store.insert_api_key(new_key("alpha", expires_at=PAST))
    live_id = store.insert_api_key(new_key("beta", expires_at=FUTURE))
    assert store.find_api_key(sha256_hex("alpha"), "svc") is None
    assert store.get_api_key(key_id).enabled is False
    assert store.find_api_key(sha256_hex("beta"), "svc").id == live_id


def test_disable_expired_api_keys(store):
    key_id = store.insert_api_key(new_key("alpha", expires_at=PAST))
    db = sqlite3.connect(store.database_path)
    before = db.execute("SELECT enabled FROM api_keys WHERE id = ?", (key_id,)).fetchone()[0]
    db.close()
    assert before == 1
    store.disable_expired_api_keys()
    db = sqlite3.connect(store.database_path)
    after = db.execute("SELECT enabled FROM api_keys WHERE id = ?", (key_id,)).fetchone()[0]
    db.close()
    assert after == 0


def test_find_by_prefix(store):
    key_id = store.insert_api_key(new_key("alpha", key_prefix="rl_a"))
    store.insert_api_key(new_key("beta", key_prefix="rl_b", service_name="svc"))
    assert store.find_api_key_by_prefix("rl_a", "svc").id == key_id
    assert store.find_api_key_by_prefix("rl_b", "other") is None


def test_list_orders_by_prefix_service_id(store):
    store.insert_api_key(new_key("c", key_prefix="b", service_name="x"))
    store.insert_api_key(new_key("a", key_prefix="a", service_name="y"))
    store.insert_api_key(new_key("b", key_prefix="a", service_name="x"))
    listed = [(k.key_prefix, k.service_name) for k in store.list_api_keys()]
    assert listed == [("a", "x"), ("a", "y"), ("b", "x")]


def test_update_without_changes_raises(store):
    key_id = store.insert_api_key(new_key("alpha"))
    with pytest.raises(StoreError):
        store.update_api_key(key_id, UpdateApiKeyRecord())


def test_update_changes_only_given_fields(store):
    key_id = store.insert_api_key(new_key("alpha", service_name="svc", note="keep"))
    store.update_api_key(key_id, UpdateApiKeyRecord(service_name=None, access_level=7))
    record = store.get_api_key(key_id)
    assert record.service_name is None
    assert record.access_level == 7
    assert record.note == "keep"
    store.update_api_key(key_id, UpdateApiKeyRecord(note=None, expires_at=FUTURE))
    record = store.get_api_key(key_id)
    assert record.note is None
    assert record.expires_at == FUTURE


def test_disable_api_key(store):
    key_id = store.insert_api_key(new_key("alpha"))
    store.disable_api_key(key_id)
    assert store.find_api_key(sha256_hex("alpha"), "svc") is None
    assert store.get_api_key(key_id).enabled is False


def test_failure_and_success_tracking(store):
    key_id = store.insert_api_key(new_key("alpha"))
    store.note_api_key_failure(key_id, "10.0.0.1")
    store.note_api_key_failure(key_id, "10.0.0.2")
    record = store.get_api_key(key_id)
    assert record.failed_attempts == 2
    assert record.last_used_ip == "10.0.0.2"
    assert record.last_failed_at is not None and record.last_used_at is None
    store.note_api_key_success(key_id, "10.0.0.3")
    record = store.get_api_key(key_id)
    assert record.failed_attempts == 0
    assert record.last_used_ip == "10.0.0.3"
    assert record.last_used_at is not None


def test_delete_api_key(store):
    key_id = store.insert_api_key(new_key("alpha"))
    store.delete_api_key(key_id)
    assert store.get_api_key(key_id) is None
    assert store.list_api_keys() == []


def test_compact_renumbers_in_order(store):
    ids = [store.insert_api_key(new_key(label)) for label in ("a", "b", "c")]
    store.delete_api_key(ids[0])
    store.compact_api_key_ids()
    records = sorted(store.list_api_keys(), key=lambda k: k.id)
    assert [k.id for k in records] == [1, 2]
    assert [k.key_lookup_hash for k in records] == [sha256_hex("b"), sha256_hex("c")]


def test_missing_table_raises_store_error(tmp_path):
    store = ApiKeyStore(tmp_path / "empty.sqlite3")
    with pytest.raises(StoreError):
        store.find_api_key(sha256_hex("alpha"), "svc")