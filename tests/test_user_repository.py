import sqlite3

import pytest

from roche_limit.sqlite import StoreError
from roche_limit.user_repository import UserRepository

SCHEMA = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY,
    username TEXT NOT NULL UNIQUE
);
CREATE TABLE user_credentials (
    user_id INTEGER PRIMARY KEY REFERENCES users(id),
    password_hash TEXT NOT NULL
);
CREATE TABLE user_service_levels (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id),
    service_name TEXT NOT NULL,
    access_level INTEGER NOT NULL
);
CREATE TABLE user_sessions (
    id INTEGER PRIMARY KEY,
    session_token_hash TEXT NOT NULL UNIQUE,
    user_id INTEGER NOT NULL REFERENCES users(id),
    absolute_expires_at TEXT NOT NULL,
    idle_expires_at TEXT NOT NULL,
    last_seen_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    last_rotated_at TEXT NOT NULL,
    revoked_at TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE login_failures (
    id INTEGER PRIMARY KEY,
    client_ip TEXT NOT NULL,
    username TEXT NOT NULL,
    failure_count INTEGER NOT NULL,
    last_failed_at TEXT NOT NULL,
    locked_until TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (client_ip, username)
);
CREATE TABLE csrf_tokens (
    id INTEGER PRIMARY KEY,
    purpose TEXT NOT NULL,
    token_hash TEXT NOT NULL UNIQUE,
    client_ip TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""

FUTURE = "2999-01-01 00:00:00"
PAST = "2000-01-01 00:00:00"


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "auth.sqlite3"
    with sqlite3.connect(path) as db:
        db.executescript(SCHEMA)
        db.execute("INSERT INTO users (id, username) VALUES (1, 'alice'), (2, 'bob');")
    return path


@pytest.fixture
def repo(db_path):
    return UserRepository(db_path)


def _insert(repo, user_id, token_hash):
    return repo.insert_user_session(user_id, token_hash, FUTURE, FUTURE, FUTURE)


def test_insert_and_find_session(repo):
    session_id = _insert(repo, 1, "hash-a")
    found = repo.find_active_user_session("hash-a")
    assert found.id == session_id
    assert found.user_id == 1
    assert found.absolute_expires_at == FUTURE
    assert found.revoked_at is None


def test_find_unknown_session_is_none(repo):
    assert repo.find_active_user_session("missing") is None


def test_revoke_session_by_hash(repo):
    _insert(repo, 1, "hash-a")
    repo.revoke_user_session("hash-a")
    assert repo.find_active_user_session("hash-a") is None
    sessions = repo.list_user_sessions(1)
    assert len(sessions) == 1
    assert sessions[0].revoked_at is not None and sessions[0].revoked_at != ""


def test_revoke_session_by_id(repo):
    session_id = _insert(repo, 1, "hash-a")
    _insert(repo, 1, "hash-b")
    repo.revoke_user_session_by_id(session_id)
    assert repo.find_active_user_session("hash-a") is None
    assert repo.find_active_user_session("hash-b").user_id == 1


def test_revoke_all_sessions_only_touches_that_user(repo):
    _insert(repo, 1, "hash-a")
    _insert(repo, 1, "hash-b")
    _insert(repo, 2, "hash-c")
    repo.revoke_all_user_sessions(1)
    assert repo.find_active_user_session("hash-a") is None
    assert repo.find_active_user_session("hash-b") is None
    assert repo.find_active_user_session("hash-c").user_id == 2


def test_update_session_activity(repo):
    session_id = _insert(repo, 1, "hash-a")
    repo.update_user_session_activity(session_id, PAST)
    assert repo.find_active_user_session("hash-a").idle_expires_at == PAST


def test_list_sessions_filters_and_orders(repo):
    first = _insert(repo, 1, "hash-a")
    second = _insert(repo, 2, "hash-b")
    third = _insert(repo, 1, "hash-c")
    assert [s.id for s in repo.list_user_sessions()] == [first, second, third]
    assert [s.id for s in repo.list_user_sessions(None)] == [first, second, third]
    assert [s.id for s in repo.list_user_sessions(1)] == [first, third]


def test_login_failure_upsert_and_clear(repo):
    assert repo.find_login_failure("10.0.0.1", "alice") is None
    repo.upsert_login_failure("10.0.0.1", "alice", 1, None)
    record = repo.find_login_failure("10.0.0.1", "alice")
    assert record.failure_count == 1
    assert record.locked_until is None

    repo.upsert_login_failure("10.0.0.1", "alice", 5, FUTURE)
    updated = repo.find_login_failure("10.0.0.1", "alice")
    assert updated.id == record.id
    assert updated.failure_count == 5
    assert updated.locked_until == FUTURE

    assert repo.find_login_failure("10.0.0.2", "alice") is None
    repo.clear_login_failure("10.0.0.1", "alice")
    assert repo.find_login_failure("10.0.0.1", "alice") is None


def test_csrf_token_validity(repo):
    repo.insert_csrf_token("login", "hash-t", "10.0.0.1", FUTURE)
    assert repo.has_valid_csrf_token("login", "hash-t", "10.0.0.1") is True
    assert repo.has_valid_csrf_token("logout", "hash-t", "10.0.0.1") is False
    assert repo.has_valid_csrf_token("login", "hash-t", "10.0.0.2") is False
    assert repo.has_valid_csrf_token("login", "other", "10.0.0.1") is False


def test_expired_csrf_token_is_invalid_and_cleaned_up(repo, db_path):
    repo.insert_csrf_token("login", "old", "10.0.0.1", PAST)
    assert repo.has_valid_csrf_token("login", "old", "10.0.0.1") is False
    repo.insert_csrf_token("login", "new", "10.0.0.1", FUTURE)
    with sqlite3.connect(db_path) as db:
        hashes = [row[0] for row in db.execute("SELECT token_hash FROM csrf_tokens")]
    assert hashes == ["new"]


def test_csrf_token_reinsert_overwrites(repo):
    repo.insert_csrf_token("login", "hash-t", "10.0.0.1", FUTURE)
    repo.insert_csrf_token("logout", "hash-t", "10.0.0.2", FUTURE)
    assert repo.has_valid_csrf_token("login", "hash-t", "10.0.0.1") is False
    assert repo.has_valid_csrf_token("logout", "hash-t", "10.0.0.2") is True


def test_compact_user_ids_renumbers_and_keeps_references(tmp_path):
    path = tmp_path / "compact.sqlite3"
    with sqlite3.connect(path) as db:
        db.executescript(SCHEMA)
        db.execute("INSERT INTO users (id, username) VALUES (3, 'alice'), (7, 'bob');")
        db.execute("INSERT INTO user_credentials VALUES (3, 'hash-x'), (7, 'hash-y');")
        db.execute(
            "INSERT INTO user_service_levels (id, user_id, service_name, access_level) "
            "VALUES (5, 7, 'svc', 2), (9, 3, 'svc', 1);"
        )
    repo = UserRepository(path)
    repo.insert_user_session(7, "hash-b", FUTURE, FUTURE, FUTURE)
    with sqlite3.connect(path) as db:
        db.execute("UPDATE user_sessions SET id = 40;")

    repo.compact_user_ids()

    with sqlite3.connect(path) as db:
        users = db.execute("SELECT id, username FROM users ORDER BY id").fetchall()
        creds = db.execute(
            "SELECT user_id, password_hash FROM user_credentials ORDER BY user_id"
        ).fetchall()
        levels = db.execute(
            "SELECT id, user_id, access_level FROM user_service_levels ORDER BY id"
        ).fetchall()
        fk = db.execute("PRAGMA foreign_key_check").fetchall()
    assert users == [(1, "alice"), (2, "bob")]
    assert creds == [(1, "hash-x"), (2, "hash-y")]
    assert levels == [(1, 2, 2), (2, 1, 1)]
    assert fk == []
    session = repo.find_active_user_session("hash-b")
    assert session.id == 1
    assert session.user_id == 2


def test_missing_table_raises_store_error(tmp_path):
    repo = UserRepository(tmp_path / "empty.sqlite3")
    with pytest.raises(StoreError):
        repo.has_valid_csrf_token("login", "hash-t", "10.0.0.1")
    with pytest.raises(StoreError):
        repo.find_login_failure("10.0.0.1", "alice")
    with pytest.raises(StoreError):
        repo.compact_user_ids()