"""SQLite-backed store for API keys."""

from __future__ import annotations

import os
import sqlite3
import sys
from collections.abc import Sequence
from typing import Any

from .debug_log import verbose_logging_enabled
from .records import UNSET, ApiKeyRecord, NewApiKeyRecord, UpdateApiKeyRecord
from .sqlite import SqliteConnection, StoreError, select_ids, update_single_id

_RECORD_COLUMNS = (
    "id, key_hash, key_lookup_hash, key_prefix, service_name, access_level, enabled, "
    "expires_at, last_used_at, last_used_ip, last_failed_at, failed_attempts, note, "
    "created_at, updated_at"
)

_DISABLE_EXPIRED_SQL = """
UPDATE api_keys
SET enabled = 0, updated_at = CURRENT_TIMESTAMP
WHERE enabled = 1
  AND expires_at IS NOT NULL
  AND expires_at <= CURRENT_TIMESTAMP;
"""

_FIND_BY_LOOKUP_HASH_SQL = f"""
SELECT {_RECORD_COLUMNS}
FROM api_keys
WHERE key_lookup_hash = ?1
  AND enabled = 1
  AND (expires_at IS NULL OR expires_at > CURRENT_TIMESTAMP)
  AND (service_name = ?2 OR service_name IS NULL)
ORDER BY CASE WHEN service_name = ?2 THEN 0 ELSE 1 END, id ASC
LIMIT 1;
"""

_FIND_BY_PREFIX_SQL = f"""
SELECT {_RECORD_COLUMNS}
FROM api_keys
WHERE key_prefix = ?1
  AND enabled = 1
  AND (expires_at IS NULL OR expires_at > CURRENT_TIMESTAMP)
  AND (service_name = ?2 OR service_name IS NULL)
ORDER BY CASE WHEN service_name = ?2 THEN 0 ELSE 1 END, id ASC
LIMIT 1;
"""

_LIST_SQL = f"""
SELECT {_RECORD_COLUMNS}
FROM api_keys
ORDER BY key_prefix ASC, service_name ASC, id ASC;
"""

_GET_SQL = f"""
SELECT {_RECORD_COLUMNS}
FROM api_keys
WHERE id = ?1
LIMIT 1;
"""

_INSERT_SQL = """
INSERT INTO api_keys (
    key_hash,
    key_lookup_hash,
    key_prefix,
    service_name,
    access_level,
    expires_at,
    note
) VALUES (?1, ?2, ?3, ?4, ?5, ?6, ?7);
"""

_DISABLE_SQL = (
    "UPDATE api_keys SET enabled = 0, updated_at = CURRENT_TIMESTAMP WHERE id = ?1;"
)

_NOTE_SUCCESS_SQL = """
UPDATE api_keys
SET last_used_at = CURRENT_TIMESTAMP,
    last_used_ip = ?2,
    failed_attempts = 0,
    updated_at = CURRENT_TIMESTAMP
WHERE id = ?1;
"""

_NOTE_FAILURE_SQL = """
UPDATE api_keys
SET last_failed_at = CURRENT_TIMESTAMP,
    last_used_ip = ?2,
    failed_attempts = failed_attempts + 1,
    updated_at = CURRENT_TIMESTAMP
WHERE id = ?1;
"""

_DELETE_SQL = "DELETE FROM api_keys WHERE id = ?1;"

_SELECT_IDS_SQL = "SELECT id FROM api_keys ORDER BY id ASC;"
_UPDATE_ID_SQL = "UPDATE api_keys SET id = ?1 WHERE id = ?2;"


def _debug(message: str) -> None:
    if verbose_logging_enabled():
        print(f"[auth_store] {message}", file=sys.stderr, flush=True)


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _optional_text(value: Any) -> str | None:
    return None if value is None else str(value)


def _read_api_key(row: Sequence[Any]) -> ApiKeyRecord:
    return ApiKeyRecord(
        id=int(row[0]),
        key_hash=_text(row[1]),
        key_lookup_hash=_text(row[2]),
        key_prefix=_optional_text(row[3]),
        service_name=_optional_text(row[4]),
        access_level=int(row[5]),
        enabled=bool(row[6]),
        expires_at=_optional_text(row[7]),
        last_used_at=_optional_text(row[8]),
        last_used_ip=_optional_text(row[9]),
        last_failed_at=_optional_text(row[10]),
        failed_attempts=int(row[11]),
        note=_optional_text(row[12]),
        created_at=_text(row[13]),
        updated_at=_text(row[14]),
    )


def _run(
    connection: SqliteConnection, sql: str, params: Sequence[Any], message: str
) -> sqlite3.Cursor:
    try:
        return connection.db.execute(sql, tuple(params))
    except sqlite3.Error as exc:
        raise StoreError(f"{message}: {exc}") from exc


def _fetch_keys(
    connection: SqliteConnection, sql: str, params: Sequence[Any], message: str
) -> list[ApiKeyRecord]:
    try:
        rows = connection.db.execute(sql, tuple(params)).fetchall()
    except sqlite3.Error as exc:
        raise StoreError(f"{message}: {exc}") from exc
    return [_read_api_key(row) for row in rows]


def _first_key(
    connection: SqliteConnection, sql: str, params: Sequence[Any]
) -> ApiKeyRecord | None:
    keys = _fetch_keys(connection, sql, params, "failed to fetch api key")
    return keys[0] if keys else None


def _disable_expired(connection: SqliteConnection) -> None:
    _run(connection, _DISABLE_EXPIRED_SQL, (), "failed to disable expired api keys")


class ApiKeyStore:
    """Reads and edits the ``api_keys`` table.

    Every lookup first disables keys whose expiry time has passed.
    """

    def __init__(self, database_path: str | os.PathLike[str]) -> None:
        self.database_path = database_path

    def find_api_key(self, key_lookup_hash: str, service_name: str) -> ApiKeyRecord | None:
        """Return the usable key with this lookup hash for the service.

        A key bound to the service wins over one bound to no service.
        """
        _debug(f"find_api_key begin service={service_name}")
        with SqliteConnection(self.database_path) as connection:
            _disable_expired(connection)
            result = _first_key(
                connection, _FIND_BY_LOOKUP_HASH_SQL, (key_lookup_hash, service_name)
            )
        _debug("find_api_key matched" if result is not None else "find_api_key no match")
        return result

    def find_api_key_by_prefix(self, key_prefix: str, service_name: str) -> ApiKeyRecord | None:
        """Return the usable key with this prefix for the service."""
        with SqliteConnection(self.database_path) as connection:
            _disable_expired(connection)
            return _first_key(connection, _FIND_BY_PREFIX_SQL, (key_prefix, service_name))

    def list_api_keys(self) -> list[ApiKeyRecord]:
        """Return every key ordered by prefix, service and id."""
        with SqliteConnection(self.database_path) as connection:
            _disable_expired(connection)
            return _fetch_keys(connection, _LIST_SQL, (), "failed to list api keys")

    def get_api_key(self, api_key_id: int) -> ApiKeyRecord | None:
        """Return the key with this id, enabled or not."""
        with SqliteConnection(self.database_path) as connection:
            _disable_expired(connection)
            return _first_key(connection, _GET_SQL, (api_key_id,))

    def insert_api_key(self, new_api_key: NewApiKeyRecord) -> int:
        """Insert a key and return its id."""
        params = (
            new_api_key.key_hash,
            new_api_key.key_lookup_hash,
            new_api_key.key_prefix,
            new_api_key.service_name,
            int(new_api_key.access_level),
            new_api_key.expires_at,
            new_api_key.note,
        )
        with SqliteConnection(self.database_path) as connection:
            cursor = _run(connection, _INSERT_SQL, params, "failed to insert api key")
            return int(cursor.lastrowid)

    def update_api_key(self, api_key_id: int, update: UpdateApiKeyRecord) -> None:
        """Apply the fields set in ``update`` to the key."""
        changes: list[tuple[str, Any]] = []
        if update.service_name is not UNSET:
            changes.append(("service_name", update.service_name))
        if update.access_level is not None:
            changes.append(("access_level", int(update.access_level)))
        if update.expires_at is not UNSET:
            changes.append(("expires_at", update.expires_at))
        if update.note is not UNSET:
            changes.append(("note", update.note))
        if not changes:
            raise StoreError("update_api_key requires at least one changed field")

        assignments = ", ".join(
            f"{column} = ?{position}" for position, (column, _) in enumerate(changes, start=1)
        )
        sql = (
            f"UPDATE api_keys SET {assignments}, updated_at = CURRENT_TIMESTAMP "
            f"WHERE id = ?{len(changes) + 1};"
        )
        params = [value for _, value in changes] + [api_key_id]
        with SqliteConnection(self.database_path) as connection:
            _run(connection, sql, params, "failed to update api key")

    def disable_api_key(self, api_key_id: int) -> None:
        """Mark the key as disabled."""
        with SqliteConnection(self.database_path) as connection:
            _run(connection, _DISABLE_SQL, (api_key_id,), "failed to disable api key")

    def disable_expired_api_keys(self) -> None:
        """Disable every enabled key whose expiry time has passed."""
        with SqliteConnection(self.database_path) as connection:
            _disable_expired(connection)

    def note_api_key_success(self, api_key_id: int, client_ip: str) -> None:
        """Record a successful use and reset the failure counter."""
        with SqliteConnection(self.database_path) as connection:
            _run(
                connection,
                _NOTE_SUCCESS_SQL,
                (api_key_id, client_ip),
                "failed to record api key success",
            )

    def note_api_key_failure(self, api_key_id: int, client_ip: str) -> None:
        """Record a failed use and increment the failure counter."""
        with SqliteConnection(self.database_path) as connection:
            _run(
                connection,
                _NOTE_FAILURE_SQL,
                (api_key_id, client_ip),
                "failed to record api key failure",
            )

    def delete_api_key(self, api_key_id: int) -> None:
        """Delete the key."""
        with SqliteConnection(self.database_path) as connection:
            _run(connection, _DELETE_SQL, (api_key_id,), "failed to delete api key")

    def compact_api_key_ids(self) -> None:
        """Renumber keys to 1..n, keeping their order."""
        with SqliteConnection(self.database_path) as connection:
            connection.execute("BEGIN IMMEDIATE;")
            try:
                ids = select_ids(connection, _SELECT_IDS_SQL, "failed to load api key ids")
                for position, old_id in enumerate(ids, start=1):
                    update_single_id(
                        connection, _UPDATE_ID_SQL, old_id, -position, "failed to move api key id"
                    )
                for position in range(1, len(ids) + 1):
                    update_single_id(
                        connection,
                        _UPDATE_ID_SQL,
                        -position,
                        position,
                        "failed to restore api key id",
                    )
                connection.execute("COMMIT;")
            except BaseException:
                try:
                    connection.db.execute("ROLLBACK;")
                except sqlite3.Error:
                    pass
                raise