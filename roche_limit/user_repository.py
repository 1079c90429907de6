"""SQLite-backed store for user sessions, login failures and CSRF tokens."""

from __future__ import annotations

import os
import sqlite3
from collections.abc import Callable, Sequence
from typing import Any, TypeVar

from .records import LoginFailureRecord, UserSessionRecord
from .sqlite import SqliteConnection, StoreError, select_ids, update_single_id

_T = TypeVar("_T")

_SESSION_COLUMNS = (
    "id, session_token_hash, user_id, absolute_expires_at, idle_expires_at, "
    "last_seen_at, last_rotated_at, revoked_at, created_at, updated_at"
)

_FIND_ACTIVE_SESSION_SQL = f"""
SELECT {_SESSION_COLUMNS}
FROM user_sessions
WHERE session_token_hash = ?1
  AND revoked_at IS NULL
LIMIT 1;
"""

_INSERT_SESSION_SQL = """
INSERT INTO user_sessions (
    session_token_hash,
    user_id,
    absolute_expires_at,
    idle_expires_at,
    last_rotated_at
)
VALUES (?1, ?2, ?3, ?4, ?5);
"""

_UPDATE_SESSION_ACTIVITY_SQL = """
UPDATE user_sessions
SET last_seen_at = CURRENT_TIMESTAMP,
    idle_expires_at = ?2,
    updated_at = CURRENT_TIMESTAMP
WHERE id = ?1;
"""

_REVOKE_SESSION_SQL = """
UPDATE user_sessions
SET revoked_at = CURRENT_TIMESTAMP,
    updated_at = CURRENT_TIMESTAMP
WHERE session_token_hash = ?1
  AND revoked_at IS NULL;
"""

_REVOKE_SESSION_BY_ID_SQL = """
UPDATE user_sessions
SET revoked_at = CURRENT_TIMESTAMP,
    updated_at = CURRENT_TIMESTAMP
WHERE id = ?1
  AND revoked_at IS NULL;
"""

_REVOKE_ALL_SESSIONS_SQL = """
UPDATE user_sessions
SET revoked_at = CURRENT_TIMESTAMP,
    updated_at = CURRENT_TIMESTAMP
WHERE user_id = ?1
  AND revoked_at IS NULL;
"""

_LIST_USER_SESSIONS_SQL = f"""
SELECT {_SESSION_COLUMNS}
FROM user_sessions
WHERE user_id = ?1
ORDER BY id ASC;
"""

_LIST_ALL_SESSIONS_SQL = f"""
SELECT {_SESSION_COLUMNS}
FROM user_sessions
ORDER BY id ASC;
"""

_FIND_LOGIN_FAILURE_SQL = """
SELECT id, client_ip, username, failure_count, last_failed_at, locked_until, created_at, updated_at
FROM login_failures
WHERE client_ip = ?1 AND username = ?2
LIMIT 1;
"""

_UPSERT_LOGIN_FAILURE_SQL = """
INSERT INTO login_failures (client_ip, username, failure_count, last_failed_at, locked_until)
VALUES (?1, ?2, ?3, CURRENT_TIMESTAMP, ?4)
ON CONFLICT(client_ip, username) DO UPDATE SET
    failure_count = excluded.failure_count,
    last_failed_at = CURRENT_TIMESTAMP,
    locked_until = excluded.locked_until,
    updated_at = CURRENT_TIMESTAMP;
"""

_CLEAR_LOGIN_FAILURE_SQL = """
DELETE FROM login_failures
WHERE client_ip = ?1 AND username = ?2;
"""

_CSRF_CLEANUP_SQL = """
DELETE FROM csrf_tokens
WHERE expires_at <= CURRENT_TIMESTAMP;
"""

_CSRF_INSERT_SQL = """
INSERT INTO csrf_tokens (purpose, token_hash, client_ip, expires_at)
VALUES (?1, ?2, ?3, ?4)
ON CONFLICT(token_hash) DO UPDATE SET
    purpose = excluded.purpose,
    client_ip = excluded.client_ip,
    expires_at = excluded.expires_at,
    updated_at = CURRENT_TIMESTAMP;
"""

_CSRF_VALID_SQL = """
SELECT 1
FROM csrf_tokens
WHERE purpose = ?1
  AND token_hash = ?2
  AND client_ip = ?3
  AND expires_at > CURRENT_TIMESTAMP
LIMIT 1;
"""

_SELECT_USER_IDS_SQL = "SELECT id FROM users ORDER BY id ASC;"
_SELECT_USER_SERVICE_LEVEL_IDS_SQL = "SELECT id FROM user_service_levels ORDER BY id ASC;"
_SELECT_USER_SESSION_IDS_SQL = "SELECT id FROM user_sessions ORDER BY id ASC;"
_UPDATE_USER_ID_SQL = "UPDATE users SET id = ?1 WHERE id = ?2;"
_UPDATE_CREDENTIAL_USER_ID_SQL = "UPDATE user_credentials SET user_id = ?1 WHERE user_id = ?2;"
_UPDATE_SERVICE_LEVEL_USER_ID_SQL = (
    "UPDATE user_service_levels SET user_id = ?1 WHERE user_id = ?2;"
)
_UPDATE_SESSION_USER_ID_SQL = "UPDATE user_sessions SET user_id = ?1 WHERE user_id = ?2;"
_UPDATE_USER_SERVICE_LEVEL_ID_SQL = "UPDATE user_service_levels SET id = ?1 WHERE id = ?2;"
_UPDATE_USER_SESSION_ID_SQL = "UPDATE user_sessions SET id = ?1 WHERE id = ?2;"


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _optional_text(value: Any) -> str | None:
    return None if value is None else str(value)


def _read_user_session(row: Sequence[Any]) -> UserSessionRecord:
    return UserSessionRecord(
        id=int(row[0]),
        session_token_hash=_text(row[1]),
        user_id=int(row[2]),
        absolute_expires_at=_text(row[3]),
        idle_expires_at=_text(row[4]),
        last_seen_at=_text(row[5]),
        last_rotated_at=_text(row[6]),
        revoked_at=_optional_text(row[7]),
        created_at=_text(row[8]),
        updated_at=_text(row[9]),
    )


def _read_login_failure(row: Sequence[Any]) -> LoginFailureRecord:
    return LoginFailureRecord(
        id=int(row[0]),
        client_ip=_text(row[1]),
        username=_text(row[2]),
        failure_count=int(row[3]),
        last_failed_at=_text(row[4]),
        locked_until=_optional_text(row[5]),
        created_at=_text(row[6]),
        updated_at=_text(row[7]),
    )


def _run(
    connection: SqliteConnection, sql: str, params: Sequence[Any], message: str
) -> sqlite3.Cursor:
    try:
        return connection.db.execute(sql, tuple(params))
    except sqlite3.Error as exc:
        raise StoreError(f"{message}: {exc}") from exc


def _fetch_all(
    connection: SqliteConnection,
    sql: str,
    params: Sequence[Any],
    reader: Callable[[Sequence[Any]], _T],
    message: str,
) -> list[_T]:
    try:
        rows = connection.db.execute(sql, tuple(params)).fetchall()
    except sqlite3.Error as exc:
        raise StoreError(f"{message}: {exc}") from exc
    return [reader(row) for row in rows]


def _renumber(
    connection: SqliteConnection,
    ids: Sequence[int],
    updates: Sequence[tuple[str, str, str]],
) -> None:
    """Renumber ``ids`` to 1..n through temporary negative ids.

    Each update is ``(sql, move_message, restore_message)``, applied in order.
    """
    for position, old_id in enumerate(ids, start=1):
        for sql, move_message, _ in updates:
            update_single_id(connection, sql, old_id, -position, move_message)
    for position in range(1, len(ids) + 1):
        for sql, _, restore_message in updates:
            update_single_id(connection, sql, -position, position, restore_message)


class UserRepository:
    """Reads and edits user sessions, login failures and CSRF tokens of one database."""

    def __init__(self, database_path: str | os.PathLike[str]) -> None:
        self.database_path = database_path

    def _find_one(
        self,
        sql: str,
        params: Sequence[Any],
        reader: Callable[[Sequence[Any]], _T],
        message: str,
    ) -> _T | None:
        with SqliteConnection(self.database_path) as connection:
            try:
                row = connection.db.execute(sql, tuple(params)).fetchone()
            except sqlite3.Error as exc:
                raise StoreError(f"{message}: {exc}") from exc
        return None if row is None else reader(row)

    def _execute(self, sql: str, params: Sequence[Any], message: str) -> sqlite3.Cursor:
        with SqliteConnection(self.database_path) as connection:
            return _run(connection, sql, params, message)

    # Sessions

    def find_active_user_session(self, session_token_hash: str) -> UserSessionRecord | None:
        """Return the unrevoked session with this token hash, if any."""
        return self._find_one(
            _FIND_ACTIVE_SESSION_SQL,
            (session_token_hash,),
            _read_user_session,
            "failed to find active user session",
        )

    def insert_user_session(
        self,
        user_id: int,
        session_token_hash: str,
        absolute_expires_at: str,
        idle_expires_at: str,
        last_rotated_at: str,
    ) -> int:
        """Create a session and return its id."""
        cursor = self._execute(
            _INSERT_SESSION_SQL,
            (session_token_hash, user_id, absolute_expires_at, idle_expires_at, last_rotated_at),
            "failed to insert user session",
        )
        return int(cursor.lastrowid)

    def update_user_session_activity(self, session_id: int, idle_expires_at: str) -> None:
        """Mark the session as seen now and move its idle expiry."""
        self._execute(
            _UPDATE_SESSION_ACTIVITY_SQL,
            (session_id, idle_expires_at),
            "failed to update user session last_seen_at",
        )

    def revoke_user_session(self, session_token_hash: str) -> None:
        """Revoke the session with this token hash if it is still active."""
        self._execute(
            _REVOKE_SESSION_SQL, (session_token_hash,), "failed to revoke user session"
        )

    def revoke_user_session_by_id(self, session_id: int) -> None:
        """Revoke the session with this id if it is still active."""
        self._execute(
            _REVOKE_SESSION_BY_ID_SQL, (session_id,), "failed to revoke user session by id"
        )

    def revoke_all_user_sessions(self, user_id: int) -> None:
        """Revoke every active session of the user."""
        self._execute(
            _REVOKE_ALL_SESSIONS_SQL, (user_id,), "failed to revoke all user sessions"
        )

    def list_user_sessions(self, user_id: int | None = None) -> list[UserSessionRecord]:
        """Return the sessions of one user, or of everyone when ``user_id`` is None."""
        if user_id is None:
            sql, params = _LIST_ALL_SESSIONS_SQL, ()
        else:
            sql, params = _LIST_USER_SESSIONS_SQL, (user_id,)
        with SqliteConnection(self.database_path) as connection:
            return _fetch_all(
                connection, sql, params, _read_user_session, "failed to list user sessions"
            )

    # Login failures

    def find_login_failure(self, client_ip: str, username: str) -> LoginFailureRecord | None:
        """Return the failure record for this address and username, if any."""
        return self._find_one(
            _FIND_LOGIN_FAILURE_SQL,
            (client_ip, username),
            _read_login_failure,
            "failed to find login failure",
        )

    def upsert_login_failure(
        self,
        client_ip: str,
        username: str,
        failure_count: int,
        locked_until: str | None = None,
    ) -> None:
        """Create or overwrite the failure record for this address and username."""
        self._execute(
            _UPSERT_LOGIN_FAILURE_SQL,
            (client_ip, username, int(failure_count), locked_until),
            "failed to upsert login failure",
        )

    def clear_login_failure(self, client_ip: str, username: str) -> None:
        """Forget the failures for this address and username."""
        self._execute(
            _CLEAR_LOGIN_FAILURE_SQL, (client_ip, username), "failed to clear login failure"
        )

    # CSRF tokens

    def insert_csrf_token(
        self, purpose: str, token_hash: str, client_ip: str, expires_at: str
    ) -> None:
        """Store a CSRF token, first dropping tokens that have expired."""
        with SqliteConnection(self.database_path) as connection:
            connection.execute(_CSRF_CLEANUP_SQL)
            _run(
                connection,
                _CSRF_INSERT_SQL,
                (purpose, token_hash, client_ip, expires_at),
                "failed to insert csrf token",
            )

    def has_valid_csrf_token(self, purpose: str, token_hash: str, client_ip: str) -> bool:
        """Return whether an unexpired token matches purpose, hash and address."""
        found = self._find_one(
            _CSRF_VALID_SQL,
            (purpose, token_hash, client_ip),
            lambda row: int(row[0]),
            "failed to validate csrf token",
        )
        return found is not None

    # Maintenance

    def compact_user_ids(self) -> None:
        """Renumber users, their service levels and sessions to 1..n, keeping order."""
        with SqliteConnection(self.database_path) as connection:
            connection.execute("PRAGMA foreign_keys = OFF;")
            try:
                connection.execute("BEGIN IMMEDIATE;")
            except StoreError:
                connection.execute("PRAGMA foreign_keys = ON;")
                raise
            try:
                user_ids = select_ids(connection, _SELECT_USER_IDS_SQL, "failed to load user ids")
                _renumber(
                    connection,
                    user_ids,
                    [
                        (
                            _UPDATE_CREDENTIAL_USER_ID_SQL,
                            "failed to move user credential references",
                            "failed to restore user credential references",
                        ),
                        (
                            _UPDATE_SERVICE_LEVEL_USER_ID_SQL,
                            "failed to move user service level references",
                            "failed to restore user service level references",
                        ),
                        (
                            _UPDATE_SESSION_USER_ID_SQL,
                            "failed to move user session references",
                            "failed to restore user session references",
                        ),
                        (
                            _UPDATE_USER_ID_SQL,
                            "failed to move user id",
                            "failed to restore user id",
                        ),
                    ],
                )
                level_ids = select_ids(
                    connection,
                    _SELECT_USER_SERVICE_LEVEL_IDS_SQL,
                    "failed to load user service level ids",
                )
                _renumber(
                    connection,
                    level_ids,
                    [
                        (
                            _UPDATE_USER_SERVICE_LEVEL_ID_SQL,
                            "failed to move user service level id",
                            "failed to restore user service level id",
                        )
                    ],
                )
                session_ids = select_ids(
                    connection, _SELECT_USER_SESSION_IDS_SQL, "failed to load user session ids"
                )
                _renumber(
                    connection,
                    session_ids,
                    [
                        (
                            _UPDATE_USER_SESSION_ID_SQL,
                            "failed to move user session id",
                            "failed to restore user session id",
                        )
                    ],
                )
                connection.execute("COMMIT;")
            except BaseException:
                try:
                    connection.db.execute("ROLLBACK;")
                except sqlite3.Error:
                    pass
                try:
                    connection.db.execute("PRAGMA foreign_keys = ON;")
                except sqlite3.Error:
                    pass
                raise
            connection.execute("PRAGMA foreign_keys = ON;")