"""SQLite connection wrapper and small helpers shared by the stores."""

from __future__ import annotations

import os
import sqlite3
from collections.abc import Iterator
from types import TracebackType

BUSY_TIMEOUT_SECONDS = 5.0


class StoreError(RuntimeError):
    """Raised when a storage operation fails."""


def _split_statements(sql: str) -> Iterator[str]:
    """Yield the individual statements of a semicolon-separated script."""
    *heads, tail = sql.split(";")
    buffer = ""
    for part in heads:
        buffer += part + ";"
        if sqlite3.complete_statement(buffer):
            if buffer.strip(" \t\r\n;"):
                yield buffer
            buffer = ""
    buffer += tail
    if buffer.strip():
        yield buffer


class SqliteConnection:
    """An open SQLite database configured for the auth stores.

    The connection runs in autocommit mode, so transactions are controlled
    explicitly with ``BEGIN``/``COMMIT``/``ROLLBACK`` statements. The raw
    :class:`sqlite3.Connection` is available as :attr:`db`.
    """

    def __init__(self, database_path: str | os.PathLike[str]) -> None:
        self.database_path = database_path
        try:
            self.db = sqlite3.connect(
                os.fspath(database_path),
                timeout=BUSY_TIMEOUT_SECONDS,
                isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise StoreError(f"failed to open sqlite database: {exc}") from exc
        try:
            self.execute("PRAGMA journal_mode = WAL;")
            self.execute("PRAGMA synchronous = NORMAL;")
            self.execute("PRAGMA foreign_keys = ON;")
        except StoreError:
            self.close()
            raise

    def execute(self, sql: str) -> None:
        """Run one or more SQL statements, discarding any rows."""
        try:
            for statement in _split_statements(sql):
                self.db.execute(statement)
        except sqlite3.Error as exc:
            raise StoreError(f"failed to execute sqlite statement: {exc}") from exc

    def table_exists(self, table_name: str) -> bool:
        """Return whether a table of that name exists."""
        try:
            row = self.db.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?1 LIMIT 1;",
                (table_name,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(
                f"failed to execute sqlite table existence query: {exc}"
            ) from exc
        return row is not None

    def column_exists(self, table_name: str, column_name: str) -> bool:
        """Return whether ``table_name`` has a column named ``column_name``."""
        quoted = '"' + table_name.replace('"', '""') + '"'
        try:
            rows = self.db.execute(f"PRAGMA table_info({quoted});").fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"failed to execute sqlite table info query: {exc}") from exc
        return any(row[1] == column_name for row in rows)

    def close(self) -> None:
        """Close the database; closing twice is harmless."""
        self.db.close()

    def __enter__(self) -> SqliteConnection:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


def select_ids(connection: SqliteConnection, sql: str, message: str) -> list[int]:
    """Run a query whose first column is an id and return the ids in order."""
    try:
        return [row[0] for row in connection.db.execute(sql)]
    except sqlite3.Error as exc:
        raise StoreError(message) from exc


def update_single_id(
    connection: SqliteConnection, sql: str, old_id: int, new_id: int, message: str
) -> None:
    """Run an update that takes the new id as ``?1`` and the old id as ``?2``."""
    try:
        connection.db.execute(sql, (new_id, old_id))
    except sqlite3.Error as exc:
        raise StoreError(message) from exc