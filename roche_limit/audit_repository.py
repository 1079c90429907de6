"""Append-only, hash-chained audit log stored in SQLite."""

from __future__ import annotations

import os
import sqlite3
import sys
from collections.abc import Iterable
from dataclasses import dataclass

from .debug_log import verbose_logging_enabled
from .hash_util import sha256_hex
from .sqlite import SqliteConnection, StoreError

AUDIT_METADATA_SCHEMA_VERSION = 1
AUDIT_SOURCE = "roche-limit"
AUTH_ALLOW_ENV = "ROCHE_LIMIT_AUDIT_AUTH_ALLOW"

_SIMPLE_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}

_INSERT_SQL = """
INSERT INTO audit_events (
    event_type,
    actor_type,
    actor_id,
    target_type,
    target_id,
    service_name,
    access_level,
    client_ip,
    request_id,
    result,
    reason,
    metadata_json,
    prev_event_hash,
    event_hash
) VALUES (?1, ?2, ?3, ?4, ?5, ?6, ?7, ?8, ?9, ?10, ?11, ?12, ?13, ?14);
"""

_DELETE_EXPIRED_SQL = """
DELETE FROM audit_events
WHERE created_at < datetime('now', ?1);
"""

_DELETE_OLDEST_SQL = """
DELETE FROM audit_events
WHERE id IN (
    SELECT id FROM audit_events ORDER BY id ASC LIMIT ?1
);
"""


@dataclass(frozen=True, kw_only=True)
class NewAuditEvent:
    """An audit event to be appended to the log."""

    event_type: str
    actor_type: str
    result: str
    actor_id: str | None = None
    target_type: str | None = None
    target_id: str | None = None
    service_name: str | None = None
    access_level: int | None = None
    client_ip: str | None = None
    request_id: str | None = None
    reason: str | None = None
    metadata_json: str | None = None


@dataclass(frozen=True)
class AuditCleanupResult:
    retention_deleted_rows: int = 0
    overflow_deleted_rows: int = 0


def _debug(message: str) -> None:
    if verbose_logging_enabled():
        print(f"[audit] {message}", file=sys.stderr, flush=True)


def escape_json_string(value: str) -> str:
    """Escape ``value`` for use inside a JSON string literal."""
    parts = []
    for ch in value:
        escaped = _SIMPLE_ESCAPES.get(ch)
        if escaped is not None:
            parts.append(escaped)
        elif ord(ch) < 0x20:
            parts.append(f"\\u{ord(ch):04x}")
        else:
            parts.append(ch)
    return "".join(parts)


def derive_event_group(event_type: str) -> str:
    """Return the part of ``event_type`` before its first underscore."""
    return event_type.split("_", 1)[0]


def _json_fields(event: NewAuditEvent) -> Iterable[str]:
    yield f'"schema_version":{AUDIT_METADATA_SCHEMA_VERSION}'
    string_fields: list[tuple[str, str | None]] = [
        ("source", AUDIT_SOURCE),
        ("event_group", derive_event_group(event.event_type)),
        ("event_type", event.event_type),
        ("actor_type", event.actor_type),
        ("actor_id", event.actor_id),
        ("target_type", event.target_type),
        ("target_id", event.target_id),
        ("service_name", event.service_name),
    ]
    for name, value in string_fields:
        if value is not None:
            yield f'"{name}":"{escape_json_string(value)}"'
    if event.access_level is not None:
        yield f'"access_level":{int(event.access_level)}'
    trailing_fields: list[tuple[str, str | None]] = [
        ("client_ip", event.client_ip),
        ("request_id", event.request_id),
        ("result", event.result),
        ("reason", event.reason),
    ]
    for name, value in trailing_fields:
        if value is not None:
            yield f'"{name}":"{escape_json_string(value)}"'
    details = event.metadata_json if event.metadata_json else "{}"
    yield f'"details":{details}'


def normalized_metadata_json(event: NewAuditEvent) -> str:
    """Build the metadata document stored with an event.

    The caller's own ``metadata_json`` is embedded verbatim under ``details``.
    """
    return "{" + ",".join(_json_fields(event)) + "}"


def canonical_hash_input(
    event: NewAuditEvent, metadata_json: str, prev_hash: str | None
) -> str:
    """Return the text whose SHA-256 becomes the event's chain hash."""
    access_level = "" if event.access_level is None else str(event.access_level)
    lines = [
        f"prev_hash={prev_hash if prev_hash is not None else 'ROOT'}",
        f"event_type={event.event_type}",
        f"actor_type={event.actor_type}",
        f"actor_id={event.actor_id or ''}",
        f"target_type={event.target_type or ''}",
        f"target_id={event.target_id or ''}",
        f"service_name={event.service_name or ''}",
        f"access_level={access_level}",
        f"client_ip={event.client_ip or ''}",
        f"request_id={event.request_id or ''}",
        f"result={event.result}",
        f"reason={event.reason or ''}",
        f"metadata_json={metadata_json}",
    ]
    return "\n".join(lines)


def _latest_event_hash(connection: SqliteConnection) -> str | None:
    try:
        row = connection.db.execute(
            "SELECT event_hash FROM audit_events ORDER BY id DESC LIMIT 1;"
        ).fetchone()
    except sqlite3.Error as exc:
        raise StoreError(f"failed to read latest audit event hash: {exc}") from exc
    if row is None or not row[0]:
        return None
    return str(row[0])


def _delete_and_count(connection: SqliteConnection, sql: str, params: tuple) -> int:
    try:
        return connection.db.execute(sql, params).rowcount
    except sqlite3.Error as exc:
        raise StoreError(f"failed to delete audit events: {exc}") from exc


def _count_rows(connection: SqliteConnection) -> int:
    try:
        row = connection.db.execute("SELECT COUNT(*) FROM audit_events;").fetchone()
    except sqlite3.Error as exc:
        raise StoreError(f"failed to read audit scalar value: {exc}") from exc
    if row is None:
        raise StoreError("failed to read audit scalar value")
    return int(row[0])


class AuditRepository:
    """Writes and prunes the ``audit_events`` table of one database."""

    def __init__(self, database_path: str | os.PathLike[str]) -> None:
        self.database_path = database_path

    def insert_event(self, event: NewAuditEvent) -> None:
        """Append ``event``, chaining its hash to the latest stored event."""
        _debug(
            f"insert begin db={os.fspath(self.database_path)} "
            f"event_type={event.event_type} actor_type={event.actor_type} "
            f"result={event.result}"
        )
        _debug("opening sqlite connection")
        with SqliteConnection(self.database_path) as connection:
            metadata_json = normalized_metadata_json(event)
            prev_hash = _latest_event_hash(connection)
            event_hash = sha256_hex(canonical_hash_input(event, metadata_json, prev_hash))
            params = (
                event.event_type,
                event.actor_type,
                event.actor_id,
                event.target_type,
                event.target_id,
                event.service_name,
                event.access_level,
                event.client_ip,
                event.request_id,
                event.result,
                event.reason,
                metadata_json,
                prev_hash,
                event_hash,
            )
            _debug("stepping insert")
            try:
                connection.db.execute(_INSERT_SQL, params)
            except sqlite3.Error as exc:
                raise StoreError(f"failed to insert audit event: {exc}") from exc
        _debug("insert done")

    def cleanup(self, retention_days: int, max_rows: int) -> AuditCleanupResult:
        """Drop events older than ``retention_days`` and trim to ``max_rows``.

        Room is left for the ``audit_cleanup`` event recorded afterwards.
        """
        with SqliteConnection(self.database_path) as connection:
            retention_deleted = _delete_and_count(
                connection, _DELETE_EXPIRED_SQL, (f"-{retention_days} days",)
            )
            current_rows = _count_rows(connection)
            overflow_deleted = max(0, current_rows + 1 - max(max_rows, 1))
            if overflow_deleted > 0:
                _delete_and_count(connection, _DELETE_OLDEST_SQL, (overflow_deleted,))

        details = (
            f'{{"retention_days":{retention_days},"max_rows":{max_rows},'
            f'"retention_deleted_rows":{retention_deleted},'
            f'"overflow_deleted_rows":{overflow_deleted}}}'
        )
        self.insert_event(
            NewAuditEvent(
                event_type="audit_cleanup",
                actor_type="system",
                result="success",
                metadata_json=details,
            )
        )
        return AuditCleanupResult(
            retention_deleted_rows=retention_deleted,
            overflow_deleted_rows=overflow_deleted,
        )


def audit_auth_allow_enabled() -> bool:
    """Return whether successful authentications should be audited too."""
    return os.environ.get(AUTH_ALLOW_ENV) == "1"