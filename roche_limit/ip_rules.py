"""SQLite-backed store for IP allow/deny rules and their per-service levels."""

from __future__ import annotations

import os
import sqlite3
import sys
from collections.abc import Callable, Sequence
from enum import Enum
from typing import Any, TypeVar

from .debug_log import verbose_logging_enabled
from .records import (
    UNSET,
    AddressFamily,
    IpRuleEffect,
    IpRuleRecord,
    IpRuleType,
    IpServiceLevelRecord,
    NewIpRule,
    NewIpServiceLevel,
    UpdateIpRule,
)
from .sqlite import SqliteConnection, StoreError, select_ids, update_single_id

_T = TypeVar("_T")
_E = TypeVar("_E", bound=Enum)

_IP_RULE_COLUMNS = (
    "id, value_text, address_family, rule_type, prefix_length, effect, "
    "enabled, note, created_at, updated_at"
)
_SERVICE_LEVEL_COLUMNS = (
    "id, ip_rule_id, service_name, access_level, enabled, note, created_at, updated_at"
)

_LIST_IP_RULES_SQL = f"""
SELECT {_IP_RULE_COLUMNS}
FROM ip_rules
WHERE effect = ?1 AND enabled = 1
ORDER BY prefix_length DESC, id ASC;
"""

_FIND_SERVICE_LEVEL_SQL = f"""
SELECT {_SERVICE_LEVEL_COLUMNS}
FROM ip_service_levels
WHERE ip_rule_id = ?1
  AND enabled = 1
  AND (service_name = ?2 OR service_name = '*')
ORDER BY CASE WHEN service_name = ?2 THEN 0 ELSE 1 END, id ASC
LIMIT 1;
"""

_FIND_ALLOW_BY_VALUE_SQL = f"""
SELECT {_IP_RULE_COLUMNS}
FROM ip_rules
WHERE value_text = ?1 AND effect = 'allow' AND enabled = 1
ORDER BY id ASC;
"""

_LIST_SERVICE_LEVELS_SQL = f"""
SELECT {_SERVICE_LEVEL_COLUMNS}
FROM ip_service_levels
ORDER BY service_name ASC, ip_rule_id ASC, id ASC;
"""

_INSERT_IP_RULE_SQL = """
INSERT INTO ip_rules (
    value_text,
    address_family,
    rule_type,
    prefix_length,
    effect,
    note
) VALUES (?1, ?2, ?3, ?4, ?5, ?6);
"""

_UPSERT_SERVICE_LEVEL_SQL = """
INSERT INTO ip_service_levels (
    ip_rule_id,
    service_name,
    access_level,
    note
) VALUES (?1, ?2, ?3, ?4)
ON CONFLICT(ip_rule_id, service_name) DO UPDATE SET
    access_level = excluded.access_level,
    note = excluded.note,
    enabled = 1,
    updated_at = CURRENT_TIMESTAMP
RETURNING id;
"""

_DELETE_RULE_LEVELS_SQL = "DELETE FROM ip_service_levels WHERE ip_rule_id = ?1;"
_DELETE_RULE_SQL = "DELETE FROM ip_rules WHERE id = ?1;"
_DELETE_SERVICE_LEVEL_SQL = (
    "DELETE FROM ip_service_levels WHERE ip_rule_id = ?1 AND service_name = ?2;"
)

_SELECT_RULE_IDS_SQL = "SELECT id FROM ip_rules ORDER BY id ASC;"
_SELECT_SERVICE_LEVEL_IDS_SQL = "SELECT id FROM ip_service_levels ORDER BY id ASC;"
_UPDATE_RULE_ID_SQL = "UPDATE ip_rules SET id = ?1 WHERE id = ?2;"
_UPDATE_SERVICE_RULE_ID_SQL = (
    "UPDATE ip_service_levels SET ip_rule_id = ?1 WHERE ip_rule_id = ?2;"
)
_UPDATE_SERVICE_LEVEL_ID_SQL = "UPDATE ip_service_levels SET id = ?1 WHERE id = ?2;"


def _debug(message: str) -> None:
    if verbose_logging_enabled():
        print(f"[auth_store] {message}", file=sys.stderr, flush=True)


def _parse(enum_type: type[_E], text: str, label: str) -> _E:
    try:
        return enum_type(text)
    except ValueError:
        raise StoreError(f"unknown {label}: {text}") from None


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _read_ip_rule(row: Sequence[Any]) -> IpRuleRecord:
    return IpRuleRecord(
        id=int(row[0]),
        value_text=_text(row[1]),
        address_family=_parse(AddressFamily, _text(row[2]), "address family"),
        rule_type=_parse(IpRuleType, _text(row[3]), "ip rule type"),
        prefix_length=None if row[4] is None else int(row[4]),
        effect=_parse(IpRuleEffect, _text(row[5]), "ip rule effect"),
        enabled=bool(row[6]),
        note=None if row[7] is None else str(row[7]),
        created_at=_text(row[8]),
        updated_at=_text(row[9]),
    )


def _read_ip_service_level(row: Sequence[Any]) -> IpServiceLevelRecord:
    return IpServiceLevelRecord(
        id=int(row[0]),
        ip_rule_id=int(row[1]),
        service_name=_text(row[2]),
        access_level=int(row[3]),
        enabled=bool(row[4]),
        note=None if row[5] is None else str(row[5]),
        created_at=_text(row[6]),
        updated_at=_text(row[7]),
    )


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


def _run(connection: SqliteConnection, sql: str, params: Sequence[Any], message: str) -> sqlite3.Cursor:
    try:
        return connection.db.execute(sql, tuple(params))
    except sqlite3.Error as exc:
        raise StoreError(f"{message}: {exc}") from exc


def _renumber(
    connection: SqliteConnection,
    ids: Sequence[int],
    updates: Sequence[tuple[str, str, str]],
) -> None:
    """Renumber ``ids`` to 1..n, moving them through negative ids first.

    Each update is ``(sql, move_message, restore_message)``; they are applied
    in order for every id.
    """
    for position, old_id in enumerate(ids, start=1):
        for sql, move_message, _ in updates:
            update_single_id(connection, sql, old_id, -position, move_message)
    for position in range(1, len(ids) + 1):
        for sql, _, restore_message in updates:
            update_single_id(connection, sql, -position, position, restore_message)


class IpRuleStore:
    """Reads and edits the ``ip_rules`` and ``ip_service_levels`` tables."""

    def __init__(self, database_path: str | os.PathLike[str]) -> None:
        self.database_path = database_path

    def list_ip_rules(self, effect: IpRuleEffect) -> list[IpRuleRecord]:
        """Return enabled rules with ``effect``, most specific prefix first."""
        effect = IpRuleEffect(effect)
        _debug(f"list_ip_rules begin effect={effect.value}")
        with SqliteConnection(self.database_path) as connection:
            results = _fetch_all(
                connection,
                _LIST_IP_RULES_SQL,
                (effect.value,),
                _read_ip_rule,
                "failed to fetch ip rules",
            )
        _debug(f"list_ip_rules done count={len(results)}")
        return results

    def find_ip_service_level(
        self, ip_rule_id: int, service_name: str
    ) -> IpServiceLevelRecord | None:
        """Return the enabled level for the service, falling back to ``'*'``."""
        with SqliteConnection(self.database_path) as connection:
            results = _fetch_all(
                connection,
                _FIND_SERVICE_LEVEL_SQL,
                (ip_rule_id, service_name),
                _read_ip_service_level,
                "failed to fetch ip service level",
            )
        return results[0] if results else None

    def find_allow_ip_rule_by_value(self, value_text: str) -> IpRuleRecord | None:
        """Return the single enabled allow rule with this value, if any.

        Raises :class:`StoreError` when more than one such rule exists.
        """
        with SqliteConnection(self.database_path) as connection:
            results = _fetch_all(
                connection,
                _FIND_ALLOW_BY_VALUE_SQL,
                (value_text,),
                _read_ip_rule,
                "failed to fetch allow ip rule by value",
            )
        if len(results) > 1:
            raise StoreError("multiple enabled allow ip rules share the same value_text")
        return results[0] if results else None

    def list_ip_service_levels(self) -> list[IpServiceLevelRecord]:
        """Return every service level, enabled or not."""
        with SqliteConnection(self.database_path) as connection:
            return _fetch_all(
                connection,
                _LIST_SERVICE_LEVELS_SQL,
                (),
                _read_ip_service_level,
                "failed to list ip service levels",
            )

    def insert_ip_rule(self, new_ip_rule: NewIpRule) -> int:
        """Insert a rule and return its id."""
        params = (
            new_ip_rule.value_text,
            AddressFamily(new_ip_rule.address_family).value,
            IpRuleType(new_ip_rule.rule_type).value,
            new_ip_rule.prefix_length,
            IpRuleEffect(new_ip_rule.effect).value,
            new_ip_rule.note,
        )
        with SqliteConnection(self.database_path) as connection:
            cursor = _run(connection, _INSERT_IP_RULE_SQL, params, "failed to insert ip rule")
            return int(cursor.lastrowid)

    def update_ip_rule(self, ip_rule_id: int, update: UpdateIpRule) -> None:
        """Apply the fields set in ``update`` to the rule."""
        changes: list[tuple[str, Any]] = []
        if update.value_text is not None:
            changes.append(("value_text", update.value_text))
        if update.address_family is not None:
            changes.append(("address_family", AddressFamily(update.address_family).value))
        if update.rule_type is not None:
            changes.append(("rule_type", IpRuleType(update.rule_type).value))
        if update.prefix_length is not None:
            changes.append(("prefix_length", int(update.prefix_length)))
        if update.effect is not None:
            changes.append(("effect", IpRuleEffect(update.effect).value))
        if update.note is not UNSET:
            changes.append(("note", update.note))
        if not changes:
            raise StoreError("update_ip_rule requires at least one changed field")

        assignments = ", ".join(
            f"{column} = ?{position}" for position, (column, _) in enumerate(changes, start=1)
        )
        sql = (
            f"UPDATE ip_rules SET {assignments}, updated_at = CURRENT_TIMESTAMP "
            f"WHERE id = ?{len(changes) + 1};"
        )
        params = [value for _, value in changes] + [ip_rule_id]
        with SqliteConnection(self.database_path) as connection:
            _run(connection, sql, params, "failed to update ip rule")

    def delete_ip_rule(self, ip_rule_id: int) -> None:
        """Delete a rule together with its service levels."""
        with SqliteConnection(self.database_path) as connection:
            _run(
                connection,
                _DELETE_RULE_LEVELS_SQL,
                (ip_rule_id,),
                "failed to delete ip service levels",
            )
            _run(connection, _DELETE_RULE_SQL, (ip_rule_id,), "failed to delete ip rule")

    def upsert_ip_service_level(self, new_ip_service_level: NewIpServiceLevel) -> int:
        """Insert or re-enable and update a service level; return its id."""
        params = (
            new_ip_service_level.ip_rule_id,
            new_ip_service_level.service_name,
            int(new_ip_service_level.access_level),
            new_ip_service_level.note,
        )
        with SqliteConnection(self.database_path) as connection:
            cursor = _run(
                connection,
                _UPSERT_SERVICE_LEVEL_SQL,
                params,
                "failed to upsert ip service level",
            )
            row = cursor.fetchone()
            if row is None:
                raise StoreError("failed to upsert ip service level")
            return int(row[0])

    def delete_ip_service_level(self, ip_rule_id: int, service_name: str) -> None:
        """Delete the level of one rule for one service."""
        with SqliteConnection(self.database_path) as connection:
            _run(
                connection,
                _DELETE_SERVICE_LEVEL_SQL,
                (ip_rule_id, service_name),
                "failed to delete ip service level",
            )

    def compact_ip_ids(self) -> None:
        """Renumber rules and service levels to 1..n, keeping their order."""
        with SqliteConnection(self.database_path) as connection:
            connection.execute("PRAGMA foreign_keys = OFF;")
            try:
                connection.execute("BEGIN IMMEDIATE;")
            except StoreError:
                connection.execute("PRAGMA foreign_keys = ON;")
                raise
            try:
                rule_ids = select_ids(
                    connection, _SELECT_RULE_IDS_SQL, "failed to load ip rule ids"
                )
                _renumber(
                    connection,
                    rule_ids,
                    [
                        (
                            _UPDATE_SERVICE_RULE_ID_SQL,
                            "failed to move ip service level references",
                            "failed to restore ip service level references",
                        ),
                        (
                            _UPDATE_RULE_ID_SQL,
                            "failed to move ip rule id",
                            "failed to restore ip rule id",
                        ),
                    ],
                )
                level_ids = select_ids(
                    connection,
                    _SELECT_SERVICE_LEVEL_IDS_SQL,
                    "failed to load ip service level ids",
                )
                _renumber(
                    connection,
                    level_ids,
                    [
                        (
                            _UPDATE_SERVICE_LEVEL_ID_SQL,
                            "failed to move ip service level id",
                            "failed to restore ip service level id",
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