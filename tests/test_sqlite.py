import pytest

from roche_limit.sqlite import (
    SqliteConnection,
    StoreError,
    select_ids,
    update_single_id,
)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "auth.sqlite3"


@pytest.fixture
def conn(db_path):
    with SqliteConnection(db_path) as connection:
        yield connection


def test_opening_creates_database_file(db_path):
    assert not db_path.exists()
    with SqliteConnection(db_path):
        pass
    assert db_path.exists()


def test_open_in_missing_directory_fails(tmp_path):
    with pytest.raises(StoreError, match="^failed to open sqlite database"):
        SqliteConnection(tmp_path / "missing" / "nested" / "auth.sqlite3")


def test_pragmas_are_applied(conn):
    assert conn.db.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
    assert conn.db.execute("PRAGMA foreign_keys").fetchone()[0] == 1
    assert conn.db.execute("PRAGMA synchronous").fetchone()[0] == 1


def test_table_exists(conn):
    assert conn.table_exists("users") is False
    conn.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, username TEXT);")
    assert conn.table_exists("users") is True
    assert conn.table_exists("user") is False


def test_column_exists(conn):
    conn.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, username TEXT);")
    assert conn.column_exists("users", "username") is True
    assert conn.column_exists("users", "note") is False
    assert conn.column_exists("absent", "id") is False


def test_execute_runs_several_statements(conn):
    conn.execute(
        """
CREATE TABLE t (id INTEGER PRIMARY KEY, v TEXT);
INSERT INTO t (v) VALUES ('a;b');
-- a comment; with a semicolon
INSERT INTO t (v) VALUES ('c')
"""
    )
    rows = conn.db.execute("SELECT v FROM t ORDER BY id").fetchall()
    assert [row[0] for row in rows] == ["a;b", "c"]


def test_execute_reports_errors(conn):
    with pytest.raises(StoreError, match="^failed to execute sqlite statement: "):
        conn.execute("SELEC nonsense;")


def test_explicit_transaction_commit_is_visible(db_path, conn):
    conn.execute("CREATE TABLE t (id INTEGER PRIMARY KEY);")
    conn.execute("BEGIN IMMEDIATE;")
    conn.execute("INSERT INTO t (id) VALUES (7);")
    conn.execute("COMMIT;")
    with SqliteConnection(db_path) as other:
        assert other.db.execute("SELECT id FROM t").fetchall() == [(7,)]


def test_explicit_transaction_rollback(conn):
    conn.execute("CREATE TABLE t (id INTEGER PRIMARY KEY);")
    conn.execute("BEGIN IMMEDIATE;")
    conn.execute("INSERT INTO t (id) VALUES (1);")
    conn.execute("ROLLBACK;")
    assert conn.db.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 0


def test_use_after_close_fails(db_path):
    connection = SqliteConnection(db_path)
    connection.close()
    connection.close()
    with pytest.raises(StoreError):
        connection.table_exists("users")


def test_context_manager_closes(db_path):
    with SqliteConnection(db_path) as connection:
        connection.execute("CREATE TABLE t (id INTEGER);")
    with pytest.raises(StoreError):
        connection.execute("SELECT 1;")


def test_select_ids_in_order(conn):
    conn.execute("CREATE TABLE t (id INTEGER PRIMARY KEY);")
    conn.execute("INSERT INTO t (id) VALUES (5); INSERT INTO t (id) VALUES (2);")
    conn.execute("INSERT INTO t (id) VALUES (9);")
    assert select_ids(conn, "SELECT id FROM t ORDER BY id ASC;", "load failed") == [2, 5, 9]


def test_select_ids_error_uses_message(conn):
    with pytest.raises(StoreError, match="^load failed$"):
        select_ids(conn, "SELECT id FROM nowhere;", "load failed")


def test_update_single_id_moves_row(conn):
    conn.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, v TEXT);")
    conn.execute("INSERT INTO t (id, v) VALUES (4, 'x');")
    update_single_id(conn, "UPDATE t SET id = ?1 WHERE id = ?2;", 4, -1, "move failed")
    assert conn.db.execute("SELECT id, v FROM t").fetchall() == [(-1, "x")]


def test_update_single_id_error_uses_message(conn):
    conn.execute("CREATE TABLE t (id INTEGER PRIMARY KEY);")
    conn.execute("INSERT INTO t (id) VALUES (1); INSERT INTO t (id) VALUES (2);")
    with pytest.raises(StoreError, match="^move failed$"):
        update_single_id(conn, "UPDATE t SET id = ?1 WHERE id = ?2;", 2, 1, "move failed")