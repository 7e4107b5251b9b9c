import re
import sqlite3
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Tuple

import pytest

from mysql_purge.errors import ConnectionLost

NOW = datetime(2014, 12, 2, 13, 47, 43)

_FORCE_INDEX = re.compile(r" FORCE INDEX\([^)]*\)")


def ts(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S")


class SqliteConnection:
    """
    In-memory stand-in for MySqlConnection.

    SQLite accepts backtick identifiers and multi-row VALUES, so the generated
    statements run unchanged apart from the MySQL index hint.
    """

    def __init__(self, index_types: Dict[str, str] | None = None):
        self.db = sqlite3.connect(":memory:", isolation_level=None)
        self.index_types = index_types or {}
        self.statements: List[str] = []
        self.reconnects = 0

    def _sql(self, sql: str) -> str:
        self.statements.append(sql)
        return _FORCE_INDEX.sub("", sql)

    def select_rows(self, sql: str) -> List[Tuple[Any, ...]]:
        return [tuple(r) for r in self.db.execute(self._sql(sql)).fetchall()]

    def select_dicts(self, sql: str) -> List[Dict[str, Any]]:
        cur = self.db.execute(self._sql(sql))
        names = [d[0] for d in cur.description]
        return [dict(zip(names, r)) for r in cur.fetchall()]

    def execute(self, sql: str) -> int:
        return self.db.execute(self._sql(sql)).rowcount

    def reconnect(self) -> None:
        self.reconnects += 1

    def quote(self, value: Any, data_type: str | None = None) -> str:
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, (int, float)):
            return repr(value)
        if isinstance(value, datetime):
            value = ts(value)
        elif isinstance(value, date):
            value = value.isoformat()
        return "'" + str(value).replace("'", "''") + "'"

    def table_columns(self, table: str) -> List[Tuple[str, str]]:
        return [(r[1], r[2].lower()) for r in self.db.execute(f'PRAGMA table_info("{table}")')]

    def index_catalog(self, table: str) -> List[Dict[str, Any]]:
        rows = []
        pk = sorted((r[5], r[1]) for r in self.db.execute(f'PRAGMA table_info("{table}")') if r[5] > 0)
        for seq, col in pk:
            rows.append(self._catalog_row(table, "PRIMARY", col, seq, unique=True))
        unique = {r[1]: bool(r[2]) for r in self.db.execute(f'PRAGMA index_list("{table}")')}
        names = self.db.execute(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = ? "
            "AND name NOT LIKE 'sqlite_autoindex%' ORDER BY rowid",
            (table,),
        ).fetchall()
        for (name,) in names:
            for seqno, _, col in self.db.execute(f'PRAGMA index_info("{name}")'):
                rows.append(self._catalog_row(table, name, col, seqno + 1, unique=unique[name]))
        return rows

    def _catalog_row(self, table: str, key_name: str, col: str, seq: int, unique: bool) -> Dict[str, Any]:
        return {
            "Table": table,
            "Non_unique": 0 if unique else 1,
            "Key_name": key_name,
            "Seq_in_index": seq,
            "Column_name": col,
            "Collation": "A",
            "Index_type": self.index_types.get(key_name, "BTREE"),
        }

    def count(self, table: str, where: str = "1 = 1") -> int:
        return self.db.execute(f"SELECT COUNT(*) FROM {table} WHERE {where}").fetchone()[0]


class FlakyConnection(SqliteConnection):
    """Raises ConnectionLost on the given (1-based) select/execute calls."""

    def __init__(self, fail_selects=(), fail_executes=()):
        super().__init__()
        self.fail_selects = set(fail_selects)
        self.fail_executes = set(fail_executes)
        self.selects = 0
        self.executes = 0

    def select_rows(self, sql):
        self.selects += 1
        if self.selects in self.fail_selects:
            raise ConnectionLost("(2013, 'Lost connection to MySQL server during query')")
        return super().select_rows(sql)

    def execute(self, sql):
        self.executes += 1
        if self.executes in self.fail_executes:
            raise ConnectionLost("(2006, 'MySQL server has gone away')")
        return super().execute(sql)

# ------------------------ Table fixtures ------------------------

def create_comments(conn: SqliteConnection) -> None:
    conn.db.executescript(
        """
        CREATE TABLE comments (
            `id` INTEGER PRIMARY KEY AUTOINCREMENT,
            `timestamp` DATETIME,
            `account` INT,
            `seen` BOOLEAN
        );
        CREATE INDEX comments_on_account_timestamp ON comments(account, timestamp);
        CREATE INDEX comments_on_timestamp ON comments(timestamp DESC);
        """
    )


def add_comment(conn: SqliteConnection, timestamp: datetime, account: int = 0, seen: bool = False, comment_id: int | None = None):
    conn.db.execute(
        "INSERT INTO comments (id, timestamp, account, seen) VALUES (?, ?, ?, ?)",
        (comment_id, ts(timestamp), account, int(seen)),
    )


def create_books(conn: SqliteConnection, count: int = 50) -> None:
    conn.db.executescript(
        """
        CREATE TABLE books (
            `id` INTEGER PRIMARY KEY AUTOINCREMENT,
            `bin` INT,
            `publisher` VARCHAR(64),
            `title` VARCHAR(64)
        );
        CREATE INDEX book_index_by_bin ON books(bin, id);
        CREATE TABLE book_vault (
            `book_id` INTEGER PRIMARY KEY AUTOINCREMENT,
            `bin` INT,
            `published_by` VARCHAR(64)
        );
        """
    )
    for n in range(1, count + 1):
        conn.db.execute(
            "INSERT INTO books (bin, publisher, title) VALUES (?, ?, ?)",
            ((n % 3) * 1000, "Random House", f"Jaws, Part {n}"),
        )


def create_keyed_tables(conn: SqliteConnection) -> None:
    conn.db.executescript(
        """
        CREATE TABLE table_with_primary_keys (`pk` INTEGER PRIMARY KEY, `k1` INT, `k2` INT);
        CREATE INDEX key_nonunique_pk ON table_with_primary_keys(k1);
        CREATE UNIQUE INDEX key_unique_pk ON table_with_primary_keys(k2);

        CREATE TABLE table_with_unique_keys (`k1` INT, `k2` INT);
        CREATE INDEX key_nonunique_uk ON table_with_unique_keys(k1);
        CREATE UNIQUE INDEX key_unique_uk ON table_with_unique_keys(k2);

        CREATE TABLE table_with_regular_keys (`k1` INT, `k2` INT);
        CREATE INDEX key_nonunique_rk ON table_with_regular_keys(k1);
        CREATE INDEX key_extra_rk ON table_with_regular_keys(k2);

        CREATE TABLE table_without_keys (`k1` INT, `k2` INT);
        """
    )


@pytest.fixture
def conn():
    c = SqliteConnection()
    yield c
    c.db.close()


@pytest.fixture
def comments(conn):
    create_comments(conn)
    return conn


@pytest.fixture
def books(conn):
    create_books(conn)
    return conn


@pytest.fixture
def days_ago():
    return lambda n: NOW - timedelta(days=n)
