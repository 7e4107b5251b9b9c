from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Protocol, Sequence, Tuple

import pymysql
import pymysql.cursors
from dotenv import load_dotenv

from mysql_purge.errors import ConnectionLost

LOG = logging.getLogger(__name__)

# 2003 can't connect, 2006 server has gone away, 2013 lost during query,
# 2055 lost at reading initial communication packet
_CONNECTION_LOST_CODES = {2003, 2006, 2013, 2055}

_INT_TYPES = ("tinyint", "smallint", "mediumint", "int", "integer", "bigint")

# ============================== Collaborator interface ===============================

class Connection(Protocol):
    """What the purge engine needs from a database connection."""

    def select_rows(self, sql: str) -> List[Tuple[Any, ...]]: ...

    def select_dicts(self, sql: str) -> List[Dict[str, Any]]: ...

    def execute(self, sql: str) -> int: ...

    def reconnect(self) -> None: ...

    def quote(self, value: Any, data_type: str | None = None) -> str: ...

    def index_catalog(self, table: str) -> List[Dict[str, Any]]: ...

    def table_columns(self, table: str) -> List[Tuple[str, str]]: ...


def quote_identifier(ident: str) -> str:
    return "`" + ident.replace("`", "``") + "`"


def _is_connection_lost(err: pymysql.err.MySQLError) -> bool:
    if isinstance(err, pymysql.err.InterfaceError):
        # raised by PyMySQL when the socket is already closed
        return True
    code = err.args[0] if err.args else None
    return code in _CONNECTION_LOST_CODES

# ============================== PyMySQL adapter ===============================

class MySqlConnection:
    """
    Connection adapter over a PyMySQL connection.
    • autocommit is on: each DELETE/INSERT is its own transaction.
    • client-side connection drops are re-raised as ConnectionLost (original error chained).
    """

    def __init__(self, logger: logging.Logger | None = None, **connect_kwargs: Any):
        self.log = logger or LOG
        self._connect_kwargs = dict(connect_kwargs)
        self._connect_kwargs.setdefault("autocommit", True)
        self._connect_kwargs.setdefault("charset", "utf8mb4")
        self._conn = self._connect()

    @classmethod
    def from_env(cls, prefix: str = "MYSQL", logger: logging.Logger | None = None) -> "MySqlConnection":
        """Build from <PREFIX>_HOST/_PORT/_USER/_PASSWORD/_DATABASE, reading a .env file first if present."""
        load_dotenv()
        return cls(
            logger=logger,
            host=os.getenv(f"{prefix}_HOST", "localhost"),
            port=int(os.getenv(f"{prefix}_PORT", "3306")),
            user=os.getenv(f"{prefix}_USER", "root"),
            password=os.getenv(f"{prefix}_PASSWORD", ""),
            database=os.getenv(f"{prefix}_DATABASE") or None,
        )

    def _connect(self) -> pymysql.connections.Connection:
        try:
            conn = pymysql.connect(**self._connect_kwargs)
        except pymysql.err.OperationalError as e:
            if _is_connection_lost(e):
                raise ConnectionLost(str(e)) from e
            raise
        self.log.debug(
            "Connected to MySQL %s:%s/%s",
            self._connect_kwargs.get("host"), self._connect_kwargs.get("port"), self._connect_kwargs.get("database"),
        )
        return conn

    def _run(self, sql: str, cursor_class=None) -> Tuple[int, Sequence[Any]]:
        try:
            with self._conn.cursor(cursor_class) as c:
                affected = c.execute(sql)
                rows = c.fetchall() if c.description else ()
                return affected, rows
        except (pymysql.err.OperationalError, pymysql.err.InterfaceError) as e:
            if _is_connection_lost(e):
                raise ConnectionLost(str(e)) from e
            raise

    def select_rows(self, sql: str) -> List[Tuple[Any, ...]]:
        _, rows = self._run(sql)
        return [tuple(r) for r in rows]

    def select_dicts(self, sql: str) -> List[Dict[str, Any]]:
        _, rows = self._run(sql, pymysql.cursors.DictCursor)
        return list(rows)

    def execute(self, sql: str) -> int:
        affected, _ = self._run(sql)
        return int(affected)

    def reconnect(self) -> None:
        self.log.info("Reconnecting to MySQL %s", self._connect_kwargs.get("host"))
        try:
            self._conn.ping(reconnect=True)
        except (pymysql.err.OperationalError, pymysql.err.InterfaceError) as e:
            if _is_connection_lost(e):
                raise ConnectionLost(str(e)) from e
            raise

    def quote(self, value: Any, data_type: str | None = None) -> str:
        t = (data_type or "").lower()
        if t == "bit" and isinstance(value, (bytes, bytearray)):
            value = int.from_bytes(value, "big")
        elif t.startswith(_INT_TYPES) and isinstance(value, bool):
            value = int(value)
        return self._conn.escape(value)

    def index_catalog(self, table: str) -> List[Dict[str, Any]]:
        return self.select_dicts(f"SHOW INDEX FROM {quote_identifier(table)}")

    def table_columns(self, table: str) -> List[Tuple[str, str]]:
        rows = self.select_rows(
            "SELECT column_name, data_type FROM information_schema.columns "
            f"WHERE table_schema = DATABASE() AND table_name = {self._conn.escape(table)} "
            "ORDER BY ordinal_position"
        )
        cols = [(r[0], r[1]) for r in rows]
        self.log.debug("Columns for %s: %s", table, cols)
        return cols

    def close(self) -> None:
        try:
            self._conn.close()
        except pymysql.err.Error:
            self.log.debug("Connection already closed", exc_info=True)

# ============================== Airflow connections ===============================

@contextmanager
def mysql_conn(conn_id: str, logger: logging.Logger | None = None) -> Iterator[MySqlConnection]:
    """Open a MySqlConnection from an Airflow connection id; always closed on exit."""
    from airflow.hooks.base import BaseHook

    airflow_conn = BaseHook.get_connection(conn_id)
    conn = MySqlConnection(
        logger=logger,
        host=airflow_conn.host or "localhost",
        port=int(airflow_conn.port or 3306),
        user=airflow_conn.login,
        password=airflow_conn.password or "",
        database=airflow_conn.schema or None,
    )
    try:
        yield conn
    finally:
        conn.close()
