from __future__ import annotations

import io
import logging
import time
from typing import Any, Callable, List, Sequence, Tuple, TypeVar

from mysql_purge.PurgeConfig import PurgeConfig
from mysql_purge.connections import Connection
from mysql_purge.errors import ConnectionLost, PurgeStopped
from mysql_purge.mysql_status import MysqlStatus
from mysql_purge.reporting import ProgressReporter, format_query
from mysql_purge.schema import ChunkQuery, TableSchema

LOG = logging.getLogger(__name__)

T = TypeVar("T")

# ============================== Engine ===============================

class PurgeRunner:
    """
    Deletes (or copies into cfg.dest_table) the rows of cfg.table in chunks of cfg.chunk_size.

    Each chunk is one SELECT bounded by a keyset predicate on the traversing index, then
    one DELETE (or multi-row INSERT) covering exactly the fetched rows. Nothing is held
    open between chunks, so killing the process at any point leaves a consistent table.
    """

    def __init__(self, cfg: PurgeConfig, connection: Connection, logger: logging.Logger | None = None):
        cfg.validate()
        self.cfg = cfg
        self.connection = connection
        self.log = logger or logging.getLogger(__name__)

        self.table_schema = TableSchema.load(
            connection,
            cfg.table,
            key_name=cfg.index,
            ascending=not cfg.reverse,
            first_only=cfg.first_only,
            non_traversing=cfg.non_traversing,
            extra_columns=cfg.copy_columns,
            dest_table=cfg.dest_table,
            dest_columns=cfg.dest_columns,
        )

        self.mysql_status: MysqlStatus | None = None
        if cfg.max_history or cfg.max_repl_lag:
            self.mysql_status = MysqlStatus(
                connection,
                max_history=cfg.max_history,
                max_repl_lag=cfg.max_repl_lag,
                check_period=cfg.check_period,
                logger=self.log,
            )

        self.query: ChunkQuery = self.table_schema.initial_scope(limit=cfg.chunk_size, where=cfg.where)
        self.total_processed = 0
        self.reconnect_count = 0
        self.reporter = ProgressReporter(cfg.report_interval, logger=self.log)
        self._sample_rows: List[Tuple[Any, ...]] | None = None

    @property
    def copy_mode(self) -> bool:
        return self.cfg.copy_mode

    @property
    def action(self) -> str:
        if self.cfg.dry_run:
            return "processed"
        return "copied" if self.copy_mode else "deleted"

    # ------------------------ Execution ------------------------

    def execute(self) -> int:
        """
        Run the purge to completion and return the number of rows deleted/copied.
        Raises PurgeStopped (after executing the last statement) when stop_after is reached.
        """
        cfg = self.cfg
        if cfg.dry_run:
            self.log.info("DRY RUN for %s:\n%s", cfg.table, self.print_queries())
            return 0

        self.reporter.restart()
        if self.copy_mode:
            self.log.info(
                "starting: copying %s records to %s in batches of %d", cfg.table, cfg.dest_table, cfg.chunk_size
            )
        else:
            self.log.info("starting: deleting %s records in batches of %d", cfg.table, cfg.chunk_size)
            if cfg.sleep:
                self.log.info("sleeping %s seconds between purging", cfg.sleep)

        self.total_processed = 0
        chunk_query = self.query
        rows = self._fetch(chunk_query)
        while rows and (cfg.stop_after is None or self.total_processed < cfg.stop_after):
            stopped = cfg.stop_after is not None and self.total_processed + len(rows) > cfg.stop_after
            if stopped:
                rows = rows[: cfg.stop_after - self.total_processed]
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug("%s %d records between %r and %r", self.action, len(rows), rows[0], rows[-1])

            self.total_processed += self._apply_chunk(rows)

            if stopped:
                self.reporter.report(self.action, self.total_processed, cfg.table, force=True)
                raise PurgeStopped(
                    f"stopped after {self.action} {self.total_processed} {cfg.table} records", self.total_processed
                )

            chunk_query = self.table_schema.scope_to_next_chunk(self.query, rows[-1])
            if cfg.sleep and not self.copy_mode:
                self.sleep(cfg.sleep)
            rows = self._fetch(chunk_query)
            self.reporter.report(self.action, self.total_processed, cfg.table)

        self.reporter.report(self.action, self.total_processed, cfg.table, force=True)
        if self.copy_mode:
            self.log.info(
                "completed after copying %d %s records to %s", self.total_processed, cfg.table, cfg.dest_table
            )
        else:
            self.log.info("completed after deleting %d records from %s", self.total_processed, cfg.table)
        return self.total_processed

    def _fetch(self, chunk_query: ChunkQuery) -> List[Tuple[Any, ...]]:
        if self.mysql_status is not None:
            self.mysql_status.check()
        sql = chunk_query.to_sql()
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("find rows: %s", sql)
        return self._with_reconnect("SELECT", lambda: self.connection.select_rows(sql))

    def _apply_chunk(self, rows: Sequence[Tuple[Any, ...]]) -> int:
        if self.copy_mode:
            statement = self.table_schema.insert_statement(rows)
        else:
            statement = self.table_schema.delete_statement(rows)
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(statement)
        affected = self._with_reconnect(
            "INSERT" if self.copy_mode else "DELETE", lambda: self.connection.execute(statement)
        )
        # rows already removed by someone else make the DELETE count smaller than the chunk
        return len(rows) if self.copy_mode else affected

    def _with_reconnect(self, operation: str, fn: Callable[[], T]) -> T:
        attempts = 0
        while True:
            try:
                return fn()
            except ConnectionLost as err:
                attempts += 1
                if attempts > self.cfg.max_reconnects:
                    self.log.error(
                        "%s failed: connection lost %d times in a row, giving up after %d %s rows",
                        operation, attempts, self.total_processed, self.action,
                    )
                    raise
                self.reconnect_count += 1
                self.log.warning(
                    "connection lost during %s (attempt %d/%d): %s; reconnecting in %ss",
                    operation, attempts, self.cfg.max_reconnects, err, self.cfg.reconnect_backoff,
                )
                self.sleep(self.cfg.reconnect_backoff)
                try:
                    self.connection.reconnect()
                except ConnectionLost as reconnect_err:
                    self.log.warning("reconnect failed: %s", reconnect_err)

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    # ------------------------ Dry run ------------------------

    def print_queries(self) -> str:
        """The initial query, a sample chunk query and the DELETE/INSERT shape, formatted for review."""
        out = io.StringIO()
        sample = self.sample_rows()
        out.write("Initial Query:\n")
        out.write(format_query("    ", self.query.to_sql()) + "\n")
        out.write("Chunk Query:\n")
        out.write(format_query("    ", self.table_schema.scope_to_next_chunk(self.query, sample[0]).to_sql()) + "\n")
        if self.copy_mode:
            out.write("Insert Statement:\n")
            out.write(format_query("    ", self.table_schema.insert_statement(sample)) + "\n")
        else:
            out.write("Delete Statement:\n")
            out.write(format_query("    ", self.table_schema.delete_statement(sample)) + "\n")
        return out.getvalue()

    def sample_rows(self) -> List[Tuple[Any, ...]]:
        if self._sample_rows is None:
            sql = self.query.with_limit(1).to_sql()
            self._sample_rows = self._with_reconnect("SELECT", lambda: self.connection.select_rows(sql))
            if not self._sample_rows:
                # empty table: NULL placeholders so the statements can still be shown
                self._sample_rows = [tuple([None] * len(self.table_schema.columns))]
        return self._sample_rows
