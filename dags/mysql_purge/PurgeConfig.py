from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from mysql_purge.errors import PurgeConfigError

# ============================== Config model ===============================

@dataclass(frozen=True)
class PurgeConfig:
    table: str
    dest_table: str | None = None          # set => copy mode
    index: str | None = None               # traversal index; None => primary key
    reverse: bool = False                  # traverse the index descending
    first_only: bool = False               # keyset on first index column only (inclusive)
    non_traversing: bool = False           # no ORDER BY / keyset, re-run the initial query
    chunk_size: int = 500
    stop_after: int | None = None
    sleep: float | None = None             # seconds between chunks (purge mode only)
    copy_columns: Tuple[str, ...] = ()
    dest_columns: Dict[str, str] = field(default_factory=dict)
    dry_run: bool = False
    report_interval: float = 10.0
    check_period: float = 120.0
    max_history: int | None = None
    max_repl_lag: int | None = None
    max_reconnects: int = 5
    reconnect_backoff: float = 5.0
    where: str | None = None               # static filter applied to every SELECT
    conn_id: str | None = None
    comments: str = ""

    @property
    def copy_mode(self) -> bool:
        return self.dest_table is not None

    def validate(self) -> None:
        if self.chunk_size < 1:
            raise PurgeConfigError(f"chunk_size must be >= 1 (got {self.chunk_size})")
        if self.stop_after is not None and self.stop_after < 1:
            raise PurgeConfigError(f"stop_after must be >= 1 (got {self.stop_after})")
        if self.max_reconnects < 0:
            raise PurgeConfigError(f"max_reconnects must be >= 0 (got {self.max_reconnects})")
        if self.report_interval < 0 or self.check_period < 0:
            raise PurgeConfigError("report_interval and check_period must not be negative")
        if self.non_traversing and self.index:
            raise PurgeConfigError("index and non_traversing are mutually exclusive")
        if self.copy_mode:
            if self.dest_table == self.table:
                raise PurgeConfigError("You can't copy rows from a table into itself")
            if self.non_traversing:
                raise PurgeConfigError("An index is required in copy mode")
            if self.first_only:
                raise PurgeConfigError("first_only option not allowed in copy mode")

    @classmethod
    def from_dict(cls, raw: Dict[str, object]) -> "PurgeConfig":
        """Build from a JSON-ish dict (catalog entry or XCom payload); unknown keys are rejected."""
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(raw) - known)
        if unknown:
            raise PurgeConfigError(f"Unknown purge options: {', '.join(unknown)}")
        values = dict(raw)
        if "copy_columns" in values:
            values["copy_columns"] = tuple(values["copy_columns"] or ())
        if "dest_columns" in values:
            values["dest_columns"] = dict(values["dest_columns"] or {})
        return cls(**values)


def optional_int(value: object) -> Optional[int]:
    return None if value in (None, "") else int(value)
