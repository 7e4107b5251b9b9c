from __future__ import annotations

import logging
import re
import time

LOG = logging.getLogger(__name__)

_DAY = 24 * 60 * 60
# quoted literals and identifiers match first so keywords inside them are skipped
_CLAUSE_BREAK = re.compile(r"('(?:[^'\\]|\\.)*'|`[^`]*`)| (?=(?:FROM|WHERE|ORDER BY|LIMIT|VALUES) )")

# ============================== Formatting helpers ===============================

def format_elapsed(seconds: float) -> str:
    """HH:MM:SS, or 'N days, HH:MM' once a day has passed."""
    total = int(seconds)
    days, rem = divmod(total, _DAY)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if total >= _DAY:
        return f"{days} days, {hours:02d}:{minutes:02d}"
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_rate(total: int, elapsed: float) -> str:
    rate = total // max(1, int(elapsed))
    if rate == 0 and total > 0:
        return f"{'< 1':>12} records/second"
    return f"{rate:12d} records/second"


def format_query(indent: str, sql: str) -> str:
    """Break a one-line statement before its main clauses, for operator review."""
    parts, start = [], 0
    for m in _CLAUSE_BREAK.finditer(sql):
        if m.group(1):
            continue
        parts.append(sql[start:m.start()])
        start = m.end()
    parts.append(sql[start:])
    return "\n".join(indent + part for part in parts)


def build_report(action: str, total: int, table: str, elapsed: float) -> str:
    elapsed = max(1, int(elapsed))
    lines = [
        "report:",
        f"  {action + ':':<9}{total:12d} {table} records",
        f"  {'elapsed:':<9}{format_elapsed(elapsed):>12}",
        f"  {'rate:':<9}{format_rate(total, elapsed)}",
    ]
    return "\n".join(lines)

# ============================== Reporter ===============================

class ProgressReporter:
    """
    Emits a progress report at most once per interval.
    Interval boundaries step forward from the run start, so the cadence does not
    drift when chunks take uneven time.
    """

    def __init__(self, interval: float, logger: logging.Logger | None = None, clock=time.monotonic):
        self.interval = interval
        self.log = logger or LOG
        self._clock = clock
        self.start = self._clock()
        self.boundary = self.start

    def restart(self) -> None:
        self.start = self._clock()
        self.boundary = self.start

    def report(self, action: str, total: int, table: str, force: bool = False) -> bool:
        now = self._clock()
        if not force and now - self.boundary < self.interval:
            return False
        if self.interval > 0:
            while self.boundary + self.interval <= now:
                self.boundary += self.interval
        self.log.info(build_report(action, total, table, now - self.start))
        return True
