from __future__ import annotations

import logging
import re
import time
from typing import Dict

from mysql_purge.connections import Connection

LOG = logging.getLogger(__name__)

_HISTORY_RE = re.compile(r"History list length ([0-9]+)")

DEFAULT_CHECK_PERIOD = 120.0
DEFAULT_PAUSE = 300.0
# once paused, resume only after recovering to this fraction of a threshold
RESUME_FRACTION = 0.90


class MysqlStatus:
    """
    Watches replication lag and the InnoDB history list, and blocks the caller while
    either is over its limit.

    • check() does nothing until check_period seconds have passed since the last check.
    • When a threshold is exceeded it pauses in a loop until every metric is back
      under 90% of its limit (hysteresis), then lets the purge continue.
    """

    def __init__(
        self,
        connection: Connection,
        max_history: int | None = None,
        max_repl_lag: int | None = None,
        check_period: float | None = None,
        pause_time: float = DEFAULT_PAUSE,
        logger: logging.Logger | None = None,
    ):
        self.connection = connection
        self.max_history = max_history
        self.max_replication_lag = max_repl_lag
        self.check_period = DEFAULT_CHECK_PERIOD if check_period is None else check_period
        self.pause_time = pause_time
        self.log = logger or LOG
        self.paused = False
        self.last_check = time.monotonic() - self.check_period

    def check(self) -> None:
        if time.monotonic() - self.check_period < self.last_check:
            return
        while True:
            violations = self.get_violations()
            if not violations:
                break
            self.log.warning(
                "pausing until threshold violations clear (%s)",
                ", ".join(f"{k} = {v}" for k, v in violations.items()),
            )
            self.paused = True
            self.pause(self.pause_time)
        if self.paused:
            self.log.info("violations clear")
        self.all_clear()

    def get_violations(self) -> Dict[str, str]:
        violations: Dict[str, str] = {}
        if self.max_history:
            current = self.get_history_length()
            if self.threshold(self.max_history) < current:
                violations["history length"] = f"{current / 1_000_000.0} m"
        if self.max_replication_lag:
            current = self.get_replication_lag()
            if self.threshold(self.max_replication_lag) < current:
                violations["replication lag"] = str(current)
        return violations

    def threshold(self, value: float) -> float:
        return RESUME_FRACTION * value if self.paused else value

    def pause(self, seconds: float) -> None:
        time.sleep(seconds)

    def all_clear(self) -> None:
        self.last_check = time.monotonic()
        self.paused = False

    def get_replication_lag(self) -> int:
        rows = self.connection.select_dicts("SHOW SLAVE STATUS")
        if not rows:
            return 0
        row = rows[0]
        lag = row.get("Seconds_Behind_Master", row.get("Seconds_Behind_Source"))
        if lag is None:
            # replication thread stopped; MySQL reports NULL
            self.log.debug("Seconds_Behind_Master is NULL; treating replication lag as 0")
            return 0
        return int(lag)

    def get_history_length(self) -> int:
        rows = self.connection.select_rows("SHOW ENGINE INNODB STATUS")
        status = rows[0][2]
        # the latest-deadlock section can quote statements with invalid UTF-8
        if isinstance(status, (bytes, bytearray)):
            status = status.decode("latin-1")
        match = _HISTORY_RE.search(status)
        if match is None:
            self.log.warning("No 'History list length' in SHOW ENGINE INNODB STATUS output")
            return 0
        return int(match.group(1))
