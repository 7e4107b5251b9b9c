from __future__ import annotations


class PurgeConfigError(ValueError):
    """Invalid purge configuration (missing key, unknown index/column, bad mode combination)."""


class ConnectionLost(Exception):
    """The MySQL connection dropped mid-statement; the statement may be retried after reconnecting."""


class PurgeStopped(Exception):
    """
    Raised when the run reaches its stop_after budget.

    Not a failure: the final chunk has already been executed when this is raised.
    `stopped_at` holds the number of rows processed.
    """

    def __init__(self, message: str, stopped_at: int):
        super().__init__(message)
        self.stopped_at = stopped_at
