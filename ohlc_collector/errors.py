"""
Error taxonomy for the OHLC collector.

Every failure raised by the collector derives from CollectorError so the
orchestrator can forward it to the failure reporter with series context.
None of these errors are retried internally.
"""

from typing import Optional, Sequence, Any


class CollectorError(Exception):
    """Base class for collector failures."""

    def __init__(self, message: str, table_name: Optional[str] = None):
        super().__init__(message)
        self.table_name = table_name


class ConfigError(CollectorError):
    """Configuration or project identity could not be resolved."""


class FetchError(CollectorError):
    """Transport, HTTP status, payload or upstream-reported API failure."""


class MalformedRowError(CollectorError):
    """A raw bucket row does not have the expected shape."""

    def __init__(self, row: Sequence[Any], table_name: Optional[str] = None):
        self.length = len(row)
        self.row = list(row)
        super().__init__(
            f"Invalid row length: length={self.length}, data={self.row}",
            table_name=table_name
        )


class StoreReadError(CollectorError):
    """Watermarks could not be read."""


class StoreWriteError(CollectorError):
    """A watermark row could not be appended."""


class StoreCompactionError(CollectorError):
    """The watermark table could not be compacted."""


class WriteError(CollectorError):
    """A batch could not be persisted to the warehouse or the archive."""


class ReportingError(CollectorError):
    """The failure reporter could not deliver a failure message."""


class RunCancelled(CollectorError):
    """The run was cancelled before the in-flight series completed."""
