"""
Conversion of raw OHLC bucket rows into price point records.

The API's last bucket is the still-open current interval whose values change
on every poll, so it is always dropped before conversion. Prices keep two
decimal digits and volumes eight, matching the upstream precision.
"""

import logging
import math
import numbers
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence

import pandas as pd

from .errors import MalformedRowError

logger = logging.getLogger(__name__)

ROW_LENGTH = 7

CSV_COLUMNS = [
    "UNIX_TIME",
    "CLOSE_TIME",
    "OPEN_PRICE",
    "HIGH_PRICE",
    "LOW_PRICE",
    "CLOSE_PRICE",
    "VOLUME",
    "QUOTE_VOLUME",
]


@dataclass(frozen=True)
class PricePoint:
    unix_time: str
    close_time: datetime
    open_price: str
    high_price: str
    low_price: str
    close_price: str
    volume: str
    quote_volume: str

    @property
    def unix_time_int(self) -> int:
        return int(self.unix_time)


def _format_price(value: float) -> str:
    return f"{value:.2f}"


def _format_volume(value: float) -> str:
    return f"{value:.8f}"


def _is_finite_number(value: Any) -> bool:
    # json accepts NaN and Infinity literals
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return False
    return math.isfinite(value)


def convert_row(row: Sequence[Any], table_name: Optional[str] = None) -> PricePoint:
    """
    Convert one raw row ``[unix_time, open, high, low, close, volume, quote_volume]``.

    :raises MalformedRowError: if the row is not exactly seven finite numbers
    """
    if not isinstance(row, (list, tuple)) or len(row) != ROW_LENGTH:
        raise MalformedRowError(row if isinstance(row, (list, tuple)) else [row], table_name=table_name)
    if not all(_is_finite_number(v) for v in row):
        raise MalformedRowError(row, table_name=table_name)

    unix_time = int(row[0])
    return PricePoint(
        unix_time=f"{row[0]:.0f}",
        close_time=datetime.fromtimestamp(unix_time, tz=timezone.utc),
        open_price=_format_price(row[1]),
        high_price=_format_price(row[2]),
        low_price=_format_price(row[3]),
        close_price=_format_price(row[4]),
        volume=_format_volume(row[5]),
        quote_volume=_format_volume(row[6]),
    )


def normalize(rows: Sequence[Sequence[Any]], table_name: Optional[str] = None) -> List[PricePoint]:
    """
    Normalize raw rows, discarding the unstable trailing bucket.

    Fewer than two rows means nothing closed since the last poll and yields
    an empty list.

    :param rows: Time-ordered raw rows for one series
    :param table_name: Series table name, attached to errors for diagnostics
    :return: One PricePoint per closed bucket
    :raises MalformedRowError: if any retained row is malformed
    """
    if len(rows) < 2:
        return []

    points = [convert_row(row, table_name) for row in rows[:-1]]
    logger.debug(f"Normalized {len(points)} of {len(rows)} rows for {table_name}")
    return points


def to_dataframe(points: Sequence[PricePoint]) -> pd.DataFrame:
    """
    Flat, record-oriented view of a batch for archival.

    Value columns stay strings so their precision is written verbatim.
    """
    records = []
    for point in points:
        record = asdict(point)
        record["close_time"] = point.close_time.strftime("%Y-%m-%dT%H:%M:%SZ")
        records.append(record)

    df = pd.DataFrame.from_records(records, columns=[c.lower() for c in CSV_COLUMNS])
    df.columns = CSV_COLUMNS
    return df.astype(str)
