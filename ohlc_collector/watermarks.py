"""
Watermark store: the last ingested unix time per series table.

The underlying table is an append-only log. Each successful series write
appends a row, readers take the maximum per table ("latest wins"), and
compact() rewrites the log down to one row per table.
"""

import logging
from typing import Dict

import duckdb

from .duckdb_store import DuckDBStore
from .errors import StoreReadError, StoreWriteError, StoreCompactionError

logger = logging.getLogger(__name__)


class WatermarkStore:

    def __init__(self, store: DuckDBStore):
        self.store = store

    def load_all(self) -> Dict[str, int]:
        """
        Current watermark per table.

        Several rows may exist per table before compaction; the greatest
        unix time wins.

        :return: Mapping of table name to last ingested unix time
        :raises StoreReadError: if the watermark table cannot be queried
        """
        try:
            watermarks = self.store.select_latest_watermarks()
        except duckdb.Error as e:
            raise StoreReadError(f"Failed to load watermarks: {e}") from e

        logger.info(f"Loaded watermarks for {len(watermarks)} tables")
        return watermarks

    def append(self, table_name: str, unix_time: int):
        """
        Append a new watermark row for a table.

        :raises StoreWriteError: if the row cannot be inserted
        """
        try:
            self.store.insert_watermark(table_name, unix_time)
        except duckdb.Error as e:
            raise StoreWriteError(f"Failed to append watermark {unix_time}: {e}", table_name=table_name) from e

        logger.info(f"Advanced watermark for {table_name} to {unix_time}")

    def compact(self):
        """
        Replace the watermark log with the latest row per table.

        :raises StoreCompactionError: if the rewrite fails; the log is left as it was
        """
        try:
            before = self.store.count_watermark_rows()
            self.store.replace_watermarks_with_latest()
            after = self.store.count_watermark_rows()
        except duckdb.Error as e:
            raise StoreCompactionError(f"Failed to compact watermarks: {e}") from e

        logger.info(f"Compacted watermarks: {before} -> {after} rows")

    def row_count(self) -> int:
        try:
            return self.store.count_watermark_rows()
        except duckdb.Error as e:
            raise StoreReadError(f"Failed to count watermark rows: {e}") from e
