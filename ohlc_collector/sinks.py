"""
Dual-sink writer: archive blob plus warehouse table for each batch.
"""

import logging
from typing import Sequence

from .archive import BlobStore, archive_path, CSV_CONTENT_TYPE
from .catalog import Series
from .duckdb_store import DuckDBStore
from .errors import WriteError
from .normalizer import PricePoint, to_dataframe

logger = logging.getLogger(__name__)


class DualSinkWriter:
    """
    Persists one normalized batch to the archive and the warehouse.

    The archive write overwrites by path and is idempotent per run label.
    The warehouse write appends and is not: writing a batch twice leaves
    duplicate rows.
    """

    def __init__(self, store: DuckDBStore, blob_store: BlobStore, archive_prefix: str = "btc"):
        self.store = store
        self.blob_store = blob_store
        self.archive_prefix = archive_prefix

    def write_archive(self, series: Series, points: Sequence[PricePoint], run_label: str) -> str:
        path = archive_path(self.archive_prefix, series, run_label)
        content = to_dataframe(points).to_csv(index=False)
        self.blob_store.write(path, content.encode("utf-8"), content_type=CSV_CONTENT_TYPE)
        return path

    def write_warehouse(self, series: Series, points: Sequence[PricePoint]):
        self.store.insert_price_points(series.table_name, points)

    def write(self, series: Series, points: Sequence[PricePoint], run_label: str) -> str:
        """
        Write the batch to both sinks.

        :param series: Series the batch belongs to
        :param points: Normalized price points
        :param run_label: Run timestamp label naming the archive blob
        :return: Archive path written
        :raises WriteError: if either sink fails
        """
        try:
            path = self.write_archive(series, points, run_label)
        except Exception as e:
            raise WriteError(f"Archive write failed: {e}", table_name=series.table_name) from e

        try:
            self.write_warehouse(series, points)
        except Exception as e:
            raise WriteError(f"Warehouse write failed: {e}", table_name=series.table_name) from e

        logger.info(f"Wrote {len(points)} points for {series.table_name} (archive: {path})")
        return path
