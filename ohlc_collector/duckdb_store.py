"""
DuckDB persistence layer for the OHLC collector.

This module provides a DuckDBStore class that owns the warehouse connection:
schema initialization, collector run state, the append-only watermark table
and one price table per series.
"""

import duckdb
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, List, Dict, Any, Sequence, Tuple
from datetime import datetime
from contextlib import contextmanager

from .normalizer import PricePoint

logger = logging.getLogger(__name__)

WATERMARK_TABLE = "recently_unixtime"


@dataclass
class CollectorState:
    """Global collector run state."""
    last_run_label: Optional[str]
    last_updated_ts: Optional[datetime]
    run_status: str  # 'idle' | 'running' | 'error'


def quote_identifier(name: str) -> str:
    """Quote a table name; series table names contain hyphens."""
    return '"' + name.replace('"', '""') + '"'


class DuckDBStore:
    """
    DuckDB-backed warehouse for OHLC price series.

    Price tables are append-only: inserting the same batch twice produces
    duplicate rows, as with streaming inserts.
    """

    RUN_STATUS_IDLE = "idle"
    RUN_STATUS_RUNNING = "running"
    RUN_STATUS_ERROR = "error"

    def __init__(self, db_path: str = "market_data.duckdb"):
        """
        Initialize DuckDB connection.

        :param db_path: Path to DuckDB database file. Use ':memory:' for in-memory DB.
        """
        self.db_path = db_path
        self.conn = duckdb.connect(db_path)
        self._initialize_schema()

    def _initialize_schema(self):
        """Create the state and watermark tables if they don't exist."""

        # Collector state table (singleton row)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS collector_state (
                id INTEGER PRIMARY KEY DEFAULT 1,
                last_run_label VARCHAR,
                last_updated_ts TIMESTAMP,
                run_status VARCHAR DEFAULT 'idle'
            )
        """)

        self.conn.execute("""
            INSERT INTO collector_state (id, run_status)
            SELECT 1, 'idle'
            WHERE NOT EXISTS (SELECT 1 FROM collector_state WHERE id = 1)
        """)

        # Watermark log, one row per advance; compacted after each run
        self.conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {WATERMARK_TABLE} (
                table_name VARCHAR NOT NULL,
                last_unix_time BIGINT NOT NULL
            )
        """)

        logger.info("DuckDB schema initialized successfully")

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    @contextmanager
    def transaction(self):
        """
        Context manager for transactional operations.

        Usage:
            with store.transaction():
                store.insert_price_points(...)
        """
        try:
            self.conn.execute("BEGIN TRANSACTION")
            yield
            self.conn.execute("COMMIT")
        except Exception as e:
            self.conn.execute("ROLLBACK")
            logger.error(f"Transaction rolled back due to error: {e}")
            raise

    # ==================== Collector State Operations ====================

    def get_collector_state(self) -> CollectorState:
        """Get current collector state."""
        result = self.conn.execute("""
            SELECT last_run_label, last_updated_ts, run_status
            FROM collector_state
            WHERE id = 1
        """).fetchone()

        if result:
            return CollectorState(
                last_run_label=result[0],
                last_updated_ts=result[1],
                run_status=result[2] or self.RUN_STATUS_IDLE
            )
        return CollectorState(None, None, self.RUN_STATUS_IDLE)

    def update_collector_state(
        self,
        last_run_label: Optional[str] = None,
        run_status: Optional[str] = None
    ):
        """
        Update global collector state.

        :param last_run_label: Label of the run being processed
        :param run_status: Current run status
        """
        updates = ["last_updated_ts = ?"]
        params = [datetime.now()]

        if last_run_label is not None:
            updates.append("last_run_label = ?")
            params.append(last_run_label)

        if run_status is not None:
            updates.append("run_status = ?")
            params.append(run_status)

        query = f"UPDATE collector_state SET {', '.join(updates)} WHERE id = 1"
        self.conn.execute(query, params)

    # ==================== Watermark Operations ====================

    def select_latest_watermarks(self) -> Dict[str, int]:
        """Max last_unix_time per table over every watermark row."""
        result = self.conn.execute(f"""
            SELECT table_name, MAX(last_unix_time)
            FROM {WATERMARK_TABLE}
            GROUP BY table_name
        """).fetchall()
        return {row[0]: int(row[1]) for row in result}

    def insert_watermark(self, table_name: str, unix_time: int):
        self.conn.execute(f"""
            INSERT INTO {WATERMARK_TABLE} (table_name, last_unix_time)
            VALUES (?, ?)
        """, [table_name, int(unix_time)])

    def replace_watermarks_with_latest(self):
        """
        Rewrite the watermark table keeping only the latest row per table.

        The rewrite happens in a single transaction so readers see either the
        full log or the compacted table.
        """
        with self.transaction():
            self.conn.execute(f"""
                CREATE TEMP TABLE {WATERMARK_TABLE}_compacted AS
                SELECT table_name, last_unix_time
                FROM (
                    SELECT
                        table_name,
                        last_unix_time,
                        ROW_NUMBER() OVER (
                            PARTITION BY table_name ORDER BY last_unix_time DESC
                        ) AS rn
                    FROM {WATERMARK_TABLE}
                )
                WHERE rn = 1
                ORDER BY table_name
            """)
            self.conn.execute(f"""
                CREATE OR REPLACE TABLE {WATERMARK_TABLE} AS
                SELECT table_name, last_unix_time FROM {WATERMARK_TABLE}_compacted
            """)
            self.conn.execute(f"DROP TABLE {WATERMARK_TABLE}_compacted")

    def get_watermark_rows(self) -> List[Tuple[str, int]]:
        result = self.conn.execute(f"""
            SELECT table_name, last_unix_time FROM {WATERMARK_TABLE}
            ORDER BY table_name, last_unix_time
        """).fetchall()
        return [(row[0], int(row[1])) for row in result]

    def count_watermark_rows(self) -> int:
        result = self.conn.execute(f"SELECT COUNT(*) FROM {WATERMARK_TABLE}").fetchone()
        return result[0] if result else 0

    # ==================== Price Table Operations ====================

    def ensure_price_table(self, table_name: str):
        """
        Create the price table for a series if it doesn't exist.

        :param table_name: Series table name
        """
        self.conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {quote_identifier(table_name)} (
                unix_time BIGINT,
                close_time TIMESTAMP,
                open_price DECIMAL(18, 2),
                high_price DECIMAL(18, 2),
                low_price DECIMAL(18, 2),
                close_price DECIMAL(18, 2),
                volume DECIMAL(38, 8),
                quote_volume DECIMAL(38, 8),
                ingested_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

    def insert_price_points(self, table_name: str, points: Sequence[PricePoint]):
        """
        Append price points to a series table (no upsert).

        :param table_name: Series table name
        :param points: Normalized price points
        """
        if not points:
            return

        self.ensure_price_table(table_name)

        rows = [
            [
                p.unix_time_int,
                # close_time is stored as naive UTC
                p.close_time.replace(tzinfo=None),
                Decimal(p.open_price),
                Decimal(p.high_price),
                Decimal(p.low_price),
                Decimal(p.close_price),
                Decimal(p.volume),
                Decimal(p.quote_volume),
            ]
            for p in points
        ]

        with self.transaction():
            self.conn.executemany(f"""
                INSERT INTO {quote_identifier(table_name)} (
                    unix_time, close_time, open_price, high_price,
                    low_price, close_price, volume, quote_volume
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, rows)

        logger.info(f"Inserted {len(points)} price points into {table_name}")

    def table_exists(self, table_name: str) -> bool:
        result = self.conn.execute("""
            SELECT COUNT(*) FROM information_schema.tables
            WHERE table_schema = 'main' AND table_name = ?
        """, [table_name]).fetchone()
        return result[0] > 0

    def get_price_point_count(self, table_name: str) -> int:
        """
        Get count of price points stored for a series.

        :param table_name: Series table name
        :return: Number of rows, 0 if the table doesn't exist
        """
        if not self.table_exists(table_name):
            return 0
        result = self.conn.execute(
            f"SELECT COUNT(*) FROM {quote_identifier(table_name)}"
        ).fetchone()
        return result[0] if result else 0

    def get_price_points(self, table_name: str) -> List[Dict[str, Any]]:
        """Rows of a series table ordered by unix time."""
        if not self.table_exists(table_name):
            return []
        cursor = self.conn.execute(f"""
            SELECT unix_time, close_time, open_price, high_price,
                   low_price, close_price, volume, quote_volume
            FROM {quote_identifier(table_name)}
            ORDER BY unix_time
        """)
        columns = [d[0] for d in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    # ==================== Utility Methods ====================

    def get_collection_summary(self, table_names: Sequence[str]) -> Dict[str, Any]:
        """
        Get summary statistics about collection progress.

        :param table_names: Series tables to include
        :return: Dictionary with summary statistics
        """
        watermarks = self.select_latest_watermarks()
        state = self.get_collector_state()

        return {
            "total_series": len(table_names),
            "series_with_data": sum(1 for t in table_names if t in watermarks),
            "total_price_points": sum(self.get_price_point_count(t) for t in table_names),
            "watermark_rows": self.count_watermark_rows(),
            "last_run_label": state.last_run_label,
            "run_status": state.run_status,
            "last_updated": state.last_updated_ts
        }
