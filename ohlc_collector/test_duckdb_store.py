"""
Tests for DuckDB persistence layer.

Tests cover:
- Schema initialization
- Collector state operations
- Append-only price tables
- Watermark SQL primitives
"""

import pytest
from decimal import Decimal
from datetime import datetime

from ohlc_collector.duckdb_store import DuckDBStore, CollectorState, WATERMARK_TABLE
from ohlc_collector.normalizer import normalize


TABLE = "BITMEX_BTCUSD-PERPETUAL-FUTURE-INVERSE_1M"


@pytest.fixture
def store():
    """Create an in-memory DuckDB store for testing."""
    store = DuckDBStore(db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def sample_points():
    return normalize([
        [1000, 10, 12, 9, 11, 5, 50],
        [1060, 11, 13, 10, 12, 6, 60],
        [1120, 12, 12, 12, 12, 0, 0],
    ])


class TestSchemaInitialization:

    def test_initialize_schema_creates_tables(self, store):
        result = store.conn.execute("""
            SELECT table_name FROM information_schema.tables
            WHERE table_schema = 'main'
        """).fetchall()

        table_names = [row[0] for row in result]

        assert "collector_state" in table_names
        assert WATERMARK_TABLE in table_names

    def test_collector_state_singleton_initialized(self, store):
        result = store.conn.execute("SELECT COUNT(*) FROM collector_state").fetchone()

        assert result[0] == 1

    def test_reopen_keeps_data(self, tmp_path):
        db_path = str(tmp_path / "market.duckdb")
        first = DuckDBStore(db_path)
        first.insert_watermark("BINANCE_BTCUSDT_1M", 1060)
        first.close()

        second = DuckDBStore(db_path)
        try:
            assert second.select_latest_watermarks() == {"BINANCE_BTCUSDT_1M": 1060}
            assert second.count_watermark_rows() == 1
        finally:
            second.close()


class TestCollectorState:

    def test_default_state(self, store):
        state = store.get_collector_state()

        assert isinstance(state, CollectorState)
        assert state.last_run_label is None
        assert state.run_status == "idle"

    def test_partial_updates_preserve_other_fields(self, store):
        store.update_collector_state(last_run_label="20240101_09h", run_status="running")
        store.update_collector_state(run_status="error")

        state = store.get_collector_state()

        assert state.last_run_label == "20240101_09h"
        assert state.run_status == "error"
        assert isinstance(state.last_updated_ts, datetime)


class TestPriceTables:

    def test_insert_creates_table_with_typed_columns(self, store, sample_points):
        store.insert_price_points(TABLE, sample_points)

        rows = store.get_price_points(TABLE)

        assert len(rows) == 2
        assert rows[0]["unix_time"] == 1000
        assert rows[0]["close_time"] == datetime(1970, 1, 1, 0, 16, 40)
        assert rows[0]["close_price"] == Decimal("11.00")
        assert rows[1]["volume"] == Decimal("6.00000000")
        assert rows[1]["quote_volume"] == Decimal("60.00000000")

    def test_insert_is_append_only(self, store, sample_points):
        store.insert_price_points(TABLE, sample_points)
        store.insert_price_points(TABLE, sample_points)

        assert store.get_price_point_count(TABLE) == 4

    def test_empty_batch_creates_nothing(self, store):
        store.insert_price_points(TABLE, [])

        assert store.table_exists(TABLE) is False
        assert store.get_price_point_count(TABLE) == 0
        assert store.get_price_points(TABLE) == []


class TestWatermarkPrimitives:

    def test_latest_watermark_per_table(self, store):
        store.insert_watermark("A_1M", 1000)
        store.insert_watermark("A_1M", 1060)
        store.insert_watermark("A_1M", 1030)
        store.insert_watermark("B_1H", 3600)

        assert store.select_latest_watermarks() == {"A_1M": 1060, "B_1H": 3600}

    def test_replace_keeps_only_latest_rows(self, store):
        store.insert_watermark("A_1M", 1000)
        store.insert_watermark("A_1M", 1060)
        store.insert_watermark("B_1H", 3600)

        store.replace_watermarks_with_latest()

        assert store.get_watermark_rows() == [("A_1M", 1060), ("B_1H", 3600)]


class TestSummary:

    def test_collection_summary(self, store, sample_points):
        store.insert_price_points(TABLE, sample_points)
        store.insert_watermark(TABLE, 1060)

        summary = store.get_collection_summary([TABLE, "BINANCE_BTCUSDT_1M"])

        assert summary["total_series"] == 2
        assert summary["series_with_data"] == 1
        assert summary["total_price_points"] == 2
        assert summary["watermark_rows"] == 1
        assert summary["run_status"] == "idle"
