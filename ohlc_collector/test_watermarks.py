"""
Tests for the append-only watermark store.

Tests cover:
- Latest-wins reads over uncompacted logs
- Append semantics
- Compaction and its idempotence
- Error translation
"""

import duckdb
import pytest

from ohlc_collector.duckdb_store import DuckDBStore, WATERMARK_TABLE
from ohlc_collector.errors import StoreReadError, StoreWriteError, StoreCompactionError
from ohlc_collector.watermarks import WatermarkStore


class FailingReplaceConnection:
    """Connection wrapper whose CREATE OR REPLACE statements fail."""

    def __init__(self, conn):
        self._conn = conn

    def execute(self, query, *args, **kwargs):
        if "CREATE OR REPLACE" in query:
            raise duckdb.Error("replace failed")
        return self._conn.execute(query, *args, **kwargs)

    def __getattr__(self, name):
        return getattr(self._conn, name)


@pytest.fixture
def store():
    store = DuckDBStore(db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def watermarks(store):
    return WatermarkStore(store)


def test_load_all_empty(watermarks):
    assert watermarks.load_all() == {}


def test_append_is_insert_not_update(watermarks):
    watermarks.append("BINANCE_BTCUSDT_1M", 1000)
    watermarks.append("BINANCE_BTCUSDT_1M", 1060)

    assert watermarks.row_count() == 2
    assert watermarks.load_all() == {"BINANCE_BTCUSDT_1M": 1060}


def test_load_all_takes_max_regardless_of_insert_order(watermarks):
    watermarks.append("BINANCE_BTCUSDT_1M", 1060)
    watermarks.append("BINANCE_BTCUSDT_1M", 1000)
    watermarks.append("BITFLYER_BTCFXJPY_1H", 7200)

    assert watermarks.load_all() == {"BINANCE_BTCUSDT_1M": 1060, "BITFLYER_BTCFXJPY_1H": 7200}


def test_compact_leaves_one_row_per_table(store, watermarks):
    for unix_time in (1000, 1060, 1120):
        watermarks.append("BINANCE_BTCUSDT_1M", unix_time)
    watermarks.append("BITFLYER_BTCFXJPY_1H", 3600)
    watermarks.append("BITFLYER_BTCFXJPY_1H", 7200)

    watermarks.compact()

    assert watermarks.row_count() == 2
    assert store.get_watermark_rows() == [
        ("BINANCE_BTCUSDT_1M", 1120),
        ("BITFLYER_BTCFXJPY_1H", 7200),
    ]


def test_compact_with_duplicate_max_rows(watermarks):
    watermarks.append("BINANCE_BTCUSDT_1M", 1060)
    watermarks.append("BINANCE_BTCUSDT_1M", 1060)

    watermarks.compact()

    assert watermarks.row_count() == 1
    assert watermarks.load_all() == {"BINANCE_BTCUSDT_1M": 1060}


def test_compact_twice_is_idempotent(watermarks):
    watermarks.append("BINANCE_BTCUSDT_1M", 1000)
    watermarks.append("BINANCE_BTCUSDT_1M", 1060)
    watermarks.append("BITFLYER_BTCFXJPY_1H", 3600)

    watermarks.compact()
    first = watermarks.load_all()
    watermarks.compact()

    assert watermarks.load_all() == first
    assert watermarks.row_count() == 2


def test_compact_preserves_load_all(watermarks):
    watermarks.append("BINANCE_BTCUSDT_1M", 1060)
    watermarks.append("BINANCE_BTCUSDT_1M", 1000)
    before = watermarks.load_all()

    watermarks.compact()

    assert watermarks.load_all() == before


def test_append_after_compact(watermarks):
    watermarks.append("BINANCE_BTCUSDT_1M", 1000)
    watermarks.compact()

    watermarks.append("BINANCE_BTCUSDT_1M", 1060)

    assert watermarks.load_all() == {"BINANCE_BTCUSDT_1M": 1060}


class TestErrors:

    def test_read_failure(self, store, watermarks):
        store.conn.execute(f"DROP TABLE {WATERMARK_TABLE}")

        with pytest.raises(StoreReadError):
            watermarks.load_all()

    def test_write_failure_carries_table(self, store, watermarks):
        store.conn.execute(f"DROP TABLE {WATERMARK_TABLE}")

        with pytest.raises(StoreWriteError) as exc_info:
            watermarks.append("BINANCE_BTCUSDT_1M", 1060)

        assert exc_info.value.table_name == "BINANCE_BTCUSDT_1M"

    def test_compaction_failure(self, store, watermarks):
        store.conn.execute(f"DROP TABLE {WATERMARK_TABLE}")

        with pytest.raises(StoreCompactionError):
            watermarks.compact()

    def test_failed_replace_keeps_full_log(self, store, watermarks):
        watermarks.append("A_1M", 1000)
        watermarks.append("A_1M", 1060)
        conn = store.conn
        store.conn = FailingReplaceConnection(conn)
        try:
            with pytest.raises(StoreCompactionError):
                watermarks.compact()
        finally:
            store.conn = conn

        assert store.get_watermark_rows() == [("A_1M", 1000), ("A_1M", 1060)]
        leftover = store.conn.execute(
            "SELECT COUNT(*) FROM duckdb_tables() WHERE table_name = ?",
            [f"{WATERMARK_TABLE}_compacted"]
        ).fetchone()[0]
        assert leftover == 0

        watermarks.compact()

        assert store.get_watermark_rows() == [("A_1M", 1060)]
