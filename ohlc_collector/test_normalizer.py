"""
Tests for raw row normalization.

Tests cover:
- Dropping the unstable trailing bucket
- Numeric formatting of prices and volumes
- Rejection of malformed rows
- CSV frame layout
"""

import pytest
from datetime import datetime, timezone

from ohlc_collector.errors import MalformedRowError
from ohlc_collector.normalizer import normalize, convert_row, to_dataframe, CSV_COLUMNS


SCENARIO_ROWS = [
    [1000, 10, 12, 9, 11, 5, 50],
    [1060, 11, 13, 10, 12, 6, 60],
    [1120, 12, 12, 12, 12, 0, 0],
]


class TestTailTrim:
    """The last bucket is always discarded."""

    @pytest.mark.parametrize("n", [2, 3, 10])
    def test_returns_n_minus_one_points(self, n):
        rows = [[1000 + i * 60, 1, 2, 0.5, 1.5, 3, 4] for i in range(n)]

        points = normalize(rows)

        assert len(points) == n - 1
        assert [p.unix_time for p in points] == [str(r[0]) for r in rows[:-1]]

    @pytest.mark.parametrize("rows", [[], [[1000, 10, 12, 9, 11, 5, 50]]])
    def test_short_input_yields_empty(self, rows):
        assert normalize(rows) == []

    def test_tail_row_is_not_validated(self):
        """Only retained rows are checked; the dropped tail may be partial."""
        rows = [[1000, 10, 12, 9, 11, 5, 50], [1060, 11]]

        points = normalize(rows)

        assert len(points) == 1


class TestFormatting:

    def test_end_to_end_scenario(self):
        points = normalize(SCENARIO_ROWS)

        assert [p.unix_time for p in points] == ["1000", "1060"]
        assert [p.close_price for p in points] == ["11.00", "12.00"]
        assert [p.volume for p in points] == ["5.00000000", "6.00000000"]
        assert points[-1].unix_time_int == 1060

    def test_field_for_field_conversion(self):
        point = convert_row([1700000000, 35000.123, 35100.5, 34900, 35050.999, 12.345678912, 432100.1])

        assert point.unix_time == "1700000000"
        assert point.open_price == "35000.12"
        assert point.high_price == "35100.50"
        assert point.low_price == "34900.00"
        assert point.close_price == "35051.00"
        assert point.volume == "12.34567891"
        assert point.quote_volume == "432100.10000000"

    def test_close_time_is_utc_epoch_seconds(self):
        point = convert_row([1000, 1, 1, 1, 1, 1, 1])

        assert point.close_time == datetime(1970, 1, 1, 0, 16, 40, tzinfo=timezone.utc)

    def test_float_unix_time_renders_without_fraction(self):
        point = convert_row([1000.0, 1, 1, 1, 1, 1, 1])

        assert point.unix_time == "1000"


class TestMalformedRows:

    @pytest.mark.parametrize("bad_row", [
        [1060, 11, 13, 10, 12, 6],
        [1060, 11, 13, 10, 12, 6, 60, 70],
    ])
    def test_wrong_length_raises(self, bad_row):
        rows = [[1000, 10, 12, 9, 11, 5, 50], bad_row, [1120, 12, 12, 12, 12, 0, 0]]

        with pytest.raises(MalformedRowError) as exc_info:
            normalize(rows, table_name="BINANCE_BTCUSDT_1M")

        assert exc_info.value.length == len(bad_row)
        assert exc_info.value.row == bad_row
        assert exc_info.value.table_name == "BINANCE_BTCUSDT_1M"

    def test_non_numeric_field_raises(self):
        rows = [[1000, "10", 12, 9, 11, 5, 50], [1060, 11, 13, 10, 12, 6, 60]]

        with pytest.raises(MalformedRowError):
            normalize(rows)

    @pytest.mark.parametrize("bad_row", [
        [1000, float("nan"), 12, 9, 11, 5, 50],
        [float("nan"), 10, 12, 9, 11, 5, 50],
        [1000, 10, float("inf"), 9, 11, 5, 50],
        [1000, 10, 12, 9, 11, 5, float("-inf")],
    ])
    def test_non_finite_field_raises(self, bad_row):
        rows = [bad_row, [1060, 11, 13, 10, 12, 6, 60]]

        with pytest.raises(MalformedRowError) as exc_info:
            normalize(rows, table_name="BINANCE_BTCUSDT_1M")

        assert exc_info.value.table_name == "BINANCE_BTCUSDT_1M"


class TestDataFrame:

    def test_columns_and_verbatim_values(self):
        df = to_dataframe(normalize(SCENARIO_ROWS))

        assert list(df.columns) == CSV_COLUMNS
        assert df["CLOSE_PRICE"].tolist() == ["11.00", "12.00"]
        assert df["VOLUME"].tolist() == ["5.00000000", "6.00000000"]
        assert df["CLOSE_TIME"].tolist() == ["1970-01-01T00:16:40Z", "1970-01-01T00:17:40Z"]

    def test_csv_keeps_precision(self):
        csv = to_dataframe(normalize(SCENARIO_ROWS)).to_csv(index=False)
        lines = csv.strip().splitlines()

        assert lines[0] == ",".join(CSV_COLUMNS)
        assert lines[1] == "1000,1970-01-01T00:16:40Z,10.00,12.00,9.00,11.00,5.00000000,50.00000000"
