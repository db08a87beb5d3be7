"""
Static catalog of the price series collected from the market API.

A series is one exchange/ticker pair at one granularity and maps to exactly
one warehouse table. The catalog is built once at startup and handed to the
orchestrator; nothing in it is mutated afterwards.
"""

from dataclasses import dataclass
from typing import Dict, Iterator, Sequence, Tuple


@dataclass(frozen=True)
class Exchange:
    exchange_name: str
    ticker: str
    table_name: str


@dataclass(frozen=True)
class Period:
    seconds: int
    label: str


@dataclass(frozen=True)
class Series:
    """One exchange/ticker/granularity combination."""
    exchange_id: str
    ticker: str
    granularity_seconds: int
    granularity_label: str
    exchange_table: str

    @property
    def table_name(self) -> str:
        return f"{self.exchange_table}_{self.granularity_label}"

    @property
    def result_key(self) -> str:
        """Key of this granularity in the API's ``result`` object."""
        return str(self.granularity_seconds)


DEFAULT_EXCHANGES: Tuple[Exchange, ...] = (
    Exchange("bitflyer", "btcfxjpy", "BITFLYER_BTCFXJPY"),
    Exchange("bitmex", "btcusd-perpetual-future-inverse", "BITMEX_BTCUSD-PERPETUAL-FUTURE-INVERSE"),
    Exchange("bitfinex", "btcusd", "BITFINEX_BTCUSD"),
    Exchange("binance", "btcusdt", "BINANCE_BTCUSDT"),
)

DEFAULT_PERIODS: Tuple[Period, ...] = (
    Period(60, "1M"),
    Period(180, "3M"),
    Period(300, "5M"),
    Period(900, "15M"),
    Period(1800, "30M"),
    Period(3600, "1H"),
    Period(7200, "2H"),
    Period(14400, "4H"),
    Period(21600, "6H"),
    Period(43200, "12H"),
    Period(86400, "1D"),
    Period(259200, "3D"),
    Period(604800, "1W"),
)


class SeriesCatalog:
    """
    Ordered, immutable collection of series.

    Iteration order is exchange-major, period-minor, and is the order in
    which the orchestrator processes series.
    """

    def __init__(self, series: Sequence[Series]):
        self._series: Tuple[Series, ...] = tuple(series)
        table_names = [s.table_name for s in self._series]
        if len(set(table_names)) != len(table_names):
            raise ValueError("Duplicate table names in series catalog")
        # granularity seconds -> key of the matching sequence in the API result
        self._granularity_keys: Dict[int, str] = {
            s.granularity_seconds: s.result_key for s in self._series
        }

    def __iter__(self) -> Iterator[Series]:
        return iter(self._series)

    def __len__(self) -> int:
        return len(self._series)

    @property
    def series(self) -> Tuple[Series, ...]:
        return self._series

    @property
    def granularity_keys(self) -> Dict[int, str]:
        return dict(self._granularity_keys)

    @property
    def table_names(self) -> Tuple[str, ...]:
        return tuple(s.table_name for s in self._series)

    def get(self, table_name: str) -> Series:
        for s in self._series:
            if s.table_name == table_name:
                return s
        raise KeyError(table_name)


def build_catalog(
    exchanges: Sequence[Exchange] = DEFAULT_EXCHANGES,
    periods: Sequence[Period] = DEFAULT_PERIODS
) -> SeriesCatalog:
    """
    Build the catalog as the cross product of exchanges and periods.

    :param exchanges: Exchanges to collect, in processing order
    :param periods: Granularities to collect per exchange, in processing order
    :return: SeriesCatalog
    """
    return SeriesCatalog([
        Series(
            exchange_id=exchange.exchange_name,
            ticker=exchange.ticker,
            granularity_seconds=period.seconds,
            granularity_label=period.label,
            exchange_table=exchange.table_name,
        )
        for exchange in exchanges
        for period in periods
    ])
