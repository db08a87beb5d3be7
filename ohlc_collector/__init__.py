"""
OHLC market data collector package.

This package incrementally collects OHLC price series from the Cryptowatch
market API and persists them to a DuckDB warehouse and an archive store.

Modules:
    catalog: Series catalog (exchange x granularity)
    market_api: API client for the OHLC endpoint
    normalizer: Raw row to price point conversion
    duckdb_store: DuckDB persistence layer
    watermarks: Append-only watermark store
    archive: Local and GCS blob stores
    sinks: Dual-sink writer
    reporting: Failure reporters
    ingestion: Orchestration and control flow
"""

from .catalog import Series, SeriesCatalog, build_catalog
from .market_api import CryptowatchAPI, RawSeriesBundle
from .normalizer import PricePoint, normalize
from .duckdb_store import DuckDBStore
from .watermarks import WatermarkStore
from .sinks import DualSinkWriter
from .ingestion import CollectionOrchestrator, RunContext, run_collection

__all__ = [
    "Series",
    "SeriesCatalog",
    "build_catalog",
    "CryptowatchAPI",
    "RawSeriesBundle",
    "PricePoint",
    "normalize",
    "DuckDBStore",
    "WatermarkStore",
    "DualSinkWriter",
    "CollectionOrchestrator",
    "RunContext",
    "run_collection"
]
