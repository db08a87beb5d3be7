"""
Ingestion orchestration module for OHLC market data.

This module implements the control flow of one collector run:
- Load every series watermark once (a stable snapshot for the run)
- Per series, in catalog order: fetch -> normalize -> write -> advance watermark
- Compact the watermark log after all series succeeded

Any failure aborts the run, is forwarded to the failure reporter and re-raised.
Series written before the failure are kept; the failed series keeps its old
watermark and is fetched again on the next run.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from zoneinfo import ZoneInfo

import duckdb

from .archive import BlobStore, LocalBlobStore, GCSBlobStore
from .catalog import Series, SeriesCatalog, build_catalog
from .config import (
    CollectorSecrets, ARCHIVE_BACKEND_GCS, default_secrets, load_secrets, resolve_project_id
)
from .duckdb_store import DuckDBStore
from .errors import CollectorError, ConfigError, ReportingError, RunCancelled
from .market_api import CryptowatchAPI
from .normalizer import normalize
from .reporting import FailureContext, FailureReporter, LoggingFailureReporter, SlackFailureReporter
from .sinks import DualSinkWriter
from .watermarks import WatermarkStore

logger = logging.getLogger(__name__)

RUN_LABEL_FORMAT = "%Y%m%d_%Hh"


@dataclass(frozen=True)
class RunContext:
    """Per-run values shared by every series of the run."""
    execution_timestamp: datetime
    run_label: str
    cancel_event: Optional[threading.Event] = None

    @classmethod
    def create(
        cls,
        display_timezone: str = "Asia/Tokyo",
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> "RunContext":
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        label = now.astimezone(ZoneInfo(display_timezone)).strftime(RUN_LABEL_FORMAT)
        return cls(execution_timestamp=now, run_label=label, cancel_event=cancel_event)

    def check_cancelled(self, table_name: Optional[str] = None):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RunCancelled("Collector run was cancelled", table_name=table_name)


@dataclass
class SeriesOutcome:
    series: Series
    points_written: int
    watermark: Optional[int]
    archive_path: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.points_written == 0


def report_run_failure(reporter: FailureReporter, context: FailureContext, error: BaseException):
    """
    Forward a run failure to the reporter.

    A reporter failure is logged and raised as ReportingError chained from
    the original error; it is never reported again.
    """
    try:
        reporter.report_failure(context, str(error))
    except Exception as report_error:
        logger.error(f"Failed to report collector failure: {report_error}")
        raise ReportingError(
            f"Failed to report failure '{error}': {report_error}",
            table_name=context.table_name
        ) from error


def build_reporter(secrets: CollectorSecrets) -> FailureReporter:
    if secrets.report.slack_webhook_url:
        return SlackFailureReporter(
            secrets.report.slack_webhook_url,
            timeout_seconds=secrets.timeout_seconds,
            display_timezone=secrets.display_timezone
        )
    return LoggingFailureReporter()


def build_blob_store(secrets: CollectorSecrets) -> BlobStore:
    if secrets.archive.backend == ARCHIVE_BACKEND_GCS:
        return GCSBlobStore(secrets.archive.bucket, timeout_seconds=secrets.timeout_seconds)
    return LocalBlobStore(secrets.archive.base_path)


class CollectionOrchestrator:
    """
    Orchestrates one collection run over the series catalog.

    The run is sequential. process_series() is the per-series task and only
    reads the watermark snapshot it is given, so it can be scheduled on a
    worker pool without changing the snapshot-per-run behaviour.
    """

    def __init__(
        self,
        catalog: SeriesCatalog,
        store: DuckDBStore,
        fetcher: CryptowatchAPI,
        writer: DualSinkWriter,
        reporter: Optional[FailureReporter] = None,
        source_context: str = "CollectBtcMarketPrice",
        project_id: Optional[str] = None,
        display_timezone: str = "Asia/Tokyo"
    ):
        self.catalog = catalog
        self.granularity_keys = catalog.granularity_keys
        self.store = store
        self.watermark_store = WatermarkStore(store)
        self.fetcher = fetcher
        self.writer = writer
        self.reporter = reporter or LoggingFailureReporter()
        self.source_context = source_context
        self.project_id = project_id
        self.display_timezone = display_timezone
        self._in_flight_table: Optional[str] = None

    @classmethod
    def from_secrets(
        cls,
        secrets: CollectorSecrets,
        catalog: Optional[SeriesCatalog] = None,
        project_id: Optional[str] = None,
        blob_store: Optional[BlobStore] = None,
        reporter: Optional[FailureReporter] = None
    ) -> "CollectionOrchestrator":
        """
        Build an orchestrator and its collaborators from configuration.

        :param secrets: Parsed collector configuration
        :param catalog: Series to collect (defaults to the built-in catalog)
        :param project_id: Resolved project id, used in failure reports
        :param blob_store: Archive backend override
        :param reporter: Failure reporter override
        :raises ConfigError: if the warehouse or the archive client cannot be opened
        """
        try:
            store = DuckDBStore(secrets.db_path)
        except duckdb.Error as e:
            raise ConfigError(f"Cannot open warehouse {secrets.db_path}: {e}") from e

        if blob_store is None:
            try:
                blob_store = build_blob_store(secrets)
            except Exception as e:
                store.close()
                raise ConfigError(
                    f"Cannot create {secrets.archive.backend} archive client: {e}"
                ) from e

        writer = DualSinkWriter(store, blob_store, archive_prefix=secrets.archive.prefix)
        return cls(
            catalog=catalog or build_catalog(),
            store=store,
            fetcher=CryptowatchAPI(secrets.base_url, secrets.timeout_seconds),
            writer=writer,
            reporter=reporter or build_reporter(secrets),
            source_context=secrets.function_name,
            project_id=project_id or secrets.project_id,
            display_timezone=secrets.display_timezone
        )

    def run(
        self,
        cancel_event: Optional[threading.Event] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Execute one collection run.

        :param cancel_event: Set to stop the run before the next step
        :param now: Execution timestamp override
        :return: Summary of the run
        """
        self._in_flight_table = None

        try:
            run_context = RunContext.create(self.display_timezone, now=now, cancel_event=cancel_event)
            self.store.update_collector_state(
                last_run_label=run_context.run_label,
                run_status=DuckDBStore.RUN_STATUS_RUNNING
            )
            outcomes = self._run_series(run_context)
            self.store.update_collector_state(run_status=DuckDBStore.RUN_STATUS_IDLE)
        except Exception as e:
            logger.error(f"Collection failed: {e}")
            self._mark_error()
            table_name = getattr(e, "table_name", None) or self._in_flight_table
            context = FailureContext(
                source_context=self.source_context,
                event_time=datetime.now(timezone.utc),
                project_id=self.project_id,
                table_name=table_name
            )
            report_run_failure(self.reporter, context, e)
            raise

        return self._summarize(run_context, outcomes)

    def _run_series(self, run_context: RunContext) -> List[SeriesOutcome]:
        watermarks = self.load_watermarks()

        outcomes = []
        for series in self.catalog:
            self._in_flight_table = series.table_name
            try:
                outcomes.append(self.process_series(series, watermarks, run_context))
            except CollectorError as e:
                if e.table_name is None:
                    e.table_name = series.table_name
                raise
        self._in_flight_table = None

        self.watermark_store.compact()
        return outcomes

    def load_watermarks(self) -> Dict[str, int]:
        """Snapshot of the current watermark per table."""
        return self.watermark_store.load_all()

    def process_series(
        self,
        series: Series,
        watermarks: Dict[str, int],
        run_context: RunContext
    ) -> SeriesOutcome:
        """
        Fetch, normalize, write and advance the watermark for one series.

        :param series: Series to process
        :param watermarks: Snapshot loaded at the start of the run
        :param run_context: Context of the current run
        :return: SeriesOutcome; points_written is 0 when nothing new closed
        """
        previous = watermarks.get(series.table_name)

        run_context.check_cancelled(series.table_name)
        bundle = self.fetcher.fetch(series, previous)

        points = normalize(bundle.rows_for(series, self.granularity_keys), table_name=series.table_name)
        if not points:
            logger.info(f"No closed buckets for {series.table_name} since {previous}, skipping")
            return SeriesOutcome(series=series, points_written=0, watermark=previous)

        run_context.check_cancelled(series.table_name)
        path = self.writer.write(series, points, run_context.run_label)

        new_watermark = points[-1].unix_time_int
        if previous is not None and new_watermark <= previous:
            logger.warning(
                f"Last bucket {new_watermark} of {series.table_name} is not after "
                f"watermark {previous}; upstream rows may be unordered"
            )

        run_context.check_cancelled(series.table_name)
        self.watermark_store.append(series.table_name, new_watermark)

        return SeriesOutcome(
            series=series,
            points_written=len(points),
            watermark=new_watermark,
            archive_path=path
        )

    def _mark_error(self):
        try:
            self.store.update_collector_state(run_status=DuckDBStore.RUN_STATUS_ERROR)
        except Exception as e:
            logger.warning(f"Could not record error status: {e}")

    def _summarize(self, run_context: RunContext, outcomes: List[SeriesOutcome]) -> Dict[str, Any]:
        written = [o for o in outcomes if not o.skipped]
        summary = {
            "run_label": run_context.run_label,
            "execution_timestamp": run_context.execution_timestamp,
            "series_total": len(outcomes),
            "series_written": len(written),
            "series_skipped": len(outcomes) - len(written),
            "points_written": sum(o.points_written for o in written),
            "watermarks": {o.series.table_name: o.watermark for o in outcomes if o.watermark is not None},
        }
        logger.info(
            f"Collection run {run_context.run_label} complete: {summary['series_written']} written, "
            f"{summary['series_skipped']} skipped, {summary['points_written']} points"
        )
        return summary

    def get_status(self) -> Dict[str, Any]:
        """
        Get current collection status.

        :return: Status summary dictionary
        """
        return self.store.get_collection_summary(self.catalog.table_names)

    def close(self):
        """Close database connection."""
        self.store.close()


def _report_setup_failure(secrets: CollectorSecrets, error: Exception, project_id: Optional[str] = None):
    context = FailureContext(
        source_context=secrets.function_name,
        event_time=datetime.now(timezone.utc),
        project_id=project_id,
    )
    report_run_failure(build_reporter(secrets), context, error)


def run_collection(
    secrets: Optional[CollectorSecrets] = None,
    catalog: Optional[SeriesCatalog] = None,
    cancel_event: Optional[threading.Event] = None
) -> Dict[str, Any]:
    """
    Convenience function to run a full collection cycle.

    Resolves the project id and opens the warehouse and archive clients
    first; a ConfigError from any of them is reported and raised before any
    series is processed.

    :param secrets: Parsed configuration (loaded from file/env if omitted)
    :param catalog: Series to collect
    :param cancel_event: Optional cancellation signal
    :return: Run summary
    """
    if secrets is None:
        try:
            secrets = load_secrets()
        except ConfigError as e:
            # no configured reporter without a configuration
            logger.error(f"Cannot load configuration: {e}")
            context = FailureContext(
                source_context=default_secrets()["function_name"],
                event_time=datetime.now(timezone.utc),
            )
            report_run_failure(LoggingFailureReporter(), context, e)
            raise

    try:
        project_id = resolve_project_id(secrets)
    except ConfigError as e:
        logger.error(f"Cannot resolve project: {e}")
        _report_setup_failure(secrets, e)
        raise

    try:
        orchestrator = CollectionOrchestrator.from_secrets(secrets, catalog=catalog, project_id=project_id)
    except ConfigError as e:
        logger.error(f"Cannot set up collector: {e}")
        _report_setup_failure(secrets, e, project_id=project_id)
        raise

    try:
        return orchestrator.run(cancel_event=cancel_event)
    finally:
        orchestrator.close()


if __name__ == "__main__":
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Run collection
    print("Starting OHLC market data collection...")
    result = run_collection()
    print(f"\nCollection complete!")
    print(f"  Run label: {result['run_label']}")
    print(f"  Series written: {result['series_written']}")
    print(f"  Series skipped: {result['series_skipped']}")
    print(f"  Points written: {result['points_written']}")
