"""
End-to-end ingestion pipeline.

Wires the record source, metrics collector, bulk uploader and progress
reporter together on one event loop, checks the store is reachable before
starting, and always drains the uploader (buffer and in-flight batches)
before returning or re-raising, so counters never undercount.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from datetime import datetime, timezone
from typing import Callable

from src.config import settings
from src.errors import IngestionError, StoreUnavailableError
from src.metrics.progress import ProgressReporter
from src.models import IngestionResult, ProgressEvent, RecordGenerator
from src.producer.log_generator import LogGenerator
from src.producer.record_source import RecordSource
from src.sink.bulk_uploader import BulkUploader
from src.sink.error_logger import ErrorLogger
from src.sink.opensearch_client import OpenSearchClient, StoreClient
from src.transforms.metrics_collector import LogMetricsCollector

logger = logging.getLogger(__name__)

SOURCE = "IngestionPipeline"


def default_index_name(base_date: datetime) -> str:
    return f"{settings.ingest.index_prefix}-{base_date:%Y-%m-%d}"


class IngestionPipeline:
    """
    One ingestion run, from generation to a drained uploader.

    Architecture:
        RecordSource -> LogMetricsCollector -> BulkUploader -> ProgressReporter
                             |                      |
                             +----- ErrorLogger ----+

    All state (bulk counters, metric aggregates) belongs to this instance,
    so several runs can share a process.
    """

    def __init__(
        self,
        total_records: int,
        batch_size: int | None = None,
        concurrency: int | None = None,
        base_date: datetime | None = None,
        index_name: str | None = None,
        generator: RecordGenerator | None = None,
        client: StoreClient | None = None,
        error_logger: ErrorLogger | None = None,
        on_progress: Callable[[ProgressEvent], None] | None = None,
    ) -> None:
        self._config = settings.ingest
        self._total = total_records
        self._batch_size = batch_size if batch_size is not None else self._config.batch_size
        self._concurrency = concurrency if concurrency is not None else self._config.concurrency
        self._base_date = base_date or datetime.now(timezone.utc)
        self._index_name = index_name or default_index_name(self._base_date)
        self._generator = generator or LogGenerator()
        self._client = client
        self._error_logger = error_logger or ErrorLogger(
            filename=f"errors-{self._index_name}-{int(time.time() * 1000)}.json"
        )
        self._on_progress = on_progress
        self._progress: ProgressReporter | None = None
        self._running = False

    @property
    def error_logger(self) -> ErrorLogger:
        return self._error_logger

    @property
    def index_name(self) -> str:
        return self._index_name

    def stop(self) -> None:
        """Stop pulling records; whatever was accepted is still uploaded."""
        if self._running:
            logger.info("Stop requested, finishing in-flight batches...")
        self._running = False

    async def run(self) -> IngestionResult:
        if self._client is not None:
            return await self._run(self._client)
        async with OpenSearchClient() as client:
            return await self._run(client)

    async def _run(self, client: StoreClient) -> IngestionResult:
        if not await client.check_connection():
            error = StoreUnavailableError("Unable to connect to OpenSearch cluster")
            self._error_logger.log_connection_error(SOURCE, str(error), error)
            self._error_logger.flush()
            raise error

        source = RecordSource(
            self._total,
            self._generator,
            self._base_date,
            error_logger=self._error_logger,
        )
        collector = LogMetricsCollector()
        uploader = BulkUploader(
            client,
            self._index_name,
            batch_size=self._batch_size,
            concurrency=self._concurrency,
            error_logger=self._error_logger,
            on_progress=self._handle_progress,
        )

        logger.info(
            "Generating %s logs to index %s (batch=%d, concurrency=%d)",
            f"{self._total:,}", self._index_name, self._batch_size, self._concurrency,
        )
        self._progress = ProgressReporter(self._total)
        start = time.monotonic()
        self._running = True

        try:
            async with contextlib.aclosing(collector.stream(source)) as records:
                async for record in records:
                    await uploader.submit(record)
                    if not self._running:
                        break
            bulk_metrics = await uploader.drain()
        except asyncio.CancelledError:
            logger.warning(
                "Ingestion cancelled; waiting for %d in-flight batches", uploader.in_flight
            )
            await self._drain_after_failure(uploader)
            self._error_logger.flush()
            raise
        except Exception as exc:
            logger.error("Fatal error in ingestion pipeline: %s", exc)
            self._error_logger.log_stream_error(
                SOURCE, f"Fatal error in ingestion pipeline: {exc}", exc
            )
            await self._drain_after_failure(uploader)
            self._error_logger.flush()
            raise
        finally:
            self._running = False

        elapsed = time.monotonic() - start
        rate = source.generated / elapsed if elapsed > 0 else 0.0
        stopped_early = source.generated < self._total

        logger.info(
            "Completed: %s logs in %.2fs (%d logs/sec)%s",
            f"{bulk_metrics.total_inserted:,}", elapsed, round(rate),
            " [stopped early]" if stopped_early else "",
        )
        if bulk_metrics.failed_documents > 0:
            logger.warning("Failed: %s documents", f"{bulk_metrics.failed_documents:,}")

        self._error_logger.flush()

        return IngestionResult(
            total_inserted=bulk_metrics.total_inserted,
            elapsed_seconds=elapsed,
            average_rate_per_second=rate,
            bulk_metrics=bulk_metrics,
            metrics_snapshot=collector.snapshot(),
            stopped_early=stopped_early,
        )

    def _handle_progress(self, event: ProgressEvent) -> None:
        if self._progress is not None:
            self._progress.report(event)
        if self._on_progress is not None:
            self._on_progress(event)

    @staticmethod
    async def _drain_after_failure(uploader: BulkUploader) -> None:
        """Settle everything already accepted; the original error wins."""
        try:
            await uploader.drain()
        except IngestionError as exc:
            logger.warning("Uploader drained with failure: %s", exc)


async def run_ingestion(
    total_records: int,
    batch_size: int | None = None,
    concurrency: int | None = None,
    base_date: datetime | None = None,
    index_name: str | None = None,
    generator: RecordGenerator | None = None,
    client: StoreClient | None = None,
    error_logger: ErrorLogger | None = None,
    on_progress: Callable[[ProgressEvent], None] | None = None,
) -> IngestionResult:
    """
    Generate ``total_records`` logs and bulk-insert them into OpenSearch.

    Raises StoreUnavailableError if the cluster health check fails, and
    re-raises any fatal stage error after in-flight batches have settled.
    """
    pipeline = IngestionPipeline(
        total_records,
        batch_size=batch_size,
        concurrency=concurrency,
        base_date=base_date,
        index_name=index_name,
        generator=generator,
        client=client,
        error_logger=error_logger,
        on_progress=on_progress,
    )
    return await pipeline.run()
