"""
Stream ingestion: generate synthetic logs and bulk-load them into OpenSearch.

Usage:
    python -m scripts.ingest --total 500000 --batch-size 5000 --concurrency 2

SIGINT/SIGTERM stop generation; batches already accepted are still uploaded
before the summary is printed. Exits non-zero if the run failed or any
document was rejected.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone

from src.config import settings
from src.errors import IngestionError
from src.metrics.prometheus import start_metrics_server
from src.models import IngestionResult
from src.pipeline.ingestion import IngestionPipeline, default_index_name

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    cfg = settings.ingest
    parser = argparse.ArgumentParser(description="Generate logs and stream them into OpenSearch")
    parser.add_argument(
        "--total", type=int, default=cfg.total_records,
        help=f"Number of logs to generate (default: {cfg.total_records})",
    )
    parser.add_argument(
        "--batch-size", "--batch", dest="batch_size", type=int, default=cfg.batch_size,
        help=f"Documents per bulk request (default: {cfg.batch_size})",
    )
    parser.add_argument(
        "--concurrency", type=int, default=cfg.concurrency,
        help=f"Bulk requests in flight (default: {cfg.concurrency})",
    )
    parser.add_argument(
        "--date", type=datetime.fromisoformat, default=None,
        help="Base date for log timestamps, YYYY-MM-DD (default: today, UTC)",
    )
    parser.add_argument(
        "--index", default=None,
        help=f"Target index (default: {cfg.index_prefix}-<date>)",
    )
    args = parser.parse_args(argv)
    args.concurrency = max(1, args.concurrency)
    return args


def log_summary(result: IngestionResult, pipeline: IngestionPipeline) -> None:
    bulk = result.bulk_metrics
    snapshot = result.metrics_snapshot

    logger.info("Summary: %s logs inserted", f"{result.total_inserted:,}")
    logger.info("Throughput: %.0f logs/sec over %.2fs", result.average_rate_per_second, result.elapsed_seconds)
    logger.info(
        "Batches: %d (avg %.0f docs, avg %.0fms, max %.0fms)",
        bulk.batches, bulk.average_batch_size,
        bulk.average_batch_duration_ms, bulk.max_batch_duration_ms,
    )
    logger.info(
        "Response time: min=%s max=%s avg=%s p95=%s",
        snapshot.response_time.min, snapshot.response_time.max,
        snapshot.response_time.avg, snapshot.response_time.p95,
    )
    top_services = sorted(snapshot.service_counts.items(), key=lambda kv: kv[1], reverse=True)[:5]
    logger.info("Top services: %s", ", ".join(f"{name}={count}" for name, count in top_services))
    logger.info("Errors in generated logs: %d", snapshot.error_count)

    if bulk.failed_documents > 0:
        logger.warning("Failed: %s documents", f"{bulk.failed_documents:,}")
    if pipeline.error_logger.get_error_count() > 0:
        logger.warning(
            "Errors: %d (details: %s)",
            pipeline.error_logger.get_error_count(), pipeline.error_logger.log_file_path,
        )


async def run(args: argparse.Namespace) -> int:
    base_date = args.date or datetime.now(timezone.utc)
    pipeline = IngestionPipeline(
        args.total,
        batch_size=args.batch_size,
        concurrency=args.concurrency,
        base_date=base_date,
        index_name=args.index or default_index_name(base_date),
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, pipeline.stop)

    logger.info("Stream ingestion: %s logs -> %s", f"{args.total:,}", pipeline.index_name)

    try:
        result = await pipeline.run()
    except IngestionError as exc:
        logger.error("Ingestion failed: %s", exc)
        return 1

    log_summary(result, pipeline)
    return 1 if result.bulk_metrics.failed_documents > 0 else 0


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    args = parse_args(argv)

    if settings.metrics.enabled:
        start_metrics_server()

    try:
        exit_code = asyncio.run(run(args))
    except Exception:
        logger.exception("Ingestion crashed")
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
