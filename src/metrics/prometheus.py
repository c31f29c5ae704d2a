"""
Prometheus metrics for the ingestion pipeline.

Exposes counters, gauges, and histograms that track generation throughput,
bulk request latency, document failures and error-log volume. All metrics
are prefixed with the configured namespace (default: log_ingest).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from src.config import settings

logger = logging.getLogger(__name__)

_metrics_instance: IngestMetrics | None = None
_lock = threading.Lock()


@dataclass
class IngestMetrics:
    """Container for all ingestion Prometheus metrics."""

    # Source metrics
    records_generated: Counter

    # Uploader metrics
    documents_inserted: Counter
    documents_failed: Counter
    batches_sent: Counter
    batch_failures: Counter
    batch_size: Histogram
    batch_latency: Histogram
    batches_in_flight: Gauge

    # Error log and progress
    errors_logged: Counter
    progress_ratio: Gauge


def create_metrics() -> IngestMetrics:
    """Create and register all Prometheus metrics."""
    ns = settings.metrics.namespace

    return IngestMetrics(
        records_generated=Counter(
            f"{ns}_records_generated_total",
            "Total number of log records produced by the record source",
        ),
        documents_inserted=Counter(
            f"{ns}_documents_inserted_total",
            "Total documents acknowledged by OpenSearch",
        ),
        documents_failed=Counter(
            f"{ns}_documents_failed_total",
            "Total documents rejected in bulk responses",
            ["error_type"],
        ),
        batches_sent=Counter(
            f"{ns}_batches_sent_total",
            "Total bulk requests that returned a response",
        ),
        batch_failures=Counter(
            f"{ns}_batch_failures_total",
            "Total batches that could not be uploaded",
            ["stage"],
        ),
        batch_size=Histogram(
            f"{ns}_batch_size",
            "Number of documents per bulk request",
            buckets=[100, 500, 1000, 2500, 5000, 10000],
        ),
        batch_latency=Histogram(
            f"{ns}_batch_latency_seconds",
            "Round-trip time of one bulk request",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
        ),
        batches_in_flight=Gauge(
            f"{ns}_batches_in_flight",
            "Number of bulk requests currently outstanding",
        ),
        errors_logged=Counter(
            f"{ns}_errors_logged_total",
            "Total entries written to the error log",
            ["error_type"],
        ),
        progress_ratio=Gauge(
            f"{ns}_ingest_progress_ratio",
            "Fraction of the expected records inserted so far",
        ),
    )


def get_metrics() -> IngestMetrics:
    """Get the singleton metrics instance (lazy initialization)."""
    global _metrics_instance
    if _metrics_instance is None:
        with _lock:
            if _metrics_instance is None:
                _metrics_instance = create_metrics()
    return _metrics_instance


def start_metrics_server() -> None:
    """Start the Prometheus HTTP metrics server in a daemon thread."""
    port = settings.metrics.port
    try:
        start_http_server(port)
        logger.info("Prometheus metrics server started on port %d", port)
    except OSError as exc:
        logger.warning("Could not start metrics server on port %d: %s", port, exc)
