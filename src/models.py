"""
Data model shared by the pipeline stages.

Records themselves stay plain dicts (they are serialized straight to JSON);
everything the pipeline computes about them is a dataclass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Literal

LogRecord = dict[str, Any]

# (index, base_date) -> record
RecordGenerator = Callable[[int, datetime], LogRecord]

ErrorType = Literal["insertion", "stream", "connection", "serialization", "unknown"]

LOG_LEVELS: tuple[str, ...] = ("trace", "debug", "info", "warn", "error", "fatal")
ENVIRONMENTS: tuple[str, ...] = ("production", "staging", "development")
CATEGORIES: tuple[str, ...] = ("application", "security", "performance", "audit", "system")


@dataclass
class BulkMetrics:
    """Cumulative counters of one uploader instance."""

    batches: int = 0
    total_inserted: int = 0
    failed_documents: int = 0
    failed_batches: int = 0
    total_duration_ms: float = 0.0
    max_batch_duration_ms: float = 0.0

    @property
    def average_batch_size(self) -> float:
        return self.total_inserted / self.batches if self.batches else 0.0

    @property
    def average_batch_duration_ms(self) -> float:
        return self.total_duration_ms / self.batches if self.batches else 0.0


@dataclass
class BatchOutcome:
    """Settled result of one upload task."""

    batch_index: int
    size: int
    inserted: int = 0
    failed: int = 0
    duration_ms: float = 0.0
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ProgressEvent:
    """Emitted once per settled batch: batch successes and the running total."""

    inserted: int
    total: int


@dataclass
class NumericSummary:
    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0


@dataclass
class ResponseTimeSummary(NumericSummary):
    p95: float = 0.0


@dataclass
class MetricsSnapshot:
    """Aggregates computed by the metrics collector."""

    total_generated: int
    level_counts: dict[str, int]
    service_counts: dict[str, int]
    environment_counts: dict[str, int]
    category_counts: dict[str, int]
    error_count: int
    response_time: ResponseTimeSummary
    cpu_usage: NumericSummary
    memory_mb: NumericSummary
    geo_counts: dict[str, int]
    tag_counts: dict[str, int]


@dataclass
class ErrorLogEntry:
    """One categorized failure, as written to the error log file."""

    timestamp: str
    error_type: ErrorType
    source: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestionResult:
    """Final report of one pipeline run."""

    total_inserted: int
    elapsed_seconds: float
    average_rate_per_second: float
    bulk_metrics: BulkMetrics
    metrics_snapshot: MetricsSnapshot
    stopped_early: bool = False
