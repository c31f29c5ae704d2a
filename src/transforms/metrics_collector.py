"""
Pass-through aggregation of log record statistics.

Every record flowing to the uploader is observed once: categorical counts,
running min/max/sum for response time, CPU and memory, and frequency tables
for geo locations and tags. The p95 response time is only computed when a
snapshot is requested, not per record.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator

from src.models import (
    CATEGORIES,
    ENVIRONMENTS,
    LOG_LEVELS,
    LogRecord,
    MetricsSnapshot,
    NumericSummary,
    ResponseTimeSummary,
)

logger = logging.getLogger(__name__)


@dataclass
class NumericTracker:
    """Running min/max/sum for one numeric field."""

    min: float = math.inf
    max: float = -math.inf
    total: float = 0.0

    def add(self, value: float) -> None:
        self.total += value
        if value < self.min:
            self.min = value
        if value > self.max:
            self.max = value

    def summary(self, count: int, digits: int | None = None) -> NumericSummary:
        if count == 0:
            return NumericSummary()
        low, high = self.min, self.max
        if digits is not None:
            low, high = round(low, digits), round(high, digits)
        return NumericSummary(min=low, max=high, avg=round(self.total / count, 2))


def percentile(values: list[float], fraction: float) -> float:
    """Nearest-rank style percentile: sorted[floor(n * fraction)], clamped."""
    if not values:
        return 0
    ordered = sorted(values)
    return ordered[min(int(len(ordered) * fraction), len(ordered) - 1)]


class LogMetricsCollector:
    """
    Aggregates statistics over the records of one run.

    Level, environment and category tables are pre-seeded with their
    enumerated values; a record outside those enumerations raises KeyError.
    """

    def __init__(self) -> None:
        self._total = 0
        self._level_counts: dict[str, int] = dict.fromkeys(LOG_LEVELS, 0)
        self._environment_counts: dict[str, int] = dict.fromkeys(ENVIRONMENTS, 0)
        self._category_counts: dict[str, int] = dict.fromkeys(CATEGORIES, 0)
        self._service_counts: Counter[str] = Counter()
        self._error_count = 0
        self._response_times: list[float] = []
        self._response_time = NumericTracker()
        self._cpu_usage = NumericTracker()
        self._memory_mb = NumericTracker()
        self._geo_counts: Counter[str] = Counter()
        self._tag_counts: Counter[str] = Counter()

    def observe(self, record: LogRecord) -> LogRecord:
        """Update the aggregates with one record and return it unchanged."""
        service = record["service"]
        metrics = record["metrics"]

        self._level_counts[record["level"]] += 1
        self._environment_counts[service["environment"]] += 1
        self._category_counts[record["category"]] += 1
        self._service_counts[service["name"]] += 1

        if record.get("error"):
            self._error_count += 1

        response_time = metrics["response_time_ms"]
        self._response_times.append(response_time)
        self._response_time.add(response_time)
        self._cpu_usage.add(metrics["cpu_usage"])
        self._memory_mb.add(metrics["memory_mb"])

        geo = record["geo"]
        self._geo_counts[f"{geo['country']}|{geo['city']}"] += 1
        self._tag_counts.update(record.get("tags", []))

        self._total += 1
        return record

    async def stream(self, records: AsyncIterable[LogRecord]) -> AsyncIterator[LogRecord]:
        """Observe every record of ``records`` and forward it downstream."""
        async for record in records:
            yield self.observe(record)

    def snapshot(self) -> MetricsSnapshot:
        count = self._total
        rt = self._response_time.summary(count)
        return MetricsSnapshot(
            total_generated=count,
            level_counts=dict(self._level_counts),
            service_counts=dict(self._service_counts),
            environment_counts=dict(self._environment_counts),
            category_counts=dict(self._category_counts),
            error_count=self._error_count,
            response_time=ResponseTimeSummary(
                min=rt.min,
                max=rt.max,
                avg=rt.avg,
                p95=percentile(self._response_times, 0.95),
            ),
            cpu_usage=self._cpu_usage.summary(count, digits=2),
            memory_mb=self._memory_mb.summary(count),
            geo_counts=dict(self._geo_counts),
            tag_counts=dict(self._tag_counts),
        )

    @property
    def total(self) -> int:
        return self._total
