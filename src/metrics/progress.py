"""
Throttled progress reporting for long ingestion runs.

Progress events can arrive many times per second with several batches in
flight; a status line is written at most once per interval.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from src.config import settings
from src.metrics.prometheus import get_metrics
from src.models import ProgressEvent

logger = logging.getLogger(__name__)


class ProgressReporter:
    """Turns progress events into rate, percentage and ETA status lines."""

    def __init__(
        self,
        expected_total: int,
        interval_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._expected_total = expected_total
        self._interval = (
            interval_seconds if interval_seconds is not None
            else settings.ingest.progress_interval_seconds
        )
        self._clock = clock
        self._metrics = get_metrics()
        self._start = clock()
        self._last_update = self._start

    def report(self, event: ProgressEvent) -> str | None:
        """Log a status line if the interval has passed; return it, else None."""
        now = self._clock()
        if now - self._last_update <= self._interval:
            return None

        elapsed = now - self._start
        rate = event.total / elapsed if elapsed > 0 else 0.0
        remaining = max(self._expected_total - event.total, 0)
        eta = remaining / rate if rate > 0 else 0.0
        ratio = event.total / self._expected_total if self._expected_total else 1.0

        line = (
            f"Progress: {event.total:,}/{self._expected_total:,} "
            f"({ratio * 100:.2f}%) | "
            f"Rate: {round(rate):,}/s | "
            f"ETA: {round(eta)}s"
        )
        logger.info("%s", line)
        self._metrics.progress_ratio.set(ratio)
        self._last_update = now
        return line
