"""
Async record source feeding the ingestion pipeline.

Produces exactly ``total`` records in index order and yields control back
to the event loop after every chunk, so bulk responses keep being processed
while records are generated.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import AsyncIterator

from src.config import settings
from src.errors import RecordSourceError
from src.metrics.prometheus import get_metrics
from src.models import LogRecord, RecordGenerator
from src.sink.error_logger import ErrorLogger

logger = logging.getLogger(__name__)

SOURCE = "RecordSource"


class RecordSource:
    """
    Finite, ordered async iterable over generated records.

    The generator is called as ``generator(index, base_date)``. If it raises,
    nothing is emitted for that index, a stream error is logged, and
    iteration ends with ``RecordSourceError``.
    """

    def __init__(
        self,
        total: int,
        generator: RecordGenerator,
        base_date: datetime,
        chunk_size: int | None = None,
        error_logger: ErrorLogger | None = None,
    ) -> None:
        if total < 0:
            raise ValueError(f"total must be non-negative, got {total}")
        self._total = total
        self._generator = generator
        self._base_date = base_date
        self._chunk_size = max(1, chunk_size or settings.ingest.chunk_size)
        self._error_logger = error_logger
        self._metrics = get_metrics()
        self._generated = 0

    def __aiter__(self) -> AsyncIterator[LogRecord]:
        return self._produce()

    async def _produce(self) -> AsyncIterator[LogRecord]:
        while self._generated < self._total:
            chunk = min(self._chunk_size, self._total - self._generated)
            for _ in range(chunk):
                index = self._generated
                try:
                    record = self._generator(index, self._base_date)
                except Exception as exc:
                    logger.error("Record generation failed at index %d: %s", index, exc)
                    if self._error_logger is not None:
                        self._error_logger.log_stream_error(
                            SOURCE, f"Error generating log: {exc}", exc
                        )
                    raise RecordSourceError(index, str(exc)) from exc

                self._generated += 1
                self._metrics.records_generated.inc()
                yield record

            # Let upload tasks run between chunks
            await asyncio.sleep(0)

        logger.debug("Record source exhausted after %d records", self._generated)

    @property
    def generated(self) -> int:
        return self._generated

    @property
    def total(self) -> int:
        return self._total
