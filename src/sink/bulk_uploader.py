"""
Concurrent batched uploader into the OpenSearch bulk API.

Accumulates records in memory and cuts a batch every ``batch_size`` records.
Each batch is serialized to NDJSON and sent in its own asyncio task; at most
``concurrency`` tasks are outstanding. When every slot is taken, ``submit``
suspends until the first task settles, which is what bounds memory to about
``concurrency * batch_size`` records plus one partial buffer.

Per-document rejections in a bulk response are counted and written to the
error log; they never abort the run. A bulk request that raises, or a batch
that cannot be serialized, latches a terminal failure: further submits fail
fast, but batches already in flight still settle and are counted.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import json
import logging
import time
from typing import Any, Callable

from src.config import settings
from src.errors import (
    BatchSerializationError,
    BulkRequestError,
    IngestionError,
    UploaderClosedError,
)
from src.metrics.prometheus import get_metrics
from src.models import BatchOutcome, BulkMetrics, LogRecord, ProgressEvent
from src.sink.error_logger import ErrorLogger
from src.sink.opensearch_client import BulkClient

logger = logging.getLogger(__name__)

SOURCE = "BulkUploader"

# Individual rejections printed per batch; the rest only go to the error log
MAX_LOGGED_FAILURES = 5


class UploaderState(str, enum.Enum):
    ACCEPTING = "accepting"
    FLUSHING = "flushing"
    AWAITING_SLOT = "awaiting_slot"
    DRAINING = "draining"
    DONE = "done"
    FAILED = "failed"


def serialize_batch(batch: list[LogRecord], index_name: str) -> str:
    """
    Encode a batch as an NDJSON bulk body.

    Every document is preceded by an ``index`` action line naming the target
    index. The body ends with a newline, as the bulk API requires.
    Raises TypeError/ValueError for documents that are not valid JSON
    (unsupported types, NaN or infinite floats).
    """
    action = json.dumps({"index": {"_index": index_name}})
    lines: list[str] = []
    for doc in batch:
        lines.append(action)
        lines.append(encode_document(doc))
    return "\n".join(lines) + "\n"


def encode_document(doc: LogRecord) -> str:
    """One strict-JSON line for a record; NaN and infinity are rejected."""
    return json.dumps(doc, allow_nan=False)


def _item_result(item: dict[str, Any]) -> dict[str, Any]:
    """Unwrap ``{"index": {...}}`` (or create/update) to the per-item result."""
    for result in item.values():
        if isinstance(result, dict):
            return result
    return {}


class BulkUploader:
    """
    Batching, concurrency-bounded sink for log records.

    Concurrency: all methods must be called from the event loop that owns
    the uploader. Counters are mutated once per task, after its request
    returns (``_settle`` or ``_fail_response``), so no lock is needed.
    """

    def __init__(
        self,
        client: BulkClient,
        index_name: str,
        batch_size: int | None = None,
        concurrency: int | None = None,
        error_logger: ErrorLogger | None = None,
        on_progress: Callable[[ProgressEvent], None] | None = None,
    ) -> None:
        self._config = settings.ingest
        self._client = client
        self._index_name = index_name
        self._batch_size = batch_size if batch_size is not None else self._config.batch_size
        if self._batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self._batch_size}")
        self._concurrency = max(
            1, concurrency if concurrency is not None else self._config.concurrency
        )
        self._error_logger = error_logger
        self._on_progress = on_progress
        self._prom = get_metrics()

        self._buffer: list[LogRecord] = []
        self._pending: set[asyncio.Task[BatchOutcome]] = set()
        self._metrics = BulkMetrics()
        self._batch_index = 0
        self._state = UploaderState.ACCEPTING
        self._failure: IngestionError | None = None
        self._drained = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, record: LogRecord) -> None:
        """
        Add one record to the buffer, cutting a batch when it is full.

        Suspends while all concurrency slots are taken. Raises the latched
        failure instead of accepting more work once the uploader has failed.
        """
        self._ensure_accepting()
        self._buffer.append(record)

        if len(self._buffer) >= self._batch_size:
            self._set_state(UploaderState.FLUSHING)
            batch = self._buffer
            self._buffer = []
            self._schedule(batch)
            await self._wait_for_available_slot()
            if self._failure is not None:
                raise self._failure
            self._set_state(UploaderState.ACCEPTING)

    async def drain(self) -> BulkMetrics:
        """
        Flush the partial buffer and wait for every outstanding batch.

        Returns the final metrics, or raises the latched failure once all
        dispatched batches have settled. Calling it again returns the same
        result without sending anything.
        """
        if not self._drained:
            self._set_state(UploaderState.DRAINING)
            if self._buffer:
                batch = self._buffer
                self._buffer = []
                self._schedule(batch)

            while self._pending:
                done, _ = await asyncio.wait(set(self._pending))
                self._pending.difference_update(done)

            self._drained = True
            self._set_state(UploaderState.DONE)
            logger.info(
                "Uploader drained: %d batches, %d inserted, %d failed documents, %d failed batches",
                self._metrics.batches,
                self._metrics.total_inserted,
                self._metrics.failed_documents,
                self._metrics.failed_batches,
            )

        if self._failure is not None:
            raise self._failure
        return self.metrics()

    def metrics(self) -> BulkMetrics:
        """Copy of the cumulative counters; safe to call at any time."""
        return dataclasses.replace(self._metrics)

    @property
    def state(self) -> UploaderState:
        return self._state

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def total_inserted(self) -> int:
        return self._metrics.total_inserted

    @property
    def index_name(self) -> str:
        return self._index_name

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _ensure_accepting(self) -> None:
        if self._failure is not None:
            raise self._failure
        if self._drained or self._state is UploaderState.DRAINING:
            raise UploaderClosedError("Uploader is drained and no longer accepts records")

    def _set_state(self, state: UploaderState) -> None:
        # FAILED is sticky
        if self._failure is None:
            self._state = state

    def _latch(self, error: IngestionError) -> None:
        if self._failure is None:
            self._failure = error
            self._state = UploaderState.FAILED

    def _schedule(self, batch: list[LogRecord]) -> None:
        """Serialize a batch and start its upload task."""
        batch_index = self._batch_index
        self._batch_index += 1

        try:
            body = serialize_batch(batch, self._index_name)
        except (TypeError, ValueError) as exc:
            error = BatchSerializationError(batch_index, batch[0], str(exc))
            error.__cause__ = exc
            logger.error("Failed to serialize batch %d (%d documents): %s", batch_index, len(batch), exc)
            if self._error_logger is not None:
                self._error_logger.log_serialization_error(
                    SOURCE,
                    f"Failed to serialize batch {batch_index}: {exc}",
                    exc,
                    document=batch[0],
                )
            self._prom.batch_failures.labels(stage="serialize").inc()
            self._latch(error)
            return

        task = asyncio.create_task(
            self._send_batch(batch_index, batch, body),
            name=f"bulk-batch-{batch_index}",
        )
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)
        self._prom.batches_in_flight.set(len(self._pending))

    def _on_task_done(self, task: asyncio.Task[BatchOutcome]) -> None:
        self._pending.discard(task)
        self._prom.batches_in_flight.set(len(self._pending))
        # Runs before asyncio.wait wakes the caller, so the latch is visible there
        if not task.cancelled() and task.exception() is not None:
            self._latch_unexpected(task.get_name(), task.exception())

    async def _wait_for_available_slot(self) -> None:
        """Block until fewer than ``concurrency`` batches are in flight."""
        while len(self._pending) >= self._concurrency:
            self._set_state(UploaderState.AWAITING_SLOT)
            done, _ = await asyncio.wait(set(self._pending), return_when=asyncio.FIRST_COMPLETED)
            self._pending.difference_update(done)

    # ------------------------------------------------------------------
    # Upload task
    # ------------------------------------------------------------------

    async def _send_batch(self, batch_index: int, batch: list[LogRecord], body: str) -> BatchOutcome:
        start = time.monotonic()
        response: dict[str, Any] | None = None
        outcome: BatchOutcome | None = None
        try:
            response = await self._client.bulk(body)
        except Exception as exc:
            error = BulkRequestError(batch_index, len(batch), str(exc) or type(exc).__name__)
            error.__cause__ = exc
            outcome = BatchOutcome(
                batch_index=batch_index,
                size=len(batch),
                duration_ms=(time.monotonic() - start) * 1000,
                error=error,
            )
        duration_ms = (time.monotonic() - start) * 1000

        try:
            if outcome is None:
                outcome = self._correlate(batch_index, batch, response or {}, duration_ms)
            self._settle(outcome)
        except Exception as exc:
            outcome = self._fail_response(batch_index, len(batch), duration_ms, exc)
        return outcome

    def _fail_response(
        self, batch_index: int, size: int, duration_ms: float, exc: Exception
    ) -> BatchOutcome:
        """A bulk response that could not be accounted for fails the whole run."""
        self._metrics.failed_batches += 1
        error = self._latch_unexpected(f"bulk-batch-{batch_index}", exc)
        return BatchOutcome(
            batch_index=batch_index, size=size, duration_ms=duration_ms, error=error,
        )

    def _latch_unexpected(self, task_name: str, exc: BaseException) -> IngestionError:
        logger.error("Unexpected failure in %s", task_name, exc_info=exc)
        error = IngestionError(f"Failed to process bulk response for {task_name}: {exc}")
        error.__cause__ = exc
        if self._error_logger is not None:
            self._error_logger.log_stream_error(SOURCE, str(error), exc)
        self._prom.batch_failures.labels(stage="response").inc()
        self._latch(error)
        return error

    def _correlate(
        self,
        batch_index: int,
        batch: list[LogRecord],
        response: dict[str, Any],
        duration_ms: float,
    ) -> BatchOutcome:
        """
        Match rejected bulk items to the documents that produced them.

        The bulk API answers items in submission order, so item ``i``
        belongs to ``batch[i]``.
        """
        failures: list[tuple[int, dict[str, Any]]] = []
        if response.get("errors"):
            for position, item in enumerate(response.get("items", [])[: len(batch)]):
                error = _item_result(item).get("error")
                if error:
                    if not isinstance(error, dict):
                        error = {"type": str(error)}
                    failures.append((position, error))

        if failures:
            logger.error(
                "Errors in bulk insert: %d documents failed in batch %d",
                len(failures), batch_index,
            )
        for n, (position, error) in enumerate(failures):
            error_type = str(error.get("type", "unknown"))
            reason = str(error.get("reason", ""))
            doc = batch[position]
            if self._error_logger is not None:
                self._error_logger.log_insertion_error(
                    SOURCE,
                    f"Document insertion failed: {error_type} - {reason}",
                    document_id=doc.get("id"),
                    document=doc,
                    batch_index=batch_index,
                    store_error={"type": error_type, "reason": reason},
                )
            self._prom.documents_failed.labels(error_type=error_type).inc()
            if n < MAX_LOGGED_FAILURES:
                logger.error("  [%d] reason: %s - %s", position, error_type, reason)

        if len(failures) > MAX_LOGGED_FAILURES:
            logger.error(
                "  ...and %d more error entries (see error log file for details)",
                len(failures) - MAX_LOGGED_FAILURES,
            )

        return BatchOutcome(
            batch_index=batch_index,
            size=len(batch),
            inserted=len(batch) - len(failures),
            failed=len(failures),
            duration_ms=duration_ms,
        )

    def _settle(self, outcome: BatchOutcome) -> None:
        """Apply one task's outcome to the counters. Runs once per task."""
        if outcome.error is not None:
            self._metrics.failed_batches += 1
            logger.error(
                "Bulk insert failed for batch %d (%d documents): %s",
                outcome.batch_index, outcome.size, outcome.error.__cause__ or outcome.error,
            )
            if self._error_logger is not None:
                self._error_logger.log_connection_error(
                    SOURCE,
                    f"Bulk insert request failed for batch {outcome.batch_index}: {outcome.error}",
                    outcome.error.__cause__ or outcome.error,
                )
            self._prom.batch_failures.labels(stage="bulk").inc()
            self._latch(outcome.error)
            return

        m = self._metrics
        m.batches += 1
        m.total_inserted += outcome.inserted
        m.failed_documents += outcome.failed
        m.total_duration_ms += outcome.duration_ms
        m.max_batch_duration_ms = max(m.max_batch_duration_ms, outcome.duration_ms)

        self._prom.batches_sent.inc()
        self._prom.documents_inserted.inc(outcome.inserted)
        self._prom.batch_size.observe(outcome.size)
        self._prom.batch_latency.observe(outcome.duration_ms / 1000)

        if self._on_progress is not None:
            try:
                self._on_progress(ProgressEvent(inserted=outcome.inserted, total=m.total_inserted))
            except Exception as exc:
                logger.exception("Progress callback failed after batch %d", outcome.batch_index)
                if self._error_logger is not None:
                    self._error_logger.log_stream_error(
                        "ProgressReporter", f"Error tracking progress: {exc}", exc
                    )
                error = IngestionError(f"Progress reporting failed: {exc}")
                error.__cause__ = exc
                self._latch(error)
