"""
Categorized error log for failures observed during ingestion.

Rejected documents, stage crashes, transport failures and serialization
errors are buffered in memory and appended to a JSON file on flush. This
lets operators inspect (and optionally replay) failed documents without
the pipeline ever retrying them itself.
"""

from __future__ import annotations

import json
import logging
import time
import traceback
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from src.config import settings
from src.metrics.prometheus import get_metrics
from src.models import ErrorLogEntry, ErrorType

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _exception_details(error: BaseException) -> dict[str, Any]:
    return {
        "error_code": type(error).__name__,
        "stack_trace": "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        ),
    }


class ErrorLogger:
    """
    Buffers categorized error entries and persists them as a JSON array.

    Each entry includes:
    - The error category (insertion, stream, connection, serialization)
    - The pipeline stage that reported it
    - A human-readable message
    - Optional context: document, document id, batch index, stack trace,
      and the store's own error type and reason
    """

    def __init__(
        self,
        log_dir: str | Path | None = None,
        filename: str | None = None,
        max_errors_in_memory: int | None = None,
    ) -> None:
        self._config = settings.error_log
        self._metrics = get_metrics()
        self._max_in_memory = max_errors_in_memory or self._config.max_errors_in_memory
        self._errors: list[ErrorLogEntry] = []
        self._total_logged = 0

        directory = Path(log_dir or self._config.directory)
        directory.mkdir(parents=True, exist_ok=True)
        if filename is None:
            filename = f"errors-{time.strftime('%Y-%m-%dT%H-%M-%S', time.gmtime())}.json"
        self._log_file_path = directory / filename

    def log_insertion_error(
        self,
        source: str,
        message: str,
        document_id: str | None = None,
        document: dict[str, Any] | None = None,
        batch_index: int | None = None,
        store_error: dict[str, str] | None = None,
    ) -> None:
        self._log("insertion", source, message, {
            "document_id": document_id,
            "document": document,
            "batch_index": batch_index,
            "store_error": store_error,
        })

    def log_stream_error(
        self,
        source: str,
        message: str,
        error: BaseException,
        document: dict[str, Any] | None = None,
    ) -> None:
        self._log("stream", source, message, {
            "document": document,
            **_exception_details(error),
        })

    def log_connection_error(self, source: str, message: str, error: BaseException) -> None:
        self._log("connection", source, message, _exception_details(error))

    def log_serialization_error(
        self,
        source: str,
        message: str,
        error: BaseException,
        document: dict[str, Any] | None = None,
    ) -> None:
        self._log("serialization", source, message, {
            "document": document,
            **_exception_details(error),
        })

    def _log(self, error_type: ErrorType, source: str, message: str, details: dict[str, Any]) -> None:
        entry = ErrorLogEntry(
            timestamp=_now_iso(),
            error_type=error_type,
            source=source,
            message=message,
            details={k: v for k, v in details.items() if v is not None},
        )
        self._errors.append(entry)
        self._total_logged += 1
        self._metrics.errors_logged.labels(error_type=error_type).inc()

        # Bound memory during long runs with many rejected documents
        if len(self._errors) >= self._max_in_memory:
            self.flush()

    def flush(self) -> int:
        """
        Append buffered entries to the log file and clear the buffer.

        Returns the number of entries written. A write failure is logged and
        leaves the buffer intact; it never raises into the pipeline.
        """
        if not self._errors:
            return 0

        try:
            existing: list[dict[str, Any]] = []
            if self._log_file_path.exists():
                existing = json.loads(self._log_file_path.read_text(encoding="utf-8"))

            entries = existing + [asdict(e) for e in self._errors]
            self._log_file_path.write_text(
                json.dumps(entries, indent=2, default=str),
                encoding="utf-8",
            )
        except (OSError, ValueError) as exc:
            logger.error("Failed to write error log %s: %s", self._log_file_path, exc)
            return 0

        written = len(self._errors)
        logger.warning("%d error(s) logged to: %s", written, self._log_file_path)
        self._errors.clear()
        return written

    @property
    def pending_count(self) -> int:
        """Entries buffered since the last flush."""
        return len(self._errors)

    def get_error_count(self) -> int:
        """Entries logged over the lifetime of this logger, flushed or not."""
        return self._total_logged

    def get_errors_by_type(self) -> dict[str, int]:
        """Count of buffered entries per error type."""
        counts: dict[str, int] = {}
        for entry in self._errors:
            counts[entry.error_type] = counts.get(entry.error_type, 0) + 1
        return counts

    @property
    def log_file_path(self) -> Path:
        return self._log_file_path
