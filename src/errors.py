"""
Exception taxonomy for the ingestion pipeline.

Record-level insertion failures are not exceptions: they are counted and
written to the error log. Everything raised from here is fatal to a run.
"""

from __future__ import annotations

from typing import Any


class IngestionError(Exception):
    """Base class for errors that abort an ingestion run."""


class RecordSourceError(IngestionError):
    """The record generator raised while producing a record."""

    def __init__(self, index: int, reason: str) -> None:
        self.index = index
        self.reason = reason
        super().__init__(f"Record generation failed at index {index}: {reason}")


class BatchSerializationError(IngestionError):
    """A batch could not be encoded into the bulk NDJSON body."""

    def __init__(self, batch_index: int, document: dict[str, Any] | None, reason: str) -> None:
        self.batch_index = batch_index
        self.document = document
        self.reason = reason
        super().__init__(f"Failed to serialize batch {batch_index}: {reason}")


class BulkRequestError(IngestionError):
    """The bulk request itself failed (network, timeout, HTTP status)."""

    def __init__(self, batch_index: int, batch_size: int, reason: str) -> None:
        self.batch_index = batch_index
        self.batch_size = batch_size
        self.reason = reason
        super().__init__(f"Bulk request failed for batch {batch_index}: {reason}")


class StoreUnavailableError(IngestionError):
    """The document store did not answer the startup health check."""


class UploaderClosedError(IngestionError):
    """A record was submitted after the uploader was drained."""
