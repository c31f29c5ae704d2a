"""
Write generated log records to an NDJSON file instead of a cluster.

Useful for producing fixtures or feeding other loaders. Records come from
the same ``RecordSource`` as a live ingestion run, one JSON document per
line.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from src.models import RecordGenerator
from src.producer.log_generator import LogGenerator
from src.producer.record_source import RecordSource
from src.sink.bulk_uploader import encode_document
from src.sink.error_logger import ErrorLogger

logger = logging.getLogger(__name__)


async def export_ndjson(
    path: str | Path,
    total: int,
    base_date: datetime,
    generator: RecordGenerator | None = None,
    chunk_size: int | None = None,
    error_logger: ErrorLogger | None = None,
) -> int:
    """
    Generate ``total`` records into ``path`` and return how many were written.

    The file is overwritten. If generation fails, the records produced so
    far stay in the file and ``RecordSourceError`` propagates.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    source = RecordSource(
        total,
        generator or LogGenerator(),
        base_date,
        chunk_size=chunk_size,
        error_logger=error_logger,
    )

    written = 0
    with target.open("w", encoding="utf-8") as fh:
        async for record in source:
            fh.write(encode_document(record))
            fh.write("\n")
            written += 1

    logger.info("Generated %s logs to %s", f"{written:,}", target)
    return written
