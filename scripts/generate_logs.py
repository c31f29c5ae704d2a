"""
Generate synthetic logs into an NDJSON file.

Usage:
    python -m scripts.generate_logs --total 100000 --output logs.ndjson --date 2024-01-01
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone

from src.errors import IngestionError
from src.producer.file_export import export_ndjson
from src.producer.log_generator import LogGenerator

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Write generated logs to an NDJSON file")
    parser.add_argument("--total", type=int, default=100_000, help="Number of logs to generate")
    parser.add_argument("--output", default="logs.ndjson", help="Target file (overwritten)")
    parser.add_argument(
        "--date", type=datetime.fromisoformat, default=None,
        help="Base date for log timestamps, YYYY-MM-DD (default: today, UTC)",
    )
    parser.add_argument("--seed", type=int, default=None, help="Seed for reproducible output")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    args = parse_args(argv)
    base_date = args.date or datetime.now(timezone.utc)

    try:
        asyncio.run(export_ndjson(args.output, args.total, base_date, LogGenerator(args.seed)))
    except (IngestionError, OSError) as exc:
        logger.error("Error generating logs to file: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
