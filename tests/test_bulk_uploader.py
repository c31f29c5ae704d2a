"""
Unit tests for the concurrent bulk uploader.

Covers batch formation, NDJSON serialization, per-document failure
accounting, backpressure at the concurrency limit, out-of-order settlement
and terminal failures, using an in-memory bulk client instead of a cluster.
"""

from __future__ import annotations

import asyncio
import json
import math

import pytest

from src.errors import (
    BatchSerializationError,
    BulkRequestError,
    IngestionError,
    UploaderClosedError,
)
from src.models import ProgressEvent
from src.sink.bulk_uploader import BulkUploader, UploaderState, serialize_batch
from src.sink.error_logger import ErrorLogger
from tests.helpers import FakeBulkClient, docs_in, make_record, rejecting


@pytest.fixture()
def error_logger(tmp_path) -> ErrorLogger:
    return ErrorLogger(log_dir=tmp_path, filename="errors.json")


async def _submit_all(uploader: BulkUploader, count: int) -> None:
    for i in range(count):
        await uploader.submit(make_record(id=f"log-{i}"))


# ---------------------------------------------------------------------------
# serialize_batch tests
# ---------------------------------------------------------------------------

class TestSerializeBatch:
    def test_two_documents_produce_four_lines(self) -> None:
        body = serialize_batch([make_record(id="log-1"), make_record(id="log-2")], "logs-test")
        assert body.endswith("\n")
        lines = body.rstrip("\n").split("\n")
        assert len(lines) == 4

        assert json.loads(lines[0]) == {"index": {"_index": "logs-test"}}
        assert json.loads(lines[1])["id"] == "log-1"
        assert json.loads(lines[2]) == {"index": {"_index": "logs-test"}}
        assert json.loads(lines[3])["id"] == "log-2"

    def test_unencodable_document_raises(self) -> None:
        with pytest.raises(TypeError):
            serialize_batch([make_record(tags={"a", "b"})], "logs-test")

    def test_nan_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            serialize_batch([make_record(metrics={"cpu_usage": float("nan")})], "logs-test")


# ---------------------------------------------------------------------------
# Batch formation and accounting
# ---------------------------------------------------------------------------

class TestBatching:
    @pytest.mark.asyncio
    async def test_flushes_batch_and_reports_metrics(self) -> None:
        client = FakeBulkClient()
        emitted: list[ProgressEvent] = []
        uploader = BulkUploader(client, "logs-test", batch_size=2, on_progress=emitted.append)

        await uploader.submit(make_record(id="log-1"))
        await uploader.submit(make_record(id="log-2"))
        metrics = await uploader.drain()

        assert len(client.bodies) == 1
        assert emitted == [ProgressEvent(inserted=2, total=2)]
        assert metrics.batches == 1
        assert metrics.total_inserted == 2
        assert metrics.failed_documents == 0
        assert uploader.metrics().total_inserted == 2

    @pytest.mark.asyncio
    async def test_tracks_failed_documents(self, error_logger: ErrorLogger) -> None:
        client = FakeBulkClient(respond=rejecting({1}))
        emitted: list[ProgressEvent] = []
        uploader = BulkUploader(
            client, "logs-test", batch_size=2,
            error_logger=error_logger, on_progress=emitted.append,
        )

        await uploader.submit(make_record(id="log-1"))
        await uploader.submit(make_record(id="log-2"))
        metrics = await uploader.drain()

        assert emitted == [ProgressEvent(inserted=1, total=1)]
        assert metrics.total_inserted == 1
        assert metrics.failed_documents == 1
        assert error_logger.get_errors_by_type() == {"insertion": 1}

    @pytest.mark.asyncio
    async def test_failures_correlate_by_position(self, error_logger: ErrorLogger) -> None:
        # Two rejections of the same type must still point at the right documents
        client = FakeBulkClient(respond=rejecting({0, 2}))
        uploader = BulkUploader(client, "logs-test", batch_size=3, error_logger=error_logger)

        await _submit_all(uploader, 3)
        await uploader.drain()
        error_logger.flush()

        entries = json.loads(error_logger.log_file_path.read_text())
        assert [e["details"]["document_id"] for e in entries] == ["log-0", "log-2"]
        assert entries[0]["details"]["store_error"] == {
            "type": "mapper_parsing_exception", "reason": "failed to parse",
        }
        assert entries[0]["details"]["batch_index"] == 0

    @pytest.mark.parametrize("total,batch_size", [(10, 3), (9, 3), (1, 5), (7, 1), (0, 4)])
    @pytest.mark.asyncio
    async def test_batch_count_is_ceiling(self, total: int, batch_size: int) -> None:
        client = FakeBulkClient()
        uploader = BulkUploader(client, "logs-test", batch_size=batch_size, concurrency=2)

        await _submit_all(uploader, total)
        metrics = await uploader.drain()

        assert metrics.batches == math.ceil(total / batch_size)
        assert len(client.bodies) == metrics.batches
        assert [d["id"] for d in client.documents] == [f"log-{i}" for i in range(total)]

    @pytest.mark.asyncio
    async def test_success_plus_failed_equals_batch_size(self) -> None:
        client = FakeBulkClient(respond=rejecting({0, 3}))
        emitted: list[ProgressEvent] = []
        uploader = BulkUploader(
            client, "logs-test", batch_size=4, concurrency=3, on_progress=emitted.append,
        )

        await _submit_all(uploader, 10)
        metrics = await uploader.drain()

        # Batches of 4, 4, 2: the last one only has position 0 to reject
        assert sorted(e.inserted for e in emitted) == [1, 2, 2]
        assert metrics.failed_documents == 5
        assert metrics.total_inserted + metrics.failed_documents == 10

    @pytest.mark.asyncio
    async def test_partial_buffer_flushed_on_drain(self) -> None:
        client = FakeBulkClient()
        uploader = BulkUploader(client, "logs-test", batch_size=100)

        await _submit_all(uploader, 3)
        assert uploader.buffered == 3
        assert client.bodies == []

        metrics = await uploader.drain()
        assert uploader.buffered == 0
        assert uploader.in_flight == 0
        assert metrics.batches == 1
        assert len(docs_in(client.bodies[0])) == 3


# ---------------------------------------------------------------------------
# Concurrency and backpressure
# ---------------------------------------------------------------------------

class TestConcurrency:
    @pytest.mark.asyncio
    async def test_submit_blocks_when_no_slot_is_free(self) -> None:
        release = asyncio.Event()
        client = FakeBulkClient(gate=release)
        uploader = BulkUploader(client, "logs-test", batch_size=2, concurrency=1)

        await uploader.submit(make_record(id="log-1"))
        blocked = asyncio.create_task(uploader.submit(make_record(id="log-2")))
        await asyncio.sleep(0.01)

        assert not blocked.done()
        assert uploader.in_flight == 1
        assert uploader.state is UploaderState.AWAITING_SLOT

        release.set()
        await asyncio.wait_for(blocked, timeout=1)
        assert uploader.state is UploaderState.ACCEPTING

        metrics = await uploader.drain()
        assert metrics.total_inserted == 2
        assert uploader.state is UploaderState.DONE

    @pytest.mark.asyncio
    async def test_acceptance_bounded_by_concurrency_times_batch(self) -> None:
        release = asyncio.Event()
        client = FakeBulkClient(gate=release)
        uploader = BulkUploader(client, "logs-test", batch_size=2, concurrency=2)
        accepted = 0

        async def produce() -> None:
            nonlocal accepted
            for i in range(10):
                await uploader.submit(make_record(id=f"log-{i}"))
                accepted += 1

        producer = asyncio.create_task(produce())
        await asyncio.sleep(0.01)

        # The fourth submit filled the second slot and is parked on the slot wait
        assert accepted == 3
        assert uploader.in_flight == 2
        assert uploader.buffered == 0

        release.set()
        await asyncio.wait_for(producer, timeout=1)
        metrics = await uploader.drain()
        assert metrics.total_inserted == 10

    @pytest.mark.asyncio
    async def test_in_flight_never_exceeds_concurrency(self) -> None:
        client = FakeBulkClient(delays={i: 0.01 for i in range(20)})
        uploader = BulkUploader(client, "logs-test", batch_size=5, concurrency=3)

        await _submit_all(uploader, 100)
        metrics = await uploader.drain()

        assert client.max_active == 3
        assert metrics.batches == 20
        assert metrics.total_inserted == 100

    @pytest.mark.asyncio
    async def test_out_of_order_completion_is_accounted(self) -> None:
        client = FakeBulkClient(delays={0: 0.05, 1: 0.0})
        emitted: list[ProgressEvent] = []
        uploader = BulkUploader(
            client, "logs-test", batch_size=3, concurrency=2, on_progress=emitted.append,
        )

        await _submit_all(uploader, 5)
        metrics = await uploader.drain()

        assert client.completed == [1, 0]
        assert emitted == [ProgressEvent(inserted=2, total=2), ProgressEvent(inserted=3, total=5)]
        assert metrics.total_inserted == 5
        assert metrics.max_batch_duration_ms >= 40


# ---------------------------------------------------------------------------
# Terminal failures and lifecycle
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.asyncio
    async def test_transport_failure_fails_batch_and_drain(self, error_logger: ErrorLogger) -> None:
        def explode(call: int, body: str) -> dict:
            raise ConnectionError("cluster is down")

        client = FakeBulkClient(respond=explode)
        emitted: list[ProgressEvent] = []
        uploader = BulkUploader(
            client, "logs-test", batch_size=2, concurrency=1,
            error_logger=error_logger, on_progress=emitted.append,
        )

        await uploader.submit(make_record(id="log-1"))
        with pytest.raises(BulkRequestError, match="cluster is down") as excinfo:
            await uploader.submit(make_record(id="log-2"))
        assert isinstance(excinfo.value.__cause__, ConnectionError)

        with pytest.raises(BulkRequestError):
            await uploader.drain()

        metrics = uploader.metrics()
        assert metrics.total_inserted == 0
        assert metrics.batches == 0
        assert metrics.failed_batches == 1
        assert emitted == []
        assert uploader.state is UploaderState.FAILED
        assert error_logger.get_errors_by_type() == {"connection": 1}

    @pytest.mark.asyncio
    async def test_submit_fails_fast_after_failure(self) -> None:
        def explode(call: int, body: str) -> dict:
            raise ConnectionError("refused")

        client = FakeBulkClient(respond=explode)
        uploader = BulkUploader(client, "logs-test", batch_size=1, concurrency=1)

        with pytest.raises(BulkRequestError):
            await uploader.submit(make_record(id="log-1"))
        with pytest.raises(BulkRequestError):
            await uploader.submit(make_record(id="log-2"))
        assert len(client.bodies) == 1

    @pytest.mark.asyncio
    async def test_failure_does_not_cancel_in_flight_batches(self) -> None:
        def fail_first(call: int, body: str) -> dict:
            if call == 0:
                raise ConnectionError("reset by peer")
            return {"errors": False, "items": [{"index": {}} for _ in docs_in(body)]}

        client = FakeBulkClient(respond=fail_first, delays={1: 0.02})
        uploader = BulkUploader(client, "logs-test", batch_size=2, concurrency=2)

        # The failure surfaces while the fourth submit waits for a slot
        with pytest.raises(BulkRequestError):
            await _submit_all(uploader, 4)
        with pytest.raises(BulkRequestError):
            await uploader.drain()

        assert uploader.in_flight == 0
        metrics = uploader.metrics()
        assert metrics.batches == 1
        assert metrics.total_inserted == 2
        assert metrics.failed_batches == 1

    @pytest.mark.asyncio
    async def test_serialization_failure_aborts_batch(self, error_logger: ErrorLogger) -> None:
        client = FakeBulkClient()
        uploader = BulkUploader(client, "logs-test", batch_size=2, error_logger=error_logger)

        await uploader.submit(make_record(id="log-1"))
        with pytest.raises(BatchSerializationError) as excinfo:
            await uploader.submit(make_record(id="log-2", tags={"not", "json"}))

        assert excinfo.value.document["id"] == "log-1"
        assert client.bodies == []
        with pytest.raises(BatchSerializationError):
            await uploader.drain()

        error_logger.flush()
        entries = json.loads(error_logger.log_file_path.read_text())
        assert entries[0]["error_type"] == "serialization"
        assert entries[0]["details"]["document"]["id"] == "log-1"

    @pytest.mark.asyncio
    async def test_string_item_errors_are_counted(self, error_logger: ErrorLogger) -> None:
        def bare_errors(call: int, body: str) -> dict:
            return {
                "errors": True,
                "items": [
                    {"index": {"status": 400, "error": "mapper_parsing_exception"}}
                    for _ in docs_in(body)
                ],
            }

        uploader = BulkUploader(
            FakeBulkClient(respond=bare_errors), "logs-test",
            batch_size=2, error_logger=error_logger,
        )
        await _submit_all(uploader, 2)
        metrics = await uploader.drain()

        assert metrics.batches == 1
        assert metrics.total_inserted == 0
        assert metrics.failed_documents == 2
        error_logger.flush()
        entries = json.loads(error_logger.log_file_path.read_text())
        assert [e["details"]["store_error"]["type"] for e in entries] == [
            "mapper_parsing_exception", "mapper_parsing_exception",
        ]

    @pytest.mark.asyncio
    async def test_unreadable_response_fails_drain(self, error_logger: ErrorLogger) -> None:
        def garbled(call: int, body: str) -> dict:
            return {"errors": True, "items": [None for _ in docs_in(body)]}

        client = FakeBulkClient(respond=garbled)
        uploader = BulkUploader(
            client, "logs-test", batch_size=2, concurrency=2, error_logger=error_logger,
        )
        await _submit_all(uploader, 2)

        with pytest.raises(IngestionError) as excinfo:
            await uploader.drain()

        assert isinstance(excinfo.value.__cause__, AttributeError)
        metrics = uploader.metrics()
        assert metrics.batches == 0
        assert metrics.failed_batches == 1
        assert uploader.state is UploaderState.FAILED
        assert error_logger.get_errors_by_type() == {"stream": 1}

    @pytest.mark.asyncio
    async def test_unreadable_response_fails_waiting_submit(self) -> None:
        def garbled(call: int, body: str) -> dict:
            return {"errors": True, "items": [42 for _ in docs_in(body)]}

        uploader = BulkUploader(FakeBulkClient(respond=garbled), "logs-test", batch_size=1, concurrency=1)

        with pytest.raises(IngestionError, match="Failed to process bulk response"):
            await uploader.submit(make_record(id="log-1"))
        with pytest.raises(IngestionError):
            await uploader.submit(make_record(id="log-2"))

    @pytest.mark.asyncio
    async def test_progress_callback_failure_is_fatal(self, error_logger: ErrorLogger) -> None:
        def broken_progress(event: ProgressEvent) -> None:
            raise RuntimeError("terminal went away")

        uploader = BulkUploader(
            FakeBulkClient(), "logs-test", batch_size=2,
            error_logger=error_logger, on_progress=broken_progress,
        )
        await _submit_all(uploader, 2)

        with pytest.raises(IngestionError, match="Progress reporting failed") as excinfo:
            await uploader.drain()

        assert isinstance(excinfo.value.__cause__, RuntimeError)
        # The batch itself was stored before the callback ran
        assert uploader.metrics().total_inserted == 2
        assert uploader.state is UploaderState.FAILED
        assert error_logger.get_errors_by_type() == {"stream": 1}

    @pytest.mark.asyncio
    async def test_drain_is_idempotent_and_stable(self) -> None:
        client = FakeBulkClient()
        uploader = BulkUploader(client, "logs-test", batch_size=2)

        await _submit_all(uploader, 3)
        first = await uploader.drain()
        await asyncio.sleep(0.01)
        second = await uploader.drain()

        assert first == second
        assert len(client.bodies) == 2

    @pytest.mark.asyncio
    async def test_submit_after_drain_raises(self) -> None:
        uploader = BulkUploader(FakeBulkClient(), "logs-test", batch_size=2)
        await uploader.drain()
        with pytest.raises(UploaderClosedError):
            await uploader.submit(make_record())

    def test_rejects_invalid_batch_size(self) -> None:
        with pytest.raises(ValueError):
            BulkUploader(FakeBulkClient(), "logs-test", batch_size=0)
