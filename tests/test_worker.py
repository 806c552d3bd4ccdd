"""Tests for job consumption, retry and status persistence."""

import asyncio
import json
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from receipt_pipeline.errors import AllAttemptsFailedError, EngineInitializationError
from receipt_pipeline.models import ExtractedFields, OcrStatus, ReceiptJob, ReceiptRecord
from receipt_pipeline.worker import InMemoryJobQueue, JsonReceiptStore, ReceiptWorker, serve

PROCESSED_AT = datetime(2026, 2, 1, 9, 30, tzinfo=timezone.utc)

FIELDS = ExtractedFields(
    raw_text="ローソン\n合計 ¥1,078",
    merchant="ローソン",
    date=date(2026, 1, 31),
    total=Decimal('1078'),
)


class FakeOrchestrator:
    """Scripted orchestrator: each call pops the next outcome."""

    def __init__(self, store=None, outcomes=None, delay=0.0):
        self.store = store
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls = []
        self.seen_status = []
        self.active = 0
        self.max_active = 0

    async def process(self, image_path, cancel_event=None):
        self.calls.append(image_path)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.store is not None:
                record = await self.store.get(self.store_key(image_path))
                self.seen_status.append(record.status if record else None)
            await asyncio.sleep(self.delay)
            outcome = self.outcomes.pop(0) if self.outcomes else FIELDS
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            self.active -= 1

    @staticmethod
    def store_key(image_path):
        return image_path.rsplit('/', 1)[-1].split('.')[0]


class FakeEngineHandle:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


class SlowPendingStore(JsonReceiptStore):
    """Store whose pending writes land late."""

    async def save(self, record):
        if record.status == OcrStatus.PENDING:
            await asyncio.sleep(0.05)
        await super().save(record)


def make_job(tmp_path, receipt_id):
    image = tmp_path / f"{receipt_id}.jpg"
    image.write_bytes(b"jpeg")
    return ReceiptJob(receipt_id=receipt_id, image_path=str(image), user_id="user-1")


class TestReceiptWorker:
    """Status transitions and retry contract."""

    def run_worker(self, tmp_path, jobs, orchestrator, attempts=3, concurrency=5, store=None):
        store = store or JsonReceiptStore(tmp_path / "store")

        async def scenario():
            queue = InMemoryJobQueue(attempts=attempts, backoff_base=0.01)
            for job in jobs:
                await store.update_status(job.receipt_id, OcrStatus.PENDING)
                await queue.add(job)
            if orchestrator.store is None:
                orchestrator.store = store
            worker = ReceiptWorker(queue, store, orchestrator, concurrency=concurrency,
                                   clock=lambda: PROCESSED_AT)
            try:
                stats = await worker.run()
            finally:
                await queue.close()
            return stats, queue

        stats, queue = asyncio.run(scenario())
        return stats, queue, store

    def test_success(self, tmp_path):
        """Test pending -> processing -> success with fields and timestamp."""
        orchestrator = FakeOrchestrator()
        stats, queue, store = self.run_worker(tmp_path, [make_job(tmp_path, "r1")], orchestrator)

        record = store.all()["r1"]
        assert orchestrator.seen_status == [OcrStatus.PROCESSING]
        assert record.status == OcrStatus.SUCCESS
        assert record.merchant == "ローソン"
        assert record.date == "2026-01-31"
        assert record.total == "1078"
        assert record.raw_text == FIELDS.raw_text
        assert record.processed_at == PROCESSED_AT.isoformat()
        assert record.metadata == {'userId': 'user-1'}
        assert stats == {'processed': 1, 'failed': 0, 'retried': 0}
        assert len(queue.completed) == 1

    def test_failure_after_retries(self, tmp_path):
        """Test that exhausted retries leave the receipt failed without fields."""
        orchestrator = FakeOrchestrator(outcomes=[AllAttemptsFailedError()] * 2)
        stats, queue, store = self.run_worker(tmp_path, [make_job(tmp_path, "r1")], orchestrator,
                                              attempts=2)

        record = store.all()["r1"]
        assert record.status == OcrStatus.FAILED
        assert record.processed_at == PROCESSED_AT.isoformat()
        assert record.merchant is None and record.total is None and record.raw_text is None
        assert stats == {'processed': 0, 'failed': 2, 'retried': 1}
        assert len(orchestrator.calls) == 2
        assert len(queue.dead) == 1
        assert queue.dead[0].attempt == 2

    def test_retry_then_success(self, tmp_path):
        """Test that a retried job re-enters at pending and can succeed."""
        orchestrator = FakeOrchestrator(outcomes=[RuntimeError("timeout"), FIELDS])
        stats, queue, store = self.run_worker(tmp_path, [make_job(tmp_path, "r1")], orchestrator)

        assert store.all()["r1"].status == OcrStatus.SUCCESS
        assert stats == {'processed': 1, 'failed': 1, 'retried': 1}
        assert queue.completed[0].attempt == 2

    def test_retry_success_not_overwritten_by_pending(self, tmp_path):
        """Test that a slow pending write cannot land after the retried job succeeds."""
        store = SlowPendingStore(tmp_path / "store")
        orchestrator = FakeOrchestrator(outcomes=[RuntimeError("timeout"), FIELDS])
        stats, queue, store = self.run_worker(tmp_path, [make_job(tmp_path, "r1")], orchestrator,
                                              attempts=2, store=store)

        record = store.all()["r1"]
        assert record.status == OcrStatus.SUCCESS
        assert record.merchant == "ローソン"
        assert record.total == "1078"
        assert stats == {'processed': 1, 'failed': 1, 'retried': 1}

    def test_last_failure_is_not_reset_to_pending(self, tmp_path):
        store = SlowPendingStore(tmp_path / "store")
        orchestrator = FakeOrchestrator(outcomes=[RuntimeError("timeout")])
        stats, queue, store = self.run_worker(tmp_path, [make_job(tmp_path, "r1")], orchestrator,
                                              attempts=1, store=store)

        assert store.all()["r1"].status == OcrStatus.FAILED
        assert stats == {'processed': 0, 'failed': 1, 'retried': 0}

    def test_missing_image(self, tmp_path):
        """Test that a missing image fails the job without calling the orchestrator."""
        job = ReceiptJob(receipt_id="gone", image_path=str(tmp_path / "gone.jpg"))
        orchestrator = FakeOrchestrator()
        stats, queue, store = self.run_worker(tmp_path, [job], orchestrator, attempts=1)

        assert store.all()["gone"].status == OcrStatus.FAILED
        assert orchestrator.calls == []
        assert stats['failed'] == 1

    def test_concurrency_is_bounded(self, tmp_path):
        """Test that no more than the configured number of jobs run at once."""
        jobs = [make_job(tmp_path, f"r{i}") for i in range(6)]
        orchestrator = FakeOrchestrator(delay=0.02)
        stats, queue, store = self.run_worker(tmp_path, jobs, orchestrator, concurrency=2)

        assert stats['processed'] == 6
        assert orchestrator.max_active == 2
        assert all(r.status == OcrStatus.SUCCESS for r in store.all().values())

    def test_engine_failure_stops_worker(self, tmp_path):
        """Test that an unavailable engine is fatal for the worker."""
        jobs = [make_job(tmp_path, "r1")]
        orchestrator = FakeOrchestrator(outcomes=[EngineInitializationError("no engine")])

        with pytest.raises(EngineInitializationError):
            self.run_worker(tmp_path, jobs, orchestrator, attempts=1)

    def test_stop_event(self, tmp_path):
        """Test that a set stop event prevents new jobs from starting."""
        store = JsonReceiptStore(tmp_path / "store")

        async def scenario():
            queue = InMemoryJobQueue()
            await queue.add(make_job(tmp_path, "r1"))
            stop = asyncio.Event()
            stop.set()
            worker = ReceiptWorker(queue, store, FakeOrchestrator(store=store))
            return await worker.run(stop_event=stop)

        assert asyncio.run(scenario()) == {'processed': 0, 'failed': 0, 'retried': 0}

    def test_serve_closes_engine(self, tmp_path):
        """Test that the engine is released when the worker finishes."""
        store = JsonReceiptStore(tmp_path / "store")
        engine = FakeEngineHandle()

        async def scenario():
            queue = InMemoryJobQueue()
            await queue.add(make_job(tmp_path, "r1"))
            worker = ReceiptWorker(queue, store, FakeOrchestrator(store=store))
            return await serve(worker, engine, handle_signals=False)

        stats = asyncio.run(scenario())

        assert stats['processed'] == 1
        assert engine.closed

    def test_invalid_concurrency(self, tmp_path):
        with pytest.raises(ValueError):
            ReceiptWorker(InMemoryJobQueue(), JsonReceiptStore(tmp_path), FakeOrchestrator(), concurrency=0)


class TestInMemoryJobQueue:

    def test_backoff_is_exponential(self):
        queue = InMemoryJobQueue(attempts=3, backoff_base=1.0)
        assert [queue.backoff_delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_get_returns_none_when_drained(self):
        async def scenario():
            return await InMemoryJobQueue().get()

        assert asyncio.run(scenario()) is None


class TestJsonReceiptStore:
    """Status updates and on-disk format."""

    def test_pending_clears_previous_result(self, tmp_path):
        store = JsonReceiptStore(tmp_path)

        async def scenario():
            await store.update_status("r1", OcrStatus.SUCCESS, fields=FIELDS, processed_at=PROCESSED_AT)
            return await store.update_status("r1", OcrStatus.PENDING)

        record = asyncio.run(scenario())

        assert record.status == OcrStatus.PENDING
        assert record.merchant is None and record.total is None and record.date is None
        assert record.processed_at is None

    def test_processing_keeps_metadata(self, tmp_path):
        store = JsonReceiptStore(tmp_path)

        async def scenario():
            await store.save(ReceiptRecord(receipt_id="r1", metadata={'userId': 'u1'}))
            return await store.update_status("r1", OcrStatus.PROCESSING)

        record = asyncio.run(scenario())

        assert record.status == OcrStatus.PROCESSING
        assert record.metadata == {'userId': 'u1'}

    def test_json_document(self, tmp_path):
        store = JsonReceiptStore(tmp_path)
        asyncio.run(store.update_status("r/1", OcrStatus.SUCCESS, fields=FIELDS, processed_at=PROCESSED_AT))

        [path] = tmp_path.glob("r_1~*.json")
        data = json.loads(path.read_text(encoding='utf-8'))

        assert data['receiptId'] == "r/1"
        assert data['ocrStatus'] == "success"
        assert data['extractedMerchant'] == "ローソン"
        assert data['extractedTotal'] == "1078"
        assert not list(tmp_path.glob("*.tmp"))

    def test_escaped_ids_do_not_collide(self, tmp_path):
        """Test that ids differing only in escaped characters keep separate documents."""
        store = JsonReceiptStore(tmp_path)

        async def scenario():
            await store.update_status("r/1", OcrStatus.PENDING)
            await store.update_status("r_1", OcrStatus.FAILED, processed_at=PROCESSED_AT)
            await store.update_status("r 1", OcrStatus.PROCESSING)

        asyncio.run(scenario())
        records = store.all()

        assert set(records) == {"r/1", "r_1", "r 1"}
        assert records["r/1"].status == OcrStatus.PENDING
        assert records["r_1"].status == OcrStatus.FAILED
        assert records["r 1"].status == OcrStatus.PROCESSING
        assert (tmp_path / "r_1.json").exists()

    def test_update_merges_metadata(self, tmp_path):
        store = JsonReceiptStore(tmp_path)

        async def scenario():
            await store.save(ReceiptRecord(receipt_id="r1", metadata={'source': 'upload'}))
            return await store.update_status("r1", OcrStatus.PROCESSING, metadata={'userId': 'u1'})

        record = asyncio.run(scenario())

        assert record.metadata == {'source': 'upload', 'userId': 'u1'}

    def test_missing_record(self, tmp_path):
        assert asyncio.run(JsonReceiptStore(tmp_path).get("nope")) is None


class TestReceiptJob:

    def test_from_dict(self):
        job = ReceiptJob.from_dict({'receiptId': 'r1', 'imagePath': '/tmp/r1.jpg', 'userId': 'u1'})
        assert job == ReceiptJob(receipt_id='r1', image_path='/tmp/r1.jpg', user_id='u1')
        assert job.to_dict()['imagePath'] == '/tmp/r1.jpg'

    def test_missing_field(self):
        with pytest.raises(ValueError, match="imagePath"):
            ReceiptJob.from_dict({'receiptId': 'r1'})
