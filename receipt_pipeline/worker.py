"""Receipt OCR job consumption: queue and store boundaries plus the worker loop."""

import asyncio
import hashlib
import json
import logging
import os
import signal
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Set
from uuid import uuid4

from .errors import EngineInitializationError
from .models import ExtractedFields, OcrStatus, ReceiptJob, ReceiptRecord
from .ocr import SharedRecognitionEngine
from .orchestrator import RecognitionOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 1.0


def job_metadata(job: ReceiptJob) -> Dict[str, Any]:
    """Job details kept on the receipt record."""
    return {'userId': job.user_id} if job.user_id else {}


@dataclass
class QueuedJob:
    """A job as handed out by a queue, with its delivery attempt number."""
    job: ReceiptJob
    attempt: int = 1
    job_id: str = field(default_factory=lambda: uuid4().hex)


class JobQueue(ABC):
    """Consumer side of the OCR job queue."""

    @abstractmethod
    async def get(self) -> Optional[QueuedJob]:
        """Next job, or None once the queue will not produce more."""
        pass

    @abstractmethod
    async def ack(self, queued: QueuedJob) -> None:
        """Report successful completion."""
        pass

    @abstractmethod
    def will_retry(self, queued: QueuedJob) -> bool:
        """Whether a failure of this delivery would be redelivered."""
        pass

    @abstractmethod
    async def fail(self, queued: QueuedJob, error: BaseException) -> bool:
        """Report failure. Returns True if the job will be retried."""
        pass


class InMemoryJobQueue(JobQueue):
    """
    Local queue with retry and exponential backoff.

    Failed jobs are redelivered after ``backoff_base * 2 ** (attempt - 1)``
    seconds until ``attempts`` deliveries have been made.
    """

    def __init__(self, attempts: int = DEFAULT_ATTEMPTS, backoff_base: float = DEFAULT_BACKOFF_BASE):
        self.attempts = attempts
        self.backoff_base = backoff_base
        self.completed: List[QueuedJob] = []
        self.dead: List[QueuedJob] = []
        self._items: Deque[QueuedJob] = deque()
        self._in_flight = 0
        self._retry_tasks: Set[asyncio.Task] = set()
        self._cond = asyncio.Condition()

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base * (2 ** (attempt - 1))

    def will_retry(self, queued: QueuedJob) -> bool:
        return queued.attempt < self.attempts

    async def add(self, job: ReceiptJob) -> QueuedJob:
        queued = QueuedJob(job=job)
        async with self._cond:
            self._items.append(queued)
            self._cond.notify_all()
        return queued

    def _drained(self) -> bool:
        return not self._items and self._in_flight == 0 and not self._retry_tasks

    async def get(self) -> Optional[QueuedJob]:
        async with self._cond:
            await self._cond.wait_for(lambda: self._items or self._drained())
            if not self._items:
                return None
            self._in_flight += 1
            return self._items.popleft()

    async def ack(self, queued: QueuedJob) -> None:
        async with self._cond:
            self._in_flight -= 1
            self.completed.append(queued)
            self._cond.notify_all()

    async def fail(self, queued: QueuedJob, error: BaseException) -> bool:
        async with self._cond:
            self._in_flight -= 1
            retry = self.will_retry(queued)
            if retry:
                delay = self.backoff_delay(queued.attempt)
                logger.info(f"Retrying receipt {queued.job.receipt_id} in {delay:.1f}s "
                            f"(attempt {queued.attempt + 1}/{self.attempts})")
                task = asyncio.get_running_loop().create_task(self._requeue(queued, delay))
                self._retry_tasks.add(task)
            else:
                logger.error(f"Receipt {queued.job.receipt_id} failed after {queued.attempt} attempts: {error}")
                self.dead.append(queued)
            self._cond.notify_all()
        return retry

    async def _requeue(self, queued: QueuedJob, delay: float):
        await asyncio.sleep(delay)
        async with self._cond:
            self._items.append(QueuedJob(job=queued.job, attempt=queued.attempt + 1, job_id=queued.job_id))
            self._retry_tasks.discard(asyncio.current_task())
            self._cond.notify_all()

    async def close(self):
        """Drop pending retries."""
        for task in list(self._retry_tasks):
            task.cancel()
        await asyncio.gather(*self._retry_tasks, return_exceptions=True)
        async with self._cond:
            self._retry_tasks.clear()
            self._cond.notify_all()


class ReceiptStore(ABC):
    """Persistence boundary for receipt OCR state."""

    @abstractmethod
    async def get(self, receipt_id: str) -> Optional[ReceiptRecord]:
        pass

    @abstractmethod
    async def save(self, record: ReceiptRecord) -> None:
        pass

    async def update_status(self,
                            receipt_id: str,
                            status: OcrStatus,
                            fields: Optional[ExtractedFields] = None,
                            processed_at: Optional[datetime] = None,
                            metadata: Optional[Dict[str, Any]] = None) -> ReceiptRecord:
        """
        Move a receipt to ``status``.

        ``success`` stores the extracted fields; ``pending`` and ``failed``
        clear any previously extracted fields. ``metadata`` is merged into
        the record's existing metadata.
        """
        record = await self.get(receipt_id) or ReceiptRecord(receipt_id=receipt_id)
        record.status = status
        if metadata:
            record.metadata.update(metadata)

        if status == OcrStatus.SUCCESS and fields is not None:
            data = fields.to_dict()
            record.raw_text = data['rawText']
            record.merchant = data['merchant']
            record.date = data['date']
            record.total = data['total']
        elif status in (OcrStatus.PENDING, OcrStatus.FAILED):
            record.raw_text = record.merchant = record.date = record.total = None

        if status == OcrStatus.PENDING:
            record.processed_at = None
        elif processed_at is not None:
            record.processed_at = processed_at.isoformat()

        await self.save(record)
        return record


class JsonReceiptStore(ReceiptStore):
    """One UTF-8 JSON document per receipt in a directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, receipt_id: str) -> Path:
        safe_id = ''.join(c if c.isascii() and (c.isalnum() or c in '-_') else '_' for c in receipt_id)
        if safe_id != receipt_id:
            # Escaped ids get a digest of the raw id so they cannot collide
            digest = hashlib.sha1(receipt_id.encode('utf-8')).hexdigest()[:10]
            safe_id = f"{safe_id}~{digest}"
        return self.directory / f"{safe_id}.json"

    async def get(self, receipt_id: str) -> Optional[ReceiptRecord]:
        path = self._path(receipt_id)
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return ReceiptRecord.from_dict(json.load(f))

    async def save(self, record: ReceiptRecord) -> None:
        path = self._path(record.receipt_id)
        tmp_path = path.with_suffix('.json.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(record.to_dict(), f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)

    def all(self) -> Dict[str, ReceiptRecord]:
        records = {}
        for path in sorted(self.directory.glob('*.json')):
            with open(path, 'r', encoding='utf-8') as f:
                record = ReceiptRecord.from_dict(json.load(f))
            records[record.receipt_id] = record
        return records


class ReceiptWorker:
    """Consumes OCR jobs with bounded concurrency and records status transitions."""

    def __init__(self,
                 queue: JobQueue,
                 store: ReceiptStore,
                 orchestrator: RecognitionOrchestrator,
                 concurrency: int = 5,
                 finish_in_flight: bool = True,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            queue: Job source
            store: Receipt status persistence
            orchestrator: Multi-pass recognizer
            concurrency: Maximum jobs processed at once
            finish_in_flight: On stop, let running jobs try all variants
            clock: Timestamp source for processed-at
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.store = store
        self.orchestrator = orchestrator
        self.concurrency = concurrency
        self.finish_in_flight = finish_in_flight
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.stats = {'processed': 0, 'failed': 0, 'retried': 0}
        self._fatal: Optional[BaseException] = None
        self._stop_event: Optional[asyncio.Event] = None

    async def handle(self, job: ReceiptJob, cancel_event: Optional[asyncio.Event] = None) -> ExtractedFields:
        """
        Process one receipt: processing -> success | failed.

        Raises whatever made the job fail, after recording ``failed``.
        """
        logger.info(f"Processing OCR for receipt: {job.receipt_id}")
        await self.store.update_status(job.receipt_id, OcrStatus.PROCESSING,
                                       metadata=job_metadata(job))

        try:
            if not Path(job.image_path).exists():
                raise FileNotFoundError(f"Receipt image not found: {job.image_path}")
            fields = await self.orchestrator.process(job.image_path, cancel_event=cancel_event)
        except Exception as e:
            logger.error(f"OCR failed for receipt: {job.receipt_id}: {e}")
            await self.store.update_status(job.receipt_id, OcrStatus.FAILED, processed_at=self.clock())
            raise

        await self.store.update_status(job.receipt_id, OcrStatus.SUCCESS, fields=fields,
                                       processed_at=self.clock())
        logger.info(f"OCR completed for receipt: {job.receipt_id}")
        return fields

    async def _consume(self, queued: QueuedJob, slots: asyncio.Semaphore,
                       cancel_event: Optional[asyncio.Event]):
        try:
            await self.handle(queued.job, cancel_event=cancel_event)
        except Exception as e:
            self.stats['failed'] += 1
            # The record must be pending before the redelivery can start.
            if self.queue.will_retry(queued):
                await self.store.update_status(queued.job.receipt_id, OcrStatus.PENDING)
            if await self.queue.fail(queued, e):
                self.stats['retried'] += 1
            if isinstance(e, EngineInitializationError) and self._fatal is None:
                self._fatal = e
                self._stop_event.set()
        else:
            self.stats['processed'] += 1
            await self.queue.ack(queued)
        finally:
            slots.release()

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> Dict[str, int]:
        """
        Pull and process jobs until the queue is exhausted or ``stop_event`` is set.

        Returns:
            Counters of processed, failed and retried deliveries
        """
        stop_event = stop_event or asyncio.Event()
        self._stop_event = stop_event
        self._fatal = None
        cancel_event = None if self.finish_in_flight else stop_event
        slots = asyncio.Semaphore(self.concurrency)
        running: Set[asyncio.Task] = set()

        logger.info(f"OCR worker started (concurrency={self.concurrency})")
        while not stop_event.is_set():
            await slots.acquire()
            queued = await self._next_job(stop_event)
            if queued is None:
                slots.release()
                break
            task = asyncio.get_running_loop().create_task(self._consume(queued, slots, cancel_event))
            running.add(task)
            task.add_done_callback(running.discard)

        if running:
            logger.info(f"Waiting for {len(running)} in-flight job(s)")
            await asyncio.gather(*running)
        logger.info(f"OCR worker stopped: {self.stats}")
        if self._fatal is not None:
            raise self._fatal
        return dict(self.stats)

    async def _next_job(self, stop_event: asyncio.Event) -> Optional[QueuedJob]:
        get_task = asyncio.ensure_future(self.queue.get())
        stop_task = asyncio.ensure_future(stop_event.wait())
        await asyncio.wait({get_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        stop_task.cancel()
        if get_task.done():
            return get_task.result()
        get_task.cancel()
        await asyncio.gather(get_task, return_exceptions=True)
        return None


async def serve(worker: ReceiptWorker, engine: SharedRecognitionEngine,
                handle_signals: bool = True) -> Dict[str, int]:
    """
    Run a worker until its queue drains or SIGINT/SIGTERM arrives,
    then release the recognition engine.
    """
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []

    if handle_signals:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
                installed.append(sig)
            except NotImplementedError:
                logger.debug(f"Signal handler for {sig.name} not supported on this platform")

    try:
        return await worker.run(stop_event=stop_event)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await engine.close()
