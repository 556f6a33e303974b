"""
Background OCR queue.

Jobs are batches of invoice ids. They are kept in a FIFO and drained one at
a time by a single worker thread that starts on demand and exits when the
queue is empty. Progress lives in a `JobStore` so callers can poll it.

Skip rules while a job runs:
- an invoice currently being processed elsewhere is skipped
- an invoice that already has an OCR confidence or is manually verified is
  skipped without running the extractor again

A queued job always runs to completion; there is no cancellation.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Protocol, Set

from pydantic import BaseModel

from .errors import InvoiceNotFoundError, JobNotFoundError, OcrFailedError, OcrInProgressError
from .schema import ExtractionResult, Invoice, JobState, OcrJob, OcrRunResult
from .service import ControlStatementService

logger = logging.getLogger(__name__)


class Extractor(Protocol):
    """Reads tax data from an invoice file (vision model, OCR engine, ...)."""

    def extract(self, invoice: Invoice) -> ExtractionResult:
        ...


class JobStore(Protocol):
    def create(self, job: OcrJob) -> OcrJob:
        ...

    def get(self, job_id: str) -> Optional[OcrJob]:
        ...

    def update(self, job: OcrJob) -> OcrJob:
        ...

    def list(self) -> List[OcrJob]:
        ...


class InMemoryJobStore:
    """Thread-safe job store. Returns copies so readers never see a half-updated job."""

    def __init__(self) -> None:
        self._jobs: Dict[str, OcrJob] = {}
        self._lock = threading.Lock()

    def create(self, job: OcrJob) -> OcrJob:
        with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
        return job

    def get(self, job_id: str) -> Optional[OcrJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def update(self, job: OcrJob) -> OcrJob:
        with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
        return job

    def list(self) -> List[OcrJob]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at)
            return [job.model_copy(deep=True) for job in jobs]


class EnqueueResult(BaseModel):
    queued: bool
    job_id: Optional[str] = None
    reason: Optional[str] = None


class OcrQueue:
    """
    Single-worker OCR queue.

    Parameters
    ----------
    service:
        Used to store extraction results (and classify them).
    extractor:
        The OCR collaborator.
    store:
        Job progress store; defaults to `InMemoryJobStore`.
    autostart:
        Start the background worker as soon as a job is queued. Tests turn
        this off and call `run_pending` to drain in the calling thread.
    """

    def __init__(
        self,
        service: ControlStatementService,
        extractor: Extractor,
        store: Optional[JobStore] = None,
        autostart: bool = True,
    ) -> None:
        self.service = service
        self.extractor = extractor
        self.store = store if store is not None else InMemoryJobStore()
        self.autostart = autostart
        self._order: Deque[str] = deque()
        self._in_flight: Set[str] = set()
        self._lock = threading.Lock()
        self._running = False
        self._idle = threading.Event()
        self._idle.set()

    # --- Enqueueing --------------------------------------------------------

    def enqueue(self, invoice_ids: List[str]) -> OcrJob:
        ids = [i for i in invoice_ids if isinstance(i, str) and i]
        if not ids:
            raise ValueError("invoice_ids is required")

        job = OcrJob(
            id=str(uuid.uuid4()),
            created_at=datetime.now(timezone.utc),
            total=len(ids),
            invoice_ids=ids,
        )
        self.store.create(job)
        self._schedule(job.id)
        logger.info("Queued OCR job %s with %d invoice(s)", job.id, job.total)
        return job

    def enqueue_invoice(self, invoice_id: str) -> EnqueueResult:
        """Queue a single invoice unless OCR cannot or need not run on it."""
        invoice = self.service.repository.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        if not invoice.ocr_eligible:
            return EnqueueResult(queued=False, reason="unsupported_type")

        existing = self.service.repository.get_tax_data(invoice_id)
        if existing is not None and (
            existing.ocr_confidence is not None or existing.manually_verified
        ):
            return EnqueueResult(queued=False, reason="already_processed")

        job = self.enqueue([invoice_id])
        return EnqueueResult(queued=True, job_id=job.id)

    def run_now(self, invoice_id: str) -> OcrRunResult:
        """
        Run OCR on one invoice in the calling thread, bypassing the queue.

        Unlike queued jobs this re-runs OCR on invoices that already have a
        result. An invoice the worker is processing right now is refused.
        """
        invoice = self.service.repository.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)

        with self._lock:
            if invoice_id in self._in_flight:
                raise OcrInProgressError(invoice_id)
            self._in_flight.add(invoice_id)
        try:
            try:
                result = self.extractor.extract(invoice)
            except Exception as exc:
                logger.warning("OCR failed for invoice %s: %s", invoice_id, exc)
                raise OcrFailedError(invoice_id, str(exc)) from exc
            saved = self.service.save_extraction(invoice_id, result)
        finally:
            with self._lock:
                self._in_flight.discard(invoice_id)
        return OcrRunResult(data=saved, confidence=result.confidence)

    def get(self, job_id: str) -> OcrJob:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # --- Worker ------------------------------------------------------------

    def _schedule(self, job_id: str) -> None:
        with self._lock:
            self._order.append(job_id)
        if self.autostart:
            self._ensure_worker()

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._idle.clear()
        threading.Thread(target=self._drain, name="ocr-worker", daemon=True).start()

    def run_pending(self) -> None:
        """Drain the queue in the calling thread (no-op if a worker is active)."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._idle.clear()
        self._drain()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self._idle.wait(timeout)

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._order:
                    self._running = False
                    self._idle.set()
                    return
                job_id = self._order.popleft()
            self._process(job_id)

    def _process(self, job_id: str) -> None:
        job = self.store.get(job_id)
        if job is None or job.status is not JobState.QUEUED:
            return

        job.status = JobState.RUNNING
        self.store.update(job)

        for invoice_id in job.invoice_ids:
            job.current_invoice_id = invoice_id
            self.store.update(job)
            self._process_invoice(job, invoice_id)
            self.store.update(job)

        job.current_invoice_id = None
        job.status = JobState.DONE
        self.store.update(job)
        logger.info(
            "OCR job %s finished: %d done, %d failed, %d skipped",
            job.id,
            job.done,
            job.failed,
            job.skipped,
        )

    def _process_invoice(self, job: OcrJob, invoice_id: str) -> None:
        invoice = self.service.repository.get_invoice(invoice_id)
        if invoice is None:
            job.failed += 1
            job.errors[invoice_id] = "Invoice not found"
            return

        existing = self.service.repository.get_tax_data(invoice_id)
        if existing is not None and (
            existing.manually_verified or existing.ocr_confidence is not None
        ):
            job.skipped += 1
            return

        with self._lock:
            if invoice_id in self._in_flight:
                job.skipped += 1
                return
            self._in_flight.add(invoice_id)
        try:
            result = self.extractor.extract(invoice)
            self.service.save_extraction(invoice_id, result)
            job.done += 1
        except Exception as exc:
            # Failures are recorded per invoice and the batch continues.
            logger.warning("OCR failed for invoice %s: %s", invoice_id, exc)
            job.failed += 1
            job.errors[invoice_id] = str(exc)
        finally:
            with self._lock:
                self._in_flight.discard(invoice_id)
