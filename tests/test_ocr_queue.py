"""
Unit Tests for the OCR Job Queue

The queue is built with ``autostart=False`` and drained in the test thread
with ``run_pending``; one test exercises the background worker.
"""
from decimal import Decimal

import pytest

from kh_statement.errors import (
    InvoiceNotFoundError,
    JobNotFoundError,
    OcrFailedError,
    OcrInProgressError,
)
from kh_statement.ocr_queue import InMemoryJobStore, OcrQueue
from kh_statement.schema import ExtractionResult, JobState, Section, TaxDataUpdate

from tests.factories import make_data, make_invoice


class FakeExtractor:
    """Returns canned results per invoice id and records every call."""

    def __init__(self, results=None, failures=None):
        self.results = results or {}
        self.failures = failures or {}
        self.calls = []

    def extract(self, invoice):
        self.calls.append(invoice.id)
        if invoice.id in self.failures:
            raise RuntimeError(self.failures[invoice.id])
        return self.results.get(
            invoice.id,
            ExtractionResult(data=TaxDataUpdate(total=Decimal("1210"), base_1=Decimal("1000"),
                                                tax_1=Decimal("210")), confidence=0.8),
        )


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def queue(service, extractor):
    return OcrQueue(service, extractor, autostart=False)


@pytest.fixture
def scans(repository):
    for invoice_id in ("scan-1", "scan-2", "scan-3"):
        repository.add_invoice(make_invoice(invoice_id, "incoming", file_type="png"))
    return repository


class TestEnqueue:
    """Tests for job creation."""

    def test_empty_list_rejected(self, queue):
        with pytest.raises(ValueError):
            queue.enqueue([])

    def test_job_starts_queued(self, queue, scans):
        job = queue.enqueue(["scan-1", "scan-2"])
        stored = queue.get(job.id)
        assert stored.status is JobState.QUEUED
        assert stored.total == 2
        assert stored.invoice_ids == ["scan-1", "scan-2"]

    def test_unknown_job(self, queue):
        with pytest.raises(JobNotFoundError):
            queue.get("missing")

    def test_single_invoice_unknown(self, queue):
        with pytest.raises(InvoiceNotFoundError):
            queue.enqueue_invoice("missing")

    def test_single_invoice_unsupported_type(self, queue, repository):
        repository.add_invoice(make_invoice("feed", "incoming", file_type="isdoc"))
        result = queue.enqueue_invoice("feed")
        assert result.queued is False
        assert result.reason == "unsupported_type"

    def test_single_invoice_already_processed(self, queue, repository):
        repository.add_invoice(
            make_invoice("done", "incoming"), make_data("done", 100, ocr_confidence=0.9)
        )
        result = queue.enqueue_invoice("done")
        assert result.queued is False
        assert result.reason == "already_processed"

    def test_single_invoice_queued(self, queue, scans):
        result = queue.enqueue_invoice("scan-1")
        assert result.queued is True
        assert queue.get(result.job_id).invoice_ids == ["scan-1"]


class TestProcessing:
    """Tests for draining the queue."""

    def test_batch_completes(self, queue, scans, extractor):
        job = queue.enqueue(["scan-1", "scan-2", "scan-3"])
        queue.run_pending()

        finished = queue.get(job.id)
        assert finished.status is JobState.DONE
        assert finished.done == 3
        assert finished.failed == 0
        assert finished.current_invoice_id is None
        assert extractor.calls == ["scan-1", "scan-2", "scan-3"]

    def test_results_stored_and_classified(self, queue, scans):
        queue.enqueue(["scan-1"])
        queue.run_pending()
        data = scans.get_tax_data("scan-1")
        assert data.ocr_confidence == 0.8
        assert data.section is Section.B3

    def test_failure_does_not_stop_batch(self, service, scans):
        extractor = FakeExtractor(failures={"scan-2": "model timeout"})
        queue = OcrQueue(service, extractor, autostart=False)
        job = queue.enqueue(["scan-1", "scan-2", "scan-3"])
        queue.run_pending()

        finished = queue.get(job.id)
        assert finished.done == 2
        assert finished.failed == 1
        assert finished.errors == {"scan-2": "model timeout"}
        assert scans.get_tax_data("scan-2") is None

    def test_missing_invoice_counted_as_failed(self, queue, scans):
        job = queue.enqueue(["scan-1", "gone"])
        queue.run_pending()
        finished = queue.get(job.id)
        assert finished.done == 1
        assert finished.failed == 1
        assert finished.errors["gone"] == "Invoice not found"

    def test_verified_invoice_skipped(self, queue, repository, extractor):
        repository.add_invoice(
            make_invoice("checked", "incoming"), make_data("checked", 100, manually_verified=True)
        )
        job = queue.enqueue(["checked"])
        queue.run_pending()
        assert queue.get(job.id).skipped == 1
        assert extractor.calls == []

    def test_second_job_skips_processed_invoices(self, queue, scans, extractor):
        first = queue.enqueue(["scan-1"])
        second = queue.enqueue(["scan-1", "scan-2"])
        queue.run_pending()

        assert queue.get(first.id).done == 1
        later = queue.get(second.id)
        assert later.skipped == 1
        assert later.done == 1
        assert extractor.calls == ["scan-1", "scan-2"]

    def test_jobs_run_in_fifo_order(self, queue, scans, extractor):
        queue.enqueue(["scan-3"])
        queue.enqueue(["scan-1"])
        queue.run_pending()
        assert extractor.calls == ["scan-3", "scan-1"]

    def test_background_worker(self, service, scans, extractor):
        queue = OcrQueue(service, extractor)
        job = queue.enqueue(["scan-1", "scan-2"])
        assert queue.wait_idle(timeout=5)
        assert queue.get(job.id).status is JobState.DONE


    def test_in_flight_invoice_skipped(self, queue, scans, extractor):
        queue._in_flight.add("scan-1")
        job = queue.enqueue(["scan-1", "scan-2"])
        queue.run_pending()
        finished = queue.get(job.id)
        assert finished.skipped == 1
        assert finished.done == 1
        assert extractor.calls == ["scan-2"]


class TestRunNow:
    """Tests for running OCR on one invoice outside the queue."""

    def test_stores_result(self, queue, scans, extractor):
        result = queue.run_now("scan-1")
        assert result.confidence == 0.8
        assert result.data.section is Section.B3
        assert scans.get_tax_data("scan-1").ocr_confidence == 0.8
        assert extractor.calls == ["scan-1"]
        assert queue._in_flight == set()

    def test_reruns_processed_invoice(self, queue, scans, extractor):
        queue.enqueue(["scan-1"])
        queue.run_pending()
        queue.run_now("scan-1")
        assert extractor.calls == ["scan-1", "scan-1"]

    def test_refused_while_in_flight(self, queue, scans, extractor):
        queue._in_flight.add("scan-1")
        with pytest.raises(OcrInProgressError):
            queue.run_now("scan-1")
        assert extractor.calls == []
        assert "scan-1" in queue._in_flight

    def test_extractor_failure(self, service, scans):
        queue = OcrQueue(service, FakeExtractor(failures={"scan-1": "model timeout"}), autostart=False)
        with pytest.raises(OcrFailedError) as excinfo:
            queue.run_now("scan-1")
        assert "model timeout" in str(excinfo.value)
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert scans.get_tax_data("scan-1") is None
        assert queue._in_flight == set()

    def test_unknown_invoice(self, queue):
        with pytest.raises(InvoiceNotFoundError):
            queue.run_now("missing")


class TestJobStore:
    def test_returns_copies(self, queue, scans):
        store = InMemoryJobStore()
        job = queue.enqueue(["scan-1"])
        store.create(job)
        copy = store.get(job.id)
        copy.done = 99
        assert store.get(job.id).done == 0

    def test_list_in_creation_order(self, queue, scans):
        first = queue.enqueue(["scan-1"])
        second = queue.enqueue(["scan-2"])
        assert [j.id for j in queue.store.list()] == [first.id, second.id]
