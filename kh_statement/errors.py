"""
Exception types raised by the control statement service.

Callers (API, CLI) translate these into HTTP status codes or exit codes.
"""

from __future__ import annotations


class KhStatementError(Exception):
    """Base class for all service errors."""


class InvoiceNotFoundError(KhStatementError):
    def __init__(self, invoice_id: str) -> None:
        super().__init__(f"Invoice not found: {invoice_id}")
        self.invoice_id = invoice_id


class SubmissionNotFoundError(KhStatementError):
    def __init__(self, ref: str) -> None:
        super().__init__(f"No submission found: {ref}")
        self.ref = ref


class JobNotFoundError(KhStatementError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class SectionMismatchError(KhStatementError, ValueError):
    """A section tag was assigned to an invoice of the other direction."""


class DocumentWriteError(KhStatementError):
    """The generated document could not be written to its file location."""


class SubmissionHistoryError(KhStatementError):
    """The persisted submission history could not be read."""


class OcrInProgressError(KhStatementError):
    def __init__(self, invoice_id: str) -> None:
        super().__init__(f"OCR already running for invoice {invoice_id}")
        self.invoice_id = invoice_id


class OcrFailedError(KhStatementError):
    def __init__(self, invoice_id: str, reason: str) -> None:
        super().__init__(f"OCR failed for invoice {invoice_id}: {reason}")
        self.invoice_id = invoice_id
