"""
Control statement service.

Ties the repository, classifier, builder and submission manager together.
This is the layer the API and CLI talk to.

The main entrypoints are:
- `ControlStatementService.generate` to build, store and record a filing
- `ControlStatementService.overview` and `summary` for a period
- `ControlStatementService.apply_correction` / `save_extraction` to change
  an invoice's tax data (with automatic classification)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from typing import Dict, List, Optional

from .amounts import ZERO, round_amount
from .builder import SOFTWARE_NAME, build_control_statement
from .classifier import check_section_direction, classify_if_missing
from .errors import InvoiceNotFoundError
from .repository import InvoiceRepository
from .schema import (
    Direction,
    ExtractionResult,
    GenerationRequest,
    GenerationResult,
    Invoice,
    InvoiceTaxData,
    InvoiceWithData,
    MonthlySummary,
    Period,
    PeriodOverview,
    Submission,
    SubmissionStatus,
    SummaryTotals,
    TaxDataUpdate,
    TaxpayerSettings,
    TaxpayerSettingsUpdate,
    YearSummary,
)
from .submissions import SubmissionManager

logger = logging.getLogger(__name__)


class ControlStatementService:
    def __init__(
        self,
        repository: InvoiceRepository,
        submissions: SubmissionManager,
        software_name: str = SOFTWARE_NAME,
    ) -> None:
        self.repository = repository
        self.submissions = submissions
        self.software_name = software_name

    # --- Reading -----------------------------------------------------------

    def unclassified(self, period: Period) -> List[InvoiceWithData]:
        """Invoices of ``period`` that have no section (or no tax data at all)."""
        return [
            item
            for item in self.repository.list_invoices(period)
            if item.data is None or item.data.section is None
        ]

    def overview(self, period: Period) -> PeriodOverview:
        items = self.repository.list_invoices(period)
        sections: Dict[str, List[InvoiceWithData]] = defaultdict(list)
        unclassified: List[InvoiceWithData] = []
        for item in items:
            if item.data is not None and item.data.section is not None:
                sections[item.data.section.value].append(item)
            else:
                unclassified.append(item)

        return PeriodOverview(
            year=period.year,
            month=period.month,
            sections=dict(sorted(sections.items())),
            submission=self.submissions.current(period),
            status=self.submissions.status(period),
            unclassified=unclassified,
        )

    def summary(self, period: Period) -> MonthlySummary:
        """Counts and totals per direction, as shown on the month list."""
        counts = {Direction.INCOMING: 0, Direction.OUTGOING: 0}
        totals = {Direction.INCOMING: ZERO, Direction.OUTGOING: ZERO}
        taxes = {Direction.INCOMING: ZERO, Direction.OUTGOING: ZERO}
        verified = eligible = ocr_ok = 0

        for item in self.repository.list_invoices(period):
            direction = item.invoice.direction
            counts[direction] += 1
            if item.invoice.ocr_eligible:
                eligible += 1
            data = item.data
            if data is None:
                continue
            totals[direction] += data.total
            taxes[direction] += data.tax_1 + data.tax_2 + data.tax_3
            if data.manually_verified:
                verified += 1
            if item.invoice.ocr_eligible and data.ocr_confidence is not None:
                ocr_ok += 1

        current = self.submissions.current(period)
        output_tax = round_amount(taxes[Direction.OUTGOING])
        input_tax = round_amount(taxes[Direction.INCOMING])
        return MonthlySummary(
            month=period.key,
            incoming_count=counts[Direction.INCOMING],
            outgoing_count=counts[Direction.OUTGOING],
            incoming_total=round_amount(totals[Direction.INCOMING]),
            outgoing_total=round_amount(totals[Direction.OUTGOING]),
            output_tax=output_tax,
            input_tax=input_tax,
            vat_difference=round_amount(output_tax - input_tax),
            verified_count=verified,
            total_count=counts[Direction.INCOMING] + counts[Direction.OUTGOING],
            ocr_eligible_count=eligible,
            ocr_ok_count=ocr_ok,
            kh_status=current.status if current else None,
        )

    def months(self) -> List[MonthlySummary]:
        """Summaries of every period that holds invoices, newest first."""
        return [self.summary(Period.parse(month)) for month in self.repository.list_months()]

    def year_summary(self, year: int) -> YearSummary:
        """Monthly summaries of one calendar year plus their totals."""
        months = [m for m in self.months() if m.month.startswith(f"{year:04d}-")]
        totals = SummaryTotals()
        for month in months:
            totals = totals + month
        return YearSummary(year=year, months=months, totals=totals)

    def invoices(self, period: Period) -> List[InvoiceWithData]:
        return self.repository.list_invoices(period)

    def get_invoice(self, invoice_id: str) -> InvoiceWithData:
        invoice = self._require_invoice(invoice_id)
        return InvoiceWithData(invoice=invoice, data=self.repository.get_tax_data(invoice_id))

    # --- Taxpayer settings -------------------------------------------------

    def settings(self) -> TaxpayerSettings:
        return self.repository.get_taxpayer()

    def update_settings(self, update: TaxpayerSettingsUpdate) -> TaxpayerSettings:
        """Merge ``update`` into the stored taxpayer settings and return the result."""
        current = self.repository.get_taxpayer()
        merged = current.model_copy(update=update.model_dump(exclude_none=True))
        self.repository.set_taxpayer(merged)
        logger.info("Taxpayer settings updated")
        return merged

    # --- Generation --------------------------------------------------------

    def build_document(
        self,
        period: Period,
        request: GenerationRequest,
        today: Optional[date] = None,
    ) -> str:
        """Render the document for ``period`` without recording anything."""
        items = self.repository.list_invoices(period)
        classified = [
            (item.invoice, item.data)
            for item in items
            if item.data is not None and item.data.section is not None
        ]
        return build_control_statement(
            period,
            request,
            self.repository.get_taxpayer(),
            classified,
            today=today,
            software_name=self.software_name,
        )

    def generate(
        self,
        period: Period,
        request: Optional[GenerationRequest] = None,
        today: Optional[date] = None,
    ) -> GenerationResult:
        """
        Build the control statement for ``period``, write it to disk and record
        a new ``generated`` submission.

        Unclassified invoices are left out and returned as a warning list.
        Persistence errors propagate and leave no submission behind.
        """
        request = request or GenerationRequest()
        unclassified = [item.invoice.id for item in self.unclassified(period)]
        if unclassified:
            logger.warning(
                "%d invoice(s) in %s have no section and are left out: %s",
                len(unclassified),
                period.key,
                ", ".join(unclassified),
            )

        document = self.build_document(period, request, today=today)
        submission = self.submissions.create(period, request, document)
        return GenerationResult(
            submission=submission,
            document_path=submission.document_path or "",
            unclassified=unclassified,
        )

    def current_submission(self, period: Period) -> Optional[Submission]:
        return self.submissions.current(period)

    def history(self, period: Period) -> List[Submission]:
        return self.submissions.history(period)

    def status(self, period: Period) -> SubmissionStatus:
        return self.submissions.status(period)

    def mark_submitted(self, period: Period) -> Submission:
        return self.submissions.mark_current_submitted(period)

    # --- Invoice tax data --------------------------------------------------

    def _require_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.repository.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    def apply_correction(self, invoice_id: str, update: TaxDataUpdate) -> InvoiceTaxData:
        """
        Merge a manual correction into the stored tax data.

        A section given explicitly must match the invoice's direction. When no
        section results from the merge and the total is non-zero the invoice
        is classified automatically. Once verified, an invoice stays verified.
        """
        invoice = self._require_invoice(invoice_id)
        existing = self.repository.get_tax_data(invoice_id) or InvoiceTaxData(invoice_id=invoice_id)

        changes = update.model_dump(exclude_none=True)
        if existing.manually_verified:
            changes.pop("manually_verified", None)
        data = InvoiceTaxData.model_validate({**existing.model_dump(), **changes})

        check_section_direction(invoice, data.section)
        if data.section is None and data.total:
            data = classify_if_missing(invoice, data)
            logger.info("Invoice %s classified as %s", invoice_id, data.section.value)

        return self.repository.save_tax_data(data)

    def save_extraction(self, invoice_id: str, result: ExtractionResult) -> InvoiceTaxData:
        """
        Store an extraction result. A full-confidence result counts as verified.

        The section is classified from the new data unless one is already set.
        """
        invoice = self._require_invoice(invoice_id)
        existing = self.repository.get_tax_data(invoice_id)

        fields = result.data.model_dump(exclude_none=True)
        fields.pop("section", None)
        fields.pop("manually_verified", None)
        data = InvoiceTaxData(
            invoice_id=invoice_id,
            section=existing.section if existing else None,
            ocr_confidence=result.confidence,
            manually_verified=bool(
                (existing and existing.manually_verified) or result.confidence >= 1.0
            ),
            raw_ocr_json=result.raw_response,
            **fields,
        )
        data = classify_if_missing(invoice, data)
        return self.repository.save_tax_data(data)

    def delete_invoice(self, invoice_id: str) -> None:
        if not self.repository.delete_invoice(invoice_id):
            raise InvoiceNotFoundError(invoice_id)
