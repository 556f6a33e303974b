"""
Unit Tests for the Control Statement Service

End-to-end flows over the in-memory repository: overview, monthly summary,
generation with unclassified invoices, manual corrections and storing
extraction results.
"""
from decimal import Decimal
from pathlib import Path

import pytest

from kh_statement.errors import InvoiceNotFoundError, SectionMismatchError, SubmissionNotFoundError
from kh_statement.schema import (
    ExtractionResult,
    FilingType,
    GenerationRequest,
    Period,
    Section,
    SubmissionStatus,
    TaxDataUpdate,
    TaxpayerSettingsUpdate,
)

from tests.factories import PERIOD, TODAY, make_data, make_invoice


class TestOverview:
    """Tests for the per-period overview."""

    def test_sections_and_unclassified(self, service, populated):
        overview = service.overview(PERIOD)
        assert sorted(overview.sections) == ["A1", "A4", "A5", "B1", "B2", "B3"]
        assert len(overview.sections["A5"]) == 2
        assert [item.invoice.id for item in overview.unclassified] == ["no-data"]
        assert overview.status is SubmissionStatus.DRAFT
        assert overview.submission is None

    def test_other_periods_not_included(self, service, populated):
        populated.add_invoice(make_invoice("feb", "outgoing", month="2026-02"))
        overview = service.overview(PERIOD)
        ids = [i.invoice.id for items in overview.sections.values() for i in items]
        assert "feb" not in ids
        assert "feb" not in [i.invoice.id for i in overview.unclassified]

    def test_status_follows_current_submission(self, service, populated):
        service.generate(PERIOD, today=TODAY)
        overview = service.overview(PERIOD)
        assert overview.status is SubmissionStatus.GENERATED
        assert overview.submission is not None


class TestSummary:
    """Tests for the monthly totals."""

    def test_counts_and_totals(self, service, populated):
        summary = service.summary(PERIOD)
        assert summary.month == "2026-01"
        assert summary.outgoing_count == 4
        assert summary.incoming_count == 5
        assert summary.total_count == 9
        assert summary.outgoing_total == Decimal("31530.00")
        assert summary.incoming_total == Decimal("32100.00")
        assert summary.output_tax == Decimal("4530.00")
        assert summary.input_tax == Decimal("5571.08")
        assert summary.vat_difference == Decimal("-1041.08")
        assert summary.kh_status is None

    def test_ocr_counts(self, service, repository):
        repository.add_invoice(make_invoice("scan", "incoming", file_type="jpg"),
                               make_data("scan", 100, ocr_confidence=0.8))
        repository.add_invoice(make_invoice("feed", "incoming", file_type="isdoc"),
                               make_data("feed", 100, manually_verified=True))
        summary = service.summary(PERIOD)
        assert summary.ocr_eligible_count == 1
        assert summary.ocr_ok_count == 1
        assert summary.verified_count == 1


class TestGenerate:
    """Tests for generation and recording."""

    def test_generates_document_and_submission(self, service, populated, tmp_path):
        result = service.generate(PERIOD, today=TODAY)
        path = Path(result.document_path)
        assert path == tmp_path / "out" / "2026-01" / "kh_2026_01.xml"
        assert path.read_text(encoding="utf-8") == result.submission.document
        assert result.submission.status is SubmissionStatus.GENERATED
        assert result.submission.filing_type is FilingType.REGULAR

    def test_unclassified_reported_and_left_out(self, service, populated, caplog):
        result = service.generate(PERIOD, today=TODAY)
        assert result.unclassified == ["no-data"]
        assert "no-data" in caplog.text

    def test_generation_is_not_blocked_by_unclassified(self, service, repository):
        repository.add_invoice(make_invoice("x", "outgoing"), make_data("x", 500))
        result = service.generate(PERIOD, today=TODAY)
        assert result.unclassified == ["x"]
        assert "<VetaC " in result.submission.document

    def test_filing_type_in_header(self, service, populated):
        request = GenerationRequest(filing_type=FilingType.CORRECTIVE)
        result = service.generate(PERIOD, request, today=TODAY)
        assert 'khdph_forma="O"' in result.submission.document
        assert result.submission.filing_type is FilingType.CORRECTIVE

    def test_regeneration_overwrites_file_and_keeps_history(self, service, populated):
        first = service.generate(PERIOD, today=TODAY)
        service.apply_correction("in-small-2", TaxDataUpdate(section=Section.B2))
        second = service.generate(PERIOD, today=TODAY)
        assert first.document_path == second.document_path
        assert Path(second.document_path).read_text(encoding="utf-8") == second.submission.document
        assert [s.id for s in service.history(PERIOD)] == [first.submission.id, second.submission.id]
        assert service.current_submission(PERIOD).id == second.submission.id

    def test_mark_submitted(self, service, populated):
        service.generate(PERIOD, today=TODAY)
        submitted = service.mark_submitted(PERIOD)
        assert submitted.status is SubmissionStatus.SUBMITTED
        assert service.status(PERIOD) is SubmissionStatus.SUBMITTED

    def test_mark_submitted_without_generation(self, service):
        with pytest.raises(SubmissionNotFoundError):
            service.mark_submitted(PERIOD)


class TestScenarios:
    """Worked examples for single-period filings."""

    def test_outgoing_reverse_charge(self, service, repository):
        repository.add_invoice(make_invoice("rc", "outgoing"))
        service.apply_correction("rc", TaxDataUpdate(
            total=Decimal("5000"), base_1=Decimal("5000"), reverse_charge_code="4",
            customer_vat_id="CZ12345678", document_number="FV-1",
        ))
        assert repository.get_tax_data("rc").section is Section.A1

        document = service.build_document(PERIOD, GenerationRequest(), today=TODAY)
        assert document.count("<VetaA1 ") == 1
        assert "<VetaA4 " not in document
        assert "<VetaA5 " not in document
        assert 'pln_rez_pren="5000.00"' in document
        assert 'obrat23="5000.00"' in document

    def test_incoming_above_threshold(self, service, repository):
        repository.add_invoice(make_invoice("big", "incoming"))
        service.apply_correction("big", TaxDataUpdate(
            total=Decimal("15000"), base_1=Decimal("12396.69"), tax_1=Decimal("2603.31"),
        ))
        assert repository.get_tax_data("big").section is Section.B2
        document = service.build_document(PERIOD, GenerationRequest(), today=TODAY)
        assert document.count("<VetaB2 ") == 1

    def test_two_small_incoming_then_reclassified(self, service, repository):
        for invoice_id, total, base, tax in [
            ("s1", "3000", "2479.34", "520.66"),
            ("s2", "2000", "1652.89", "347.11"),
        ]:
            repository.add_invoice(make_invoice(invoice_id, "incoming"))
            service.apply_correction(invoice_id, TaxDataUpdate(
                total=Decimal(total), base_1=Decimal(base), tax_1=Decimal(tax),
            ))
            assert repository.get_tax_data(invoice_id).section is Section.B3

        document = service.build_document(PERIOD, GenerationRequest(), today=TODAY)
        assert document.count("<VetaB3 ") == 1
        assert '<VetaB3 zakl_dane1="4132.23" dan1="867.77"' in document

        for invoice_id in ("s1", "s2"):
            service.apply_correction(invoice_id, TaxDataUpdate(section=Section.B2))
        document = service.build_document(PERIOD, GenerationRequest(), today=TODAY)
        assert "<VetaB3 " not in document
        assert document.count("<VetaB2 ") == 2

    def test_empty_period(self, service):
        result = service.generate(Period(year=2025, month=12), today=TODAY)
        document = result.submission.document
        assert "<VetaD " in document
        assert "<VetaP " in document
        assert "<VetaA" not in document
        assert "<VetaB" not in document
        assert 'obrat23="0.00"' in document
        assert result.unclassified == []


class TestApplyCorrection:
    """Tests for manual corrections."""

    def test_unknown_invoice(self, service):
        with pytest.raises(InvoiceNotFoundError):
            service.apply_correction("nope", TaxDataUpdate(total=Decimal("1")))

    def test_partial_update_keeps_other_fields(self, service, populated):
        updated = service.apply_correction("out-big", TaxDataUpdate(document_number="FV-002a"))
        assert updated.document_number == "FV-002a"
        assert updated.base_1 == Decimal("20000.00")
        assert updated.customer_vat_id == "87654321"

    def test_existing_section_not_reclassified(self, service, populated):
        updated = service.apply_correction("out-big", TaxDataUpdate(total=Decimal("500")))
        assert updated.section is Section.A4

    def test_manual_section_must_match_direction(self, service, populated):
        with pytest.raises(SectionMismatchError):
            service.apply_correction("out-big", TaxDataUpdate(section=Section.B2))
        assert populated.get_tax_data("out-big").section is Section.A4

    def test_manual_a2_kept(self, service, populated):
        updated = service.apply_correction("out-small-1", TaxDataUpdate(section=Section.A2))
        assert updated.section is Section.A2

    def test_zero_total_not_classified(self, service, populated):
        updated = service.apply_correction("no-data", TaxDataUpdate(document_number="X"))
        assert updated.section is None

    def test_verified_stays_verified(self, service, populated):
        service.apply_correction("in-big", TaxDataUpdate(manually_verified=True))
        updated = service.apply_correction("in-big", TaxDataUpdate(manually_verified=False))
        assert updated.manually_verified is True


class TestSaveExtraction:
    """Tests for storing extraction results."""

    def test_classifies_new_data(self, service, populated):
        result = ExtractionResult(
            data=TaxDataUpdate(total=Decimal("20000"), base_1=Decimal("16528.93")),
            confidence=0.7,
            raw_response='{"total": 20000}',
        )
        stored = service.save_extraction("no-data", result)
        assert stored.section is Section.B2
        assert stored.ocr_confidence == 0.7
        assert stored.manually_verified is False
        assert stored.raw_ocr_json == '{"total": 20000}'

    def test_full_confidence_counts_as_verified(self, service, populated):
        result = ExtractionResult(data=TaxDataUpdate(total=Decimal("100")), confidence=1.0)
        assert service.save_extraction("no-data", result).manually_verified is True

    def test_keeps_existing_section(self, service, populated):
        result = ExtractionResult(data=TaxDataUpdate(total=Decimal("50000")), confidence=0.9)
        stored = service.save_extraction("in-small-1", result)
        assert stored.section is Section.B3

    def test_section_from_extractor_ignored(self, service, populated):
        result = ExtractionResult(
            data=TaxDataUpdate(total=Decimal("100"), section=Section.A4), confidence=0.9
        )
        stored = service.save_extraction("no-data", result)
        assert stored.section is Section.B3


class TestDeleteInvoice:
    def test_delete(self, service, populated):
        service.delete_invoice("out-big")
        assert populated.get_invoice("out-big") is None
        assert populated.get_tax_data("out-big") is None

    def test_delete_unknown(self, service):
        with pytest.raises(InvoiceNotFoundError):
            service.delete_invoice("nope")


class TestMonthsAndYears:
    """Tests for the month list and the yearly roll-up."""

    def test_months_newest_first(self, service, populated):
        populated.add_invoice(make_invoice("feb", "outgoing", month="2026-02"),
                              make_data("feb", "1210", base_1="1000", tax_1="210"))
        populated.add_invoice(make_invoice("dec", "incoming", month="2025-12"))
        assert [m.month for m in service.months()] == ["2026-02", "2026-01", "2025-12"]

    def test_months_empty(self, service):
        assert service.months() == []

    def test_month_summary_carries_status(self, service, populated):
        service.generate(PERIOD, today=TODAY)
        (january,) = service.months()
        assert january.kh_status is SubmissionStatus.GENERATED

    def test_year_totals(self, service, populated):
        populated.add_invoice(make_invoice("feb", "outgoing", month="2026-02"),
                              make_data("feb", "1210", base_1="1000", tax_1="210"))
        populated.add_invoice(make_invoice("dec", "outgoing", month="2025-12"),
                              make_data("dec", "121", base_1="100", tax_1="21"))

        result = service.year_summary(2026)
        assert result.year == 2026
        assert [m.month for m in result.months] == ["2026-02", "2026-01"]
        assert result.totals.total_count == 10
        assert result.totals.outgoing_count == 5
        assert result.totals.output_tax == Decimal("4740.00")
        assert result.totals.input_tax == Decimal("5571.08")
        assert result.totals.vat_difference == Decimal("-831.08")

    def test_year_without_invoices(self, service, populated):
        result = service.year_summary(2024)
        assert result.months == []
        assert result.totals.total_count == 0
        assert result.totals.vat_difference == 0


class TestInvoiceReads:
    """Tests for reading single invoices and a period's invoices."""

    def test_get_invoice_with_data(self, service, populated):
        item = service.get_invoice("out-big")
        assert item.invoice.id == "out-big"
        assert item.data.section is Section.A4

    def test_get_invoice_without_data(self, service, populated):
        assert service.get_invoice("no-data").data is None

    def test_get_unknown_invoice(self, service):
        with pytest.raises(InvoiceNotFoundError):
            service.get_invoice("nope")

    def test_invoices_of_period(self, service, populated):
        populated.add_invoice(make_invoice("feb", "outgoing", month="2026-02"))
        ids = {item.invoice.id for item in service.invoices(PERIOD)}
        assert len(ids) == 9
        assert "feb" not in ids


class TestTaxpayerSettings:
    """Tests for reading and updating the taxpayer identity."""

    def test_read(self, service, taxpayer):
        assert service.settings() == taxpayer

    def test_partial_update_keeps_other_fields(self, service, repository, taxpayer):
        updated = service.update_settings(TaxpayerSettingsUpdate(name="Svoboda", city="Brno"))
        assert updated.name == "Svoboda"
        assert updated.city == "Brno"
        assert updated.vat_id == taxpayer.vat_id
        assert repository.get_taxpayer() == updated

    def test_update_reaches_generated_document(self, service, populated):
        service.update_settings(TaxpayerSettingsUpdate(person_type="P", name="Acme s.r.o."))
        xml = service.build_document(PERIOD, GenerationRequest(), today=TODAY)
        assert 'obch_jmeno="Acme s.r.o."' in xml
