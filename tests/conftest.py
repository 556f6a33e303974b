"""
KH Statement Test Configuration

Shared fixtures for all tests.
"""
import pytest

from kh_statement.repository import InMemoryInvoiceRepository
from kh_statement.schema import Section, TaxpayerSettings
from kh_statement.service import ControlStatementService
from kh_statement.submissions import InMemorySubmissionStore, SubmissionManager

from tests.factories import FixedClock, make_data, make_invoice


@pytest.fixture
def taxpayer() -> TaxpayerSettings:
    return TaxpayerSettings(
        vat_id="CZ8001011234",
        reg_no="12345678",
        person_type="F",
        tax_office_code="451",
        name="Novák",
        street="Dlouhá 5",
        city="Praha",
        postal_code="11000",
        email="jan@example.cz",
    )


@pytest.fixture
def repository(taxpayer) -> InMemoryInvoiceRepository:
    return InMemoryInvoiceRepository(taxpayer=taxpayer)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def submission_store() -> InMemorySubmissionStore:
    return InMemorySubmissionStore()


@pytest.fixture
def manager(submission_store, tmp_path, clock) -> SubmissionManager:
    return SubmissionManager(submission_store, tmp_path / "out", clock=clock)


@pytest.fixture
def service(repository, manager) -> ControlStatementService:
    return ControlStatementService(repository, manager)


@pytest.fixture
def populated(repository):
    """
    A January with one invoice of every automatically assigned section plus
    one invoice without tax data.
    """
    rows = [
        ("out-rc", "outgoing", make_data(
            "out-rc", 5000, base_1="5000", document_number="FV-001",
            reverse_charge_code="4", customer_vat_id="12345678", supply_date="05.01.2026",
            section=Section.A1)),
        ("out-big", "outgoing", make_data(
            "out-big", "24200", base_1="20000", tax_1="4200", document_number="FV-002",
            customer_vat_id="87654321", tax_point_date="10.01.2026", section=Section.A4)),
        ("out-small-1", "outgoing", make_data(
            "out-small-1", "1210", base_1="1000", tax_1="210", document_number="FV-003",
            section=Section.A5)),
        ("out-small-2", "outgoing", make_data(
            "out-small-2", "1120", base_2="1000", tax_2="120", document_number="FV-004",
            section=Section.A5)),
        ("in-rc", "incoming", make_data(
            "in-rc", "12100", base_1="10000", tax_1="2100", document_number="DF-100",
            reverse_charge_code="1", supplier_vat_id="11112222", section=Section.B1)),
        ("in-big", "incoming", make_data(
            "in-big", "15000", base_1="12396.69", tax_1="2603.31", document_number="DF-200",
            supplier_vat_id="33334444", section=Section.B2)),
        ("in-small-1", "incoming", make_data(
            "in-small-1", "3000", base_1="2479.34", tax_1="520.66", document_number="DF-300",
            section=Section.B3)),
        ("in-small-2", "incoming", make_data(
            "in-small-2", "2000", base_1="1652.89", tax_1="347.11", document_number="DF-301",
            section=Section.B3)),
    ]
    for invoice_id, direction, data in rows:
        repository.add_invoice(make_invoice(invoice_id, direction), data)
    repository.add_invoice(make_invoice("no-data", "incoming"))
    return repository
