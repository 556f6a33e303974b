"""
Data models for invoices, their tax data, section lines and submissions.

Every component (classifier, aggregator, builder, service, API, CLI) passes
these Pydantic models around so they all share one contract.
"""

from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .amounts import ZERO, round_amount


MONEY_FIELDS = ("base_1", "tax_1", "base_2", "tax_2", "base_3", "tax_3")
OCR_FILE_TYPES = ("pdf", "jpg", "jpeg", "png")

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{1,2})$")


class Direction(str, Enum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"


class Section(str, Enum):
    """
    Control statement sections.

    A* sections hold supplies made (outgoing invoices), B* sections hold
    supplies received (incoming invoices). A2 and A3 exist in the schema but
    are only ever assigned by hand.
    """

    A1 = "A1"
    A2 = "A2"
    A3 = "A3"
    A4 = "A4"
    A5 = "A5"
    B1 = "B1"
    B2 = "B2"
    B3 = "B3"

    @property
    def direction(self) -> Direction:
        return Direction.OUTGOING if self.value.startswith("A") else Direction.INCOMING

    @property
    def is_aggregate(self) -> bool:
        return self in (Section.A5, Section.B3)


class FilingType(str, Enum):
    REGULAR = "B"
    CORRECTIVE = "O"
    FOLLOW_UP = "N"
    FOLLOW_UP_CORRECTIVE = "E"


class SubmissionStatus(str, Enum):
    DRAFT = "draft"
    GENERATED = "generated"
    SUBMITTED = "submitted"


class Period(BaseModel):
    """A reporting period (calendar year and month)."""

    model_config = ConfigDict(frozen=True)

    year: int = Field(..., ge=1900, le=9999)
    month: int = Field(..., ge=1, le=12)

    @classmethod
    def parse(cls, value: str) -> "Period":
        """Parse ``YYYY-MM``. Raises ``ValueError`` for anything else."""
        match = _PERIOD_RE.match((value or "").strip())
        if not match:
            raise ValueError(f"Invalid period {value!r}, expected YYYY-MM")
        return cls(year=int(match.group(1)), month=int(match.group(2)))

    @property
    def key(self) -> str:
        return f"{self.year}-{self.month:02d}"

    def __str__(self) -> str:
        return self.key


class RateAmounts(BaseModel):
    """Taxable base and tax for each of the three VAT rate buckets."""

    base_1: Decimal = ZERO
    tax_1: Decimal = ZERO
    base_2: Decimal = ZERO
    tax_2: Decimal = ZERO
    base_3: Decimal = ZERO
    tax_3: Decimal = ZERO

    @field_validator(*MONEY_FIELDS, mode="before")
    @classmethod
    def _round(cls, v):
        return round_amount(v)

    def __add__(self, other: "RateAmounts") -> "RateAmounts":
        return RateAmounts(
            **{name: getattr(self, name) + getattr(other, name) for name in MONEY_FIELDS}
        )

    @property
    def has_third_rate(self) -> bool:
        return bool(self.base_3 or self.tax_3)

    @property
    def total_base(self) -> Decimal:
        return self.base_1 + self.base_2 + self.base_3


class Invoice(BaseModel):
    """
    An ingested invoice file. Immutable after ingestion except for deletion.
    """

    id: str = Field(..., description="Stable invoice identifier.")
    file_path: str = Field(default="", description="Location of the source file.")
    file_name: str = Field(default="", description="Original file name.")
    file_type: str = Field(default="pdf", description="pdf, jpg, jpeg, png, isdoc, xml or csv.")
    month: str = Field(..., description="Reporting period as YYYY-MM.")
    direction: Direction
    created_at: Optional[datetime] = None

    @field_validator("month")
    @classmethod
    def _normalize_month(cls, v: str) -> str:
        return Period.parse(v).key

    @property
    def period(self) -> Period:
        return Period.parse(self.month)

    @property
    def ocr_eligible(self) -> bool:
        return self.file_type.lower() in OCR_FILE_TYPES


class InvoiceTaxData(BaseModel):
    """
    Tax data extracted from (or typed in for) one invoice.

    ``section`` stays ``None`` until the invoice is classified. A section
    that is already set is never overwritten by automatic classification.
    """

    invoice_id: str
    document_number: Optional[str] = Field(default=None, description="Invoice number as printed.")
    issue_date: Optional[str] = Field(default=None, description="Issue date, DD.MM.YYYY.")
    supply_date: Optional[str] = Field(default=None, description="Date of taxable supply, DD.MM.YYYY.")
    tax_point_date: Optional[str] = Field(
        default=None, description="Date the tax liability arises, DD.MM.YYYY."
    )
    supplier_name: Optional[str] = None
    supplier_reg_no: Optional[str] = None
    supplier_vat_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_reg_no: Optional[str] = None
    customer_vat_id: Optional[str] = None
    base_1: Decimal = ZERO
    tax_1: Decimal = ZERO
    base_2: Decimal = ZERO
    tax_2: Decimal = ZERO
    base_3: Decimal = ZERO
    tax_3: Decimal = ZERO
    total: Decimal = Field(default=ZERO, description="Total amount including tax.")
    currency: str = "CZK"
    reverse_charge_code: Optional[str] = Field(
        default=None, description="Reverse-charge supply code. Presence marks a reverse-charge invoice."
    )
    special_regime_code: str = "0"
    insolvency_flag: str = "N"
    proportional_deduction: str = "N"
    section: Optional[Section] = None
    ocr_confidence: Optional[float] = None
    manually_verified: bool = False
    raw_ocr_json: Optional[str] = None
    updated_at: Optional[datetime] = None

    @field_validator(*MONEY_FIELDS, "total", mode="before")
    @classmethod
    def _round(cls, v):
        return round_amount(v)

    @property
    def has_reverse_charge(self) -> bool:
        return bool(self.reverse_charge_code)

    @property
    def amounts(self) -> RateAmounts:
        return RateAmounts(**{name: getattr(self, name) for name in MONEY_FIELDS})


class TaxDataUpdate(BaseModel):
    """
    Partial update of ``InvoiceTaxData``: a manual correction or an
    extraction result. Fields left as ``None`` keep their stored value.
    """

    document_number: Optional[str] = None
    issue_date: Optional[str] = None
    supply_date: Optional[str] = None
    tax_point_date: Optional[str] = None
    supplier_name: Optional[str] = None
    supplier_reg_no: Optional[str] = None
    supplier_vat_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_reg_no: Optional[str] = None
    customer_vat_id: Optional[str] = None
    base_1: Optional[Decimal] = None
    tax_1: Optional[Decimal] = None
    base_2: Optional[Decimal] = None
    tax_2: Optional[Decimal] = None
    base_3: Optional[Decimal] = None
    tax_3: Optional[Decimal] = None
    total: Optional[Decimal] = None
    currency: Optional[str] = None
    reverse_charge_code: Optional[str] = None
    special_regime_code: Optional[str] = None
    insolvency_flag: Optional[str] = None
    proportional_deduction: Optional[str] = None
    section: Optional[Section] = None
    manually_verified: Optional[bool] = None


class TaxpayerSettings(BaseModel):
    """Identity of the filing taxpayer. Supplied from settings, never computed."""

    vat_id: str = Field(default="", description="Tax ID, with or without country prefix.")
    reg_no: str = ""
    person_type: str = Field(default="F", description="F = natural person, P = legal person.")
    tax_office_code: str = ""
    name: str = ""
    street: str = ""
    city: str = ""
    postal_code: str = ""
    email: str = ""


class TaxpayerSettingsUpdate(BaseModel):
    """Partial update of the taxpayer settings. ``None`` keeps the stored value."""

    vat_id: Optional[str] = None
    reg_no: Optional[str] = None
    person_type: Optional[str] = None
    tax_office_code: Optional[str] = None
    name: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    email: Optional[str] = None


class InvoiceLine(BaseModel):
    """One per-invoice line of a non-aggregated section."""

    section: Section
    invoice_id: str
    document_number: str = ""
    counterparty_vat_id: str = ""
    supply_date: Optional[str] = None
    tax_point_date: Optional[str] = None
    amounts: RateAmounts = Field(default_factory=RateAmounts)
    reverse_charge_code: Optional[str] = None
    special_regime_code: str = "0"
    insolvency_flag: str = "N"
    proportional_deduction: str = "N"


class SummaryLine(BaseModel):
    """
    Field-wise sum of all invoices in an aggregated section (A5, B3).
    Carries no per-invoice identity.
    """

    section: Section
    invoice_count: int
    amounts: RateAmounts


class ControlSums(BaseModel):
    """Cross-check totals over all classified invoices of a period."""

    outgoing_base: RateAmounts = Field(
        default_factory=RateAmounts, description="Taxable base of A1+A4+A5 (only base_* used)."
    )
    incoming_tax: RateAmounts = Field(
        default_factory=RateAmounts, description="Tax of B1+B2+B3 (only tax_* used)."
    )
    reverse_charge_base: Decimal = ZERO
    reverse_charge_tax: RateAmounts = Field(
        default_factory=RateAmounts, description="Tax of B1 (only tax_* used)."
    )
    a2_base: Decimal = ZERO


class GenerationRequest(BaseModel):
    filing_type: FilingType = FilingType.REGULAR
    reason_date: Optional[str] = Field(
        default=None, description="Date the reasons for a follow-up filing were found, DD.MM.YYYY."
    )
    challenge_ref: Optional[str] = Field(
        default=None, description="Reference of the tax office challenge, if any."
    )


class Submission(BaseModel):
    id: str
    year: int
    month: int
    filing_type: FilingType
    document: Optional[str] = Field(
        default=None, description="XML text as generated for this submission."
    )
    document_path: Optional[str] = Field(
        default=None,
        description=(
            "Period file the document was written to. Regenerating the period "
            "overwrites that file; `document` keeps this submission's own XML."
        ),
    )
    status: SubmissionStatus = SubmissionStatus.GENERATED
    generated_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    created_at: datetime

    @property
    def period(self) -> Period:
        return Period(year=self.year, month=self.month)


class InvoiceWithData(BaseModel):
    invoice: Invoice
    data: Optional[InvoiceTaxData] = None


class PeriodOverview(BaseModel):
    year: int
    month: int
    sections: Dict[str, List[InvoiceWithData]] = Field(default_factory=dict)
    submission: Optional[Submission] = None
    status: SubmissionStatus = SubmissionStatus.DRAFT
    unclassified: List[InvoiceWithData] = Field(default_factory=list)


class GenerationResult(BaseModel):
    submission: Submission
    document_path: str
    unclassified: List[str] = Field(
        default_factory=list, description="Invoice ids left out because they have no section."
    )


class SummaryTotals(BaseModel):
    """Counts and amounts shared by monthly and yearly summaries."""

    incoming_count: int = 0
    outgoing_count: int = 0
    incoming_total: Decimal = ZERO
    outgoing_total: Decimal = ZERO
    output_tax: Decimal = ZERO
    input_tax: Decimal = ZERO
    vat_difference: Decimal = ZERO
    verified_count: int = 0
    total_count: int = 0
    ocr_eligible_count: int = 0
    ocr_ok_count: int = 0

    def __add__(self, other: "SummaryTotals") -> "SummaryTotals":
        return SummaryTotals(
            **{
                name: getattr(self, name) + getattr(other, name)
                for name in SummaryTotals.model_fields
            }
        )


class MonthlySummary(SummaryTotals):
    month: str
    kh_status: Optional[SubmissionStatus] = None


class YearSummary(BaseModel):
    year: int
    months: List[MonthlySummary] = Field(default_factory=list)
    totals: SummaryTotals = Field(default_factory=SummaryTotals)


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"


class OcrJob(BaseModel):
    """Progress of one OCR batch, polled by callers."""

    id: str
    status: JobState = JobState.QUEUED
    created_at: datetime
    total: int = 0
    done: int = 0
    failed: int = 0
    skipped: int = 0
    current_invoice_id: Optional[str] = None
    invoice_ids: List[str] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)


class ExtractionResult(BaseModel):
    data: TaxDataUpdate
    confidence: float = Field(..., ge=0.0, le=1.0)
    raw_response: Optional[str] = None


class OcrRunResult(BaseModel):
    """Outcome of running OCR on one invoice right away."""

    data: InvoiceTaxData
    confidence: float
