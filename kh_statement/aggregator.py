"""
Grouping of classified invoices into control statement lines.

Individual sections (A1, A2, A3, A4, B1, B2) produce one `InvoiceLine` per
invoice, ordered by document number. Aggregate sections (A5, B3) produce at
most one `SummaryLine` holding the field-wise sum of their invoices.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Tuple, Union

from .schema import (
    Direction,
    Invoice,
    InvoiceLine,
    InvoiceTaxData,
    RateAmounts,
    Section,
    SummaryLine,
)

logger = logging.getLogger(__name__)

ClassifiedInvoice = Tuple[Invoice, InvoiceTaxData]
SectionLine = Union[InvoiceLine, SummaryLine]


def _sort_key(item: ClassifiedInvoice) -> Tuple[str, str]:
    invoice, data = item
    return (data.document_number or "", invoice.id)


def group_by_section(
    invoices: Iterable[ClassifiedInvoice],
) -> Dict[Section, List[ClassifiedInvoice]]:
    """
    Group invoices by their recorded section.

    Invoices without a section are ignored. Each group is sorted by document
    number (then invoice id), so the result never depends on storage order.
    """
    groups: Dict[Section, List[ClassifiedInvoice]] = defaultdict(list)
    for invoice, data in invoices:
        if data.section is None:
            continue
        groups[Section(data.section)].append((invoice, data))

    return {section: sorted(items, key=_sort_key) for section, items in groups.items()}


def build_invoice_line(section: Section, invoice: Invoice, data: InvoiceTaxData) -> InvoiceLine:
    """Build the per-invoice line. The counterparty is the customer for A*, the supplier for B*."""
    if section.direction is Direction.OUTGOING and section is not Section.A2:
        counterparty = data.customer_vat_id
    else:
        counterparty = data.supplier_vat_id

    return InvoiceLine(
        section=section,
        invoice_id=invoice.id,
        document_number=data.document_number or "",
        counterparty_vat_id=counterparty or "",
        supply_date=data.supply_date,
        tax_point_date=data.tax_point_date,
        amounts=data.amounts,
        reverse_charge_code=data.reverse_charge_code,
        special_regime_code=data.special_regime_code or "0",
        insolvency_flag=data.insolvency_flag or "N",
        proportional_deduction=data.proportional_deduction or "N",
    )


def build_summary_line(section: Section, items: List[ClassifiedInvoice]) -> SummaryLine | None:
    """Sum all rate buckets across ``items``. Returns ``None`` for an empty section."""
    if not items:
        return None

    amounts = RateAmounts()
    for _, data in items:
        amounts = amounts + data.amounts

    return SummaryLine(section=section, invoice_count=len(items), amounts=amounts)


def build_section_lines(
    groups: Dict[Section, List[ClassifiedInvoice]],
) -> Dict[Section, List[SectionLine]]:
    """
    Turn grouped invoices into document lines, per section.

    Sections with no invoices are absent from the result.
    """
    lines: Dict[Section, List[SectionLine]] = {}

    for section, items in groups.items():
        if not items:
            continue
        if section.is_aggregate:
            summary = build_summary_line(section, items)
            if summary is not None:
                lines[section] = [summary]
                logger.debug("Aggregated %d invoices into %s", len(items), section.value)
        else:
            lines[section] = [build_invoice_line(section, inv, data) for inv, data in items]

    return lines
