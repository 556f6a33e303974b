"""
Control statement section classification.

This module implements the decision table that assigns each invoice to a
section of the control statement:

    outgoing, reverse charge      -> A1
    outgoing, total > threshold   -> A4 (one line per invoice)
    outgoing, total <= threshold  -> A5 (aggregated)
    incoming, reverse charge      -> B1
    incoming, total > threshold   -> B2 (one line per invoice)
    incoming, total <= threshold  -> B3 (aggregated)

The main entrypoints are:
- `classify_section` for the pure decision
- `classify_if_missing` for applying it to stored tax data without
  overriding a manual assignment
"""

from __future__ import annotations

from decimal import Decimal

from .amounts import to_decimal
from .errors import SectionMismatchError
from .schema import Direction, Invoice, InvoiceTaxData, Section


# TODO: confirm strict greater-than against the current DPHKH1 XSD notes;
# an invoice of exactly 10 000 is filed in the aggregate section today.
THRESHOLD = Decimal("10000")


def classify_section(
    direction: Direction,
    reverse_charge: bool,
    total_with_tax,
    threshold: Decimal = THRESHOLD,
) -> Section:
    """
    Return the section for an invoice.

    Parameters
    ----------
    direction:
        Whether the invoice was issued (outgoing) or received (incoming).
    reverse_charge:
        True if the invoice carries a reverse-charge code.
    total_with_tax:
        Invoice total including tax. The sign is ignored so credit notes
        land in the same bucket as the invoice they correct.
    """
    above = abs(to_decimal(total_with_tax)) > threshold

    if Direction(direction) is Direction.OUTGOING:
        if reverse_charge:
            return Section.A1
        return Section.A4 if above else Section.A5

    if reverse_charge:
        return Section.B1
    return Section.B2 if above else Section.B3


def classify_tax_data(invoice: Invoice, data: InvoiceTaxData) -> Section:
    return classify_section(invoice.direction, data.has_reverse_charge, data.total)


def classify_if_missing(invoice: Invoice, data: InvoiceTaxData) -> InvoiceTaxData:
    """
    Assign a section only when none is recorded yet.

    A section already present (typically set by hand) always wins.
    """
    if data.section is not None:
        return data
    return data.model_copy(update={"section": classify_tax_data(invoice, data)})


def check_section_direction(invoice: Invoice, section: Section | None) -> None:
    """Raise `SectionMismatchError` if ``section`` belongs to the other direction."""
    if section is None:
        return
    section = Section(section)
    if section.direction is not invoice.direction:
        raise SectionMismatchError(
            f"Section {section.value} cannot be used for {invoice.direction.value} "
            f"invoice {invoice.id}"
        )
