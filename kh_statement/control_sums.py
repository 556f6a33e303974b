"""
Control sums for the trailing block of the control statement.

They are computed from the invoices themselves, never from the built lines,
so they work as an independent cross-check against the VAT return.
"""

from __future__ import annotations

from typing import Dict, Iterable, List

from .aggregator import ClassifiedInvoice
from .amounts import sum_amounts
from .schema import ControlSums, RateAmounts, Section

OUTGOING_SECTIONS = (Section.A1, Section.A4, Section.A5)
INCOMING_SECTIONS = (Section.B1, Section.B2, Section.B3)


def _collect(groups: Dict[Section, List[ClassifiedInvoice]], sections: Iterable[Section]):
    return [data for section in sections for _, data in groups.get(section, [])]


def compute_control_sums(groups: Dict[Section, List[ClassifiedInvoice]]) -> ControlSums:
    """
    Compute the control sums from invoices grouped by section.

    - outgoing base per rate over A1, A4 and A5
    - incoming tax per rate over B1, B2 and B3
    - reverse-charge base of A1 (all rate buckets, as filed on A1 lines)
    - reverse-charge tax per rate of B1
    - total base of A2
    """
    outgoing = _collect(groups, OUTGOING_SECTIONS)
    incoming = _collect(groups, INCOMING_SECTIONS)
    a1 = _collect(groups, [Section.A1])
    b1 = _collect(groups, [Section.B1])
    a2 = _collect(groups, [Section.A2])

    return ControlSums(
        outgoing_base=RateAmounts(
            base_1=sum_amounts(d.base_1 for d in outgoing),
            base_2=sum_amounts(d.base_2 for d in outgoing),
            base_3=sum_amounts(d.base_3 for d in outgoing),
        ),
        incoming_tax=RateAmounts(
            tax_1=sum_amounts(d.tax_1 for d in incoming),
            tax_2=sum_amounts(d.tax_2 for d in incoming),
            tax_3=sum_amounts(d.tax_3 for d in incoming),
        ),
        reverse_charge_base=sum_amounts(
            value for d in a1 for value in (d.base_1, d.base_2, d.base_3)
        ),
        reverse_charge_tax=RateAmounts(
            tax_1=sum_amounts(d.tax_1 for d in b1),
            tax_2=sum_amounts(d.tax_2 for d in b1),
            tax_3=sum_amounts(d.tax_3 for d in b1),
        ),
        a2_base=sum_amounts(
            value for d in a2 for value in (d.base_1, d.base_2, d.base_3)
        ),
    )
