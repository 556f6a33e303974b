"""
DPHKH1 (control statement) XML document builder.

Output follows the DPHKH1 EPO schema, version 03.01.13:

    <Pisemnost>
      <DPHKH1>
        VetaD   header (period, filing type, filing date)
        VetaP   taxpayer identity
        VetaA1, VetaA2, VetaA4, VetaA5, VetaB1, VetaB2, VetaB3
        VetaC   control sums
      </DPHKH1>
    </Pisemnost>

Attribute order is fixed and amounts always carry two decimals. Optional
values that are missing drop their attribute entirely. Required header and
taxpayer values are written as empty strings when unknown.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from xml.sax.saxutils import escape

from . import __version__
from .aggregator import ClassifiedInvoice, SectionLine, build_section_lines, group_by_section
from .amounts import format_amount
from .control_sums import compute_control_sums
from .schema import (
    ControlSums,
    GenerationRequest,
    InvoiceLine,
    Period,
    RateAmounts,
    Section,
    SummaryLine,
    TaxpayerSettings,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "03.01.13"
SOFTWARE_NAME = "kh-statement"
COUNTRY_CODE = "CZ"

SECTION_ORDER = (
    Section.A1,
    Section.A2,
    Section.A4,
    Section.A5,
    Section.B1,
    Section.B2,
    Section.B3,
)

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}

Attr = Tuple[str, str]


def escape_text(value: Optional[str]) -> str:
    """Escape the five reserved markup characters."""
    return escape(value or "", _XML_ENTITIES)


def format_date(value: date) -> str:
    return value.strftime("%d.%m.%Y")


def numeric_vat_id(vat_id: Optional[str]) -> str:
    """``CZ12345678`` -> ``12345678``. Values without digits are returned unchanged."""
    if not vat_id:
        return ""
    match = re.search(r"\d+", vat_id)
    return match.group(0) if match else vat_id


def _element(name: str, attrs: Sequence[Attr]) -> str:
    if not attrs:
        return f"<{name} />"
    rendered = " ".join(f'{key}="{escape_text(value)}"' for key, value in attrs)
    return f"<{name} {rendered} />"


def _tax_attrs(amounts: RateAmounts) -> List[Attr]:
    attrs: List[Attr] = [
        ("zakl_dane1", format_amount(amounts.base_1)),
        ("dan1", format_amount(amounts.tax_1)),
        ("zakl_dane2", format_amount(amounts.base_2)),
        ("dan2", format_amount(amounts.tax_2)),
    ]
    if amounts.has_third_rate:
        attrs += [
            ("zakl_dane3", format_amount(amounts.base_3)),
            ("dan3", format_amount(amounts.tax_3)),
        ]
    return attrs


def _optional(name: str, value: Optional[str]) -> List[Attr]:
    return [(name, value)] if value else []


# --- Header and taxpayer -------------------------------------------------


def build_header(period: Period, request: GenerationRequest, today: date) -> str:
    attrs: List[Attr] = [
        ("k_uladis", "DPH"),
        ("dokument", "KH1"),
        ("mesic", str(period.month)),
        ("rok", str(period.year)),
        ("khdph_forma", request.filing_type.value),
        ("d_poddp", format_date(today)),
    ]
    attrs += _optional("d_zjist", request.reason_date)
    attrs += _optional("c_jed_vyzvy", request.challenge_ref)
    return _element("VetaD", attrs)


def build_taxpayer(taxpayer: TaxpayerSettings) -> str:
    attrs: List[Attr] = [
        ("c_ufo", taxpayer.tax_office_code or ""),
        ("dic", numeric_vat_id(taxpayer.vat_id)),
        ("typ_ds", taxpayer.person_type or ""),
    ]
    if taxpayer.person_type == "F":
        attrs.append(("prijmeni", taxpayer.name or ""))
    else:
        attrs.append(("obch_jmeno", taxpayer.name or ""))
    attrs += _optional("ulice", taxpayer.street)
    attrs += _optional("obec", taxpayer.city)
    attrs += _optional("psc", taxpayer.postal_code)
    attrs.append(("stat", COUNTRY_CODE))
    attrs += _optional("email", taxpayer.email)
    return _element("VetaP", attrs)


# --- Section lines -------------------------------------------------------


def _line_a1(line: InvoiceLine) -> str:
    attrs: List[Attr] = [
        ("dic_odb", line.counterparty_vat_id),
        ("c_evid_dd", line.document_number),
    ]
    attrs += _optional("duzp", line.supply_date)
    # A1 lines carry a single base: the whole base over all rate buckets.
    attrs.append(("zakl_dane1", format_amount(line.amounts.total_base)))
    attrs += _optional("kod_pred_pl", line.reverse_charge_code)
    return _element("VetaA1", attrs)


def _line_a2(line: InvoiceLine) -> str:
    attrs: List[Attr] = [
        ("k_stat", ""),
        ("vatid_dod", line.counterparty_vat_id),
        ("c_evid_dd", line.document_number),
    ]
    attrs += _optional("dppd", line.tax_point_date)
    attrs += _tax_attrs(line.amounts)
    return _element("VetaA2", attrs)


def _line_a4(line: InvoiceLine) -> str:
    attrs: List[Attr] = [
        ("dic_odb", line.counterparty_vat_id),
        ("c_evid_dd", line.document_number),
    ]
    attrs += _optional("dppd", line.tax_point_date)
    attrs += _tax_attrs(line.amounts)
    attrs += [
        ("kod_rezim_pl", line.special_regime_code),
        ("zdph_44", line.insolvency_flag),
    ]
    return _element("VetaA4", attrs)


def _line_b1(line: InvoiceLine) -> str:
    attrs: List[Attr] = [
        ("dic_dod", line.counterparty_vat_id),
        ("c_evid_dd", line.document_number),
    ]
    attrs += _optional("duzp", line.supply_date)
    attrs += _tax_attrs(line.amounts)
    attrs += _optional("kod_pred_pl", line.reverse_charge_code)
    return _element("VetaB1", attrs)


def _line_b2(line: InvoiceLine) -> str:
    attrs: List[Attr] = [
        ("dic_dod", line.counterparty_vat_id),
        ("c_evid_dd", line.document_number),
    ]
    attrs += _optional("dppd", line.tax_point_date)
    attrs += _tax_attrs(line.amounts)
    attrs += [
        ("pomer", line.proportional_deduction),
        ("zdph_44", line.insolvency_flag),
    ]
    return _element("VetaB2", attrs)


def _line_summary(line: SummaryLine) -> str:
    return _element(f"Veta{line.section.value}", _tax_attrs(line.amounts))


_LINE_BUILDERS = {
    Section.A1: _line_a1,
    Section.A2: _line_a2,
    Section.A4: _line_a4,
    Section.A5: _line_summary,
    Section.B1: _line_b1,
    Section.B2: _line_b2,
    Section.B3: _line_summary,
}


def build_lines(lines: Dict[Section, List[SectionLine]]) -> List[str]:
    """Render section lines in schema order. Empty sections produce nothing."""
    rendered: List[str] = []
    for section in SECTION_ORDER:
        builder = _LINE_BUILDERS[section]
        for line in lines.get(section, []):
            if isinstance(line, SummaryLine) and line.invoice_count == 0:
                continue
            rendered.append(builder(line))

    skipped = set(lines) - set(SECTION_ORDER)
    for section in sorted(skipped, key=lambda s: s.value):
        logger.warning(
            "Section %s has %d line(s) but no element in the DPHKH1 layout; left out",
            section.value,
            len(lines[section]),
        )
    return rendered


def build_control_block(sums: ControlSums) -> str:
    outgoing = sums.outgoing_base
    incoming = sums.incoming_tax
    reverse = sums.reverse_charge_tax
    attrs: List[Attr] = [
        ("obrat23", format_amount(outgoing.base_1)),
        ("obrat5", format_amount(outgoing.base_2 + outgoing.base_3)),
        ("pln23", format_amount(incoming.tax_1)),
        ("pln5", format_amount(incoming.tax_2 + incoming.tax_3)),
        ("pln_rez_pren", format_amount(sums.reverse_charge_base)),
        ("rez_pren23", format_amount(reverse.tax_1)),
        ("rez_pren5", format_amount(reverse.tax_2 + reverse.tax_3)),
        ("celk_zd_a2", format_amount(sums.a2_base)),
    ]
    return _element("VetaC", attrs)


# --- Document ------------------------------------------------------------


def build_document(
    period: Period,
    request: GenerationRequest,
    taxpayer: TaxpayerSettings,
    lines: Dict[Section, List[SectionLine]],
    sums: ControlSums,
    today: Optional[date] = None,
    software_name: str = SOFTWARE_NAME,
) -> str:
    """Assemble the full XML document from pre-computed lines and sums."""
    today = today or date.today()
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<Pisemnost nazevSW="{escape_text(software_name)}" verzeSW="{escape_text(__version__)}">',
        f'<DPHKH1 verzePis="{SCHEMA_VERSION}">',
        build_header(period, request, today),
        build_taxpayer(taxpayer),
    ]
    parts += build_lines(lines)
    parts.append(build_control_block(sums))
    parts += ["</DPHKH1>", "</Pisemnost>"]
    return "\n".join(parts)


def build_control_statement(
    period: Period,
    request: GenerationRequest,
    taxpayer: TaxpayerSettings,
    invoices: Iterable[ClassifiedInvoice],
    today: Optional[date] = None,
    software_name: str = SOFTWARE_NAME,
) -> str:
    """
    Group, aggregate and sum the given invoices and render the document.

    Invoices without a section are silently skipped here. Reporting them is
    the caller's job.
    """
    groups = group_by_section(invoices)
    lines = build_section_lines(groups)
    sums = compute_control_sums(groups)
    return build_document(period, request, taxpayer, lines, sums, today, software_name)
