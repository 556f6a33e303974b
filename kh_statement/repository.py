"""
Invoice repository.

The storage engine is an external collaborator; `InvoiceRepository` is the
contract the service relies on. `InMemoryInvoiceRepository` keeps everything
in memory and, when given a path, mirrors its state to a JSON workspace file:

    {
      "taxpayer": {...TaxpayerSettings...},
      "invoices": [
        {"invoice": {...Invoice...}, "data": {...InvoiceTaxData...} | null}
      ]
    }
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from .schema import Invoice, InvoiceTaxData, InvoiceWithData, Period, TaxpayerSettings

logger = logging.getLogger(__name__)


class InvoiceRepository(Protocol):
    """Read/write access to invoices and their tax data."""

    def list_invoices(self, period: Period) -> List[InvoiceWithData]:
        ...

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        ...

    def get_tax_data(self, invoice_id: str) -> Optional[InvoiceTaxData]:
        ...

    def save_tax_data(self, data: InvoiceTaxData) -> InvoiceTaxData:
        ...

    def add_invoice(self, invoice: Invoice, data: Optional[InvoiceTaxData] = None) -> Invoice:
        ...

    def delete_invoice(self, invoice_id: str) -> bool:
        ...

    def list_months(self) -> List[str]:
        """Distinct ``YYYY-MM`` periods that hold invoices, newest first."""
        ...

    def get_taxpayer(self) -> TaxpayerSettings:
        ...

    def set_taxpayer(self, taxpayer: TaxpayerSettings) -> None:
        ...


class InMemoryInvoiceRepository:
    """Dictionary-backed repository, optionally persisted to a JSON file."""

    def __init__(
        self,
        taxpayer: Optional[TaxpayerSettings] = None,
        path: Optional[Path] = None,
    ) -> None:
        self.path = Path(path) if path else None
        self._taxpayer = taxpayer or TaxpayerSettings()
        self._invoices: Dict[str, Invoice] = {}
        self._data: Dict[str, InvoiceTaxData] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_file(cls, path: Path, persist: bool = True) -> "InMemoryInvoiceRepository":
        """
        Load a workspace file. A missing file yields an empty repository.

        With ``persist`` the repository writes every change back to ``path``.
        """
        path = Path(path)
        repo = cls(path=path if persist else None)
        if not path.exists():
            logger.info("Workspace file %s not found, starting empty", path)
            return repo

        payload = json.loads(path.read_text(encoding="utf-8") or "{}")
        repo._taxpayer = TaxpayerSettings.model_validate(payload.get("taxpayer") or {})
        for entry in payload.get("invoices", []):
            invoice = Invoice.model_validate(entry["invoice"])
            repo._invoices[invoice.id] = invoice
            if entry.get("data"):
                data = InvoiceTaxData.model_validate(entry["data"])
                repo._data[invoice.id] = data
        logger.info("Loaded %d invoices from %s", len(repo._invoices), path)
        return repo

    def _save(self) -> None:
        if self.path is None:
            return
        payload = {
            "taxpayer": self._taxpayer.model_dump(mode="json"),
            "invoices": [
                {
                    "invoice": invoice.model_dump(mode="json"),
                    "data": (
                        self._data[invoice.id].model_dump(mode="json")
                        if invoice.id in self._data
                        else None
                    ),
                }
                for invoice in self._invoices.values()
            ],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def list_invoices(self, period: Period) -> List[InvoiceWithData]:
        with self._lock:
            invoices = [inv for inv in self._invoices.values() if inv.month == period.key]
            invoices.sort(key=lambda inv: (inv.direction.value, inv.file_name, inv.id))
            return [
                InvoiceWithData(invoice=inv, data=self._data.get(inv.id)) for inv in invoices
            ]

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        with self._lock:
            return self._invoices.get(invoice_id)

    def get_tax_data(self, invoice_id: str) -> Optional[InvoiceTaxData]:
        with self._lock:
            return self._data.get(invoice_id)

    def save_tax_data(self, data: InvoiceTaxData) -> InvoiceTaxData:
        with self._lock:
            if data.invoice_id not in self._invoices:
                raise KeyError(data.invoice_id)
            stored = data.model_copy(update={"updated_at": datetime.now(timezone.utc)})
            self._data[data.invoice_id] = stored
            self._save()
            return stored

    def add_invoice(self, invoice: Invoice, data: Optional[InvoiceTaxData] = None) -> Invoice:
        with self._lock:
            if invoice.created_at is None:
                invoice = invoice.model_copy(update={"created_at": datetime.now(timezone.utc)})
            self._invoices[invoice.id] = invoice
            if data is not None:
                self._data[invoice.id] = data
            self._save()
            return invoice

    def delete_invoice(self, invoice_id: str) -> bool:
        with self._lock:
            if self._invoices.pop(invoice_id, None) is None:
                return False
            self._data.pop(invoice_id, None)
            self._save()
            return True

    def list_months(self) -> List[str]:
        with self._lock:
            return sorted({inv.month for inv in self._invoices.values()}, reverse=True)

    def get_taxpayer(self) -> TaxpayerSettings:
        return self._taxpayer

    def set_taxpayer(self, taxpayer: TaxpayerSettings) -> None:
        with self._lock:
            self._taxpayer = taxpayer
            self._save()
