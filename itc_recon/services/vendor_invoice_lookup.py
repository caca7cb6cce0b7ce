"""
Books-side lookup used by GSTR-2B reconciliation.

Vendor invoices belong to the purchase module. Reconciliation sees them
only through InternalInvoiceLookup and the read-only InternalInvoice
value it returns.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional, Protocol
from uuid import UUID

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from itc_recon.models.vendor_invoice import VendorInvoice, VendorInvoiceStatus


@dataclass(frozen=True)
class InternalInvoice:
    """Books invoice as seen by the matcher."""
    id: UUID
    company_id: UUID
    supplier_gstin: str
    invoice_number: str
    invoice_date: date
    taxable_value: Decimal
    cgst_amount: Decimal = Decimal("0")
    sgst_amount: Decimal = Decimal("0")
    igst_amount: Decimal = Decimal("0")
    cess_amount: Decimal = Decimal("0")
    supplier_name: Optional[str] = None
    itc_eligible: bool = True

    @property
    def total_tax(self) -> Decimal:
        return self.cgst_amount + self.sgst_amount + self.igst_amount + self.cess_amount


class InternalInvoiceLookup(Protocol):
    async def find_by_supplier_and_date_window(
        self,
        company_id: UUID,
        supplier_gstin: str,
        center_date: date,
        window_days: int,
    ) -> List[InternalInvoice]:
        ...

    async def get_by_id(self, company_id: UUID, invoice_id: UUID) -> Optional[InternalInvoice]:
        ...


def _to_internal(row: VendorInvoice) -> InternalInvoice:
    return InternalInvoice(
        id=row.id,
        company_id=row.company_id,
        supplier_gstin=row.vendor_gstin,
        supplier_name=row.vendor_name,
        invoice_number=row.invoice_number,
        invoice_date=row.invoice_date,
        taxable_value=row.taxable_amount or Decimal("0"),
        cgst_amount=row.cgst_amount or Decimal("0"),
        sgst_amount=row.sgst_amount or Decimal("0"),
        igst_amount=row.igst_amount or Decimal("0"),
        cess_amount=row.cess_amount or Decimal("0"),
        itc_eligible=bool(row.itc_eligible),
    )


class VendorInvoiceLookup:
    """InternalInvoiceLookup backed by the vendor_invoices table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_supplier_and_date_window(
        self,
        company_id: UUID,
        supplier_gstin: str,
        center_date: date,
        window_days: int,
    ) -> List[InternalInvoice]:
        """Vendor invoices of one supplier dated within center_date +/- window_days."""
        query = (
            select(VendorInvoice)
            .where(
                and_(
                    VendorInvoice.company_id == company_id,
                    VendorInvoice.vendor_gstin == supplier_gstin.upper(),
                    VendorInvoice.invoice_date >= center_date - timedelta(days=window_days),
                    VendorInvoice.invoice_date <= center_date + timedelta(days=window_days),
                    VendorInvoice.status != VendorInvoiceStatus.CANCELLED.value,
                )
            )
            .order_by(VendorInvoice.id)
        )
        result = await self.db.execute(query)
        return [_to_internal(row) for row in result.scalars().all()]

    async def get_by_id(self, company_id: UUID, invoice_id: UUID) -> Optional[InternalInvoice]:
        result = await self.db.execute(
            select(VendorInvoice).where(
                and_(
                    VendorInvoice.id == invoice_id,
                    VendorInvoice.company_id == company_id,
                )
            )
        )
        row = result.scalar_one_or_none()
        return _to_internal(row) if row else None