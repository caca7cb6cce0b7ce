"""Vendor invoice (books) model.

Vendor invoices are recorded by the purchase module; reconciliation
only reads them. The table carries the columns GSTR-2B matching needs.
"""
import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, Numeric, Date, Index
from sqlalchemy.orm import Mapped, mapped_column

from itc_recon.database import Base
from itc_recon.db_types import UUIDType


class VendorInvoiceStatus(str, Enum):
    """Vendor Invoice status."""
    RECEIVED = "RECEIVED"
    APPROVED = "APPROVED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class VendorInvoice(Base):
    """Vendor invoice as recorded in books."""
    __tablename__ = "vendor_invoices"
    __table_args__ = (
        Index("ix_vendor_invoices_supplier_date", "company_id", "vendor_gstin", "invoice_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    company_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False, index=True)

    # Vendor
    vendor_gstin: Mapped[str] = mapped_column(String(15), nullable=False)
    vendor_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Vendor's Invoice Details
    invoice_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Vendor's invoice number"
    )
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[str] = mapped_column(
        String(50),
        default="RECEIVED",
        nullable=False,
        comment="RECEIVED, APPROVED, PAID, CANCELLED"
    )

    # Invoice Amounts
    taxable_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    # GST
    cgst_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    sgst_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    igst_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    cess_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))

    itc_eligible: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    @property
    def total_tax(self) -> Decimal:
        return self.cgst_amount + self.sgst_amount + self.igst_amount + self.cess_amount

    def __repr__(self) -> str:
        return f"<VendorInvoice(gstin='{self.vendor_gstin}', number='{self.invoice_number}')>"
