"""GSTR-2B import and reconciliation models.

Tracks:
- One import batch per company per return period
- Invoice-level records parsed from the statement
- Automated match results against vendor invoices (books)
- Operator actions on each invoice
"""
import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, Numeric, Date
from sqlalchemy import UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from itc_recon.database import Base
from itc_recon.db_types import JSONType, UUIDType


class ImportStatus(str, Enum):
    """GSTR-2B import batch status."""
    PENDING = "PENDING"          # Imported, reconciliation not yet run
    PROCESSING = "PROCESSING"    # Reconciliation pass running (acts as lock)
    COMPLETED = "COMPLETED"      # Last pass finished
    FAILED = "FAILED"            # Import rejected or pass failed


class ImportSource(str, Enum):
    """Where the statement came from."""
    FILE_UPLOAD = "FILE_UPLOAD"
    API = "API"


class Gstr2bInvoiceType(str, Enum):
    """Statement section the record was read from."""
    B2B = "B2B"
    B2BA = "B2BA"
    CDNR = "CDNR"
    CDNRA = "CDNRA"
    IMPG = "IMPG"


class DocumentType(str, Enum):
    """Document type of a statement record."""
    INVOICE = "INVOICE"
    CREDIT_NOTE = "CREDIT_NOTE"
    DEBIT_NOTE = "DEBIT_NOTE"
    BILL_OF_ENTRY = "BILL_OF_ENTRY"


class MatchStatus(str, Enum):
    """Result of matching a 2B invoice against books."""
    UNMATCHED = "UNMATCHED"
    MATCHED = "MATCHED"
    PARTIAL = "PARTIAL"            # Strong match with amount differences
    DISCREPANCY = "DISCREPANCY"    # Likely match, weak evidence


class ActionStatus(str, Enum):
    """Operator decision on a 2B invoice."""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    MANUAL_MATCHED = "MANUAL_MATCHED"


class Gstr2bImport(Base):
    """
    GSTR-2B import batch.

    One row per company per return period. Owns its invoices; deleting
    the batch deletes them.
    """
    __tablename__ = "gstr2b_imports"
    __table_args__ = (
        UniqueConstraint("company_id", "return_period", name="uq_gstr2b_import_period"),
        Index("ix_gstr2b_imports_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    company_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        nullable=False,
        index=True
    )
    return_period: Mapped[str] = mapped_column(
        String(6),
        nullable=False,
        comment="Return period in YYYYMM format e.g., 202404"
    )
    gstin: Mapped[str] = mapped_column(
        String(15),
        nullable=False,
        default="",
        comment="GSTIN of the recipient the statement was issued to"
    )

    # Source
    import_source: Mapped[str] = mapped_column(
        String(20),
        default="FILE_UPLOAD",
        nullable=False,
        comment="FILE_UPLOAD, API"
    )
    file_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    file_hash: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="SHA-256 of the raw statement"
    )

    # Status
    status: Mapped[str] = mapped_column(
        String(20),
        default="PENDING",
        nullable=False,
        comment="PENDING, PROCESSING, COMPLETED, FAILED"
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    warnings: Mapped[Optional[list]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Records skipped during import"
    )

    # Invoice counts
    total_invoices: Mapped[int] = mapped_column(Integer, default=0)
    matched_invoices: Mapped[int] = mapped_column(Integer, default=0)
    unmatched_invoices: Mapped[int] = mapped_column(Integer, default=0)
    partially_matched_invoices: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="PARTIAL and DISCREPANCY invoices"
    )

    # ITC as per statement
    total_itc_igst: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    total_itc_cgst: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    total_itc_sgst: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    total_itc_cess: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    matched_itc_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))

    # Timestamps
    imported_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    invoices: Mapped[List["Gstr2bInvoice"]] = relationship(
        "Gstr2bInvoice",
        back_populates="gstr2b_import",
        passive_deletes=True,
    )

    @property
    def total_itc_amount(self) -> Decimal:
        return (
            (self.total_itc_igst or Decimal("0"))
            + (self.total_itc_cgst or Decimal("0"))
            + (self.total_itc_sgst or Decimal("0"))
            + (self.total_itc_cess or Decimal("0"))
        )

    def __repr__(self) -> str:
        return f"<Gstr2bImport(period={self.return_period}, status={self.status})>"


class Gstr2bInvoice(Base):
    """
    Invoice-level record from a GSTR-2B statement.

    Match fields are written by reconciliation passes, action fields by
    the operator workflow. `version` is bumped on every write and used
    for compare-and-swap updates.
    """
    __tablename__ = "gstr2b_invoices"
    __table_args__ = (
        Index("ix_gstr2b_invoices_period", "company_id", "return_period"),
        Index("ix_gstr2b_invoices_supplier", "supplier_gstin"),
        Index("ix_gstr2b_invoices_match_status", "match_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    import_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("gstr2b_imports.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    company_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False)
    return_period: Mapped[str] = mapped_column(String(6), nullable=False)

    # Supplier
    supplier_gstin: Mapped[str] = mapped_column(String(15), nullable=False)
    supplier_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    supplier_trade_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Document
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    invoice_type: Mapped[str] = mapped_column(
        String(10),
        default="B2B",
        nullable=False,
        comment="B2B, B2BA, CDNR, CDNRA, IMPG"
    )
    document_type: Mapped[str] = mapped_column(
        String(20),
        default="INVOICE",
        nullable=False,
        comment="INVOICE, CREDIT_NOTE, DEBIT_NOTE, BILL_OF_ENTRY"
    )

    # Amounts
    taxable_value: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    igst_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    cgst_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    sgst_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    cess_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    total_invoice_value: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))

    # ITC
    itc_eligible: Mapped[bool] = mapped_column(Boolean, default=True)
    itc_igst: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    itc_cgst: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    itc_sgst: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    itc_cess: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))

    # Supply
    place_of_supply: Mapped[Optional[str]] = mapped_column(String(2), nullable=True, comment="State code")
    supply_type: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="INTRA_STATE, INTER_STATE, IMPORT"
    )
    reverse_charge: Mapped[bool] = mapped_column(Boolean, default=False)

    # Matching
    match_status: Mapped[str] = mapped_column(
        String(20),
        default="UNMATCHED",
        nullable=False,
        comment="UNMATCHED, MATCHED, PARTIAL, DISCREPANCY"
    )
    matched_vendor_invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        nullable=True,
        comment="Books invoice; not a FK, vendor invoices are owned elsewhere"
    )
    match_confidence: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    discrepancies: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    match_details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    reconciled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set once an automated match has run"
    )

    # Last automated result, restored by a reset after a manual match
    auto_match_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    auto_matched_vendor_invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        nullable=True
    )
    auto_match_confidence: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    auto_discrepancies: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    # Operator action
    action_status: Mapped[str] = mapped_column(
        String(20),
        default="PENDING",
        nullable=False,
        comment="PENDING, ACCEPTED, REJECTED, MANUAL_MATCHED"
    )
    action_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    action_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Raw statement record
    raw_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    gstr2b_import: Mapped["Gstr2bImport"] = relationship("Gstr2bImport", back_populates="invoices")

    @property
    def total_gst(self) -> Decimal:
        return self.igst_amount + self.cgst_amount + self.sgst_amount + self.cess_amount

    @property
    def total_itc(self) -> Decimal:
        return self.itc_igst + self.itc_cgst + self.itc_sgst + self.itc_cess

    def __repr__(self) -> str:
        return f"<Gstr2bInvoice(supplier={self.supplier_gstin}, number={self.invoice_number}, status={self.match_status})>"
