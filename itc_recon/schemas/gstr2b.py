"""GSTR-2B import, reconciliation and action schemas for API requests/responses."""
from pydantic import BaseModel, Field

from itc_recon.schemas.base import BaseResponseSchema, BaseCreateSchema
from typing import Any, Dict, List, Optional, Union
from uuid import UUID
from datetime import date, datetime
from decimal import Decimal


RETURN_PERIOD_PATTERN = r"^\d{4}(0[1-9]|1[0-2])$"


# ==================== Import ====================

class ImportStatementRequest(BaseCreateSchema):
    """Request to import a GSTR-2B statement."""
    company_id: UUID = Field(..., description="Company the statement belongs to")
    return_period: str = Field(..., pattern=RETURN_PERIOD_PATTERN, description="Return period YYYYMM (e.g., 202404)")
    raw_statement: Union[Dict[str, Any], str] = Field(..., description="GSTR-2B JSON, as an object or a string")
    file_name: Optional[str] = Field(None, max_length=255, description="Original file name")
    replace: bool = Field(False, description="Purge an existing import for the period first")


class ImportBatchResponse(BaseResponseSchema):
    """GSTR-2B import batch."""
    id: UUID
    company_id: UUID
    return_period: str
    gstin: str
    import_source: str
    file_name: Optional[str] = None
    file_hash: Optional[str] = None
    status: str
    error_message: Optional[str] = None
    warnings: Optional[List[str]] = None

    total_invoices: int = 0
    matched_invoices: int = 0
    unmatched_invoices: int = 0
    partially_matched_invoices: int = 0

    total_itc_igst: Decimal = Decimal("0")
    total_itc_cgst: Decimal = Decimal("0")
    total_itc_sgst: Decimal = Decimal("0")
    total_itc_cess: Decimal = Decimal("0")
    total_itc_amount: Decimal = Decimal("0")
    matched_itc_amount: Decimal = Decimal("0")

    imported_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ImportBatchListResponse(BaseModel):
    """Response for listing import batches."""
    items: List[ImportBatchResponse]
    total: int
    page: int = 1
    size: int = 20
    pages: int = 1


# ==================== Invoices ====================

class InvoiceBrief(BaseResponseSchema):
    """Invoice row for listings."""
    id: UUID
    supplier_gstin: str
    supplier_name: Optional[str] = None
    supplier_trade_name: Optional[str] = None
    invoice_number: str
    invoice_date: date
    invoice_type: str
    document_type: str
    taxable_value: Decimal
    total_gst: Decimal
    total_itc: Decimal
    match_status: str
    match_confidence: Optional[int] = None
    action_status: str


class InvoiceResponse(BaseResponseSchema):
    """Full GSTR-2B invoice with match result and action state."""
    id: UUID
    import_id: UUID
    company_id: UUID
    return_period: str

    supplier_gstin: str
    supplier_name: Optional[str] = None
    supplier_trade_name: Optional[str] = None

    invoice_number: str
    invoice_date: date
    invoice_type: str
    document_type: str

    taxable_value: Decimal
    igst_amount: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    cess_amount: Decimal
    total_gst: Decimal
    total_invoice_value: Decimal

    itc_eligible: bool
    itc_igst: Decimal
    itc_cgst: Decimal
    itc_sgst: Decimal
    itc_cess: Decimal
    total_itc: Decimal

    place_of_supply: Optional[str] = None
    supply_type: Optional[str] = None
    reverse_charge: bool = False

    match_status: str
    matched_vendor_invoice_id: Optional[UUID] = None
    match_confidence: Optional[int] = None
    discrepancies: List[str] = []
    match_details: Optional[Dict[str, Any]] = None
    reconciled_at: Optional[datetime] = None

    action_status: str
    action_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    action_at: Optional[datetime] = None
    version: int


class InvoiceListResponse(BaseModel):
    """Response for listing invoices of an import."""
    items: List[InvoiceBrief]
    total: int
    page: int = 1
    size: int = 50
    pages: int = 1


# ==================== Actions ====================

class AcceptMismatchRequest(BaseModel):
    """Accept a PARTIAL or DISCREPANCY match as is."""
    notes: Optional[str] = Field(None, description="Operator notes")


class RejectRequest(BaseModel):
    """Reject the invoice's credit."""
    reason: str = Field(..., max_length=500, description="Rejection reason")


class ManualMatchRequest(BaseModel):
    """Link the invoice to a books invoice chosen by the operator."""
    vendor_invoice_id: UUID = Field(..., description="Books (vendor) invoice ID")
    notes: Optional[str] = Field(None, description="Operator notes")


# ==================== Summaries ====================

class ReconciliationSummary(BaseModel):
    """Period reconciliation summary."""
    import_id: UUID
    company_id: UUID
    return_period: str
    status: str
    processed_at: Optional[datetime] = None

    total_invoices: int = 0
    matched_count: int = 0
    partial_count: int = 0
    discrepancy_count: int = 0
    unmatched_count: int = 0

    pending_count: int = 0
    accepted_count: int = 0
    rejected_count: int = 0
    manual_matched_count: int = 0

    match_percentage: Decimal = Decimal("0")

    total_taxable_value: Decimal = Decimal("0")
    matched_taxable_value: Decimal = Decimal("0")
    unmatched_taxable_value: Decimal = Decimal("0")

    total_itc: Decimal = Decimal("0")
    matched_itc: Decimal = Decimal("0")
    unmatched_itc: Decimal = Decimal("0")


class SupplierSummary(BaseModel):
    """Supplier-wise reconciliation figures."""
    supplier_gstin: str
    supplier_name: Optional[str] = None
    invoice_count: int
    matched_count: int
    unmatched_count: int
    total_taxable_value: Decimal
    total_itc: Decimal
    match_percentage: Decimal


class CreditBreakdown(BaseModel):
    """Statement vs books ITC for one tax component."""
    statement_itc: Decimal = Decimal("0")
    books_itc: Decimal = Decimal("0")
    difference: Decimal = Decimal("0")


class CreditComparison(BaseModel):
    """ITC as per GSTR-2B vs as per books."""
    company_id: UUID
    return_period: str
    igst: CreditBreakdown
    cgst: CreditBreakdown
    sgst: CreditBreakdown
    cess: CreditBreakdown
    total: CreditBreakdown

