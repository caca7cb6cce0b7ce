"""API endpoints for GSTR-2B import and ITC reconciliation.

Provides:
- GSTR-2B statement import per company and return period
- Reconciliation passes against vendor invoices (books)
- Invoice listing and operator actions (accept, reject, manual match, reset)
- Period summary, supplier-wise summary and ITC comparison
"""
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from itc_recon.api.deps import DB, Pagination
from itc_recon.models.gstr2b import Gstr2bInvoiceType, ImportStatus, MatchStatus
from itc_recon.schemas.gstr2b import (
    RETURN_PERIOD_PATTERN,
    AcceptMismatchRequest,
    CreditComparison,
    ImportBatchListResponse,
    ImportBatchResponse,
    ImportStatementRequest,
    InvoiceBrief,
    InvoiceListResponse,
    InvoiceResponse,
    ManualMatchRequest,
    ReconciliationSummary,
    RejectRequest,
    SupplierSummary,
)
from itc_recon.services import (
    Gstr2bActionService,
    Gstr2bImportService,
    Gstr2bReconciliationService,
    Gstr2bSummaryService,
)


router = APIRouter()


# ==================== Imports ====================

@router.post(
    "/imports",
    response_model=ImportBatchResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Import GSTR-2B statement",
    description="""
    Import a GSTR-2B JSON statement for a company and return period.

    **Business Rules:**
    - One import per company per return period; pass `replace` to purge the previous one
    - Records missing supplier GSTIN, document number or date are skipped with a warning
    - The import fails when the skipped share exceeds the configured threshold
    """,
    responses={
        201: {"description": "Statement imported, reconciliation pending"},
        409: {"description": "Already imported for the period, or being reconciled"},
        422: {"description": "Malformed statement or period mismatch"},
    }
)
async def import_statement(
    request: ImportStatementRequest,
    db: DB,
):
    """Import a GSTR-2B statement."""
    service = Gstr2bImportService(db)
    batch = await service.import_statement(
        company_id=request.company_id,
        return_period=request.return_period,
        raw_statement=request.raw_statement,
        file_name=request.file_name,
        replace=request.replace,
    )
    return ImportBatchResponse.model_validate(batch)


@router.get("/imports", response_model=ImportBatchListResponse, summary="List GSTR-2B imports")
async def list_imports(
    db: DB,
    paging: Pagination,
    company_id: UUID = Query(..., description="Company ID"),
    import_status: Optional[ImportStatus] = Query(None, alias="status"),
):
    """List imports of a company, latest period first."""
    service = Gstr2bReconciliationService(db)
    batches, total = await service.list_import_batches(
        company_id,
        status=import_status.value if import_status else None,
        page=paging.page,
        size=paging.size,
    )
    return ImportBatchListResponse(
        items=[ImportBatchResponse.model_validate(b) for b in batches],
        total=total,
        page=paging.page,
        size=paging.size,
        pages=paging.pages(total),
    )


@router.get(
    "/imports/period/{company_id}/{return_period}",
    response_model=ImportBatchResponse,
    summary="Get GSTR-2B import for a period",
)
async def get_import_by_period(
    db: DB,
    company_id: UUID,
    return_period: str = Path(..., pattern=RETURN_PERIOD_PATTERN),
):
    service = Gstr2bReconciliationService(db)
    batch = await service.get_import_by_period(company_id, return_period)
    return ImportBatchResponse.model_validate(batch)


@router.get("/imports/{import_id}", response_model=ImportBatchResponse, summary="Get GSTR-2B import")
async def get_import(import_id: UUID, db: DB):
    service = Gstr2bReconciliationService(db)
    batch = await service.get_import_batch(import_id)
    return ImportBatchResponse.model_validate(batch)


@router.delete(
    "/imports/{import_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete GSTR-2B import",
    description="Purge an import and all of its invoices.",
)
async def delete_import(import_id: UUID, db: DB):
    service = Gstr2bReconciliationService(db)
    await service.delete_import_batch(import_id)


@router.post(
    "/imports/{import_id}/reconcile",
    response_model=ReconciliationSummary,
    summary="Run reconciliation",
    description="""
    Match every pending GSTR-2B invoice of the import against vendor invoices.

    **Business Rules:**
    - A completed import returns its current summary unless `force` is set
    - `force` re-matches all invoices and resets operator actions to PENDING
    - Only one pass may run per import at a time
    """,
    responses={
        409: {"description": "A reconciliation pass is already running"},
        500: {"description": "Some invoices failed; the import is marked FAILED and can be re-run"},
    }
)
async def reconcile(
    import_id: UUID,
    db: DB,
    force: bool = Query(False, description="Re-match all invoices and reset actions"),
):
    service = Gstr2bReconciliationService(db)
    return await service.reconcile(import_id, force=force)


# ==================== Invoices ====================

@router.get(
    "/imports/{import_id}/invoices",
    response_model=InvoiceListResponse,
    summary="List invoices of an import",
)
async def list_invoices(
    import_id: UUID,
    db: DB,
    paging: Pagination,
    match_status: Optional[MatchStatus] = None,
    invoice_type: Optional[Gstr2bInvoiceType] = None,
    search: Optional[str] = Query(None, description="Supplier GSTIN, name or invoice number"),
):
    service = Gstr2bReconciliationService(db)
    invoices, total = await service.list_invoices(
        import_id,
        match_status=match_status.value if match_status else None,
        invoice_type=invoice_type.value if invoice_type else None,
        search=search,
        page=paging.page,
        size=paging.size,
    )
    return InvoiceListResponse(
        items=[InvoiceBrief.model_validate(i) for i in invoices],
        total=total,
        page=paging.page,
        size=paging.size,
        pages=paging.pages(total),
    )


@router.get("/invoices/{invoice_id}", response_model=InvoiceResponse, summary="Get GSTR-2B invoice")
async def get_invoice(invoice_id: UUID, db: DB):
    service = Gstr2bReconciliationService(db)
    invoice = await service.get_invoice(invoice_id)
    return InvoiceResponse.model_validate(invoice)


# ==================== Actions ====================

@router.post(
    "/invoices/{invoice_id}/accept",
    response_model=InvoiceResponse,
    summary="Accept mismatch",
    description="Accept a PARTIAL or DISCREPANCY match as it stands.",
)
async def accept_mismatch(
    invoice_id: UUID,
    db: DB,
    request: Optional[AcceptMismatchRequest] = None,
):
    service = Gstr2bActionService(db)
    invoice = await service.accept_mismatch(invoice_id, notes=request.notes if request else None)
    return InvoiceResponse.model_validate(invoice)


@router.post(
    "/invoices/{invoice_id}/reject",
    response_model=InvoiceResponse,
    summary="Reject invoice",
    description="Reject the invoice's credit. A non-blank reason is required.",
)
async def reject_invoice(invoice_id: UUID, request: RejectRequest, db: DB):
    service = Gstr2bActionService(db)
    invoice = await service.reject(invoice_id, request.reason)
    return InvoiceResponse.model_validate(invoice)


@router.post(
    "/invoices/{invoice_id}/manual-match",
    response_model=InvoiceResponse,
    summary="Manually match invoice",
    description="Link the invoice to a vendor invoice of the same company.",
)
async def manual_match(invoice_id: UUID, request: ManualMatchRequest, db: DB):
    service = Gstr2bActionService(db)
    invoice = await service.manual_match(invoice_id, request.vendor_invoice_id, notes=request.notes)
    return InvoiceResponse.model_validate(invoice)


@router.post(
    "/invoices/{invoice_id}/reset",
    response_model=InvoiceResponse,
    summary="Reset action",
    description="Return the invoice to PENDING, restoring the automated match after a manual match.",
)
async def reset_action(invoice_id: UUID, db: DB):
    service = Gstr2bActionService(db)
    invoice = await service.reset_action(invoice_id)
    return InvoiceResponse.model_validate(invoice)


# ==================== Summaries ====================

@router.get("/summary", response_model=ReconciliationSummary, summary="Period reconciliation summary")
async def get_summary(
    db: DB,
    company_id: UUID = Query(..., description="Company ID"),
    return_period: str = Query(..., pattern=RETURN_PERIOD_PATTERN, description="Return period in YYYYMM format"),
):
    service = Gstr2bSummaryService(db)
    return await service.get_reconciliation_summary(company_id, return_period)


@router.get("/suppliers", response_model=List[SupplierSummary], summary="Supplier-wise summary")
async def get_supplier_summary(
    db: DB,
    company_id: UUID = Query(..., description="Company ID"),
    return_period: str = Query(..., pattern=RETURN_PERIOD_PATTERN, description="Return period in YYYYMM format"),
):
    service = Gstr2bSummaryService(db)
    return await service.get_supplier_summary(company_id, return_period)


@router.get(
    "/credit-comparison",
    response_model=CreditComparison,
    summary="ITC comparison",
    description="ITC per tax component as per GSTR-2B vs as per matched vendor invoices.",
)
async def get_credit_comparison(
    db: DB,
    company_id: UUID = Query(..., description="Company ID"),
    return_period: str = Query(..., pattern=RETURN_PERIOD_PATTERN, description="Return period in YYYYMM format"),
):
    service = Gstr2bSummaryService(db)
    return await service.get_credit_comparison(company_id, return_period)


@router.get(
    "/mismatches",
    response_model=List[InvoiceBrief],
    summary="Invoices awaiting review",
    description="Invoices that are not fully matched and have no operator decision yet.",
)
async def get_mismatches(
    db: DB,
    company_id: UUID = Query(..., description="Company ID"),
    return_period: str = Query(..., pattern=RETURN_PERIOD_PATTERN, description="Return period in YYYYMM format"),
):
    service = Gstr2bSummaryService(db)
    invoices = await service.get_mismatches(company_id, return_period)
    return [InvoiceBrief.model_validate(i) for i in invoices]
