"""
GSTR-2B Summary Service

Read-only figures computed from current invoice rows:
- Period reconciliation summary
- Supplier-wise summary
- ITC as per GSTR-2B vs as per books
- Review queue of invoices still needing a decision
"""

import logging
from collections import Counter
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from itc_recon.core.exceptions import NotFoundError
from itc_recon.models.gstr2b import ActionStatus, Gstr2bImport, Gstr2bInvoice, MatchStatus
from itc_recon.schemas.gstr2b import (
    CreditBreakdown,
    CreditComparison,
    ReconciliationSummary,
    SupplierSummary,
)
from itc_recon.services.vendor_invoice_lookup import InternalInvoice, InternalInvoiceLookup, VendorInvoiceLookup

logger = logging.getLogger(__name__)


ZERO = Decimal("0")
TWO_PLACES = Decimal("0.01")


def is_matched(invoice: Gstr2bInvoice) -> bool:
    """Credit counts as substantiated: automated MATCHED or operator MANUAL_MATCHED."""
    return (
        invoice.match_status == MatchStatus.MATCHED.value
        or invoice.action_status == ActionStatus.MANUAL_MATCHED.value
    )


def percentage(part: int, whole: int) -> Decimal:
    if not whole:
        return Decimal("0.00")
    return (Decimal(part) * 100 / Decimal(whole)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _money(value: Decimal) -> Decimal:
    return (value or ZERO).quantize(TWO_PLACES)


class Gstr2bSummaryService:
    """
    Service for GSTR-2B reconciliation summaries.
    """

    def __init__(self, db: AsyncSession, lookup: Optional[InternalInvoiceLookup] = None):
        self.db = db
        self.lookup = lookup or VendorInvoiceLookup(db)

    async def _get_batch(self, company_id: UUID, return_period: str) -> Gstr2bImport:
        result = await self.db.execute(
            select(Gstr2bImport).where(
                and_(
                    Gstr2bImport.company_id == company_id,
                    Gstr2bImport.return_period == return_period,
                )
            )
        )
        batch = result.scalar_one_or_none()
        if not batch:
            raise NotFoundError(
                f"No GSTR-2B import found for period {return_period}",
                details={"company_id": str(company_id), "return_period": return_period},
            )
        return batch

    async def _invoices(self, import_id: UUID) -> List[Gstr2bInvoice]:
        result = await self.db.execute(
            select(Gstr2bInvoice)
            .where(Gstr2bInvoice.import_id == import_id)
            .order_by(Gstr2bInvoice.supplier_gstin, Gstr2bInvoice.invoice_date, Gstr2bInvoice.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_reconciliation_summary(self, company_id: UUID, return_period: str) -> ReconciliationSummary:
        batch = await self._get_batch(company_id, return_period)
        return await self.summarize_import(batch)

    async def summarize_import(self, batch: Gstr2bImport) -> ReconciliationSummary:
        """Counts by match and action status plus matched/unmatched value split."""
        invoices = await self._invoices(batch.id)

        by_match = Counter(inv.match_status for inv in invoices)
        by_action = Counter(inv.action_status for inv in invoices)

        matched = [inv for inv in invoices if is_matched(inv)]
        unmatched = [inv for inv in invoices if not is_matched(inv)]

        total_taxable = sum((inv.taxable_value for inv in invoices), ZERO)
        matched_taxable = sum((inv.taxable_value for inv in matched), ZERO)
        total_itc = sum((inv.total_itc for inv in invoices), ZERO)
        matched_itc = sum((inv.total_itc for inv in matched), ZERO)

        return ReconciliationSummary(
            import_id=batch.id,
            company_id=batch.company_id,
            return_period=batch.return_period,
            status=batch.status,
            processed_at=batch.processed_at,
            total_invoices=len(invoices),
            matched_count=by_match[MatchStatus.MATCHED.value],
            partial_count=by_match[MatchStatus.PARTIAL.value],
            discrepancy_count=by_match[MatchStatus.DISCREPANCY.value],
            unmatched_count=by_match[MatchStatus.UNMATCHED.value],
            pending_count=by_action[ActionStatus.PENDING.value],
            accepted_count=by_action[ActionStatus.ACCEPTED.value],
            rejected_count=by_action[ActionStatus.REJECTED.value],
            manual_matched_count=by_action[ActionStatus.MANUAL_MATCHED.value],
            match_percentage=percentage(len(matched), len(invoices)),
            total_taxable_value=_money(total_taxable),
            matched_taxable_value=_money(matched_taxable),
            unmatched_taxable_value=_money(total_taxable - matched_taxable),
            total_itc=_money(total_itc),
            matched_itc=_money(matched_itc),
            unmatched_itc=_money(total_itc - matched_itc),
        )

    async def get_supplier_summary(self, company_id: UUID, return_period: str) -> List[SupplierSummary]:
        """Per-supplier figures, largest taxable value first."""
        batch = await self._get_batch(company_id, return_period)
        invoices = await self._invoices(batch.id)

        grouped: Dict[str, List[Gstr2bInvoice]] = {}
        for inv in invoices:
            grouped.setdefault(inv.supplier_gstin, []).append(inv)

        summaries = []
        for gstin, rows in grouped.items():
            matched_count = sum(1 for inv in rows if is_matched(inv))
            name = next((inv.supplier_name or inv.supplier_trade_name for inv in rows
                         if inv.supplier_name or inv.supplier_trade_name), None)
            summaries.append(
                SupplierSummary(
                    supplier_gstin=gstin,
                    supplier_name=name,
                    invoice_count=len(rows),
                    matched_count=matched_count,
                    unmatched_count=len(rows) - matched_count,
                    total_taxable_value=_money(sum((inv.taxable_value for inv in rows), ZERO)),
                    total_itc=_money(sum((inv.total_itc for inv in rows), ZERO)),
                    match_percentage=percentage(matched_count, len(rows)),
                )
            )

        summaries.sort(key=lambda s: (-s.total_taxable_value, s.supplier_gstin))
        return summaries

    async def get_credit_comparison(self, company_id: UUID, return_period: str) -> CreditComparison:
        """
        ITC per component as per the statement and as per books.

        Books side sums, for every invoice with a matched vendor invoice,
        that vendor invoice's tax when it is ITC eligible.
        """
        batch = await self._get_batch(company_id, return_period)
        invoices = await self._invoices(batch.id)

        statement = {
            "igst": sum((inv.itc_igst for inv in invoices), ZERO),
            "cgst": sum((inv.itc_cgst for inv in invoices), ZERO),
            "sgst": sum((inv.itc_sgst for inv in invoices), ZERO),
            "cess": sum((inv.itc_cess for inv in invoices), ZERO),
        }
        books = {"igst": ZERO, "cgst": ZERO, "sgst": ZERO, "cess": ZERO}

        cache: Dict[UUID, Optional[InternalInvoice]] = {}
        for inv in invoices:
            vendor_invoice_id = inv.matched_vendor_invoice_id
            if vendor_invoice_id is None:
                continue
            if vendor_invoice_id not in cache:
                cache[vendor_invoice_id] = await self.lookup.get_by_id(company_id, vendor_invoice_id)
            books_invoice = cache[vendor_invoice_id]
            if books_invoice is None:
                logger.warning(
                    f"GSTR-2B invoice {inv.id} points at missing vendor invoice {vendor_invoice_id}"
                )
                continue
            if not books_invoice.itc_eligible:
                continue
            books["igst"] += books_invoice.igst_amount
            books["cgst"] += books_invoice.cgst_amount
            books["sgst"] += books_invoice.sgst_amount
            books["cess"] += books_invoice.cess_amount

        def breakdown(statement_itc: Decimal, books_itc: Decimal) -> CreditBreakdown:
            return CreditBreakdown(
                statement_itc=_money(statement_itc),
                books_itc=_money(books_itc),
                difference=_money(statement_itc - books_itc),
            )

        return CreditComparison(
            company_id=company_id,
            return_period=return_period,
            igst=breakdown(statement["igst"], books["igst"]),
            cgst=breakdown(statement["cgst"], books["cgst"]),
            sgst=breakdown(statement["sgst"], books["sgst"]),
            cess=breakdown(statement["cess"], books["cess"]),
            total=breakdown(sum(statement.values(), ZERO), sum(books.values(), ZERO)),
        )

    async def get_mismatches(self, company_id: UUID, return_period: str) -> List[Gstr2bInvoice]:
        """Invoices not fully matched and still awaiting an operator decision."""
        batch = await self._get_batch(company_id, return_period)
        result = await self.db.execute(
            select(Gstr2bInvoice)
            .where(
                and_(
                    Gstr2bInvoice.import_id == batch.id,
                    Gstr2bInvoice.match_status != MatchStatus.MATCHED.value,
                    Gstr2bInvoice.action_status == ActionStatus.PENDING.value,
                )
            )
            .order_by(Gstr2bInvoice.supplier_gstin, Gstr2bInvoice.invoice_date, Gstr2bInvoice.id)
        )
        return list(result.scalars().all())
