"""
GSTR-2B Action Service

Operator decisions on individual GSTR-2B invoices. Every write is a
compare-and-swap on the invoice version, so two decisions racing on the
same invoice cannot both land.

Allowed transitions (action PENDING unless noted):
    accept_mismatch   PARTIAL, DISCREPANCY             -> ACCEPTED
    reject            PARTIAL, DISCREPANCY, UNMATCHED  -> REJECTED
    manual_match      any match status                 -> MANUAL_MATCHED
    reset_action      any non-PENDING action           -> PENDING
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from itc_recon.core.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from itc_recon.models.gstr2b import (
    ActionStatus,
    Gstr2bImport,
    Gstr2bInvoice,
    ImportStatus,
    MatchStatus,
)
from itc_recon.services.vendor_invoice_lookup import InternalInvoiceLookup, VendorInvoiceLookup

logger = logging.getLogger(__name__)


ACCEPTABLE_MATCH_STATUSES = {MatchStatus.PARTIAL.value, MatchStatus.DISCREPANCY.value}
REJECTABLE_MATCH_STATUSES = {
    MatchStatus.PARTIAL.value,
    MatchStatus.DISCREPANCY.value,
    MatchStatus.UNMATCHED.value,
}


class Gstr2bActionService:
    """
    Service for operator actions on GSTR-2B invoices.
    """

    def __init__(self, db: AsyncSession, lookup: Optional[InternalInvoiceLookup] = None):
        self.db = db
        self.lookup = lookup or VendorInvoiceLookup(db)

    async def _load(self, invoice_id: UUID) -> Gstr2bInvoice:
        """Fresh invoice row, checked against batch lock and reconciliation state."""
        result = await self.db.execute(
            select(Gstr2bInvoice)
            .where(Gstr2bInvoice.id == invoice_id)
            .execution_options(populate_existing=True)
        )
        invoice = result.scalar_one_or_none()
        if not invoice:
            raise NotFoundError(f"GSTR-2B invoice {invoice_id} not found", details={"invoice_id": str(invoice_id)})

        status_result = await self.db.execute(
            select(Gstr2bImport.status).where(Gstr2bImport.id == invoice.import_id)
        )
        if status_result.scalar_one_or_none() == ImportStatus.PROCESSING.value:
            raise ConflictError(
                "Reconciliation is running for this invoice's import; try again once it completes",
                details={"invoice_id": str(invoice_id), "import_id": str(invoice.import_id)},
            )

        if invoice.reconciled_at is None:
            raise InvalidStateError(
                "Invoice has not been reconciled yet",
                details={"invoice_id": str(invoice_id)},
            )
        return invoice

    def _require_pending(self, invoice: Gstr2bInvoice) -> None:
        if invoice.action_status != ActionStatus.PENDING.value:
            raise InvalidStateError(
                f"Invoice has already been actioned ({invoice.action_status})",
                details={"invoice_id": str(invoice.id), "action_status": invoice.action_status},
            )

    async def _write(self, invoice: Gstr2bInvoice, **values) -> Gstr2bInvoice:
        """Apply values if nobody changed the invoice since it was read."""
        now = datetime.now(timezone.utc)
        invoice_id, version, action_status = invoice.id, invoice.version, invoice.action_status
        result = await self.db.execute(
            update(Gstr2bInvoice)
            .where(
                and_(
                    Gstr2bInvoice.id == invoice_id,
                    Gstr2bInvoice.version == version,
                    Gstr2bInvoice.action_status == action_status,
                )
            )
            .values(version=version + 1, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise ConflictError(
                "Invoice was modified by another request; reload and retry",
                details={"invoice_id": str(invoice_id), "expected_version": version},
            )
        await self.db.commit()

        refreshed = await self.db.execute(
            select(Gstr2bInvoice)
            .where(Gstr2bInvoice.id == invoice_id)
            .execution_options(populate_existing=True)
        )
        return refreshed.scalar_one()

    async def accept_mismatch(self, invoice_id: UUID, notes: Optional[str] = None) -> Gstr2bInvoice:
        """Accept a PARTIAL or DISCREPANCY match as it stands."""
        invoice = await self._load(invoice_id)
        self._require_pending(invoice)
        if invoice.match_status not in ACCEPTABLE_MATCH_STATUSES:
            raise InvalidStateError(
                f"Only PARTIAL or DISCREPANCY invoices can be accepted, not {invoice.match_status}",
                details={"invoice_id": str(invoice_id), "match_status": invoice.match_status},
            )

        updated = await self._write(
            invoice,
            action_status=ActionStatus.ACCEPTED.value,
            action_notes=notes,
            action_at=datetime.now(timezone.utc),
        )
        logger.info(f"GSTR-2B invoice {invoice_id}: {invoice.match_status} accepted")
        return updated

    async def reject(self, invoice_id: UUID, reason: str) -> Gstr2bInvoice:
        """Reject the invoice's credit with a reason."""
        if not reason or not reason.strip():
            raise ValidationError(
                "Rejection reason is required",
                details={"field": "reason", "invoice_id": str(invoice_id)},
            )

        invoice = await self._load(invoice_id)
        self._require_pending(invoice)
        if invoice.match_status not in REJECTABLE_MATCH_STATUSES:
            raise InvalidStateError(
                f"{invoice.match_status} invoices cannot be rejected",
                details={"invoice_id": str(invoice_id), "match_status": invoice.match_status},
            )

        updated = await self._write(
            invoice,
            action_status=ActionStatus.REJECTED.value,
            rejection_reason=reason.strip(),
            action_at=datetime.now(timezone.utc),
        )
        logger.info(f"GSTR-2B invoice {invoice_id}: {invoice.match_status} rejected ({reason.strip()})")
        return updated

    async def manual_match(
        self,
        invoice_id: UUID,
        vendor_invoice_id: UUID,
        notes: Optional[str] = None,
    ) -> Gstr2bInvoice:
        """Link the invoice to a books invoice of the same company."""
        invoice = await self._load(invoice_id)
        self._require_pending(invoice)

        vendor_invoice = await self.lookup.get_by_id(invoice.company_id, vendor_invoice_id)
        if vendor_invoice is None:
            raise NotFoundError(
                f"Vendor invoice {vendor_invoice_id} not found for this company",
                details={"vendor_invoice_id": str(vendor_invoice_id), "company_id": str(invoice.company_id)},
            )

        updated = await self._write(
            invoice,
            matched_vendor_invoice_id=vendor_invoice.id,
            match_confidence=100,
            discrepancies=[],
            action_status=ActionStatus.MANUAL_MATCHED.value,
            action_notes=notes,
            action_at=datetime.now(timezone.utc),
        )
        logger.info(
            f"GSTR-2B invoice {invoice_id}: manually matched to vendor invoice "
            f"{vendor_invoice.id} ({vendor_invoice.invoice_number})"
        )
        return updated

    async def reset_action(self, invoice_id: UUID) -> Gstr2bInvoice:
        """Return the invoice to PENDING; a manual match gives way to the last automated result."""
        invoice = await self._load(invoice_id)
        if invoice.action_status == ActionStatus.PENDING.value:
            raise InvalidStateError(
                "Invoice has no action to reset",
                details={"invoice_id": str(invoice_id)},
            )

        values = dict(
            action_status=ActionStatus.PENDING.value,
            action_notes=None,
            rejection_reason=None,
            action_at=None,
        )
        if invoice.action_status == ActionStatus.MANUAL_MATCHED.value:
            values.update(
                match_status=invoice.auto_match_status or MatchStatus.UNMATCHED.value,
                matched_vendor_invoice_id=invoice.auto_matched_vendor_invoice_id,
                match_confidence=invoice.auto_match_confidence,
                discrepancies=list(invoice.auto_discrepancies or []),
            )

        updated = await self._write(invoice, **values)
        logger.info(f"GSTR-2B invoice {invoice_id}: {invoice.action_status} reset to PENDING")
        return updated
