"""
GSTR-2B Reconciliation Service

Runs reconciliation passes over an import batch and serves batch/invoice reads:
- Batch status PROCESSING acts as the pass lock (compare-and-swap UPDATE)
- Invoices are matched concurrently, each in its own session
- Aggregates are recomputed once every invoice write has finished
- A failed pass keeps completed invoice writes and can be re-run
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update, delete, and_, or_, func, case
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from itc_recon.config import settings
from itc_recon.core.exceptions import (
    ConflictError,
    InternalError,
    InvalidStateError,
    NotFoundError,
)
from itc_recon.database import async_session_factory
from itc_recon.models.gstr2b import (
    ActionStatus,
    Gstr2bImport,
    Gstr2bInvoice,
    ImportStatus,
    MatchStatus,
)
from itc_recon.schemas.gstr2b import ReconciliationSummary
from itc_recon.services.gstr2b_matcher import MatchConfig, match
from itc_recon.services.gstr2b_summary_service import Gstr2bSummaryService
from itc_recon.services.vendor_invoice_lookup import InternalInvoiceLookup, VendorInvoiceLookup

logger = logging.getLogger(__name__)


LookupFactory = Callable[[AsyncSession], InternalInvoiceLookup]

# Attempts to write one invoice's result when its version moved underneath
MAX_WRITE_ATTEMPTS = 3


class Gstr2bReconciliationService:
    """
    Service for reconciliation passes and import batch reads.
    """

    def __init__(
        self,
        db: AsyncSession,
        session_factory: async_sessionmaker = async_session_factory,
        lookup_factory: LookupFactory = VendorInvoiceLookup,
        max_workers: Optional[int] = None,
        match_config: Optional[MatchConfig] = None,
    ):
        self.db = db
        self.session_factory = session_factory
        self.lookup_factory = lookup_factory
        self.max_workers = max_workers or settings.RECONCILE_MAX_WORKERS
        self.match_config = match_config or MatchConfig.from_settings()

    # ==================== Batches ====================

    async def get_import_batch(self, import_id: UUID) -> Gstr2bImport:
        result = await self.db.execute(
            select(Gstr2bImport)
            .where(Gstr2bImport.id == import_id)
            .execution_options(populate_existing=True)
        )
        batch = result.scalar_one_or_none()
        if not batch:
            raise NotFoundError(f"GSTR-2B import {import_id} not found", details={"import_id": str(import_id)})
        return batch

    async def get_import_by_period(self, company_id: UUID, return_period: str) -> Gstr2bImport:
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

    async def list_import_batches(
        self,
        company_id: UUID,
        status: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Gstr2bImport], int]:
        """Batches of a company, latest return period first."""
        filters = [Gstr2bImport.company_id == company_id]
        if status:
            filters.append(Gstr2bImport.status == status)

        count_result = await self.db.execute(
            select(func.count(Gstr2bImport.id)).where(and_(*filters))
        )
        total = count_result.scalar() or 0

        result = await self.db.execute(
            select(Gstr2bImport)
            .where(and_(*filters))
            .order_by(Gstr2bImport.return_period.desc(), Gstr2bImport.created_at.desc())
            .offset((page - 1) * size)
            .limit(size)
        )
        return list(result.scalars().all()), total

    async def delete_import_batch(self, import_id: UUID) -> None:
        """Purge a batch and all of its invoices."""
        batch = await self.get_import_batch(import_id)
        if batch.status == ImportStatus.PROCESSING.value and not self._is_stale(batch):
            raise ConflictError(
                f"GSTR-2B import {import_id} is being reconciled",
                details={"import_id": str(import_id)},
            )

        await self.db.execute(delete(Gstr2bInvoice).where(Gstr2bInvoice.import_id == import_id))
        await self.db.execute(delete(Gstr2bImport).where(Gstr2bImport.id == import_id))
        await self.db.commit()
        logger.info(f"Deleted GSTR-2B import {import_id} ({batch.company_id}/{batch.return_period})")

    # ==================== Invoices ====================

    async def list_invoices(
        self,
        import_id: UUID,
        match_status: Optional[str] = None,
        invoice_type: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        size: int = 50,
    ) -> Tuple[List[Gstr2bInvoice], int]:
        """Invoices of a batch with optional filters; search covers GSTIN, names and number."""
        await self.get_import_batch(import_id)

        filters = [Gstr2bInvoice.import_id == import_id]
        if match_status:
            filters.append(Gstr2bInvoice.match_status == match_status)
        if invoice_type:
            filters.append(Gstr2bInvoice.invoice_type == invoice_type)
        if search:
            term = f"%{search.strip()}%"
            filters.append(
                or_(
                    Gstr2bInvoice.supplier_gstin.ilike(term),
                    Gstr2bInvoice.supplier_name.ilike(term),
                    Gstr2bInvoice.supplier_trade_name.ilike(term),
                    Gstr2bInvoice.invoice_number.ilike(term),
                )
            )

        count_result = await self.db.execute(
            select(func.count(Gstr2bInvoice.id)).where(and_(*filters))
        )
        total = count_result.scalar() or 0

        result = await self.db.execute(
            select(Gstr2bInvoice)
            .where(and_(*filters))
            .order_by(
                Gstr2bInvoice.supplier_gstin,
                Gstr2bInvoice.invoice_date,
                Gstr2bInvoice.invoice_number,
                Gstr2bInvoice.id,
            )
            .offset((page - 1) * size)
            .limit(size)
        )
        return list(result.scalars().all()), total

    async def get_invoice(self, invoice_id: UUID) -> Gstr2bInvoice:
        result = await self.db.execute(
            select(Gstr2bInvoice)
            .where(Gstr2bInvoice.id == invoice_id)
            .execution_options(populate_existing=True)
        )
        invoice = result.scalar_one_or_none()
        if not invoice:
            raise NotFoundError(f"GSTR-2B invoice {invoice_id} not found", details={"invoice_id": str(invoice_id)})
        return invoice

    # ==================== Reconciliation ====================

    async def reconcile(self, import_id: UUID, force: bool = False) -> ReconciliationSummary:
        """
        Run a reconciliation pass over an import batch.

        Args:
            import_id: Batch to reconcile
            force: Re-match every invoice; operator actions are reset to PENDING

        Returns:
            Summary of the batch after the pass (or as it stands, when the
            batch is already COMPLETED and force is false)

        Raises:
            NotFoundError: unknown batch
            ConflictError: another pass holds the batch
            InvalidStateError: the import itself failed and has no invoices
            InternalError: an invoice could not be processed
        """
        batch = await self.get_import_batch(import_id)
        if batch.status == ImportStatus.FAILED.value and batch.processed_at is None and not batch.total_invoices:
            raise InvalidStateError(
                f"GSTR-2B import {import_id} failed to import: {batch.error_message}",
                details={"import_id": str(import_id)},
            )

        if not await self._acquire(import_id, force):
            batch = await self.get_import_batch(import_id)
            if batch.status == ImportStatus.COMPLETED.value and not force:
                return await Gstr2bSummaryService(self.db).summarize_import(batch)
            raise ConflictError(
                f"GSTR-2B import {import_id} is already being reconciled",
                error_code="RECONCILIATION_IN_PROGRESS",
                details={"import_id": str(import_id), "status": batch.status},
            )

        logger.info(f"Reconciliation started for GSTR-2B import {import_id} (force={force})")

        try:
            invoice_ids = await self._invoices_to_match(import_id, force)
            failures = await self._match_all(invoice_ids)
        except asyncio.CancelledError:
            logger.warning(f"Reconciliation of GSTR-2B import {import_id} cancelled; releasing the lock")
            await asyncio.shield(self._release_cancelled(import_id))
            raise
        except Exception as e:
            logger.exception(f"Reconciliation of GSTR-2B import {import_id} failed")
            await self.db.rollback()
            await self._finish(import_id, failed_message=f"Reconciliation failed: {e}")
            raise InternalError(
                f"Reconciliation of GSTR-2B import {import_id} failed: {e}",
                details={"import_id": str(import_id)},
            ) from e

        if failures:
            failed_id, cause = failures[0]
            message = f"Invoice {failed_id} failed: {cause}"
            if len(failures) > 1:
                message += f" (and {len(failures) - 1} more)"
            await self._finish(import_id, failed_message=message)
            raise InternalError(
                f"Reconciliation of GSTR-2B import {import_id} failed. {message}",
                details={
                    "import_id": str(import_id),
                    "failed_invoices": [{"invoice_id": str(i), "error": str(c)} for i, c in failures],
                },
            )

        batch = await self._finish(import_id)
        logger.info(
            f"Reconciliation completed for GSTR-2B import {import_id}: "
            f"{len(invoice_ids)} matched this pass, {batch.matched_invoices} matched, "
            f"{batch.partially_matched_invoices} partial, {batch.unmatched_invoices} unmatched"
        )
        return await Gstr2bSummaryService(self.db).summarize_import(batch)

    def _is_stale(self, batch: Gstr2bImport) -> bool:
        started = batch.processing_started_at
        if started is None:
            return False
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        return started < datetime.now(timezone.utc) - timedelta(minutes=settings.RECONCILE_STALE_LOCK_MINUTES)

    async def _acquire(self, import_id: UUID, force: bool) -> bool:
        """Move the batch to PROCESSING unless a live pass holds it."""
        now = datetime.now(timezone.utc)
        stale_before = now - timedelta(minutes=settings.RECONCILE_STALE_LOCK_MINUTES)

        conditions = [
            Gstr2bImport.id == import_id,
            or_(
                Gstr2bImport.status != ImportStatus.PROCESSING.value,
                Gstr2bImport.processing_started_at < stale_before,
            ),
        ]
        if not force:
            conditions.append(Gstr2bImport.status != ImportStatus.COMPLETED.value)

        result = await self.db.execute(
            update(Gstr2bImport)
            .where(and_(*conditions))
            .values(
                status=ImportStatus.PROCESSING.value,
                processing_started_at=now,
                error_message=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def _invoices_to_match(self, import_id: UUID, force: bool) -> List[UUID]:
        query = select(Gstr2bInvoice.id).where(Gstr2bInvoice.import_id == import_id)
        if not force:
            query = query.where(Gstr2bInvoice.action_status == ActionStatus.PENDING.value)
        result = await self.db.execute(query.order_by(Gstr2bInvoice.id))
        return list(result.scalars().all())

    async def _match_all(self, invoice_ids: List[UUID]) -> List[Tuple[UUID, BaseException]]:
        semaphore = asyncio.Semaphore(self.max_workers)

        async def worker(invoice_id: UUID):
            async with semaphore:
                await self._match_invoice(invoice_id)

        results = await asyncio.gather(*(worker(i) for i in invoice_ids), return_exceptions=True)

        failures = []
        for invoice_id, result in zip(invoice_ids, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(f"GSTR-2B invoice {invoice_id} failed to reconcile: {result!r}")
                failures.append((invoice_id, result))
        return failures

    async def _match_invoice(self, invoice_id: UUID) -> None:
        """Match one invoice and write the result with a version compare-and-swap."""
        async with self.session_factory() as session:
            lookup = self.lookup_factory(session)

            for _ in range(MAX_WRITE_ATTEMPTS):
                result = await session.execute(
                    select(Gstr2bInvoice)
                    .where(Gstr2bInvoice.id == invoice_id)
                    .execution_options(populate_existing=True)
                )
                invoice = result.scalar_one_or_none()
                if invoice is None:
                    raise NotFoundError(f"GSTR-2B invoice {invoice_id} disappeared during reconciliation")

                candidates = await lookup.find_by_supplier_and_date_window(
                    invoice.company_id,
                    invoice.supplier_gstin,
                    invoice.invoice_date,
                    self.match_config.date_window_days,
                )
                outcome = match(invoice, candidates, self.match_config)

                now = datetime.now(timezone.utc)
                values = dict(
                    match_status=outcome.status.value,
                    matched_vendor_invoice_id=outcome.matched_id,
                    match_confidence=outcome.confidence,
                    discrepancies=list(outcome.discrepancies),
                    match_details=outcome.details or None,
                    reconciled_at=now,
                    auto_match_status=outcome.status.value,
                    auto_matched_vendor_invoice_id=outcome.matched_id,
                    auto_match_confidence=outcome.confidence,
                    auto_discrepancies=list(outcome.discrepancies),
                    version=invoice.version + 1,
                    updated_at=now,
                )
                if invoice.action_status != ActionStatus.PENDING.value:
                    logger.warning(
                        f"Forced reconciliation resets {invoice.action_status} action on "
                        f"GSTR-2B invoice {invoice_id} ({invoice.supplier_gstin}/{invoice.invoice_number})"
                    )
                    values.update(
                        action_status=ActionStatus.PENDING.value,
                        action_notes=None,
                        rejection_reason=None,
                        action_at=None,
                    )

                written = await session.execute(
                    update(Gstr2bInvoice)
                    .where(
                        and_(
                            Gstr2bInvoice.id == invoice_id,
                            Gstr2bInvoice.version == invoice.version,
                        )
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if written.rowcount == 1:
                    logger.debug(
                        f"GSTR-2B invoice {invoice_id}: {outcome.status.value} "
                        f"confidence={outcome.confidence}"
                    )
                    return

            raise ConflictError(
                f"GSTR-2B invoice {invoice_id} kept changing during reconciliation",
                details={"invoice_id": str(invoice_id)},
            )

    async def _release_cancelled(self, import_id: UUID) -> None:
        """Mark a cancelled pass FAILED from a fresh session so it can be resumed."""
        await self.db.rollback()
        async with self.session_factory() as session:
            releaser = Gstr2bReconciliationService(session, self.session_factory, self.lookup_factory, self.max_workers)
            await releaser._finish(import_id, failed_message="Reconciliation cancelled")

    async def _finish(self, import_id: UUID, failed_message: Optional[str] = None) -> Gstr2bImport:
        """Recompute aggregates from invoice rows and release the lock."""
        matched_itc = case(
            (
                or_(
                    Gstr2bInvoice.match_status == MatchStatus.MATCHED.value,
                    Gstr2bInvoice.action_status == ActionStatus.MANUAL_MATCHED.value,
                ),
                Gstr2bInvoice.itc_igst + Gstr2bInvoice.itc_cgst + Gstr2bInvoice.itc_sgst + Gstr2bInvoice.itc_cess,
            ),
            else_=0,
        )
        result = await self.db.execute(
            select(
                func.count(Gstr2bInvoice.id),
                func.sum(case((Gstr2bInvoice.match_status == MatchStatus.MATCHED.value, 1), else_=0)),
                func.sum(
                    case(
                        (
                            Gstr2bInvoice.match_status.in_(
                                [MatchStatus.PARTIAL.value, MatchStatus.DISCREPANCY.value]
                            ),
                            1,
                        ),
                        else_=0,
                    )
                ),
                func.sum(case((Gstr2bInvoice.match_status == MatchStatus.UNMATCHED.value, 1), else_=0)),
                func.coalesce(func.sum(Gstr2bInvoice.itc_igst), 0),
                func.coalesce(func.sum(Gstr2bInvoice.itc_cgst), 0),
                func.coalesce(func.sum(Gstr2bInvoice.itc_sgst), 0),
                func.coalesce(func.sum(Gstr2bInvoice.itc_cess), 0),
                func.coalesce(func.sum(matched_itc), 0),
            ).where(Gstr2bInvoice.import_id == import_id)
        )
        total, matched, partial, unmatched, igst, cgst, sgst, cess, matched_itc_amount = result.one()

        now = datetime.now(timezone.utc)
        await self.db.execute(
            update(Gstr2bImport)
            .where(Gstr2bImport.id == import_id)
            .values(
                status=ImportStatus.FAILED.value if failed_message else ImportStatus.COMPLETED.value,
                error_message=failed_message,
                total_invoices=total or 0,
                matched_invoices=matched or 0,
                partially_matched_invoices=partial or 0,
                unmatched_invoices=unmatched or 0,
                total_itc_igst=_money(igst),
                total_itc_cgst=_money(cgst),
                total_itc_sgst=_money(sgst),
                total_itc_cess=_money(cess),
                matched_itc_amount=_money(matched_itc_amount),
                processed_at=now,
                processing_started_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return await self.get_import_batch(import_id)


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))
