"""
GSTR-2B Import Service

Turns a GSTR-2B statement into an import batch and its invoice rows:
- One batch per company per return period
- Per-record validation with skipped records kept as warnings
- Failed imports recorded with status FAILED and no invoices
- Replace purges the previous batch in the same transaction
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Union
from uuid import UUID, uuid4

from sqlalchemy import select, delete, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from itc_recon.config import settings
from itc_recon.core.exceptions import (
    ConflictError,
    DuplicateImportError,
    ValidationError,
)
from itc_recon.database import custom_json_dumps
from itc_recon.models.gstr2b import (
    ActionStatus,
    Gstr2bImport,
    Gstr2bInvoice,
    ImportSource,
    ImportStatus,
    MatchStatus,
)
from itc_recon.schemas.gstr2b_statement import (
    ParsedStatement,
    StatementRecord,
    parse_statement,
    statement_period_to_return_period,
)

logger = logging.getLogger(__name__)


RawStatement = Union[str, bytes, Dict[str, Any]]


def compute_file_hash(raw_statement: RawStatement) -> str:
    """SHA-256 of the statement as received (canonical JSON for mappings)."""
    if isinstance(raw_statement, dict):
        payload = json.dumps(raw_statement, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    elif isinstance(raw_statement, str):
        payload = raw_statement.encode("utf-8")
    else:
        payload = raw_statement
    return hashlib.sha256(payload).hexdigest()


def _json_safe(raw: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(custom_json_dumps(raw))


class Gstr2bImportService:
    """
    Service for importing GSTR-2B statements.
    """

    def __init__(self, db: AsyncSession, max_malformed_fraction: Optional[float] = None):
        self.db = db
        self.max_malformed_fraction = (
            settings.IMPORT_MAX_MALFORMED_FRACTION
            if max_malformed_fraction is None
            else max_malformed_fraction
        )

    async def get_existing(self, company_id: UUID, return_period: str) -> Optional[Gstr2bImport]:
        result = await self.db.execute(
            select(Gstr2bImport).where(
                and_(
                    Gstr2bImport.company_id == company_id,
                    Gstr2bImport.return_period == return_period,
                )
            )
        )
        return result.scalar_one_or_none()

    async def import_statement(
        self,
        company_id: UUID,
        return_period: str,
        raw_statement: RawStatement,
        file_name: Optional[str] = None,
        replace: bool = False,
        import_source: ImportSource = ImportSource.FILE_UPLOAD,
    ) -> Gstr2bImport:
        """
        Import a GSTR-2B statement for a company and return period.

        Args:
            company_id: Company the statement belongs to
            return_period: YYYYMM
            raw_statement: JSON text/bytes or decoded mapping
            file_name: Original file name, if uploaded
            replace: Purge the existing batch for the period first

        Returns:
            The new PENDING batch

        Raises:
            ValidationError: malformed statement, period mismatch, too many
                malformed records or no valid records
            DuplicateImportError: a batch exists for the period and replace is false
            ConflictError: the batch to replace is being reconciled
        """
        parsed = parse_statement(raw_statement)
        self._check_period(parsed, return_period)

        existing = await self.get_existing(company_id, return_period)
        if existing and not replace:
            raise DuplicateImportError(
                f"GSTR-2B for {return_period} has already been imported",
                details={"import_id": str(existing.id), "return_period": return_period},
            )
        if existing and existing.status == ImportStatus.PROCESSING.value:
            raise ConflictError(
                f"GSTR-2B import for {return_period} is being reconciled and cannot be replaced",
                details={"import_id": str(existing.id)},
            )

        file_hash = compute_file_hash(raw_statement)

        for warning in parsed.warnings:
            logger.warning(f"GSTR-2B {company_id}/{return_period} skipped record {warning}")

        if parsed.malformed_fraction > self.max_malformed_fraction:
            message = (
                f"{parsed.skipped_records} of {parsed.total_records} records are malformed "
                f"(allowed fraction {self.max_malformed_fraction})"
            )
            details = {"warnings": parsed.warnings, "skipped": parsed.skipped_records, "total": parsed.total_records}
            if existing is None:
                failed = self._new_batch(company_id, return_period, parsed, file_name, file_hash, import_source)
                failed.status = ImportStatus.FAILED.value
                failed.error_message = message
                self.db.add(failed)
                try:
                    await self.db.commit()
                except IntegrityError as e:
                    await self._raise_duplicate(e, company_id, return_period)
                details["import_id"] = str(failed.id)
            logger.error(f"GSTR-2B import failed for {company_id}/{return_period}: {message}")
            raise ValidationError(message, error_code="MALFORMED_STATEMENT", details=details)

        if not parsed.records:
            raise ValidationError(
                "GSTR-2B statement contains no invoices",
                error_code="EMPTY_STATEMENT",
                details={"warnings": parsed.warnings},
            )

        replaced_id = existing.id if existing else None
        if existing:
            await self._purge(existing)

        batch = self._new_batch(company_id, return_period, parsed, file_name, file_hash, import_source)
        try:
            self.db.add(batch)
            await self.db.flush()

            for record in parsed.records:
                self.db.add(self._new_invoice(batch, record))

            batch.total_invoices = len(parsed.records)
            batch.unmatched_invoices = len(parsed.records)
            batch.total_itc_igst = sum((r.itc_igst for r in parsed.records), Decimal("0"))
            batch.total_itc_cgst = sum((r.itc_cgst for r in parsed.records), Decimal("0"))
            batch.total_itc_sgst = sum((r.itc_sgst for r in parsed.records), Decimal("0"))
            batch.total_itc_cess = sum((r.itc_cess for r in parsed.records), Decimal("0"))

            await self.db.commit()
        except IntegrityError as e:
            await self._raise_duplicate(e, company_id, return_period)
        await self.db.refresh(batch)

        logger.info(
            f"GSTR-2B imported for {company_id}/{return_period}: "
            f"{batch.total_invoices} invoices, {parsed.skipped_records} skipped"
            f"{f' (replaced {replaced_id})' if replaced_id else ''}"
        )
        return batch

    async def _raise_duplicate(self, error: IntegrityError, company_id: UUID, return_period: str) -> None:
        """Another import for the period committed first."""
        await self.db.rollback()
        logger.warning(f"GSTR-2B import for {company_id}/{return_period} lost a race: {error}")
        raise DuplicateImportError(
            f"GSTR-2B for {return_period} has already been imported",
            details={"return_period": return_period},
        ) from error

    def _check_period(self, parsed: ParsedStatement, return_period: str) -> None:
        if not parsed.return_period:
            return
        rtnprd = parsed.return_period
        if len(rtnprd) != 6 or not rtnprd.isdigit():
            raise ValidationError(
                f"Statement return period '{rtnprd}' is not in MMYYYY format",
                details={"field": "rtnprd"},
            )
        statement_period = statement_period_to_return_period(rtnprd)
        if statement_period != return_period:
            raise ValidationError(
                f"Statement is for {statement_period}, not {return_period}",
                error_code="PERIOD_MISMATCH",
                details={"expected": return_period, "actual": statement_period},
            )

    async def _purge(self, batch: Gstr2bImport) -> None:
        """Delete a batch and its invoices without committing."""
        await self.db.execute(delete(Gstr2bInvoice).where(Gstr2bInvoice.import_id == batch.id))
        await self.db.execute(delete(Gstr2bImport).where(Gstr2bImport.id == batch.id))
        await self.db.flush()
        logger.info(f"Purged GSTR-2B import {batch.id} for {batch.company_id}/{batch.return_period}")

    def _new_batch(
        self,
        company_id: UUID,
        return_period: str,
        parsed: ParsedStatement,
        file_name: Optional[str],
        file_hash: str,
        import_source: ImportSource,
    ) -> Gstr2bImport:
        return Gstr2bImport(
            id=uuid4(),
            company_id=company_id,
            return_period=return_period,
            gstin=(parsed.gstin or "").upper(),
            import_source=import_source.value,
            file_name=file_name,
            file_hash=file_hash,
            status=ImportStatus.PENDING.value,
            warnings=parsed.warnings or None,
            total_invoices=0,
            matched_invoices=0,
            unmatched_invoices=0,
            partially_matched_invoices=0,
            imported_at=datetime.now(timezone.utc),
        )

    def _new_invoice(self, batch: Gstr2bImport, record: StatementRecord) -> Gstr2bInvoice:
        return Gstr2bInvoice(
            id=uuid4(),
            import_id=batch.id,
            company_id=batch.company_id,
            return_period=batch.return_period,
            supplier_gstin=record.supplier_gstin,
            supplier_trade_name=record.supplier_trade_name,
            invoice_number=record.invoice_number,
            invoice_date=record.invoice_date,
            invoice_type=record.invoice_type.value,
            document_type=record.document_type.value,
            taxable_value=record.taxable_value,
            igst_amount=record.igst_amount,
            cgst_amount=record.cgst_amount,
            sgst_amount=record.sgst_amount,
            cess_amount=record.cess_amount,
            total_invoice_value=record.total_invoice_value,
            itc_eligible=record.itc_eligible,
            itc_igst=record.itc_igst,
            itc_cgst=record.itc_cgst,
            itc_sgst=record.itc_sgst,
            itc_cess=record.itc_cess,
            place_of_supply=record.place_of_supply,
            supply_type=record.supply_type,
            reverse_charge=record.reverse_charge,
            match_status=MatchStatus.UNMATCHED.value,
            discrepancies=[],
            action_status=ActionStatus.PENDING.value,
            version=1,
            raw_data=_json_safe(record.raw_data),
        )
