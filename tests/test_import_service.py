"""GSTR-2B statement parsing and import."""
import json
import uuid
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from itc_recon.core.exceptions import (
    ConflictError,
    DuplicateImportError,
    ValidationError,
)
from itc_recon.database import async_session_factory
from itc_recon.models.gstr2b import Gstr2bImport, Gstr2bInvoice
from itc_recon.schemas.gstr2b_statement import parse_statement, parse_statement_date
from itc_recon.services import Gstr2bImportService

from conftest import SUPPLIER_S, SUPPLIER_T


async def count_invoices(db, import_id=None):
    query = select(func.count()).select_from(Gstr2bInvoice)
    if import_id is not None:
        query = query.where(Gstr2bInvoice.import_id == import_id)
    return (await db.execute(query)).scalar_one()


async def count_imports(db):
    return (await db.execute(select(func.count()).select_from(Gstr2bImport))).scalar_one()


def numbered_invoices(statement, count, start=1):
    for n in range(start, start + count):
        statement.invoice(SUPPLIER_S, f"INV-{n:03d}", "05-04-2024", 1000, cgst=90, sgst=90)
    return statement


class TestParseStatement:

    def test_date_formats(self):
        assert parse_statement_date("05-04-2024") == date(2024, 4, 5)
        assert parse_statement_date("05/04/2024") == date(2024, 4, 5)
        assert parse_statement_date("2024-04-05") == date(2024, 4, 5)
        assert parse_statement_date("") is None
        with pytest.raises(ValueError):
            parse_statement_date("April 5th")

    def test_sections(self, statement):
        statement.invoice(SUPPLIER_S, "INV-1", "05-04-2024", 1000, cgst=90, sgst=90)
        statement.note(SUPPLIER_S, "CN-1", "08-04-2024", 200, typ="C", cgst=18, sgst=18)
        statement.note(SUPPLIER_T, "DN-1", "09-04-2024", 300, typ="D", igst=54)
        statement.bill_of_entry("BE-1", "10-04-2024", 50000, 9000)

        parsed = parse_statement(statement.build())

        assert parsed.return_period == "042024"
        assert [r.document_type.value for r in parsed.records] == [
            "INVOICE", "CREDIT_NOTE", "DEBIT_NOTE", "BILL_OF_ENTRY",
        ]
        bill = parsed.records[-1]
        assert bill.supplier_gstin == "IMPORT"
        assert bill.supply_type == "IMPORT"
        assert bill.total_invoice_value == Decimal("59000.00")
        # Credit notes keep their amounts positive
        assert parsed.records[1].taxable_value == Decimal("200.00")
        assert parsed.records[0].supply_type == "INTRA_STATE"
        assert parsed.records[2].supply_type == "INTER_STATE"

    def test_item_amounts_are_summed(self, statement):
        statement.raw_invoice(SUPPLIER_S, {
            "inum": "INV-9",
            "dt": "05-04-2024",
            "val": 2360,
            "itcavl": "Y",
            "items": [
                {"txval": 1000, "cgst": 90, "sgst": 90},
                {"txval": 1000, "cgst": 90, "sgst": 90},
            ],
        })
        record = parse_statement(statement.build()).records[0]
        assert record.taxable_value == Decimal("2000.00")
        assert record.cgst_amount == Decimal("180.00")

    def test_bad_records_become_warnings(self, statement):
        statement.invoice(SUPPLIER_S, "INV-1", "05-04-2024", 1000)
        statement.raw_invoice(SUPPLIER_S, {"inum": "INV-2", "items": []})
        statement.raw_invoice(SUPPLIER_S, {"inum": " ", "dt": "05-04-2024"})
        statement.raw_invoice(SUPPLIER_S, {"inum": "INV-4", "dt": "31-02-2024"})

        parsed = parse_statement(statement.build())

        assert len(parsed.records) == 1
        assert parsed.total_records == 4
        assert parsed.warnings[0] == "b2b[0].inv[1]: invoice date missing"
        assert parsed.warnings[1] == "b2b[0].inv[2]: invoice number missing"
        assert parsed.warnings[2].startswith("b2b[0].inv[3]: invoice date invalid")

    def test_group_without_gstin(self, statement):
        statement.invoice("", "INV-1", "05-04-2024", 1000)
        parsed = parse_statement(statement.build())
        assert parsed.records == []
        assert parsed.warnings == ["b2b[0].inv[0]: supplier GSTIN missing"]

    def test_accepts_text_and_unwrapped_payload(self, statement):
        statement.invoice(SUPPLIER_S, "INV-1", "05-04-2024", 1000)
        assert len(parse_statement(json.dumps(statement.build())).records) == 1
        assert len(parse_statement(statement.build(wrap=False)).records) == 1

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]", json.dumps({"data": {"gstin": "X"}})])
    def test_structural_errors(self, raw):
        with pytest.raises(ValidationError):
            parse_statement(raw)

    def test_section_must_be_list(self):
        with pytest.raises(ValidationError):
            parse_statement({"data": {"rtnprd": "042024", "docdata": {"b2b": {"ctin": SUPPLIER_S}}}})


class TestImportStatement:

    async def test_import(self, db, company_id, statement):
        statement.invoice(SUPPLIER_S, "INV-1", "05-04-2024", 10000, cgst=900, sgst=900)
        statement.invoice(SUPPLIER_T, "INV-2", "06-04-2024", 5000, igst=900, itcavl="N")
        statement.bill_of_entry("BE-1", "10-04-2024", 20000, 3600)

        batch = await Gstr2bImportService(db).import_statement(
            company_id, "202404", statement.build(), file_name="2b.json"
        )

        assert batch.status == "PENDING"
        assert batch.total_invoices == 3
        assert batch.unmatched_invoices == 3
        assert batch.matched_invoices == 0
        assert batch.gstin == statement.gstin
        assert batch.file_name == "2b.json"
        assert len(batch.file_hash) == 64
        assert batch.total_itc_cgst == Decimal("900.00")
        # INV-2 has no ITC available
        assert batch.total_itc_igst == Decimal("3600.00")
        assert batch.total_itc_amount == Decimal("5400.00")

        rows = (await db.execute(select(Gstr2bInvoice).where(Gstr2bInvoice.import_id == batch.id))).scalars().all()
        assert {r.match_status for r in rows} == {"UNMATCHED"}
        assert {r.action_status for r in rows} == {"PENDING"}
        assert all(r.reconciled_at is None and r.version == 1 for r in rows)
        assert all(r.raw_data for r in rows)
        # GSTN statements only carry the trade name
        assert {r.supplier_trade_name for r in rows if r.supplier_gstin == SUPPLIER_S} == {"Supplier"}
        assert all(r.supplier_name is None for r in rows)

    async def test_duplicate_period(self, db, company_id, statement):
        numbered_invoices(statement, 2)
        service = Gstr2bImportService(db)
        first = await service.import_statement(company_id, "202404", statement.build())

        with pytest.raises(DuplicateImportError) as exc_info:
            await service.import_statement(company_id, "202404", statement.build())

        assert isinstance(exc_info.value, ConflictError)
        assert isinstance(exc_info.value, ValidationError)
        assert exc_info.value.details["import_id"] == str(first.id)
        assert await count_imports(db) == 1

    async def test_concurrent_import_for_same_period(self, db, company_id, statement):
        numbered_invoices(statement, 2)
        await Gstr2bImportService(db).import_statement(company_id, "202404", statement.build())

        class RacingImportService(Gstr2bImportService):
            async def get_existing(self, company_id, return_period):
                return None

        async with async_session_factory() as other_db:
            with pytest.raises(DuplicateImportError) as exc_info:
                await RacingImportService(other_db).import_statement(company_id, "202404", statement.build())

        assert exc_info.value.status_code == 409
        assert exc_info.value.details == {"return_period": "202404"}
        assert await count_imports(db) == 1
        assert await count_invoices(db) == 2

    async def test_same_period_other_company(self, db, company_id, statement):
        numbered_invoices(statement, 2)
        service = Gstr2bImportService(db)
        await service.import_statement(company_id, "202404", statement.build())
        await service.import_statement(uuid.uuid4(), "202404", statement.build())
        assert await count_imports(db) == 2

    async def test_replace(self, db, company_id, statement):
        numbered_invoices(statement, 3)
        service = Gstr2bImportService(db)
        old = await service.import_statement(company_id, "202404", statement.build())
        old_id = old.id

        replacement = numbered_invoices(type(statement)(), 2, start=10)
        new = await service.import_statement(company_id, "202404", replacement.build(), replace=True)

        assert new.id != old_id
        assert new.total_invoices == 2
        assert await count_imports(db) == 1
        assert await count_invoices(db, old_id) == 0
        assert await count_invoices(db) == 2

    async def test_replace_while_processing(self, db, company_id, statement):
        numbered_invoices(statement, 1)
        service = Gstr2bImportService(db)
        batch = await service.import_statement(company_id, "202404", statement.build())
        batch.status = "PROCESSING"
        await db.commit()

        with pytest.raises(ConflictError):
            await service.import_statement(company_id, "202404", statement.build(), replace=True)

    async def test_period_mismatch(self, db, company_id, statement):
        numbered_invoices(statement, 1)
        with pytest.raises(ValidationError) as exc_info:
            await Gstr2bImportService(db).import_statement(company_id, "202405", statement.build())

        assert exc_info.value.error_code == "PERIOD_MISMATCH"
        assert exc_info.value.details == {"expected": "202405", "actual": "202404"}
        assert await count_imports(db) == 0

    async def test_invalid_json_persists_nothing(self, db, company_id):
        with pytest.raises(ValidationError):
            await Gstr2bImportService(db).import_statement(company_id, "202404", "{")
        assert await count_imports(db) == 0

    async def test_empty_statement(self, db, company_id, statement):
        with pytest.raises(ValidationError) as exc_info:
            await Gstr2bImportService(db).import_statement(company_id, "202404", statement.build())
        assert exc_info.value.error_code == "EMPTY_STATEMENT"
        assert await count_imports(db) == 0

    async def test_malformed_records_within_threshold(self, db, company_id, statement):
        numbered_invoices(statement, 19)
        statement.raw_invoice(SUPPLIER_S, {"inum": "INV-BAD", "items": []})

        batch = await Gstr2bImportService(db).import_statement(company_id, "202404", statement.build())

        assert batch.status == "PENDING"
        assert batch.total_invoices == 19
        assert batch.warnings == ["b2b[0].inv[19]: invoice date missing"]

    async def test_malformed_records_over_threshold(self, db, company_id, statement):
        numbered_invoices(statement, 18)
        statement.raw_invoice(SUPPLIER_S, {"inum": "INV-BAD", "items": []})
        statement.raw_invoice(SUPPLIER_S, {"dt": "05-04-2024", "items": []})

        with pytest.raises(ValidationError) as exc_info:
            await Gstr2bImportService(db).import_statement(company_id, "202404", statement.build())

        assert exc_info.value.error_code == "MALFORMED_STATEMENT"
        batch = await Gstr2bImportService(db).get_existing(company_id, "202404")
        assert batch.status == "FAILED"
        assert batch.total_invoices == 0
        assert "2 of 20" in batch.error_message
        assert await count_invoices(db) == 0

    async def test_failed_replace_keeps_previous_batch(self, db, company_id, statement):
        numbered_invoices(statement, 3)
        service = Gstr2bImportService(db)
        old = await service.import_statement(company_id, "202404", statement.build())
        old_id = old.id

        broken = type(statement)()
        broken.raw_invoice(SUPPLIER_S, {"inum": "INV-BAD"})
        with pytest.raises(ValidationError):
            await service.import_statement(company_id, "202404", broken.build(), replace=True)

        kept = await service.get_existing(company_id, "202404")
        assert kept.id == old_id
        assert kept.status == "PENDING"
        assert await count_invoices(db, old_id) == 3

    async def test_configurable_threshold(self, db, company_id, statement):
        numbered_invoices(statement, 1)
        statement.raw_invoice(SUPPLIER_S, {"inum": "INV-BAD"})
        batch = await Gstr2bImportService(db, max_malformed_fraction=0.5).import_statement(
            company_id, "202404", statement.build()
        )
        assert batch.total_invoices == 1
