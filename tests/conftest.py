"""
Shared fixtures.

Tests run against a throwaway SQLite file; DATABASE_URL must be set before
itc_recon is imported because settings are read at import time.
"""
import os
import tempfile
import uuid
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

_db_dir = tempfile.mkdtemp(prefix="itc_recon_tests_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_db_dir}/test.db"
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select

from itc_recon.database import async_session_factory, drop_db, engine, init_db
from itc_recon.models.gstr2b import Gstr2bInvoice
from itc_recon.models.vendor_invoice import VendorInvoice


RECIPIENT_GSTIN = "27AAACR5055K1Z7"
SUPPLIER_S = "27AABCS1234F1Z5"
SUPPLIER_T = "29AABCT9876K1Z2"


@pytest.fixture(autouse=True)
async def database():
    await drop_db()
    await init_db()
    yield
    await engine.dispose()


@pytest.fixture
async def db():
    async with async_session_factory() as session:
        yield session


@pytest.fixture
def company_id():
    return uuid.uuid4()


@pytest.fixture
async def client():
    from itc_recon.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class StatementBuilder:
    """Builds GSTN-layout GSTR-2B payloads."""

    def __init__(self, rtnprd: str = "042024", gstin: str = RECIPIENT_GSTIN):
        self.rtnprd = rtnprd
        self.gstin = gstin
        self.b2b = []
        self.cdnr = []
        self.impg = []

    def _group(self, section: list, doc_key: str, ctin: str, trdnm: str):
        for group in section:
            if group.get("ctin") == ctin:
                return group
        group = {"ctin": ctin, "trdnm": trdnm, doc_key: []}
        section.append(group)
        return group

    def invoice(self, ctin, inum, dt, txval, cgst=0, sgst=0, igst=0, cess=0,
                itcavl="Y", trdnm="Supplier", pos=None):
        group = self._group(self.b2b, "inv", ctin, trdnm)
        group["inv"].append({
            "inum": inum,
            "dt": dt,
            "val": txval + cgst + sgst + igst + cess,
            "pos": pos or ctin[:2],
            "rev": "N",
            "itcavl": itcavl,
            "items": [{"txval": txval, "igst": igst, "cgst": cgst, "sgst": sgst, "cess": cess}],
        })
        return self

    def note(self, ctin, ntnum, dt, txval, typ="C", cgst=0, sgst=0, igst=0, itcavl="Y", trdnm="Supplier"):
        group = self._group(self.cdnr, "nt", ctin, trdnm)
        group["nt"].append({
            "ntnum": ntnum,
            "typ": typ,
            "dt": dt,
            "val": txval + cgst + sgst + igst,
            "itcavl": itcavl,
            "items": [{"txval": txval, "igst": igst, "cgst": cgst, "sgst": sgst, "cess": 0}],
        })
        return self

    def bill_of_entry(self, benum, bedt, txval, igst, cess=0):
        self.impg.append({"benum": benum, "bedt": bedt, "portcode": "INNSA1", "txval": txval, "igst": igst, "cess": cess})
        return self

    def raw_invoice(self, ctin, record, trdnm="Supplier"):
        self._group(self.b2b, "inv", ctin, trdnm)["inv"].append(record)
        return self

    def build(self, wrap: bool = True) -> dict:
        docdata = {}
        if self.b2b:
            docdata["b2b"] = self.b2b
        if self.cdnr:
            docdata["cdnr"] = self.cdnr
        if self.impg:
            docdata["impg"] = self.impg
        data = {"gstin": self.gstin, "rtnprd": self.rtnprd, "docdata": docdata}
        return {"data": data} if wrap else data


@pytest.fixture
def statement():
    return StatementBuilder()


@pytest.fixture
def add_vendor_invoice(db, company_id):
    """Record a books invoice for the test company (or another one)."""

    async def _add(invoice_number, invoice_date, taxable, cgst=0, sgst=0, igst=0, cess=0,
                   gstin=SUPPLIER_S, company=None, status="RECEIVED", itc_eligible=True):
        row = VendorInvoice(
            id=uuid.uuid4(),
            company_id=company or company_id,
            vendor_gstin=gstin,
            vendor_name="Books Vendor",
            invoice_number=invoice_number,
            invoice_date=invoice_date,
            status=status,
            taxable_amount=Decimal(str(taxable)),
            cgst_amount=Decimal(str(cgst)),
            sgst_amount=Decimal(str(sgst)),
            igst_amount=Decimal(str(igst)),
            cess_amount=Decimal(str(cess)),
            itc_eligible=itc_eligible,
        )
        db.add(row)
        await db.commit()
        return row

    return _add


@pytest.fixture
async def reconciled(db, company_id, statement, add_vendor_invoice):
    """
    One April 2024 import reconciled against books:

        INV-001  MATCHED      (books INV001, identical)
        INV-002  PARTIAL      (books taxable value 5% higher)
        INV-003  UNMATCHED    (supplier has no books invoices)
        INV-004  DISCREPANCY  (books number differs, amounts agree)
    """
    from itc_recon.services import Gstr2bImportService, Gstr2bReconciliationService

    statement.invoice(SUPPLIER_S, "INV-001", "05-04-2024", 10000, cgst=900, sgst=900)
    statement.invoice(SUPPLIER_S, "INV-002", "10-04-2024", 20000, igst=3600)
    statement.invoice(SUPPLIER_T, "INV-003", "12-04-2024", 8000, igst=1440, trdnm="Other Supplier")
    statement.invoice(SUPPLIER_S, "INV-004", "20-04-2024", 5000, cgst=450, sgst=450)

    books = SimpleNamespace(
        inv001=await add_vendor_invoice("INV001", date(2024, 4, 5), 10000, cgst=900, sgst=900),
        inv002=await add_vendor_invoice("INV-002", date(2024, 4, 10), 21000, igst=3600),
        x999=await add_vendor_invoice("X-999", date(2024, 4, 20), 5000, cgst=450, sgst=450),
        spare=await add_vendor_invoice("SPARE-1", date(2024, 5, 30), 700, cgst=63, sgst=63),
    )

    batch = await Gstr2bImportService(db).import_statement(company_id, "202404", statement.build())
    summary = await Gstr2bReconciliationService(db).reconcile(batch.id)

    result = await db.execute(select(Gstr2bInvoice).where(Gstr2bInvoice.import_id == batch.id))
    invoices = {inv.invoice_number: inv.id for inv in result.scalars().all()}

    return SimpleNamespace(batch_id=batch.id, summary=summary, invoices=invoices, books=books)
