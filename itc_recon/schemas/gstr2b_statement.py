"""
GSTR-2B statement schema.

Statements arrive as GSTN JSON:

    {"data": {"gstin": "...", "rtnprd": "042024",
              "docdata": {"b2b": [...], "b2ba": [...], "cdnr": [...],
                          "cdnra": [...], "impg": [...]}}}

Every document record is validated on its own into a strict model. A record
that fails is skipped and reported as a warning with its position, so a few
bad rows do not sink the whole statement.
"""
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from itc_recon.core.exceptions import ValidationError
from itc_recon.models.gstr2b import DocumentType, Gstr2bInvoiceType


DATE_FORMATS = ("%d-%m-%Y", "%d/%m/%Y", "%Y-%m-%d")

IMPORT_SUPPLIER_GSTIN = "IMPORT"

FIELD_LABELS = {
    "ctin": "supplier GSTIN",
    "inum": "invoice number",
    "ntnum": "note number",
    "benum": "bill of entry number",
    "dt": "invoice date",
    "bedt": "bill of entry date",
    "typ": "note type",
    "items": "items",
}

TWO_PLACES = Decimal("0.01")


def parse_statement_date(value: Any) -> Optional[date]:
    """Parse DD-MM-YYYY, DD/MM/YYYY or YYYY-MM-DD."""
    if value is None:
        return None
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None

    value = value.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"unrecognised date '{value}'")


def _required_text(value):
    if isinstance(value, int):
        return str(value)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError("missing")
    return value


def _required_date(value):
    parsed = parse_statement_date(value)
    if parsed is None:
        raise ValueError("missing")
    return parsed


def _zero_if_blank(value):
    return Decimal("0") if value is None or value == "" else value


RequiredText = Annotated[str, BeforeValidator(_required_text)]
StatementDate = Annotated[date, BeforeValidator(_required_date)]
Amount = Annotated[Decimal, BeforeValidator(_zero_if_blank)]


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class StatementItem(_Record):
    """Rate-wise line of a document."""
    txval: Amount = Decimal("0")
    igst: Amount = Decimal("0")
    cgst: Amount = Decimal("0")
    sgst: Amount = Decimal("0")
    cess: Amount = Decimal("0")


class _Document(_Record):
    dt: StatementDate
    val: Amount = Decimal("0")
    pos: Optional[str] = Field(None, max_length=2)
    rev: Optional[str] = None
    itcavl: Optional[str] = None
    items: List[StatementItem] = Field(default_factory=list)

    @field_validator("items", mode="before")
    @classmethod
    def null_as_empty(cls, v):
        return [] if v is None else v


class InvoiceRecord(_Document):
    """B2B / B2BA invoice."""
    inum: RequiredText


class NoteRecord(_Document):
    """CDNR / CDNRA credit or debit note."""
    ntnum: RequiredText
    typ: str = "C"

    @field_validator("typ")
    @classmethod
    def check_note_type(cls, v):
        v = v.upper()
        if v not in ("C", "D"):
            raise ValueError("must be C or D")
        return v


class BillOfEntryRecord(_Record):
    """IMPG bill of entry."""
    benum: RequiredText
    bedt: StatementDate
    portcode: Optional[str] = None
    txval: Amount = Decimal("0")
    igst: Amount = Decimal("0")
    cess: Amount = Decimal("0")


@dataclass
class StatementRecord:
    """One valid document, flattened to invoice-row fields."""
    supplier_gstin: str
    supplier_trade_name: Optional[str]
    invoice_number: str
    invoice_date: date
    invoice_type: Gstr2bInvoiceType
    document_type: DocumentType
    taxable_value: Decimal
    igst_amount: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    cess_amount: Decimal
    total_invoice_value: Decimal
    itc_eligible: bool
    place_of_supply: Optional[str]
    supply_type: Optional[str]
    reverse_charge: bool
    raw_data: Dict[str, Any]

    def itc_component(self, amount: Decimal) -> Decimal:
        return amount if self.itc_eligible else Decimal("0")

    @property
    def itc_igst(self) -> Decimal:
        return self.itc_component(self.igst_amount)

    @property
    def itc_cgst(self) -> Decimal:
        return self.itc_component(self.cgst_amount)

    @property
    def itc_sgst(self) -> Decimal:
        return self.itc_component(self.sgst_amount)

    @property
    def itc_cess(self) -> Decimal:
        return self.itc_component(self.cess_amount)


@dataclass
class ParsedStatement:
    gstin: Optional[str]
    return_period: Optional[str]
    records: List[StatementRecord] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    total_records: int = 0

    @property
    def skipped_records(self) -> int:
        return self.total_records - len(self.records)

    @property
    def malformed_fraction(self) -> float:
        if self.total_records == 0:
            return 0.0
        return self.skipped_records / self.total_records


def _describe(exc: PydanticValidationError) -> str:
    error = exc.errors()[0]
    name = str(error["loc"][0]) if error["loc"] else "record"
    label = FIELD_LABELS.get(name, name)
    message = error["msg"].replace("Value error, ", "")
    if error["type"] == "missing" or message.endswith("missing"):
        return f"{label} missing"
    return f"{label} invalid: {message}"


def _flag(value: Optional[str]) -> bool:
    return (value or "").upper() == "Y"


def _sum_items(items: List[StatementItem]) -> Tuple[Decimal, Decimal, Decimal, Decimal, Decimal]:
    txval = sum((i.txval for i in items), Decimal("0"))
    igst = sum((i.igst for i in items), Decimal("0"))
    cgst = sum((i.cgst for i in items), Decimal("0"))
    sgst = sum((i.sgst for i in items), Decimal("0"))
    cess = sum((i.cess for i in items), Decimal("0"))
    return tuple(v.quantize(TWO_PLACES) for v in (txval, igst, cgst, sgst, cess))


def _supply_type(pos: Optional[str], supplier_gstin: str, igst: Decimal) -> Optional[str]:
    if pos and len(supplier_gstin) >= 2 and supplier_gstin[:2].isdigit():
        return "INTRA_STATE" if supplier_gstin[:2] == pos else "INTER_STATE"
    if igst > 0:
        return "INTER_STATE"
    return None


def _from_document(
    doc: _Document,
    number: str,
    supplier_gstin: str,
    trade_name: Optional[str],
    invoice_type: Gstr2bInvoiceType,
    document_type: DocumentType,
    raw: Dict[str, Any],
) -> StatementRecord:
    txval, igst, cgst, sgst, cess = _sum_items(doc.items)
    return StatementRecord(
        supplier_gstin=supplier_gstin,
        supplier_trade_name=trade_name,
        invoice_number=number,
        invoice_date=doc.dt,
        invoice_type=invoice_type,
        document_type=document_type,
        taxable_value=txval,
        igst_amount=igst,
        cgst_amount=cgst,
        sgst_amount=sgst,
        cess_amount=cess,
        total_invoice_value=doc.val.quantize(TWO_PLACES),
        itc_eligible=_flag(doc.itcavl),
        place_of_supply=doc.pos,
        supply_type=_supply_type(doc.pos, supplier_gstin, igst),
        reverse_charge=_flag(doc.rev),
        raw_data=raw,
    )


def _from_bill_of_entry(doc: BillOfEntryRecord, raw: Dict[str, Any]) -> StatementRecord:
    txval = doc.txval.quantize(TWO_PLACES)
    igst = doc.igst.quantize(TWO_PLACES)
    cess = doc.cess.quantize(TWO_PLACES)
    return StatementRecord(
        supplier_gstin=IMPORT_SUPPLIER_GSTIN,
        supplier_trade_name=None,
        invoice_number=doc.benum,
        invoice_date=doc.bedt,
        invoice_type=Gstr2bInvoiceType.IMPG,
        document_type=DocumentType.BILL_OF_ENTRY,
        taxable_value=txval,
        igst_amount=igst,
        cgst_amount=Decimal("0.00"),
        sgst_amount=Decimal("0.00"),
        cess_amount=cess,
        total_invoice_value=txval + igst + cess,
        itc_eligible=True,
        place_of_supply=None,
        supply_type="IMPORT",
        reverse_charge=False,
        raw_data=raw,
    )


# section -> (invoice type, key of the document list, record model)
SUPPLIER_SECTIONS = {
    "b2b": (Gstr2bInvoiceType.B2B, "inv", InvoiceRecord),
    "b2ba": (Gstr2bInvoiceType.B2BA, "inv", InvoiceRecord),
    "cdnr": (Gstr2bInvoiceType.CDNR, "nt", NoteRecord),
    "cdnra": (Gstr2bInvoiceType.CDNRA, "nt", NoteRecord),
}


def _parse_supplier_section(section: str, groups: list, parsed: ParsedStatement) -> None:
    invoice_type, doc_key, model = SUPPLIER_SECTIONS[section]

    for g, group in enumerate(groups):
        where = f"{section}[{g}]"
        documents = group.get(doc_key) if isinstance(group, dict) else None
        if not isinstance(documents, list):
            parsed.total_records += 1
            parsed.warnings.append(f"{where}: {doc_key} list missing")
            continue

        ctin = group.get("ctin")
        ctin = ctin.strip().upper() if isinstance(ctin, str) else ""
        trade_name = group.get("trdnm")

        for d, raw in enumerate(documents):
            parsed.total_records += 1
            path = f"{where}.{doc_key}[{d}]"
            if not ctin:
                parsed.warnings.append(f"{path}: supplier GSTIN missing")
                continue
            if not isinstance(raw, dict):
                parsed.warnings.append(f"{path}: record is not an object")
                continue
            try:
                doc = model.model_validate(raw)
            except PydanticValidationError as e:
                parsed.warnings.append(f"{path}: {_describe(e)}")
                continue

            if isinstance(doc, NoteRecord):
                number = doc.ntnum
                document_type = DocumentType.CREDIT_NOTE if doc.typ == "C" else DocumentType.DEBIT_NOTE
            else:
                number = doc.inum
                document_type = DocumentType.INVOICE

            parsed.records.append(
                _from_document(doc, number, ctin, trade_name, invoice_type, document_type, raw)
            )


def _parse_impg_section(entries: list, parsed: ParsedStatement) -> None:
    for i, raw in enumerate(entries):
        parsed.total_records += 1
        path = f"impg[{i}]"
        if not isinstance(raw, dict):
            parsed.warnings.append(f"{path}: record is not an object")
            continue
        try:
            doc = BillOfEntryRecord.model_validate(raw)
        except PydanticValidationError as e:
            parsed.warnings.append(f"{path}: {_describe(e)}")
            continue
        parsed.records.append(_from_bill_of_entry(doc, raw))


def load_statement(raw_statement: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    """Decode the raw statement into its `data` mapping."""
    if isinstance(raw_statement, (str, bytes)):
        try:
            document = json.loads(raw_statement)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError(
                f"Invalid GSTR-2B JSON format: {e}",
                details={"field": "raw_statement"},
            )
    else:
        document = raw_statement

    if not isinstance(document, dict):
        raise ValidationError("GSTR-2B statement must be a JSON object", details={"field": "raw_statement"})

    data = document.get("data", document)
    if not isinstance(data, dict) or not isinstance(data.get("docdata"), dict):
        raise ValidationError("GSTR-2B statement has no docdata section", details={"field": "docdata"})
    return data


def parse_statement(raw_statement: Union[str, bytes, Dict[str, Any]]) -> ParsedStatement:
    """
    Parse a GSTR-2B statement into flat records.

    Raises:
        ValidationError: undecodable JSON or wrong document structure
    """
    data = load_statement(raw_statement)
    docdata = data["docdata"]

    parsed = ParsedStatement(
        gstin=data.get("gstin"),
        return_period=str(data["rtnprd"]) if data.get("rtnprd") else None,
    )

    for section in ("b2b", "b2ba", "cdnr", "cdnra", "impg"):
        entries = docdata.get(section)
        if entries is None:
            continue
        if not isinstance(entries, list):
            raise ValidationError(
                f"GSTR-2B section '{section}' must be a list",
                details={"field": f"docdata.{section}"},
            )
        if section == "impg":
            _parse_impg_section(entries, parsed)
        else:
            _parse_supplier_section(section, entries, parsed)

    return parsed


def statement_period_to_return_period(rtnprd: str) -> str:
    """GSTN MMYYYY -> YYYYMM."""
    return f"{rtnprd[2:]}{rtnprd[:2]}"
