"""
GSTR-2B Invoice Matcher

Scores books invoices (candidates) against one GSTR-2B invoice and
classifies the best one:
- Invoice number (normalized)
- Invoice date, decaying over the candidate window
- Taxable value, proportional between tolerance and zero-credit deviation
- Total tax across IGST/CGST/SGST/Cess

Pure functions only; candidate selection and persistence live in the
reconciliation service.
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from itc_recon.config import settings
from itc_recon.models.gstr2b import MatchStatus


ZERO = Decimal("0")
HUNDRED = Decimal("100")

_NON_ALNUM = re.compile(r"[\W_]+", re.UNICODE)
_DIGIT_RUN = re.compile(r"\d+")

AMOUNT_FIELDS = (
    ("taxable_value", "taxable_value", "Taxable value"),
    ("igst_amount", "igst_amount", "IGST"),
    ("cgst_amount", "cgst_amount", "CGST"),
    ("sgst_amount", "sgst_amount", "SGST"),
    ("cess_amount", "cess_amount", "Cess"),
)

AMBIGUOUS_NOTE = "Ambiguous match, lowest id selected"


@dataclass(frozen=True)
class MatchConfig:
    """Weights and thresholds for scoring."""
    date_window_days: int = 45
    full_threshold: int = 85
    partial_threshold: int = 50
    weight_invoice_number: int = 50
    weight_date: int = 20
    weight_taxable_value: int = 20
    weight_tax_amount: int = 10
    amount_tolerance_percent: Decimal = Decimal("1")
    taxable_zero_credit_percent: Decimal = Decimal("10")
    amount_abs_tolerance: Decimal = Decimal("1.00")

    @classmethod
    def from_settings(cls) -> "MatchConfig":
        return cls(
            date_window_days=settings.MATCH_DATE_WINDOW_DAYS,
            full_threshold=settings.MATCH_FULL_THRESHOLD,
            partial_threshold=settings.MATCH_PARTIAL_THRESHOLD,
            weight_invoice_number=settings.MATCH_WEIGHT_INVOICE_NUMBER,
            weight_date=settings.MATCH_WEIGHT_DATE,
            weight_taxable_value=settings.MATCH_WEIGHT_TAXABLE_VALUE,
            weight_tax_amount=settings.MATCH_WEIGHT_TAX_AMOUNT,
            amount_tolerance_percent=Decimal(str(settings.MATCH_AMOUNT_TOLERANCE_PERCENT)),
            taxable_zero_credit_percent=Decimal(str(settings.MATCH_TAXABLE_ZERO_CREDIT_PERCENT)),
            amount_abs_tolerance=Decimal(str(settings.MATCH_AMOUNT_ABS_TOLERANCE)),
        )


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one GSTR-2B invoice."""
    status: MatchStatus
    confidence: Optional[int]
    matched_id: Optional[UUID] = None
    discrepancies: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    score: Decimal = ZERO


@dataclass
class _Score:
    candidate: Any
    total: Decimal
    number_points: Decimal
    date_points: Decimal
    taxable_points: Decimal
    tax_points: Decimal
    days_apart: int
    taxable_deviation: Decimal
    tax_within: bool


def normalize_invoice_number(invoice_number: Optional[str]) -> str:
    """
    Comparable form of an invoice number.

    Leading zeros are dropped from every digit run, so "INV/0042" and
    "inv-42" compare equal; whitespace and punctuation are then removed
    and the result case-folded.
    """
    if not invoice_number:
        return ""
    unpadded = _DIGIT_RUN.sub(lambda m: m.group().lstrip("0"), invoice_number)
    return _NON_ALNUM.sub("", unpadded).casefold()


def _d(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def deviation_percent(statement: Decimal, books: Decimal) -> Decimal:
    """Relative deviation in percent, against the larger magnitude."""
    base = max(abs(statement), abs(books))
    if base == 0:
        return ZERO
    return abs(statement - books) / base * HUNDRED


def amounts_agree(statement, books, config: MatchConfig) -> bool:
    """Within relative tolerance, or within the absolute rounding tolerance."""
    statement, books = _d(statement), _d(books)
    if abs(statement - books) <= config.amount_abs_tolerance:
        return True
    return deviation_percent(statement, books) <= config.amount_tolerance_percent


def _tax_total(obj) -> Decimal:
    return (
        _d(getattr(obj, "igst_amount", None))
        + _d(getattr(obj, "cgst_amount", None))
        + _d(getattr(obj, "sgst_amount", None))
        + _d(getattr(obj, "cess_amount", None))
    )


def _score_candidate(invoice, candidate, config: MatchConfig) -> _Score:
    number_points = ZERO
    if normalize_invoice_number(invoice.invoice_number) == normalize_invoice_number(candidate.invoice_number):
        number_points = Decimal(config.weight_invoice_number)

    days_apart = abs((invoice.invoice_date - candidate.invoice_date).days)
    if days_apart == 0:
        date_points = Decimal(config.weight_date)
    elif config.date_window_days <= 0 or days_apart >= config.date_window_days:
        date_points = ZERO
    else:
        remaining = Decimal(config.date_window_days - days_apart) / Decimal(config.date_window_days)
        date_points = Decimal(config.weight_date) * remaining

    taxable_deviation = deviation_percent(_d(invoice.taxable_value), _d(candidate.taxable_value))
    if amounts_agree(invoice.taxable_value, candidate.taxable_value, config):
        taxable_points = Decimal(config.weight_taxable_value)
    elif taxable_deviation >= config.taxable_zero_credit_percent:
        taxable_points = ZERO
    else:
        span = config.taxable_zero_credit_percent - config.amount_tolerance_percent
        taxable_points = Decimal(config.weight_taxable_value) * (
            (config.taxable_zero_credit_percent - taxable_deviation) / span
        )

    tax_within = amounts_agree(_tax_total(invoice), _tax_total(candidate), config)
    tax_points = Decimal(config.weight_tax_amount) if tax_within else ZERO

    return _Score(
        candidate=candidate,
        total=number_points + date_points + taxable_points + tax_points,
        number_points=number_points,
        date_points=date_points,
        taxable_points=taxable_points,
        tax_points=tax_points,
        days_apart=days_apart,
        taxable_deviation=taxable_deviation,
        tax_within=tax_within,
    )


def _to_confidence(score: Decimal) -> int:
    return int(score.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _amount_differences(invoice, candidate, config: MatchConfig) -> List[str]:
    differences = []
    for invoice_attr, candidate_attr, label in AMOUNT_FIELDS:
        statement = _d(getattr(invoice, invoice_attr, None))
        books = _d(getattr(candidate, candidate_attr, None))
        if not amounts_agree(statement, books, config):
            differences.append(f"{label} mismatch: 2B={statement:.2f}, Books={books:.2f}")
    return differences


def _weak_evidence(invoice, best: _Score, config: MatchConfig) -> List[str]:
    notes = []
    candidate = best.candidate
    if best.number_points == 0:
        notes.append(
            f"Invoice number differs: 2B={invoice.invoice_number}, Books={candidate.invoice_number}"
        )
    if best.days_apart:
        notes.append(f"Invoice date differs by {best.days_apart} days")
    if best.taxable_points < config.weight_taxable_value:
        notes.append(
            f"Taxable value deviates by {best.taxable_deviation.quantize(Decimal('0.01'))}%: "
            f"2B={_d(invoice.taxable_value):.2f}, Books={_d(candidate.taxable_value):.2f}"
        )
    if not best.tax_within:
        notes.append(f"GST amount mismatch: 2B={_tax_total(invoice):.2f}, Books={_tax_total(candidate):.2f}")
    return notes


def _details(best: _Score) -> Dict[str, Any]:
    return {
        "candidate_id": str(best.candidate.id),
        "candidate_invoice_number": best.candidate.invoice_number,
        "candidate_invoice_date": best.candidate.invoice_date.isoformat(),
        "invoice_number_points": float(best.number_points),
        "date_points": round(float(best.date_points), 2),
        "taxable_value_points": round(float(best.taxable_points), 2),
        "tax_amount_points": float(best.tax_points),
        "score": round(float(best.total), 2),
    }


def match(invoice, candidates: Sequence, config: Optional[MatchConfig] = None) -> MatchResult:
    """
    Match one GSTR-2B invoice against books candidates.

    Args:
        invoice: object with invoice_number, invoice_date, taxable_value
            and igst/cgst/sgst/cess amounts
        candidates: books invoices of the same supplier within the window
        config: weights and thresholds (defaults from settings)

    Returns:
        MatchResult; ties on the top score resolve to the lowest id
    """
    config = config or MatchConfig.from_settings()

    if not candidates:
        return MatchResult(
            status=MatchStatus.UNMATCHED,
            confidence=None,
            discrepancies=["No books invoice found for this supplier in the matching window"],
        )

    scores = [_score_candidate(invoice, c, config) for c in candidates]
    top = max(s.total for s in scores)
    tied = sorted((s for s in scores if s.total == top), key=lambda s: s.candidate.id)
    best = tied[0]
    ambiguous = len(tied) > 1
    confidence = _to_confidence(best.total)
    details = _details(best)
    details["candidates_considered"] = len(scores)

    if best.total < config.partial_threshold:
        return MatchResult(
            status=MatchStatus.UNMATCHED,
            confidence=confidence,
            discrepancies=[f"Best books candidate scored {confidence}, below {config.partial_threshold}"],
            details=details,
            score=best.total,
        )

    if best.total >= config.full_threshold:
        discrepancies = _amount_differences(invoice, best.candidate, config)
        if ambiguous:
            discrepancies.append(AMBIGUOUS_NOTE)
        status = MatchStatus.PARTIAL if discrepancies else MatchStatus.MATCHED
    else:
        discrepancies = _weak_evidence(invoice, best, config)
        if ambiguous:
            discrepancies.append(AMBIGUOUS_NOTE)
        status = MatchStatus.DISCREPANCY

    return MatchResult(
        status=status,
        confidence=confidence,
        matched_id=best.candidate.id if status != MatchStatus.DISCREPANCY else None,
        discrepancies=discrepancies,
        details=details,
        score=best.total,
    )
