# =============================================================================
# Financial Documents — Totals, Numbering, Due Dates
# =============================================================================
#
# Invoices, estimates and bills share one table. This module owns the
# derived values so the API never trusts client-sent totals:
#
#   line amount = quantity × unit_price × (1 + tax_rate / 100)
#   subtotal    = Σ quantity × unit_price
#   tax_total   = Σ quantity × unit_price × tax_rate / 100
#   total       = max(0, subtotal + tax_total − discount)
#
# Numbers are "<PREFIX>-<seq>" with a 3-digit zero pad (INV-001, EST-042,
# BILL-1000), one sequence per document type.
# =============================================================================

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payrollpro.db.models import DocumentType, FinancialDocument, LineItem

logger = logging.getLogger(__name__)

DEFAULT_PAYMENT_TERMS_DAYS = 30
DEFAULT_TERMS = "Payment due within 30 days"

NUMBER_PREFIXES = {
    DocumentType.INVOICE: "INV",
    DocumentType.ESTIMATE: "EST",
    DocumentType.BILL: "BILL",
}


def _cents(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), ROUND_HALF_UP))


@dataclass
class DocumentTotals:
    subtotal: float
    tax_total: float
    total: float


def line_amount(quantity: float, unit_price: float, tax_rate: float) -> float:
    return _cents(quantity * unit_price * (1 + tax_rate / 100))


def compute_totals(line_items: Iterable[LineItem], discount: float = 0.0) -> DocumentTotals:
    """Subtotal, tax and grand total for a set of line items."""
    subtotal = 0.0
    tax_total = 0.0
    for item in line_items:
        base = item.quantity * item.unit_price
        subtotal += base
        tax_total += base * item.tax_rate / 100

    return DocumentTotals(
        subtotal=_cents(subtotal),
        tax_total=_cents(tax_total),
        total=_cents(max(0.0, subtotal + tax_total - discount)),
    )


def apply_totals(document: FinancialDocument) -> DocumentTotals:
    """Recompute line amounts and document totals in place."""
    for position, item in enumerate(document.line_items):
        item.position = position
        item.amount = line_amount(item.quantity, item.unit_price, item.tax_rate)

    totals = compute_totals(document.line_items, document.discount or 0.0)
    document.subtotal = totals.subtotal
    document.tax_total = totals.tax_total
    document.total = totals.total
    return totals


def default_due_date(issue_date: date) -> date:
    return issue_date + timedelta(days=DEFAULT_PAYMENT_TERMS_DAYS)


def format_document_number(document_type: DocumentType, sequence: int) -> str:
    return f"{NUMBER_PREFIXES[document_type]}-{sequence:03d}"


def parse_document_number(number: str) -> int | None:
    """Sequence part of a document number, or None if it has none."""
    match = re.search(r"-(\d+)$", number)
    return int(match.group(1)) if match else None


async def next_document_number(
    session: AsyncSession,
    document_type: DocumentType,
) -> str:
    """
    Next free number for `document_type`: highest existing sequence + 1.

    Numbers entered by hand that don't end in "-<digits>" are ignored.
    """
    prefix = NUMBER_PREFIXES[document_type]
    numbers = (
        await session.execute(
            select(FinancialDocument.number).where(
                FinancialDocument.document_type == document_type,
                FinancialDocument.number.like(f"{prefix}-%"),
            )
        )
    ).scalars()

    highest = max(
        (seq for seq in map(parse_document_number, numbers) if seq is not None),
        default=0,
    )
    number = format_document_number(document_type, highest + 1)
    logger.debug("Allocated document number %s", number)
    return number
