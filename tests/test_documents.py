# =============================================================================
# Unit Tests — Financial Document Totals and Numbering
# =============================================================================

from __future__ import annotations

import asyncio
from datetime import date
from unittest.mock import AsyncMock, MagicMock

from payrollpro.db.models import DocumentType, FinancialDocument, LineItem
from payrollpro.services.documents import (
    apply_totals,
    compute_totals,
    default_due_date,
    format_document_number,
    line_amount,
    next_document_number,
    parse_document_number,
)


def _run(coro):
    return asyncio.run(coro)


def _items():
    return [
        LineItem(description="Consulting", quantity=2, unit_price=50, tax_rate=10),
        LineItem(description="Stationery", quantity=1, unit_price=19.99, tax_rate=0),
    ]


class TestTotals:
    def test_line_amount_includes_tax(self):
        assert line_amount(2, 50, 10) == 110.0

    def test_line_amount_rounds_half_up(self):
        assert line_amount(1, 0.125, 0) == 0.13

    def test_compute_totals_with_discount(self):
        totals = compute_totals(_items(), discount=20)
        assert totals.subtotal == 119.99
        assert totals.tax_total == 10.0
        assert totals.total == 109.99

    def test_discount_never_makes_total_negative(self):
        assert compute_totals(_items(), discount=500).total == 0.0

    def test_no_items(self):
        totals = compute_totals([])
        assert (totals.subtotal, totals.tax_total, totals.total) == (0.0, 0.0, 0.0)

    def test_apply_totals_sets_positions_and_amounts(self):
        document = FinancialDocument(
            document_type=DocumentType.INVOICE,
            number="INV-001",
            client_name="Acme",
            issue_date=date(2025, 1, 15),
            due_date=date(2025, 2, 14),
            discount=0.0,
            line_items=_items(),
        )
        apply_totals(document)

        assert [i.position for i in document.line_items] == [0, 1]
        assert [i.amount for i in document.line_items] == [110.0, 19.99]
        assert document.total == 129.99


class TestNumbering:
    def test_format(self):
        assert format_document_number(DocumentType.INVOICE, 7) == "INV-007"
        assert format_document_number(DocumentType.ESTIMATE, 42) == "EST-042"
        assert format_document_number(DocumentType.BILL, 1000) == "BILL-1000"

    def test_parse(self):
        assert parse_document_number("EST-042") == 42
        assert parse_document_number("CUSTOM") is None

    def test_default_due_date(self):
        assert default_due_date(date(2025, 1, 15)) == date(2025, 2, 14)

    def _session(self, numbers):
        result = MagicMock()
        result.scalars.return_value = numbers
        session = MagicMock()
        session.execute = AsyncMock(return_value=result)
        return session

    def test_next_number_follows_highest(self):
        session = self._session(["INV-001", "INV-009", "INV-OLD"])
        assert _run(next_document_number(session, DocumentType.INVOICE)) == "INV-010"

    def test_first_number(self):
        session = self._session([])
        assert _run(next_document_number(session, DocumentType.BILL)) == "BILL-001"
