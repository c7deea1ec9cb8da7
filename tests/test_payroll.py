# =============================================================================
# Unit Tests — Payroll Totals, Withholding Calculator, Statistics
# =============================================================================

from __future__ import annotations

import asyncio
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest

from payrollpro.db.models import PayrollEntry, PayrollStatus
from payrollpro.services.payroll import (
    apply_entry_totals,
    calculate_payroll_taxes,
    compute_entry_totals,
    federal_income_tax,
    fica_taxes,
    get_payroll_statistics,
    get_tax_rates,
    normalise_filing_status,
    pay_periods_per_year,
    state_income_tax,
)


def _run(coro):
    return asyncio.run(coro)


class TestEntryTotals:
    def test_gross_and_net(self):
        totals = compute_entry_totals(
            regular_hours=40, regular_rate=25, overtime_hours=5, bonuses=100,
            federal_tax=120, state_tax=50, social_security_tax=80, medicare_tax=20,
            health_insurance=30, retirement_401k=40,
        )
        assert totals.overtime_rate == 37.5
        assert totals.gross_pay == 1287.5
        assert totals.total_taxes == 270.0
        assert totals.total_deductions == 70.0
        assert totals.net_pay == 947.5

    def test_explicit_overtime_rate(self):
        totals = compute_entry_totals(regular_hours=10, regular_rate=20,
                                      overtime_hours=2, overtime_rate=40)
        assert totals.overtime_rate == 40.0
        assert totals.gross_pay == 280.0

    def test_zero_overtime_rate_is_kept(self):
        totals = compute_entry_totals(regular_hours=10, regular_rate=20,
                                      overtime_hours=2, overtime_rate=0.0)
        assert totals.overtime_rate == 0.0
        assert totals.gross_pay == 200.0

    def test_apply_to_transient_entry(self):
        entry = PayrollEntry(
            employee_id=1,
            pay_period_start=date(2025, 3, 1),
            pay_period_end=date(2025, 3, 14),
            regular_hours=80,
            regular_rate=20,
            federal_tax=150,
        )
        apply_entry_totals(entry)
        assert entry.overtime_rate == 30.0
        assert entry.gross_pay == 1600.0
        assert entry.net_pay == 1450.0


class TestWithholdingHelpers:
    def test_pay_periods(self):
        assert pay_periods_per_year("Weekly") == 52
        assert pay_periods_per_year("monthly") == 12
        assert pay_periods_per_year("fortnightly") == 26
        assert pay_periods_per_year(None) == 26

    def test_filing_status_aliases(self):
        assert normalise_filing_status("married_filing_jointly") == "married"
        assert normalise_filing_status("HOH") == "head_of_household"
        assert normalise_filing_status("widowed") == "single"
        assert normalise_filing_status(None) == "single"

    def test_federal_brackets(self):
        # 1,160 + 4,266 + 627
        assert federal_income_tax(50_000, "single") == pytest.approx(6053.0)

    def test_allowances_reduce_taxable_income(self):
        assert federal_income_tax(50_000, "single", allowances=2) == pytest.approx(4736.0)

    def test_zero_income(self):
        assert federal_income_tax(0, "married") == 0.0

    def test_state_rates(self):
        assert state_income_tax(100_000, "ca") == pytest.approx(6000.0)
        assert state_income_tax(100_000, "TX") == 0.0
        assert state_income_tax(100_000, "ZZ") == 0.0
        assert state_income_tax(100_000, None) == 0.0

    def test_social_security_wage_cap(self):
        social_security, medicare = fica_taxes(2000, ytd_earnings=168_000)
        assert social_security == pytest.approx(37.2)
        assert medicare == pytest.approx(29.0)

    def test_above_wage_cap_pays_no_social_security(self):
        social_security, _ = fica_taxes(2000, ytd_earnings=170_000)
        assert social_security == 0.0

    def test_additional_medicare_crossing_threshold(self):
        _, medicare = fica_taxes(2000, ytd_earnings=199_000)
        assert medicare == pytest.approx(38.0)

    def test_additional_medicare_above_threshold(self):
        _, medicare = fica_taxes(1000, ytd_earnings=250_000)
        assert medicare == pytest.approx(23.5)


class TestCalculatePayrollTaxes:
    def test_biweekly_california(self):
        result = calculate_payroll_taxes(2000, "biweekly", "single", 0, "ca")

        assert result.state == "CA"
        assert result.federal_income_tax == 249.73
        assert result.state_income_tax == 120.0
        assert result.social_security_tax == 124.0
        assert result.medicare_tax == 29.0
        assert result.total_taxes == 522.73
        assert result.net_pay == 1477.27
        assert result.annual_projection["gross_income"] == 52_000.0
        assert result.annual_projection["federal_income_tax"] == 6493.0

    def test_to_dict_matches_fields(self):
        data = calculate_payroll_taxes(1000).to_dict()
        assert data["pay_frequency"] == "biweekly"
        assert data["filing_status"] == "single"
        assert data["state"] is None
        assert data["state_income_tax"] == 0.0

    @pytest.mark.parametrize("kwargs", [
        {"gross_pay": -1},
        {"gross_pay": 100, "allowances": -1},
        {"gross_pay": 100, "ytd_earnings": -5},
    ])
    def test_negative_inputs_rejected(self, kwargs):
        with pytest.raises(ValueError, match="non-negative"):
            calculate_payroll_taxes(**kwargs)


class TestTaxRates:
    def test_state_with_income_tax(self):
        rates = get_tax_rates("ca")
        assert rates["state"] == {"code": "CA", "rate": 0.06, "has_income_tax": True}
        assert rates["federal"]["single"][0] == {"upper": 11_600, "rate": 0.10}
        assert rates["fica"]["social_security_wage_cap"] == 168_600.0

    def test_state_without_income_tax(self):
        assert get_tax_rates("TX")["state"]["has_income_tax"] is False

    def test_no_state(self):
        assert get_tax_rates()["state"] == {
            "code": None, "rate": None, "has_income_tax": False,
        }


class TestStatistics:
    def test_aggregates(self):
        totals = MagicMock()
        totals.one.return_value = (2, 3000.0, 2200.0, 600.0, 200.0, 1)
        statuses = MagicMock()
        statuses.all.return_value = [(PayrollStatus.PENDING, 1), (PayrollStatus.PAID, 1)]
        session = MagicMock()
        session.execute = AsyncMock(side_effect=[totals, statuses])

        stats = _run(get_payroll_statistics(session, date(2025, 1, 1), date(2025, 3, 31)))

        assert stats == {
            "entry_count": 2,
            "employee_count": 1,
            "total_gross_pay": 3000.0,
            "total_net_pay": 2200.0,
            "total_taxes": 600.0,
            "total_deductions": 200.0,
            "average_gross_pay": 1500.0,
            "by_status": {"pending": 1, "paid": 1},
        }

    def test_empty_period(self):
        totals = MagicMock()
        totals.one.return_value = (0, 0.0, 0.0, 0.0, 0.0, 0)
        statuses = MagicMock()
        statuses.all.return_value = []
        session = MagicMock()
        session.execute = AsyncMock(side_effect=[totals, statuses])

        stats = _run(get_payroll_statistics(session))
        assert stats["average_gross_pay"] == 0.0
        assert stats["by_status"] == {}
