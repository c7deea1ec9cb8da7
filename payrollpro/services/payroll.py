# =============================================================================
# Payroll Service — Entry Totals, Withholding Calculator, Statistics
# =============================================================================
#
# ENTRY TOTALS:
#   overtime_rate defaults to 1.5 × regular_rate when not given
#   gross = regular_hours × regular_rate + overtime_hours × overtime_rate
#           + bonuses
#   net   = gross − (federal + state + social security + medicare + other)
#               − (health insurance + 401k + other deductions)
#
# WITHHOLDING (2024 tables, annualised):
#   1. annual income = gross per period × periods per year
#   2. federal: progressive brackets on (annual − allowances × 4,300)
#   3. state:   flat rate on annual income
#   4. both divided back down to one period
#   5. Social Security 6.2% up to the 168,600 wage base (YTD-aware)
#   6. Medicare 1.45%, plus 0.9% on wages above 200,000 (YTD-aware)
#   Every figure is rounded to cents (half-up).
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import NamedTuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payrollpro.db.models import PayrollEntry

logger = logging.getLogger(__name__)

OVERTIME_MULTIPLIER = 1.5
ALLOWANCE_VALUE = 4300.0

SOCIAL_SECURITY_RATE = 0.062
SOCIAL_SECURITY_WAGE_CAP = 168_600.0
MEDICARE_RATE = 0.0145
ADDITIONAL_MEDICARE_RATE = 0.009
ADDITIONAL_MEDICARE_THRESHOLD = 200_000.0

PAY_PERIODS_PER_YEAR = {
    "weekly": 52,
    "biweekly": 26,
    "semimonthly": 24,
    "monthly": 12,
    "quarterly": 4,
    "annually": 1,
}
DEFAULT_PAY_PERIODS = 26


class TaxBracket(NamedTuple):
    upper: float | None   # None = no upper bound
    rate: float


# Brackets run from the previous bracket's upper bound (0 for the first).
FEDERAL_BRACKETS_2024: dict[str, list[TaxBracket]] = {
    "single": [
        TaxBracket(11_600, 0.10),
        TaxBracket(47_150, 0.12),
        TaxBracket(100_525, 0.22),
        TaxBracket(191_950, 0.24),
        TaxBracket(243_725, 0.32),
        TaxBracket(609_350, 0.35),
        TaxBracket(None, 0.37),
    ],
    "married": [
        TaxBracket(23_200, 0.10),
        TaxBracket(94_300, 0.12),
        TaxBracket(201_050, 0.22),
        TaxBracket(383_900, 0.24),
        TaxBracket(487_450, 0.32),
        TaxBracket(731_200, 0.35),
        TaxBracket(None, 0.37),
    ],
    "head_of_household": [
        TaxBracket(16_550, 0.10),
        TaxBracket(63_100, 0.12),
        TaxBracket(100_500, 0.22),
        TaxBracket(191_950, 0.24),
        TaxBracket(243_700, 0.32),
        TaxBracket(609_350, 0.35),
        TaxBracket(None, 0.37),
    ],
}

_FILING_STATUS_ALIASES = {
    "married_filing_jointly": "married",
    "married_jointly": "married",
    "hoh": "head_of_household",
}

# Flat approximations; states not listed withhold nothing.
STATE_INCOME_TAX_RATES: dict[str, float] = {
    "CA": 0.06,
    "NY": 0.05,
    "TX": 0.0,
    "FL": 0.0,
    "WA": 0.0,
    "IL": 0.0495,
    "PA": 0.0307,
}


def _cents(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), ROUND_HALF_UP))


# ---------------------------------------------------------------------------
# Entry Totals
# ---------------------------------------------------------------------------


@dataclass
class PayTotals:
    overtime_rate: float
    gross_pay: float
    total_taxes: float
    total_deductions: float
    net_pay: float


def compute_entry_totals(
    regular_hours: float = 0.0,
    regular_rate: float = 0.0,
    overtime_hours: float = 0.0,
    overtime_rate: float | None = None,
    bonuses: float = 0.0,
    federal_tax: float = 0.0,
    state_tax: float = 0.0,
    social_security_tax: float = 0.0,
    medicare_tax: float = 0.0,
    other_taxes: float = 0.0,
    health_insurance: float = 0.0,
    retirement_401k: float = 0.0,
    other_deductions: float = 0.0,
) -> PayTotals:
    """Derive gross and net pay for one payroll entry."""
    if overtime_rate is None:
        overtime_rate = regular_rate * OVERTIME_MULTIPLIER

    gross = regular_hours * regular_rate + overtime_hours * overtime_rate + bonuses
    taxes = federal_tax + state_tax + social_security_tax + medicare_tax + other_taxes
    deductions = health_insurance + retirement_401k + other_deductions

    return PayTotals(
        overtime_rate=_cents(overtime_rate),
        gross_pay=_cents(gross),
        total_taxes=_cents(taxes),
        total_deductions=_cents(deductions),
        net_pay=_cents(gross - taxes - deductions),
    )


def apply_entry_totals(entry: PayrollEntry) -> PayTotals:
    """Recompute the derived columns of an ORM entry in place."""
    totals = compute_entry_totals(
        regular_hours=entry.regular_hours or 0.0,
        regular_rate=entry.regular_rate or 0.0,
        overtime_hours=entry.overtime_hours or 0.0,
        overtime_rate=entry.overtime_rate,
        bonuses=entry.bonuses or 0.0,
        federal_tax=entry.federal_tax or 0.0,
        state_tax=entry.state_tax or 0.0,
        social_security_tax=entry.social_security_tax or 0.0,
        medicare_tax=entry.medicare_tax or 0.0,
        other_taxes=entry.other_taxes or 0.0,
        health_insurance=entry.health_insurance or 0.0,
        retirement_401k=entry.retirement_401k or 0.0,
        other_deductions=entry.other_deductions or 0.0,
    )
    entry.overtime_rate = totals.overtime_rate
    entry.gross_pay = totals.gross_pay
    entry.net_pay = totals.net_pay
    return totals


# ---------------------------------------------------------------------------
# Withholding Calculator
# ---------------------------------------------------------------------------


@dataclass
class TaxCalculation:
    gross_pay: float
    pay_frequency: str
    filing_status: str
    state: str | None
    federal_income_tax: float
    state_income_tax: float
    social_security_tax: float
    medicare_tax: float
    total_taxes: float
    net_pay: float
    annual_projection: dict

    def to_dict(self) -> dict:
        return asdict(self)


def pay_periods_per_year(pay_frequency: str | None) -> int:
    if not pay_frequency:
        return DEFAULT_PAY_PERIODS
    return PAY_PERIODS_PER_YEAR.get(pay_frequency.lower(), DEFAULT_PAY_PERIODS)


def normalise_filing_status(filing_status: str | None) -> str:
    status = (filing_status or "single").lower()
    status = _FILING_STATUS_ALIASES.get(status, status)
    return status if status in FEDERAL_BRACKETS_2024 else "single"


def federal_income_tax(
    annual_income: float,
    filing_status: str = "single",
    allowances: int = 0,
) -> float:
    """Annual federal income tax from the progressive brackets."""
    taxable = max(0.0, annual_income - allowances * ALLOWANCE_VALUE)
    brackets = FEDERAL_BRACKETS_2024[normalise_filing_status(filing_status)]

    tax = 0.0
    lower = 0.0
    for bracket in brackets:
        upper = float("inf") if bracket.upper is None else bracket.upper
        if taxable > lower:
            tax += (min(taxable, upper) - lower) * bracket.rate
        if taxable <= upper:
            break
        lower = upper
    return tax


def state_income_tax(annual_income: float, state: str | None) -> float:
    if not state:
        return 0.0
    return annual_income * STATE_INCOME_TAX_RATES.get(state.upper(), 0.0)


def fica_taxes(gross: float, ytd_earnings: float = 0.0) -> tuple[float, float]:
    """
    Social Security and Medicare for one period.

    Returns:
        (social_security, medicare), unrounded.
    """
    social_security = 0.0
    if ytd_earnings < SOCIAL_SECURITY_WAGE_CAP:
        taxable = min(gross, SOCIAL_SECURITY_WAGE_CAP - ytd_earnings)
        social_security = taxable * SOCIAL_SECURITY_RATE

    medicare = gross * MEDICARE_RATE
    total_earnings = ytd_earnings + gross
    if ytd_earnings >= ADDITIONAL_MEDICARE_THRESHOLD:
        medicare += gross * ADDITIONAL_MEDICARE_RATE
    elif total_earnings > ADDITIONAL_MEDICARE_THRESHOLD:
        medicare += (
            (total_earnings - ADDITIONAL_MEDICARE_THRESHOLD)
            * ADDITIONAL_MEDICARE_RATE
        )

    return social_security, medicare


def calculate_payroll_taxes(
    gross_pay: float,
    pay_frequency: str = "biweekly",
    filing_status: str = "single",
    allowances: int = 0,
    state: str | None = None,
    ytd_earnings: float = 0.0,
) -> TaxCalculation:
    """
    Estimate one period's withholding.

    Args:
        gross_pay: Gross pay for the period.
        pay_frequency: weekly, biweekly, semimonthly, monthly, quarterly
            or annually. Unknown values fall back to biweekly.
        filing_status: single, married or head_of_household.
        allowances: Withholding allowances claimed.
        state: Two-letter state code; None or unknown withholds no state tax.
        ytd_earnings: Wages already paid this year, before this period.

    Raises:
        ValueError: If gross_pay, allowances or ytd_earnings is negative.
    """
    if gross_pay < 0 or allowances < 0 or ytd_earnings < 0:
        raise ValueError(
            "gross_pay, allowances and ytd_earnings must be non-negative"
        )

    periods = pay_periods_per_year(pay_frequency)
    status = normalise_filing_status(filing_status)
    annual_income = gross_pay * periods

    federal = federal_income_tax(annual_income, status, allowances) / periods
    state_tax = state_income_tax(annual_income, state) / periods
    social_security, medicare = fica_taxes(gross_pay, ytd_earnings)

    total = federal + state_tax + social_security + medicare

    return TaxCalculation(
        gross_pay=_cents(gross_pay),
        pay_frequency=pay_frequency,
        filing_status=status,
        state=state.upper() if state else None,
        federal_income_tax=_cents(federal),
        state_income_tax=_cents(state_tax),
        social_security_tax=_cents(social_security),
        medicare_tax=_cents(medicare),
        total_taxes=_cents(total),
        net_pay=_cents(gross_pay - total),
        annual_projection={
            "gross_income": _cents(annual_income),
            "federal_income_tax": _cents(federal * periods),
            "state_income_tax": _cents(state_tax * periods),
            "social_security_tax": _cents(social_security * periods),
            "medicare_tax": _cents(medicare * periods),
        },
    )


def get_tax_rates(state: str | None = None) -> dict:
    """The rate tables used by the calculator, for display and agent context."""
    code = state.upper() if state else None
    return {
        "year": 2024,
        "federal": {
            status: [b._asdict() for b in brackets]
            for status, brackets in FEDERAL_BRACKETS_2024.items()
        },
        "state": {
            "code": code,
            "rate": STATE_INCOME_TAX_RATES.get(code, 0.0) if code else None,
            "has_income_tax": bool(code and STATE_INCOME_TAX_RATES.get(code)),
        },
        "fica": {
            "social_security_rate": SOCIAL_SECURITY_RATE,
            "social_security_wage_cap": SOCIAL_SECURITY_WAGE_CAP,
            "medicare_rate": MEDICARE_RATE,
            "additional_medicare_rate": ADDITIONAL_MEDICARE_RATE,
            "additional_medicare_threshold": ADDITIONAL_MEDICARE_THRESHOLD,
        },
        "allowance_value": ALLOWANCE_VALUE,
    }


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


async def get_payroll_statistics(
    session: AsyncSession,
    start_date: date | None = None,
    end_date: date | None = None,
) -> dict:
    """
    Aggregate payroll entries, optionally limited to periods ending in
    [start_date, end_date].
    """
    taxes = (
        PayrollEntry.federal_tax + PayrollEntry.state_tax
        + PayrollEntry.social_security_tax + PayrollEntry.medicare_tax
        + PayrollEntry.other_taxes
    )
    deductions = (
        PayrollEntry.health_insurance + PayrollEntry.retirement_401k
        + PayrollEntry.other_deductions
    )

    filters = []
    if start_date is not None:
        filters.append(PayrollEntry.pay_period_end >= start_date)
    if end_date is not None:
        filters.append(PayrollEntry.pay_period_end <= end_date)

    totals_row = (
        await session.execute(
            select(
                func.count(PayrollEntry.id),
                func.coalesce(func.sum(PayrollEntry.gross_pay), 0.0),
                func.coalesce(func.sum(PayrollEntry.net_pay), 0.0),
                func.coalesce(func.sum(taxes), 0.0),
                func.coalesce(func.sum(deductions), 0.0),
                func.count(func.distinct(PayrollEntry.employee_id)),
            ).where(*filters)
        )
    ).one()

    status_rows = (
        await session.execute(
            select(PayrollEntry.status, func.count(PayrollEntry.id))
            .where(*filters)
            .group_by(PayrollEntry.status)
        )
    ).all()

    count, gross, net, total_taxes, total_deductions, employees = totals_row
    return {
        "entry_count": count,
        "employee_count": employees,
        "total_gross_pay": _cents(gross),
        "total_net_pay": _cents(net),
        "total_taxes": _cents(total_taxes),
        "total_deductions": _cents(total_deductions),
        "average_gross_pay": _cents(gross / count) if count else 0.0,
        "by_status": {
            getattr(status, "value", status): n for status, n in status_rows
        },
    }
