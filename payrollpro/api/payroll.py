# =============================================================================
# Payroll API — Entries, Statistics and Withholding Calculator
# =============================================================================
#
#   GET    /payroll/entries              list (newest period first)
#   POST   /payroll/entries              create; gross/net derived
#   GET    /payroll/entries/{id}
#   PATCH  /payroll/entries/{id}         partial update; totals recomputed
#   DELETE /payroll/entries/{id}
#   GET    /payroll/statistics           aggregates over a date range
#   POST   /payroll/tax-calculation      estimate one period's withholding
#   GET    /payroll/tax-rates            the tables the calculator uses
# =============================================================================

import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payrollpro.api.deps import require_scope
from payrollpro.db.engine import get_async_session
from payrollpro.db.models import Employee, PayrollEntry
from payrollpro.models.requests import (
    PayrollEntryRequest,
    PayrollEntryUpdateRequest,
    TaxCalculationRequest,
)
from payrollpro.models.responses import (
    PayrollEntryListResponse,
    PayrollEntryResponse,
    PayrollStatisticsResponse,
    TaxCalculationResponse,
)
from payrollpro.services.payroll import (
    apply_entry_totals,
    calculate_payroll_taxes,
    get_payroll_statistics,
    get_tax_rates,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Payroll"],
    dependencies=[Depends(require_scope("payroll"))],
)


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


@router.get(
    "/payroll/entries",
    response_model=PayrollEntryListResponse,
    summary="List payroll entries",
)
async def list_entries(
    employee_id: int | None = Query(default=None),
    start_date: date | None = Query(default=None, description="Periods ending on/after"),
    end_date: date | None = Query(default=None, description="Periods ending on/before"),
    limit: int = Query(default=50, ge=1, le=500),
    session: AsyncSession = Depends(get_async_session),
) -> PayrollEntryListResponse:
    filters = []
    if employee_id is not None:
        filters.append(PayrollEntry.employee_id == employee_id)
    if start_date is not None:
        filters.append(PayrollEntry.pay_period_end >= start_date)
    if end_date is not None:
        filters.append(PayrollEntry.pay_period_end <= end_date)

    entries = (
        await session.execute(
            select(PayrollEntry)
            .where(*filters)
            .order_by(PayrollEntry.pay_period_end.desc(), PayrollEntry.id.desc())
            .limit(limit)
        )
    ).scalars().all()
    total = (
        await session.execute(select(func.count(PayrollEntry.id)).where(*filters))
    ).scalar() or 0

    return PayrollEntryListResponse(
        entries=[PayrollEntryResponse.model_validate(e) for e in entries],
        total=total,
    )


@router.post(
    "/payroll/entries",
    response_model=PayrollEntryResponse,
    status_code=201,
    summary="Record a payroll entry",
)
async def create_entry(
    request: PayrollEntryRequest,
    session: AsyncSession = Depends(get_async_session),
) -> PayrollEntryResponse:
    if await session.get(Employee, request.employee_id) is None:
        raise HTTPException(
            status_code=404,
            detail=f"Employee {request.employee_id} not found",
        )

    entry = PayrollEntry(**request.model_dump())
    totals = apply_entry_totals(entry)
    session.add(entry)
    await session.flush()
    await session.refresh(entry)

    logger.info(
        "Payroll entry %d for employee %d: gross=%.2f net=%.2f",
        entry.id, entry.employee_id, totals.gross_pay, totals.net_pay,
    )
    return PayrollEntryResponse.model_validate(entry)


@router.get(
    "/payroll/entries/{entry_id}",
    response_model=PayrollEntryResponse,
    summary="Get a payroll entry",
)
async def get_entry(
    entry_id: int,
    session: AsyncSession = Depends(get_async_session),
) -> PayrollEntryResponse:
    return PayrollEntryResponse.model_validate(await _get_entry_or_404(session, entry_id))


@router.patch(
    "/payroll/entries/{entry_id}",
    response_model=PayrollEntryResponse,
    summary="Update a payroll entry",
)
async def update_entry(
    entry_id: int,
    request: PayrollEntryUpdateRequest,
    session: AsyncSession = Depends(get_async_session),
) -> PayrollEntryResponse:
    entry = await _get_entry_or_404(session, entry_id)

    changes = request.model_dump(exclude_unset=True)
    for attr, value in changes.items():
        if value is not None:
            setattr(entry, attr, value)
    # A new regular rate re-derives the overtime rate unless one was sent
    if "regular_rate" in changes and changes.get("overtime_rate") is None:
        entry.overtime_rate = None

    if entry.pay_period_end < entry.pay_period_start:
        raise HTTPException(
            status_code=400,
            detail="pay_period_end cannot be before pay_period_start",
        )

    apply_entry_totals(entry)
    await session.flush()
    await session.refresh(entry)
    return PayrollEntryResponse.model_validate(entry)


@router.delete(
    "/payroll/entries/{entry_id}",
    status_code=204,
    summary="Delete a payroll entry",
)
async def delete_entry(
    entry_id: int,
    session: AsyncSession = Depends(get_async_session),
) -> None:
    entry = await _get_entry_or_404(session, entry_id)
    await session.delete(entry)
    logger.info("Deleted payroll entry %d", entry_id)


# ---------------------------------------------------------------------------
# Statistics and calculator
# ---------------------------------------------------------------------------


@router.get(
    "/payroll/statistics",
    response_model=PayrollStatisticsResponse,
    summary="Payroll totals",
)
async def payroll_statistics(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    session: AsyncSession = Depends(get_async_session),
) -> PayrollStatisticsResponse:
    if start_date and end_date and end_date < start_date:
        raise HTTPException(status_code=400, detail="end_date cannot be before start_date")

    stats = await get_payroll_statistics(session, start_date, end_date)
    return PayrollStatisticsResponse(start_date=start_date, end_date=end_date, **stats)


@router.post(
    "/payroll/tax-calculation",
    response_model=TaxCalculationResponse,
    summary="Estimate withholding for one pay period",
    description=(
        "2024 federal brackets, flat state rates, Social Security (capped) "
        "and Medicare (with the additional 0.9% over $200k)."
    ),
)
async def tax_calculation(request: TaxCalculationRequest) -> TaxCalculationResponse:
    try:
        result = calculate_payroll_taxes(
            gross_pay=request.gross_pay,
            pay_frequency=request.pay_frequency,
            filing_status=request.filing_status,
            allowances=request.allowances,
            state=request.state,
            ytd_earnings=request.ytd_earnings,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return TaxCalculationResponse(**result.to_dict())


@router.get("/payroll/tax-rates", summary="Tax tables used by the calculator")
async def tax_rates(
    state: str | None = Query(default=None, min_length=2, max_length=2),
) -> dict:
    return get_tax_rates(state)


async def _get_entry_or_404(session: AsyncSession, entry_id: int) -> PayrollEntry:
    entry = await session.get(PayrollEntry, entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Payroll entry {entry_id} not found")
    return entry
