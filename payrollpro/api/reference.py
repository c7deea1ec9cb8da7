# =============================================================================
# Reference API — Compliance Calendar and Expense Categories
# =============================================================================
#
#   GET /reference/compliance/requirements   requirements for a company profile
#   GET /reference/compliance/deadlines      deadlines in the next N days
#   GET /reference/expense-categories        all categories, or those a
#                                            description matches
#
# Read-only views over the registries the Compliance Advisor and Expense
# Categorizer agents receive as tool context. Any authenticated key may
# read them.
# =============================================================================

import logging

from fastapi import APIRouter, Depends, Query

from payrollpro.api.deps import get_current_api_key
from payrollpro.models.responses import (
    ComplianceRequirementListResponse,
    ComplianceRequirementResponse,
    DeadlineListResponse,
    DeadlineResponse,
    ExpenseCategoryListResponse,
    ExpenseCategoryResponse,
)
from payrollpro.services.compliance import (
    get_compliance_requirements,
    get_upcoming_deadlines,
)
from payrollpro.services.expenses import EXPENSE_CATEGORIES, find_relevant_categories

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Reference"],
    dependencies=[Depends(get_current_api_key)],
)


@router.get(
    "/reference/compliance/requirements",
    response_model=ComplianceRequirementListResponse,
    summary="Compliance requirements for a company profile",
)
async def compliance_requirements(
    state: str | None = Query(default=None, min_length=2, max_length=2),
    employee_count: int | None = Query(default=None, ge=0),
    industry: str | None = Query(
        default=None, description="healthcare, construction or financial",
    ),
    include_details: bool = Query(default=True),
) -> ComplianceRequirementListResponse:
    requirements = get_compliance_requirements(
        state=state,
        employee_count=employee_count,
        industry=industry,
        include_details=include_details,
    )
    return ComplianceRequirementListResponse(
        state=state.upper() if state else None,
        employee_count=employee_count,
        industry=industry,
        requirements=[ComplianceRequirementResponse(**r) for r in requirements],
        total=len(requirements),
    )


@router.get(
    "/reference/compliance/deadlines",
    response_model=DeadlineListResponse,
    summary="Upcoming compliance deadlines",
)
async def upcoming_deadlines(
    state: str | None = Query(default=None, min_length=2, max_length=2),
    days_ahead: int = Query(default=30, ge=1, le=366),
    category: str | None = Query(
        default=None, description="tax, benefits, reporting, safety or general",
    ),
) -> DeadlineListResponse:
    deadlines = get_upcoming_deadlines(state=state, days_ahead=days_ahead, category=category)
    return DeadlineListResponse(
        days_ahead=days_ahead,
        deadlines=[DeadlineResponse(**d) for d in deadlines],
        total=len(deadlines),
    )


@router.get(
    "/reference/expense-categories",
    response_model=ExpenseCategoryListResponse,
    summary="Expense categories",
)
async def expense_categories(
    query: str | None = Query(
        default=None,
        description="Describe an expense to list only the categories it matches",
    ),
) -> ExpenseCategoryListResponse:
    categories = find_relevant_categories(query) if query else list(EXPENSE_CATEGORIES)
    return ExpenseCategoryListResponse(
        categories=[ExpenseCategoryResponse(**c.to_dict()) for c in categories],
        total=len(categories),
    )
