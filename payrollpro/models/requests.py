# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data coming INTO the API. FastAPI validates bodies against
# these (422 on mismatch) and uses them for the OpenAPI docs.
#
# Invariants enforced here rather than in handlers:
#   - line items: quantity >= 0, unit_price >= 0, tax_rate in [0, 100]
#   - documents: due_date not before issue_date
#   - payroll entries: pay_period_end not before pay_period_start,
#     hours and rates >= 0
# =============================================================================

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from payrollpro.db.models import (
    DocumentStatus,
    DocumentType,
    EmployeeStatus,
    PayrollStatus,
)

# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class AgentQueryRequest(BaseModel):
    """
    Request body for POST /agents/query — ask one agent directly.

    `query` is checked in the handler so an empty one gets the
    400 "Query is required" the clients expect, not a 422.
    """

    query: str = Field(
        default="",
        max_length=4000,
        description="The question to ask",
        examples=["How much federal tax is withheld on $2,500 biweekly?"],
    )
    agent_type: str = Field(
        default="reasoning",
        description="Agent to ask: tax, expense, compliance, data, research "
                    "or reasoning",
    )
    session_id: str | None = Field(
        default=None,
        max_length=128,
        description="Conversation id. Recent exchanges in the same session "
                    "are passed to the agent.",
    )


class BrainQueryRequest(BaseModel):
    """
    Request body for POST /agents/brain and /agents/multi.

    Example:
        {
            "query": "What payroll filings are due next quarter in California?",
            "session_id": "acme-hr-1"
        }
    """

    query: str = Field(default="", max_length=4000)
    session_id: str | None = Field(default=None, max_length=128)

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "query": "What payroll filings are due next quarter "
                             "in California?",
                    "session_id": "acme-hr-1",
                },
            ]
        }
    )


# ---------------------------------------------------------------------------
# Knowledge Base
# ---------------------------------------------------------------------------


class KnowledgeAddRequest(BaseModel):
    content: str = Field(..., min_length=1, description="Text to add")
    category: str = Field(..., min_length=1, max_length=100)
    source: str = Field(default="manual", max_length=1000)
    metadata: dict | None = None


class KnowledgeSearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=2000)
    category: str | None = None
    limit: int = Field(default=5, ge=1, le=50)
    threshold: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Minimum cosine similarity. Defaults to the configured "
                    "threshold.",
    )


class KnowledgeDeleteRequest(BaseModel):
    ids: list[str] = Field(..., min_length=1, max_length=500)


# ---------------------------------------------------------------------------
# Employees
# ---------------------------------------------------------------------------


class EmployeeImportRequest(BaseModel):
    """
    Request body for POST /employees/import/{job_id}.

    Example:
        {
            "header_mapping": {
                "First Name": "firstName",
                "Last Name": "lastName",
                "Work Email": "email",
                "Start": "startDate"
            }
        }
    """

    header_mapping: dict[str, str] = Field(
        ...,
        description="CSV header → target field (firstName, lastName, email, "
                    "employeeId, department, position, startDate, status). "
                    "Map a header to an empty string to ignore it.",
    )


class EmployeeCreateRequest(BaseModel):
    employee_id: str | None = Field(default=None, max_length=64)
    first_name: str = Field(..., min_length=1, max_length=200)
    last_name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+$", max_length=320)
    department: str | None = None
    position: str | None = None
    hire_date: date | None = None
    status: EmployeeStatus = EmployeeStatus.ACTIVE


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class LineItemRequest(BaseModel):
    description: str = Field(..., min_length=1)
    quantity: float = Field(default=1.0, ge=0)
    unit_price: float = Field(default=0.0, ge=0)
    tax_rate: float = Field(default=0.0, ge=0, le=100)


class DocumentCreateRequest(BaseModel):
    """
    Request body for POST /documents.

    Totals and line amounts are always recomputed server-side. `number`
    and `due_date` are generated when omitted.
    """

    document_type: DocumentType
    number: str | None = Field(default=None, max_length=50)
    client_name: str = Field(..., min_length=1, max_length=300)
    client_email: str | None = None
    client_address: str | None = None
    issue_date: date = Field(default_factory=date.today)
    due_date: date | None = None
    status: DocumentStatus = DocumentStatus.DRAFT
    notes: str | None = None
    terms: str | None = None
    discount: float = Field(default=0.0, ge=0)
    line_items: list[LineItemRequest] = Field(default_factory=list)

    @model_validator(mode="after")
    def _due_after_issue(self):
        if self.due_date is not None and self.due_date < self.issue_date:
            raise ValueError("due_date cannot be before issue_date")
        return self


class DocumentUpdateRequest(BaseModel):
    """Partial update; line_items, when given, replace the existing ones."""

    client_name: str | None = Field(default=None, min_length=1, max_length=300)
    client_email: str | None = None
    client_address: str | None = None
    issue_date: date | None = None
    due_date: date | None = None
    status: DocumentStatus | None = None
    notes: str | None = None
    terms: str | None = None
    discount: float | None = Field(default=None, ge=0)
    line_items: list[LineItemRequest] | None = None


# ---------------------------------------------------------------------------
# Payroll
# ---------------------------------------------------------------------------


class PayrollEntryRequest(BaseModel):
    """
    Request body for POST /payroll/entries.

    gross_pay and net_pay are derived; overtime_rate defaults to 1.5 ×
    regular_rate when omitted.
    """

    employee_id: int = Field(..., description="Employee row id")
    pay_period_start: date
    pay_period_end: date

    regular_hours: float = Field(default=0.0, ge=0)
    regular_rate: float = Field(default=0.0, ge=0)
    overtime_hours: float = Field(default=0.0, ge=0)
    overtime_rate: float | None = Field(default=None, ge=0)
    bonuses: float = Field(default=0.0, ge=0)

    federal_tax: float = Field(default=0.0, ge=0)
    state_tax: float = Field(default=0.0, ge=0)
    social_security_tax: float = Field(default=0.0, ge=0)
    medicare_tax: float = Field(default=0.0, ge=0)
    other_taxes: float = Field(default=0.0, ge=0)

    health_insurance: float = Field(default=0.0, ge=0)
    retirement_401k: float = Field(default=0.0, ge=0)
    other_deductions: float = Field(default=0.0, ge=0)

    status: PayrollStatus = PayrollStatus.PENDING
    notes: str | None = None

    @model_validator(mode="after")
    def _period_order(self):
        if self.pay_period_end < self.pay_period_start:
            raise ValueError("pay_period_end cannot be before pay_period_start")
        return self


class PayrollEntryUpdateRequest(BaseModel):
    pay_period_start: date | None = None
    pay_period_end: date | None = None

    regular_hours: float | None = Field(default=None, ge=0)
    regular_rate: float | None = Field(default=None, ge=0)
    overtime_hours: float | None = Field(default=None, ge=0)
    overtime_rate: float | None = Field(default=None, ge=0)
    bonuses: float | None = Field(default=None, ge=0)

    federal_tax: float | None = Field(default=None, ge=0)
    state_tax: float | None = Field(default=None, ge=0)
    social_security_tax: float | None = Field(default=None, ge=0)
    medicare_tax: float | None = Field(default=None, ge=0)
    other_taxes: float | None = Field(default=None, ge=0)

    health_insurance: float | None = Field(default=None, ge=0)
    retirement_401k: float | None = Field(default=None, ge=0)
    other_deductions: float | None = Field(default=None, ge=0)

    status: PayrollStatus | None = None
    notes: str | None = None


class TaxCalculationRequest(BaseModel):
    """
    Request body for POST /payroll/tax-calculation.

    Example:
        {"gross_pay": 2500, "pay_frequency": "biweekly",
         "filing_status": "single", "allowances": 1, "state": "CA"}
    """

    gross_pay: float = Field(..., ge=0)
    pay_frequency: Literal[
        "weekly", "biweekly", "semimonthly", "monthly", "quarterly", "annually",
    ] = "biweekly"
    filing_status: str = "single"
    allowances: int = Field(default=0, ge=0, le=20)
    state: str | None = Field(default=None, min_length=2, max_length=2)
    ytd_earnings: float = Field(default=0.0, ge=0)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class CreateApiKeyRequest(BaseModel):
    """
    Request body for POST /admin/keys.

    Null scopes grant every scope except admin.
    """

    name: str = Field(..., min_length=1, max_length=200)
    scopes: list[str] | None = Field(
        default=None,
        description="Any of: agents, knowledge, employees, documents, "
                    "payroll, admin",
    )
    rate_limit_rpm: int | None = Field(default=None, ge=1, le=10000)
    expires_at: datetime | None = None


class UpdateApiKeyRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    scopes: list[str] | None = None
    rate_limit_rpm: int | None = Field(default=None, ge=1, le=10000)
    is_active: bool | None = None
    expires_at: datetime | None = None
