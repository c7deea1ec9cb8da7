# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data going OUT of the API. Kept separate from the ORM models so
# internal fields (embeddings, file paths, key hashes) are never serialised.
# =============================================================================

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from payrollpro.agents.router import QueryAnalysis


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class AgentInfo(BaseModel):
    type: str
    name: str
    description: str
    provider_id: str | None = None
    tools: list[str] = Field(default_factory=list)


class AgentListResponse(BaseModel):
    agents: list[AgentInfo]


class AgentQueryResponse(BaseModel):
    """Response for POST /agents/query — one agent's answer."""

    response: str
    agent_type: str
    agent_name: str
    model: str
    latency_ms: int
    input_tokens: int
    output_tokens: int
    confidence: float | None = Field(
        default=None,
        description="Self-assessed confidence (expense agent only)",
    )
    session_id: str | None = None


class AgentContributionResponse(BaseModel):
    agent_type: str
    agent_name: str
    query: str
    response: str
    confidence: float
    model: str | None = None
    latency_ms: int
    status: str = Field(description="ok, timeout, error or circuit_open")
    error: str | None = None


class BrainResponse(BaseModel):
    """
    Response for POST /agents/brain and /agents/multi.

    `agent_contributions` is in rank order: successful answers by
    confidence (registry order on ties), then failed agents.
    """

    response: str
    query_analysis: QueryAnalysis
    agent_contributions: list[AgentContributionResponse]
    consulted_agents: list[str]
    sources: list[dict] = Field(default_factory=list)
    reasoning_chain: list[dict] = Field(default_factory=list)
    model: str | None = None
    synthesis_mode: str = Field(description="single, llm, merge or none")
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost_usd: float | None = None
    session_id: str | None = None


class MemoryEntry(BaseModel):
    query: str
    response: str
    query_type: str | None = None
    agents: list[str] = Field(default_factory=list)
    created_at: str | None = None


class MemoryResponse(BaseModel):
    session_id: str
    entries: list[MemoryEntry]


class MemoryResetResponse(BaseModel):
    session_id: str
    deleted: int


# ---------------------------------------------------------------------------
# Knowledge Base
# ---------------------------------------------------------------------------


class KnowledgeEntryResult(BaseModel):
    id: str
    content: str
    category: str
    source: str | None = None
    similarity_score: float = Field(description="Cosine similarity (0-1)")
    metadata: dict | None = None


class KnowledgeAddResponse(BaseModel):
    ids: list[str]
    category: str
    chunk_count: int


class KnowledgeSearchResponse(BaseModel):
    query: str
    results: list[KnowledgeEntryResult]
    total: int


class KnowledgeDeleteResponse(BaseModel):
    deleted: int


class KnowledgeUploadResponse(BaseModel):
    """Response for POST /knowledge/upload — processing continues in Celery."""

    upload_id: int
    task_id: str
    status: str = "processing"
    message: str = "File uploaded. Processing in progress."


class KnowledgeUploadStatusResponse(BaseModel):
    task_id: str
    status: str = Field(description="Task status: PENDING, STARTED, SUCCESS, FAILURE")
    upload_id: int | None = None
    filename: str | None = None
    category: str | None = None
    entry_count: int | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Employees
# ---------------------------------------------------------------------------


class ImportUploadResponse(BaseModel):
    """Response for POST /employees/upload — headers and a preview."""

    job_id: str
    file_name: str
    headers: list[str]
    preview: list[dict[str, str]]
    total_rows: int
    status: str


class ImportJobResponse(BaseModel):
    """An import job. The stored file path is deliberately omitted."""

    id: str
    file_name: str
    original_name: str
    record_count: int
    imported_count: int
    error_count: int
    warnings: int
    status: str
    errors: list[dict] | None = None
    headers: list[str] | None = None
    data_source: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ImportJobListResponse(BaseModel):
    jobs: list[ImportJobResponse]
    total: int


class EmployeeResponse(BaseModel):
    id: int
    employee_id: str
    first_name: str
    last_name: str
    email: str
    department: str | None = None
    position: str | None = None
    hire_date: date | None = None
    status: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class EmployeeListResponse(BaseModel):
    employees: list[EmployeeResponse]
    total: int


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class LineItemResponse(BaseModel):
    id: int
    position: int
    description: str
    quantity: float
    unit_price: float
    tax_rate: float
    amount: float

    model_config = ConfigDict(from_attributes=True)


class DocumentResponse(BaseModel):
    id: int
    document_type: str
    number: str
    client_name: str
    client_email: str | None = None
    client_address: str | None = None
    issue_date: date
    due_date: date
    status: str
    notes: str | None = None
    terms: str | None = None
    discount: float
    subtotal: float
    tax_total: float
    total: float
    line_items: list[LineItemResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DocumentListResponse(BaseModel):
    documents: list[DocumentResponse]
    total: int


# ---------------------------------------------------------------------------
# Payroll
# ---------------------------------------------------------------------------


class PayrollEntryResponse(BaseModel):
    id: int
    employee_id: int
    pay_period_start: date
    pay_period_end: date
    regular_hours: float
    regular_rate: float
    overtime_hours: float
    overtime_rate: float
    bonuses: float
    federal_tax: float
    state_tax: float
    social_security_tax: float
    medicare_tax: float
    other_taxes: float
    health_insurance: float
    retirement_401k: float
    other_deductions: float
    gross_pay: float
    net_pay: float
    status: str
    notes: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PayrollEntryListResponse(BaseModel):
    entries: list[PayrollEntryResponse]
    total: int


class PayrollStatisticsResponse(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    entry_count: int
    employee_count: int
    total_gross_pay: float
    total_net_pay: float
    total_taxes: float
    total_deductions: float
    average_gross_pay: float
    by_status: dict[str, int] = Field(default_factory=dict)


class TaxCalculationResponse(BaseModel):
    gross_pay: float
    pay_frequency: str
    filing_status: str
    state: str | None = None
    federal_income_tax: float
    state_income_tax: float
    social_security_tax: float
    medicare_tax: float
    total_taxes: float
    net_pay: float
    annual_projection: dict = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Reference tables
# ---------------------------------------------------------------------------


class ComplianceRequirementResponse(BaseModel):
    """Detail fields are omitted when include_details=false."""

    id: str
    name: str
    category: str
    next_deadline: date | None = None
    description: str | None = None
    deadline_type: str | None = None
    deadline_details: dict | None = None
    employee_threshold: int | None = None
    reference_url: str | None = None
    penalties: str | None = None


class ComplianceRequirementListResponse(BaseModel):
    state: str | None = None
    employee_count: int | None = None
    industry: str | None = None
    requirements: list[ComplianceRequirementResponse]
    total: int


class DeadlineResponse(BaseModel):
    requirement_id: str
    requirement_name: str
    deadline_date: date
    days_until: int
    category: str


class DeadlineListResponse(BaseModel):
    days_ahead: int
    deadlines: list[DeadlineResponse]
    total: int


class ExpenseCategoryResponse(BaseModel):
    id: str
    name: str
    description: str
    tax_deductible: bool
    examples: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class ExpenseCategoryListResponse(BaseModel):
    categories: list[ExpenseCategoryResponse]
    total: int


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class ApiKeyResponse(BaseModel):
    """API key details. Never includes the raw key or its hash."""

    id: int
    name: str
    key_prefix: str
    scopes: list[str] | None = None
    rate_limit_rpm: int | None = None
    is_active: bool
    created_at: datetime
    expires_at: datetime | None = None
    last_used_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ApiKeyCreatedResponse(BaseModel):
    """
    Response for POST /admin/keys — returned once at key creation.

    The raw_key is only returned in this response.
    """

    id: int
    name: str
    key_prefix: str
    raw_key: str = Field(
        description="The full API key. Store it securely; it will NOT be "
                    "shown again.",
    )
    scopes: list[str] | None = None
    rate_limit_rpm: int | None = None
    created_at: datetime
    expires_at: datetime | None = None


class ApiKeyListResponse(BaseModel):
    keys: list[ApiKeyResponse]
    total: int


class AuditLogResponse(BaseModel):
    id: int
    api_key_id: int | None = None
    api_key_name: str | None = None
    endpoint: str
    method: str
    path: str
    resource: str | None = None
    query: str | None = None
    client_ip: str | None = None
    status_code: int | None = None
    response_time_ms: int | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    logs: list[AuditLogResponse]
    total: int


class CircuitStateResponse(BaseModel):
    provider_id: str
    state: str
    failures: int
    retry_after_seconds: float


class AgentMetricSummary(BaseModel):
    mode: str
    query_count: int
    avg_latency_ms: float | None = None
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_estimated_cost_usd: float | None = None
    failed_agents: int = 0


class MetricsResponse(BaseModel):
    """Response for GET /admin/metrics — agent usage over a time window."""

    total_queries: int
    time_range_hours: int
    by_mode: list[AgentMetricSummary]
