# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────┐        ┌───────────────────────────────┐
# │  employees   │──1:N──▶│  payroll_entries              │
# ├──────────────┤        ├───────────────────────────────┤
# │ employee_id  │        │ pay_period_start / _end       │
# │ names, email │        │ hours, rates, bonuses         │
# │ department   │        │ taxes, deductions             │
# │ status       │        │ gross_pay, net_pay, status    │
# └──────────────┘        └───────────────────────────────┘
#
# ┌──────────────────────┐        ┌──────────────┐
# │  financial_documents │──1:N──▶│  line_items  │
# └──────────────────────┘        └──────────────┘
#
# ┌──────────────────┐  ┌──────────────────┐  ┌──────────────┐
# │ knowledge_entries│  │ knowledge_uploads│  │ search_cache │
# │ embedding vector │  │ celery status    │  │ TTL payloads │
# └──────────────────┘  └──────────────────┘  └──────────────┘
#
# ┌──────────────┐  ┌─────────────────────┐  ┌──────────────┐  ┌────────────┐
# │ import_jobs  │  │ brain_memory        │  │ agent_query_ │  │ api_keys / │
# │ CSV imports  │  │ per-session history │  │ metrics      │  │ audit_logs │
# └──────────────┘  └─────────────────────┘  └──────────────┘  └────────────┘
#
# Money columns are Float, rounded to cents by the services that write them.
# Status columns use string enums so rows stay readable in SQL.
# JSONB columns named `metadata_` avoid the DeclarativeBase `.metadata` clash.
# =============================================================================

import enum
from datetime import date, datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from payrollpro.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all ORM models."""

    pass


# =============================================================================
# Employees & Payroll
# =============================================================================


class EmployeeStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    TERMINATED = "terminated"


class PayrollStatus(str, enum.Enum):
    """
    Lifecycle of a payroll entry.

        PENDING → APPROVED → PAID
    """

    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"


class Employee(Base):
    """
    An employee record, created by hand or through a CSV import.

    `employee_id` is the business identifier (e.g., "EMP-0042") used as the
    upsert key during imports; `id` is the surrogate primary key.
    """

    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_id: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True,
    )
    first_name: Mapped[str] = mapped_column(String(200), nullable=False)
    last_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    department: Mapped[str | None] = mapped_column(String(200), nullable=True)
    position: Mapped[str | None] = mapped_column(String(200), nullable=True)
    hire_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[EmployeeStatus] = mapped_column(
        Enum(EmployeeStatus),
        nullable=False,
        default=EmployeeStatus.ACTIVE,
    )

    # Import job that last wrote this row (null for manual entries)
    import_job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    payroll_entries: Mapped[list["PayrollEntry"]] = relationship(
        "PayrollEntry",
        back_populates="employee",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return (
            f"<Employee(id={self.id}, employee_id='{self.employee_id}', "
            f"name='{self.first_name} {self.last_name}')>"
        )


class PayrollEntry(Base):
    """
    One employee's pay for one pay period.

    `gross_pay` and `net_pay` are derived by services.payroll.compute_entry_totals
    on every create/update; they are stored so listings and statistics do
    not recompute them.
    """

    __tablename__ = "payroll_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
    )
    pay_period_start: Mapped[date] = mapped_column(Date, nullable=False)
    pay_period_end: Mapped[date] = mapped_column(Date, nullable=False)

    # --- Earnings ---
    regular_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    regular_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    overtime_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    overtime_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    bonuses: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # --- Taxes ---
    federal_tax: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    state_tax: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    social_security_tax: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0,
    )
    medicare_tax: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    other_taxes: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # --- Deductions ---
    health_insurance: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0,
    )
    retirement_401k: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0,
    )
    other_deductions: Mapped[float] = mapped_column(
        Float, nullable=False, default=0.0,
    )

    # --- Derived ---
    gross_pay: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    net_pay: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    status: Mapped[PayrollStatus] = mapped_column(
        Enum(PayrollStatus),
        nullable=False,
        default=PayrollStatus.PENDING,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    employee: Mapped["Employee"] = relationship(
        "Employee", back_populates="payroll_entries",
    )

    def __repr__(self) -> str:
        return (
            f"<PayrollEntry(id={self.id}, employee_id={self.employee_id}, "
            f"period={self.pay_period_start}..{self.pay_period_end})>"
        )


payroll_entry_period_idx = Index(
    "idx_payroll_entry_employee_period",
    PayrollEntry.employee_id,
    PayrollEntry.pay_period_end,
)


# =============================================================================
# CSV Import Jobs
# =============================================================================


class ImportJobStatus(str, enum.Enum):
    """
    State machine:
        VALIDATING → PROCESSING → COMPLETED
                                → ERROR   (every row failed)
    """

    VALIDATING = "validating"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class ImportJob(Base):
    """
    Tracks one employee CSV upload from preview through import.

    `errors` holds a JSONB list of {"line": int, "message": str}, where
    `line` is the 1-indexed line in the uploaded file (header = line 1).
    """

    __tablename__ = "import_jobs"

    # UUID string, shared with the saved file name
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    original_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_path: Mapped[str] = mapped_column(String(1000), nullable=False)

    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    imported_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    warnings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[ImportJobStatus] = mapped_column(
        Enum(ImportJobStatus),
        nullable=False,
        default=ImportJobStatus.VALIDATING,
    )
    errors: Mapped[list | None] = mapped_column(JSONB, nullable=True, default=list)
    headers: Mapped[list | None] = mapped_column(JSONB, nullable=True, default=list)
    data_source: Mapped[str] = mapped_column(
        String(100), nullable=False, default="CSV Upload",
    )

    api_key_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("api_keys.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ImportJob(id='{self.id}', status={self.status})>"


# =============================================================================
# Financial Documents (invoices, estimates, bills)
# =============================================================================


class DocumentType(str, enum.Enum):
    INVOICE = "invoice"
    ESTIMATE = "estimate"
    BILL = "bill"


class DocumentStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    SENT = "sent"
    PAID = "paid"


class FinancialDocument(Base):
    """
    An invoice, estimate or bill with its derived totals.

    subtotal, tax_total and total are recomputed from the line items by
    services.documents.compute_document_totals on every write.
    """

    __tablename__ = "financial_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_type: Mapped[DocumentType] = mapped_column(
        Enum(DocumentType), nullable=False,
    )
    # Display number, e.g. "INV-042"
    number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    client_name: Mapped[str] = mapped_column(String(300), nullable=False)
    client_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    client_address: Mapped[str | None] = mapped_column(Text, nullable=True)

    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus),
        nullable=False,
        default=DocumentStatus.DRAFT,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms: Mapped[str | None] = mapped_column(Text, nullable=True)

    discount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    subtotal: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    tax_total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # selectin: responses always include the line items
    line_items: Mapped[list["LineItem"]] = relationship(
        "LineItem",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="LineItem.position",
    )

    def __repr__(self) -> str:
        return f"<FinancialDocument(id={self.id}, number='{self.number}')>"


class LineItem(Base):
    __tablename__ = "line_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("financial_documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    unit_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    tax_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    # quantity × unit_price × (1 + tax_rate / 100)
    amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    document: Mapped["FinancialDocument"] = relationship(
        "FinancialDocument", back_populates="line_items",
    )


# =============================================================================
# Knowledge Base
# =============================================================================


class KnowledgeEntry(Base):
    """
    A chunk of reference material with its embedding.

    `category` scopes searches (e.g., "tax", "compliance", "expense");
    `source` records where the text came from (file name, URL, "manual").
    """

    __tablename__ = "knowledge_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )
    metadata_: Mapped[dict | None] = mapped_column(
        JSONB,
        nullable=True,
        default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<KnowledgeEntry(id={self.id}, category='{self.category}', "
            f"tokens={self.token_count})>"
        )


# HNSW index with cosine ops, matching the cosine_distance() used in search
knowledge_embedding_idx = Index(
    "idx_knowledge_embedding_hnsw",
    KnowledgeEntry.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

knowledge_category_idx = Index(
    "idx_knowledge_category",
    KnowledgeEntry.category,
)


class UploadStatus(str, enum.Enum):
    """
    Knowledge-file ingestion state:
        PENDING → PROCESSING → COMPLETED
                             → FAILED
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class KnowledgeUpload(Base):
    """A file uploaded into the knowledge base, processed by Celery."""

    __tablename__ = "knowledge_uploads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    filename: Mapped[str] = mapped_column(String(500), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[UploadStatus] = mapped_column(
        Enum(UploadStatus),
        nullable=False,
        default=UploadStatus.PENDING,
    )
    entry_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    celery_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class SearchCache(Base):
    """
    Cached web-search results and extracted page contents.

    kind = "search"  → payload is {"results": [...]}, TTL 1 hour
    kind = "content" → payload is {"url": ..., "content": ...}, TTL 24 hours
    """

    __tablename__ = "search_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cache_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


# =============================================================================
# AgentBrain Memory & Telemetry
# =============================================================================


class BrainMemory(Base):
    """One completed AgentBrain exchange, scoped to a conversation session."""

    __tablename__ = "brain_memory"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(128), nullable=False)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    response: Mapped[str] = mapped_column(Text, nullable=False)
    query_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    # Agent types consulted, in rank order
    agents: Mapped[list | None] = mapped_column(JSONB, nullable=True, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


brain_memory_session_idx = Index(
    "idx_brain_memory_session_created",
    BrainMemory.session_id,
    BrainMemory.created_at,
)


class AgentQueryMetric(Base):
    """Per-query latency, token and cost telemetry for the agent endpoints."""

    __tablename__ = "agent_query_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    # "single", "multi" or "brain"
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    agent_types: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    query_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    model: Mapped[str | None] = mapped_column(String(200), nullable=True)
    synthesis_mode: Mapped[str | None] = mapped_column(String(20), nullable=True)
    total_latency_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_cost_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    failed_agents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


# =============================================================================
# Auth & Audit
# =============================================================================


class ApiKey(Base):
    """
    An API key for authenticating requests.

    Each key has a hashed secret (SHA-256), a human-readable prefix
    for log identification and optional scopes. The raw key is only
    returned once at creation time.
    """

    __tablename__ = "api_keys"

    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True,
    )

    # Human-readable label (e.g., "payroll-frontend", "hr-team")
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # First 8 chars of the key for identification in logs
    key_prefix: Mapped[str] = mapped_column(String(20), nullable=False)

    # SHA-256 hash of the full key, never the plaintext
    key_hash: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True,
    )

    # JSONB array such as ["agents", "payroll"]. Null or empty = all scopes.
    scopes: Mapped[list | None] = mapped_column(
        JSONB, nullable=True, default=list,
    )

    # Null = use settings.rate_limit_rpm
    rate_limit_rpm: Mapped[int | None] = mapped_column(
        Integer, nullable=True,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ApiKey(id={self.id}, name='{self.name}', "
            f"prefix='{self.key_prefix}', active={self.is_active})>"
        )


class AuditLog(Base):
    """
    Audit trail of API requests.

    Payroll and employee data access must be traceable: which key touched
    which resource, when, and with what query.
    """

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True,
    )
    api_key_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("api_keys.id", ondelete="SET NULL"),
        nullable=True,
    )
    # Denormalised so the trail survives key deletion
    api_key_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    endpoint: Mapped[str] = mapped_column(String(100), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    path: Mapped[str] = mapped_column(String(500), nullable=False)

    # e.g. "employee:42", "import_job:<uuid>", "document:INV-042"
    resource: Mapped[str | None] = mapped_column(String(200), nullable=True)
    query: Mapped[str | None] = mapped_column(Text, nullable=True)

    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    response_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


audit_log_key_idx = Index(
    "idx_audit_log_api_key_created",
    AuditLog.api_key_id,
    AuditLog.created_at,
)
