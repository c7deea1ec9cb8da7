# =============================================================================
# Employee CSV Import — Parse, Preview, Map, Validate, Upsert
# =============================================================================
#
# Two-step import, driven by the /employees endpoints:
#
#   1. Upload:  parse_csv() → headers + rows, build_preview() → first N rows
#               (ImportJob created in status "validating")
#   2. Import:  map_rows() applies the user's header mapping
#               (CSV header → target field), validates every row, and
#               upsert_employees() writes the valid ones keyed by employee_id.
#
# LINE NUMBERS:
#   Errors carry the 1-based line in the file: row 0 of the data is line 2
#   because line 1 is the header row.
#
# STATUS RULE:
#   "error" when every data row failed, otherwise "completed".
# =============================================================================

from __future__ import annotations

import csv
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payrollpro.db.models import Employee, EmployeeStatus, ImportJobStatus

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("firstName", "lastName", "email")

# Target field names accepted in a header mapping → Employee attribute.
# camelCase names are what the import UI sends; snake_case also works.
TARGET_FIELDS = {
    "id": "employee_id",
    "employeeId": "employee_id",
    "employee_id": "employee_id",
    "firstName": "first_name",
    "first_name": "first_name",
    "lastName": "last_name",
    "last_name": "last_name",
    "email": "email",
    "department": "department",
    "position": "position",
    "startDate": "hire_date",
    "hireDate": "hire_date",
    "hire_date": "hire_date",
    "status": "status",
}


@dataclass
class ParsedCsv:
    headers: list[str]
    rows: list[list[str]]

    @property
    def record_count(self) -> int:
        return len(self.rows)


@dataclass
class MappingResult:
    """Outcome of applying a header mapping to every data row."""

    records: list[dict] = field(default_factory=list)   # Employee kwargs
    errors: list[dict] = field(default_factory=list)    # {"line", "message"}
    failed_rows: int = 0
    warnings: int = 0


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_csv(file_path: str | Path) -> ParsedCsv:
    """
    Read a CSV file into headers and data rows.

    Quoted fields (including embedded commas and newlines) are handled by
    the csv module. Blank lines are skipped and every cell is stripped.

    Raises:
        ValueError: If the file has no header row.
    """
    with open(file_path, newline="", encoding="utf-8-sig") as f:
        lines = [
            [cell.strip() for cell in row]
            for row in csv.reader(f)
            if any(cell.strip() for cell in row)
        ]

    if not lines:
        raise ValueError("CSV file is empty")

    return ParsedCsv(headers=lines[0], rows=lines[1:])


def build_preview(parsed: ParsedCsv, limit: int = 5) -> list[dict[str, str]]:
    """First `limit` rows as header → value dicts; missing cells become ""."""
    return [
        {
            header: row[i] if i < len(row) else ""
            for i, header in enumerate(parsed.headers)
        }
        for row in parsed.rows[:limit]
    ]


# ---------------------------------------------------------------------------
# Mapping + Validation
# ---------------------------------------------------------------------------


def validate_header_mapping(header_mapping: dict[str, str]) -> None:
    """
    Reject mappings that name unknown target fields or omit a required one.

    Raises:
        ValueError: With a message listing the problem fields.
    """
    if not header_mapping:
        raise ValueError("Header mapping is required")

    unknown = sorted(
        {target for target in header_mapping.values() if target}
        - TARGET_FIELDS.keys()
    )
    if unknown:
        raise ValueError(f"Unknown target fields: {', '.join(unknown)}")

    mapped_attrs = {
        TARGET_FIELDS[target] for target in header_mapping.values() if target
    }
    missing = [
        f for f in REQUIRED_FIELDS if TARGET_FIELDS[f] not in mapped_attrs
    ]
    if missing:
        raise ValueError(f"Required fields are not mapped: {', '.join(missing)}")


def map_rows(parsed: ParsedCsv, header_mapping: dict[str, str]) -> MappingResult:
    """
    Apply `header_mapping` (CSV header → target field) to every row.

    A row with a missing required field or a malformed email is rejected
    with one error per problem. Unparseable hire dates and unknown statuses
    are dropped with a warning rather than failing the row.
    """
    result = MappingResult()

    for row_index, row in enumerate(parsed.rows):
        line = row_index + 2
        record: dict = {}

        for col_index, header in enumerate(parsed.headers):
            attr = TARGET_FIELDS.get(header_mapping.get(header) or "")
            if not attr or col_index >= len(row) or not row[col_index]:
                continue
            record[attr] = row[col_index]

        row_errors = []
        for required in REQUIRED_FIELDS:
            if not record.get(TARGET_FIELDS[required]):
                row_errors.append({
                    "line": line,
                    "message": f"Missing required field: {required}",
                })

        email = record.get("email")
        if email and "@" not in email:
            row_errors.append({
                "line": line,
                "message": f"Invalid email format: {email}",
            })

        if row_errors:
            result.errors.extend(row_errors)
            result.failed_rows += 1
            continue

        result.warnings += _coerce_optional_fields(record)
        record.setdefault("employee_id", f"EMP-{uuid.uuid4().hex[:8].upper()}")
        result.records.append(record)

    return result


def _coerce_optional_fields(record: dict) -> int:
    """Convert hire_date and status in place. Returns the warning count."""
    warnings = 0

    raw_date = record.get("hire_date")
    if raw_date is not None:
        try:
            record["hire_date"] = date.fromisoformat(raw_date)
        except ValueError:
            del record["hire_date"]
            warnings += 1

    raw_status = record.get("status")
    if raw_status is not None:
        try:
            record["status"] = EmployeeStatus(raw_status.strip().lower())
        except ValueError:
            del record["status"]
            warnings += 1

    return warnings


def import_status(record_count: int, failed_rows: int) -> ImportJobStatus:
    if failed_rows == record_count:
        return ImportJobStatus.ERROR
    return ImportJobStatus.COMPLETED


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


async def upsert_employees(
    session: AsyncSession,
    records: list[dict],
    import_job_id: str | None = None,
) -> int:
    """
    Insert or update employees keyed by employee_id.

    Returns the number of employees written. The caller's session owns the
    transaction.
    """
    if not records:
        return 0

    ids = [r["employee_id"] for r in records]
    existing = {
        e.employee_id: e
        for e in (
            await session.execute(
                select(Employee).where(Employee.employee_id.in_(ids))
            )
        ).scalars()
    }

    created = 0
    for record in records:
        employee = existing.get(record["employee_id"])
        if employee is None:
            employee = Employee(import_job_id=import_job_id, **record)
            session.add(employee)
            existing[record["employee_id"]] = employee
            created += 1
        else:
            for attr, value in record.items():
                setattr(employee, attr, value)
            employee.import_job_id = import_job_id

    await session.flush()
    logger.info(
        "Upserted %d employees (%d new) for import job %s",
        len(records), created, import_job_id,
    )
    return len(records)
