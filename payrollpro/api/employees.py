# =============================================================================
# Employees API — CSV Import Jobs and Employee Records
# =============================================================================
#
#   POST   /employees/upload             upload CSV → job + preview
#   POST   /employees/import/{job_id}    apply header mapping, import rows
#   GET    /employees/imports            list jobs (newest first)
#   GET    /employees/imports/{job_id}   one job
#   DELETE /employees/imports/{job_id}   delete job and its file
#   GET    /employees                    list employees
#   POST   /employees                    create one employee
#   GET    /employees/{id}               one employee
#
# Import runs inline: a 10MB CSV validates and upserts in well under a
# request timeout, and the client wants the error list immediately.
# =============================================================================

import asyncio
import logging
import uuid
from pathlib import Path

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payrollpro.api.deps import require_scope, set_audit_context
from payrollpro.config import settings
from payrollpro.db.engine import get_async_session
from payrollpro.db.models import ApiKey, Employee, EmployeeStatus, ImportJob, ImportJobStatus
from payrollpro.models.requests import EmployeeCreateRequest, EmployeeImportRequest
from payrollpro.models.responses import (
    EmployeeListResponse,
    EmployeeResponse,
    ImportJobListResponse,
    ImportJobResponse,
    ImportUploadResponse,
)
from payrollpro.services.csv_import import (
    build_preview,
    import_status,
    map_rows,
    parse_csv,
    upsert_employees,
    validate_header_mapping,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Employees"])

_require_employees = require_scope("employees")


# ---------------------------------------------------------------------------
# Import jobs
# ---------------------------------------------------------------------------


@router.post(
    "/employees/upload",
    response_model=ImportUploadResponse,
    status_code=201,
    summary="Upload an employee CSV",
    description=(
        "Stores the file, creates an import job in status 'validating' and "
        "returns the headers with a preview of the first rows. Import with "
        "POST /employees/import/{job_id} once the headers are mapped."
    ),
)
async def upload_employee_csv(
    http_request: Request,
    file: UploadFile = File(..., description="CSV file (.csv, max 10MB)"),
    api_key: ApiKey | None = Depends(_require_employees),
    session: AsyncSession = Depends(get_async_session),
) -> ImportUploadResponse:
    is_csv = (file.filename or "").lower().endswith(".csv") or file.content_type == "text/csv"
    if not is_csv:
        raise HTTPException(status_code=400, detail="Only CSV files are allowed")

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    if len(content) > settings.max_csv_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds the {settings.max_csv_bytes // (1024 * 1024)}MB limit.",
        )

    job_id = str(uuid.uuid4())
    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    file_name = f"employee_data_{job_id}.csv"
    file_path = upload_dir / file_name
    file_path.write_bytes(content)

    try:
        parsed = await asyncio.to_thread(parse_csv, file_path)
    except (ValueError, UnicodeDecodeError) as e:
        file_path.unlink(missing_ok=True)
        raise HTTPException(status_code=400, detail=f"Could not read CSV: {e}") from e

    job = ImportJob(
        id=job_id,
        file_name=file_name,
        original_name=file.filename or file_name,
        file_path=str(file_path),
        record_count=parsed.record_count,
        headers=parsed.headers,
        status=ImportJobStatus.VALIDATING,
        errors=[],
        api_key_id=api_key.id if api_key else None,
    )
    session.add(job)
    set_audit_context(http_request, resource=f"import_job:{job_id}")

    logger.info(
        "Employee CSV uploaded: job=%s, file=%s, rows=%d, headers=%s",
        job_id, file.filename, parsed.record_count, parsed.headers,
    )
    return ImportUploadResponse(
        job_id=job_id,
        file_name=file_name,
        headers=parsed.headers,
        preview=build_preview(parsed, settings.import_preview_rows),
        total_rows=parsed.record_count,
        status=ImportJobStatus.VALIDATING.value,
    )


@router.post(
    "/employees/import/{job_id}",
    response_model=ImportJobResponse,
    summary="Import an uploaded CSV",
    dependencies=[Depends(_require_employees)],
)
async def import_employees(
    job_id: str,
    http_request: Request,
    request: EmployeeImportRequest,
    session: AsyncSession = Depends(get_async_session),
) -> ImportJobResponse:
    job = await _get_job_or_404(session, job_id)
    set_audit_context(http_request, resource=f"import_job:{job_id}")

    if job.status == ImportJobStatus.PROCESSING:
        raise HTTPException(status_code=409, detail="Import already in progress")

    try:
        validate_header_mapping(request.header_mapping)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    try:
        parsed = await asyncio.to_thread(parse_csv, job.file_path)
    except FileNotFoundError as e:
        raise HTTPException(status_code=410, detail="Uploaded file no longer exists") from e

    job.status = ImportJobStatus.PROCESSING
    await session.flush()

    result = map_rows(parsed, request.header_mapping)
    try:
        imported = await upsert_employees(session, result.records, import_job_id=job.id)
    except IntegrityError as e:
        await session.rollback()
        job = await _get_job_or_404(session, job_id)
        job.status = ImportJobStatus.ERROR
        job.errors = [{"line": None, "message": f"Database error: {e.orig}"}]
        await session.commit()
        raise HTTPException(status_code=409, detail="Import conflicts with existing data") from e

    job.imported_count = imported
    job.error_count = len(result.errors)
    job.errors = result.errors
    job.warnings = result.warnings
    job.status = import_status(parsed.record_count, result.failed_rows)
    job.record_count = parsed.record_count
    await session.flush()
    await session.refresh(job)

    logger.info(
        "Import job %s %s: %d imported, %d failed rows, %d warnings",
        job.id, job.status.value, imported, result.failed_rows, result.warnings,
    )
    return ImportJobResponse.model_validate(job)


@router.get(
    "/employees/imports",
    response_model=ImportJobListResponse,
    summary="List import jobs",
    dependencies=[Depends(_require_employees)],
)
async def list_import_jobs(
    limit: int = Query(default=50, ge=1, le=500),
    session: AsyncSession = Depends(get_async_session),
) -> ImportJobListResponse:
    jobs = (
        await session.execute(
            select(ImportJob).order_by(ImportJob.created_at.desc()).limit(limit)
        )
    ).scalars().all()
    total = (await session.execute(select(func.count(ImportJob.id)))).scalar() or 0
    return ImportJobListResponse(
        jobs=[ImportJobResponse.model_validate(j) for j in jobs],
        total=total,
    )


@router.get(
    "/employees/imports/{job_id}",
    response_model=ImportJobResponse,
    summary="Get an import job",
    dependencies=[Depends(_require_employees)],
)
async def get_import_job(
    job_id: str,
    session: AsyncSession = Depends(get_async_session),
) -> ImportJobResponse:
    return ImportJobResponse.model_validate(await _get_job_or_404(session, job_id))


@router.delete(
    "/employees/imports/{job_id}",
    status_code=204,
    summary="Delete an import job and its file",
    dependencies=[Depends(_require_employees)],
)
async def delete_import_job(
    job_id: str,
    http_request: Request,
    session: AsyncSession = Depends(get_async_session),
) -> None:
    job = await _get_job_or_404(session, job_id)
    set_audit_context(http_request, resource=f"import_job:{job_id}")

    Path(job.file_path).unlink(missing_ok=True)
    await session.delete(job)
    logger.info("Deleted import job %s", job_id)


# ---------------------------------------------------------------------------
# Employees
# ---------------------------------------------------------------------------


@router.get(
    "/employees",
    response_model=EmployeeListResponse,
    summary="List employees",
    dependencies=[Depends(_require_employees)],
)
async def list_employees(
    status: EmployeeStatus | None = Query(default=None),
    department: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_async_session),
) -> EmployeeListResponse:
    filters = []
    if status is not None:
        filters.append(Employee.status == status)
    if department:
        filters.append(Employee.department == department)

    employees = (
        await session.execute(
            select(Employee)
            .where(*filters)
            .order_by(Employee.last_name, Employee.first_name, Employee.id)
            .offset(offset)
            .limit(limit)
        )
    ).scalars().all()
    total = (
        await session.execute(select(func.count(Employee.id)).where(*filters))
    ).scalar() or 0

    return EmployeeListResponse(
        employees=[EmployeeResponse.model_validate(e) for e in employees],
        total=total,
    )


@router.post(
    "/employees",
    response_model=EmployeeResponse,
    status_code=201,
    summary="Create an employee",
    dependencies=[Depends(_require_employees)],
)
async def create_employee(
    request: EmployeeCreateRequest,
    session: AsyncSession = Depends(get_async_session),
) -> EmployeeResponse:
    values = request.model_dump()
    values["employee_id"] = values["employee_id"] or f"EMP-{uuid.uuid4().hex[:8].upper()}"

    existing = (
        await session.execute(
            select(Employee.id).where(Employee.employee_id == values["employee_id"])
        )
    ).scalar_one_or_none()
    if existing is not None:
        raise HTTPException(
            status_code=409,
            detail=f"Employee {values['employee_id']} already exists",
        )

    employee = Employee(**values)
    session.add(employee)
    await session.flush()
    await session.refresh(employee)
    return EmployeeResponse.model_validate(employee)


@router.get(
    "/employees/{employee_id}",
    response_model=EmployeeResponse,
    summary="Get an employee",
    dependencies=[Depends(_require_employees)],
)
async def get_employee(
    employee_id: int,
    session: AsyncSession = Depends(get_async_session),
) -> EmployeeResponse:
    employee = await session.get(Employee, employee_id)
    if employee is None:
        raise HTTPException(status_code=404, detail=f"Employee {employee_id} not found")
    return EmployeeResponse.model_validate(employee)


async def _get_job_or_404(session: AsyncSession, job_id: str) -> ImportJob:
    job = await session.get(ImportJob, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Import job {job_id} not found")
    return job
