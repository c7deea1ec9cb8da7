# =============================================================================
# Knowledge Base API — Add, Search, Delete, File Upload
# =============================================================================
#
#   POST   /knowledge                    add text (chunked, embedded inline)
#   POST   /knowledge/search             similarity search
#   DELETE /knowledge                    delete entries by id
#   POST   /knowledge/upload             upload a file → Celery (202)
#   GET    /knowledge/uploads/{task_id}  poll an upload
#
# Adding text runs in a worker thread (embedding is a blocking HTTP call);
# files go through Celery because PDF conversion can take minutes.
# =============================================================================

import asyncio
import logging
import uuid
from pathlib import Path

from celery.result import AsyncResult
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payrollpro.api.deps import require_scope, set_audit_context
from payrollpro.config import settings
from payrollpro.db.engine import get_async_session
from payrollpro.db.models import KnowledgeUpload, UploadStatus
from payrollpro.models.requests import (
    KnowledgeAddRequest,
    KnowledgeDeleteRequest,
    KnowledgeSearchRequest,
)
from payrollpro.models.responses import (
    KnowledgeAddResponse,
    KnowledgeDeleteResponse,
    KnowledgeEntryResult,
    KnowledgeSearchResponse,
    KnowledgeUploadResponse,
    KnowledgeUploadStatusResponse,
)
from payrollpro.services.knowledge import (
    add_to_knowledge_base,
    delete_entries,
    search_knowledge_base,
)
from payrollpro.services.parser import SUPPORTED_EXTENSIONS, is_supported
from payrollpro.workers.tasks import ingest_knowledge_file

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Knowledge Base"],
    dependencies=[Depends(require_scope("knowledge"))],
)


@router.post(
    "/knowledge",
    response_model=KnowledgeAddResponse,
    status_code=201,
    summary="Add text to the knowledge base",
)
async def add_knowledge(
    http_request: Request,
    request: KnowledgeAddRequest,
) -> KnowledgeAddResponse:
    set_audit_context(http_request, resource=f"knowledge:{request.category}")
    try:
        ids = await asyncio.to_thread(
            add_to_knowledge_base,
            request.content,
            request.category,
            request.metadata,
            request.source,
        )
    except ValueError as e:
        # Empty content after chunking, or no embedding key configured
        raise HTTPException(status_code=400, detail=str(e)) from e

    logger.info("Added %d knowledge entries (category=%s)", len(ids), request.category)
    return KnowledgeAddResponse(ids=ids, category=request.category, chunk_count=len(ids))


@router.post(
    "/knowledge/search",
    response_model=KnowledgeSearchResponse,
    summary="Search the knowledge base",
)
async def search_knowledge(
    http_request: Request,
    request: KnowledgeSearchRequest,
) -> KnowledgeSearchResponse:
    set_audit_context(http_request, query=request.query)
    try:
        results = await search_knowledge_base(
            request.query,
            category=request.category,
            limit=request.limit,
            threshold=request.threshold,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=503,
            detail=f"Service configuration error: {e}",
        ) from e

    return KnowledgeSearchResponse(
        query=request.query,
        results=[
            KnowledgeEntryResult(
                id=r.entry_id,
                content=r.content,
                category=r.category,
                source=r.source,
                similarity_score=r.similarity_score,
                metadata=r.metadata,
            )
            for r in results
        ],
        total=len(results),
    )


@router.delete(
    "/knowledge",
    response_model=KnowledgeDeleteResponse,
    summary="Delete knowledge entries",
)
async def delete_knowledge(request: KnowledgeDeleteRequest) -> KnowledgeDeleteResponse:
    deleted = await delete_entries(request.ids)
    return KnowledgeDeleteResponse(deleted=deleted)


# ---------------------------------------------------------------------------
# File upload
# ---------------------------------------------------------------------------


@router.post(
    "/knowledge/upload",
    response_model=KnowledgeUploadResponse,
    status_code=202,
    summary="Upload a file into the knowledge base",
    description=(
        "Accepts txt, md, json, csv, xlsx and pdf. Returns a task id; poll "
        "GET /knowledge/uploads/{task_id} until the status is SUCCESS."
    ),
)
async def upload_knowledge_file(
    http_request: Request,
    file: UploadFile = File(...),
    category: str = Form(default="general", min_length=1, max_length=100),
    session: AsyncSession = Depends(get_async_session),
) -> KnowledgeUploadResponse:
    if not file.filename or not is_supported(file.filename):
        raise HTTPException(
            status_code=400,
            detail="Unsupported file type. Supported formats: "
            + ", ".join(sorted(e.lstrip(".") for e in SUPPORTED_EXTENSIONS)),
        )

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    if len(content) > settings.max_knowledge_file_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds {settings.max_knowledge_file_bytes} bytes.",
        )

    upload = KnowledgeUpload(
        filename=file.filename,
        file_size=len(content),
        category=category,
        status=UploadStatus.PENDING,
    )
    session.add(upload)
    await session.flush()

    upload_dir = Path(settings.upload_dir) / "knowledge"
    upload_dir.mkdir(parents=True, exist_ok=True)
    file_path = upload_dir / f"{upload.id}_{uuid.uuid4().hex[:8]}{Path(file.filename).suffix}"
    file_path.write_bytes(content)

    task = ingest_knowledge_file.delay(
        upload_id=upload.id,
        file_path=str(file_path),
        original_name=file.filename,
        category=category,
    )
    upload.celery_task_id = task.id
    set_audit_context(http_request, resource=f"knowledge_upload:{upload.id}")

    logger.info(
        "Dispatched knowledge ingestion: upload_id=%d, task_id=%s, file=%s",
        upload.id, task.id, file.filename,
    )
    return KnowledgeUploadResponse(
        upload_id=upload.id,
        task_id=task.id,
        message=f"File '{file.filename}' uploaded. Processing in progress.",
    )


@router.get(
    "/knowledge/uploads/{task_id}",
    response_model=KnowledgeUploadStatusResponse,
    summary="Check a knowledge upload",
)
async def get_upload_status(
    task_id: str,
    session: AsyncSession = Depends(get_async_session),
) -> KnowledgeUploadStatusResponse:
    result = AsyncResult(task_id, app=ingest_knowledge_file.app)
    status = result.status

    upload = (
        await session.execute(
            select(KnowledgeUpload).where(KnowledgeUpload.celery_task_id == task_id)
        )
    ).scalar_one_or_none()

    error = None
    if status == "FAILURE":
        error = str(result.result) if result.result else "Unknown error"
    elif upload is not None and upload.status == UploadStatus.FAILED:
        error = upload.error_message

    return KnowledgeUploadStatusResponse(
        task_id=task_id,
        status=status,
        upload_id=upload.id if upload else None,
        filename=upload.filename if upload else None,
        category=upload.category if upload else None,
        entry_count=upload.entry_count if upload else None,
        error=error,
    )
