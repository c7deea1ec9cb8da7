# =============================================================================
# Documents API — Invoices, Estimates and Bills
# =============================================================================
#
#   GET    /documents          list (filter by type and status)
#   POST   /documents          create; number and due date generated if absent
#   GET    /documents/{id}
#   PATCH  /documents/{id}     partial update; line items replaced when sent
#   DELETE /documents/{id}
#
# Totals are always recomputed from the line items (services/documents.py);
# client-sent amounts are never stored.
# =============================================================================

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payrollpro.api.deps import require_scope, set_audit_context
from payrollpro.db.engine import get_async_session
from payrollpro.db.models import DocumentStatus, DocumentType, FinancialDocument, LineItem
from payrollpro.models.requests import (
    DocumentCreateRequest,
    DocumentUpdateRequest,
    LineItemRequest,
)
from payrollpro.models.responses import DocumentListResponse, DocumentResponse
from payrollpro.services.documents import (
    DEFAULT_TERMS,
    apply_totals,
    default_due_date,
    next_document_number,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Documents"],
    dependencies=[Depends(require_scope("documents"))],
)


def _line_items(items: list[LineItemRequest]) -> list[LineItem]:
    return [
        LineItem(
            position=position,
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            tax_rate=item.tax_rate,
        )
        for position, item in enumerate(items)
    ]


@router.get("/documents", response_model=DocumentListResponse, summary="List documents")
async def list_documents(
    document_type: DocumentType | None = Query(default=None, alias="type"),
    status: DocumentStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    session: AsyncSession = Depends(get_async_session),
) -> DocumentListResponse:
    filters = []
    if document_type is not None:
        filters.append(FinancialDocument.document_type == document_type)
    if status is not None:
        filters.append(FinancialDocument.status == status)

    documents = (
        await session.execute(
            select(FinancialDocument)
            .where(*filters)
            .order_by(FinancialDocument.issue_date.desc(), FinancialDocument.id.desc())
            .limit(limit)
        )
    ).scalars().all()
    total = (
        await session.execute(select(func.count(FinancialDocument.id)).where(*filters))
    ).scalar() or 0

    return DocumentListResponse(
        documents=[DocumentResponse.model_validate(d) for d in documents],
        total=total,
    )


@router.post(
    "/documents",
    response_model=DocumentResponse,
    status_code=201,
    summary="Create an invoice, estimate or bill",
)
async def create_document(
    http_request: Request,
    request: DocumentCreateRequest,
    session: AsyncSession = Depends(get_async_session),
) -> DocumentResponse:
    number = request.number or await next_document_number(session, request.document_type)
    duplicate = (
        await session.execute(
            select(FinancialDocument.id).where(FinancialDocument.number == number)
        )
    ).scalar_one_or_none()
    if duplicate is not None:
        raise HTTPException(status_code=409, detail=f"Document number {number} already exists")

    document = FinancialDocument(
        document_type=request.document_type,
        number=number,
        client_name=request.client_name,
        client_email=request.client_email,
        client_address=request.client_address,
        issue_date=request.issue_date,
        due_date=request.due_date or default_due_date(request.issue_date),
        status=request.status,
        notes=request.notes,
        terms=request.terms or DEFAULT_TERMS,
        discount=request.discount,
        line_items=_line_items(request.line_items),
    )
    apply_totals(document)
    session.add(document)
    await session.flush()
    await session.refresh(document)

    set_audit_context(http_request, resource=f"document:{document.number}")
    logger.info(
        "Created %s %s: total=%.2f (%d items)",
        document.document_type.value, document.number, document.total,
        len(document.line_items),
    )
    return DocumentResponse.model_validate(document)


@router.get("/documents/{document_id}", response_model=DocumentResponse, summary="Get a document")
async def get_document(
    document_id: int,
    session: AsyncSession = Depends(get_async_session),
) -> DocumentResponse:
    return DocumentResponse.model_validate(await _get_document_or_404(session, document_id))


@router.patch(
    "/documents/{document_id}",
    response_model=DocumentResponse,
    summary="Update a document",
)
async def update_document(
    document_id: int,
    http_request: Request,
    request: DocumentUpdateRequest,
    session: AsyncSession = Depends(get_async_session),
) -> DocumentResponse:
    document = await _get_document_or_404(session, document_id)
    set_audit_context(http_request, resource=f"document:{document.number}")

    changes = request.model_dump(exclude_unset=True, exclude={"line_items"})
    for attr, value in changes.items():
        if value is not None:
            setattr(document, attr, value)
    if request.line_items is not None:
        document.line_items = _line_items(request.line_items)

    if document.due_date < document.issue_date:
        raise HTTPException(status_code=400, detail="due_date cannot be before issue_date")

    apply_totals(document)
    await session.flush()
    await session.refresh(document)
    return DocumentResponse.model_validate(document)


@router.delete("/documents/{document_id}", status_code=204, summary="Delete a document")
async def delete_document(
    document_id: int,
    http_request: Request,
    session: AsyncSession = Depends(get_async_session),
) -> None:
    document = await _get_document_or_404(session, document_id)
    set_audit_context(http_request, resource=f"document:{document.number}")
    await session.delete(document)
    logger.info("Deleted document %s", document.number)


async def _get_document_or_404(session: AsyncSession, document_id: int) -> FinancialDocument:
    document = await session.get(FinancialDocument, document_id)
    if document is None:
        raise HTTPException(status_code=404, detail=f"Document {document_id} not found")
    return document
