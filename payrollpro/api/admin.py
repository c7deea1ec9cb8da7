# =============================================================================
# Admin API — API Keys, Audit Log, Circuit Breakers, Agent Metrics
# =============================================================================
#
# Every endpoint requires the "admin" scope. A key without explicit scopes
# can do everything except this.
#
# DESIGN DECISION: The raw API key is only returned ONCE at creation
# (POST /admin/keys). After that, only the key_prefix is visible.
#
# DESIGN DECISION: PATCH with is_active=false disables a key and keeps its
# audit history attached; DELETE removes the row.
# =============================================================================

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payrollpro.api.deps import check_scope, get_current_api_key
from payrollpro.db.engine import get_async_session
from payrollpro.db.models import AgentQueryMetric, ApiKey, AuditLog
from payrollpro.models.requests import CreateApiKeyRequest, UpdateApiKeyRequest
from payrollpro.models.responses import (
    AgentMetricSummary,
    ApiKeyCreatedResponse,
    ApiKeyListResponse,
    ApiKeyResponse,
    AuditLogListResponse,
    AuditLogResponse,
    CircuitStateResponse,
    MetricsResponse,
)
from payrollpro.services.auth import generate_api_key, validate_scopes
from payrollpro.services.llm import circuit_snapshots

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Admin"])


# ---------------------------------------------------------------------------
# POST /admin/keys — Create API Key
# ---------------------------------------------------------------------------


@router.post(
    "/admin/keys",
    response_model=ApiKeyCreatedResponse,
    status_code=201,
    summary="Create a new API key",
    description=(
        "Generate a new API key with optional scopes, rate limit and expiry. "
        "The raw key is only returned in this response, so store it securely."
    ),
)
async def create_api_key(
    request: CreateApiKeyRequest,
    api_key: ApiKey | None = Depends(get_current_api_key),
    session: AsyncSession = Depends(get_async_session),
) -> ApiKeyCreatedResponse:
    """Create a new API key and return it (once)."""
    check_scope(api_key, "admin")
    scopes = _validated_scopes(request.scopes)

    raw_key, key_prefix, key_hash = generate_api_key()

    new_key = ApiKey(
        name=request.name,
        key_prefix=key_prefix,
        key_hash=key_hash,
        scopes=scopes,
        rate_limit_rpm=request.rate_limit_rpm,
        expires_at=request.expires_at,
    )
    session.add(new_key)
    await session.flush()
    await session.refresh(new_key)

    logger.info(
        "API key created: id=%d, name='%s', prefix='%s', scopes=%s",
        new_key.id, new_key.name, new_key.key_prefix, new_key.scopes,
    )

    return ApiKeyCreatedResponse(
        id=new_key.id,
        name=new_key.name,
        key_prefix=new_key.key_prefix,
        raw_key=raw_key,
        scopes=new_key.scopes,
        rate_limit_rpm=new_key.rate_limit_rpm,
        created_at=new_key.created_at,
        expires_at=new_key.expires_at,
    )


# ---------------------------------------------------------------------------
# GET /admin/keys — List API Keys
# ---------------------------------------------------------------------------


@router.get(
    "/admin/keys",
    response_model=ApiKeyListResponse,
    summary="List all API keys",
)
async def list_api_keys(
    api_key: ApiKey | None = Depends(get_current_api_key),
    session: AsyncSession = Depends(get_async_session),
) -> ApiKeyListResponse:
    """List all API keys (never includes raw key or hash)."""
    check_scope(api_key, "admin")

    result = await session.execute(select(ApiKey).order_by(ApiKey.created_at.desc()))
    keys = list(result.scalars().all())

    return ApiKeyListResponse(
        keys=[ApiKeyResponse.model_validate(k) for k in keys],
        total=len(keys),
    )


@router.get(
    "/admin/keys/{key_id}",
    response_model=ApiKeyResponse,
    summary="Get API key details",
)
async def get_api_key(
    key_id: int,
    api_key: ApiKey | None = Depends(get_current_api_key),
    session: AsyncSession = Depends(get_async_session),
) -> ApiKeyResponse:
    check_scope(api_key, "admin")
    return ApiKeyResponse.model_validate(await _get_key_or_404(session, key_id))


# ---------------------------------------------------------------------------
# PATCH /admin/keys/{key_id} — Update API Key
# ---------------------------------------------------------------------------


@router.patch(
    "/admin/keys/{key_id}",
    response_model=ApiKeyResponse,
    summary="Update an API key",
)
async def update_api_key(
    key_id: int,
    request: UpdateApiKeyRequest,
    api_key: ApiKey | None = Depends(get_current_api_key),
    session: AsyncSession = Depends(get_async_session),
) -> ApiKeyResponse:
    """Partial update for an API key (name, scopes, active, etc.)."""
    check_scope(api_key, "admin")

    target = await _get_key_or_404(session, key_id)

    if request.name is not None:
        target.name = request.name
    if request.scopes is not None:
        target.scopes = _validated_scopes(request.scopes)
    if request.rate_limit_rpm is not None:
        target.rate_limit_rpm = request.rate_limit_rpm
    if request.is_active is not None:
        target.is_active = request.is_active
    if request.expires_at is not None:
        target.expires_at = request.expires_at

    await session.flush()
    await session.refresh(target)

    logger.info("API key updated: id=%d, name='%s'", target.id, target.name)
    return ApiKeyResponse.model_validate(target)


@router.delete(
    "/admin/keys/{key_id}",
    status_code=204,
    summary="Delete an API key",
)
async def delete_api_key(
    key_id: int,
    api_key: ApiKey | None = Depends(get_current_api_key),
    session: AsyncSession = Depends(get_async_session),
) -> None:
    check_scope(api_key, "admin")

    target = await _get_key_or_404(session, key_id)
    await session.delete(target)

    logger.info("API key deleted: id=%d, name='%s'", key_id, target.name)


# ---------------------------------------------------------------------------
# GET /admin/audit — Audit Log
# ---------------------------------------------------------------------------


@router.get(
    "/admin/audit",
    response_model=AuditLogListResponse,
    summary="View audit logs",
    description="Query the audit trail. Filter by API key or endpoint name.",
)
async def get_audit_logs(
    api_key_id: int | None = Query(default=None),
    endpoint: str | None = Query(default=None, description="e.g. agents, documents"),
    limit: int = Query(default=50, ge=1, le=500),
    api_key: ApiKey | None = Depends(get_current_api_key),
    session: AsyncSession = Depends(get_async_session),
) -> AuditLogListResponse:
    check_scope(api_key, "admin")

    filters = []
    if api_key_id is not None:
        filters.append(AuditLog.api_key_id == api_key_id)
    if endpoint is not None:
        filters.append(AuditLog.endpoint == endpoint)

    result = await session.execute(
        select(AuditLog)
        .where(*filters)
        .order_by(AuditLog.created_at.desc())
        .limit(limit)
    )
    logs = list(result.scalars().all())
    total = (
        await session.execute(select(func.count(AuditLog.id)).where(*filters))
    ).scalar() or 0

    return AuditLogListResponse(
        logs=[AuditLogResponse.model_validate(log) for log in logs],
        total=total,
    )


# ---------------------------------------------------------------------------
# Circuit breakers and agent metrics
# ---------------------------------------------------------------------------


@router.get(
    "/admin/circuits",
    response_model=list[CircuitStateResponse],
    summary="LLM provider circuit breakers",
    description="State of every provider circuit breaker in this process.",
)
async def get_circuits(
    api_key: ApiKey | None = Depends(get_current_api_key),
) -> list[CircuitStateResponse]:
    check_scope(api_key, "admin")
    return [CircuitStateResponse(**snapshot) for snapshot in circuit_snapshots()]


@router.get(
    "/admin/metrics",
    response_model=MetricsResponse,
    summary="Agent usage and cost",
)
async def get_agent_metrics(
    hours: int = Query(default=24, ge=1, le=24 * 90),
    api_key: ApiKey | None = Depends(get_current_api_key),
    session: AsyncSession = Depends(get_async_session),
) -> MetricsResponse:
    """Aggregate AgentQueryMetric rows per mode over the last `hours`."""
    check_scope(api_key, "admin")

    since = datetime.now(UTC) - timedelta(hours=hours)
    rows = (
        await session.execute(
            select(
                AgentQueryMetric.mode,
                func.count(AgentQueryMetric.id),
                func.avg(AgentQueryMetric.total_latency_ms),
                func.coalesce(func.sum(AgentQueryMetric.input_tokens), 0),
                func.coalesce(func.sum(AgentQueryMetric.output_tokens), 0),
                func.sum(AgentQueryMetric.estimated_cost_usd),
                func.coalesce(func.sum(AgentQueryMetric.failed_agents), 0),
            )
            .where(AgentQueryMetric.created_at >= since)
            .group_by(AgentQueryMetric.mode)
            .order_by(AgentQueryMetric.mode)
        )
    ).all()

    by_mode = [
        AgentMetricSummary(
            mode=mode,
            query_count=count,
            avg_latency_ms=round(float(avg_latency), 1) if avg_latency is not None else None,
            total_input_tokens=int(input_tokens),
            total_output_tokens=int(output_tokens),
            total_estimated_cost_usd=round(float(cost), 6) if cost is not None else None,
            failed_agents=int(failed),
        )
        for mode, count, avg_latency, input_tokens, output_tokens, cost, failed in rows
    ]

    return MetricsResponse(
        total_queries=sum(s.query_count for s in by_mode),
        time_range_hours=hours,
        by_mode=by_mode,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _validated_scopes(scopes: list[str] | None) -> list[str] | None:
    try:
        return validate_scopes(scopes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


async def _get_key_or_404(session: AsyncSession, key_id: int) -> ApiKey:
    """Load an ApiKey by ID or raise 404."""
    target = await session.get(ApiKey, key_id)
    if target is None:
        raise HTTPException(status_code=404, detail=f"API key {key_id} not found.")
    return target
