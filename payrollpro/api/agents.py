# =============================================================================
# Agents API — AgentBrain and Single-Agent Endpoints
# =============================================================================
#
#   GET    /agents                     registered agents
#   POST   /agents/query               ask one agent directly
#   POST   /agents/brain               route, fan out, synthesize
#   POST   /agents/multi               same graph (kept for older clients)
#   GET    /agents/memory/{session}    recent exchanges for a session
#   DELETE /agents/memory/{session}    forget a session
#
# The heavy lifting happens in payrollpro.agents; these handlers validate,
# map errors to status codes, and schedule metric + memory persistence as
# background tasks with their own DB sessions.
#
# ERRORS:
#   empty query                    → 400 "Query is required"
#   unknown agent type             → 400 "Invalid agent type"
#   missing API key (config)       → 503
#   open circuit (single agent)    → 503 + Retry-After
#   other LLM failure (single)     → 502
#   agent failures inside brain    → 200, reported per contribution
# =============================================================================

from __future__ import annotations

import logging
import time

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from payrollpro.agents.brain import (
    BrainResult,
    add_memory,
    get_memory,
    process_agent_query,
    process_multi_agent_query,
    reset_memory,
)
from payrollpro.agents.specialists import get_available_agents, normalise_agent_type
from payrollpro.api.deps import require_scope, set_audit_context
from payrollpro.db.engine import async_session_factory, get_async_session
from payrollpro.db.models import AgentQueryMetric
from payrollpro.models.requests import AgentQueryRequest, BrainQueryRequest
from payrollpro.models.responses import (
    AgentContributionResponse,
    AgentInfo,
    AgentListResponse,
    AgentQueryResponse,
    BrainResponse,
    MemoryEntry,
    MemoryResetResponse,
    MemoryResponse,
)
from payrollpro.services.llm import CircuitOpenError
from payrollpro.services.pricing import estimate_cost, sum_costs

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Agents"],
    dependencies=[Depends(require_scope("agents"))],
)


def _require_query(query: str) -> str:
    query = query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Query is required")
    return query


# ---------------------------------------------------------------------------
# GET /agents — Registered agents
# ---------------------------------------------------------------------------


@router.get("/agents", response_model=AgentListResponse, summary="List agents")
async def list_agents() -> AgentListResponse:
    return AgentListResponse(
        agents=[AgentInfo(**agent) for agent in get_available_agents()],
    )


# ---------------------------------------------------------------------------
# POST /agents/query — Single agent
# ---------------------------------------------------------------------------


@router.post(
    "/agents/query",
    response_model=AgentQueryResponse,
    summary="Ask a single agent",
    description=(
        "Send a question straight to one agent (tax, expense, compliance, "
        "data, research or reasoning) without routing."
    ),
)
async def query_agent(
    http_request: Request,
    request: AgentQueryRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_async_session),
) -> AgentQueryResponse:
    query = _require_query(request.query)
    agent_type = normalise_agent_type(request.agent_type)
    if agent_type is None:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid agent type: {request.agent_type}",
        )

    set_audit_context(http_request, resource=f"agent:{agent_type}", query=query)

    history = (
        await get_memory(session, request.session_id) if request.session_id else None
    )

    start_time = time.monotonic()
    try:
        result = await process_agent_query(query, agent_type, history=history)
    except CircuitOpenError as e:
        raise HTTPException(
            status_code=503,
            detail=str(e),
            headers={"Retry-After": str(int(e.retry_after) + 1)},
        ) from e
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(
            status_code=503,
            detail=f"Service configuration error: {e}",
        ) from e
    except Exception as e:
        logger.exception("Agent %s failed: %s", agent_type, e)
        raise HTTPException(
            status_code=502,
            detail=f"LLM service error: {e}",
        ) from e
    total_latency_ms = int((time.monotonic() - start_time) * 1000)

    background_tasks.add_task(
        _persist_metric,
        query=query,
        mode="single",
        agent_types=[agent_type],
        query_type=None,
        model=result.model,
        synthesis_mode=None,
        total_latency_ms=total_latency_ms,
        input_tokens=result.input_tokens,
        output_tokens=result.output_tokens,
        estimated_cost_usd=estimate_cost(
            result.provider_type, result.model,
            result.input_tokens, result.output_tokens,
        ),
        failed_agents=0,
    )
    if request.session_id:
        background_tasks.add_task(
            _persist_memory,
            session_id=request.session_id,
            query=query,
            response=result.response,
            query_type=None,
            agents=[agent_type],
        )

    return AgentQueryResponse(
        response=result.response,
        agent_type=result.agent_type,
        agent_name=result.agent_name,
        model=result.model,
        latency_ms=result.latency_ms,
        input_tokens=result.input_tokens,
        output_tokens=result.output_tokens,
        confidence=result.confidence,
        session_id=request.session_id,
    )


# ---------------------------------------------------------------------------
# POST /agents/brain — Multi-agent coordinator
# ---------------------------------------------------------------------------


@router.post(
    "/agents/brain",
    response_model=BrainResponse,
    summary="Ask the AgentBrain",
    description=(
        "Classify the question, gather knowledge-base and web context, "
        "consult the relevant specialist agents concurrently and merge "
        "their answers."
    ),
)
@router.post(
    "/agents/multi",
    response_model=BrainResponse,
    summary="Relevance-scored multi-agent query",
    include_in_schema=False,
)
async def query_brain(
    http_request: Request,
    request: BrainQueryRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_async_session),
) -> BrainResponse:
    query = _require_query(request.query)
    set_audit_context(http_request, resource="agent:brain", query=query)

    history = (
        await get_memory(session, request.session_id) if request.session_id else None
    )

    start_time = time.monotonic()
    try:
        result = await process_multi_agent_query(query, history=history)
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(
            status_code=503,
            detail=f"Service configuration error: {e}",
        ) from e
    except Exception as e:
        logger.exception("AgentBrain failed: %s", e)
        raise HTTPException(
            status_code=502,
            detail=f"LLM service error: {e}",
        ) from e
    total_latency_ms = int((time.monotonic() - start_time) * 1000)

    cost = sum_costs(result.usage) if result.usage else None
    background_tasks.add_task(
        _persist_metric,
        query=query,
        mode="brain",
        agent_types=result.consulted_agents,
        query_type=result.query_analysis.query_type,
        model=result.model,
        synthesis_mode=result.synthesis_mode,
        total_latency_ms=total_latency_ms,
        input_tokens=result.input_tokens,
        output_tokens=result.output_tokens,
        estimated_cost_usd=cost,
        failed_agents=sum(1 for c in result.agent_contributions if not c.ok),
    )
    if request.session_id:
        background_tasks.add_task(
            _persist_memory,
            session_id=request.session_id,
            query=query,
            response=result.response,
            query_type=result.query_analysis.query_type,
            agents=result.consulted_agents,
        )

    return _to_brain_response(result, cost, request.session_id)


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


@router.get(
    "/agents/memory/{session_id}",
    response_model=MemoryResponse,
    summary="Recent exchanges for a session",
)
async def read_memory(
    session_id: str,
    session: AsyncSession = Depends(get_async_session),
) -> MemoryResponse:
    entries = await get_memory(session, session_id)
    return MemoryResponse(
        session_id=session_id,
        entries=[MemoryEntry(**entry) for entry in entries],
    )


@router.delete(
    "/agents/memory/{session_id}",
    response_model=MemoryResetResponse,
    summary="Forget a session",
)
async def clear_memory(
    session_id: str,
    session: AsyncSession = Depends(get_async_session),
) -> MemoryResetResponse:
    deleted = await reset_memory(session, session_id)
    return MemoryResetResponse(session_id=session_id, deleted=deleted)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_brain_response(
    result: BrainResult,
    cost: float | None,
    session_id: str | None,
) -> BrainResponse:
    return BrainResponse(
        response=result.response,
        query_analysis=result.query_analysis,
        agent_contributions=[
            AgentContributionResponse(
                agent_type=c.agent_type,
                agent_name=c.agent_name,
                query=c.query,
                response=c.response,
                confidence=c.confidence,
                model=c.model,
                latency_ms=c.latency_ms,
                status=c.status,
                error=c.error,
            )
            for c in result.agent_contributions
        ],
        consulted_agents=result.consulted_agents,
        sources=result.sources,
        reasoning_chain=result.reasoning_chain,
        model=result.model,
        synthesis_mode=result.synthesis_mode,
        input_tokens=result.input_tokens,
        output_tokens=result.output_tokens,
        estimated_cost_usd=cost,
        session_id=session_id,
    )


async def _persist_metric(
    query: str,
    mode: str,
    agent_types: list[str],
    query_type: str | None,
    model: str | None,
    synthesis_mode: str | None,
    total_latency_ms: int,
    input_tokens: int,
    output_tokens: int,
    estimated_cost_usd: float | None,
    failed_agents: int,
) -> None:
    """Persist an AgentQueryMetric row using its own session."""
    try:
        async with async_session_factory() as session:
            session.add(AgentQueryMetric(
                query=query,
                mode=mode,
                agent_types=agent_types,
                query_type=query_type,
                model=model,
                synthesis_mode=synthesis_mode,
                total_latency_ms=total_latency_ms,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                estimated_cost_usd=estimated_cost_usd,
                failed_agents=failed_agents,
            ))
            await session.commit()
    except Exception as e:
        logger.warning("Failed to persist agent metric: %s", e)


async def _persist_memory(
    session_id: str,
    query: str,
    response: str,
    query_type: str | None,
    agents: list[str],
) -> None:
    try:
        async with async_session_factory() as session:
            await add_memory(
                session, session_id, query, response,
                query_type=query_type, agents=agents,
            )
            await session.commit()
    except Exception as e:
        logger.warning("Failed to save memory for session %s: %s", session_id, e)
