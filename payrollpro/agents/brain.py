# =============================================================================
# AgentBrain — Multi-Agent Coordinator (LangGraph)
# =============================================================================
#
# Routes a payroll question to one or more specialist agents and merges
# their answers into a single response.
#
# GRAPH TOPOLOGY:
#   START ──▶ classify ──▶ gather_context ──▶ consult ──▶ synthesize ──▶ END
#
#   classify        router LLM → QueryAnalysis (keyword fallback) → agents
#   gather_context  knowledge base and/or web search, failures recorded only
#   consult         bounded fan-out, one wait_for timeout per agent
#   synthesize      rank, then single answer / LLM integration / merge
#
# DESIGN DECISION: Degrade, don't abort.
# Every node catches the failures it can survive and records them in the
# reasoning chain. A timed-out or failing agent becomes a contribution with
# status "timeout" / "error" / "circuit_open"; its siblings are unaffected.
#
# DESIGN DECISION: Deterministic ranking.
# Successful contributions are ordered by (confidence desc, registry order),
# never by completion order, so the merged answer and the contribution list
# are stable across runs with the same agent answers.
#
# DESIGN DECISION: Graph compiled once at module level (as for any
# LangGraph graph here); the per-request provider override travels in the
# state. No checkpointer is configured, so non-serialisable values are fine.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from langgraph.graph import END, START, StateGraph
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from typing_extensions import TypedDict

from payrollpro.agents.router import QueryAnalysis, classify_query, select_agents
from payrollpro.agents.specialists import (
    default_sub_query,
    get_agent_spec,
    registry_index,
    run_agent,
)
from payrollpro.config import settings
from payrollpro.db.models import BrainMemory
from payrollpro.services.expenses import estimate_confidence
from payrollpro.services.knowledge import search_knowledge_base
from payrollpro.services.llm import CircuitOpenError, LLMProvider, get_llm_provider
from payrollpro.services.web_search import (
    WebSearchUnavailable,
    enhance_financial_query,
    enhance_state_query,
    enhance_tax_query,
    extract_web_content,
    search_web,
)

logger = logging.getLogger(__name__)

NO_ANSWER_MESSAGE = (
    "I'm sorry, none of the specialist agents could answer this question "
    "right now. Please try again in a few moments."
)

INTEGRATION_PROMPT = (
    "You are integrating answers from specialized payroll agents into one "
    "response for the user. Combine them into a single coherent answer: "
    "keep every concrete figure, deadline and recommendation, resolve "
    "overlaps, and point out any disagreement between the agents. Do not "
    "mention the agents themselves."
)

# Knowledge-base category searched first for each query type
_KNOWLEDGE_CATEGORIES = {
    "tax": "tax",
    "expense": "expense",
    "compliance": "compliance",
}


# ---------------------------------------------------------------------------
# Result Types
# ---------------------------------------------------------------------------


@dataclass
class AgentContribution:
    agent_type: str
    agent_name: str
    query: str
    response: str = ""
    confidence: float = 0.0
    model: str | None = None
    latency_ms: int = 0
    status: str = "ok"           # ok | timeout | error | circuit_open
    error: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    provider_type: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass
class BrainResult:
    """Final output of the coordinator."""

    response: str
    query_analysis: QueryAnalysis
    agent_contributions: list[AgentContribution]
    consulted_agents: list[str]
    sources: list[dict[str, Any]]
    reasoning_chain: list[dict[str, Any]]
    model: str | None
    synthesis_mode: str          # single | llm | merge | none
    input_tokens: int = 0
    output_tokens: int = 0
    usage: list[tuple[str, str, int, int]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "response": self.response,
            "query_analysis": self.query_analysis.model_dump(),
            "agent_contributions": [asdict(c) for c in self.agent_contributions],
            "consulted_agents": self.consulted_agents,
            "sources": self.sources,
            "reasoning_chain": self.reasoning_chain,
            "model": self.model,
            "synthesis_mode": self.synthesis_mode,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }


# ---------------------------------------------------------------------------
# Graph State
# ---------------------------------------------------------------------------


class BrainState(TypedDict, total=False):
    """
    State flowing through the brain graph.

    total=False: nodes return only the keys they change. List-valued keys
    (reasoning_chain, usage) are replaced wholesale, so nodes extend a copy.
    """

    # --- Input ---
    query: str
    history: list[dict]
    llm_override: LLMProvider | None

    # --- classify ---
    analysis: QueryAnalysis
    selected_agents: list[str]

    # --- gather_context ---
    context: str
    sources: list[dict[str, Any]]

    # --- consult ---
    contributions: list[AgentContribution]

    # --- synthesize ---
    response: str
    model: str | None
    synthesis_mode: str

    # --- Accumulated ---
    reasoning_chain: list[dict[str, Any]]
    usage: list[tuple[str, str, int, int]]


def _step(state: BrainState, step: str, **data: Any) -> list[dict[str, Any]]:
    """Reasoning chain with one more step appended."""
    entry = {
        "step": step,
        "timestamp": datetime.now(UTC).isoformat(),
        "data": data,
    }
    return [*state.get("reasoning_chain", []), entry]


# ---------------------------------------------------------------------------
# Node: classify
# ---------------------------------------------------------------------------


async def classify_node(state: BrainState) -> dict:
    llm = state.get("llm_override") or get_llm_provider()
    analysis = await classify_query(state["query"], llm, state.get("history"))
    selected = select_agents(analysis)

    logger.info(
        "Brain classify: type=%s, source=%s, agents=%s",
        analysis.query_type, analysis.source, selected,
    )
    return {
        "analysis": analysis,
        "selected_agents": selected,
        "reasoning_chain": _step(
            state, "classify",
            query_type=analysis.query_type,
            source=analysis.source,
            selected_agents=selected,
            plan=analysis.plan,
        ),
    }


# ---------------------------------------------------------------------------
# Node: gather_context
# ---------------------------------------------------------------------------


def _web_query(query: str, analysis: QueryAnalysis) -> str:
    if analysis.state:
        return enhance_state_query(query, analysis.state)
    if analysis.query_type == "tax":
        return enhance_tax_query(query)
    if analysis.query_type == "compliance":
        return enhance_financial_query(query)
    return query


async def _knowledge_context(
    query: str, analysis: QueryAnalysis,
) -> tuple[str, list[dict]]:
    category = _KNOWLEDGE_CATEGORIES.get(analysis.query_type)
    results = await search_knowledge_base(query, category=category)
    if not results and category is not None:
        results = await search_knowledge_base(query)
    if not results:
        return "", []

    blocks = [f"[{i}] ({r.category}) {r.content}" for i, r in enumerate(results, 1)]
    sources = [
        {
            "type": "knowledge",
            "id": r.entry_id,
            "category": r.category,
            "title": r.source,
            "similarity_score": r.similarity_score,
        }
        for r in results
    ]
    return "Context from knowledge base:\n" + "\n\n".join(blocks), sources


async def _web_context(
    query: str, analysis: QueryAnalysis,
) -> tuple[str, list[dict]]:
    results = await search_web(_web_query(query, analysis))
    if not results:
        return "", []

    blocks = [f"- {r.title}: {r.snippet} ({r.link})" for r in results]
    if analysis.requires_detailed_content:
        page = await extract_web_content(results[0].link)
        if page:
            blocks.append(f"\nFull content of {results[0].link}:\n{page}")

    sources = [
        {
            "type": "web",
            "title": r.title,
            "url": r.link,
            "snippet": r.snippet,
            "source": r.source,
        }
        for r in results
    ]
    return "Context from internet search:\n" + "\n".join(blocks), sources


async def gather_context_node(state: BrainState) -> dict:
    analysis: QueryAnalysis = state["analysis"]
    query = state["query"]
    chain_state: BrainState = {"reasoning_chain": state.get("reasoning_chain", [])}
    contexts: list[str] = []
    sources: list[dict] = []

    if analysis.requires_knowledge_base:
        try:
            text, found = await _knowledge_context(query, analysis)
        except Exception as e:
            logger.warning("Knowledge base search failed: %s", e)
            chain_state["reasoning_chain"] = _step(
                chain_state, "knowledge_search", status="error", error=str(e),
            )
        else:
            if text:
                contexts.append(text)
            sources.extend(found)
            chain_state["reasoning_chain"] = _step(
                chain_state, "knowledge_search", status="ok", results=len(found),
            )

    if analysis.requires_internet_search:
        try:
            text, found = await _web_context(query, analysis)
        except WebSearchUnavailable as e:
            logger.info("Web search skipped: %s", e)
            chain_state["reasoning_chain"] = _step(
                chain_state, "web_search", status="unavailable", error=str(e),
            )
        except Exception as e:
            logger.warning("Web search failed: %s", e)
            chain_state["reasoning_chain"] = _step(
                chain_state, "web_search", status="error", error=str(e),
            )
        else:
            if text:
                contexts.append(text)
            sources.extend(found)
            chain_state["reasoning_chain"] = _step(
                chain_state, "web_search", status="ok", results=len(found),
            )

    return {
        "context": "\n\n".join(contexts),
        "sources": sources,
        "reasoning_chain": chain_state["reasoning_chain"],
    }


# ---------------------------------------------------------------------------
# Node: consult
# ---------------------------------------------------------------------------


def _confidence(agent_type: str, analysis: QueryAnalysis, response: str) -> float:
    """Router relevance / 10; the expense agent scores its own answer."""
    if agent_type == "expense":
        return estimate_confidence(response)
    relevance = analysis.agent_relevance.get(agent_type)
    if relevance is None:
        # Selected without a score (required/primary/fallback agent)
        return 0.5
    return round(relevance.score / 10, 2)


async def consult_agent(
    agent_type: str,
    query: str,
    analysis: QueryAnalysis,
    context: str,
    history: list[dict] | None,
    semaphore: asyncio.Semaphore,
    timeout: float,
) -> AgentContribution:
    """
    Run one agent under the shared semaphore and its own timeout.

    Never raises: every failure becomes a contribution status.
    """
    spec = get_agent_spec(agent_type)
    contribution = AgentContribution(
        agent_type=spec.agent_type,
        agent_name=spec.name,
        query=query,
    )
    start = time.monotonic()

    async with semaphore:
        try:
            answer = await asyncio.wait_for(
                run_agent(
                    spec.agent_type,
                    query,
                    context=context,
                    state=analysis.state,
                    history=history,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            contribution.status = "timeout"
            contribution.error = f"Timed out after {timeout:g}s"
        except CircuitOpenError as e:
            contribution.status = "circuit_open"
            contribution.error = str(e)
        except Exception as e:
            logger.warning("%s failed: %s", spec.name, e)
            contribution.status = "error"
            contribution.error = str(e)
        else:
            response = answer.response
            contribution.response = response.content
            contribution.model = response.model
            contribution.input_tokens = response.input_tokens
            contribution.output_tokens = response.output_tokens
            contribution.provider_type = answer.provider_type
            contribution.confidence = _confidence(
                spec.agent_type, analysis, response.content,
            )

    contribution.latency_ms = int((time.monotonic() - start) * 1000)
    if not contribution.ok:
        logger.warning(
            "%s did not answer: status=%s, error=%s",
            spec.name, contribution.status, contribution.error,
        )
    return contribution


async def consult_node(state: BrainState) -> dict:
    analysis: QueryAnalysis = state["analysis"]
    agents = state["selected_agents"]
    semaphore = asyncio.Semaphore(settings.brain_max_concurrency)

    contributions = await asyncio.gather(*(
        consult_agent(
            agent_type,
            analysis.agent_sub_queries.get(agent_type)
            or (default_sub_query(agent_type, state["query"])
                if len(agents) > 1 else state["query"]),
            analysis,
            state.get("context", ""),
            state.get("history"),
            semaphore,
            settings.brain_agent_timeout_seconds,
        )
        for agent_type in agents
    ))

    usage = [*state.get("usage", [])]
    for c in contributions:
        if c.ok:
            usage.append((c.provider_type or "", c.model or "",
                          c.input_tokens, c.output_tokens))

    return {
        "contributions": list(contributions),
        "usage": usage,
        "reasoning_chain": _step(
            state, "consult",
            agents={c.agent_type: c.status for c in contributions},
        ),
    }


# ---------------------------------------------------------------------------
# Node: synthesize
# ---------------------------------------------------------------------------


def rank_contributions(contributions: list[AgentContribution]) -> list[AgentContribution]:
    """Successes by (confidence desc, registry order), then failures."""
    succeeded = sorted(
        (c for c in contributions if c.ok),
        key=lambda c: (-c.confidence, registry_index(c.agent_type)),
    )
    failed = sorted(
        (c for c in contributions if not c.ok),
        key=lambda c: registry_index(c.agent_type),
    )
    return succeeded + failed


def merge_responses(ranked: list[AgentContribution]) -> str:
    """Deterministic merge used when the integration call fails."""
    return "\n\n".join(
        f"**{c.agent_name} Perspective:**\n{c.response}" for c in ranked if c.ok
    )


async def synthesize_node(state: BrainState) -> dict:
    ranked = rank_contributions(state.get("contributions", []))
    succeeded = [c for c in ranked if c.ok]
    usage = [*state.get("usage", [])]

    if not succeeded:
        return {
            "contributions": ranked,
            "response": NO_ANSWER_MESSAGE,
            "model": None,
            "synthesis_mode": "none",
            "reasoning_chain": _step(
                state, "synthesize", mode="none",
                errors={c.agent_type: c.error for c in ranked},
            ),
        }

    if len(succeeded) == 1:
        return {
            "contributions": ranked,
            "response": succeeded[0].response,
            "model": succeeded[0].model,
            "synthesis_mode": "single",
            "reasoning_chain": _step(
                state, "synthesize", mode="single", agent=succeeded[0].agent_type,
            ),
        }

    sections = "\n\n".join(
        f"--- {c.agent_name} ---\n{c.response}" for c in succeeded
    )
    prompt = (
        f"User question: {state['query']}\n\n"
        f"Integrate the specialized responses below into one answer.\n\n"
        f"{sections}"
    )
    llm = state.get("llm_override") or get_llm_provider()
    try:
        integrated = await llm.complete(
            messages=[{"role": "user", "content": prompt}],
            system=INTEGRATION_PROMPT,
            max_tokens=settings.llm_max_tokens,
        )
    except Exception as e:
        logger.warning("Integration call failed, merging deterministically: %s", e)
        return {
            "contributions": ranked,
            "response": merge_responses(succeeded),
            "model": succeeded[0].model,
            "synthesis_mode": "merge",
            "reasoning_chain": _step(state, "synthesize", mode="merge", error=str(e)),
        }

    usage.append((
        getattr(llm, "provider_type", settings.llm_provider),
        integrated.model,
        integrated.input_tokens,
        integrated.output_tokens,
    ))
    return {
        "contributions": ranked,
        "response": integrated.content,
        "model": integrated.model,
        "synthesis_mode": "llm",
        "usage": usage,
        "reasoning_chain": _step(
            state, "synthesize", mode="llm",
            agents=[c.agent_type for c in succeeded],
        ),
    }


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------

_builder = StateGraph(BrainState)
_builder.add_node("classify", classify_node)
_builder.add_node("gather_context", gather_context_node)
_builder.add_node("consult", consult_node)
_builder.add_node("synthesize", synthesize_node)

_builder.add_edge(START, "classify")
_builder.add_edge("classify", "gather_context")
_builder.add_edge("gather_context", "consult")
_builder.add_edge("consult", "synthesize")
_builder.add_edge("synthesize", END)

graph = _builder.compile()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def process_multi_agent_query(
    query: str,
    history: list[dict] | None = None,
    llm: LLMProvider | None = None,
) -> BrainResult:
    """
    Run the brain graph for a query.

    Args:
        query: The user's question.
        history: Recent exchanges for the session (see get_memory), oldest
            first. Used for routing and passed to every agent.
        llm: Override for the router and synthesis provider.

    Raises:
        ValueError: If the default provider is not configured (no API key).
    """
    if llm is None:
        # Surface missing configuration before any node runs
        get_llm_provider()

    initial_state: BrainState = {
        "query": query,
        "history": history or [],
        "reasoning_chain": [],
        "usage": [],
    }
    if llm is not None:
        initial_state["llm_override"] = llm

    logger.info("Invoking brain graph: query='%s'", query[:80])
    final = await graph.ainvoke(initial_state)

    usage = final.get("usage", [])
    result = BrainResult(
        response=final["response"],
        query_analysis=final["analysis"],
        agent_contributions=final.get("contributions", []),
        consulted_agents=final.get("selected_agents", []),
        sources=final.get("sources", []),
        reasoning_chain=final.get("reasoning_chain", []),
        model=final.get("model"),
        synthesis_mode=final.get("synthesis_mode", "none"),
        input_tokens=sum(u[2] for u in usage),
        output_tokens=sum(u[3] for u in usage),
        usage=usage,
    )
    logger.info(
        "Brain graph complete: mode=%s, agents=%s, tokens=%d/%d",
        result.synthesis_mode, result.consulted_agents,
        result.input_tokens, result.output_tokens,
    )
    return result


@dataclass
class AgentQueryResult:
    """Result of asking one agent directly."""

    agent_type: str
    agent_name: str
    response: str
    model: str
    provider_type: str
    latency_ms: int
    input_tokens: int
    output_tokens: int
    confidence: float | None = None


async def process_agent_query(
    query: str,
    agent_type: str = "reasoning",
    history: list[dict] | None = None,
) -> AgentQueryResult:
    """
    Ask a single agent, bypassing routing.

    Raises:
        ValueError: Unknown agent type, or the agent's provider has no key.
        CircuitOpenError: The agent's provider circuit is open.
    """
    spec = get_agent_spec(agent_type)
    answer = await run_agent(spec.agent_type, query, history=history)
    content = answer.response.content
    return AgentQueryResult(
        agent_type=spec.agent_type,
        agent_name=spec.name,
        response=content,
        model=answer.response.model,
        provider_type=answer.provider_type,
        latency_ms=answer.latency_ms,
        input_tokens=answer.response.input_tokens,
        output_tokens=answer.response.output_tokens,
        confidence=estimate_confidence(content) if spec.agent_type == "expense" else None,
    )


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


async def get_memory(
    session: AsyncSession,
    session_id: str,
    limit: int | None = None,
) -> list[dict]:
    """Last `limit` exchanges for a session, oldest first."""
    limit = limit or settings.brain_memory_size
    rows = (
        await session.execute(
            select(BrainMemory)
            .where(BrainMemory.session_id == session_id)
            .order_by(BrainMemory.created_at.desc(), BrainMemory.id.desc())
            .limit(limit)
        )
    ).scalars().all()
    return [
        {
            "query": row.query,
            "response": row.response,
            "query_type": row.query_type,
            "agents": row.agents or [],
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in reversed(rows)
    ]


async def add_memory(
    session: AsyncSession,
    session_id: str,
    query: str,
    response: str,
    query_type: str | None = None,
    agents: list[str] | None = None,
) -> None:
    """Append an exchange and drop anything beyond the memory size."""
    session.add(BrainMemory(
        session_id=session_id,
        query=query,
        response=response,
        query_type=query_type,
        agents=agents or [],
    ))
    await session.flush()

    stale_ids = (
        await session.execute(
            select(BrainMemory.id)
            .where(BrainMemory.session_id == session_id)
            .order_by(BrainMemory.created_at.desc(), BrainMemory.id.desc())
            .offset(settings.brain_memory_size)
        )
    ).scalars().all()
    if stale_ids:
        await session.execute(delete(BrainMemory).where(BrainMemory.id.in_(stale_ids)))


async def reset_memory(session: AsyncSession, session_id: str) -> int:
    """Delete a session's memory. Returns the number of entries removed."""
    result = await session.execute(
        delete(BrainMemory).where(BrainMemory.session_id == session_id)
    )
    logger.info("Cleared %d memory entries for session %s", result.rowcount, session_id)
    return result.rowcount
