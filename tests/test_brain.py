# =============================================================================
# Unit Tests — AgentBrain Coordinator
# =============================================================================
#
# Agents are replaced by fakes patched over brain.run_agent; the router and
# integration LLM is an AsyncMock passed as the provider override. Memory
# helpers get a MagicMock session and assert on the compiled SQL. No
# network, database or vector store is touched.
# =============================================================================

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from payrollpro.agents import brain
from payrollpro.agents.brain import (
    NO_ANSWER_MESSAGE,
    AgentContribution,
    add_memory,
    consult_agent,
    consult_node,
    gather_context_node,
    get_memory,
    merge_responses,
    process_multi_agent_query,
    rank_contributions,
    reset_memory,
    synthesize_node,
)
from payrollpro.agents.router import AgentRelevance, QueryAnalysis
from payrollpro.agents.specialists import AgentAnswer, get_agent_spec
from payrollpro.services.knowledge import KnowledgeSearchResult
from payrollpro.services.llm import CircuitOpenError, LLMResponse
from payrollpro.services.web_search import WebSearchUnavailable


def _run(coro):
    return asyncio.run(coro)


def _answer(agent_type: str, content: str, tokens: int = 10) -> AgentAnswer:
    return AgentAnswer(
        agent_type=agent_type,
        agent_name=get_agent_spec(agent_type).name,
        response=LLMResponse(
            content=content, model=f"{agent_type}-model",
            input_tokens=tokens, output_tokens=tokens,
        ),
        provider_type="anthropic",
        latency_ms=1,
    )


def _contribution(agent_type: str, confidence: float = 0.5, status: str = "ok"):
    return AgentContribution(
        agent_type=agent_type,
        agent_name=get_agent_spec(agent_type).name,
        query="q",
        response=f"{agent_type} answer" if status == "ok" else "",
        confidence=confidence,
        model=f"{agent_type}-model" if status == "ok" else None,
        status=status,
        error=None if status == "ok" else "boom",
    )


def _fake_run_agent(answers: dict[str, object], delay: float = 0.0):
    """run_agent stand-in: returns, raises, or sleeps per agent type."""

    async def _fake(agent_type, query, context="", state=None, history=None, **kwargs):
        outcome = answers[agent_type]
        if delay:
            await asyncio.sleep(delay)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome == "hang":
            await asyncio.sleep(10)
        return _answer(agent_type, outcome)

    return _fake


# ---------------------------------------------------------------------------
# Consulting one agent
# ---------------------------------------------------------------------------


class TestConsultAgent:
    def _consult(self, agent_type, outcome, analysis=None, timeout=1.0):
        analysis = analysis or QueryAnalysis()
        with patch.object(brain, "run_agent", _fake_run_agent({agent_type: outcome})):
            return _run(consult_agent(
                agent_type, "q", analysis, "", None, asyncio.Semaphore(1), timeout,
            ))

    def test_success_uses_router_relevance(self):
        analysis = QueryAnalysis(agent_relevance={"tax": AgentRelevance(score=8)})
        contribution = self._consult("tax", "Withhold 22%.", analysis)

        assert contribution.ok
        assert contribution.response == "Withhold 22%."
        assert contribution.confidence == 0.8
        assert contribution.model == "tax-model"
        assert contribution.provider_type == "anthropic"

    def test_unscored_agent_gets_half_confidence(self):
        assert self._consult("data", "Trend is flat.").confidence == 0.5

    def test_expense_agent_scores_its_own_answer(self):
        answer = "I would categorize this as Travel. It is tax deductible. Keep the receipt."
        assert self._consult("expense", answer).confidence == 1.0

    def test_timeout(self):
        contribution = self._consult("tax", "hang", timeout=0.05)
        assert contribution.status == "timeout"
        assert "Timed out" in contribution.error
        assert contribution.response == ""

    def test_open_circuit(self):
        contribution = self._consult("tax", CircuitOpenError("anthropic/m", 30))
        assert contribution.status == "circuit_open"
        assert "anthropic/m" in contribution.error

    def test_provider_error(self):
        contribution = self._consult("compliance", RuntimeError("503 upstream"))
        assert contribution.status == "error"
        assert contribution.error == "503 upstream"


class TestConsultNode:
    def test_failure_is_isolated(self):
        state = {
            "query": "q",
            "analysis": QueryAnalysis(),
            "selected_agents": ["tax", "compliance"],
            "reasoning_chain": [],
            "usage": [],
        }
        fake = _fake_run_agent({"tax": "tax ok", "compliance": RuntimeError("down")})
        with patch.object(brain, "run_agent", fake):
            result = _run(consult_node(state))

        statuses = {c.agent_type: c.status for c in result["contributions"]}
        assert statuses == {"tax": "ok", "compliance": "error"}
        assert result["usage"] == [("anthropic", "tax-model", 10, 10)]
        assert result["reasoning_chain"][-1]["step"] == "consult"

    def test_concurrency_is_bounded(self):
        running = 0
        peak = 0

        async def _fake(agent_type, query, **kwargs):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1
            return _answer(agent_type, "ok")

        state = {
            "query": "q",
            "analysis": QueryAnalysis(),
            "selected_agents": ["tax", "expense", "compliance", "data", "research"],
        }
        with (
            patch.object(brain, "run_agent", _fake),
            patch.object(brain.settings, "brain_max_concurrency", 2),
        ):
            result = _run(consult_node(state))

        assert peak == 2
        assert len(result["contributions"]) == 5

    def test_sub_queries(self):
        seen = {}

        async def _fake(agent_type, query, **kwargs):
            seen[agent_type] = query
            return _answer(agent_type, "ok")

        analysis = QueryAnalysis(agent_sub_queries={"tax": "Custom tax question"})
        state = {
            "query": "Payroll in CA?",
            "analysis": analysis,
            "selected_agents": ["tax", "compliance"],
        }
        with patch.object(brain, "run_agent", _fake):
            _run(consult_node(state))

        assert seen["tax"] == "Custom tax question"
        assert seen["compliance"] == (
            "Focus on the compliance and regulatory aspects of this query: Payroll in CA?"
        )

    def test_single_agent_gets_raw_query(self):
        seen = {}

        async def _fake(agent_type, query, **kwargs):
            seen[agent_type] = query
            return _answer(agent_type, "ok")

        state = {"query": "Payroll in CA?", "analysis": QueryAnalysis(),
                 "selected_agents": ["compliance"]}
        with patch.object(brain, "run_agent", _fake):
            _run(consult_node(state))
        assert seen["compliance"] == "Payroll in CA?"


# ---------------------------------------------------------------------------
# Ranking and merging
# ---------------------------------------------------------------------------


class TestRanking:
    def test_confidence_then_registry_order_then_failures(self):
        ranked = rank_contributions([
            _contribution("research", status="timeout"),
            _contribution("compliance", 0.7),
            _contribution("data", 0.9),
            _contribution("tax", 0.7),
            _contribution("expense", status="error"),
        ])
        assert [c.agent_type for c in ranked] == [
            "data", "tax", "compliance", "expense", "research",
        ]

    def test_ranking_ignores_completion_order(self):
        a = [_contribution("tax", 0.8), _contribution("compliance", 0.8)]
        assert rank_contributions(a) == rank_contributions(list(reversed(a)))

    def test_merge_format_skips_failures(self):
        merged = merge_responses([
            _contribution("tax", 0.9),
            _contribution("compliance", status="timeout"),
            _contribution("data", 0.5),
        ])
        assert merged == (
            "**Tax Calculator Perspective:**\ntax answer\n\n"
            "**Data Analyst Perspective:**\ndata answer"
        )


# ---------------------------------------------------------------------------
# Synthesis modes
# ---------------------------------------------------------------------------


class TestSynthesize:
    def _state(self, contributions, llm=None):
        state = {"query": "q", "contributions": contributions,
                 "reasoning_chain": [], "usage": []}
        if llm is not None:
            state["llm_override"] = llm
        return state

    def test_no_successes(self):
        result = _run(synthesize_node(self._state([
            _contribution("tax", status="timeout"),
            _contribution("data", status="circuit_open"),
        ])))
        assert result["synthesis_mode"] == "none"
        assert result["response"] == NO_ANSWER_MESSAGE
        assert result["model"] is None

    def test_single_success_returned_verbatim(self):
        mock_llm = AsyncMock()
        result = _run(synthesize_node(self._state([
            _contribution("tax", 0.9),
            _contribution("data", status="error"),
        ], mock_llm)))
        assert result["synthesis_mode"] == "single"
        assert result["response"] == "tax answer"
        mock_llm.complete.assert_not_called()

    def test_llm_integration(self):
        mock_llm = AsyncMock()
        mock_llm.provider_type = "anthropic"
        mock_llm.complete.return_value = LLMResponse(
            content="Integrated.", model="synth-model", input_tokens=40, output_tokens=20,
        )
        result = _run(synthesize_node(self._state([
            _contribution("compliance", 0.6),
            _contribution("tax", 0.9),
        ], mock_llm)))

        assert result["synthesis_mode"] == "llm"
        assert result["response"] == "Integrated."
        assert result["usage"] == [("anthropic", "synth-model", 40, 20)]
        prompt = mock_llm.complete.call_args.kwargs["messages"][0]["content"]
        assert prompt.index("--- Tax Calculator ---") < prompt.index("--- Compliance Advisor ---")

    def test_integration_failure_merges(self):
        mock_llm = AsyncMock()
        mock_llm.complete.side_effect = CircuitOpenError("anthropic/m", 10)
        result = _run(synthesize_node(self._state([
            _contribution("compliance", 0.6),
            _contribution("tax", 0.9),
        ], mock_llm)))

        assert result["synthesis_mode"] == "merge"
        assert result["response"].startswith("**Tax Calculator Perspective:**")
        assert result["model"] == "tax-model"


# ---------------------------------------------------------------------------
# Context gathering
# ---------------------------------------------------------------------------


class TestGatherContext:
    def test_category_search_falls_back_to_unfiltered(self):
        hit = KnowledgeSearchResult(
            entry_id="kb-1", content="FUTA is 6%.", category="general",
            source="guide.md", similarity_score=0.82,
        )
        search = AsyncMock(side_effect=[[], [hit]])
        state = {"query": "FUTA rate?", "analysis": QueryAnalysis(query_type="tax"),
                 "reasoning_chain": []}

        with patch.object(brain, "search_knowledge_base", search):
            result = _run(gather_context_node(state))

        assert search.await_args_list[0].kwargs == {"category": "tax"}
        assert "Context from knowledge base:\n[1] (general) FUTA is 6%." in result["context"]
        assert result["sources"][0]["type"] == "knowledge"
        assert result["sources"][0]["id"] == "kb-1"

    def test_failures_are_recorded_not_raised(self):
        state = {
            "query": "latest CA rules",
            "analysis": QueryAnalysis(requires_internet_search=True, state="CA"),
            "reasoning_chain": [],
        }
        with (
            patch.object(brain, "search_knowledge_base",
                         AsyncMock(side_effect=RuntimeError("db down"))),
            patch.object(brain, "search_web",
                         AsyncMock(side_effect=WebSearchUnavailable("no key"))),
        ):
            result = _run(gather_context_node(state))

        assert result["context"] == ""
        steps = {s["step"]: s["data"]["status"] for s in result["reasoning_chain"]}
        assert steps == {"knowledge_search": "error", "web_search": "unavailable"}


# ---------------------------------------------------------------------------
# Whole graph
# ---------------------------------------------------------------------------


class TestProcessMultiAgentQuery:
    def test_end_to_end(self):
        router_reply = json.dumps({
            "query_type": "tax",
            "primary_agent": "tax",
            "requires_multiple_agents": True,
            "required_agents": ["tax", "compliance"],
            "requires_internet_search": False,
            "requires_knowledge_base": True,
            "agent_relevance": {
                "tax": {"score": 9, "reason": "rates"},
                "compliance": {"score": 8, "reason": "filings"},
                "data": {"score": 1, "reason": ""},
            },
            "plan": "Rates then filings.",
        })
        mock_llm = AsyncMock()
        mock_llm.provider_type = "anthropic"
        mock_llm.complete.side_effect = [
            LLMResponse(content=router_reply, model="router", input_tokens=5, output_tokens=5),
            LLMResponse(content="Combined answer.", model="synth",
                        input_tokens=30, output_tokens=15),
        ]
        fake = _fake_run_agent({"tax": "22% bracket.", "compliance": "File Form 941."})

        with (
            patch.object(brain, "run_agent", fake),
            patch.object(brain, "search_knowledge_base", AsyncMock(return_value=[])),
        ):
            result = _run(process_multi_agent_query("Tax and filings in CA?", llm=mock_llm))

        assert result.response == "Combined answer."
        assert result.synthesis_mode == "llm"
        assert result.consulted_agents == ["tax", "compliance"]
        assert [c.agent_type for c in result.agent_contributions] == ["tax", "compliance"]
        assert result.query_analysis.source == "llm"
        # Two agents at 10/10 tokens each plus the integration call
        assert result.input_tokens == 50
        assert result.output_tokens == 35
        assert [s["step"] for s in result.reasoning_chain] == [
            "classify", "knowledge_search", "consult", "synthesize",
        ]
        assert result.to_dict()["query_analysis"]["primary_agent"] == "tax"

    def test_router_failure_still_answers(self):
        mock_llm = AsyncMock()
        mock_llm.complete.side_effect = RuntimeError("router down")
        fake = _fake_run_agent({"reasoning": "General answer."})

        with (
            patch.object(brain, "run_agent", fake),
            patch.object(brain, "search_knowledge_base", AsyncMock(return_value=[])),
        ):
            result = _run(process_multi_agent_query("Hello there", llm=mock_llm))

        assert result.query_analysis.source == "fallback"
        assert result.synthesis_mode == "single"
        assert result.response == "General answer."

    def test_history_reaches_router_and_agents(self):
        mock_llm = AsyncMock()
        mock_llm.complete.side_effect = RuntimeError("router down")
        seen = {}

        async def fake(agent_type, query, context="", state=None, history=None, **kwargs):
            seen["history"] = history
            return _answer(agent_type, "NY is 5%.")

        history = [{"query": "CA rate?", "response": "6%"}]
        with (
            patch.object(brain, "run_agent", fake),
            patch.object(brain, "search_knowledge_base", AsyncMock(return_value=[])),
        ):
            _run(process_multi_agent_query("And for NY?", history=history, llm=mock_llm))

        router_prompt = mock_llm.complete.call_args.kwargs["messages"][0]["content"]
        assert "CA rate?" in router_prompt
        assert seen["history"] == history


# ---------------------------------------------------------------------------
# Session memory
# ---------------------------------------------------------------------------


def _memory_row(i: int) -> SimpleNamespace:
    return SimpleNamespace(
        query=f"question {i}",
        response=f"answer {i}",
        query_type="tax",
        agents=["tax"],
        created_at=datetime(2025, 4, 1, 12, i, tzinfo=UTC),
    )


def _scalars(values) -> MagicMock:
    result = MagicMock()
    result.scalars.return_value.all.return_value = values
    return result


def _sql(statement) -> str:
    return str(statement.compile(compile_kwargs={"literal_binds": True}))


class TestMemory:
    def test_get_memory_oldest_first(self):
        session = MagicMock()
        # Newest first, as the query orders them
        session.execute = AsyncMock(return_value=_scalars([_memory_row(2), _memory_row(1)]))

        with patch.object(brain.settings, "brain_memory_size", 2):
            entries = _run(get_memory(session, "s-1"))

        assert [e["query"] for e in entries] == ["question 1", "question 2"]
        assert entries[0] == {
            "query": "question 1",
            "response": "answer 1",
            "query_type": "tax",
            "agents": ["tax"],
            "created_at": "2025-04-01T12:01:00+00:00",
        }
        sql = _sql(session.execute.call_args.args[0])
        assert "LIMIT 2" in sql
        assert "'s-1'" in sql

    def test_get_memory_explicit_limit(self):
        session = MagicMock()
        session.execute = AsyncMock(return_value=_scalars([]))
        assert _run(get_memory(session, "s-1", limit=3)) == []
        assert "LIMIT 3" in _sql(session.execute.call_args.args[0])

    def test_add_memory_trims_beyond_size(self):
        session = MagicMock()
        session.flush = AsyncMock()
        session.execute = AsyncMock(side_effect=[_scalars([7, 8]), MagicMock()])

        with patch.object(brain.settings, "brain_memory_size", 2):
            _run(add_memory(session, "s-1", "q", "a", query_type="tax", agents=["tax"]))

        added = session.add.call_args.args[0]
        assert (added.session_id, added.query, added.agents) == ("s-1", "q", ["tax"])
        session.flush.assert_awaited_once()

        stale_query, delete_stmt = (c.args[0] for c in session.execute.call_args_list)
        assert "OFFSET 2" in _sql(stale_query)
        assert _sql(delete_stmt).startswith("DELETE FROM brain_memory")
        assert "IN (7, 8)" in _sql(delete_stmt)

    def test_add_memory_within_size_deletes_nothing(self):
        session = MagicMock()
        session.flush = AsyncMock()
        session.execute = AsyncMock(return_value=_scalars([]))

        _run(add_memory(session, "s-1", "q", "a"))

        assert session.execute.await_count == 1
        assert session.add.call_args.args[0].agents == []

    def test_reset_memory_returns_row_count(self):
        session = MagicMock()
        session.execute = AsyncMock(return_value=MagicMock(rowcount=3))

        assert _run(reset_memory(session, "s-1")) == 3
        assert _sql(session.execute.call_args.args[0]).startswith("DELETE FROM brain_memory")
