# =============================================================================
# Unit Tests — Query Router
# =============================================================================
#
# LLM classification is tested with a mock provider; the keyword fallback
# and agent selection are pure functions.
# =============================================================================

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from payrollpro.agents.router import (
    AgentRelevance,
    QueryAnalysis,
    classify_query,
    detect_state,
    extract_json_object,
    keyword_fallback,
    parse_analysis,
    select_agents,
)
from payrollpro.services.llm import CircuitOpenError, LLMResponse


def _run(coro):
    return asyncio.run(coro)


def _llm_reply(content: str) -> AsyncMock:
    mock_llm = AsyncMock()
    mock_llm.complete.return_value = LLMResponse(
        content=content, model="router-model", input_tokens=50, output_tokens=80,
    )
    return mock_llm


ROUTER_JSON = {
    "query_type": "tax",
    "primary_agent": "tax",
    "requires_multiple_agents": True,
    "required_agents": ["tax", "compliance"],
    "requires_internet_search": False,
    "requires_knowledge_base": True,
    "requires_detailed_content": False,
    "state": "CA",
    "agent_sub_queries": {"tax": "What is the CA withholding?"},
    "agent_relevance": {
        "tax": {"score": 9, "reason": "withholding"},
        "compliance": {"score": 7, "reason": "filing"},
        "data": {"score": 2, "reason": "none"},
    },
    "plan": "Compute withholding, then list filings.",
}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseAnalysis:
    def test_plain_json(self):
        analysis = parse_analysis(json.dumps(ROUTER_JSON))
        assert analysis.query_type == "tax"
        assert analysis.required_agents == ["tax", "compliance"]
        assert analysis.agent_relevance["tax"].score == 9
        assert analysis.source == "llm"

    def test_code_fenced_json_with_prose(self):
        text = "Here you go:\n```json\n" + json.dumps(ROUTER_JSON) + "\n```"
        assert parse_analysis(text).primary_agent == "tax"

    def test_aliases_and_unknown_agents(self):
        data = dict(
            ROUTER_JSON,
            primary_agent="General",
            required_agents=["Tax", "payroll-wizard", "tax"],
            agent_relevance={"assistant": {"score": 5}, "astrology": {"score": 9}},
        )
        analysis = parse_analysis(json.dumps(data))
        assert analysis.primary_agent == "reasoning"
        assert analysis.required_agents == ["tax"]
        assert set(analysis.agent_relevance) == {"reasoning"}

    def test_state_name_becomes_code(self):
        analysis = parse_analysis(json.dumps(dict(ROUTER_JSON, state="new york")))
        assert analysis.state == "NY"

    def test_unknown_state_becomes_none(self):
        analysis = parse_analysis(json.dumps(dict(ROUTER_JSON, state="Atlantis")))
        assert analysis.state is None

    def test_score_out_of_range_rejected(self):
        data = dict(ROUTER_JSON, agent_relevance={"tax": {"score": 11}})
        with pytest.raises(ValidationError):
            parse_analysis(json.dumps(data))

    def test_fractional_score_accepted(self):
        data = dict(ROUTER_JSON, agent_relevance={
            "tax": {"score": 7.5}, "compliance": {"score": 6.5},
        })
        analysis = parse_analysis(json.dumps(data))
        assert analysis.agent_relevance["tax"].score == 7.5
        assert select_agents(analysis, threshold=7, max_agents=4) == ["tax"]

    def test_unknown_query_type_rejected(self):
        with pytest.raises(ValidationError):
            parse_analysis(json.dumps(dict(ROUTER_JSON, query_type="weather")))

    def test_no_json_raises_value_error(self):
        with pytest.raises(ValueError, match="No JSON object"):
            extract_json_object("I think the tax agent should answer.")


# ---------------------------------------------------------------------------
# LLM classification
# ---------------------------------------------------------------------------


class TestClassifyQuery:
    def test_uses_llm_analysis(self):
        mock_llm = _llm_reply(json.dumps(ROUTER_JSON))
        analysis = _run(classify_query("CA withholding?", mock_llm))

        assert analysis.source == "llm"
        assert analysis.state == "CA"
        kwargs = mock_llm.complete.call_args.kwargs
        assert kwargs["temperature"] == 0.0
        assert "ONLY a JSON object" in kwargs["system"]

    def test_history_included_in_prompt(self):
        mock_llm = _llm_reply(json.dumps(ROUTER_JSON))
        history = [{"query": f"question {i}", "response": "..."} for i in range(5)]
        _run(classify_query("and for NY?", mock_llm, history=history))

        content = mock_llm.complete.call_args.kwargs["messages"][0]["content"]
        assert "question 4" in content
        assert "question 1" not in content
        assert content.endswith("and for NY?")

    def test_invalid_json_falls_back_to_keywords(self):
        mock_llm = _llm_reply("not json at all")
        analysis = _run(classify_query("How is FICA tax withheld?", mock_llm))
        assert analysis.source == "fallback"
        assert analysis.primary_agent == "tax"

    def test_schema_mismatch_falls_back(self):
        mock_llm = _llm_reply(json.dumps({"query_type": "weather"}))
        analysis = _run(classify_query("Form 941 deadline?", mock_llm))
        assert analysis.source == "fallback"
        assert analysis.primary_agent == "compliance"

    def test_provider_error_falls_back(self):
        mock_llm = AsyncMock()
        mock_llm.complete.side_effect = CircuitOpenError("anthropic/x", 30)
        analysis = _run(classify_query("Is a client dinner deductible?", mock_llm))
        assert analysis.source == "fallback"
        assert analysis.primary_agent == "expense"


# ---------------------------------------------------------------------------
# Keyword fallback
# ---------------------------------------------------------------------------


class TestKeywordFallback:
    def test_single_agent_with_state(self):
        analysis = keyword_fallback(
            "How much federal tax withholding for a biweekly paycheck in California?"
        )
        assert analysis.primary_agent == "tax"
        assert analysis.query_type == "tax"
        assert analysis.required_agents == ["tax"]
        assert analysis.requires_multiple_agents is False
        assert analysis.state == "CA"
        assert analysis.agent_relevance["tax"].score == 10
        assert analysis.source == "fallback"

    def test_multiple_agents_ordered_by_hits(self):
        analysis = keyword_fallback(
            "Is this mileage expense deductible and what are the filing deadlines?"
        )
        assert analysis.required_agents == ["expense", "compliance"]
        assert analysis.requires_multiple_agents is True

    def test_tie_goes_to_registry_order(self):
        analysis = keyword_fallback("What are the latest FICA rates?")
        assert analysis.required_agents == ["tax", "research"]
        assert analysis.agent_relevance["tax"].score == 8
        assert analysis.requires_internet_search is True

    def test_no_match_routes_to_reasoning(self):
        analysis = keyword_fallback("Hello there")
        assert analysis.primary_agent == "reasoning"
        assert analysis.query_type == "general"
        assert analysis.required_agents == ["reasoning"]
        assert analysis.agent_relevance == {}

    def test_short_keywords_need_whole_words(self):
        # "aca" must not match inside "vacation", nor "irs" inside "first"
        analysis = keyword_fallback("first vacation day")
        assert analysis.primary_agent == "reasoning"


class TestDetectState:
    def test_full_name(self):
        assert detect_state("payroll rules in Texas") == "TX"

    def test_longest_name_wins(self):
        assert detect_state("overtime in West Virginia") == "WV"

    def test_upper_case_code(self):
        assert detect_state("Filing requirements for NY employers") == "NY"

    def test_ambiguous_codes_ignored(self):
        assert detect_state("OR what about bonuses IN general") is None

    def test_lower_case_code_ignored(self):
        assert detect_state("is it ok to pay weekly") is None


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class TestSelectAgents:
    def test_threshold_and_ordering(self):
        analysis = QueryAnalysis(agent_relevance={
            "compliance": AgentRelevance(score=8),
            "tax": AgentRelevance(score=8),
            "expense": AgentRelevance(score=9),
            "data": AgentRelevance(score=3),
        })
        assert select_agents(analysis, threshold=7, max_agents=4) == [
            "expense", "tax", "compliance",
        ]

    def test_max_agents_cap(self):
        analysis = QueryAnalysis(agent_relevance={
            a: AgentRelevance(score=9) for a in ("tax", "expense", "compliance")
        })
        assert select_agents(analysis, threshold=7, max_agents=2) == ["tax", "expense"]

    def test_falls_back_to_required_agents(self):
        analysis = QueryAnalysis(
            required_agents=["compliance", "tax"],
            agent_relevance={"tax": AgentRelevance(score=2)},
        )
        assert select_agents(analysis, threshold=7, max_agents=4) == ["compliance", "tax"]

    def test_falls_back_to_primary(self):
        analysis = QueryAnalysis(primary_agent="data")
        assert select_agents(analysis, threshold=7, max_agents=4) == ["data"]

    def test_default_is_reasoning(self):
        assert select_agents(QueryAnalysis(), threshold=7, max_agents=4) == ["reasoning"]

    def test_threshold_zero_keeps_zero_scores(self):
        analysis = QueryAnalysis(agent_relevance={"data": AgentRelevance(score=0)})
        assert select_agents(analysis, threshold=0, max_agents=4) == ["data"]
