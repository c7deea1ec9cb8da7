# =============================================================================
# Query Router — Typed Intent Classification
# =============================================================================
#
# Decides which specialist agents a question needs and what context to
# gather for them. The router LLM is asked for one JSON object, which is
# validated against the QueryAnalysis model.
#
# FALLBACK:
#   Any failure (provider error, open circuit, no JSON, schema mismatch)
#   produces a keyword-based QueryAnalysis with source="fallback", so a
#   query is always routable.
#
# SELECTION (select_agents):
#   1. agents with relevance score >= threshold, highest score first
#   2. else required_agents
#   3. else primary_agent
#   4. else "reasoning"
#   capped at max_agents.
# =============================================================================

from __future__ import annotations

import logging
import re
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from payrollpro.agents.specialists import (
    AGENT_TYPES,
    normalise_agent_type,
    registry_index,
)
from payrollpro.config import settings
from payrollpro.services.llm import LLMProvider

logger = logging.getLogger(__name__)

QueryType = Literal["tax", "expense", "compliance", "data", "research", "general"]

US_STATES: dict[str, str] = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT",
    "delaware": "DE", "florida": "FL", "georgia": "GA", "hawaii": "HI",
    "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA",
    "kansas": "KS", "kentucky": "KY", "louisiana": "LA", "maine": "ME",
    "maryland": "MD", "massachusetts": "MA", "michigan": "MI",
    "minnesota": "MN", "mississippi": "MS", "missouri": "MO",
    "montana": "MT", "nebraska": "NE", "nevada": "NV",
    "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM",
    "new york": "NY", "north carolina": "NC", "north dakota": "ND",
    "ohio": "OH", "oklahoma": "OK", "oregon": "OR", "pennsylvania": "PA",
    "rhode island": "RI", "south carolina": "SC", "south dakota": "SD",
    "tennessee": "TN", "texas": "TX", "utah": "UT", "vermont": "VT",
    "virginia": "VA", "washington": "WA", "west virginia": "WV",
    "wisconsin": "WI", "wyoming": "WY", "district of columbia": "DC",
}
_STATE_CODES = frozenset(US_STATES.values())


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class AgentRelevance(BaseModel):
    score: float = Field(ge=0, le=10)
    reason: str = ""


class QueryAnalysis(BaseModel):
    """Validated routing decision for one query."""

    query_type: QueryType = "general"
    primary_agent: str = "reasoning"
    requires_multiple_agents: bool = False
    required_agents: list[str] = Field(default_factory=list)
    requires_internet_search: bool = False
    requires_knowledge_base: bool = True
    requires_detailed_content: bool = False
    state: str | None = None
    agent_sub_queries: dict[str, str] = Field(default_factory=dict)
    agent_relevance: dict[str, AgentRelevance] = Field(default_factory=dict)
    plan: str = ""
    source: Literal["llm", "fallback"] = "llm"

    @field_validator("query_type", mode="before")
    @classmethod
    def _lower_query_type(cls, value):
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("primary_agent", mode="before")
    @classmethod
    def _known_primary(cls, value):
        return normalise_agent_type(value) or "reasoning"

    @field_validator("required_agents", mode="before")
    @classmethod
    def _known_agents(cls, value):
        if not value:
            return []
        agents = []
        for item in value:
            agent = normalise_agent_type(item)
            if agent and agent not in agents:
                agents.append(agent)
        return agents

    @field_validator("agent_sub_queries", "agent_relevance", mode="before")
    @classmethod
    def _known_keys(cls, value):
        if not value:
            return {}
        cleaned = {}
        for key, item in value.items():
            agent = normalise_agent_type(key)
            if agent:
                cleaned[agent] = item
        return cleaned

    @field_validator("state", mode="before")
    @classmethod
    def _state_code(cls, value):
        if not isinstance(value, str) or not value.strip():
            return None
        text = value.strip()
        if text.upper() in _STATE_CODES:
            return text.upper()
        return US_STATES.get(text.lower())


# ---------------------------------------------------------------------------
# LLM Classification
# ---------------------------------------------------------------------------

ROUTER_SYSTEM_PROMPT = (
    "You are the router of a payroll assistant. Analyze the user's question "
    "and decide which specialist agents should answer it.\n\n"
    "Agents:\n"
    "- tax: payroll tax calculations, withholdings, tax brackets\n"
    "- expense: expense categorization, deductibility\n"
    "- compliance: payroll regulations, filing requirements, deadlines\n"
    "- data: payroll data analysis, trends, statistics\n"
    "- research: current laws and practices that need up-to-date sources\n"
    "- reasoning: general payroll questions\n\n"
    "Rate how relevant each of tax, expense, compliance, data and research "
    "is on a scale of 0-10 with a short reason.\n\n"
    "Respond with ONLY a JSON object of this shape:\n"
    "{\n"
    '  "query_type": "tax|expense|compliance|data|research|general",\n'
    '  "primary_agent": "<agent>",\n'
    '  "requires_multiple_agents": true|false,\n'
    '  "required_agents": ["<agent>", ...],\n'
    '  "requires_internet_search": true|false,\n'
    '  "requires_knowledge_base": true|false,\n'
    '  "requires_detailed_content": true|false,\n'
    '  "state": "<two-letter US state code or null>",\n'
    '  "agent_sub_queries": {"<agent>": "<focused question>"},\n'
    '  "agent_relevance": {"<agent>": {"score": 0-10, "reason": "..."}},\n'
    '  "plan": "<one or two sentences on how to answer>"\n'
    "}\n\n"
    "Require internet search for recent changes, current rates or news. "
    "Require detailed content only when a single web page must be read in full."
)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def extract_json_object(text: str) -> str:
    """
    Pull the JSON object out of an LLM reply.

    Strips markdown code fences and any prose around the outermost braces.

    Raises:
        ValueError: If the reply contains no object.
    """
    cleaned = _CODE_FENCE.sub("", text.strip())
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("No JSON object in router response")
    return cleaned[start:end + 1]


def parse_analysis(text: str) -> QueryAnalysis:
    """
    Validate a router reply.

    Raises:
        ValueError: No JSON object found.
        pydantic.ValidationError: The object does not fit QueryAnalysis.
    """
    analysis = QueryAnalysis.model_validate_json(extract_json_object(text))
    return analysis.model_copy(update={"source": "llm"})


async def classify_query(
    query: str,
    llm: LLMProvider,
    history: list[dict] | None = None,
) -> QueryAnalysis:
    """
    Classify a query with the router LLM, falling back to keywords.

    Never raises for provider or parsing failures.
    """
    content = query
    if history:
        recent = "\n".join(f"- {h['query']}" for h in history[-3:])
        content = f"Earlier questions in this conversation:\n{recent}\n\n{query}"

    try:
        response = await llm.complete(
            messages=[{"role": "user", "content": content}],
            system=ROUTER_SYSTEM_PROMPT,
            temperature=0.0,
            max_tokens=800,
        )
        analysis = parse_analysis(response.content)
    except ValueError as e:
        # pydantic.ValidationError is a ValueError
        logger.warning("Router returned unusable analysis, using keywords: %s", e)
        return keyword_fallback(query)
    except Exception as e:
        logger.warning("Router LLM call failed, using keywords: %s", e)
        return keyword_fallback(query)

    logger.info(
        "Routed query: type=%s, primary=%s, relevance=%s",
        analysis.query_type,
        analysis.primary_agent,
        {k: v.score for k, v in analysis.agent_relevance.items()},
    )
    return analysis


# ---------------------------------------------------------------------------
# Keyword Fallback
# ---------------------------------------------------------------------------

_KEYWORDS: dict[str, tuple[str, ...]] = {
    "tax": ("tax", "withholding", "w-4", "w4", "fica", "medicare",
            "social security", "bracket", "deduction", "irs"),
    "expense": ("expense", "deductible", "receipt", "reimburse",
                "categorize", "categorise", "mileage", "write off"),
    "compliance": ("compliance", "comply", "regulation", "requirement",
                   "deadline", "filing", "form 941", "form 940", "w-2",
                   "osha", "aca", "penalty", "labor law", "labour law"),
    "data": ("analy", "trend", "statistic", "average", "report",
             "breakdown", "forecast", "cost per", "headcount"),
    "research": ("latest", "recent", "current", "new law", "news",
                 "update", "changes in", "this year"),
}

# Short keywords must match a whole word; longer ones match at a word start.
_PATTERNS = {
    agent: [
        re.compile(
            rf"\b{re.escape(kw)}\b" if len(kw) <= 3 else rf"\b{re.escape(kw)}"
        )
        for kw in keywords
    ]
    for agent, keywords in _KEYWORDS.items()
}

_INTERNET_CUES = ("latest", "recent", "current", "news", "this year",
                  "new law", "upcoming change")

_STATE_CODE_PATTERN = re.compile(r"\b([A-Z]{2})\b")


def detect_state(query: str) -> str | None:
    """First US state named in the query, by full name or upper-case code."""
    lowered = query.lower()
    # Longest names first so "west virginia" wins over "virginia"
    for name in sorted(US_STATES, key=len, reverse=True):
        if re.search(rf"\b{name}\b", lowered):
            return US_STATES[name]
    for match in _STATE_CODE_PATTERN.finditer(query):
        # "IN", "OR", "ME" are too often plain words to trust
        if match.group(1) in _STATE_CODES - {"IN", "OR", "ME", "OK", "HI"}:
            return match.group(1)
    return None


def keyword_fallback(query: str) -> QueryAnalysis:
    """Classify by keyword hits; ties go to registry order."""
    lowered = query.lower()
    hits = {
        agent: sum(1 for p in patterns if p.search(lowered))
        for agent, patterns in _PATTERNS.items()
    }
    matched = [a for a in AGENT_TYPES if hits.get(a)]
    matched.sort(key=lambda a: (-hits[a], registry_index(a)))

    primary = matched[0] if matched else "reasoning"
    state = detect_state(query)
    requires_internet = any(cue in lowered for cue in _INTERNET_CUES)

    analysis = QueryAnalysis(
        query_type=primary if matched else "general",
        primary_agent=primary,
        requires_multiple_agents=len(matched) > 1,
        required_agents=matched or ["reasoning"],
        requires_internet_search=requires_internet,
        requires_knowledge_base=True,
        state=state,
        agent_relevance={
            agent: AgentRelevance(
                score=min(10, 6 + 2 * hits[agent]),
                reason="keyword match",
            )
            for agent in matched
        },
        plan="Keyword routing (router unavailable).",
        source="fallback",
    )
    logger.info(
        "Keyword routing: primary=%s, agents=%s, state=%s",
        primary, matched, state,
    )
    return analysis


# ---------------------------------------------------------------------------
# Agent Selection
# ---------------------------------------------------------------------------


def select_agents(
    analysis: QueryAnalysis,
    threshold: int | None = None,
    max_agents: int | None = None,
) -> list[str]:
    """Agents to consult for an analysis, most relevant first."""
    threshold = settings.brain_relevance_threshold if threshold is None else threshold
    max_agents = max_agents or settings.brain_max_agents

    scored = [
        (agent, rel.score)
        for agent, rel in analysis.agent_relevance.items()
        if rel.score >= threshold
    ]
    scored.sort(key=lambda item: (-item[1], registry_index(item[0])))
    selected = [agent for agent, _ in scored]

    if not selected:
        selected = list(analysis.required_agents)
    if not selected and analysis.primary_agent:
        selected = [analysis.primary_agent]
    if not selected:
        selected = ["reasoning"]

    return selected[:max_agents]
