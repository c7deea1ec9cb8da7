# =============================================================================
# Specialist Agents — Registry, System Prompts, Tool Context
# =============================================================================
#
# An "agent" is a named system prompt, a provider, and an optional block of
# tool context computed from the reference services before the LLM call:
#
#   tax        → Tax Calculator      federal/state/FICA tables (payroll.py)
#   expense    → Expense Categorizer relevant categories (expenses.py)
#   compliance → Compliance Advisor  requirements + 90-day calendar
#   data       → Data Analyst        —
#   research   → Research Assistant  —
#   reasoning  → Payroll Assistant   — (general questions, final fallback)
#
# REGISTRY ORDER:
#   The tuple order below is the tie-breaker when the brain ranks agent
#   answers of equal confidence, so it must stay stable.
#
# DESIGN DECISION: Tool context is precomputed into the prompt; there is no
# function-calling loop.
# =============================================================================

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from payrollpro.config import settings
from payrollpro.services.compliance import (
    get_compliance_requirements,
    get_upcoming_deadlines,
)
from payrollpro.services.expenses import (
    find_relevant_categories,
    format_categories_for_prompt,
)
from payrollpro.services.llm import LLMResponse, ResilientProvider, get_provider_for
from payrollpro.services.payroll import get_tax_rates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentSpec:
    """A specialist agent definition."""

    agent_type: str
    name: str
    description: str
    system_prompt: str
    tools: tuple[str, ...] = ()

    @property
    def provider_id(self) -> str:
        # Resolved on access so AGENT_PROVIDER_<TYPE> overrides apply
        return settings.agent_provider_id(self.agent_type)

    def to_dict(self) -> dict:
        return {
            "type": self.agent_type,
            "name": self.name,
            "description": self.description,
            "provider_id": self.provider_id or None,
            "tools": list(self.tools),
        }


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

AGENTS: tuple[AgentSpec, ...] = (
    AgentSpec(
        agent_type="tax",
        name="Tax Calculator",
        description="Calculates payroll taxes and withholdings",
        system_prompt=(
            "You are a Tax Calculator agent specializing in payroll taxes. "
            "You help calculate federal and state withholdings, Social "
            "Security, Medicare and other payroll taxes.\n\n"
            "Rules:\n"
            "- Show the calculation step by step with the rates you used\n"
            "- Use the tax tables provided in the context when they apply\n"
            "- State the tax year your figures are based on\n"
            "- Recommend a tax professional for filing decisions"
        ),
        tools=("tax_tables",),
    ),
    AgentSpec(
        agent_type="expense",
        name="Expense Categorizer",
        description="Categorizes business expenses for tax purposes",
        system_prompt=(
            "You are an Expense Categorizer agent. You help businesses "
            "properly categorize expenses for accounting and tax purposes.\n\n"
            "Rules:\n"
            "- Name the most appropriate category from the list provided\n"
            "- Explain whether the expense is tax deductible and any limits\n"
            "- Describe the documentation or receipts the business should keep\n"
            "- Say what additional information is needed when it is ambiguous"
        ),
        tools=("expense_categories",),
    ),
    AgentSpec(
        agent_type="compliance",
        name="Compliance Advisor",
        description="Provides guidance on payroll compliance requirements",
        system_prompt=(
            "You are a Compliance Advisor agent specializing in payroll "
            "regulations. You explain filing requirements, deadlines and "
            "penalties at the federal, state and industry level.\n\n"
            "Rules:\n"
            "- Cite the specific form or regulation for every requirement\n"
            "- Give deadlines as concrete dates when the calendar provides them\n"
            "- Mention employee-count thresholds that change what applies\n"
            "- Flag anything that may have changed recently as worth verifying"
        ),
        tools=("compliance_calendar",),
    ),
    AgentSpec(
        agent_type="data",
        name="Data Analyst",
        description="Analyzes payroll data and provides insights",
        system_prompt=(
            "You are a Data Analyst agent specializing in payroll data. "
            "You interpret payroll figures, trends and cost breakdowns and "
            "turn them into clear, actionable insights.\n\n"
            "Structure answers as key findings first, then the supporting "
            "numbers, then recommendations."
        ),
    ),
    AgentSpec(
        agent_type="research",
        name="Research Assistant",
        description="Researches payroll laws, regulations and best practices",
        system_prompt=(
            "You are a Research Assistant agent for payroll and HR topics. "
            "You research laws, regulations and industry practices and "
            "summarize what you find.\n\n"
            "Prefer the internet search and knowledge base context when it "
            "is provided, and say which source each point comes from."
        ),
    ),
    AgentSpec(
        agent_type="reasoning",
        name="Payroll Assistant",
        description="Answers general payroll questions and integrates "
                    "answers from the other agents",
        system_prompt=(
            "You are a Payroll Assistant with broad knowledge of payroll, "
            "HR, tax and financial operations. Give accurate, practical "
            "answers in clear language, and note when a question needs a "
            "specialist or a professional advisor."
        ),
    ),
)

AGENT_TYPES: tuple[str, ...] = tuple(a.agent_type for a in AGENTS)

_BY_TYPE = {a.agent_type: a for a in AGENTS}

# "general" is the router's name for questions the reasoning agent handles
_ALIASES = {"general": "reasoning", "assistant": "reasoning"}

_SUB_QUERY_FOCUS = {
    "tax": "the tax aspects",
    "expense": "the expense categorization aspects",
    "compliance": "the compliance and regulatory aspects",
    "data": "the payroll data and analysis aspects",
    "research": "the research and current-regulation aspects",
}


def normalise_agent_type(agent_type: str | None) -> str | None:
    """Canonical agent type, or None if it isn't one."""
    if not agent_type:
        return None
    key = agent_type.strip().lower()
    key = _ALIASES.get(key, key)
    return key if key in _BY_TYPE else None


def get_agent_spec(agent_type: str) -> AgentSpec:
    """
    Look up an agent by type.

    Raises:
        ValueError: If the type is not a registered agent.
    """
    key = normalise_agent_type(agent_type)
    if key is None:
        raise ValueError(f"Invalid agent type: {agent_type}")
    return _BY_TYPE[key]


def registry_index(agent_type: str) -> int:
    return AGENT_TYPES.index(agent_type)


def get_available_agents() -> list[dict]:
    return [a.to_dict() for a in AGENTS]


def default_sub_query(agent_type: str, query: str) -> str:
    focus = _SUB_QUERY_FOCUS.get(agent_type)
    if focus is None:
        return query
    return f"Focus on {focus} of this query: {query}"


# ---------------------------------------------------------------------------
# Tool Context
# ---------------------------------------------------------------------------


def _format_tax_tables(state: str | None) -> str:
    rates = get_tax_rates(state)
    lines = [f"{rates['year']} federal income tax brackets:"]
    for status, brackets in rates["federal"].items():
        lower = 0
        parts = []
        for bracket in brackets:
            upper = bracket["upper"]
            span = f"${lower:,}+" if upper is None else f"${lower:,}-${upper:,}"
            parts.append(f"{span} {bracket['rate']:.0%}")
            lower = upper
        lines.append(f"  {status}: " + ", ".join(parts))

    fica = rates["fica"]
    lines.append(
        f"Social Security: {fica['social_security_rate']:.1%} up to "
        f"${fica['social_security_wage_cap']:,} annual wages"
    )
    lines.append(
        f"Medicare: {fica['medicare_rate']:.2%}, plus "
        f"{fica['additional_medicare_rate']:.1%} over "
        f"${fica['additional_medicare_threshold']:,}"
    )
    lines.append(f"Withholding allowance: ${rates['allowance_value']:,} each")

    state_info = rates["state"]
    if state_info["code"]:
        if state_info["has_income_tax"]:
            lines.append(
                f"{state_info['code']} state income tax: "
                f"{state_info['rate']:.2%} (flat approximation)"
            )
        else:
            lines.append(f"{state_info['code']}: no state income tax withheld")
    return "\n".join(lines)


def _format_compliance_calendar(state: str | None) -> str:
    lines = ["Applicable requirements:"]
    for req in get_compliance_requirements(state=state, include_details=False):
        deadline = req["next_deadline"] or "relative to an event"
        lines.append(f"- {req['name']} ({req['category']}): next {deadline}")

    upcoming = get_upcoming_deadlines(state=state, days_ahead=90)
    if upcoming:
        lines.append("")
        lines.append("Deadlines in the next 90 days:")
        for item in upcoming:
            lines.append(
                f"- {item['deadline_date']}: {item['requirement_name']} "
                f"(in {item['days_until']} days)"
            )
    return "\n".join(lines)


def build_tool_context(
    agent_type: str,
    query: str,
    state: str | None = None,
) -> str:
    """The reference-data block for an agent; empty for agents without tools."""
    spec = get_agent_spec(agent_type)
    blocks = []
    for tool in spec.tools:
        if tool == "tax_tables":
            blocks.append(_format_tax_tables(state))
        elif tool == "compliance_calendar":
            blocks.append(_format_compliance_calendar(state))
        elif tool == "expense_categories":
            blocks.append(
                "Expense categories:\n\n"
                + format_categories_for_prompt(find_relevant_categories(query))
            )
    return "\n\n".join(blocks)


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


@dataclass
class AgentAnswer:
    """One agent's raw answer plus call metadata."""

    agent_type: str
    agent_name: str
    response: LLMResponse
    provider_type: str
    latency_ms: int


def build_user_message(
    query: str,
    context: str = "",
    tool_context: str = "",
    history: list[dict] | None = None,
) -> str:
    parts = []
    if history:
        turns = "\n".join(
            f"User: {h['query']}\nAssistant: {h['response']}" for h in history
        )
        parts.append(f"Recent conversation:\n{turns}")
    if tool_context:
        parts.append(f"Reference data:\n{tool_context}")
    if context:
        parts.append(context)
    parts.append(f"Question: {query}")
    return "\n\n".join(parts)


async def run_agent(
    agent_type: str,
    query: str,
    context: str = "",
    state: str | None = None,
    history: list[dict] | None = None,
    max_tokens: int | None = None,
    llm: ResilientProvider | None = None,
) -> AgentAnswer:
    """
    Ask one specialist agent.

    Errors from the provider (including CircuitOpenError) propagate; the
    brain turns them into contribution statuses.

    Args:
        agent_type: Registered agent type (aliases such as "general" allowed).
        query: The question or focused sub-query for this agent.
        context: Knowledge-base / web context gathered by the brain.
        state: US state code used by the tax and compliance tool context.
        history: Recent exchanges for the session, oldest first.
        max_tokens: Output budget; defaults to brain_agent_max_tokens.
        llm: Provider override; defaults to the agent's configured provider.
    """
    spec = get_agent_spec(agent_type)
    provider = llm or get_provider_for(spec.provider_id)
    user_message = build_user_message(
        query,
        context=context,
        tool_context=build_tool_context(spec.agent_type, query, state),
        history=history,
    )

    start = time.monotonic()
    response = await provider.complete(
        messages=[{"role": "user", "content": user_message}],
        system=spec.system_prompt,
        max_tokens=max_tokens or settings.brain_agent_max_tokens,
    )
    latency_ms = int((time.monotonic() - start) * 1000)

    logger.info(
        "%s answered in %dms (model=%s, tokens=%d/%d)",
        spec.name, latency_ms, response.model,
        response.input_tokens, response.output_tokens,
    )
    return AgentAnswer(
        agent_type=spec.agent_type,
        agent_name=spec.name,
        response=response,
        provider_type=getattr(provider, "provider_type", settings.llm_provider),
        latency_ms=latency_ms,
    )
