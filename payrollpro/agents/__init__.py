# =============================================================================
# Agents Package — AgentBrain Multi-Agent Coordination
# =============================================================================
#   - specialists.py: agent registry (tax, expense, compliance, data,
#     research, reasoning), system prompts, tool context, single-agent calls
#   - router.py: QueryAnalysis schema, LLM router with keyword fallback,
#     relevance-based agent selection
#   - brain.py: LangGraph graph — classify → gather_context → consult →
#     synthesize, plus per-session memory
# =============================================================================
