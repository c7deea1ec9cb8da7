# =============================================================================
# PayrollPro AI
# =============================================================================
# Payroll management API with a multi-agent assistant. Routes payroll, tax,
# expense and compliance questions to specialist LLM agents, merges their
# answers, and backs them with a searchable knowledge base.
#
# Package structure:
#   payrollpro/
#   ├── api/          → FastAPI route handlers (agents, knowledge, employees,
#   │                    documents, payroll, reference, admin)
#   ├── agents/       → LangGraph AgentBrain (classify, gather context,
#   │                    consult specialists, synthesize) + agent registry
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Business logic (LLM providers, knowledge base,
#   │                    web search, payroll math, CSV import, reference data)
#   └── workers/      → Celery task definitions and configuration
# =============================================================================
