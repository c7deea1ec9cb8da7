# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for one feature:
#   - agents.py: AgentBrain, single-agent queries and session memory
#   - knowledge.py: Knowledge base add/search/delete and file upload
#   - employees.py: Employee CSV import jobs and employee records
#   - documents.py: Invoices, estimates and bills
#   - payroll.py: Payroll entries, statistics and withholding calculator
#   - reference.py: Compliance calendar and expense categories
#   - admin.py: API keys, audit log, circuit breakers and agent metrics
#   - deps.py / audit.py: Auth dependencies and audit middleware
# =============================================================================
