# =============================================================================
# Audit Logging Middleware — Request/Response Lifecycle Logging
# =============================================================================
#
# Records every API request to the audit_logs table: which key touched which
# employee, import job, document or payroll entry, and when.
#
# DESIGN DECISION: Starlette middleware (not a dependency) so the final
# status code and full timing are captured without per-endpoint opt-in.
# Handlers add detail through request.state (see deps.set_audit_context).
#
# Audit writes use their own session, and a failed write is logged and
# swallowed: the audited request has already produced its response.
# =============================================================================

from __future__ import annotations

import logging
import time

from starlette.middleware.base import (
    BaseHTTPMiddleware,
    RequestResponseEndpoint,
)
from starlette.requests import Request
from starlette.responses import Response

from payrollpro.config import settings
from payrollpro.db.engine import async_session_factory
from payrollpro.db.models import AuditLog

logger = logging.getLogger(__name__)

_SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}


def endpoint_name(path: str) -> str:
    """First path segment: "/employees/import/abc" → "employees"."""
    parts = path.strip("/").split("/")
    return parts[0] if parts else ""


class AuditLoggingMiddleware(BaseHTTPMiddleware):
    """Writes one AuditLog row per request (except health and docs)."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        if not settings.audit_logging_enabled or request.url.path in _SKIP_PATHS:
            return await call_next(request)

        start_time = time.monotonic()
        response = await call_next(request)
        elapsed_ms = int((time.monotonic() - start_time) * 1000)

        api_key = getattr(request.state, "api_key", None)
        query = getattr(request.state, "audit_query", None)

        try:
            async with async_session_factory() as session:
                session.add(AuditLog(
                    api_key_id=api_key.id if api_key else None,
                    api_key_name=api_key.name if api_key else None,
                    endpoint=endpoint_name(request.url.path),
                    method=request.method,
                    path=str(request.url.path),
                    resource=getattr(request.state, "audit_resource", None),
                    query=query[:500] if query else None,
                    client_ip=request.client.host if request.client else None,
                    status_code=response.status_code,
                    response_time_ms=elapsed_ms,
                ))
                await session.commit()
        except Exception as e:
            logger.warning("Failed to write audit log: %s", e)

        return response
