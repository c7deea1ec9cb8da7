# =============================================================================
# Auth Dependencies — FastAPI Dependency Injection for Authentication
# =============================================================================
#
#   get_current_api_key() — extract & validate the Bearer token, rate limit
#   require_scope(scope)  — dependency factory for router-level permission
#   check_scope()         — the same check, callable from a handler
#
# DESIGN DECISION: FastAPI dependency (not middleware) for auth.
# Each router opts in with dependencies=[Depends(require_scope("..."))];
# the resolved ApiKey is cached per request, so handlers that also need it
# get the same object. Tests swap it out via dependency_overrides.
#
# HTTPBearer(auto_error=False): with auth disabled a missing header is not
# an error; the dependency decides.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payrollpro.config import settings
from payrollpro.db.engine import get_async_session
from payrollpro.db.models import ApiKey
from payrollpro.services.auth import has_scope, hash_api_key
from payrollpro.services.rate_limiter import check_rate_limit

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_api_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(
        _bearer_scheme,
    ),
    session: AsyncSession = Depends(get_async_session),
) -> ApiKey | None:
    """
    Validate the API key on the request.

    When auth_enabled=False: returns None (anonymous access).
    When auth_enabled=True the key must exist, be active and unexpired,
    and be under its rate limit. last_used_at is updated and the key is
    stored on request.state for the audit middleware.

    Raises:
        HTTPException 401: Missing or invalid API key
        HTTPException 403: Key is inactive or expired
        HTTPException 429: Rate limit exceeded
    """
    if not settings.auth_enabled:
        return None

    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Provide "
            "'Authorization: Bearer <key>' header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    key_hash = hash_api_key(credentials.credentials)
    result = await session.execute(select(ApiKey).where(ApiKey.key_hash == key_hash))
    api_key = result.scalar_one_or_none()

    if api_key is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not api_key.is_active:
        raise HTTPException(status_code=403, detail="API key has been deactivated.")

    if api_key.expires_at and api_key.expires_at < datetime.now(UTC):
        raise HTTPException(status_code=403, detail="API key has expired.")

    await check_rate_limit(api_key)

    api_key.last_used_at = datetime.now(UTC)
    request.state.api_key = api_key
    return api_key


def check_scope(api_key: ApiKey | None, required_scope: str) -> None:
    """
    Raise 403 unless the key grants `required_scope`.

    No-op when auth is disabled (api_key is None).
    """
    if api_key is None:
        return

    if not has_scope(api_key.scopes, required_scope):
        raise HTTPException(
            status_code=403,
            detail=f"API key does not have '{required_scope}' scope.",
        )


def require_scope(scope: str) -> Callable[..., Awaitable[ApiKey | None]]:
    """Dependency factory: authenticate, then check one scope."""

    async def _dependency(
        api_key: ApiKey | None = Depends(get_current_api_key),
    ) -> ApiKey | None:
        check_scope(api_key, scope)
        return api_key

    return _dependency


def set_audit_context(
    request: Request,
    resource: str | None = None,
    query: str | None = None,
) -> None:
    """Attach resource/query details to the request for the audit log."""
    if resource is not None:
        request.state.audit_resource = resource
    if query is not None:
        request.state.audit_query = query
