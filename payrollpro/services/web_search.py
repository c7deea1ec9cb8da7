# =============================================================================
# Web Search — SerpAPI Client with a Postgres-Backed Cache
# =============================================================================
#
# Supplies current regulatory and tax information to the AgentBrain's
# research path.
#
# FLOW:
#   search_web(query)
#     1. cache key = sha256("search:" + normalised query + ":" + num)
#     2. fresh row in search_cache? → return cached results
#     3. GET serpapi.com/search.json (httpx) → organic_results
#     4. upsert into search_cache with expires_at = now + 1h
#
#   extract_web_content(url)
#     same pattern, kind="content", 24h TTL, HTML stripped to plain text
#
# Cache failures are logged and ignored: a broken cache degrades to a live
# call, never to an error. A missing SERPAPI_API_KEY raises
# WebSearchUnavailable, which the brain records as a reasoning step.
# =============================================================================

from __future__ import annotations

import hashlib
import html
import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import urlparse

import httpx
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert

from payrollpro.config import settings
from payrollpro.db.engine import async_session_factory
from payrollpro.db.models import SearchCache

logger = logging.getLogger(__name__)


class WebSearchUnavailable(RuntimeError):
    """Web search is not configured (no SERPAPI_API_KEY)."""


@dataclass
class WebSearchResult:
    title: str
    link: str
    snippet: str | None
    source: str            # hostname of the link
    date: str | None = None


# ---------------------------------------------------------------------------
# Query Enhancers
# ---------------------------------------------------------------------------
# Each one narrows a free-text question to authoritative sources.
# ---------------------------------------------------------------------------

_FINANCIAL_SITES = (
    "site:irs.gov OR site:treasury.gov OR site:dol.gov "
    "OR site:sec.gov OR site:federalreserve.gov"
)
_TAX_SITES = (
    "site:irs.gov OR site:tax.gov OR site:taxfoundation.org "
    "OR site:hrblock.com OR site:turbotax.intuit.com"
)


def enhance_financial_query(query: str) -> str:
    return f"{query} ({_FINANCIAL_SITES})"


def enhance_tax_query(query: str) -> str:
    return (
        f'{query} (tax OR taxation OR irs OR "internal revenue") '
        f"({_TAX_SITES})"
    )


def enhance_state_query(query: str, state: str) -> str:
    """Scope a query to a state's .gov sites. Two-letter codes are upper-cased."""
    code = state.upper() if len(state) == 2 else state
    return (
        f"{query} {code} state (tax OR regulation OR compliance) "
        f"(site:{code.lower()}.gov)"
    )


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


async def search_web(
    query: str,
    num_results: int | None = None,
    include_snippets: bool = True,
) -> list[WebSearchResult]:
    """
    Search the web through SerpAPI, serving repeat queries from the cache.

    Args:
        query: Search query (already enhanced, if wanted).
        num_results: Results to return (default settings.web_search_num_results).
        include_snippets: Drop snippets when False.

    Raises:
        WebSearchUnavailable: If SERPAPI_API_KEY is not set.
        httpx.HTTPError: If SerpAPI fails or returns a non-2xx status.
    """
    if not settings.serpapi_api_key:
        raise WebSearchUnavailable(
            "Web search is not configured. Set SERPAPI_API_KEY in .env"
        )

    num = num_results or settings.web_search_num_results
    key = _cache_key("search", f"{query.strip().lower()}:{num}")

    cached = await _cache_get(key)
    if cached is not None:
        logger.info("Search cache hit for '%s'", query[:80])
        results = [WebSearchResult(**r) for r in cached.get("results", [])]
    else:
        results = await _fetch_serpapi(query, num)
        await _cache_put(
            key,
            "search",
            {"results": [asdict(r) for r in results]},
            settings.search_cache_ttl_seconds,
        )

    if not include_snippets:
        for r in results:
            r.snippet = None
    return results[:num]


async def _fetch_serpapi(query: str, num: int) -> list[WebSearchResult]:
    params = {
        "api_key": settings.serpapi_api_key,
        "q": query,
        "engine": "google",
        "num": str(num),
    }
    async with httpx.AsyncClient(
        timeout=settings.web_search_timeout_seconds,
    ) as client:
        response = await client.get(settings.serpapi_url, params=params)
        response.raise_for_status()
        data = response.json()

    results = []
    for item in data.get("organic_results", []):
        link = item.get("link") or ""
        results.append(WebSearchResult(
            title=item.get("title", ""),
            link=link,
            snippet=item.get("snippet"),
            source=urlparse(link).hostname or "",
            date=item.get("date"),
        ))

    logger.info("SerpAPI returned %d results for '%s'", len(results), query[:80])
    return results


# ---------------------------------------------------------------------------
# Content Extraction
# ---------------------------------------------------------------------------

_SCRIPT_STYLE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.S | re.I)
_TITLE = re.compile(r"<title[^>]*>(.*?)</title>", re.S | re.I)
_TAG = re.compile(r"</?[^>]+(>|$)")
_BLANK_RUN = re.compile(r"\n{3,}")
_SPACE_RUN = re.compile(r"[ \t]+")


def html_to_text(raw_html: str) -> str:
    """Strip tags, scripts and styles; collapse whitespace."""
    title_match = _TITLE.search(raw_html)
    body = _SCRIPT_STYLE.sub("", raw_html)
    body = _TITLE.sub("", body)
    body = html.unescape(_TAG.sub("", body))
    body = _SPACE_RUN.sub(" ", body)
    body = "\n".join(line.strip() for line in body.splitlines())
    body = _BLANK_RUN.sub("\n\n", body).strip()

    if title_match:
        title = html.unescape(title_match.group(1)).strip()
        if title:
            body = f"# {title}\n\n{body}"
    return body


async def extract_web_content(url: str) -> str:
    """
    Fetch a page and return its readable text, capped at
    settings.content_max_chars. Cached for 24 hours.

    Raises:
        httpx.HTTPError: If the page cannot be fetched.
    """
    key = _cache_key("content", url)
    cached = await _cache_get(key)
    if cached is not None:
        return cached.get("content", "")

    async with httpx.AsyncClient(
        timeout=settings.web_search_timeout_seconds,
        follow_redirects=True,
    ) as client:
        response = await client.get(url)
        response.raise_for_status()

    content = html_to_text(response.text)[: settings.content_max_chars]
    if content:
        await _cache_put(
            key, "content", {"content": content},
            settings.content_cache_ttl_seconds,
        )
    return content


# ---------------------------------------------------------------------------
# Cache Helpers
# ---------------------------------------------------------------------------


def _cache_key(kind: str, value: str) -> str:
    return hashlib.sha256(f"{kind}:{value}".encode()).hexdigest()


async def _cache_get(key: str) -> dict | None:
    try:
        async with async_session_factory() as session:
            row = (
                await session.execute(
                    select(SearchCache).where(
                        SearchCache.cache_key == key,
                        SearchCache.expires_at > datetime.now(timezone.utc),
                    )
                )
            ).scalar_one_or_none()
            return row.payload if row else None
    except Exception:
        logger.warning("Search cache read failed", exc_info=True)
        return None


async def _cache_put(key: str, kind: str, payload: dict, ttl_seconds: int) -> None:
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
    stmt = insert(SearchCache).values(
        cache_key=key, kind=kind, payload=payload, expires_at=expires_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[SearchCache.cache_key],
        set_={"payload": payload, "expires_at": expires_at},
    )
    try:
        async with async_session_factory() as session:
            await session.execute(stmt)
            await session.commit()
    except Exception:
        logger.warning("Search cache write failed", exc_info=True)
