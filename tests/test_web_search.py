# =============================================================================
# Unit Tests — Web Search Client
# =============================================================================
#
# SerpAPI is replaced by httpx.MockTransport; the Postgres cache helpers are
# patched so no database is needed.
# =============================================================================

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from payrollpro.services import web_search
from payrollpro.services.web_search import (
    WebSearchResult,
    WebSearchUnavailable,
    enhance_financial_query,
    enhance_state_query,
    enhance_tax_query,
    extract_web_content,
    html_to_text,
    search_web,
)

_RealAsyncClient = httpx.AsyncClient


def _run(coro):
    return asyncio.run(coro)


def _mock_client(handler):
    """AsyncClient factory that routes every request to `handler`."""
    def factory(**kwargs):
        return _RealAsyncClient(transport=httpx.MockTransport(handler), **kwargs)
    return factory


@pytest.fixture
def configured():
    with patch.object(web_search.settings, "serpapi_api_key", "test-key"), \
            patch.object(web_search, "_cache_get", AsyncMock(return_value=None)) as get, \
            patch.object(web_search, "_cache_put", AsyncMock()) as put:
        yield get, put


SERP_PAYLOAD = {
    "organic_results": [
        {"title": "FICA rates", "link": "https://www.irs.gov/fica", "snippet": "7.65%"},
        {"title": "No link"},
    ]
}


class TestQueryEnhancers:
    def test_financial(self):
        assert enhance_financial_query("wage base").startswith("wage base (site:irs.gov")

    def test_tax(self):
        enhanced = enhance_tax_query("bonus withholding")
        assert '"internal revenue"' in enhanced
        assert "site:taxfoundation.org" in enhanced

    def test_state_code_upper_cased(self):
        assert enhance_state_query("overtime", "ca").endswith("(site:ca.gov)")
        assert "overtime CA state" in enhance_state_query("overtime", "ca")


class TestSearchWeb:
    def test_requires_api_key(self):
        with patch.object(web_search.settings, "serpapi_api_key", ""):
            with pytest.raises(WebSearchUnavailable):
                _run(search_web("fica"))

    def test_live_call_parses_and_caches(self, configured):
        cache_get, cache_put = configured
        seen = {}

        def handler(request):
            seen.update(request.url.params)
            return httpx.Response(200, json=SERP_PAYLOAD)

        with patch.object(web_search.httpx, "AsyncClient", _mock_client(handler)):
            results = _run(search_web("FICA rates", num_results=3))

        assert seen["q"] == "FICA rates"
        assert seen["num"] == "3"
        assert results[0] == WebSearchResult(
            title="FICA rates", link="https://www.irs.gov/fica", snippet="7.65%",
            source="www.irs.gov",
        )
        assert results[1].source == ""
        cache_put.assert_awaited_once()
        assert cache_put.call_args.args[1] == "search"

    def test_cache_hit_skips_http(self, configured):
        cache_get, cache_put = configured
        cache_get.return_value = {"results": [{
            "title": "cached", "link": "https://a.gov", "snippet": "s",
            "source": "a.gov", "date": None,
        }]}

        def handler(request):
            raise AssertionError("HTTP should not be called on a cache hit")

        with patch.object(web_search.httpx, "AsyncClient", _mock_client(handler)):
            results = _run(search_web("fica", include_snippets=False))

        assert [r.title for r in results] == ["cached"]
        assert results[0].snippet is None
        cache_put.assert_not_awaited()

    def test_http_error_propagates(self, configured):
        def handler(request):
            return httpx.Response(500)

        with patch.object(web_search.httpx, "AsyncClient", _mock_client(handler)):
            with pytest.raises(httpx.HTTPStatusError):
                _run(search_web("fica"))


class TestContentExtraction:
    def test_html_to_text(self):
        raw = (
            "<html><head><title>Form 941 &amp; You</title><style>p{}</style></head>"
            "<body><p>Hello   world</p><script>x()</script>\n\n\n\n<p>Bye</p></body></html>"
        )
        assert html_to_text(raw) == "# Form 941 & You\n\nHello world\n\nBye"

    def test_extract_truncates_and_caches(self, configured):
        _, cache_put = configured

        def handler(request):
            return httpx.Response(200, text="<p>" + "a" * 50 + "</p>")

        with patch.object(web_search.settings, "content_max_chars", 10), \
                patch.object(web_search.httpx, "AsyncClient", _mock_client(handler)):
            content = _run(extract_web_content("https://www.dol.gov/flsa"))

        assert content == "a" * 10
        assert cache_put.call_args.args[1:3] == ("content", {"content": "a" * 10})
