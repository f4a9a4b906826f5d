from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from deepsearch.errors import ProviderNotConfiguredError, SearchProviderError
from deepsearch.models.research import SearchHit, SearchResponse
from deepsearch.tools import brave_search, search_provider


def _response(provider: str, *urls: str) -> SearchResponse:
    return SearchResponse(results=[SearchHit(url=u) for u in urls], provider=provider)


@pytest.fixture
def tavily_primary():
    with patch.object(search_provider.settings, "search_provider", "tavily"), patch.object(
        search_provider.settings, "search_fallback_enabled", True
    ):
        yield


@pytest.mark.asyncio
async def test_primary_error_falls_back_to_secondary(tavily_primary):
    tavily = AsyncMock(side_effect=SearchProviderError("tavily", "HTTP 500"))
    brave = AsyncMock(return_value=_response("brave", "https://b.com"))
    with patch("deepsearch.tools.tavily_search.search", new=tavily), patch("deepsearch.tools.brave_search.search", new=brave):
        response = await search_provider.search("boots")

    assert response.provider == "brave"
    assert response.fallback_from == "tavily"
    assert "HTTP 500" in response.fallback_reason


@pytest.mark.asyncio
async def test_primary_error_kept_when_secondary_unconfigured(tavily_primary):
    tavily = AsyncMock(side_effect=SearchProviderError("tavily", "HTTP 502"))
    brave = AsyncMock(side_effect=ProviderNotConfiguredError("brave", "BRAVE_API_KEY is not configured"))
    with patch("deepsearch.tools.tavily_search.search", new=tavily), patch("deepsearch.tools.brave_search.search", new=brave):
        with pytest.raises(SearchProviderError, match="HTTP 502"):
            await search_provider.search("boots")


@pytest.mark.asyncio
async def test_zero_results_tries_secondary(tavily_primary):
    tavily = AsyncMock(return_value=_response("tavily"))
    brave = AsyncMock(return_value=_response("brave", "https://b.com"))
    with patch("deepsearch.tools.tavily_search.search", new=tavily), patch("deepsearch.tools.brave_search.search", new=brave):
        response = await search_provider.search("boots")

    assert response.results[0].url == "https://b.com"
    assert response.fallback_reason == "tavily returned zero results"


@pytest.mark.asyncio
async def test_zero_results_kept_when_secondary_unconfigured(tavily_primary):
    tavily = AsyncMock(return_value=_response("tavily"))
    brave = AsyncMock(side_effect=ProviderNotConfiguredError("brave", "BRAVE_API_KEY is not configured"))
    with patch("deepsearch.tools.tavily_search.search", new=tavily), patch("deepsearch.tools.brave_search.search", new=brave):
        response = await search_provider.search("boots")

    assert response.provider == "tavily"
    assert response.results == []


@pytest.mark.asyncio
async def test_configuration_error_is_not_retried(tavily_primary):
    tavily = AsyncMock(side_effect=ProviderNotConfiguredError("tavily", "TAVILY_API_KEY is not set"))
    brave = AsyncMock()
    with patch("deepsearch.tools.tavily_search.search", new=tavily), patch("deepsearch.tools.brave_search.search", new=brave):
        with pytest.raises(ProviderNotConfiguredError):
            await search_provider.search("boots")
    brave.assert_not_awaited()


@pytest.mark.asyncio
async def test_no_fallback_when_disabled():
    tavily = AsyncMock(side_effect=SearchProviderError("tavily", "HTTP 502"))
    with patch.object(search_provider.settings, "search_provider", "tavily"), patch.object(
        search_provider.settings, "search_fallback_enabled", False
    ), patch("deepsearch.tools.tavily_search.search", new=tavily):
        with pytest.raises(SearchProviderError):
            await search_provider.search("boots")


@pytest.mark.asyncio
async def test_unknown_provider_is_not_configured():
    with patch.object(search_provider.settings, "search_provider", "bing"):
        with pytest.raises(ProviderNotConfiguredError):
            await search_provider.search("boots")


# --- Brave response mapping ---


class _FakeAsyncClient:
    def __init__(self, response: httpx.Response):
        self.response = response
        self.params = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def get(self, url, params=None, headers=None):
        self.params = params
        return self.response


def _brave_client(status: int, payload: dict) -> _FakeAsyncClient:
    request = httpx.Request("GET", brave_search.BRAVE_SEARCH_URL)
    return _FakeAsyncClient(httpx.Response(status, json=payload, request=request))


@pytest.mark.asyncio
async def test_brave_maps_results_with_rank_scores():
    payload = {
        "web": {
            "results": [
                {"title": "A", "url": "https://a.com", "description": "first", "extra_snippets": ["more"]},
                {"title": "No url"},
                {"title": "B", "url": "https://b.com", "description": "second", "page_age": "2024-01-01T00:00:00"},
            ]
        }
    }
    client = _brave_client(200, payload)
    with patch.object(brave_search.settings, "brave_api_key", "key"), patch(
        "deepsearch.tools.brave_search.httpx.AsyncClient", return_value=client
    ):
        response = await brave_search.search("boots", search_depth="advanced", max_results=5)

    assert client.params == {"q": "boots", "count": 5, "extra_snippets": "true"}
    assert [h.url for h in response.results] == ["https://a.com", "https://b.com"]
    assert response.results[0].content == "first more"
    assert response.results[0].score > response.results[1].score
    assert response.results[1].published_date == "2024-01-01T00:00:00"
    assert response.images == []


@pytest.mark.asyncio
async def test_brave_auth_failure_is_configuration_error():
    client = _brave_client(401, {"error": {"detail": "invalid token"}})
    with patch.object(brave_search.settings, "brave_api_key", "key"), patch(
        "deepsearch.tools.brave_search.httpx.AsyncClient", return_value=client
    ):
        with pytest.raises(ProviderNotConfiguredError, match="invalid token"):
            await brave_search.search("boots")


@pytest.mark.asyncio
async def test_brave_server_error_is_upstream_error():
    client = _brave_client(503, {"error": "unavailable"})
    with patch.object(brave_search.settings, "brave_api_key", "key"), patch(
        "deepsearch.tools.brave_search.httpx.AsyncClient", return_value=client
    ):
        with pytest.raises(SearchProviderError) as exc:
            await brave_search.search("boots")
    assert exc.value.status == 503


@pytest.mark.asyncio
async def test_brave_non_json_body_is_upstream_error():
    request = httpx.Request("GET", brave_search.BRAVE_SEARCH_URL)
    client = _FakeAsyncClient(httpx.Response(200, text="<html>maintenance</html>", request=request))
    with patch.object(brave_search.settings, "brave_api_key", "key"), patch(
        "deepsearch.tools.brave_search.httpx.AsyncClient", return_value=client
    ):
        with pytest.raises(SearchProviderError, match="invalid JSON"):
            await brave_search.search("boots")
