from __future__ import annotations

from typing import Any

import httpx

from deepsearch.config import settings
from deepsearch.errors import ProviderNotConfiguredError, SearchProviderError
from deepsearch.models.research import SearchHit, SearchResponse

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:300] or response.reason_phrase
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("detail") or error.get("code") or error)
    if error:
        return str(error)
    return response.text[:300]


async def search(
    query: str,
    *,
    include_images: bool = False,
    search_depth: str = "basic",
    max_results: int = 10,
) -> SearchResponse:
    """Execute a Brave web search and normalize results. Brave's web endpoint returns no images."""
    if not settings.brave_api_key:
        raise ProviderNotConfiguredError("brave", "BRAVE_API_KEY is not configured")

    params: dict[str, Any] = {
        "q": query,
        "count": max_results,
    }
    if search_depth == "advanced":
        params["extra_snippets"] = "true"

    try:
        async with httpx.AsyncClient(timeout=settings.search_timeout_seconds) as client:
            response = await client.get(
                BRAVE_SEARCH_URL,
                params=params,
                headers={
                    "Accept": "application/json",
                    "X-Subscription-Token": settings.brave_api_key,
                },
            )
    except httpx.HTTPError as e:
        raise SearchProviderError("brave", str(e)) from e

    if response.status_code in (401, 403):
        raise ProviderNotConfiguredError("brave", _error_message(response))
    if response.status_code >= 400:
        raise SearchProviderError(
            "brave",
            f"HTTP {response.status_code}: {_error_message(response)}",
            status=response.status_code,
        )
    try:
        payload = response.json()
    except ValueError as e:
        raise SearchProviderError("brave", f"invalid JSON response: {e}") from e

    raw_results = payload.get("web", {}).get("results", [])
    total = max(len(raw_results), 1)
    mapped: list[SearchHit] = []
    for idx, item in enumerate(raw_results):
        if not item.get("url"):
            continue
        snippets = item.get("extra_snippets", []) or []
        description = item.get("description", "") or ""
        content = " ".join([description.strip(), *snippets]).strip()
        # No relevance score in this response shape; rank order stands in for it.
        score = max(0.0, 1.0 - (idx / total))
        mapped.append(
            SearchHit(
                title=item.get("title", ""),
                url=item["url"],
                content=content,
                published_date=item.get("page_age"),
                score=score,
            )
        )
    return SearchResponse(results=mapped, provider="brave")
