from __future__ import annotations

import asyncio

from deepsearch.config import settings
from deepsearch.errors import ProviderNotConfiguredError, SearchProviderError
from deepsearch.models.research import SearchResponse
from deepsearch.tools import brave_search, tavily_search

PROVIDERS = {
    "tavily": tavily_search,
    "brave": brave_search,
}
FALLBACKS = {"tavily": "brave", "brave": "tavily"}


async def _run(name: str, query: str, include_images: bool, search_depth: str, max_results: int) -> SearchResponse:
    try:
        return await asyncio.wait_for(
            PROVIDERS[name].search(
                query,
                include_images=include_images,
                search_depth=search_depth,
                max_results=max_results,
            ),
            timeout=settings.search_timeout_seconds,
        )
    except asyncio.TimeoutError:
        raise SearchProviderError(name, "search timed out") from None


async def search(
    query: str,
    *,
    include_images: bool = True,
    search_depth: str = "basic",
    max_results: int = 10,
) -> SearchResponse:
    """Search on the configured provider, retrying once on the other provider when enabled."""
    provider = settings.search_provider.lower().strip()
    if provider not in PROVIDERS:
        raise ProviderNotConfiguredError(provider, "unsupported SEARCH_PROVIDER")

    fallback = FALLBACKS[provider] if settings.search_fallback_enabled else None
    try:
        response = await _run(provider, query, include_images, search_depth, max_results)
    except SearchProviderError as e:
        if fallback is None:
            raise
        try:
            response = await _run(fallback, query, include_images, search_depth, max_results)
        except ProviderNotConfiguredError:
            raise e from None
        response.fallback_from = provider
        response.fallback_reason = str(e)
        return response

    if response.results or fallback is None:
        return response

    try:
        fallback_response = await _run(fallback, query, include_images, search_depth, max_results)
    except (SearchProviderError, ProviderNotConfiguredError):
        return response
    fallback_response.fallback_from = provider
    fallback_response.fallback_reason = f"{provider} returned zero results"
    return fallback_response
