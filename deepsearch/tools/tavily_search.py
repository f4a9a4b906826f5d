from __future__ import annotations

from typing import Any

from tavily import AsyncTavilyClient, InvalidAPIKeyError, MissingAPIKeyError

from deepsearch.config import settings
from deepsearch.errors import ProviderNotConfiguredError, SearchProviderError
from deepsearch.models.research import SearchHit, SearchImage, SearchResponse


def _images(raw_images: list[Any]) -> list[SearchImage]:
    images: list[SearchImage] = []
    for item in raw_images or []:
        if isinstance(item, str) and item:
            images.append(SearchImage(url=item))
        elif isinstance(item, dict) and item.get("url"):
            alt = item.get("alt_text") or item.get("description") or "Search result image"
            images.append(SearchImage(url=item["url"], alt_text=alt))
    return images


async def search(
    query: str,
    *,
    include_images: bool = True,
    search_depth: str = "basic",
    max_results: int = 10,
) -> SearchResponse:
    """Execute a Tavily web search and return structured results."""
    if not settings.tavily_api_key:
        raise ProviderNotConfiguredError("tavily", "TAVILY_API_KEY is not set")

    client = AsyncTavilyClient(api_key=settings.tavily_api_key)
    try:
        response = await client.search(
            query=query,
            search_depth=search_depth,
            max_results=max_results,
            include_images=include_images,
            include_image_descriptions=include_images,
        )
    except (InvalidAPIKeyError, MissingAPIKeyError) as e:
        raise ProviderNotConfiguredError("tavily", str(e) or "invalid API key") from e
    except Exception as e:
        raise SearchProviderError("tavily", str(e) or type(e).__name__) from e

    return SearchResponse(
        results=[
            SearchHit(
                title=r.get("title", "") or "",
                url=r.get("url", ""),
                content=r.get("content", "") or "",
                author=r.get("author"),
                published_date=r.get("published_date"),
                score=r.get("score", 0.0) or 0.0,
            )
            for r in response.get("results", [])
            if r.get("url")
        ],
        images=_images(response.get("images", [])),
        provider="tavily",
    )
