from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Iterable

from deepsearch.config import settings
from deepsearch.errors import ProviderNotConfiguredError, error_payload
from deepsearch.models.events import SSEEvent
from deepsearch.models.research import (
    AspectSearchResult,
    PlanItem,
    SearchHit,
    SearchImage,
    SearchResponse,
    Source,
)
from deepsearch.models.source_index import GlobalSourceIndex
from deepsearch.services import streaming
from deepsearch.services.cache import CacheService, CacheType, search_key
from deepsearch.services.logger import logger
from deepsearch.tools import search_provider, web_utils


@dataclass(slots=True)
class SearchBatch:
    aspect_results: list[AspectSearchResult] = field(default_factory=list)
    events: list[SSEEvent] = field(default_factory=list)
    provider_calls: int = 0


@dataclass(slots=True)
class _AspectOutcome:
    result: AspectSearchResult
    provider_called: bool = False


async def _search_aspect(
    item: PlanItem,
    *,
    cache: CacheService,
    round: int,
    search_depth: str,
    max_results: int,
    include_images: bool,
    semaphore: asyncio.Semaphore,
) -> _AspectOutcome:
    key = search_key(item.query, search_depth, max_results)
    cached = await cache.get(key)
    if cached.hit:
        response = SearchResponse.model_validate(cached.data)
        return _AspectOutcome(
            AspectSearchResult(
                aspect=item.aspect,
                query=item.query,
                results=response.results,
                images=response.images,
                round=round,
                cached=True,
            )
        )

    async with semaphore:
        response = await search_provider.search(
            item.query,
            include_images=include_images,
            search_depth=search_depth,
            max_results=max_results,
        )
    if response.results:
        await cache.set(
            key,
            CacheType.SEARCH,
            item.query,
            response.model_dump(mode="json"),
            provider=response.provider,
        )
    return _AspectOutcome(
        AspectSearchResult(
            aspect=item.aspect,
            query=item.query,
            results=response.results,
            images=response.images,
            round=round,
        ),
        provider_called=True,
    )


async def run_aspect_searches(
    plan: list[PlanItem],
    *,
    cache: CacheService,
    round: int = 1,
    step_offset: int = 0,
    search_depth: str = "basic",
    max_results: int | None = None,
    include_images: bool = True,
    max_parallel: int | None = None,
) -> SearchBatch:
    """Search every plan item concurrently and wait for all of them.

    A failed aspect continues with an empty result set. A provider configuration
    error is the same for every aspect and is raised.
    """
    batch = SearchBatch()
    max_results = max_results or settings.search_max_results
    semaphore = asyncio.Semaphore(max(max_parallel or settings.max_parallel_search, 1))

    for index, item in enumerate(plan):
        batch.events.append(
            streaming.agent_started("search", step=step_offset + index, query=item.query, aspect=item.aspect, round=round)
        )

    outcomes = await asyncio.gather(
        *(
            _search_aspect(
                item,
                cache=cache,
                round=round,
                search_depth=search_depth,
                max_results=max_results,
                include_images=include_images,
                semaphore=semaphore,
            )
            for item in plan
        ),
        return_exceptions=True,
    )

    for outcome in outcomes:
        if isinstance(outcome, ProviderNotConfiguredError):
            raise outcome
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome

    for index, (item, outcome) in enumerate(zip(plan, outcomes)):
        step = step_offset + index
        if isinstance(outcome, BaseException):
            logger.warning(f"Search failed for aspect '{item.aspect}': {outcome}")
            result = AspectSearchResult(aspect=item.aspect, query=item.query, round=round, failed=True)
            batch.events.append(streaming.error(error_payload(outcome), agent="search", fatal=False))
        else:
            result = outcome.result
            if outcome.provider_called:
                batch.provider_calls += 1
        batch.aspect_results.append(result)
        batch.events.append(streaming.search_result(step, result))
        batch.events.append(
            streaming.agent_completed(
                "search",
                step=step,
                success=not result.failed,
                results_count=len(result.results),
                cached=result.cached,
            )
        )

    return batch


def dedupe_aspect_results(
    aspect_results: list[AspectSearchResult],
    seen: set[str] | None = None,
) -> list[AspectSearchResult]:
    """Drop hits whose normalized URL already appeared in an earlier aspect (or in ``seen``)."""
    seen = set() if seen is None else set(seen)
    deduped: list[AspectSearchResult] = []
    for aspect in aspect_results:
        kept: list[SearchHit] = []
        for hit in aspect.results:
            key = web_utils.normalize_url(hit.url)
            if key in seen or not web_utils.is_valid_url(hit.url):
                continue
            seen.add(key)
            kept.append(hit)
        deduped.append(aspect.model_copy(update={"results": kept}))
    return deduped


def merge_rounds(
    round1: list[AspectSearchResult],
    round2: list[AspectSearchResult],
) -> list[AspectSearchResult]:
    """Round 1 keeps priority; round 2 only contributes URLs not already seen."""
    first = dedupe_aspect_results(round1)
    seen = {web_utils.normalize_url(hit.url) for aspect in first for hit in aspect.results}
    return first + dedupe_aspect_results(round2, seen)


def collect_images(aspect_results: Iterable[AspectSearchResult], limit: int = 12) -> list[SearchImage]:
    images: list[SearchImage] = []
    seen: set[str] = set()
    for aspect in aspect_results:
        for image in aspect.images:
            if image.url in seen:
                continue
            seen.add(image.url)
            images.append(image)
            if len(images) >= limit:
                return images
    return images


def to_source(hit: SearchHit, index: int | None, display_id: str) -> Source:
    domain = web_utils.extract_domain(hit.url)
    return Source(
        id=display_id,
        index=index,
        title=hit.title or domain or hit.url,
        url=hit.url,
        icon=web_utils.favicon_url(hit.url),
        snippet=web_utils.clean_content(hit.content, max_length=200),
        content=hit.content,
        author=hit.author or domain or None,
        published_date=hit.published_date,
        read_time=web_utils.estimate_read_time(hit.content),
        time_ago=web_utils.time_ago(hit.published_date),
    )


def build_sources(
    aspect_results: Iterable[AspectSearchResult],
    source_index: GlobalSourceIndex,
) -> list[Source]:
    """One Source per distinct URL, numbered by the run's source index."""
    sources: dict[int, Source] = {}
    for aspect in aspect_results:
        for hit in aspect.results:
            index = source_index.assign(hit.url)
            if index not in sources:
                sources[index] = to_source(hit, index, str(index))
    return [sources[i] for i in sorted(sources)]
