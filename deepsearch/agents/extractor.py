"""Knowledge extractor: per-aspect structured facts cited by global source number."""
from __future__ import annotations

import asyncio
from typing import Any

from pydantic import BaseModel, ValidationError

from deepsearch import llm_client
from deepsearch.errors import ParseError, UpstreamProviderError
from deepsearch.models.research import (
    AspectSearchResult,
    Contradiction,
    ExpertOpinion,
    ExtractedClaim,
    ExtractedDefinition,
    ExtractedKnowledge,
    ExtractedStatistic,
)
from deepsearch.models.source_index import GlobalSourceIndex
from deepsearch.services.cache import CacheService, CacheType, extraction_key
from deepsearch.services.llm_json import Fallback, parse_llm_json
from deepsearch.services.logger import logger
from deepsearch.services.prompt_store import detect_language, render_prompt
from deepsearch.tools.web_utils import clean_content

EXTRACTION_TEMPERATURE = 0.3
MAX_SOURCE_CHARS = 4000
NO_RESULTS_INSIGHT = "No search results were available for this aspect."

_LIST_FIELDS: dict[str, tuple[tuple[str, ...], type[BaseModel]]] = {
    "claims": (("claims",), ExtractedClaim),
    "statistics": (("statistics",), ExtractedStatistic),
    "definitions": (("definitions",), ExtractedDefinition),
    "expert_opinions": (("expertOpinions", "expert_opinions"), ExpertOpinion),
    "contradictions": (("contradictions",), Contradiction),
}


def format_sources(aspect_result: AspectSearchResult, source_index: GlobalSourceIndex) -> str:
    """Render an aspect's hits under their global numbers, assigning any new URLs."""
    blocks = []
    for hit in aspect_result.results:
        index = source_index.assign(hit.url)
        blocks.append(
            f'<source index="{index}">\n'
            f"  <title>{hit.title}</title>\n"
            f"  <url>{hit.url}</url>\n"
            f"  <content>{clean_content(hit.content, MAX_SOURCE_CHARS)}</content>\n"
            f"</source>"
        )
    return "\n\n".join(blocks)


def _build_knowledge(payload: Any, aspect: str) -> ExtractedKnowledge:
    if not isinstance(payload, dict):
        raise ParseError("extraction output is not an object")
    fields: dict[str, Any] = {}
    for name, (keys, model) in _LIST_FIELDS.items():
        raw = next((payload[k] for k in keys if k in payload), [])
        items = []
        for item in raw if isinstance(raw, list) else []:
            try:
                items.append(model.model_validate(item))
            except ValidationError:
                continue
        fields[name] = items
    key_insight = payload.get("keyInsight") or payload.get("key_insight") or ""
    return ExtractedKnowledge(
        aspect=str(payload.get("aspect") or aspect),
        key_insight=str(key_insight),
        **fields,
    )


def parse_extraction(text: str, aspect: str) -> ExtractedKnowledge:
    outcome = parse_llm_json(text, lambda payload: _build_knowledge(payload, aspect))
    if isinstance(outcome, Fallback):
        logger.warning(f"Extraction for '{aspect}' unparseable, using placeholder: {outcome.reason}")
        return ExtractedKnowledge.placeholder(aspect)
    return outcome.value


def remap_sources(
    extraction: ExtractedKnowledge,
    urls_by_index: dict[int, str],
    source_index: GlobalSourceIndex,
) -> ExtractedKnowledge:
    """Renumber citations recorded under another run's index into this run's index."""

    def one(old: int | None) -> int | None:
        if old is None:
            return None
        url = urls_by_index.get(old)
        return source_index.assign(url) if url else None

    def many(old: list[int]) -> list[int]:
        return [new for new in (one(i) for i in old) if new is not None]

    return extraction.model_copy(
        update={
            "claims": [c.model_copy(update={"sources": many(c.sources)}) for c in extraction.claims],
            "statistics": [s.model_copy(update={"source": one(s.source)}) for s in extraction.statistics],
            "definitions": [d.model_copy(update={"source": one(d.source)}) for d in extraction.definitions],
            "expert_opinions": [o.model_copy(update={"source": one(o.source)}) for o in extraction.expert_opinions],
            "contradictions": [c.model_copy(update={"sources": many(c.sources)}) for c in extraction.contradictions],
        }
    )


def extraction_messages(query: str, aspect_result: AspectSearchResult, sources: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": render_prompt("extractor.system")},
        {
            "role": "user",
            "content": render_prompt(
                "extractor.user",
                query=query,
                aspect=aspect_result.aspect,
                language=detect_language(query),
                sources=sources,
            ),
        },
    ]


class KnowledgeExtractor:
    def __init__(self, cache: CacheService, *, provider: str | None = None):
        self.cache = cache
        self.provider = provider

    async def extract(
        self,
        query: str,
        aspect_result: AspectSearchResult,
        source_index: GlobalSourceIndex,
    ) -> tuple[ExtractedKnowledge, bool]:
        """Returns the extraction and whether it came from cache. Never raises on bad output."""
        if not aspect_result.results:
            return ExtractedKnowledge(aspect=aspect_result.aspect, key_insight=NO_RESULTS_INSIGHT), False

        sources = format_sources(aspect_result, source_index)
        key = extraction_key(aspect_result.query, aspect_result.urls, self.provider)

        cached = await self.cache.get(key)
        if cached.hit:
            try:
                extraction = ExtractedKnowledge.model_validate(cached.data["extraction"])
                urls_by_index = {int(k): v for k, v in cached.data["source_urls"].items()}
                return remap_sources(extraction, urls_by_index, source_index), True
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed cached extraction {key}: {e}")

        try:
            response = await llm_client.complete_text(
                extraction_messages(query, aspect_result, sources),
                EXTRACTION_TEMPERATURE,
                provider=self.provider,
                caller="extractor.aspect",
            )
        except UpstreamProviderError as e:
            logger.warning(f"Extraction call failed for '{aspect_result.aspect}': {e}")
            return ExtractedKnowledge.placeholder(aspect_result.aspect), False

        extraction = parse_extraction(response.content, aspect_result.aspect)
        if not extraction.is_placeholder:
            used = {source_index.get(url): url for url in aspect_result.urls}
            await self.cache.set(
                key,
                CacheType.EXTRACTION,
                aspect_result.query,
                {
                    "extraction": extraction.model_dump(mode="json", by_alias=True),
                    "source_urls": {str(i): url for i, url in used.items() if i is not None},
                },
                provider=self.provider,
            )
        return extraction, False

    async def extract_all(
        self,
        query: str,
        aspect_results: list[AspectSearchResult],
        source_index: GlobalSourceIndex,
    ) -> list[tuple[ExtractedKnowledge, bool]]:
        # Numbers are handed out in aspect order before the concurrent calls start.
        for aspect_result in aspect_results:
            source_index.assign_many(aspect_result.urls)
        return list(
            await asyncio.gather(
                *(self.extract(query, aspect_result, source_index) for aspect_result in aspect_results)
            )
        )
