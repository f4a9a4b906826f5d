"""Synthesizer: one streamed narrative over every source, cited by global number.

The cache key includes a hash of the sorted source URLs, so a different evidence set
never reuses an old narrative. Cache hits are replayed through the same frame stream
as a live call, marked ``cached``.
"""
from __future__ import annotations

from enum import Enum
from typing import AsyncIterator

from deepsearch import llm_client
from deepsearch.llm_client import LLMStream, StreamFrame, Usage, estimate_tokens
from deepsearch.models.research import AspectSearchResult, ExtractedKnowledge
from deepsearch.models.source_index import GlobalSourceIndex
from deepsearch.services.cache import CacheService, CacheType, synthesis_key
from deepsearch.services.logger import logger
from deepsearch.services.prompt_store import current_date, detect_language, render_prompt
from deepsearch.tools.web_utils import clean_content

SYNTHESIS_TEMPERATURE = 0.7
MAX_SOURCE_CHARS = 3000
REPLAY_CHUNK_CHARS = 100


class SynthesisKind(str, Enum):
    RESEARCH = "research"
    BRAINSTORM = "brainstorm"
    WEB = "web"


_CACHE_TYPES = {
    SynthesisKind.RESEARCH: CacheType.RESEARCH_SYNTHESIS,
    SynthesisKind.BRAINSTORM: CacheType.BRAINSTORM_SYNTHESIS,
    SynthesisKind.WEB: CacheType.WEB_SUMMARY,
}

_PROMPTS = {
    SynthesisKind.RESEARCH: ("synthesizer.system", "synthesizer.research"),
    SynthesisKind.BRAINSTORM: ("brainstorm.synthesizer_system", "brainstorm.synthesizer"),
    SynthesisKind.WEB: ("synthesizer.web_system", "synthesizer.web"),
}


def _attr(value: str) -> str:
    return value.replace("&", "&amp;").replace('"', "&quot;")


def format_research_data(
    aspect_results: list[AspectSearchResult],
    source_index: GlobalSourceIndex,
) -> str:
    sections = []
    for aspect in aspect_results:
        lines = [f'<researchAspect name="{_attr(aspect.aspect)}" query="{_attr(aspect.query)}">']
        for hit in aspect.results:
            index = source_index.assign(hit.url)
            lines.append(
                f'  <source index="{index}">\n'
                f"    <title>{hit.title}</title>\n"
                f"    <url>{hit.url}</url>\n"
                f"    <content>{clean_content(hit.content, MAX_SOURCE_CHARS)}</content>\n"
                f"  </source>"
            )
        lines.append("</researchAspect>")
        sections.append("\n".join(lines))
    return "\n\n".join(sections)


def _cite(indices: list[int]) -> str:
    return "".join(f"[{i}]" for i in indices)


def format_knowledge(extractions: list[ExtractedKnowledge]) -> str:
    parts = []
    for e in extractions:
        if e.is_placeholder:
            continue
        lines = [f"## {e.aspect}"]
        if e.key_insight:
            lines.append(f"Key insight: {e.key_insight}")
        lines.extend(f"- Claim ({c.confidence}): {c.statement} {_cite(c.sources)}".rstrip() for c in e.claims)
        lines.extend(
            f"- Statistic: {s.metric} = {s.value}{f' ({s.year})' if s.year else ''} {_cite([s.source] if s.source else [])}".rstrip()
            for s in e.statistics
        )
        lines.extend(
            f"- Definition: {d.term}: {d.definition} {_cite([d.source] if d.source else [])}".rstrip()
            for d in e.definitions
        )
        lines.extend(
            f"- Expert ({o.expert}): {o.opinion} {_cite([o.source] if o.source else [])}".rstrip()
            for o in e.expert_opinions
        )
        lines.extend(f"- Contradiction: {c.claim1} vs {c.claim2} {_cite(c.sources)}".rstrip() for c in e.contradictions)
        parts.append("\n".join(lines))
    return "\n\n".join(parts) or "No structured extraction available; rely on the research data."


def synthesis_messages(
    kind: SynthesisKind,
    query: str,
    aspect_results: list[AspectSearchResult],
    extractions: list[ExtractedKnowledge],
    source_index: GlobalSourceIndex,
) -> list[dict[str, str]]:
    system_key, user_key = _PROMPTS[kind]
    values = {
        "query": query,
        "current_date": current_date(),
        "language": detect_language(query),
        "research_data": format_research_data(aspect_results, source_index),
        "aspect_count": len(aspect_results),
    }
    if kind is SynthesisKind.RESEARCH:
        values["knowledge"] = format_knowledge(extractions)
    return [
        {"role": "system", "content": render_prompt(system_key)},
        {"role": "user", "content": render_prompt(user_key, **values)},
    ]


class SynthesisStream:
    """Frame stream for one synthesis, live or replayed from cache."""

    def __init__(
        self,
        frames: AsyncIterator[StreamFrame],
        *,
        cached: bool,
        live: LLMStream | None = None,
    ):
        self.cached = cached
        self.text = ""
        self.usage: Usage | None = None
        self._frames = frames
        self._live = live

    def __aiter__(self) -> "SynthesisStream":
        return self

    async def __anext__(self) -> StreamFrame:
        frame = await self._frames.__anext__()
        if frame.type == "content":
            self.text += frame.text
        elif frame.type in ("usage", "done") and frame.usage is not None:
            self.usage = frame.usage
        return frame

    async def aclose(self) -> None:
        if self._live is not None:
            await self._live.aclose()
        await self._frames.aclose()

    @property
    def tokens_used(self) -> int:
        return self.usage.total if self.usage else 0


async def _replay(text: str) -> AsyncIterator[StreamFrame]:
    for start in range(0, len(text), REPLAY_CHUNK_CHARS):
        yield StreamFrame(type="content", text=text[start:start + REPLAY_CHUNK_CHARS])
    yield StreamFrame(type="done", usage=Usage(0, 0))


class Synthesizer:
    def __init__(self, cache: CacheService, *, provider: str | None = None):
        self.cache = cache
        self.provider = provider

    def cache_key(
        self,
        kind: SynthesisKind,
        query: str,
        aspect_results: list[AspectSearchResult],
        *,
        deep: bool = False,
    ) -> str:
        urls = [url for aspect in aspect_results for url in aspect.urls]
        return synthesis_key(_CACHE_TYPES[kind], query, urls, self.provider, deep=deep)

    async def stream(
        self,
        kind: SynthesisKind,
        query: str,
        aspect_results: list[AspectSearchResult],
        extractions: list[ExtractedKnowledge],
        source_index: GlobalSourceIndex,
        *,
        deep: bool = False,
    ) -> SynthesisStream:
        key = self.cache_key(kind, query, aspect_results, deep=deep)
        cached = await self.cache.get(key)
        if cached.hit and isinstance(cached.data, dict) and cached.data.get("text"):
            # Keep citation numbers aligned with this run's index.
            format_research_data(aspect_results, source_index)
            return SynthesisStream(_replay(cached.data["text"]), cached=True)

        messages = synthesis_messages(kind, query, aspect_results, extractions, source_index)
        live = await llm_client.open_stream(
            messages,
            SYNTHESIS_TEMPERATURE,
            provider=self.provider,
            caller=f"synthesizer.{kind.value}",
        )
        return SynthesisStream(
            self._live_frames(live, key, kind, query),
            cached=False,
            live=live,
        )

    async def _live_frames(
        self,
        live: LLMStream,
        key: str,
        kind: SynthesisKind,
        query: str,
    ) -> AsyncIterator[StreamFrame]:
        async for frame in live:
            yield frame
            if frame.type == "done":
                break
        if live.text.strip():
            await self.cache.set(
                key,
                _CACHE_TYPES[kind],
                query,
                {"text": live.text, "tokens": estimate_tokens(live.text)},
                provider=self.provider,
            )
        else:
            logger.warning(f"Synthesis for '{query[:50]}' produced no text; not caching")
