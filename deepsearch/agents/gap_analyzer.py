"""Gap analyzer: proposes up to three follow-up searches from round-1 extractions.

Fail-safe: any failure yields no gaps and the run continues with a single round.
"""
from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from deepsearch import llm_client
from deepsearch.errors import ParseError, ProviderNotConfiguredError
from deepsearch.models.research import ExtractedKnowledge, Gap, GapAnalysis
from deepsearch.services.cache import CacheService, CacheType, gap_analysis_key, hash_text
from deepsearch.services.llm_json import Fallback, parse_llm_json
from deepsearch.services.logger import logger
from deepsearch.services.prompt_store import current_date, detect_language, render_prompt

GAP_TEMPERATURE = 0.4
MAX_GAPS = 3


def summarize_extractions(extractions: list[ExtractedKnowledge]) -> str:
    return "\n".join(
        f"- {e.aspect}: {len(e.claims)} claims extracted. Key insight: {e.key_insight or 'No key insight'}"
        for e in extractions
    )


def extractions_hash(extractions: list[ExtractedKnowledge]) -> str:
    payload = [
        {"aspect": e.aspect, "insight": e.key_insight, "claims": [c.statement for c in e.claims]}
        for e in extractions
    ]
    return hash_text(json.dumps(payload, sort_keys=True, ensure_ascii=False))


def _build_gaps(payload: Any) -> list[Gap]:
    if not isinstance(payload, list):
        raise ParseError("gap output is not an array")
    gaps: list[Gap] = []
    for raw in payload:
        if not isinstance(raw, dict):
            continue
        try:
            gaps.append(Gap.model_validate(raw))
        except ValidationError:
            continue
    return gaps[:MAX_GAPS]


def _parse(text: str) -> list[Gap] | None:
    outcome = parse_llm_json(text, _build_gaps)
    if isinstance(outcome, Fallback):
        logger.warning(f"Gap analysis output unusable, treating as no gaps: {outcome.reason}")
        return None
    return outcome.value


def parse_gaps(text: str) -> list[Gap]:
    return _parse(text) or []


def gap_messages(query: str, extractions: list[ExtractedKnowledge]) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": render_prompt("gap_analyzer.system")},
        {
            "role": "user",
            "content": render_prompt(
                "gap_analyzer.user",
                query=query,
                current_date=current_date(),
                language=detect_language(query),
                summary=summarize_extractions(extractions),
            ),
        },
    ]


async def analyze_gaps(
    query: str,
    extractions: list[ExtractedKnowledge],
    *,
    cache: CacheService,
    provider: str | None = None,
) -> tuple[GapAnalysis, bool]:
    if not extractions:
        return GapAnalysis(), False

    key = gap_analysis_key(query, extractions_hash(extractions), provider)
    cached = await cache.get(key)
    if cached.hit:
        try:
            return GapAnalysis.model_validate(cached.data), True
        except ValidationError as e:
            logger.warning(f"Ignoring malformed cached gap analysis {key}: {e}")

    try:
        response = await llm_client.complete_text(
            gap_messages(query, extractions),
            GAP_TEMPERATURE,
            provider=provider,
            caller="gap_analyzer",
        )
    except ProviderNotConfiguredError:
        raise
    except Exception as e:
        logger.warning(f"Gap analysis failed, continuing without round 2: {e}")
        return GapAnalysis(), False

    gaps = _parse(response.content)
    if gaps is None:
        # Unparseable replies are never cached.
        return GapAnalysis(), False
    analysis = GapAnalysis(gaps=gaps)
    await cache.set(key, CacheType.GAP_ANALYSIS, query, analysis.model_dump(mode="json"), provider=provider)
    logger.info(f"Gap analysis found {len(analysis.gaps)} gaps for query: {query[:50]}")
    return analysis, False
