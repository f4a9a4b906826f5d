"""Web-mode query refinement: rewrite the query for a search engine before searching."""
from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from deepsearch import llm_client
from deepsearch.errors import ProviderNotConfiguredError
from deepsearch.models.research import RefinedQuery
from deepsearch.services.cache import CacheService, CacheType, refine_key
from deepsearch.services.llm_json import Fallback, parse_llm_json
from deepsearch.services.logger import logger
from deepsearch.services.prompt_store import current_date, render_prompt

REFINE_TEMPERATURE = 0.7
MAX_REFINED_LENGTH = 300


def _build_refined(payload: Any) -> RefinedQuery:
    if not isinstance(payload, dict) or not isinstance(payload.get("query"), str) or not payload["query"].strip():
        raise ValueError("refine output has no query")
    intent = payload.get("intent")
    return RefinedQuery(
        refined_query=payload["query"].strip(),
        search_intent=(intent.strip() or None) if isinstance(intent, str) else None,
    )


def _parse(text: str) -> RefinedQuery | None:
    outcome = parse_llm_json(text, _build_refined)
    if not isinstance(outcome, Fallback):
        return outcome.value
    lines = [line.strip().strip("\"'") for line in (text or "").splitlines()]
    plain = next((line for line in lines if line), "")
    if not plain or plain.startswith(("{", "[", "```")) or len(plain) > MAX_REFINED_LENGTH:
        logger.warning(f"Refine output unusable, keeping the original query: {outcome.reason}")
        return None
    return RefinedQuery(refined_query=plain)


def parse_refined(text: str, query: str) -> RefinedQuery:
    """JSON ``{"query", "intent"}``, else the first line as a plain-text query, else ``query``."""
    return _parse(text) or RefinedQuery(refined_query=query)


def refine_messages(query: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": render_prompt("refiner.system")},
        {"role": "user", "content": render_prompt("refiner.user", query=query, current_date=current_date())},
    ]


async def refine_query(
    query: str,
    *,
    cache: CacheService,
    provider: str | None = None,
) -> tuple[RefinedQuery, bool]:
    """Return the refined query and whether it came from cache. Failures keep ``query``."""
    key = refine_key(query, provider)
    cached = await cache.get(key)
    if cached.hit:
        try:
            return RefinedQuery.model_validate(cached.data), True
        except ValidationError as e:
            logger.warning(f"Ignoring malformed cached refinement {key}: {e}")

    try:
        response = await llm_client.complete_text(
            refine_messages(query),
            REFINE_TEMPERATURE,
            provider=provider,
            caller="refiner",
        )
    except ProviderNotConfiguredError:
        raise
    except Exception as e:
        logger.warning(f"Query refinement failed, searching the original query: {e}")
        return RefinedQuery(refined_query=query), False

    refined = _parse(response.content)
    if refined is None:
        return RefinedQuery(refined_query=query), False
    await cache.set(key, CacheType.REFINE, query, refined.model_dump(mode="json"), provider=provider)
    logger.info(f"Refined query: {query[:50]} -> {refined.refined_query[:50]}")
    return refined, False
