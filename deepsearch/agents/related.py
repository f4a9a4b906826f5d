"""Related searches: follow-up queries suggested alongside the final answer."""
from __future__ import annotations

import re
from typing import Any

from deepsearch import llm_client
from deepsearch.errors import ParseError, ProviderNotConfiguredError
from deepsearch.services.cache import CacheService, CacheType, related_key
from deepsearch.services.llm_json import Fallback, parse_llm_json
from deepsearch.services.logger import logger
from deepsearch.services.prompt_store import render_prompt

RELATED_TEMPERATURE = 0.7
MAX_RELATED = 6
KEY_TOPICS_CHARS = 500

_CITATION = re.compile(r"\[\d+\]")


def key_topics(query: str, content: str | None) -> str:
    """First 500 characters of ``content`` without citation markers; the query when empty."""
    if not content:
        return query
    return _CITATION.sub("", content[:KEY_TOPICS_CHARS]).strip()


def _build_queries(payload: Any) -> list[str]:
    if not isinstance(payload, list):
        raise ParseError("related searches output is not an array")
    queries = [
        item["query"].strip()
        for item in payload
        if isinstance(item, dict) and isinstance(item.get("query"), str) and item["query"].strip()
    ]
    return queries[:MAX_RELATED]


def parse_related(text: str) -> list[str] | None:
    outcome = parse_llm_json(text, _build_queries)
    if isinstance(outcome, Fallback):
        logger.warning(f"Related searches output unusable: {outcome.reason}")
        return None
    return outcome.value


async def suggest_related(
    query: str,
    content: str | None,
    *,
    cache: CacheService,
    provider: str | None = None,
) -> tuple[list[str], bool]:
    topics = key_topics(query, content)
    key = related_key(query, topics)
    cached = await cache.get(key)
    if cached.hit and isinstance(cached.data, list):
        return [str(q) for q in cached.data], True

    messages = [
        {"role": "system", "content": render_prompt("related.system", query=query, key_topics=topics)},
        {"role": "user", "content": render_prompt("related.user", query=query)},
    ]
    try:
        response = await llm_client.complete_text(
            messages, RELATED_TEMPERATURE, provider=provider, caller="related"
        )
    except ProviderNotConfiguredError:
        raise
    except Exception as e:
        logger.warning(f"Related searches failed: {e}")
        return [], False

    queries = parse_related(response.content)
    if queries is None:
        return [], False
    await cache.set(key, CacheType.RELATED, query, queries, provider=provider)
    return queries, False
