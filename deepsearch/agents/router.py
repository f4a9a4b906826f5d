"""Query router: one low-temperature call that labels the query's intent."""
from __future__ import annotations

from typing import Any

from deepsearch import llm_client
from deepsearch.errors import UpstreamProviderError
from deepsearch.models.research import QueryCategory, RouterResult, SuggestedDepth
from deepsearch.services.llm_json import Fallback, parse_llm_json
from deepsearch.services.logger import logger
from deepsearch.services.prompt_store import current_date, render_prompt

ROUTER_TEMPERATURE = 0.3


def _build_router_result(payload: Any) -> RouterResult:
    if not isinstance(payload, dict):
        raise ValueError("router output is not an object")
    raw_category = str(payload.get("category", "")).strip().lower()
    raw_depth = str(payload.get("suggestedDepth") or payload.get("suggested_depth") or "").strip().lower()
    try:
        category = QueryCategory(raw_category)
    except ValueError:
        category = QueryCategory.GENERAL
    try:
        depth = SuggestedDepth(raw_depth)
    except ValueError:
        depth = SuggestedDepth.STANDARD
    return RouterResult(category=category, suggested_depth=depth)


def parse_router_output(text: str) -> RouterResult:
    """Out-of-enum values and unparseable output both resolve to ``general``/``standard``."""
    outcome = parse_llm_json(text, _build_router_result)
    if isinstance(outcome, Fallback):
        logger.warning(f"Router output unparseable, defaulting to general: {outcome.reason}")
        return RouterResult()
    return outcome.value


def router_messages(query: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": render_prompt("router.system")},
        {"role": "user", "content": render_prompt("router.user", query=query, current_date=current_date())},
    ]


async def classify_query(query: str, *, provider: str | None = None) -> RouterResult:
    try:
        response = await llm_client.complete_text(
            router_messages(query),
            ROUTER_TEMPERATURE,
            provider=provider,
            caller="router.classify",
        )
    except UpstreamProviderError as e:
        logger.warning(f"Router call failed, defaulting to general: {e}")
        return RouterResult()
    return parse_router_output(response.content)

