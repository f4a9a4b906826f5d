"""Planner: turns a routed query into a bounded list of (aspect, sub-query) pairs.

The routed category picks a specialized planning strategy; every strategy yields the
same ``PlanItem`` shape. The planner never aborts the pipeline: unusable output
becomes a single-item plan over the original query.
"""
from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from deepsearch import llm_client
from deepsearch.errors import ParseError, UpstreamProviderError
from deepsearch.models.research import BrainstormAngle, PlanItem, QueryCategory
from deepsearch.services.llm_json import Fallback, parse_llm_json
from deepsearch.services.logger import logger
from deepsearch.services.prompt_store import current_date, has_prompt, render_prompt

MAX_PLAN_ITEMS = 4
MAX_BRAINSTORM_ANGLES = 5
PLANNER_TEMPERATURE = 0.7
REFRAME_TEMPERATURE = 0.8

M = TypeVar("M", bound=BaseModel)


def _valid_items(payload: Any, model: type[M], limit: int) -> list[M]:
    if not isinstance(payload, list):
        raise ParseError("expected a JSON array")
    items: list[M] = []
    for raw in payload:
        if not isinstance(raw, dict):
            continue
        try:
            items.append(model.model_validate(raw))
        except ValidationError:
            continue
    if not items:
        raise ParseError("no valid items in array")
    return items[:limit]


def fallback_plan(query: str) -> list[PlanItem]:
    return [PlanItem(aspect="general", query=query)]


def parse_plan(text: str, query: str) -> list[PlanItem]:
    outcome = parse_llm_json(text, lambda payload: _valid_items(payload, PlanItem, MAX_PLAN_ITEMS))
    if isinstance(outcome, Fallback):
        logger.warning(f"Plan output unusable, using single-item plan: {outcome.reason}")
        return fallback_plan(query)
    return outcome.value


def strategy_for(category: QueryCategory) -> str:
    key = f"planner.strategies.{category.value}"
    if not has_prompt(key):
        key = "planner.strategies.general"
    return render_prompt(key)


def planner_messages(query: str, category: QueryCategory) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": render_prompt("planner.system")},
        {
            "role": "user",
            "content": render_prompt(
                "planner.base",
                query=query,
                category=category.value,
                strategy=strategy_for(category),
                current_date=current_date(),
            ),
        },
    ]


async def generate_plan(
    query: str,
    category: QueryCategory = QueryCategory.GENERAL,
    *,
    provider: str | None = None,
) -> list[PlanItem]:
    try:
        response = await llm_client.complete_text(
            planner_messages(query, category),
            PLANNER_TEMPERATURE,
            provider=provider,
            caller=f"planner.{category.value}",
        )
    except UpstreamProviderError as e:
        logger.warning(f"Planner call failed, using single-item plan: {e}")
        return fallback_plan(query)
    return parse_plan(response.content, query)


# --- Brainstorm ---


def fallback_angles(query: str) -> list[BrainstormAngle]:
    return [BrainstormAngle(angle="direct", query=query)]


def parse_angles(text: str, query: str) -> list[BrainstormAngle]:
    outcome = parse_llm_json(
        text, lambda payload: _valid_items(payload, BrainstormAngle, MAX_BRAINSTORM_ANGLES)
    )
    if isinstance(outcome, Fallback):
        logger.warning(f"Reframe output unusable, searching the topic directly: {outcome.reason}")
        return fallback_angles(query)
    return outcome.value


async def reframe_angles(query: str, *, provider: str | None = None) -> list[BrainstormAngle]:
    messages = [
        {"role": "system", "content": render_prompt("brainstorm.reframe_system")},
        {"role": "user", "content": render_prompt("brainstorm.reframe", query=query, current_date=current_date())},
    ]
    try:
        response = await llm_client.complete_text(
            messages, REFRAME_TEMPERATURE, provider=provider, caller="planner.reframe"
        )
    except UpstreamProviderError as e:
        logger.warning(f"Reframe call failed, searching the topic directly: {e}")
        return fallback_angles(query)
    return parse_angles(response.content, query)


def angles_to_plan(angles: list[BrainstormAngle]) -> list[PlanItem]:
    return [PlanItem(aspect=a.angle, query=a.query) for a in angles]
