from __future__ import annotations

from typing import Any

from deepsearch.models.events import EventType, SSEEvent
from deepsearch.models.research import (
    AspectSearchResult,
    ExtractedKnowledge,
    Gap,
    ResearchPlan,
    SearchImage,
    Source,
)


def run_started(run_id: str, query: str, mode: str, provider: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.RUN_STARTED,
        data={"run_id": run_id, "query": query, "mode": mode, "provider": provider},
    )


def credits_reserved(reservation_id: str | None, max_credits: int, legacy: bool) -> SSEEvent:
    return SSEEvent(
        event=EventType.CREDITS_RESERVED,
        data={"reservation_id": reservation_id, "max_credits": max_credits, "legacy": legacy},
    )


def plan_created(research_plan: ResearchPlan, *, cached: bool = False) -> SSEEvent:
    """Emit plan created event with the routed category and plan items."""
    return SSEEvent(
        event=EventType.PLAN_CREATED,
        data={
            "original_query": research_plan.original_query,
            "query_type": research_plan.query_type.value,
            "suggested_depth": research_plan.suggested_depth.value,
            "plan": [item.model_dump() for item in research_plan.plan],
            "refined_query": research_plan.refined_query,
            "search_intent": research_plan.search_intent,
            "cached": cached,
        },
    )


def agent_started(agent: str, step: int | None = None, **kwargs: Any) -> SSEEvent:
    data: dict[str, Any] = {"agent": agent}
    if step is not None:
        data["step"] = step
    data.update(kwargs)
    return SSEEvent(event=EventType.AGENT_STARTED, data=data)


def agent_completed(agent: str, **kwargs: Any) -> SSEEvent:
    return SSEEvent(event=EventType.AGENT_COMPLETED, data={"agent": agent, **kwargs})


def search_result(step: int, aspect_result: AspectSearchResult) -> SSEEvent:
    return SSEEvent(
        event=EventType.SEARCH_RESULT,
        data={
            "step": step,
            "round": aspect_result.round,
            "aspect": aspect_result.aspect,
            "query": aspect_result.query,
            "results_count": len(aspect_result.results),
            "failed": aspect_result.failed,
            "cached": aspect_result.cached,
        },
    )


def sources_collected(sources: list[Source], images: list[SearchImage]) -> SSEEvent:
    return SSEEvent(
        event=EventType.SOURCES_COLLECTED,
        data={
            "sources": [s.model_dump() for s in sources],
            "images": [i.model_dump() for i in images],
        },
    )


def extraction_completed(extraction: ExtractedKnowledge, *, round: int, cached: bool) -> SSEEvent:
    return SSEEvent(
        event=EventType.EXTRACTION_COMPLETED,
        data={
            "aspect": extraction.aspect,
            "round": round,
            "claims": len(extraction.claims),
            "key_insight": extraction.key_insight,
            "placeholder": extraction.is_placeholder,
            "cached": cached,
        },
    )


def gaps_identified(gaps: list[Gap], *, cached: bool = False) -> SSEEvent:
    return SSEEvent(
        event=EventType.GAPS_IDENTIFIED,
        data={
            "gaps": [g.model_dump() for g in gaps],
            "has_gaps": bool(gaps),
            "cached": cached,
        },
    )


def synthesis_started(sources_count: int, *, cached: bool = False) -> SSEEvent:
    return SSEEvent(
        event=EventType.SYNTHESIS_STARTED,
        data={"sources_count": sources_count, "cached": cached},
    )


def synthesis_progress(chunk: str, *, cached: bool = False) -> SSEEvent:
    return SSEEvent(event=EventType.SYNTHESIS_PROGRESS, data={"chunk": chunk, "cached": cached})


def related_searches(queries: list[str], *, cached: bool = False) -> SSEEvent:
    return SSEEvent(event=EventType.RELATED_SEARCHES, data={"queries": queries, "cached": cached})


def research_complete(
    report: str,
    sources: list[dict],
    tokens_used: int = 0,
    runtime_ms: int | None = None,
    *,
    cached: bool = False,
    search_count: int = 0,
    credits_charged: int | None = None,
) -> SSEEvent:
    data: dict[str, Any] = {
        "report": report,
        "sources": sources,
        "tokens_used": tokens_used,
        "cached": cached,
        "search_count": search_count,
        "credits_charged": credits_charged,
    }
    if runtime_ms is not None:
        data["runtime_ms"] = runtime_ms
    return SSEEvent(event=EventType.RESEARCH_COMPLETE, data=data)


def error(payload: dict[str, Any], agent: str | None = None, *, fatal: bool = True) -> SSEEvent:
    """Error event. Non-fatal errors report a degraded step; the run continues."""
    data: dict[str, Any] = {**payload, "fatal": fatal}
    if agent:
        data["agent"] = agent
    return SSEEvent(event=EventType.ERROR, data=data)
