"""End-to-end pipeline runs with every upstream faked."""
from __future__ import annotations

from contextlib import ExitStack, contextmanager
from types import SimpleNamespace
from typing import Any, AsyncIterator
from unittest.mock import AsyncMock, patch

import pytest

from deepsearch.agents import orchestrator as orchestrator_module
from deepsearch.agents.extractor import KnowledgeExtractor
from deepsearch.agents.orchestrator import ResearchOrchestrator, validate_request
from deepsearch.errors import LedgerFunctionNotFound, RequestValidationError
from deepsearch.llm_client import LLMProvider, LLMStream, ProviderId, StreamFrame, Usage
from deepsearch.models.events import EventType
from deepsearch.models.research import (
    ExtractedKnowledge,
    Gap,
    GapAnalysis,
    PlanItem,
    QueryCategory,
    RefinedQuery,
    ResearchMode,
    RouterResult,
    SearchHit,
    SearchResponse,
)
from deepsearch.services.background import BackgroundTasks
from deepsearch.services.cache import CacheService
from deepsearch.services.credits import CreditLedgerClient

REPORT = "Hiking boots with a good fit last longer [1]. Mid-range pairs cost $150 on average [2]. "


class FakeLedger:
    def __init__(self, **responses):
        self.responses = {
            "reserve_credits": {"allowed": True, "reservation_id": "res-1"},
            "finalize_credits": {"success": True},
            "cancel_reservation": {"success": True},
            **responses,
        }
        self.calls: list[tuple[str, dict]] = []

    async def call(self, function, params=None):
        self.calls.append((function, params or {}))
        if function not in self.responses:
            raise LedgerFunctionNotFound(function)
        return self.responses[function]

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


class ScriptedProvider(LLMProvider):
    def __init__(self, text: str):
        super().__init__("key", "fake-model")
        self.id = ProviderId.OPENAI
        self.text = text

    async def complete(self, messages, temperature):
        raise NotImplementedError

    async def open_stream(self, messages, temperature):
        return object()

    async def stream_parser(self, raw: Any) -> AsyncIterator[StreamFrame]:
        for start in range(0, len(self.text), 60):
            yield StreamFrame(type="content", text=self.text[start:start + 60])
        yield StreamFrame(type="usage", usage=Usage(300, 40))

    async def close_raw(self, raw):
        pass


def _hits(*urls: str) -> list[SearchHit]:
    return [SearchHit(title=f"Title {u}", url=u, content=f"Content about {u}") for u in urls]


RESULTS = {
    "boot reviews": _hits("https://reviews.com/1", "https://shared.com/x"),
    "boot prices": _hits("https://prices.com/1", "https://shared.com/x"),
    "boot resoling": _hits("https://cobbler.com/1", "https://reviews.com/1"),
    "best hiking boots": _hits("https://web.com/1"),
}

PLAN = [PlanItem(aspect="reviews", query="boot reviews"), PlanItem(aspect="prices", query="boot prices")]


async def _search(query, **kwargs):
    return SearchResponse(results=RESULTS.get(query, []), provider="tavily")


async def _extract_all(query, aspects, source_index):
    return [(ExtractedKnowledge(aspect=a.aspect, key_insight=f"insight {a.aspect}"), False) for a in aspects]


@contextmanager
def pipeline(*, search=_search, gaps: list[Gap] | None = None):
    mocks = SimpleNamespace(
        classify=AsyncMock(return_value=RouterResult(category=QueryCategory.SHOPPING)),
        plan=AsyncMock(return_value=PLAN),
        search=AsyncMock(side_effect=search),
        extract_all=AsyncMock(side_effect=_extract_all),
        gaps=AsyncMock(return_value=(GapAnalysis(gaps=gaps or []), False)),
        open_stream=AsyncMock(side_effect=lambda *a, **k: LLMStream(ScriptedProvider(REPORT), object(), caller="test")),
        refine=AsyncMock(side_effect=lambda query, **kwargs: (RefinedQuery(refined_query=query), False)),
        related=AsyncMock(return_value=(["boot care tips"], False)),
    )
    with ExitStack() as stack:
        stack.enter_context(
            patch.object(orchestrator_module.llm_client, "get_provider", return_value=SimpleNamespace(id=ProviderId.OPENAI))
        )
        stack.enter_context(patch("deepsearch.agents.orchestrator.router.classify_query", new=mocks.classify))
        stack.enter_context(patch("deepsearch.agents.orchestrator.planner.generate_plan", new=mocks.plan))
        stack.enter_context(patch("deepsearch.services.search_executor.search_provider.search", new=mocks.search))
        stack.enter_context(patch.object(KnowledgeExtractor, "extract_all", new=mocks.extract_all))
        stack.enter_context(patch("deepsearch.agents.orchestrator.analyze_gaps", new=mocks.gaps))
        stack.enter_context(patch("deepsearch.agents.orchestrator.refiner.refine_query", new=mocks.refine))
        stack.enter_context(patch("deepsearch.agents.orchestrator.related.suggest_related", new=mocks.related))
        stack.enter_context(patch("deepsearch.agents.synthesizer.llm_client.open_stream", new=mocks.open_stream))
        stack.enter_context(patch.object(orchestrator_module.proofreader.settings, "proofread_with_llm", False))
        yield mocks


def _orchestrator(ledger: FakeLedger, cache: CacheService | None = None) -> tuple[ResearchOrchestrator, BackgroundTasks]:
    tasks = BackgroundTasks()
    client = CreditLedgerClient(ledger, timeout=1, tasks=tasks)
    return ResearchOrchestrator(cache or CacheService(), client), tasks


async def _run(orchestrator: ResearchOrchestrator, query: str, **kwargs) -> list:
    return [event async for event in orchestrator.research(query, **kwargs)]


def _types(events) -> list[str]:
    collapsed: list[str] = []
    for event in events:
        name = event.event.value
        if not collapsed or collapsed[-1] != name or name != "synthesis_progress":
            collapsed.append(name)
    return collapsed


# --- validation ---


def test_validate_request_normalizes_and_rejects():
    assert validate_request("  boots ", None) == ("boots", ResearchMode.RESEARCH)
    assert validate_request("boots", "deep") == ("boots", ResearchMode.DEEP)
    for query, mode in (("   ", "web"), ("x" * 2001, "web"), ("boots", "turbo")):
        with pytest.raises(RequestValidationError):
            validate_request(query, mode)


@pytest.mark.asyncio
async def test_invalid_query_yields_single_error_event():
    ledger = FakeLedger()
    orchestrator, _ = _orchestrator(ledger)
    with pipeline():
        events = await _run(orchestrator, "   ", mode="research", user_id="u")
    assert [e.event for e in events] == [EventType.ERROR]
    assert events[0].data["error_type"] == "invalid_query"
    assert ledger.calls == []


# --- full runs ---


@pytest.mark.asyncio
async def test_research_mode_event_order_and_billing():
    ledger = FakeLedger()
    orchestrator, tasks = _orchestrator(ledger)

    with pipeline() as mocks:
        events = await _run(orchestrator, "best hiking boots", mode="research", user_id="u")
    await tasks.drain()

    assert _types(events) == [
        "run_started",
        "credits_reserved",
        "plan_created",
        "agent_started",
        "agent_started",
        "search_result",
        "agent_completed",
        "search_result",
        "agent_completed",
        "sources_collected",
        "extraction_completed",
        "extraction_completed",
        "synthesis_started",
        "synthesis_progress",
        "related_searches",
        "research_complete",
    ]
    assert events[-1].is_terminal
    assert mocks.extract_all.await_count == 1
    mocks.gaps.assert_not_awaited()

    sources = next(e for e in events if e.event is EventType.SOURCES_COLLECTED).data["sources"]
    assert [(s["index"], s["url"]) for s in sources] == [
        (1, "https://reviews.com/1"),
        (2, "https://shared.com/x"),
        (3, "https://prices.com/1"),
    ]

    complete = events[-1].data
    assert complete["report"] == REPORT.strip()
    assert complete["search_count"] == 2
    assert complete["credits_charged"] == 2
    assert complete["tokens_used"] == 340
    progress = "".join(e.data["chunk"] for e in events if e.event is EventType.SYNTHESIS_PROGRESS)
    assert progress == REPORT

    assert ledger.names() == ["reserve_credits", "finalize_credits"]
    assert ledger.calls[0][1]["p_max_credits"] == 4
    assert ledger.calls[1][1] == {"p_reservation_id": "res-1", "p_actual_credits": 2}


@pytest.mark.asyncio
async def test_web_mode_skips_planning_and_extraction():
    ledger = FakeLedger()
    orchestrator, tasks = _orchestrator(ledger)

    with pipeline() as mocks:
        events = await _run(orchestrator, "best hiking boots", mode="web", user_id="u")
    await tasks.drain()

    mocks.classify.assert_not_awaited()
    mocks.plan.assert_not_awaited()
    mocks.extract_all.assert_not_awaited()
    plan = next(e for e in events if e.event is EventType.PLAN_CREATED).data["plan"]
    assert plan == [{"aspect": "web search", "query": "best hiking boots"}]
    assert events[-1].data["credits_charged"] == 1
    assert ledger.calls[0][1]["p_max_credits"] == 1


@pytest.mark.asyncio
async def test_web_mode_searches_the_refined_query():
    orchestrator, tasks = _orchestrator(FakeLedger())
    refined = RefinedQuery(refined_query="best hiking boots", search_intent="buying advice")

    with pipeline() as mocks:
        mocks.refine.side_effect = None
        mocks.refine.return_value = (refined, False)
        events = await _run(orchestrator, "Hiking Boots??", mode="web", user_id="u")
    await tasks.drain()

    assert mocks.search.await_args_list[0].args[0] == "best hiking boots"
    plan = next(e for e in events if e.event is EventType.PLAN_CREATED).data
    assert (plan["original_query"], plan["refined_query"], plan["search_intent"]) == (
        "Hiking Boots??",
        "best hiking boots",
        "buying advice",
    )
    related_args = mocks.related.await_args
    assert related_args.args == ("best hiking boots", "Search results: Title https://web.com/1")
    assert events[-1].event is EventType.RESEARCH_COMPLETE


@pytest.mark.asyncio
async def test_related_searches_seeded_with_plan_aspects():
    orchestrator, tasks = _orchestrator(FakeLedger())
    with pipeline() as mocks:
        events = await _run(orchestrator, "best hiking boots", mode="research", user_id="u")
    await tasks.drain()

    mocks.refine.assert_not_awaited()
    query, context = mocks.related.await_args.args
    assert query == "best hiking boots"
    assert context == "Research aspects explored: reviews: boot reviews; prices: boot prices"
    related_event = next(e for e in events if e.event is EventType.RELATED_SEARCHES)
    assert related_event.data == {"queries": ["boot care tips"], "cached": False}


@pytest.mark.asyncio
async def test_related_searches_can_be_disabled():
    orchestrator, tasks = _orchestrator(FakeLedger())
    with pipeline() as mocks, patch.object(orchestrator_module.settings, "related_searches_enabled", False):
        events = await _run(orchestrator, "best hiking boots", mode="research", user_id="u")
    await tasks.drain()

    mocks.related.assert_not_awaited()
    assert not any(e.event is EventType.RELATED_SEARCHES for e in events)
    assert events[-1].event is EventType.RESEARCH_COMPLETE


@pytest.mark.asyncio
async def test_deep_mode_runs_a_second_round_for_gaps():
    ledger = FakeLedger()
    orchestrator, tasks = _orchestrator(ledger)
    gap = Gap(type="missing_practical", gap="repairability", query="boot resoling", importance="high")

    with pipeline(gaps=[gap]) as mocks:
        events = await _run(orchestrator, "best hiking boots", mode="deep", user_id="u")
    await tasks.drain()

    assert mocks.search.await_args_list[0].kwargs["search_depth"] == "advanced"
    gaps_event = next(e for e in events if e.event is EventType.GAPS_IDENTIFIED)
    assert gaps_event.data["gaps"][0]["query"] == "boot resoling"

    round2 = [e.data for e in events if e.event is EventType.SEARCH_RESULT and e.data["round"] == 2]
    assert [(r["step"], r["aspect"]) for r in round2] == [(2, "repairability")]

    # Round two is extracted on its new sources only.
    second_call_aspects = mocks.extract_all.await_args_list[1].args[1]
    assert [a.aspect for a in second_call_aspects] == ["repairability"]
    assert [h.url for h in second_call_aspects[0].results] == ["https://cobbler.com/1"]

    final_sources = [e for e in events if e.event is EventType.SOURCES_COLLECTED][-1].data["sources"]
    assert [s["url"] for s in final_sources][-1] == "https://cobbler.com/1"
    assert [s["index"] for s in final_sources] == [1, 2, 3, 4]

    assert events[-1].data["search_count"] == 3
    assert ledger.calls[0][1]["p_max_credits"] == 8
    assert ledger.calls[-1][1]["p_actual_credits"] == 3


@pytest.mark.asyncio
async def test_deep_mode_without_gaps_skips_round_two():
    orchestrator, tasks = _orchestrator(FakeLedger())
    with pipeline() as mocks:
        events = await _run(orchestrator, "best hiking boots", mode="deep", user_id="u")
    await tasks.drain()

    assert mocks.search.await_count == 2
    assert not any(e.event is EventType.SEARCH_RESULT and e.data["round"] == 2 for e in events)
    assert events[-1].event is EventType.RESEARCH_COMPLETE


@pytest.mark.asyncio
async def test_repeat_run_is_served_from_cache_and_charges_nothing():
    cache = CacheService()
    ledger = FakeLedger()
    orchestrator, tasks = _orchestrator(ledger, cache)

    with pipeline() as mocks:
        await _run(orchestrator, "best hiking boots", mode="research", user_id="u")
        events = await _run(orchestrator, "Best hiking boots ", mode="research", user_id="u")
    await tasks.drain()

    assert mocks.search.await_count == 2
    assert mocks.open_stream.await_count == 1
    assert next(e for e in events if e.event is EventType.PLAN_CREATED).data["cached"] is True
    complete = events[-1].data
    assert complete["cached"] is True
    assert complete["search_count"] == 0
    assert complete["credits_charged"] == 0
    assert complete["report"] == REPORT.strip()


# --- failures ---


@pytest.mark.asyncio
async def test_no_results_anywhere_errors_and_cancels_reservation():
    async def empty(query, **kwargs):
        return SearchResponse(provider="tavily")

    ledger = FakeLedger()
    orchestrator, tasks = _orchestrator(ledger)
    with pipeline(search=empty):
        events = await _run(orchestrator, "best hiking boots", mode="research", user_id="u")
    await tasks.drain()

    assert events[-1].event is EventType.ERROR
    assert events[-1].is_terminal
    assert events[-1].data["error_type"] == "search_failed"
    assert ledger.names() == ["reserve_credits", "cancel_reservation"]


@pytest.mark.asyncio
async def test_insufficient_credits_stops_before_searching():
    ledger = FakeLedger(reserve_credits={"allowed": False, "error": "Insufficient credits", "needed": 4, "available": 0})
    orchestrator, tasks = _orchestrator(ledger)

    with pipeline() as mocks:
        events = await _run(orchestrator, "best hiking boots", mode="research", user_id="u")
    await tasks.drain()

    assert [e.event for e in events] == [EventType.RUN_STARTED, EventType.ERROR]
    assert events[-1].data["error_type"] == "credits_insufficient"
    assert events[-1].data["available"] == 0
    mocks.search.assert_not_awaited()
    assert ledger.names() == ["reserve_credits"]


@pytest.mark.asyncio
async def test_abandoned_run_cancels_reservation():
    ledger = FakeLedger()
    orchestrator, tasks = _orchestrator(ledger)

    with pipeline() as mocks:
        run = orchestrator.research("best hiking boots", mode="research", user_id="u")
        async for event in run:
            if event.event is EventType.PLAN_CREATED:
                break
        await run.aclose()
    await tasks.drain()

    mocks.search.assert_not_awaited()
    assert ledger.names() == ["reserve_credits", "cancel_reservation"]


@pytest.mark.asyncio
async def test_failed_aspect_is_reported_but_run_completes():
    async def flaky(query, **kwargs):
        if query == "boot prices":
            raise orchestrator_module.SearchProviderError("tavily", "HTTP 500")
        return await _search(query)

    orchestrator, tasks = _orchestrator(FakeLedger())
    with pipeline(search=flaky):
        events = await _run(orchestrator, "best hiking boots", mode="research", user_id="u")
    await tasks.drain()

    errors = [e for e in events if e.event is EventType.ERROR]
    assert len(errors) == 1 and errors[0].data["fatal"] is False
    assert events[-1].event is EventType.RESEARCH_COMPLETE
    assert events[-1].data["search_count"] == 1


@pytest.mark.asyncio
async def test_anonymous_run_is_never_billed():
    ledger = FakeLedger()
    orchestrator, tasks = _orchestrator(ledger)
    with pipeline():
        events = await _run(orchestrator, "best hiking boots", mode="web")
    await tasks.drain()

    reserved = next(e for e in events if e.event is EventType.CREDITS_RESERVED).data
    assert reserved["reservation_id"] is None
    assert ledger.calls == []
