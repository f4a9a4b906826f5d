from __future__ import annotations

import asyncio
import time
import uuid
from typing import AsyncGenerator

from deepsearch import llm_client
from deepsearch.config import settings
from deepsearch.agents import planner, proofreader, refiner, related, router
from deepsearch.agents.extractor import KnowledgeExtractor
from deepsearch.agents.gap_analyzer import analyze_gaps
from deepsearch.agents.synthesizer import SynthesisKind, SynthesisStream, Synthesizer
from deepsearch.errors import RequestValidationError, SearchProviderError, error_payload
from deepsearch.models.events import SSEEvent
from deepsearch.models.research import (
    AspectSearchResult,
    ExtractedKnowledge,
    PlanItem,
    ResearchMode,
    RefinedQuery,
    ResearchPlan,
)
from deepsearch.models.source_index import GlobalSourceIndex
from deepsearch.services import search_executor, streaming, supabase
from deepsearch.services.cache import CacheService, CacheType, plan_key
from deepsearch.services.credits import CreditLedgerClient, CreditReservation, ReservationStatus
from deepsearch.services.logger import log_pipeline_step, logger

MAX_QUERY_LENGTH = 2000

_SEARCH_DEPTH = {
    ResearchMode.WEB: "basic",
    ResearchMode.RESEARCH: "basic",
    ResearchMode.DEEP: "advanced",
    ResearchMode.BRAINSTORM: "basic",
}

_SYNTHESIS_KIND = {
    ResearchMode.WEB: SynthesisKind.WEB,
    ResearchMode.RESEARCH: SynthesisKind.RESEARCH,
    ResearchMode.DEEP: SynthesisKind.RESEARCH,
    ResearchMode.BRAINSTORM: SynthesisKind.BRAINSTORM,
}


def validate_request(query: str | None, mode: ResearchMode | str | None) -> tuple[str, ResearchMode]:
    """Normalize the query and mode, raising ``RequestValidationError`` when unusable."""
    cleaned = (query or "").strip()
    if not cleaned:
        raise RequestValidationError("Query must not be empty")
    if len(cleaned) > MAX_QUERY_LENGTH:
        raise RequestValidationError(f"Query exceeds {MAX_QUERY_LENGTH} characters")
    try:
        research_mode = ResearchMode(mode or ResearchMode.RESEARCH)
    except ValueError:
        allowed = ", ".join(m.value for m in ResearchMode)
        raise RequestValidationError(f"Unknown mode '{mode}' (expected one of: {allowed})") from None
    return cleaned, research_mode


def related_context(mode: ResearchMode, research_plan: ResearchPlan, aspect_results: list[AspectSearchResult]) -> str:
    """What the run looked at, used to seed follow-up suggestions."""
    if mode is ResearchMode.WEB:
        titles = [hit.title for aspect in aspect_results for hit in aspect.results if hit.title][:5]
        return "Search results: " + "; ".join(titles)
    label = "Creative angles explored" if mode is ResearchMode.BRAINSTORM else "Research aspects explored"
    return f"{label}: " + "; ".join(f"{item.aspect}: {item.query}" for item in research_plan.plan)


class ResearchOrchestrator:
    """Runs one query through the staged pipeline and yields SSE events.

    Flow:
      1. Route and plan, while credits are reserved alongside
      2. Fan out: search every plan item in parallel
      3. Extract structured knowledge per aspect (research, deep)
      4. Deep mode: gap analysis, then a second search and extraction round
      5. Stream the cited synthesis with related searches alongside, clean it up, finalize credits

    A run that fails or is abandoned cancels its reservation in the background.
    """

    def __init__(
        self,
        cache: CacheService,
        ledger: CreditLedgerClient,
        *,
        provider: str | None = None,
    ):
        self.cache = cache
        self.ledger = ledger
        self.provider = provider

    # --- stages ---

    async def _plan(self, query: str, mode: ResearchMode, provider: str) -> tuple[ResearchPlan, bool]:
        """Router + planner output, cached together under the plan key."""
        if mode is ResearchMode.WEB:
            if settings.refine_web_queries:
                refined, cached = await refiner.refine_query(query, cache=self.cache, provider=provider)
            else:
                refined, cached = RefinedQuery(refined_query=query), False
            return ResearchPlan(
                original_query=query,
                refined_query=refined.refined_query,
                search_intent=refined.search_intent,
                plan=[PlanItem(aspect="web search", query=refined.refined_query)],
            ), cached

        key = plan_key(query, provider, mode.value)
        cached = await self.cache.get(key)
        if cached.hit:
            try:
                return ResearchPlan.model_validate(cached.data), True
            except ValueError as e:
                logger.warning(f"Ignoring malformed cached plan {key}: {e}")

        if mode is ResearchMode.BRAINSTORM:
            angles = await planner.reframe_angles(query, provider=provider)
            research_plan = ResearchPlan(original_query=query, plan=planner.angles_to_plan(angles))
            degraded = angles == planner.fallback_angles(query)
        else:
            routed = await router.classify_query(query, provider=provider)
            items = await planner.generate_plan(query, routed.category, provider=provider)
            research_plan = ResearchPlan(
                original_query=query,
                query_type=routed.category,
                suggested_depth=routed.suggested_depth,
                plan=items,
            )
            degraded = items == planner.fallback_plan(query)

        if not degraded:
            await self.cache.set(key, CacheType.PLAN, query, research_plan.model_dump(mode="json"), provider=provider)
        return research_plan, False

    async def _reserve(
        self,
        user_id: str | None,
        mode: ResearchMode,
        reservation: CreditReservation | None,
    ) -> CreditReservation:
        if reservation is not None:
            return reservation
        return await self.ledger.reserve(user_id, mode)

    async def _extract(
        self,
        extractor: KnowledgeExtractor,
        query: str,
        aspect_results: list[AspectSearchResult],
        source_index: GlobalSourceIndex,
        *,
        round: int,
    ) -> tuple[list[ExtractedKnowledge], list[SSEEvent]]:
        outcomes = await extractor.extract_all(query, aspect_results, source_index)
        events = [
            streaming.extraction_completed(extraction, round=round, cached=cached)
            for extraction, cached in outcomes
        ]
        return [extraction for extraction, _ in outcomes], events

    # --- run ---

    async def research(
        self,
        query: str,
        *,
        mode: ResearchMode | str = ResearchMode.RESEARCH,
        user_id: str | None = None,
        reservation: CreditReservation | None = None,
        run_id: str | None = None,
    ) -> AsyncGenerator[SSEEvent, None]:
        """Yield pipeline events ending in ``research_complete`` or a fatal ``error``.

        ``reservation`` lets a caller reserve up front (to deny before streaming); when
        omitted, credits are reserved concurrently with routing and planning.
        """
        run_id = run_id or uuid.uuid4().hex[:12]
        started = time.monotonic()
        held: CreditReservation | None = reservation
        stream: SynthesisStream | None = None
        related_task: asyncio.Task | None = None

        try:
            query, research_mode = validate_request(query, mode)
            provider = llm_client.get_provider(self.provider).id.value
            log_pipeline_step(run_id, "run", "started", {"mode": research_mode.value, "provider": provider})
            yield streaming.run_started(run_id, query, research_mode.value, provider)

            plan_outcome, reserve_outcome = await asyncio.gather(
                self._plan(query, research_mode, provider),
                self._reserve(user_id, research_mode, reservation),
                return_exceptions=True,
            )
            if isinstance(reserve_outcome, BaseException):
                raise reserve_outcome
            held = reserve_outcome
            yield streaming.credits_reserved(held.id, held.max_credits, held.legacy)
            if isinstance(plan_outcome, BaseException):
                raise plan_outcome
            research_plan, plan_cached = plan_outcome
            log_pipeline_step(run_id, "plan", "completed", {"items": len(research_plan.plan), "cached": plan_cached})
            yield streaming.plan_created(research_plan, cached=plan_cached)

            source_index = GlobalSourceIndex()
            depth = _SEARCH_DEPTH[research_mode]

            batch = await search_executor.run_aspect_searches(research_plan.plan, cache=self.cache, search_depth=depth)
            for event in batch.events:
                yield event
            search_count = batch.provider_calls
            aspect_results = batch.aspect_results

            if not any(aspect.results for aspect in aspect_results):
                raise SearchProviderError("search", "no results for any aspect")

            sources = search_executor.build_sources(aspect_results, source_index)
            yield streaming.sources_collected(sources, search_executor.collect_images(aspect_results))
            log_pipeline_step(run_id, "search", "completed", {"sources": len(sources), "provider_calls": search_count})

            extractions: list[ExtractedKnowledge] = []
            extractor = KnowledgeExtractor(self.cache, provider=provider)
            if research_mode in (ResearchMode.RESEARCH, ResearchMode.DEEP):
                extractions, events = await self._extract(extractor, query, aspect_results, source_index, round=1)
                for event in events:
                    yield event
                log_pipeline_step(run_id, "extract", "completed", {"round": 1, "aspects": len(extractions)})

            if research_mode is ResearchMode.DEEP:
                analysis, gaps_cached = await analyze_gaps(query, extractions, cache=self.cache, provider=provider)
                yield streaming.gaps_identified(analysis.gaps, cached=gaps_cached)
                if analysis.has_gaps:
                    gap_plan = [PlanItem(aspect=gap.gap, query=gap.query) for gap in analysis.gaps]
                    round2 = await search_executor.run_aspect_searches(
                        gap_plan,
                        cache=self.cache,
                        round=2,
                        step_offset=len(research_plan.plan),
                        search_depth=depth,
                    )
                    for event in round2.events:
                        yield event
                    search_count += round2.provider_calls

                    merged = search_executor.merge_rounds(aspect_results, round2.aspect_results)
                    new_aspects = merged[len(aspect_results):]
                    aspect_results = merged
                    sources = search_executor.build_sources(aspect_results, source_index)
                    yield streaming.sources_collected(sources, search_executor.collect_images(aspect_results))

                    more, events = await self._extract(extractor, query, new_aspects, source_index, round=2)
                    extractions.extend(more)
                    for event in events:
                        yield event
                    log_pipeline_step(run_id, "round2", "completed", {"gaps": len(analysis.gaps), "sources": len(sources)})

            if settings.related_searches_enabled:
                related_task = asyncio.create_task(
                    related.suggest_related(
                        research_plan.refined_query or query,
                        related_context(research_mode, research_plan, aspect_results),
                        cache=self.cache,
                        provider=provider,
                    ),
                    name=f"related:{run_id}",
                )

            synthesizer = Synthesizer(self.cache, provider=provider)
            stream = await synthesizer.stream(
                _SYNTHESIS_KIND[research_mode],
                query,
                aspect_results,
                extractions,
                source_index,
                deep=research_mode is ResearchMode.DEEP,
            )
            yield streaming.synthesis_started(len(sources), cached=stream.cached)

            buffer = ""
            async for frame in stream:
                if frame.type != "content":
                    continue
                buffer += frame.text
                if len(buffer) >= settings.synthesis_chunk_chars:
                    yield streaming.synthesis_progress(buffer, cached=stream.cached)
                    buffer = ""
            if buffer:
                yield streaming.synthesis_progress(buffer, cached=stream.cached)

            report = await proofreader.proofread(stream.text, provider=provider)
            if related_task is not None:
                queries, related_cached = await related_task
                yield streaming.related_searches(queries, cached=related_cached)

            credits_charged = min(search_count, held.max_credits)
            self.ledger.finalize_in_background(held, search_count)

            runtime_ms = int((time.monotonic() - started) * 1000)
            log_pipeline_step(
                run_id,
                "run",
                "completed",
                {"runtime_ms": runtime_ms, "search_count": search_count, "tokens": stream.tokens_used},
            )
            logger.info(f"Research complete! Runtime: {runtime_ms}ms, Tokens: {stream.tokens_used}, Sources: {len(sources)}")
            yield streaming.research_complete(
                report=report,
                sources=[s.model_dump() for s in sources],
                tokens_used=stream.tokens_used,
                runtime_ms=runtime_ms,
                cached=stream.cached,
                search_count=search_count,
                credits_charged=credits_charged,
            )
        except (asyncio.CancelledError, GeneratorExit):
            log_pipeline_step(run_id, "run", "aborted")
            self._release(held)
            raise
        except Exception as e:
            logger.exception(f"Research run {run_id} failed: {e}")
            log_pipeline_step(run_id, "run", "failed", {"error": str(e)})
            self._release(held)
            yield streaming.error(error_payload(e))
        finally:
            if stream is not None:
                await stream.aclose()
            if related_task is not None and not related_task.done():
                related_task.cancel()

    def _release(self, reservation: CreditReservation | None) -> None:
        if reservation is not None and reservation.status is ReservationStatus.RESERVED:
            self.ledger.cancel_in_background(reservation)


def build_orchestrator(provider: str | None = None, cache: CacheService | None = None) -> ResearchOrchestrator:
    """Wire the orchestrator to the configured cache store and ledger backend."""
    if supabase.is_configured():
        store = supabase.SupabaseCacheStore()
        backend = supabase.SupabaseLedgerBackend()
    else:
        store = None
        backend = None
    return ResearchOrchestrator(
        cache or CacheService.from_settings(store),
        CreditLedgerClient(backend),
        provider=provider,
    )
