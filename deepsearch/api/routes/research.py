from __future__ import annotations

import json as _json

from fastapi import APIRouter, Depends, HTTPException, Request
from sse_starlette.sse import EventSourceResponse
from starlette.background import BackgroundTask

from deepsearch import llm_client
from deepsearch.agents.orchestrator import validate_request
from deepsearch.api.deps import get_ledger, get_user_id, make_orchestrator
from deepsearch.errors import DeepSearchError, RateLimitExceededError, error_payload
from deepsearch.models.schemas import ResearchRequest
from deepsearch.services import logger as log_service
from deepsearch.services import streaming
from deepsearch.services.credits import CreditLedgerClient, ReservationStatus

router = APIRouter(prefix="/api/research", tags=["research"])


def _http_error(exc: DeepSearchError) -> HTTPException:
    headers = None
    if isinstance(exc, RateLimitExceededError) and exc.retry_after is not None:
        headers = {"Retry-After": str(exc.retry_after)}
    return HTTPException(status_code=exc.status_code, detail=error_payload(exc), headers=headers)


@router.post("")
async def run_research(
    body: ResearchRequest,
    request: Request,
    user_id: str | None = Depends(get_user_id),
    ledger: CreditLedgerClient = Depends(get_ledger),
):
    """Stream a research run as SSE.

    Validation, provider selection and credit denials are answered with an HTTP error
    before the stream opens; later failures arrive as a terminal ``error`` event.
    """
    try:
        query, mode = validate_request(body.query, body.mode)
        provider = llm_client.get_provider(body.provider).id.value
        reservation = await ledger.reserve(user_id, mode)
    except DeepSearchError as e:
        log_service.log_event(
            event_type="research_rejected",
            message="Research request rejected",
            error_type=e.error_type.value,
            user_id=user_id,
        )
        raise _http_error(e) from e

    orchestrator = make_orchestrator(request, provider)

    async def release_unsettled():
        if reservation.status is ReservationStatus.RESERVED:
            ledger.cancel_in_background(reservation)

    async def event_generator():
        log_service.log_event(
            event_type="research_started",
            message="Research started",
            mode=mode.value,
            provider=provider,
            user_id=user_id,
            query=query[:100],
        )
        try:
            async for event in orchestrator.research(
                query, mode=mode, user_id=user_id, reservation=reservation
            ):
                yield {"event": event.event.value, "data": _json.dumps(event.data)}
        except Exception as e:
            log_service.log_event(
                event_type="stream_error",
                message="Unhandled error in research stream",
                error=str(e),
            )
            error_event = streaming.error(error_payload(e))
            yield {"event": error_event.event.value, "data": _json.dumps(error_event.data)}
        finally:
            await release_unsettled()

    # Also runs when the client leaves before the generator is first entered.
    return EventSourceResponse(event_generator(), background=BackgroundTask(release_unsettled))
