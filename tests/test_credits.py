from __future__ import annotations

import asyncio

import pytest

from deepsearch.errors import CreditInsufficientError, LedgerFunctionNotFound, RateLimitExceededError
from deepsearch.models.research import ResearchMode
from deepsearch.services.background import BackgroundTasks
from deepsearch.services.credits import (
    MAX_CREDITS,
    CreditLedgerClient,
    CreditReservation,
    ReservationStatus,
)


class FakeLedger:
    """Scripted ledger backend. Values may be a response, an exception, or a callable."""

    def __init__(self, **responses):
        self.responses = responses
        self.calls: list[tuple[str, dict]] = []

    async def call(self, function, params=None):
        self.calls.append((function, params or {}))
        if function not in self.responses:
            raise LedgerFunctionNotFound(function)
        response = self.responses[function]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(params)
        return response


def _client(backend, tasks=None) -> CreditLedgerClient:
    return CreditLedgerClient(backend, timeout=1, tasks=tasks or BackgroundTasks())


def test_mode_maximums():
    assert MAX_CREDITS == {
        ResearchMode.WEB: 1,
        ResearchMode.RESEARCH: 4,
        ResearchMode.DEEP: 8,
        ResearchMode.BRAINSTORM: 6,
    }


# --- reserve ---


@pytest.mark.asyncio
async def test_reserve_creates_tracked_reservation():
    backend = FakeLedger(reserve_credits={"allowed": True, "reservation_id": "r-1", "reserved": 6})
    reservation = await _client(backend).reserve("user-1", "brainstorm")

    assert reservation.id == "r-1"
    assert reservation.max_credits == 6
    assert reservation.status is ReservationStatus.RESERVED
    assert reservation.tracked
    assert backend.calls == [("reserve_credits", {"p_user_id": "user-1", "p_max_credits": 6})]


@pytest.mark.asyncio
async def test_reserve_insufficient_is_a_hard_denial():
    backend = FakeLedger(
        reserve_credits={"allowed": False, "error": "Insufficient credits", "needed": 4, "available": 1}
    )
    with pytest.raises(CreditInsufficientError) as exc:
        await _client(backend).reserve("user-1", ResearchMode.RESEARCH)
    assert (exc.value.needed, exc.value.available) == (4, 1)


@pytest.mark.asyncio
async def test_anonymous_user_gets_untracked_reservation():
    backend = FakeLedger()
    reservation = await _client(backend).reserve(None, "web")
    assert not reservation.tracked
    assert backend.calls == []


@pytest.mark.asyncio
async def test_backend_fault_fails_open():
    backend = FakeLedger(reserve_credits=ConnectionError("db down"))
    reservation = await _client(backend).reserve("user-1", "research")
    assert reservation.id is None
    assert reservation.max_credits == 4


@pytest.mark.asyncio
async def test_reserve_timeout_fails_open():
    class SlowLedger(FakeLedger):
        async def call(self, function, params=None):
            await asyncio.sleep(10)

    client = CreditLedgerClient(SlowLedger(), timeout=0.01, tasks=BackgroundTasks())
    reservation = await client.reserve("user-1", "web")
    assert not reservation.tracked


@pytest.mark.asyncio
async def test_missing_ledger_falls_back_to_legacy_counters():
    backend = FakeLedger(check_and_increment_search_v2={"allowed": True})
    reservation = await _client(backend).reserve("user-1", "research")

    assert reservation.legacy
    assert not reservation.tracked
    assert [name for name, _ in backend.calls] == ["reserve_credits", "check_and_increment_search_v2"]


@pytest.mark.asyncio
async def test_legacy_rate_limit_is_a_hard_denial_with_retry_hint():
    backend = FakeLedger(
        check_and_increment_search_v2={"allowed": False, "reason": "Daily search limit reached (10 searches)."}
    )
    with pytest.raises(RateLimitExceededError) as exc:
        await _client(backend).reserve("user-1", "research")
    assert exc.value.retry_after is not None
    assert 0 < exc.value.retry_after <= 86400


@pytest.mark.asyncio
async def test_oldest_legacy_counter_returns_plain_boolean():
    backend = FakeLedger(check_and_increment_search=False)
    with pytest.raises(RateLimitExceededError):
        await _client(backend).reserve("user-1", "web")


@pytest.mark.asyncio
async def test_no_ledger_functions_at_all_allows_request():
    reservation = await _client(FakeLedger()).reserve("user-1", "deep")
    assert reservation.legacy
    assert reservation.max_credits == 8


# --- finalize / cancel ---


@pytest.mark.asyncio
async def test_finalize_charges_actual_and_refunds_rest():
    backend = FakeLedger(
        finalize_credits=lambda p: {"success": True, "charged": p["p_actual_credits"], "refunded": 6 - p["p_actual_credits"]}
    )
    reservation = CreditReservation(id="r-1", user_id="u", max_credits=6)

    result = await _client(backend).finalize(reservation, 2)

    assert (result.charged, result.refunded) == (2, 4)
    assert reservation.max_credits == reservation.actual_charged + reservation.refunded
    assert reservation.status is ReservationStatus.FINALIZED
    assert backend.calls == [("finalize_credits", {"p_reservation_id": "r-1", "p_actual_credits": 2})]


@pytest.mark.asyncio
async def test_finalize_twice_is_a_noop():
    backend = FakeLedger(finalize_credits={"success": True, "charged": 2, "refunded": 4})
    client = _client(backend)
    reservation = CreditReservation(id="r-1", user_id="u", max_credits=6)

    await client.finalize(reservation, 2)
    second = await client.finalize(reservation, 5)

    assert second.success and second.noop
    assert (second.charged, second.refunded) == (2, 4)
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_finalize_caps_charge_at_reservation():
    reservation = CreditReservation(id=None, user_id="u", max_credits=4)
    result = await _client(None).finalize(reservation, 9)
    assert (result.charged, result.refunded) == (4, 0)


@pytest.mark.asyncio
async def test_backend_already_finalized_counts_as_success():
    backend = FakeLedger(finalize_credits={"success": False, "error": "Reservation not found or already finalized"})
    result = await _client(backend).finalize(CreditReservation(id="r-1", user_id="u", max_credits=4), 1)
    assert result.success and result.noop


@pytest.mark.asyncio
async def test_cancel_releases_everything_and_blocks_finalize():
    backend = FakeLedger(cancel_reservation={"success": True, "refunded": 4})
    client = _client(backend)
    reservation = CreditReservation(id="r-1", user_id="u", max_credits=4)

    result = await client.cancel(reservation)
    late = await client.finalize(reservation, 2)

    assert result.refunded == 4
    assert reservation.status is ReservationStatus.CANCELLED
    assert late.noop and not late.success
    assert [name for name, _ in backend.calls] == ["cancel_reservation"]


@pytest.mark.asyncio
async def test_background_finalize_claims_state_immediately():
    tasks = BackgroundTasks()
    backend = FakeLedger(finalize_credits={"success": True, "charged": 1, "refunded": 3})
    client = _client(backend, tasks)
    reservation = CreditReservation(id="r-1", user_id="u", max_credits=4)

    task = client.finalize_in_background(reservation, 1)
    # A cancel racing the finalize must not undo it.
    assert client.cancel_in_background(reservation) is None
    assert reservation.status is ReservationStatus.FINALIZED

    await tasks.drain()
    assert task is not None and task.done()
    assert [name for name, _ in backend.calls] == ["finalize_credits"]


@pytest.mark.asyncio
async def test_background_finalize_failure_is_logged_not_raised():
    tasks = BackgroundTasks()
    backend = FakeLedger(finalize_credits=ConnectionError("db down"))
    client = _client(backend, tasks)
    reservation = CreditReservation(id="r-1", user_id="u", max_credits=4)

    client.finalize_in_background(reservation, 1)
    await tasks.drain()

    assert reservation.status is ReservationStatus.FINALIZED


@pytest.mark.asyncio
async def test_backend_call_without_backend_raises():
    with pytest.raises(RuntimeError, match="not configured"):
        await _client(None)._call("reserve_credits", {})
