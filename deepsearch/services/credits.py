"""Credit ledger client: reserve at the mode's maximum, finalize on actual usage, refund the rest.

States move ``reserved -> finalized`` or ``reserved -> cancelled`` exactly once. The local
status flip happens before the backend call, so a second finalize in the same process
is a no-op even while the first is in flight.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol

from deepsearch.config import settings
from deepsearch.errors import CreditInsufficientError, LedgerFunctionNotFound, RateLimitExceededError
from deepsearch.models.research import ResearchMode
from deepsearch.services.background import BackgroundTasks, background_tasks
from deepsearch.services.logger import log_ledger_operation, logger

MAX_CREDITS: dict[ResearchMode, int] = {
    ResearchMode.WEB: 1,
    ResearchMode.RESEARCH: 4,
    ResearchMode.DEEP: 8,
    ResearchMode.BRAINSTORM: 6,
}

LEGACY_LIMIT_FUNCTIONS = ("check_and_increment_search_v2", "check_and_increment_search")


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class CreditReservation:
    id: str | None
    user_id: str | None
    max_credits: int
    status: ReservationStatus = ReservationStatus.RESERVED
    actual_charged: int | None = None
    refunded: int | None = None
    legacy: bool = False

    @property
    def tracked(self) -> bool:
        """Whether a ledger row backs this reservation."""
        return self.id is not None and not self.legacy


@dataclass(slots=True)
class LedgerResult:
    success: bool
    charged: int = 0
    refunded: int = 0
    noop: bool = False
    message: str | None = None


class LedgerBackend(Protocol):
    async def call(self, function: str, params: dict[str, Any] | None = None) -> Any: ...


def max_credits_for(mode: ResearchMode | str) -> int:
    return MAX_CREDITS[ResearchMode(mode)]


def _row(data: Any) -> dict[str, Any]:
    if isinstance(data, list):
        data = data[0] if data else {}
    return data if isinstance(data, dict) else {}


def _seconds_until_utc_midnight(now: datetime | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return max(1, int((tomorrow - now).total_seconds()))


class CreditLedgerClient:
    def __init__(
        self,
        backend: LedgerBackend | None,
        *,
        timeout: float | None = None,
        tasks: BackgroundTasks | None = None,
    ):
        self.backend = backend
        self.timeout = timeout if timeout is not None else settings.ledger_timeout_seconds
        self.tasks = tasks or background_tasks

    async def _call(self, function: str, params: dict[str, Any]) -> Any:
        if self.backend is None:
            raise RuntimeError("credit ledger backend is not configured")
        return await asyncio.wait_for(self.backend.call(function, params), timeout=self.timeout)

    # --- reserve ---

    async def reserve(self, user_id: str | None, mode: ResearchMode | str) -> CreditReservation:
        """Hold the mode's maximum credits.

        Raises ``CreditInsufficientError`` or ``RateLimitExceededError`` on a hard denial.
        Every other ledger fault allows the request with an untracked reservation.
        """
        max_credits = max_credits_for(mode)
        untracked = CreditReservation(id=None, user_id=user_id, max_credits=max_credits)
        if not user_id or self.backend is None:
            return untracked

        try:
            data = await self._call("reserve_credits", {"p_user_id": user_id, "p_max_credits": max_credits})
        except LedgerFunctionNotFound:
            log_ledger_operation("reserve", None, "legacy", details="reserve_credits not found")
            await self._legacy_check(user_id)
            untracked.legacy = True
            return untracked
        except Exception as e:
            log_ledger_operation("reserve", None, "fail_open", error=str(e) or type(e).__name__)
            return untracked

        row = _row(data)
        if not row.get("allowed", False):
            message = str(row.get("error") or row.get("reason") or "")
            lowered = message.lower()
            if "insufficient" in lowered:
                log_ledger_operation("reserve", None, "denied", details=message)
                raise CreditInsufficientError(needed=row.get("needed", max_credits), available=row.get("available"))
            if "rate limit" in lowered or "limit reached" in lowered:
                log_ledger_operation("reserve", None, "rate_limited", details=message)
                raise RateLimitExceededError(message, retry_after=row.get("retry_after"))
            log_ledger_operation("reserve", None, "fail_open", error=message or "reservation refused")
            return untracked

        reservation_id = row.get("reservation_id")
        if not reservation_id:
            log_ledger_operation("reserve", None, "fail_open", error="no reservation id returned")
            return untracked
        reservation = CreditReservation(id=str(reservation_id), user_id=user_id, max_credits=max_credits)
        log_ledger_operation(
            "reserve",
            reservation.id,
            "reserved",
            details=f"max={max_credits} remaining={row.get('remaining_after_reserve')}",
        )
        return reservation

    async def _legacy_check(self, user_id: str) -> None:
        """Simple per-user search counters from before reservations existed."""
        for function in LEGACY_LIMIT_FUNCTIONS:
            try:
                data = await self._call(function, {"p_user_id": user_id})
            except LedgerFunctionNotFound:
                continue
            except Exception as e:
                log_ledger_operation("legacy_limit", None, "fail_open", error=str(e) or type(e).__name__)
                return

            if isinstance(data, bool):
                allowed, reason = data, None
            else:
                row = _row(data)
                allowed, reason = bool(row.get("allowed", True)), row.get("reason")
            if not allowed:
                reason = str(reason or "Search limit reached")
                retry_after = _seconds_until_utc_midnight() if "daily" in reason.lower() else None
                log_ledger_operation("legacy_limit", None, "rate_limited", details=reason)
                raise RateLimitExceededError(reason, retry_after=retry_after)
            return
        logger.info("No ledger or rate limit functions available, allowing request")

    # --- finalize / cancel ---

    def _claim_finalize(self, reservation: CreditReservation, actual_credits: int) -> LedgerResult | None:
        """Move a reserved reservation to finalized. Returns a result when there is nothing to send."""
        if reservation.status is ReservationStatus.FINALIZED:
            return LedgerResult(
                success=True,
                charged=reservation.actual_charged or 0,
                refunded=reservation.refunded or 0,
                noop=True,
                message="already finalized",
            )
        if reservation.status is ReservationStatus.CANCELLED:
            return LedgerResult(success=False, noop=True, message="reservation was cancelled")

        charged = min(max(actual_credits, 0), reservation.max_credits)
        reservation.status = ReservationStatus.FINALIZED
        reservation.actual_charged = charged
        reservation.refunded = reservation.max_credits - charged
        if not reservation.tracked or self.backend is None:
            return LedgerResult(success=True, charged=charged, refunded=reservation.refunded, message="untracked")
        return None

    async def _send_finalize(self, reservation: CreditReservation) -> LedgerResult:
        charged = reservation.actual_charged or 0
        refunded = reservation.refunded or 0
        try:
            data = await self._call(
                "finalize_credits",
                {"p_reservation_id": reservation.id, "p_actual_credits": charged},
            )
        except LedgerFunctionNotFound:
            log_ledger_operation("finalize", reservation.id, "legacy")
            return LedgerResult(success=True, charged=charged, refunded=refunded, message="legacy")
        except Exception as e:
            log_ledger_operation("finalize", reservation.id, "failed", error=str(e) or type(e).__name__)
            return LedgerResult(success=False, charged=charged, refunded=refunded, message=str(e))

        row = _row(data)
        if not row.get("success", False):
            message = str(row.get("error") or "finalize refused")
            if "already" in message.lower():
                log_ledger_operation("finalize", reservation.id, "noop", details=message)
                return LedgerResult(success=True, charged=charged, refunded=refunded, noop=True, message=message)
            log_ledger_operation("finalize", reservation.id, "failed", error=message)
            return LedgerResult(success=False, charged=charged, refunded=refunded, message=message)

        log_ledger_operation("finalize", reservation.id, "finalized", details=f"charged={charged} refunded={refunded}")
        return LedgerResult(
            success=True,
            charged=int(row.get("charged", charged)),
            refunded=int(row.get("refunded", refunded)),
        )

    async def finalize(self, reservation: CreditReservation, actual_credits: int) -> LedgerResult:
        """Charge ``min(actual, max)`` and refund the remainder. Repeat calls are no-ops."""
        settled = self._claim_finalize(reservation, actual_credits)
        if settled is not None:
            return settled
        return await self._send_finalize(reservation)

    def _claim_cancel(self, reservation: CreditReservation) -> LedgerResult | None:
        if reservation.status is not ReservationStatus.RESERVED:
            return LedgerResult(success=True, noop=True, message=f"already {reservation.status.value}")
        reservation.status = ReservationStatus.CANCELLED
        reservation.actual_charged = 0
        reservation.refunded = reservation.max_credits
        if not reservation.tracked or self.backend is None:
            return LedgerResult(success=True, refunded=reservation.max_credits, message="untracked")
        return None

    async def _send_cancel(self, reservation: CreditReservation) -> LedgerResult:
        try:
            data = await self._call("cancel_reservation", {"p_reservation_id": reservation.id})
        except LedgerFunctionNotFound:
            log_ledger_operation("cancel", reservation.id, "legacy")
            return LedgerResult(success=True, refunded=reservation.max_credits, message="legacy")
        except Exception as e:
            log_ledger_operation("cancel", reservation.id, "failed", error=str(e) or type(e).__name__)
            return LedgerResult(success=False, message=str(e))

        row = _row(data)
        if not row.get("success", False):
            message = str(row.get("error") or "cancel refused")
            log_ledger_operation("cancel", reservation.id, "noop", details=message)
            return LedgerResult(success=True, noop=True, message=message)

        log_ledger_operation("cancel", reservation.id, "cancelled", details=f"refunded={reservation.max_credits}")
        return LedgerResult(success=True, refunded=int(row.get("refunded", reservation.max_credits)))

    async def cancel(self, reservation: CreditReservation) -> LedgerResult:
        """Release the whole reservation. Only a still-reserved reservation is affected."""
        settled = self._claim_cancel(reservation)
        if settled is not None:
            return settled
        return await self._send_cancel(reservation)

    # The state transition happens before returning, so a later finalize or cancel
    # in the same process sees it even if the backend call has not run yet.

    def finalize_in_background(self, reservation: CreditReservation, actual_credits: int) -> asyncio.Task | None:
        if self._claim_finalize(reservation, actual_credits) is not None:
            return None
        return self.tasks.spawn(
            self._send_finalize(reservation),
            name=f"finalize:{reservation.id}",
            timeout=settings.finalize_timeout_seconds,
        )

    def cancel_in_background(self, reservation: CreditReservation) -> asyncio.Task | None:
        if self._claim_cancel(reservation) is not None:
            return None
        return self.tasks.spawn(
            self._send_cancel(reservation),
            name=f"cancel:{reservation.id}",
            timeout=settings.finalize_timeout_seconds,
        )
