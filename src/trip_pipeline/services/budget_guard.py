"""
Budget Guard
============
Per-session spend control. Every billable provider call is preceded by a
reservation against the session's ledger and followed by a commit of the
actual cost (or a release when nothing was spent).

A reservation is denied when the ledger's committed spend, plus the
reservations still held, plus the new estimate would exceed the limit.
Reserve and commit for one session are serialised on a per-session lock.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_UP
from typing import Any, Dict, Optional

from ..models.pipeline_state import (
    BREAKDOWN_BUCKETS,
    RECORD_QUANTUM,
    BudgetLedger,
    OperationKind,
    TokenUsageRecord,
    to_record_usd,
    to_usd,
    utc_now,
)
from .providers import ProviderSpec
from .state_store import StateStore

logger = logging.getLogger(__name__)

THOUSAND = Decimal("1000")


def estimate_cost(spec: ProviderSpec, prompt_tokens: int = 0, completion_tokens: int = 0) -> Decimal:
    """Cost of one call to `spec` in USD, rounded up to 6 decimal places"""
    cost = (
        spec.request_cost
        + (Decimal(prompt_tokens) / THOUSAND) * spec.prompt_cost_per_1k
        + (Decimal(completion_tokens) / THOUSAND) * spec.completion_cost_per_1k
    )
    return cost.quantize(RECORD_QUANTUM, rounding=ROUND_UP)


@dataclass
class Reservation:
    """Spend held against a ledger until committed or released"""
    session_id: str
    amount_usd: Decimal
    reservation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class BudgetDecision:
    approved: bool
    remaining_usd: Decimal


@dataclass
class Approved(BudgetDecision):
    reservation: Optional[Reservation] = None


@dataclass
class Denied(BudgetDecision):
    reason: str = ""


class BudgetGuard:
    """Reservation / commit gate in front of every billable call"""

    def __init__(self, store: StateStore, default_limit_usd: Decimal = Decimal("5.0000")):
        self.store = store
        self.default_limit_usd = to_usd(default_limit_usd)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._held: Dict[str, Dict[str, Decimal]] = {}

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _held_total(self, session_id: str) -> Decimal:
        return sum(self._held.get(session_id, {}).values(), Decimal("0"))

    async def _ledger(self, session_id: str) -> BudgetLedger:
        ledger = await self.store.get_ledger(session_id)
        if ledger is None:
            ledger = await self.store.create_ledger(session_id, self.default_limit_usd)
        return ledger

    async def reserve(self, session_id: str, estimated_cost_usd: Any) -> BudgetDecision:
        """Approve or deny a call expected to cost `estimated_cost_usd`"""
        estimate = to_record_usd(estimated_cost_usd)
        if estimate < 0:
            raise ValueError(f"Estimated cost must be non-negative, got {estimate}")

        async with self._lock_for(session_id):
            ledger = await self._ledger(session_id)
            held = self._held_total(session_id)
            projected = ledger.total_spent_usd + held + estimate
            remaining = ledger.limit_usd - ledger.total_spent_usd - held

            if projected > ledger.limit_usd:
                await self.store.mark_over_budget(session_id)
                reason = (
                    f"Estimated cost ${estimate} exceeds remaining budget "
                    f"${max(remaining, Decimal('0')):.4f} of ${ledger.limit_usd}"
                )
                logger.warning(f"💸 Budget denied for session {session_id}: {reason}")
                return Denied(approved=False, remaining_usd=remaining, reason=reason)

            reservation = Reservation(session_id=session_id, amount_usd=estimate)
            self._held.setdefault(session_id, {})[reservation.reservation_id] = estimate
            return Approved(approved=True, remaining_usd=remaining - estimate, reservation=reservation)

    async def commit(
        self,
        session_id: str,
        actual_cost_usd: Any,
        operation: OperationKind,
        provider: str,
        request_id: str = "",
        reservation: Optional[Reservation] = None,
        model_name: Optional[str] = None,
        usage: Optional[Dict[str, int]] = None,
    ) -> BudgetLedger:
        """Book the actual cost of a completed call and append its usage record"""
        cost = to_record_usd(actual_cost_usd)
        if cost < 0:
            raise ValueError(f"Actual cost must be non-negative, got {cost}")
        usage = usage or {}

        async with self._lock_for(session_id):
            if reservation is not None:
                self._drop_hold(reservation)
            await self._ledger(session_id)

            ledger = await self.store.reserve_and_commit_spend(
                session_id, cost, BREAKDOWN_BUCKETS[operation]
            )
            prompt_tokens = int(usage.get("prompt_tokens", 0))
            completion_tokens = int(usage.get("completion_tokens", 0))
            await self.store.append_usage_record(TokenUsageRecord(
                record_id=uuid.uuid4().hex,
                session_id=session_id,
                request_id=request_id or uuid.uuid4().hex,
                provider=provider,
                operation=operation,
                model_name=model_name,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=int(usage.get("total_tokens", prompt_tokens + completion_tokens)),
                cost_usd=cost,
            ))

        logger.debug(
            f"Committed ${cost} for {operation.value} via {provider} "
            f"(session {session_id}, total ${ledger.total_spent_usd})"
        )
        return ledger

    async def release(self, reservation: Reservation) -> None:
        """Drop a reservation for a call that incurred no cost"""
        async with self._lock_for(reservation.session_id):
            self._drop_hold(reservation)

    def _drop_hold(self, reservation: Reservation) -> None:
        held = self._held.get(reservation.session_id)
        if held is not None:
            held.pop(reservation.reservation_id, None)
            if not held:
                self._held.pop(reservation.session_id, None)

    async def remaining(self, session_id: str) -> Decimal:
        """Budget left after committed spend and held reservations"""
        ledger = await self._ledger(session_id)
        return max(Decimal("0"), ledger.limit_usd - ledger.total_spent_usd - self._held_total(session_id))

    def forget(self, session_id: str) -> None:
        """Drop in-process state for a session that is gone"""
        self._held.pop(session_id, None)
        self._locks.pop(session_id, None)
