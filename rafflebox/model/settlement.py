# model/settlement.py
"""
Settlement processor: the ticket state machine.

    reserved  + approved -> purchased (bought_at = now)
    reserved  + rejected -> available (order linkage cleared)
    reserved  + pending  -> reserved  (no-op)
    purchased + *        -> purchased (no-op, already settled)
    available + *        -> available (stale/duplicate, ignored)

Each transition is one conditional UPDATE keyed by (campaign, quota number,
current status, order id). The state the rows end up in is decided by the
database; the follow-up read only classifies what we did not move, for the
result and the log.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from . import oplog
from .inventory import (
    T_PURCHASED,
    _order_tickets,
    _purchase_rows,
    _release_rows,
    _tickets_by_number,
)

log = logging.getLogger(__name__)

APPROVED = "approved"
REJECTED = "rejected"
PENDING = "pending"
OUTCOMES = (APPROVED, REJECTED, PENDING)


@dataclass(frozen=True)
class SettlementEvent:
    campaign_id: str
    ticket_numbers: List[int]
    outcome: str
    external_id: str
    provider: str
    # None only for pending notices with a legacy packed reference
    order_id: Optional[str] = None

    def __post_init__(self):
        if self.outcome not in OUTCOMES:
            raise ValueError(f"unknown outcome: {self.outcome}")


@dataclass
class SettlementResult:
    campaign_id: str
    order_id: Optional[str]
    outcome: str
    # moved by this call
    transitioned: List[int] = field(default_factory=list)
    # already purchased by this order: idempotent replays land here
    settled: List[int] = field(default_factory=list)
    # available, owned by another order, or purchased elsewhere
    ignored: List[int] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return bool(self.transitioned)

    @property
    def status(self) -> str:
        """Effective order status after this event."""
        if self.outcome == APPROVED and (self.transitioned or self.settled):
            return "paid"
        if self.outcome == REJECTED and self.transitioned:
            return "released"
        if self.settled:
            return "paid"
        if self.outcome == PENDING and not self.ignored:
            return "pending"
        return "ignored"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "order_id": self.order_id,
            "outcome": self.outcome,
            "status": self.status,
            "transitioned": self.transitioned,
            "settled": self.settled,
            "ignored": self.ignored,
        }


async def _classify_rest(
    session: AsyncSession, event: SettlementEvent, numbers: List[int],
    result: SettlementResult,
) -> None:
    rest = [n for n in numbers if n not in set(result.transitioned)]
    if not rest:
        return
    current = await _tickets_by_number(session, event.campaign_id, rest)
    for n in rest:
        t = current.get(n)
        same_order = (
            t is not None and
            (event.order_id is None or t["order_id"] == event.order_id)
        )
        if t is not None and same_order and t["status"] == T_PURCHASED:
            result.settled.append(n)
        elif (t is not None and same_order and event.outcome == PENDING
              and t["status"] == "reserved"):
            # pending leaves the reservation as is
            continue
        else:
            result.ignored.append(n)


# UN-GATED internal function: runs inside the caller's transaction
async def _apply(
    session: AsyncSession,
    event: SettlementEvent,
    now: float,
    expired_by: Optional[float] = None,
) -> SettlementResult:
    result = SettlementResult(
        campaign_id=event.campaign_id,
        order_id=event.order_id,
        outcome=event.outcome,
    )
    numbers = sorted(set(int(n) for n in event.ticket_numbers))
    if not numbers and event.order_id is not None:
        # "the whole order": resolve from the current rows
        numbers = [
            int(t["quota_number"]) for t in
            await _order_tickets(session, event.campaign_id, event.order_id)
        ]
    if not numbers:
        return result
    if event.order_id is None and event.outcome != PENDING:
        # unscoped writes could hit whichever order holds the numbers now
        log.warning("settlement %s/%s names no order, ignoring tickets %s",
                    event.provider, event.external_id, numbers)
        result.ignored = numbers
        return result

    if event.outcome == APPROVED:
        result.transitioned = await _purchase_rows(
            session, event.campaign_id, event.order_id, numbers, now
        )
    elif event.outcome == REJECTED:
        result.transitioned = await _release_rows(
            session, event.campaign_id, event.order_id, numbers,
            expired_by=expired_by,
        )
    await _classify_rest(session, event, numbers, result)

    details = {
        "provider": event.provider,
        "external_id": event.external_id,
        "order_id": event.order_id,
        "quota_numbers": numbers,
        **{k: v for k, v in result.as_dict().items()
           if k in ("transitioned", "settled", "ignored")},
    }
    if result.ignored:
        log.warning(
            "settlement %s/%s for order %s ignored tickets %s "
            "(stale, duplicate or re-reserved)",
            event.provider, event.external_id, event.order_id, result.ignored,
        )
    if event.outcome == APPROVED:
        op, status = "payment_processed", "success"
        msg = (f"{event.provider} payment {event.external_id}: "
               f"{len(result.transitioned)} tickets purchased")
    elif event.outcome == REJECTED:
        op, status = "payment_failed", "warning"
        msg = (f"{event.provider} payment {event.external_id} rejected: "
               f"{len(result.transitioned)} tickets released")
    else:
        op, status = "payment_pending", "success"
        msg = f"{event.provider} payment {event.external_id} is pending"
    if result.ignored and not result.transitioned and not result.settled:
        status = "warning"
        msg += " (ignored: tickets no longer held by this order)"
    await oplog._append(session, op, status, msg,
                        campaign_id=event.campaign_id, details=details,
                        now=now)
    return result


async def apply(
    db: GatedAsyncSession,
    event: SettlementEvent,
    now: Optional[float] = None,
    expired_by: Optional[float] = None,
) -> SettlementResult:
    """
    Apply one event. Safe to call any number of times with the same event:
    a replay finds nothing left to move and reports the tickets as settled
    (approved) or ignored (rejected).
    """
    now = now if now is not None else now_ts()
    async with db.gated():
        async with db.session.begin():
            return await _apply(db.session, event, now,
                                expired_by=expired_by)
