# model/inventory.py
"""
Ticket inventory store.

Each campaign owns `total_tickets` rows, one per quota number. Rows are never
read-then-written: every mutation is one conditional UPDATE whose WHERE clause
states the expected current status (and order), and RETURNING tells the
caller which rows actually moved. Whatever the database lets through is the
winner; everybody else sees fewer rows come back.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..errors import ValidationError
from ..helpers import new_id, now_ts
from ..infra.sql import GatedAsyncSession

# Ticket statuses
T_AVAILABLE = "available"
T_RESERVED = "reserved"
T_PURCHASED = "purchased"

# Campaign statuses
C_DRAFT = "draft"
C_ACTIVE = "active"
C_COMPLETED = "completed"
C_CANCELLED = "cancelled"
CAMPAIGN_STATUSES = (C_DRAFT, C_ACTIVE, C_COMPLETED, C_CANCELLED)

TICKET_COLUMNS = """
    quota_number, status, order_id, customer_name, customer_email,
    customer_phone, reserved_at, reservation_expires_at, bought_at
"""


def _in_numbers(sql: str):
    return text(sql).bindparams(bindparam("nums", expanding=True))


# ------------------------------------------------------------------------------
# Campaigns
# ------------------------------------------------------------------------------

async def create_campaign(
    db: GatedAsyncSession,
    *,
    title: str,
    total_tickets: int,
    organizer_id: Optional[str] = None,
    status: str = C_DRAFT,
    min_tickets_per_purchase: int = 1,
    max_tickets_per_purchase: Optional[int] = None,
    reservation_timeout_minutes: int = (
        config.DEFAULT_RESERVATION_TIMEOUT_MINUTES
    ),
    ticket_price: int = 0,
    expires_at: Optional[float] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Insert the campaign and its `total_tickets` available rows in one
    transaction.
    """
    if total_tickets <= 0:
        raise ValidationError("total_tickets must be positive")
    if status not in CAMPAIGN_STATUSES:
        raise ValidationError(f"invalid campaign status: {status}")
    if max_tickets_per_purchase is None:
        max_tickets_per_purchase = total_tickets
    if not (1 <= min_tickets_per_purchase <= max_tickets_per_purchase
            <= total_tickets):
        raise ValidationError(
            "expected 1 <= min_tickets_per_purchase <= "
            "max_tickets_per_purchase <= total_tickets"
        )
    if reservation_timeout_minutes <= 0:
        raise ValidationError("reservation_timeout_minutes must be positive")

    now = now if now is not None else now_ts()
    campaign = {
        "id": new_id(),
        "title": title,
        "organizer_id": organizer_id,
        "status": status,
        "total_tickets": total_tickets,
        "min_tickets_per_purchase": min_tickets_per_purchase,
        "max_tickets_per_purchase": max_tickets_per_purchase,
        "reservation_timeout_minutes": reservation_timeout_minutes,
        "ticket_price": ticket_price,
        "is_paid": status != C_DRAFT,
        "expires_at": expires_at if status == C_DRAFT else None,
        "created_at": now,
    }
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                INSERT INTO campaigns(
                    id, title, organizer_id, status, total_tickets,
                    min_tickets_per_purchase, max_tickets_per_purchase,
                    reservation_timeout_minutes, ticket_price, is_paid,
                    expires_at, created_at)
                VALUES(
                    :id, :title, :organizer_id, :status, :total_tickets,
                    :min_tickets_per_purchase, :max_tickets_per_purchase,
                    :reservation_timeout_minutes, :ticket_price, :is_paid,
                    :expires_at, :created_at)
            """), campaign)
            await db.session.execute(
                text("""
                    INSERT INTO tickets(campaign_id, quota_number, status)
                    VALUES(:c, :n, 'available')
                """),
                [{"c": campaign["id"], "n": n} for n in range(total_tickets)],
            )
    return campaign


# UN-GATED internal function
async def _get_campaign(
    session: AsyncSession, campaign_id: str
) -> Optional[Dict[str, Any]]:
    row = (await session.execute(
        text("SELECT * FROM campaigns WHERE id = :id"), {"id": campaign_id}
    )).mappings().first()
    return dict(row) if row else None


async def get_campaign(
    db: GatedAsyncSession, campaign_id: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            return await _get_campaign(db.session, campaign_id)


async def activate_campaign(db: GatedAsyncSession, campaign_id: str) -> bool:
    """
    Publication fee paid: draft -> active, drop the draft expiry. Returns
    False when the campaign was not a draft (already active, or replay).
    """
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                UPDATE campaigns
                SET status='active', is_paid=TRUE, expires_at=NULL
                WHERE id=:id AND status='draft'
                RETURNING id
            """), {"id": campaign_id})).first()
    return row is not None


# UN-GATED internal function
async def _delete_stale_draft(
    session: AsyncSession, campaign_id: str, now: float, grace_seconds: float
) -> bool:
    """
    Delete a draft campaign and everything hanging off it, re-checking the
    staleness condition so concurrent sweeps and a late publication payment
    cannot race it.
    """
    row = (await session.execute(text("""
        SELECT id FROM campaigns
        WHERE id=:id AND status='draft'
          AND expires_at IS NOT NULL AND expires_at < :now
          AND created_at < :created_cutoff
    """), {
        "id": campaign_id, "now": now, "created_cutoff": now - grace_seconds,
    })).first()
    if row is None:
        return False
    params = {"id": campaign_id}
    await session.execute(
        text("DELETE FROM payment_proofs WHERE campaign_id=:id"), params)
    await session.execute(
        text("DELETE FROM tickets WHERE campaign_id=:id"), params)
    result = await session.execute(
        text("DELETE FROM campaigns WHERE id=:id AND status='draft'"), params)
    return bool(result.rowcount)


# ------------------------------------------------------------------------------
# Conditional ticket writes (UN-GATED: always inside the caller's transaction)
# ------------------------------------------------------------------------------

async def _reserve_rows(
    session: AsyncSession,
    campaign_id: str,
    numbers: Iterable[int],
    order_id: str,
    customer: Dict[str, Optional[str]],
    reserved_at: float,
    expires_at: float,
) -> List[int]:
    """available -> reserved for every number that is still available."""
    rows = (await session.execute(_in_numbers("""
        UPDATE tickets
        SET status='reserved', order_id=:o,
            customer_name=:name, customer_email=:email, customer_phone=:phone,
            reserved_at=:r, reservation_expires_at=:e, bought_at=NULL
        WHERE campaign_id=:c AND quota_number IN :nums
          AND status='available'
        RETURNING quota_number
    """), {
        "c": campaign_id,
        "nums": list(numbers),
        "o": order_id,
        "name": customer.get("name"),
        "email": customer.get("email"),
        "phone": customer.get("phone"),
        "r": reserved_at,
        "e": expires_at,
    })).all()
    return sorted(int(r[0]) for r in rows)


async def _purchase_rows(
    session: AsyncSession,
    campaign_id: str,
    order_id: str,
    numbers: Optional[Iterable[int]],
    now: float,
) -> List[int]:
    """reserved -> purchased, for rows still held by the order."""
    sql = """
        UPDATE tickets
        SET status='purchased', bought_at=:now
        WHERE campaign_id=:c AND status='reserved' AND order_id=:o
    """
    params: Dict[str, Any] = {"c": campaign_id, "o": order_id, "now": now}
    if numbers is not None:
        sql += " AND quota_number IN :nums"
        params["nums"] = list(numbers)
    sql += " RETURNING quota_number"
    stmt = _in_numbers(sql) if numbers is not None else text(sql)
    rows = (await session.execute(stmt, params)).all()
    return sorted(int(r[0]) for r in rows)


async def _release_rows(
    session: AsyncSession,
    campaign_id: str,
    order_id: str,
    numbers: Optional[Iterable[int]],
    expired_by: Optional[float] = None,
) -> List[int]:
    """
    reserved -> available, clearing the order linkage. With `expired_by`,
    only rows whose window closed at or before that time move.
    """
    sql = """
        UPDATE tickets
        SET status='available', order_id=NULL,
            customer_name=NULL, customer_email=NULL, customer_phone=NULL,
            reserved_at=NULL, reservation_expires_at=NULL, bought_at=NULL
        WHERE campaign_id=:c AND status='reserved' AND order_id=:o
    """
    params: Dict[str, Any] = {"c": campaign_id, "o": order_id}
    if numbers is not None:
        sql += " AND quota_number IN :nums"
        params["nums"] = list(numbers)
    if expired_by is not None:
        sql += " AND reservation_expires_at <= :cutoff"
        params["cutoff"] = expired_by
    sql += " RETURNING quota_number"
    stmt = _in_numbers(sql) if numbers is not None else text(sql)
    rows = (await session.execute(stmt, params)).all()
    return sorted(int(r[0]) for r in rows)


async def _tickets_by_number(
    session: AsyncSession, campaign_id: str, numbers: Iterable[int]
) -> Dict[int, Dict[str, Any]]:
    rows = (await session.execute(_in_numbers(f"""
        SELECT {TICKET_COLUMNS} FROM tickets
        WHERE campaign_id=:c AND quota_number IN :nums
    """), {"c": campaign_id, "nums": list(numbers)})).mappings().all()
    return {int(r["quota_number"]): dict(r) for r in rows}


async def _order_tickets(
    session: AsyncSession, campaign_id: str, order_id: str
) -> List[Dict[str, Any]]:
    rows = (await session.execute(text(f"""
        SELECT {TICKET_COLUMNS} FROM tickets
        WHERE campaign_id=:c AND order_id=:o
        ORDER BY quota_number
    """), {"c": campaign_id, "o": order_id})).mappings().all()
    return [dict(r) for r in rows]


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def order_tickets(
    db: GatedAsyncSession, campaign_id: str, order_id: str
) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            return await _order_tickets(db.session, campaign_id, order_id)


async def tickets_by_number(
    db: GatedAsyncSession, campaign_id: str, numbers: Iterable[int]
) -> Dict[int, Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            return await _tickets_by_number(db.session, campaign_id, numbers)


async def ticket_counts(
    db: GatedAsyncSession, campaign_id: str
) -> Dict[str, int]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT status, COUNT(*) AS n FROM tickets
                WHERE campaign_id=:c GROUP BY status
            """), {"c": campaign_id})).all()
    counts = {T_AVAILABLE: 0, T_RESERVED: 0, T_PURCHASED: 0}
    for status, n in rows:
        counts[status] = int(n)
    counts["total"] = sum(counts.values())
    return counts


async def available_numbers(
    db: GatedAsyncSession, campaign_id: str, limit: int = 50
) -> List[int]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT quota_number FROM tickets
                WHERE campaign_id=:c AND status='available'
                ORDER BY quota_number
                LIMIT :lim
            """), {"c": campaign_id, "lim": max(1, limit)})).all()
    return [int(r[0]) for r in rows]


async def update_order_contact(
    db: GatedAsyncSession,
    campaign_id: str,
    order_id: str,
    name: Optional[str],
    email: Optional[str],
    phone: Optional[str],
) -> int:
    """Contact fields live on the ticket rows and on the order's proof."""
    async with db.gated():
        async with db.session.begin():
            result = await db.session.execute(text("""
                UPDATE tickets
                SET customer_name=:name, customer_email=:email,
                    customer_phone=:phone
                WHERE campaign_id=:c AND order_id=:o
            """), {"c": campaign_id, "o": order_id, "name": name,
                   "email": email, "phone": phone})
            await db.session.execute(text("""
                UPDATE payment_proofs
                SET customer_name=:name, customer_phone=:phone
                WHERE campaign_id=:c AND order_id=:o
            """), {"c": campaign_id, "o": order_id, "name": name,
                   "phone": phone})
    return int(result.rowcount or 0)
