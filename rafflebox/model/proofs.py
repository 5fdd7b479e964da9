# model/proofs.py
"""
Manual proof-of-payment review.

A buyer uploads a picture of a bank transfer; the organizer approves or
rejects it. Approval re-checks the reservation window at decision time and
settles the order's tickets in the same transaction as the proof update.
An approval that comes too late flips the proof to 'expired' so that asking
again gives the same answer.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..errors import (
    ConflictError, ExpiredError, NotFoundError, ValidationError
)
from ..helpers import new_id, normalize_phone, now_ts, to_iso
from ..infra.files import ProofFileStore
from ..infra.sql import GatedAsyncSession
from . import oplog, settlement
from .inventory import T_PURCHASED, T_RESERVED, _get_campaign, _order_tickets
from .settlement import APPROVED, REJECTED, SettlementEvent

log = logging.getLogger(__name__)

P_PENDING = "pending"
P_APPROVED = "approved"
P_REJECTED = "rejected"
P_EXPIRED = "expired"

PROVIDER = "manual"


class _WindowLapsed(Exception):
    pass


# ------------------------------------------------------------------------------
# Read-time projection
# ------------------------------------------------------------------------------

def project_status(stored: Optional[str], tickets: List[Dict[str, Any]],
                   now: float) -> str:
    """
    Status to show for an order. Only computed, never written: the sweeper
    (or approve()) is the one that persists 'expired'.
    """
    if any(t["status"] == T_PURCHASED for t in tickets):
        return P_APPROVED
    if stored in (P_APPROVED, P_REJECTED, P_EXPIRED):
        return stored
    expiries = [t["reservation_expires_at"] for t in tickets
                if t["status"] == T_RESERVED
                and t["reservation_expires_at"] is not None]
    if not expiries or min(expiries) <= now:
        return P_EXPIRED
    return P_PENDING


def _whatsapp_url(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    return "https://wa.me/" + re.sub(r"\D", "", phone)


def _summarize(campaign: Dict[str, Any], order_id: str,
               tickets: List[Dict[str, Any]], proof: Optional[Dict[str, Any]],
               now: float) -> Dict[str, Any]:
    first = tickets[0] if tickets else {}
    expiries = [t["reservation_expires_at"] for t in tickets
                if t["reservation_expires_at"] is not None]
    bought = [t["bought_at"] for t in tickets if t["bought_at"] is not None]
    phone = first.get("customer_phone") or (proof or {}).get("customer_phone")
    return {
        "order_id": order_id,
        "campaign_id": campaign["id"],
        "status": project_status(proof["status"] if proof else None,
                                 tickets, now),
        "stored_status": proof["status"] if proof else None,
        "quota_numbers": [int(t["quota_number"]) for t in tickets],
        "quotas_count": len(tickets),
        "total_value": len(tickets) * int(campaign["ticket_price"] or 0),
        "customer_name": (first.get("customer_name")
                          or (proof or {}).get("customer_name")),
        "customer_email": first.get("customer_email"),
        "customer_phone": phone,
        "whatsapp_url": _whatsapp_url(phone),
        "reserved_at": to_iso(first.get("reserved_at")
                              or (proof or {}).get("created_at")),
        "reservation_expires_at": to_iso(min(expiries) if expiries else None),
        "bought_at": to_iso(max(bought) if bought else None),
        "payment_method": "manual" if proof else "gateway",
        "proof_id": proof["id"] if proof else None,
        "image_path": proof["image_path"] if proof else None,
    }


async def list_orders(db: GatedAsyncSession, campaign_id: str,
                      now: Optional[float] = None) -> List[Dict[str, Any]]:
    now = now if now is not None else now_ts()
    async with db.gated():
        async with db.session.begin():
            campaign = await _get_campaign(db.session, campaign_id)
            if campaign is None:
                raise NotFoundError(f"campaign {campaign_id} not found")
            tickets = (await db.session.execute(text("""
                SELECT order_id, quota_number, status, customer_name,
                       customer_email, customer_phone, reserved_at,
                       reservation_expires_at, bought_at
                FROM tickets
                WHERE campaign_id=:c AND order_id IS NOT NULL
                ORDER BY order_id, quota_number
            """), {"c": campaign_id})).mappings().all()
            proofs = (await db.session.execute(text("""
                SELECT * FROM payment_proofs WHERE campaign_id=:c
            """), {"c": campaign_id})).mappings().all()

    by_order: Dict[str, List[Dict[str, Any]]] = {}
    for t in tickets:
        by_order.setdefault(t["order_id"], []).append(dict(t))
    proof_by_order = {p["order_id"]: dict(p) for p in proofs}

    items = [
        _summarize(campaign, oid, by_order.get(oid, []),
                   proof_by_order.get(oid), now)
        for oid in set(by_order) | set(proof_by_order)
    ]
    items.sort(key=lambda o: o["reserved_at"] or "", reverse=True)
    return items


async def get_order(db: GatedAsyncSession, campaign_id: str, order_id: str,
                    now: Optional[float] = None) -> Dict[str, Any]:
    now = now if now is not None else now_ts()
    async with db.gated():
        async with db.session.begin():
            campaign = await _get_campaign(db.session, campaign_id)
            if campaign is None:
                raise NotFoundError(f"campaign {campaign_id} not found")
            tickets = await _order_tickets(db.session, campaign_id, order_id)
            proof = await _proof_for_order(db.session, campaign_id, order_id)
    if not tickets and proof is None:
        raise NotFoundError(f"order {order_id} not found")
    return _summarize(campaign, order_id, tickets, proof, now)


# ------------------------------------------------------------------------------
# Proof rows
# ------------------------------------------------------------------------------

# UN-GATED internal function
async def _get_proof(session: AsyncSession,
                     proof_id: str) -> Optional[Dict[str, Any]]:
    row = (await session.execute(
        text("SELECT * FROM payment_proofs WHERE id=:id"), {"id": proof_id}
    )).mappings().first()
    return dict(row) if row else None


# UN-GATED internal function
async def _proof_for_order(session: AsyncSession, campaign_id: str,
                           order_id: str) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text("""
        SELECT * FROM payment_proofs WHERE campaign_id=:c AND order_id=:o
    """), {"c": campaign_id, "o": order_id})).mappings().first()
    return dict(row) if row else None


# UN-GATED internal function
async def _expire_pending(session: AsyncSession, campaign_id: str,
                          order_id: str, now: float) -> List[str]:
    rows = (await session.execute(text("""
        UPDATE payment_proofs SET status='expired', decided_at=:now
        WHERE campaign_id=:c AND order_id=:o AND status='pending'
        RETURNING id
    """), {"c": campaign_id, "o": order_id, "now": now})).all()
    return [r[0] for r in rows]


async def get_proof(db: GatedAsyncSession,
                    proof_id: str) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            return await _get_proof(db.session, proof_id)


async def upload_proof(
    db: GatedAsyncSession,
    files: ProofFileStore,
    *,
    order_id: str,
    campaign_id: str,
    organizer_id: Optional[str],
    content: bytes,
    content_type: str,
    customer_name: Optional[str] = None,
    customer_phone: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    if not content:
        raise ValidationError("empty proof image")
    if len(content) > config.PROOF_MAX_BYTES:
        raise ValidationError("proof image too large")
    if not (content_type or "").lower().startswith("image/"):
        raise ValidationError("proof must be an image")
    now = now if now is not None else now_ts()

    async with db.gated():
        async with db.session.begin():
            if await _get_campaign(db.session, campaign_id) is None:
                raise NotFoundError(f"campaign {campaign_id} not found")
            if not await _order_tickets(db.session, campaign_id, order_id):
                raise NotFoundError(
                    f"order {order_id} holds no tickets in {campaign_id}"
                )
            if await _proof_for_order(db.session, campaign_id, order_id):
                raise ConflictError(
                    f"order {order_id} already has a payment proof"
                )

    proof_id = new_id()
    rel = (f"{organizer_id or 'unknown'}/{order_id}-{int(now * 1000)}."
           f"{files.extension_for(content_type)}")
    await files.save(rel, content)

    proof = {
        "id": proof_id,
        "order_id": order_id,
        "campaign_id": campaign_id,
        "organizer_id": organizer_id,
        "image_path": rel,
        "status": P_PENDING,
        "customer_name": (customer_name or "").strip() or None,
        "customer_phone": normalize_phone(customer_phone,
                                          config.PHONE_COUNTRY_CODE),
        "created_at": now,
    }
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                INSERT INTO payment_proofs(
                    id, order_id, campaign_id, organizer_id, image_path,
                    status, customer_name, customer_phone, created_at)
                VALUES(
                    :id, :order_id, :campaign_id, :organizer_id, :image_path,
                    :status, :customer_name, :customer_phone, :created_at)
                ON CONFLICT (campaign_id, order_id) DO NOTHING
                RETURNING id
            """), proof)).first()
            if row is not None:
                await oplog._append(
                    db.session, "manual_payment_uploaded", "success",
                    f"Manual payment proof {proof_id} uploaded for order "
                    f"{order_id}",
                    campaign_id=campaign_id,
                    details={"proof_id": proof_id, "order_id": order_id},
                    now=now,
                )
    if row is None:
        # lost the race against a concurrent upload for the same order
        await files.delete(rel)
        raise ConflictError(f"order {order_id} already has a payment proof")
    return proof


# ------------------------------------------------------------------------------
# Decisions
# ------------------------------------------------------------------------------

async def approve(
    db: GatedAsyncSession,
    proof_id: str,
    order_id: str,
    campaign_id: str,
    now: Optional[float] = None,
) -> settlement.SettlementResult:
    """
    pending -> approved, only while the order's reservation is still alive
    (or the order is already paid). Raises ExpiredError after persisting
    'expired', ConflictError for decided proofs, NotFoundError otherwise.
    """
    now = now if now is not None else now_ts()
    params = {"id": proof_id, "c": campaign_id, "o": order_id, "now": now}

    async with db.gated():
        try:
            async with db.session.begin():
                row = (await db.session.execute(text("""
                    UPDATE payment_proofs
                    SET status='approved', decided_at=:now
                    WHERE id=:id AND campaign_id=:c AND order_id=:o
                      AND status='pending'
                      AND (
                        EXISTS (SELECT 1 FROM tickets
                                WHERE campaign_id=:c AND order_id=:o
                                  AND status='purchased')
                        OR (
                          EXISTS (SELECT 1 FROM tickets
                                  WHERE campaign_id=:c AND order_id=:o
                                    AND status='reserved')
                          AND NOT EXISTS (
                                SELECT 1 FROM tickets
                                WHERE campaign_id=:c AND order_id=:o
                                  AND status='reserved'
                                  AND reservation_expires_at <= :now)
                        )
                      )
                    RETURNING id
                """), params)).first()
                if row is not None:
                    result = await settlement._apply(
                        db.session,
                        SettlementEvent(
                            campaign_id=campaign_id,
                            ticket_numbers=[],
                            outcome=APPROVED,
                            external_id=proof_id,
                            provider=PROVIDER,
                            order_id=order_id,
                        ),
                        now,
                    )
                    if not (result.transitioned or result.settled):
                        # the sweeper got in between; undo the approval
                        raise _WindowLapsed()
                    await oplog._append(
                        db.session, "manual_payment_approved", "success",
                        f"Manual payment proof {proof_id} approved",
                        campaign_id=campaign_id,
                        details={"proof_id": proof_id, "order_id": order_id,
                                 "quota_numbers": result.transitioned
                                 + result.settled},
                        now=now,
                    )
                    return result
                proof = await _get_proof(db.session, proof_id)
        except _WindowLapsed:
            proof = None

        async with db.session.begin():
            if proof is None:
                proof = await _get_proof(db.session, proof_id)
            if (proof is None or proof["order_id"] != order_id
                    or proof["campaign_id"] != campaign_id):
                raise NotFoundError(
                    f"proof {proof_id} not found for order {order_id}"
                )
            if proof["status"] in (P_APPROVED, P_REJECTED):
                raise ConflictError(
                    f"proof {proof_id} is already {proof['status']}"
                )
            if proof["status"] == P_PENDING:
                await _expire_pending(db.session, campaign_id, order_id, now)
                await oplog._append(
                    db.session, "manual_payment_expired", "warning",
                    f"Manual payment proof {proof_id} approved after the "
                    f"reservation window; marked expired",
                    campaign_id=campaign_id,
                    details={"proof_id": proof_id, "order_id": order_id},
                    now=now,
                )
    # outside the transaction: the 'expired' flip is committed by now
    raise ExpiredError(
        f"reservation for order {order_id} expired before approval"
    )


async def reject(
    db: GatedAsyncSession,
    proof_id: str,
    release_tickets: bool = config.REJECT_RELEASES_TICKETS,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    now = now if now is not None else now_ts()
    released: List[int] = []
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                UPDATE payment_proofs
                SET status='rejected', decided_at=COALESCE(decided_at, :now)
                WHERE id=:id AND status IN ('pending', 'rejected')
                RETURNING campaign_id, order_id
            """), {"id": proof_id, "now": now})).first()
            if row is None:
                proof = await _get_proof(db.session, proof_id)
                if proof is None:
                    raise NotFoundError(f"proof {proof_id} not found")
                raise ConflictError(
                    f"proof {proof_id} is already {proof['status']}"
                )
            campaign_id, order_id = row[0], row[1]
            if release_tickets:
                result = await settlement._apply(
                    db.session,
                    SettlementEvent(
                        campaign_id=campaign_id,
                        ticket_numbers=[],
                        outcome=REJECTED,
                        external_id=proof_id,
                        provider=PROVIDER,
                        order_id=order_id,
                    ),
                    now,
                )
                released = result.transitioned
            await oplog._append(
                db.session, "manual_payment_rejected", "warning",
                f"Manual payment proof {proof_id} rejected",
                campaign_id=campaign_id,
                details={"proof_id": proof_id, "order_id": order_id,
                         "released": released},
                now=now,
            )
    return {"proof_id": proof_id, "status": P_REJECTED, "order_id": order_id,
            "campaign_id": campaign_id, "released": released}


async def release_order(
    db: GatedAsyncSession,
    campaign_id: str,
    order_id: str,
    provider: str = "organizer",
    now: Optional[float] = None,
) -> settlement.SettlementResult:
    """
    Explicit release of a reserved order, e.g. by the organizer. A pending
    proof for the order is expired along with the tickets.
    """
    now = now if now is not None else now_ts()
    event = SettlementEvent(
        campaign_id=campaign_id,
        ticket_numbers=[],
        outcome=REJECTED,
        external_id=f"release_{order_id}",
        provider=provider,
        order_id=order_id,
    )
    async with db.gated():
        async with db.session.begin():
            result = await settlement._apply(db.session, event, now)
            expired = await _expire_pending(db.session, campaign_id,
                                            order_id, now)
            if expired:
                log.info("order %s released, proofs %s expired",
                         order_id, expired)
    return result
