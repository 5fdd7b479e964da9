# model/reservations.py
"""
Reservation manager: claims a set of tickets for a brand new order.

The claim is one conditional UPDATE inside one transaction. If fewer rows come
back than were asked for, somebody else got there first: we raise
ConflictError, which rolls the transaction back, so partial claims never
become visible.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from sqlalchemy import text

from .. import config
from ..errors import ConflictError, NotFoundError, ValidationError
from ..helpers import is_valid_email, new_id, normalize_phone, now_ts
from ..infra.sql import GatedAsyncSession
from .inventory import C_ACTIVE, _get_campaign, _reserve_rows

log = logging.getLogger(__name__)

MAX_QUANTITY_ATTEMPTS = 3


@dataclass
class CustomerInfo:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def normalized(self) -> Dict[str, Optional[str]]:
        email = (self.email or "").strip() or None
        if email is not None and not is_valid_email(email):
            raise ValidationError("customer email is not a valid address")
        return {
            "name": (self.name or "").strip() or None,
            "email": email,
            "phone": normalize_phone(self.phone, config.PHONE_COUNTRY_CODE),
        }


@dataclass
class Reservation:
    order_id: str
    campaign_id: str
    ticket_numbers: List[int]
    reserved_at: float
    expires_at: float
    customer: Dict[str, Optional[str]] = field(default_factory=dict)


def _validate_numbers(campaign: Dict, numbers: Sequence[int]) -> List[int]:
    if not numbers:
        raise ValidationError("no ticket numbers requested")
    try:
        wanted = [int(n) for n in numbers]
    except (TypeError, ValueError):
        raise ValidationError("ticket numbers must be integers")
    if len(set(wanted)) != len(wanted):
        raise ValidationError("ticket numbers must be distinct")
    total = int(campaign["total_tickets"])
    out_of_range = [n for n in wanted if n < 0 or n >= total]
    if out_of_range:
        raise ValidationError(
            f"ticket numbers out of range [0, {total}): {out_of_range}"
        )
    lo = int(campaign["min_tickets_per_purchase"])
    hi = int(campaign["max_tickets_per_purchase"])
    if not lo <= len(wanted) <= hi:
        raise ValidationError(
            f"between {lo} and {hi} tickets per purchase, got {len(wanted)}"
        )
    return sorted(wanted)


def _check_campaign(campaign: Optional[Dict], campaign_id: str) -> Dict:
    if campaign is None:
        raise NotFoundError(f"campaign {campaign_id} not found")
    if campaign["status"] != C_ACTIVE:
        raise ValidationError(
            f"campaign {campaign_id} is {campaign['status']}, not on sale"
        )
    return campaign


async def reserve(
    db: GatedAsyncSession,
    campaign_id: str,
    ticket_numbers: Sequence[int],
    customer: Optional[CustomerInfo] = None,
    timeout_minutes: Optional[int] = None,
    now: Optional[float] = None,
) -> Reservation:
    """
    All-or-nothing: either every requested number moves available -> reserved
    under a fresh order id, or none does and ConflictError is raised.
    """
    contact = (customer or CustomerInfo()).normalized()
    if timeout_minutes is not None and timeout_minutes <= 0:
        raise ValidationError("timeout_minutes must be positive")
    now = now if now is not None else now_ts()
    order_id = new_id()

    async with db.gated():
        async with db.session.begin():
            campaign = _check_campaign(
                await _get_campaign(db.session, campaign_id), campaign_id
            )
            numbers = _validate_numbers(campaign, ticket_numbers)
            minutes = (
                timeout_minutes
                if timeout_minutes is not None
                else int(campaign["reservation_timeout_minutes"])
            )
            expires_at = now + minutes * 60
            got = await _reserve_rows(
                db.session, campaign_id, numbers, order_id, contact,
                reserved_at=now, expires_at=expires_at,
            )
            if len(got) != len(numbers):
                taken = sorted(set(numbers) - set(got))
                # raising inside begin() rolls back the partial claim
                raise ConflictError(
                    f"tickets no longer available: {taken}"
                )

    log.info("order %s reserved %d tickets in campaign %s until %.0f",
             order_id, len(numbers), campaign_id, expires_at)
    return Reservation(
        order_id=order_id,
        campaign_id=campaign_id,
        ticket_numbers=numbers,
        reserved_at=now,
        expires_at=expires_at,
        customer=contact,
    )


async def reserve_quantity(
    db: GatedAsyncSession,
    campaign_id: str,
    quantity: int,
    customer: Optional[CustomerInfo] = None,
    timeout_minutes: Optional[int] = None,
    now: Optional[float] = None,
) -> Reservation:
    """
    Reserve `quantity` random available numbers. The pick is a plain read, so
    it can lose the race to a concurrent buyer; then we pick again.
    """
    if quantity <= 0:
        raise ValidationError("quantity must be positive")

    for attempt in range(1, MAX_QUANTITY_ATTEMPTS + 1):
        async with db.gated():
            async with db.session.begin():
                campaign = _check_campaign(
                    await _get_campaign(db.session, campaign_id), campaign_id
                )
                rows = (await db.session.execute(text("""
                    SELECT quota_number FROM tickets
                    WHERE campaign_id=:c AND status='available'
                """), {"c": campaign_id})).all()
        pool = [int(r[0]) for r in rows]
        if len(pool) < quantity:
            raise ConflictError(
                f"only {len(pool)} tickets left in campaign {campaign_id}"
            )
        # validate against min/max before drawing
        lo = int(campaign["min_tickets_per_purchase"])
        hi = int(campaign["max_tickets_per_purchase"])
        if not lo <= quantity <= hi:
            raise ValidationError(
                f"between {lo} and {hi} tickets per purchase, got {quantity}"
            )
        picked = random.sample(pool, quantity)
        try:
            return await reserve(db, campaign_id, picked, customer,
                                 timeout_minutes, now=now)
        except ConflictError:
            log.warning("random pick lost a race in campaign %s "
                        "(attempt %d/%d)", campaign_id, attempt,
                        MAX_QUANTITY_ATTEMPTS)
    raise ConflictError("could not reserve tickets, try again")

