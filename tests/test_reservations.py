import asyncio

import pytest

from rafflebox.errors import ConflictError, NotFoundError, ValidationError
from rafflebox.model import inventory
from rafflebox.model.reservations import (
    CustomerInfo, reserve, reserve_quantity
)


async def test_reserve_claims_every_requested_ticket(db, make_campaign,
                                                     customer, t0):
    campaign = await make_campaign(total_tickets=10)
    r = await reserve(db, campaign["id"], [3, 1, 2], customer, now=t0)

    assert r.ticket_numbers == [1, 2, 3]
    assert r.reserved_at == t0
    assert r.expires_at == t0 + 15 * 60

    rows = await inventory.order_tickets(db, campaign["id"], r.order_id)
    assert [t["quota_number"] for t in rows] == [1, 2, 3]
    for t in rows:
        assert t["status"] == inventory.T_RESERVED
        assert t["customer_name"] == "Maria Silva"
        assert t["customer_email"] == "maria@example.com"
        assert t["customer_phone"] == "+5511999990000"
        assert t["reservation_expires_at"] == r.expires_at

    counts = await inventory.ticket_counts(db, campaign["id"])
    assert counts == {"available": 7, "reserved": 3, "purchased": 0,
                      "total": 10}


async def test_overlapping_reservation_fails_without_partial_claim(
        db, make_campaign, t0):
    campaign = await make_campaign(total_tickets=10)
    await reserve(db, campaign["id"], [1, 2], now=t0)

    with pytest.raises(ConflictError):
        await reserve(db, campaign["id"], [2, 3], now=t0)

    # ticket 3 was not left behind
    available = await inventory.available_numbers(db, campaign["id"])
    assert 3 in available
    counts = await inventory.ticket_counts(db, campaign["id"])
    assert counts["reserved"] == 2


async def test_concurrent_buyers_for_one_ticket(open_db, make_campaign, t0):
    campaign = await make_campaign(total_tickets=10)
    a, b = open_db(), open_db()

    results = await asyncio.gather(
        reserve(a, campaign["id"], [5], now=t0),
        reserve(b, campaign["id"], [5], now=t0),
        return_exceptions=True,
    )
    won = [r for r in results if not isinstance(r, Exception)]
    lost = [r for r in results if isinstance(r, ConflictError)]
    assert len(won) == 1
    assert len(lost) == 1

    t = (await inventory.tickets_by_number(a, campaign["id"], [5]))[5]
    assert t["order_id"] == won[0].order_id


async def test_custom_timeout(db, make_campaign, t0):
    campaign = await make_campaign(reservation_timeout_minutes=30)
    r = await reserve(db, campaign["id"], [0], now=t0)
    assert r.expires_at == t0 + 30 * 60

    r = await reserve(db, campaign["id"], [1], timeout_minutes=5, now=t0)
    assert r.expires_at == t0 + 5 * 60


@pytest.mark.parametrize("numbers", [
    [],
    [1, 1],
    [10],
    [-1],
    ["x"],
])
async def test_invalid_numbers(db, make_campaign, numbers):
    campaign = await make_campaign(total_tickets=10)
    with pytest.raises(ValidationError):
        await reserve(db, campaign["id"], numbers)


async def test_purchase_limits(db, make_campaign):
    campaign = await make_campaign(total_tickets=10,
                                   min_tickets_per_purchase=2,
                                   max_tickets_per_purchase=3)
    with pytest.raises(ValidationError):
        await reserve(db, campaign["id"], [1])
    with pytest.raises(ValidationError):
        await reserve(db, campaign["id"], [1, 2, 3, 4])
    r = await reserve(db, campaign["id"], [1, 2])
    assert r.ticket_numbers == [1, 2]


async def test_campaign_must_be_on_sale(db, make_campaign):
    draft = await make_campaign(status=inventory.C_DRAFT)
    with pytest.raises(ValidationError):
        await reserve(db, draft["id"], [1])
    with pytest.raises(NotFoundError):
        await reserve(db, "nope", [1])


async def test_bad_email_is_rejected(db, make_campaign):
    campaign = await make_campaign()
    with pytest.raises(ValidationError):
        await reserve(db, campaign["id"], [1],
                      CustomerInfo(name="X", email="not-an-email"))
    counts = await inventory.ticket_counts(db, campaign["id"])
    assert counts["reserved"] == 0


async def test_reserve_quantity(db, make_campaign, t0):
    campaign = await make_campaign(total_tickets=5)
    r = await reserve_quantity(db, campaign["id"], 3, now=t0)
    assert len(set(r.ticket_numbers)) == 3
    assert all(0 <= n < 5 for n in r.ticket_numbers)

    with pytest.raises(ConflictError):
        await reserve_quantity(db, campaign["id"], 3, now=t0)
    with pytest.raises(ValidationError):
        await reserve_quantity(db, campaign["id"], 0)


async def test_create_campaign_validation(db):
    with pytest.raises(ValidationError):
        await inventory.create_campaign(db, title="x", total_tickets=0)
    with pytest.raises(ValidationError):
        await inventory.create_campaign(db, title="x", total_tickets=5,
                                        min_tickets_per_purchase=6)
    with pytest.raises(ValidationError):
        await inventory.create_campaign(db, title="x", total_tickets=5,
                                        status="archived")


async def test_activate_campaign(db, make_campaign, t0):
    draft = await make_campaign(status=inventory.C_DRAFT,
                                expires_at=t0 + 3600)
    assert draft["is_paid"] is False

    assert await inventory.activate_campaign(db, draft["id"]) is True
    c = await inventory.get_campaign(db, draft["id"])
    assert c["status"] == inventory.C_ACTIVE
    assert bool(c["is_paid"]) is True
    assert c["expires_at"] is None

    # replay
    assert await inventory.activate_campaign(db, draft["id"]) is False


def test_customer_info_normalization():
    info = CustomerInfo(name="  Ana ", email=" ana@example.com ",
                        phone="+55 55 11 98888-7777").normalized()
    assert info == {"name": "Ana", "email": "ana@example.com",
                    "phone": "+5511988887777"}
    assert CustomerInfo().normalized() == {"name": None, "email": None,
                                           "phone": None}
