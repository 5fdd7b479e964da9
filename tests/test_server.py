import json

import httpx
import pytest

from rafflebox import server
from rafflebox.model.checkoutref._postgres import (
    create_schema as create_refs_schema
)
from rafflebox.model.schema import create_schema

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


@pytest.fixture
async def client():
    # ASGITransport does not run startup hooks
    async with server.engine.begin() as conn:
        await create_schema(conn)
        await create_refs_schema(conn)
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://test") as c:
        yield c
    await server.engine.dispose()


@pytest.fixture
async def admin(client):
    r = await client.post("/api/admin/login",
                          data={"username": "admin", "password": "supasecret"})
    assert r.status_code == 200
    return client


async def _campaign(client, **kw):
    body = {"title": "Rifa da moto", "total_tickets": 20, "status": "active",
            **kw}
    r = await client.post("/api/campaigns", json=body)
    assert r.status_code == 201, r.text
    return r.json()


async def _reserve(client, campaign_id, numbers):
    r = await client.post(
        f"/api/campaigns/{campaign_id}/reservations",
        json={"ticket_numbers": numbers,
              "customer": {"name": "Ana", "email": "ana@example.com",
                           "phone": "11988887777"}},
    )
    assert r.status_code == 201, r.text
    return r.json()


def _signed(body: dict):
    payload = json.dumps(body).encode()
    sig = server.ADAPTERS["checkout"].sign(payload)
    return payload, {"x-checkout-signature": sig,
                     "content-type": "application/json"}


def _paid(reference, payment_id="pi_100"):
    return _signed({
        "id": "evt_" + payment_id,
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": payment_id,
                            "metadata": {"reference": reference}}},
    })


async def test_login_required(client):
    r = await client.post("/api/campaigns", json={"title": "x",
                                                  "total_tickets": 5})
    assert r.status_code == 401

    r = await client.post("/api/admin/login",
                          data={"username": "admin", "password": "wrong"})
    assert r.status_code == 401


async def test_reservation_and_ticket_listing(admin):
    c = await _campaign(admin)
    res = await _reserve(admin, c["id"], [1, 2])

    assert res["ticket_numbers"] == [1, 2]
    assert res["reference"].startswith("ref_")
    assert res["external_reference"] == res["reference"]

    r = await admin.get(f"/api/campaigns/{c['id']}/tickets")
    assert r.status_code == 200
    body = r.json()
    assert body["counts"]["reserved"] == 2
    assert 1 not in body["available"]

    # taken
    r = await admin.post(f"/api/campaigns/{c['id']}/reservations",
                         json={"ticket_numbers": [2, 3]})
    assert r.status_code == 409

    r = await admin.post(f"/api/campaigns/{c['id']}/reservations",
                         json={"ticket_numbers": [99]})
    assert r.status_code == 400

    r = await admin.post("/api/campaigns/nope/reservations",
                         json={"quantity": 1})
    assert r.status_code == 404


async def test_webhook_settles_and_is_idempotent(admin):
    c = await _campaign(admin)
    res = await _reserve(admin, c["id"], [5, 6])
    payload, headers = _paid(res["reference"])

    r = await admin.post("/payments/webhook/checkout", content=payload,
                         headers=headers)
    assert r.status_code == 200
    [result] = r.json()["results"]
    assert result["status"] == "paid"
    assert result["transitioned"] == [5, 6]
    assert result["duplicate"] is False

    r = await admin.post("/payments/webhook/checkout", content=payload,
                         headers=headers)
    assert r.status_code == 200
    [result] = r.json()["results"]
    assert result["status"] == "paid"
    assert result["transitioned"] == []
    assert result["duplicate"] is True

    r = await admin.get(f"/api/campaigns/{c['id']}/tickets")
    assert r.json()["counts"]["purchased"] == 2


async def test_webhook_rejections(client):
    payload, headers = _paid("ref_x")
    headers["x-checkout-signature"] = "forged"
    r = await client.post("/payments/webhook/checkout", content=payload,
                          headers=headers)
    assert r.status_code == 400
    assert r.json() == {"detail": "Invalid signature"}

    r = await client.post("/payments/webhook/nope", content=b"{}")
    assert r.status_code == 404

    payload, headers = _paid("ref_unknown")
    r = await client.post("/payments/webhook/checkout", content=payload,
                          headers=headers)
    assert r.status_code == 400

    payload, headers = _signed({"type": "customer.created",
                                "data": {"object": {}}})
    r = await client.post("/payments/webhook/checkout", content=payload,
                          headers=headers)
    assert r.status_code == 200
    assert r.json()["results"][0]["ignored"] is True


async def test_pix_status_updates(admin):
    c = await _campaign(admin)
    res = await _reserve(admin, c["id"], [9])

    def _update(tx, status, reference):
        return admin.post("/payments/webhook/pix", json={
            "event": "transaction.status_updated",
            "data": {"id": tx, "status": status,
                     "external_reference": reference},
        })

    # a packed reference names no order: refused, tickets untouched
    r = await _update("tx_1", "failed", f"campaign_{c['id']}_tickets_9")
    assert r.status_code == 400
    r = await admin.get(f"/api/campaigns/{c['id']}/tickets")
    assert r.json()["counts"]["reserved"] == 1

    r = await _update("tx_2", "failed", res["external_reference"])
    assert r.status_code == 200
    [result] = r.json()["results"]
    assert result["status"] == "released"
    assert result["order_id"] == res["order_id"]


async def test_publication_fee_activates_draft(admin):
    c = await _campaign(admin, status="draft")
    assert c["status"] == "draft"
    assert c["expires_at"] is not None

    payload, headers = _signed({
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_1", "payment_status": "paid",
                            "metadata": {"type": "publication_fee",
                                         "campaign_id": c["id"]}}},
    })
    r = await admin.post("/payments/webhook/checkout", content=payload,
                         headers=headers)
    assert r.status_code == 200
    assert r.json()["results"][0]["activated"] is True

    r = await admin.get(f"/api/campaigns/{c['id']}")
    assert r.json()["status"] == "active"
    assert r.json()["is_paid"] is True


async def test_manual_proof_review(admin):
    c = await _campaign(admin)
    res = await _reserve(admin, c["id"], [11, 12])

    r = await admin.post("/api/proofs", data={
        "order_id": res["order_id"], "campaign_id": c["id"],
        "organizer_id": "org-9",
    }, files={"file": ("proof.png", PNG, "image/png")})
    assert r.status_code == 201, r.text
    proof = r.json()

    r = await admin.get(
        f"/api/admin/campaigns/{c['id']}/orders/{res['order_id']}")
    assert r.status_code == 200
    order = r.json()
    assert order["status"] == "pending"
    assert order["references"] == [res["reference"]]

    r = await admin.post(f"/api/admin/proofs/{proof['id']}/approve",
                         json={"order_id": res["order_id"],
                               "campaign_id": c["id"]})
    assert r.status_code == 200
    assert r.json()["proof_status"] == "approved"
    assert r.json()["transitioned"] == [11, 12]

    r = await admin.post(f"/api/admin/proofs/{proof['id']}/reject")
    assert r.status_code == 409

    r = await admin.get(f"/api/admin/campaigns/{c['id']}/orders")
    [item] = r.json()["items"]
    assert item["status"] == "approved"


async def test_non_image_proof_is_rejected(admin):
    c = await _campaign(admin)
    res = await _reserve(admin, c["id"], [1])
    r = await admin.post("/api/proofs", data={
        "order_id": res["order_id"], "campaign_id": c["id"],
        "organizer_id": "org-9",
    }, files={"file": ("proof.pdf", b"%PDF-1.4", "application/pdf")})
    assert r.status_code == 400


async def test_organizer_release_and_contact_update(admin):
    c = await _campaign(admin)
    res = await _reserve(admin, c["id"], [3, 4])
    url = f"/api/admin/campaigns/{c['id']}/orders/{res['order_id']}"

    r = await admin.patch(url, json={"name": "Ana Paula",
                                     "email": "ana.paula@example.com",
                                     "phone": "11 97777-6666"})
    assert r.status_code == 200
    assert r.json()["customer_phone"] == "+5511977776666"

    r = await admin.patch(url, json={"email": "broken"})
    assert r.status_code == 400

    r = await admin.post(url + "/release")
    assert r.status_code == 200
    assert r.json()["transitioned"] == [3, 4]


async def test_sweep_endpoint_auth(client):
    r = await client.post("/internal/sweep")
    assert r.status_code == 401

    r = await client.post("/internal/sweep",
                          headers={"x-cron-secret": "test-cron-secret"})
    assert r.status_code == 200
    body = r.json()
    for key in ("deleted_count", "released_count", "error_count", "details"):
        assert key in body


async def test_admin_logs_and_timings(admin):
    c = await _campaign(admin)
    res = await _reserve(admin, c["id"], [7])
    payload, headers = _paid(res["reference"], payment_id="pi_logs")
    await admin.post("/payments/webhook/checkout", content=payload,
                     headers=headers)

    r = await admin.get("/api/admin/logs", params={"campaign_id": c["id"]})
    assert r.status_code == 200
    assert "payment_processed" in {e["operation_type"]
                                   for e in r.json()["items"]}

    r = await admin.get("/api/admin/timings")
    assert r.status_code == 200
    assert "settlement.apply" in r.json()

    await admin.get("/api/admin/logout")
    r = await admin.get("/api/admin/logs")
    assert r.status_code == 401
