import hashlib
import hmac
import json

import httpx
import pytest

from rafflebox.errors import ProviderError, ValidationError
from rafflebox.model.settlement import APPROVED, PENDING, REJECTED
from rafflebox.payments import (
    K_IGNORED, K_PUBLICATION_FEE, K_SETTLEMENT, CheckoutAdapter,
    MercadoPagoAdapter, PixAdapter, ProviderNotice, normalize_status,
    parse_numbers, parse_reference, resolve_event,
)


@pytest.mark.parametrize("raw,outcome", [
    ("accredited", APPROVED),
    ("approved", APPROVED),
    ("PAID", APPROVED),
    ("completed", APPROVED),
    ("succeeded", APPROVED),
    ("rejected", REJECTED),
    ("cancelled", REJECTED),
    ("canceled", REJECTED),
    ("expired", REJECTED),
    ("failed", REJECTED),
    ("in_process", PENDING),
    ("processing", PENDING),
    ("", PENDING),
    (None, PENDING),
])
def test_normalize_status(raw, outcome):
    assert normalize_status(raw) == outcome


def test_parse_reference():
    assert parse_reference("campaign_abc123_tickets_1,5,10") == \
        ("abc123", [1, 5, 10])
    for bad in ("", "campaign_abc", "order_1_tickets_2",
                "campaign_abc_tickets_", "campaign_abc_tickets_1,x"):
        with pytest.raises(ValidationError):
            parse_reference(bad)


def test_parse_numbers():
    assert parse_numbers("1, 2,3") == [1, 2, 3]
    assert parse_numbers(["4", 5]) == [4, 5]
    assert parse_numbers(None) == []
    with pytest.raises(ValidationError):
        parse_numbers("1,two")


# ---
# hosted checkout
# ---
def _checkout_event(etype="payment_intent.succeeded", **obj):
    body = {"id": "evt_1", "type": etype,
            "data": {"object": {"id": "pi_1", **obj}}}
    return json.dumps(body).encode()


def test_checkout_signature():
    adapter = CheckoutAdapter(secret="s3cret")
    payload = _checkout_event()
    event = adapter.verify_webhook(
        payload, {"x-checkout-signature": adapter.sign(payload)}
    )
    assert event["type"] == "payment_intent.succeeded"

    with pytest.raises(ValidationError, match="Invalid signature"):
        adapter.verify_webhook(payload, {"x-checkout-signature": "nope"})
    with pytest.raises(ValidationError, match="Invalid signature"):
        adapter.verify_webhook(payload, {})


def test_checkout_invalid_json():
    adapter = CheckoutAdapter(secret="s3cret")
    payload = b"{not json"
    with pytest.raises(ValidationError, match="Invalid JSON"):
        adapter.verify_webhook(
            payload, {"x-checkout-signature": adapter.sign(payload)}
        )


async def test_checkout_parse():
    adapter = CheckoutAdapter(secret="s3cret")
    md = {"campaign_id": "c1", "order_id": "o1", "ticket_numbers": "1,2"}

    [n] = await adapter.parse(json.loads(_checkout_event(metadata=md)))
    assert n.kind == K_SETTLEMENT
    assert n.outcome == APPROVED
    assert n.external_id == "pi_1"
    assert n.metadata == md
    assert n.dedup_key == "checkout:pi_1:approved"

    [n] = await adapter.parse(json.loads(_checkout_event(
        "payment_intent.payment_failed")))
    assert n.outcome == REJECTED

    # async payment method: session completes before the money arrives
    [n] = await adapter.parse(json.loads(_checkout_event(
        "checkout.session.completed", payment_status="unpaid")))
    assert n.outcome == PENDING

    [n] = await adapter.parse(json.loads(_checkout_event("customer.created")))
    assert n.kind == K_IGNORED


async def test_checkout_publication_fee():
    adapter = CheckoutAdapter(secret="s3cret")
    md = {"type": "publication_fee", "campaign_id": "c1"}
    [n] = await adapter.parse(json.loads(_checkout_event(
        "checkout.session.completed", payment_status="paid", metadata=md)))
    assert n.kind == K_PUBLICATION_FEE
    assert n.metadata["campaign_id"] == "c1"

    [n] = await adapter.parse(json.loads(_checkout_event(
        "checkout.session.completed", payment_status="unpaid", metadata=md)))
    assert n.kind == K_IGNORED


# ---
# PIX
# ---
async def test_pix_credited_transfer():
    adapter = PixAdapter(secret="")
    event = adapter.verify_webhook(json.dumps({
        "evento": "pix",
        "pix": [{"endToEndId": "E123", "txid": "ref_abc"},
                {"endToEndId": "E124", "txid": "ref_def"}],
    }).encode(), {})
    notices = await adapter.parse(event)
    assert [n.external_id for n in notices] == ["E123", "E124"]
    assert [n.reference for n in notices] == ["ref_abc", "ref_def"]
    assert {n.outcome for n in notices} == {APPROVED}


async def test_pix_status_event():
    adapter = PixAdapter(secret="")
    [n] = await adapter.parse({
        "event": "transaction.status_updated",
        "data": {"id": "tx_9", "status": "expired",
                 "external_reference": "campaign_c1_tickets_1"},
    })
    assert n.outcome == REJECTED
    assert n.reference == "campaign_c1_tickets_1"

    [n] = await adapter.parse({"event": "account.updated", "data": {}})
    assert n.kind == K_IGNORED


def test_pix_signature_when_configured():
    adapter = PixAdapter(secret="k")
    payload = b'{"event": "payment.created", "data": {}}'
    good = hmac.new(b"k", payload, hashlib.sha256).hexdigest()
    assert adapter.verify_webhook(payload, {"x-pix-signature": good})
    with pytest.raises(ValidationError):
        adapter.verify_webhook(payload, {"x-pix-signature": "00"})


# ---
# Mercado Pago
# ---
def _mp(handler) -> MercadoPagoAdapter:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MercadoPagoAdapter(api_url="https://mp.test",
                              access_token="TOKEN", http=http)


async def test_mercadopago_fetches_the_payment():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        return httpx.Response(200, json={
            "id": 555, "status": "approved",
            "external_reference": "campaign_c1_tickets_3,4",
        })

    adapter = _mp(handler)
    [n] = await adapter.parse({"type": "payment", "data": {"id": "555"}})
    assert seen == {"url": "https://mp.test/v1/payments/555",
                    "auth": "Bearer TOKEN"}
    assert n.external_id == "555"
    assert n.outcome == APPROVED
    assert n.reference == "campaign_c1_tickets_3,4"
    await adapter.http.aclose()


async def test_mercadopago_errors():
    adapter = _mp(lambda request: httpx.Response(404))
    with pytest.raises(ValidationError):
        await adapter.parse({"type": "payment", "data": {"id": "1"}})
    await adapter.http.aclose()

    adapter = _mp(lambda request: httpx.Response(503))
    with pytest.raises(ProviderError):
        await adapter.parse({"type": "payment", "data": {"id": "1"}})
    await adapter.http.aclose()

    [n] = await adapter.parse({"topic": "merchant_order"})
    assert n.kind == K_IGNORED
    with pytest.raises(ValidationError):
        await adapter.parse({"type": "payment", "data": {}})


# ---
# reference resolution
# ---
class _Refs:
    def __init__(self, stored=None):
        self.stored = stored or {}

    async def get_reference(self, ref_id):
        return self.stored.get(ref_id)


def _notice(**kw) -> ProviderNotice:
    return ProviderNotice(provider="checkout", kind=K_SETTLEMENT,
                          event_type="x", external_id="pay_1",
                          raw_status=kw.pop("raw_status", "paid"), **kw)


async def test_resolve_from_metadata():
    ev = await resolve_event(_notice(metadata={
        "campaign_id": "c1", "order_id": "o1", "ticket_numbers": "1,2",
    }), _Refs())
    assert (ev.campaign_id, ev.order_id, ev.ticket_numbers) == \
        ("c1", "o1", [1, 2])
    assert ev.outcome == APPROVED


async def test_resolve_from_stored_reference():
    refs = _Refs({"ref_abc": {"campaign_id": "c1", "order_id": "o1",
                              "ticket_numbers": [7]}})
    ev = await resolve_event(_notice(reference="ref_abc",
                                     raw_status="failed"), refs)
    assert (ev.campaign_id, ev.order_id, ev.ticket_numbers) == \
        ("c1", "o1", [7])
    assert ev.outcome == REJECTED

    with pytest.raises(ValidationError, match="unknown reference"):
        await resolve_event(_notice(reference="ref_zzz"), refs)


async def test_resolve_legacy_reference():
    ev = await resolve_event(
        _notice(reference="campaign_c1_tickets_4,5", raw_status="waiting"),
        _Refs(),
    )
    assert (ev.campaign_id, ev.order_id, ev.ticket_numbers) == \
        ("c1", None, [4, 5])
    assert ev.outcome == PENDING

    # no order to scope the write to
    for status in ("paid", "failed"):
        with pytest.raises(ValidationError, match="names no order"):
            await resolve_event(
                _notice(reference="campaign_c1_tickets_4,5",
                        raw_status=status),
                _Refs(),
            )

    with pytest.raises(ValidationError, match="No reference"):
        await resolve_event(_notice(), _Refs())
