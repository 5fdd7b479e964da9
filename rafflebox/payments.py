from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import base64
import hashlib
import hmac
import json
import logging
import re

import httpx

from . import config
from .errors import ProviderError, ValidationError
from .model.settlement import APPROVED, PENDING, REJECTED, SettlementEvent

log = logging.getLogger(__name__)

APPROVED_STATUSES = {"accredited", "approved", "paid", "completed",
                     "succeeded"}
REJECTED_STATUSES = {"rejected", "cancelled", "canceled", "expired",
                     "failed"}

# notice kinds
K_SETTLEMENT = "settlement"
K_IGNORED = "ignored"
K_PUBLICATION_FEE = "publication_fee"

_PACKED_REF = re.compile(r"^campaign_([^_]+)_tickets_(.+)$")


def normalize_status(status: Optional[str]) -> str:
    s = (status or "").strip().lower()
    if s in APPROVED_STATUSES:
        return APPROVED
    if s in REJECTED_STATUSES:
        return REJECTED
    return PENDING


def parse_numbers(raw: Any) -> List[int]:
    """Accepts [1, 2], ["1", "2"] or "1,2" (provider metadata is stringly)."""
    if raw is None or raw == "":
        return []
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    try:
        return [int(str(n).strip()) for n in items]
    except ValueError:
        raise ValidationError(f"invalid ticket numbers: {raw!r}")


def parse_reference(reference: str) -> Tuple[str, List[int]]:
    """`campaign_{id}_tickets_{n1,n2,...}` -> (campaign_id, numbers)."""
    m = _PACKED_REF.match(reference or "")
    if not m:
        raise ValidationError(f"invalid reference format: {reference!r}")
    numbers = parse_numbers(m.group(2))
    if not numbers:
        raise ValidationError(f"reference carries no tickets: {reference!r}")
    return m.group(1), numbers


def _hmac_sha256(secret: str, payload: bytes) -> bytes:
    return hmac.new(secret.encode(), payload, hashlib.sha256).digest()


def _loads(payload: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Invalid JSON")
    if not isinstance(event, dict):
        raise ValidationError("Invalid JSON")
    return event


@dataclass
class ProviderNotice:
    provider: str
    kind: str
    event_type: str
    external_id: str = ""
    raw_status: str = ""
    reference: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def outcome(self) -> str:
        return normalize_status(self.raw_status)

    @property
    def dedup_key(self) -> str:
        return f"{self.provider}:{self.external_id}:{self.outcome}"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    name: str = ""

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # one notification may carry several payments
    @abstractmethod
    async def parse(self, event: dict) -> List[ProviderNotice]: ...

    def _ignored(self, event_type: str) -> ProviderNotice:
        return ProviderNotice(provider=self.name, kind=K_IGNORED,
                              event_type=event_type or "")


# ----------------------------
# Hosted checkout (signed, metadata carries the reference)
# ----------------------------
class CheckoutAdapter(PaymentAdapter):
    name = "checkout"
    SIGNATURE_HEADER = "x-checkout-signature"

    TYPE_STATUS = {
        "payment_intent.succeeded": "succeeded",
        "payment_intent.payment_failed": "failed",
        "payment_intent.canceled": "canceled",
        "payment_intent.processing": "processing",
        "checkout.session.expired": "expired",
    }

    def __init__(self, secret: str = config.CHECKOUT_WEBHOOK_SECRET):
        self.secret = secret

    def sign(self, payload: bytes) -> str:
        return base64.b64encode(_hmac_sha256(self.secret, payload)).decode()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(self.SIGNATURE_HEADER)
        if not sig or not hmac.compare_digest(self.sign(payload), sig):
            raise ValidationError("Invalid signature")
        return _loads(payload)

    async def parse(self, event: dict) -> List[ProviderNotice]:
        etype = str(event.get("type", ""))
        obj = (event.get("data") or {}).get("object") or {}
        if etype in self.TYPE_STATUS:
            status = self.TYPE_STATUS[etype]
        elif etype == "checkout.session.completed":
            # async payment methods complete the session before paying
            status = obj.get("payment_status") or "pending"
        else:
            return [self._ignored(etype)]

        metadata = dict(obj.get("metadata") or {})
        kind = K_SETTLEMENT
        if metadata.get("type") == "publication_fee":
            if normalize_status(status) != APPROVED:
                return [self._ignored(etype)]
            kind = K_PUBLICATION_FEE
        return [ProviderNotice(
            provider=self.name,
            kind=kind,
            event_type=etype,
            external_id=str(obj.get("id") or event.get("id") or ""),
            raw_status=status,
            reference=(metadata.get("reference")
                       or obj.get("client_reference_id")),
            metadata=metadata,
        )]


# ----------------------------
# Bank transfer (PIX) notifications
# ----------------------------
class PixAdapter(PaymentAdapter):
    name = "pix"
    SIGNATURE_HEADER = "x-pix-signature"
    STATUS_EVENTS = {
        "transaction.status_updated", "transaction.completed",
        "payment.status_changed", "payment.created",
    }

    def __init__(self, secret: str = config.PIX_WEBHOOK_SECRET):
        self.secret = secret

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        if self.secret:
            sig = headers.get(self.SIGNATURE_HEADER) or ""
            expected = _hmac_sha256(self.secret, payload).hex()
            if not hmac.compare_digest(expected, sig.lower()):
                raise ValidationError("Invalid signature")
        return _loads(payload)

    async def parse(self, event: dict) -> List[ProviderNotice]:
        if event.get("evento") == "pix" or (
                "pix" in event and "event" not in event):
            # a credited transfer; the notification itself is the success
            entries = event.get("pix") or []
            if isinstance(entries, dict):
                entries = [entries]
            return [ProviderNotice(
                provider=self.name,
                kind=K_SETTLEMENT,
                event_type="pix",
                external_id=str(p.get("endToEndId") or p.get("txid") or ""),
                raw_status="paid",
                reference=p.get("txid"),
            ) for p in entries]

        etype = str(event.get("event", ""))
        if etype not in self.STATUS_EVENTS:
            return [self._ignored(etype)]
        data = event.get("data") or {}
        return [ProviderNotice(
            provider=self.name,
            kind=K_SETTLEMENT,
            event_type=etype,
            external_id=str(data.get("id") or ""),
            raw_status=str(data.get("status") or ""),
            reference=(data.get("reference_id")
                       or data.get("external_reference")),
            metadata=dict(data.get("metadata") or {}),
        )]


# ----------------------------
# Mercado Pago: the notification only names the payment, we fetch it
# ----------------------------
class MercadoPagoAdapter(PaymentAdapter):
    name = "mercadopago"

    def __init__(self, api_url: str = config.MP_API_URL,
                 access_token: str = config.MP_ACCESS_TOKEN,
                 http: Optional[httpx.AsyncClient] = None):
        self.api_url = api_url.rstrip("/")
        self.access_token = access_token
        self.http = http

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        return _loads(payload)

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        url = f"{self.api_url}/v1/payments/{payment_id}"
        headers = {"authorization": f"Bearer {self.access_token}"}
        try:
            if self.http is not None:
                r = await self.http.get(url, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=5.0) as client:
                    r = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderError(f"mercadopago unreachable: {e}")
        if r.status_code == 404:
            raise ValidationError(f"unknown payment {payment_id}")
        if r.status_code >= 400:
            raise ProviderError(
                f"mercadopago answered {r.status_code} for {payment_id}"
            )
        return r.json()

    async def parse(self, event: dict) -> List[ProviderNotice]:
        etype = str(event.get("type") or event.get("topic") or "")
        if etype != "payment":
            return [self._ignored(etype)]
        payment_id = str((event.get("data") or {}).get("id") or "")
        if not payment_id:
            raise ValidationError("missing payment id")
        payment = await self.fetch_payment(payment_id)
        return [ProviderNotice(
            provider=self.name,
            kind=K_SETTLEMENT,
            event_type=etype,
            external_id=str(payment.get("id") or payment_id),
            raw_status=str(payment.get("status") or ""),
            reference=payment.get("external_reference"),
            metadata=dict(payment.get("metadata") or {}),
        )]


def default_adapters(http: Optional[httpx.AsyncClient] = None
                     ) -> Dict[str, PaymentAdapter]:
    adapters = [CheckoutAdapter(), PixAdapter(), MercadoPagoAdapter(http=http)]
    return {a.name: a for a in adapters}


# ----------------------------
# Reference resolution
# ----------------------------
async def resolve_event(notice: ProviderNotice, refs) -> SettlementEvent:
    """
    Recover (campaign, order, tickets) for a notice: structured metadata
    first, then a stored reference id, then the legacy packed string.

    A packed string carries no order id, so it only resolves pending
    notices; approved or rejected ones raise ValidationError.
    """
    md = notice.metadata
    campaign_id = md.get("campaign_id")
    order_id = md.get("order_id")
    numbers = parse_numbers(md.get("ticket_numbers"))
    ref = notice.reference or md.get("reference")

    if not (campaign_id and order_id) and ref and ref.startswith("ref_"):
        stored = await refs.get_reference(ref)
        if stored is None:
            raise ValidationError(f"unknown reference: {ref}")
        campaign_id = stored["campaign_id"]
        order_id = stored["order_id"]
        numbers = [int(n) for n in stored["ticket_numbers"]]
    elif not (campaign_id and order_id):
        if not ref:
            raise ValidationError("No reference found")
        campaign_id, numbers = parse_reference(ref)
        order_id = None
        if notice.outcome != PENDING:
            # the numbers may belong to a newer order by now
            log.warning("refusing %s payment %s (%s): legacy reference %s "
                        "names no order", notice.provider,
                        notice.external_id, notice.outcome, ref)
            raise ValidationError(
                f"reference names no order, cannot settle: {ref}"
            )

    return SettlementEvent(
        campaign_id=str(campaign_id),
        ticket_numbers=numbers,
        outcome=notice.outcome,
        external_id=notice.external_id,
        provider=notice.provider,
        order_id=order_id,
    )
