from __future__ import annotations
import sys

import httpx
import logging
from typing import Any, Dict, List, Optional

from . import config
from .config import (
    ADMIN_PASSWORD, ADMIN_USERNAME, CRON_SECRET, DATABASE_URL,
    SESSION_SECRET,
)
from .errors import NotFoundError, RaffleError, ValidationError
from .helpers import ct_equal, now_ts, to_iso
from .infra.files import ProofFileStore
from .infra.sql import GatedAsyncSession, make_async_engine
from .infra import timings
from .infra.timings import timeit
from .model import inventory, oplog, proofs, settlement, sweeper
from .model.schema import create_schema
from .model.reservations import (
    CustomerInfo, Reservation, reserve, reserve_quantity
)
from .model.checkoutref import (
    CheckoutRefStore, new_reference_id, new_store, BACKEND as REFS_BACKEND
)
from .payments import (
    K_IGNORED, K_PUBLICATION_FEE, PaymentAdapter, default_adapters,
    resolve_event,
)

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request
from fastapi import UploadFile
from fastapi.responses import ORJSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

import redis.asyncio as redis

log = logging.getLogger(__name__)

if DATABASE_URL is None:
    print("NEED DATABASE_URL! e.g. sqlite:///./rafflebox.db")
    sys.exit(1)

config.configure_logging()

engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)

# provider name -> adapter; registering one here is all a new provider needs
ADAPTERS: Dict[str, PaymentAdapter] = default_adapters()

proof_files = ProofFileStore(config.PROOF_UPLOAD_DIR)

app = FastAPI(
    title="rafflebox",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


async def get_db() -> GatedAsyncSession:
    async with SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=gated)


async def checkout_refs() -> CheckoutRefStore:
    if REFS_BACKEND == "redis":
        yield new_store(r=app.state.redis)
    else:
        async with SessionAsync() as session:
            yield new_store(db=session, gated=gated)


# ---
# error mapping
# ---
@app.exception_handler(RaffleError)
async def _raffle_error(request: Request, exc: RaffleError):
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path,
                  exc.detail)
    return ORJSONResponse({"detail": exc.detail},
                          status_code=exc.status_code)


@app.exception_handler(SQLAlchemyError)
async def _storage_error(request: Request, exc: SQLAlchemyError):
    # providers retry on 5xx; reviewers retry by hand
    log.exception("storage failure on %s %s", request.method,
                  request.url.path)
    return ORJSONResponse({"detail": "storage error"}, status_code=500)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    log.info("rafflebox starting up (checkout refs backend: %s)",
             "Redis" if REFS_BACKEND == "redis" else "SQL")


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await create_schema(conn)
        if REFS_BACKEND != "redis":
            from .model.checkoutref._postgres import create_schema as refs_ddl
            await refs_ddl(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=64),
    )
    for adapter in ADAPTERS.values():
        if hasattr(adapter, "http") and adapter.http is None:
            adapter.http = app.state.http


@app.on_event("startup")
async def _redis_start():
    if REFS_BACKEND == "redis":
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            max_connections=config.REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        for adapter in ADAPTERS.values():
            if getattr(adapter, "http", None) is http:
                adapter.http = None
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="login required")


def _int_or_none(payload: Dict[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")


def _campaign_out(c: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": c["id"],
        "title": c["title"],
        "organizer_id": c["organizer_id"],
        "status": c["status"],
        "total_tickets": int(c["total_tickets"]),
        "min_tickets_per_purchase": int(c["min_tickets_per_purchase"]),
        "max_tickets_per_purchase": int(c["max_tickets_per_purchase"]),
        "reservation_timeout_minutes": int(c["reservation_timeout_minutes"]),
        "ticket_price": int(c["ticket_price"]),
        "is_paid": bool(c["is_paid"]),
        "expires_at": to_iso(c["expires_at"]),
        "created_at": to_iso(c["created_at"]),
    }


def _reservation_out(r: Reservation, ref_id: str) -> Dict[str, Any]:
    return {
        "order_id": r.order_id,
        "campaign_id": r.campaign_id,
        "ticket_numbers": r.ticket_numbers,
        "reserved_at": to_iso(r.reserved_at),
        "expires_at": to_iso(r.expires_at),
        "reference": ref_id,
        # what providers echo back (Mercado Pago external_reference)
        "external_reference": ref_id,
    }


# ----------------------------
# Campaigns & reservations
# ----------------------------
@app.post("/api/campaigns", status_code=201)
async def create_campaign(
    payload: dict,
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
):
    require_admin(request)
    title = (payload.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required")
    total = _int_or_none(payload, "total_tickets")
    if total is None:
        raise ValidationError("total_tickets is required")
    status = payload.get("status") or inventory.C_DRAFT
    if status not in (inventory.C_DRAFT, inventory.C_ACTIVE):
        raise ValidationError("new campaigns are 'draft' or 'active'")

    kw: Dict[str, Any] = {}
    for key in ("min_tickets_per_purchase", "max_tickets_per_purchase",
                "reservation_timeout_minutes", "ticket_price"):
        value = _int_or_none(payload, key)
        if value is not None:
            kw[key] = value
    expires_at = None
    if status == inventory.C_DRAFT:
        expires_at = now_ts() + config.DRAFT_EXPIRY_SECONDS

    async with timeit("inventory.create_campaign"):
        campaign = await inventory.create_campaign(
            db,
            title=title,
            total_tickets=total,
            organizer_id=(payload.get("organizer_id")
                          or request.session.get("admin_user")),
            status=status,
            expires_at=expires_at,
            **kw,
        )
    return _campaign_out(campaign)


@app.get("/api/campaigns/{campaign_id}")
async def get_campaign(campaign_id: str,
                       db: GatedAsyncSession = Depends(get_db)):
    campaign = await inventory.get_campaign(db, campaign_id)
    if campaign is None:
        raise NotFoundError(f"campaign {campaign_id} not found")
    return _campaign_out(campaign)


@app.get("/api/campaigns/{campaign_id}/tickets")
async def get_tickets(campaign_id: str, limit: int = 50,
                      db: GatedAsyncSession = Depends(get_db)):
    if await inventory.get_campaign(db, campaign_id) is None:
        raise NotFoundError(f"campaign {campaign_id} not found")
    counts = await inventory.ticket_counts(db, campaign_id)
    numbers = await inventory.available_numbers(
        db, campaign_id, limit=max(1, min(limit, 1000))
    )
    return {"campaign_id": campaign_id, "counts": counts,
            "available": numbers}


@app.post("/api/campaigns/{campaign_id}/reservations", status_code=201)
async def create_reservation(
    campaign_id: str,
    payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    refs: CheckoutRefStore = Depends(checkout_refs),
):
    raw_customer = payload.get("customer") or {}
    customer = CustomerInfo(
        name=raw_customer.get("name"),
        email=raw_customer.get("email"),
        phone=raw_customer.get("phone"),
    )
    timeout = _int_or_none(payload, "timeout_minutes")
    numbers = payload.get("ticket_numbers")
    quantity = _int_or_none(payload, "quantity")

    async with timeit("reservations.reserve"):
        if numbers:
            if not isinstance(numbers, list):
                raise ValidationError("ticket_numbers must be a list")
            reservation = await reserve(db, campaign_id, numbers, customer,
                                        timeout)
        elif quantity is not None:
            reservation = await reserve_quantity(db, campaign_id, quantity,
                                                 customer, timeout)
        else:
            raise ValidationError("ticket_numbers or quantity is required")

    ref_id = new_reference_id()
    async with timeit("checkoutref.save"):
        await refs.save_reference(ref_id, {
            "campaign_id": reservation.campaign_id,
            "order_id": reservation.order_id,
            "ticket_numbers": reservation.ticket_numbers,
            "created_at": reservation.reserved_at,
        })
    return _reservation_out(reservation, ref_id)


# ----------------------------
# Webhook endpoints (one per provider)
# ----------------------------
@app.post("/payments/webhook/{provider}")
async def payments_webhook(
    provider: str,
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    refs: CheckoutRefStore = Depends(checkout_refs),
):
    adapter = ADAPTERS.get(provider)
    if adapter is None:
        raise NotFoundError(f"unknown provider {provider}")

    payload = await request.body()
    headers = dict(request.headers)
    event = adapter.verify_webhook(payload, headers)
    async with timeit(f"webhook.{provider}.parse"):
        notices = await adapter.parse(event)

    results: List[Dict[str, Any]] = []
    for notice in notices:
        if notice.kind == K_IGNORED:
            log.info("%s: ignoring event type %r", provider,
                     notice.event_type)
            results.append({"ignored": True,
                            "event_type": notice.event_type})
            continue

        if notice.kind == K_PUBLICATION_FEE:
            campaign_id = notice.metadata.get("campaign_id")
            if not campaign_id:
                raise ValidationError("No campaign_id in metadata")
            activated = await inventory.activate_campaign(db, campaign_id)
            await oplog.append(
                db, "publication_fee_paid",
                "success" if activated else "warning",
                f"Publication fee paid via {provider}"
                + ("" if activated else " (campaign was not a draft)"),
                campaign_id=campaign_id,
                details={"external_id": notice.external_id},
            )
            results.append({"campaign_id": campaign_id,
                            "activated": activated})
            continue

        sevent = await resolve_event(notice, refs)
        async with timeit("settlement.apply"):
            result = await settlement.apply(db, sevent)
        first_delivery = await refs.mark_event_seen(notice.dedup_key)
        out = result.as_dict()
        out["duplicate"] = not first_delivery
        results.append(out)

    return {"ok": True, "results": results}


# ----------------------------
# Manual proof upload
# ----------------------------
@app.post("/api/proofs", status_code=201)
async def upload_proof(
    file: UploadFile = File(...),
    order_id: str = Form(...),
    campaign_id: str = Form(...),
    organizer_id: str = Form(...),
    customer_name: Optional[str] = Form(None),
    customer_phone: Optional[str] = Form(None),
    db: GatedAsyncSession = Depends(get_db),
):
    content = await file.read()
    async with timeit("proofs.upload"):
        proof = await proofs.upload_proof(
            db, proof_files,
            order_id=order_id,
            campaign_id=campaign_id,
            organizer_id=organizer_id,
            content=content,
            content_type=file.content_type or "",
            customer_name=customer_name,
            customer_phone=customer_phone,
        )
    return {
        "id": proof["id"],
        "order_id": proof["order_id"],
        "campaign_id": proof["campaign_id"],
        "status": proof["status"],
        "created_at": to_iso(proof["created_at"]),
    }


# ----------------------------
# Organizer surface
# ----------------------------
@app.post("/api/admin/login")
async def admin_login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if not (ok_user and ok_pass):
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    request.session["admin_user"] = username.strip()
    return {"ok": True}


@app.get("/api/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"ok": True}


@app.get("/api/admin/campaigns/{campaign_id}/orders")
async def admin_orders(campaign_id: str, request: Request,
                       db: GatedAsyncSession = Depends(get_db)):
    require_admin(request)
    items = await proofs.list_orders(db, campaign_id)
    return {"items": items}


@app.get("/api/admin/campaigns/{campaign_id}/orders/{order_id}")
async def admin_order_detail(campaign_id: str, order_id: str,
                             request: Request,
                             db: GatedAsyncSession = Depends(get_db),
                             refs: CheckoutRefStore = Depends(checkout_refs)):
    require_admin(request)
    order = await proofs.get_order(db, campaign_id, order_id)
    order["references"] = await refs.list_for_order(campaign_id, order_id)
    return order


@app.patch("/api/admin/campaigns/{campaign_id}/orders/{order_id}")
async def admin_update_order(campaign_id: str, order_id: str, payload: dict,
                             request: Request,
                             db: GatedAsyncSession = Depends(get_db)):
    require_admin(request)
    contact = CustomerInfo(
        name=payload.get("name"),
        email=payload.get("email"),
        phone=payload.get("phone"),
    ).normalized()
    updated = await inventory.update_order_contact(
        db, campaign_id, order_id,
        name=contact["name"], email=contact["email"], phone=contact["phone"],
    )
    if not updated:
        raise NotFoundError(f"order {order_id} not found")
    return await proofs.get_order(db, campaign_id, order_id)


@app.post("/api/admin/campaigns/{campaign_id}/orders/{order_id}/release")
async def admin_release_order(campaign_id: str, order_id: str,
                              request: Request,
                              db: GatedAsyncSession = Depends(get_db)):
    require_admin(request)
    result = await proofs.release_order(db, campaign_id, order_id)
    return result.as_dict()


@app.post("/api/admin/proofs/{proof_id}/approve")
async def admin_approve(proof_id: str, payload: dict, request: Request,
                        db: GatedAsyncSession = Depends(get_db)):
    require_admin(request)
    order_id = payload.get("order_id")
    campaign_id = payload.get("campaign_id")
    if not order_id or not campaign_id:
        raise ValidationError("order_id and campaign_id are required")
    async with timeit("proofs.approve"):
        result = await proofs.approve(db, proof_id, order_id, campaign_id)
    return {**result.as_dict(), "proof_id": proof_id,
            "proof_status": proofs.P_APPROVED}


@app.post("/api/admin/proofs/{proof_id}/reject")
async def admin_reject(proof_id: str, request: Request,
                       db: GatedAsyncSession = Depends(get_db)):
    require_admin(request)
    return await proofs.reject(db, proof_id)


@app.get("/api/admin/logs")
async def admin_logs(request: Request, limit: int = 100,
                     campaign_id: Optional[str] = None,
                     db: GatedAsyncSession = Depends(get_db)):
    require_admin(request)
    return {"items": await oplog.recent(db, limit=limit,
                                        campaign_id=campaign_id)}


@app.get("/api/admin/timings")
async def admin_timings(request: Request):
    require_admin(request)
    return timings.snapshot()


# ----------------------------
# Scheduled sweep
# ----------------------------
@app.post("/internal/sweep")
async def run_sweep(request: Request,
                    db: GatedAsyncSession = Depends(get_db),
                    refs: CheckoutRefStore = Depends(checkout_refs)):
    secret = request.headers.get("x-cron-secret", "")
    if not ((CRON_SECRET and ct_equal(secret, CRON_SECRET))
            or is_admin(request)):
        raise HTTPException(status_code=401, detail="not allowed")
    async with timeit("sweeper.run"):
        return await sweeper.run_sweep(db, refs=refs)
