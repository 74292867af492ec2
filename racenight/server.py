from __future__ import annotations
import sys

import httpx
import json
import logging
import os
from typing import Any, Dict, List, Optional

from .infra.log import configure_logging
from .infra.sql import make_async_engine
from .infra.timings import snapshot, timeit

from .errors import (
    InvalidMethod, ProviderError, ReconcileError, VerificationError,
)
from .helpers import ct_equal, to_dollars, to_iso
from .model.order import (
    Base, Donation, EventTicket, FulfillmentGap, Horse, Order, ProgramAd,
    RaffleTicket,
)
from .model import eventlog, inventory
from .model.eventlog import BACKEND as EVENTLOG_BACKEND
from .model.inventory import BACKEND as INVENTORY_BACKEND
from .model.inventory._postgres import GatedAsyncSession
from .model.cart import reconstruct
from .model.fulfillment import find_order_id, fulfill
from .payments import (
    CHECKOUT_COMPLETED, LineItem, MockPay, PaymentAdapter, StripePay,
)

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import redis.asyncio as redis

configure_logging()
log = logging.getLogger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    log.error("DATABASE_URL is not set")
    sys.exit(1)

PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "stripe").lower()
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

WEBHOOK_PATH = "/payments/webhook"


engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


def new_adapter() -> PaymentAdapter:
    if PAYMENT_PROVIDER == "mock":
        return MockPay()
    return StripePay(api_key=STRIPE_SECRET_KEY,
                     webhook_secret=STRIPE_WEBHOOK_SECRET)


adapter: PaymentAdapter = new_adapter()

app = FastAPI(
    title="Night at the Races",
    default_response_class=ORJSONResponse,
)
security = HTTPBasic()


def get_tb_client():
    if INVENTORY_BACKEND != "tb":
        raise RuntimeError("TigerBeetle backend not enabled")
    client = getattr(app.state, "tb_client", None)
    if client is None:
        raise RuntimeError("TigerBeetle client not initialized")
    return client


async def event_log():
    if EVENTLOG_BACKEND == "redis":
        yield eventlog.new_store(r=app.state.redis)
    else:
        async with SessionAsync() as session:
            yield eventlog.new_store(db=session, gated=gated)


async def inventory_client():
    if INVENTORY_BACKEND == "tb":
        yield get_tb_client()
    else:
        async with SessionAsync() as session:
            yield GatedAsyncSession(session=session, gated=gated)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    log.info("racenight starting", extra={"ctx": {
        "payment_provider": PAYMENT_PROVIDER,
        "inventory_backend": INVENTORY_BACKEND,
        "eventlog_backend": EVENTLOG_BACKEND,
    }})


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if INVENTORY_BACKEND != "tb":
            await inventory.create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(timeout=5.0)


@app.on_event("startup")
async def _redis_start():
    if EVENTLOG_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _inventory_start():
    # Only spin up TigerBeetle if the inventory backend is TB
    if INVENTORY_BACKEND == "tb":
        import tigerbeetle as tb
        addr = os.getenv("TB_ADDRESS", "3000")
        cluster_id = int(os.getenv("TB_CLUSTER_ID", "0"))
        client = tb.ClientAsync(cluster_id=cluster_id, replica_addresses=addr)
        app.state.tb_client = client
        await inventory.create_schema(client)


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None


@app.on_event("shutdown")
async def _tb_stop():
    client = getattr(app.state, "tb_client", None)
    if client is not None:
        await client.close()
        app.state.tb_client = None


@app.exception_handler(VerificationError)
async def _verification_failed(request: Request, exc: VerificationError):
    log.warning("webhook rejected", extra={"ctx": {
        "kind": type(exc).__name__, "error": exc.message,
    }})
    return ORJSONResponse({"error": exc.message},
                          status_code=exc.status_code)


# ----------------------------
# Helpers
# ----------------------------
def require_admin(
    credentials: HTTPBasicCredentials = Depends(security),
) -> str:
    ok_user = ct_equal(credentials.username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(credentials.password, ADMIN_PASSWORD)
    if not (ok_user and ok_pass):
        raise HTTPException(status_code=401, detail="Invalid credentials.",
                            headers={"WWW-Authenticate": "Basic"})
    return credentials.username


def order_header(o: Order) -> Dict[str, Any]:
    return {
        "order_id": o.id,
        "session_id": o.stripe_session_id,
        "payment_intent_id": o.stripe_payment_intent_id,
        "purchaser": {
            "name": o.purchaser_name,
            "first_name": o.purchaser_first_name,
            "last_name": o.purchaser_last_name,
            "email": o.purchaser_email,
            "phone": o.purchaser_phone,
            "dancer_family": o.dancer_family,
        },
        "subtotal": to_dollars(o.subtotal),
        "processing_fee": to_dollars(o.processing_fee),
        "stripe_fee_actual": to_dollars(o.stripe_fee_actual),
        "total_paid": to_dollars(o.total_paid),
        "covered_fees": bool(o.covered_fees),
        "currency": o.currency,
        "payment_status": o.payment_status,
        "created_at": to_iso(o.created_at),
    }


async def load_order(db: AsyncSession, o: Order) -> Dict[str, Any]:
    async def rows(model):
        return (await db.execute(
            select(model).where(model.order_id == o.id).order_by(model.id)
        )).scalars().all()

    out = order_header(o)
    async with timeit("db.load_order"):
        async with gated():
            async with db.begin():
                tickets = await rows(EventTicket)
                horses = await rows(Horse)
                ads = await rows(ProgramAd)
                raffle = await rows(RaffleTicket)
                donations = await rows(Donation)

    out["event_tickets"] = [{
        "quantity": t.quantity,
        "table_name": t.table_name,
        "price_per_ticket": to_dollars(t.price_per_ticket),
        "total_price": to_dollars(t.total_price),
    } for t in tickets]
    out["horses"] = [{
        "horse_name": h.horse_name,
        "owner_name": h.owner_name,
        "price": to_dollars(h.price),
    } for h in horses]
    out["program_ads"] = [{
        "business_name": a.business_name,
        "ad_size": a.ad_size,
        "design_option": a.design_option,
        "price": to_dollars(a.price),
    } for a in ads]
    out["raffle_tickets"] = [{
        "ticket_number": r.ticket_number,
        "owner_name": r.owner_name,
        "owner_contact": r.owner_contact,
        "ticket_type": r.ticket_type,
        "book_id": r.book_id,
    } for r in raffle]
    out["donations"] = [{
        "donation_type": d.donation_type,
        "amount": to_dollars(d.amount),
        "purpose": d.purpose,
    } for d in donations]
    return out


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.api_route(WEBHOOK_PATH, methods=["GET", "PUT", "PATCH", "DELETE"],
               include_in_schema=False)
async def payments_webhook_wrong_method(request: Request):
    raise InvalidMethod("Method not allowed")


@app.post(WEBHOOK_PATH)
async def payments_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    events: eventlog.EventLog = Depends(event_log),
    inv=Depends(inventory_client),
):
    # raw bytes exactly as transmitted; nothing may decode them first
    payload = await request.body()
    headers = dict(request.headers)

    async with timeit("webhook.verify"):
        event = adapter.verify_webhook(payload, headers)
    kind = adapter.event_kind(event)
    psid, evt_id = adapter.event_ids(event)

    if kind != CHECKOUT_COMPLETED:
        log.info("event ignored", extra={"ctx": {"type": kind,
                                                 "event_id": evt_id}})
        return {"received": True, "ignored": kind}

    # from here on every outcome is acknowledged, or the provider
    # redelivers forever; failures go to the log for manual recovery
    try:
        return await reconcile(db, events, inv, psid, evt_id, kind)
    except ReconcileError as e:
        log.error("reconciliation failed", exc_info=True, extra={
            "ctx": {"event_id": evt_id, **e.context()},
        })
    except Exception:
        log.exception("reconciliation failed", extra={
            "ctx": {"event_id": evt_id, "session_id": psid},
        })
    return {"received": True, "error": "processing failed"}


async def reconcile(db: AsyncSession, events, inv, psid: str,
                    evt_id: Optional[str], kind: str) -> Dict[str, Any]:
    if not psid:
        raise ProviderError("event carries no checkout session id")

    async with timeit("eventlog.seen"):
        if await events.seen(evt_id):
            return {"received": True, "idempotent": True}

    # re-delivery of an already fulfilled session: nothing to fetch
    async with timeit("db.find_order"):
        existing = await find_order_id(db, gated, psid)
    if existing:
        await events.mark_processed(evt_id, kind)
        return {"received": True, "idempotent": True, "orderId": existing}

    async with timeit("provider.retrieve_session"):
        session = await adapter.retrieve_session(psid)
    cart = reconstruct(session)

    async def on_sold(category: str, qty: int) -> None:
        async with timeit("inventory.increment"):
            await inventory.increment(inv, category, qty)

    result = await fulfill(db, gated, session, cart, on_sold=on_sold)

    async with timeit("eventlog.mark"):
        await events.mark_processed(evt_id, kind)
    return {
        "received": True,
        "orderId": result.order_id,
        "idempotent": result.duplicate,
        "gaps": len(result.gaps),
    }


# ----------------------------
# API: Orders
# ----------------------------
@app.get("/api/orders/by-session/{session_id}")
async def get_order_by_session(session_id: str,
                               db: AsyncSession = Depends(get_db)):
    async with gated():
        async with db.begin():
            o = (await db.execute(
                select(Order).where(Order.stripe_session_id == session_id)
            )).scalar_one_or_none()
    if o is None:
        # webhook still processing -> let client keep polling
        raise HTTPException(404, detail="order not found")
    return await load_order(db, o)


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, db: AsyncSession = Depends(get_db)):
    async with gated():
        async with db.begin():
            o = await db.get(Order, order_id)
    if o is None:
        raise HTTPException(404, detail="order not found")
    return await load_order(db, o)


@app.get("/api/inventory")
async def get_inventory(inv=Depends(inventory_client)):
    return await inventory.compute_inventory(inv)


# ----------------------------
# Admin JSON feeds
# ----------------------------
@app.get("/api/admin/orders")
async def api_admin_orders(limit: int = 200,
                           db: AsyncSession = Depends(get_db),
                           _: str = Depends(require_admin)):
    limit = max(1, min(limit, 500))
    async with gated():
        async with db.begin():
            orders = (await db.execute(
                select(Order).order_by(Order.created_at.desc()).limit(limit)
            )).scalars().all()
    return {"items": [order_header(o) for o in orders], "limit": limit}


@app.get("/api/admin/gaps")
async def api_admin_gaps(limit: int = 200,
                         db: AsyncSession = Depends(get_db),
                         _: str = Depends(require_admin)):
    limit = max(1, min(limit, 500))
    async with gated():
        async with db.begin():
            gaps = (await db.execute(
                select(FulfillmentGap)
                .order_by(FulfillmentGap.created_at.desc())
                .limit(limit)
            )).scalars().all()
    items: List[Dict[str, Any]] = [{
        "order_id": g.order_id,
        "session_id": g.stripe_session_id,
        "category": g.category,
        "payload": json.loads(g.payload or "{}"),
        "error": g.error,
        "created_at": to_iso(g.created_at),
    } for g in gaps]
    return {"items": items, "limit": limit}


@app.get("/api/admin/timings")
async def api_admin_timings(_: str = Depends(require_admin)):
    return {"items": snapshot()}


# ----------------------------
# MockPay (local development)
# ----------------------------
def _mockpay() -> MockPay:
    if not isinstance(adapter, MockPay):
        raise HTTPException(404, detail="mock payments disabled")
    return adapter


@app.post("/mockpay/sessions")
async def mockpay_create_session(payload: dict):
    mock = _mockpay()
    raw_items = payload.get("line_items") or []
    if not raw_items:
        raise HTTPException(400, detail="Cart is empty")
    try:
        items = [LineItem(
            description=str(li.get("description", "")),
            quantity=int(li.get("quantity", 1)),
            amount_total=int(li.get("amount_total", 0)),
            name=str(li.get("name", "")),
            detail=str(li.get("detail", "")),
            category=li.get("category"),
        ) for li in raw_items]
    except (TypeError, ValueError, AttributeError):
        raise HTTPException(400, detail="invalid line items")

    # the provider caps metadata values
    metadata = {
        str(k): str(v)[:500] for k, v in (payload.get("metadata") or {}).items()
    }
    session = mock.register_session(
        items,
        metadata=metadata,
        customer_email=(payload.get("customer_email") or "").strip(),
        amount_subtotal=payload.get("amount_subtotal"),
        amount_total=payload.get("amount_total"),
        provider_fee=int(payload.get("provider_fee") or 0),
    )
    return {
        "session_id": session.id,
        "amount_total": session.amount_total,
        "amount_subtotal": session.amount_subtotal,
    }


@app.post("/mockpay/{psid}/emit")
async def mockpay_emit(psid: str):
    mock = _mockpay()
    try:
        await mock.retrieve_session(psid)
    except ProviderError:
        raise HTTPException(404, "payment session not found")

    event = mock.completed_event(psid)
    body = json.dumps(event).encode()

    client_http: httpx.AsyncClient = app.state.http
    try:
        r = await client_http.post(
            MOCK_WEBHOOK_URL,
            content=body,
            headers={
                "x-mockpay-signature": mock.sign(body),
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        # caller may emit again; the webhook is idempotent
        log.warning("mock webhook delivery failed",
                    extra={"ctx": {"session_id": psid, "error": repr(e)}})
        return {"delivered": False, "event_id": event["id"]}
    return {"delivered": r.is_success, "status": r.status_code,
            "event_id": event["id"], "response": r.json()}
