from __future__ import annotations

import os
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import HTMLResponse, ORJSONResponse
from pydantic import BaseModel

from . import config, fulfillment, orchestrator, scheduler
from .errors import InvariantViolation, ProviderError, WebhookError
from .gateway import PaymentAdapter, StripeAdapter
from .helpers import check_bearer, is_valid_email, normalize_email, to_iso
from .infra.sql import create_schema, make_async_engine
from .infra.timings import install_shutdown_log, snapshot, timeit
from .logs import bind_context, clear_context, configure_logging, get_logger
from .model import idempotency
from .model.store import OrderStore
from .providers.email import NotificationSender, ResendSender
from .providers.printify import PrintifyClient, PrintProvider
from .providers.storage import ObjectStore, PublicBucketStore
from .sequences import CANVAS_UPSELL, FOLLOWUP, LEAD_FOLLOWUP

configure_logging()
log = get_logger(__name__)

engine, SessionAsync, gated = make_async_engine(config.DATABASE_URL)

app = FastAPI(
    title="canvasworks",
    default_response_class=ORJSONResponse,
)

install_shutdown_log(app)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _db_init():
    await create_schema(engine)
    log.info("canvasworks_started", idempotency_backend=idempotency.BACKEND)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=config.HTTP_TIMEOUT,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=16
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if idempotency.BACKEND == "redis":
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


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
        await r.aclose()
        app.state.redis = None


# ----------------------------
# Dependencies
# ----------------------------
def order_store() -> OrderStore:
    return OrderStore(sessions=SessionAsync, gated=gated)


def effect_records():
    return idempotency.new_store(
        sessions=SessionAsync, gated=gated,
        r=getattr(app.state, "redis", None),
    )


def payment_adapter() -> PaymentAdapter:
    if not config.STRIPE_WEBHOOK_SECRET:
        log.error("webhook_secret_missing")
        raise HTTPException(500, detail="Webhook secret not configured")
    return StripeAdapter(config.STRIPE_WEBHOOK_SECRET,
                         tolerance_seconds=config.WEBHOOK_TOLERANCE_SECONDS)


def print_provider() -> PrintProvider:
    return PrintifyClient(
        app.state.http,
        api_key=config.PRINTIFY_API_KEY,
        shop_id=config.PRINTIFY_SHOP_ID,
        api_base=config.PRINTIFY_API_BASE,
    )


def object_store() -> ObjectStore:
    return PublicBucketStore(app.state.http,
                             base_url=config.STORAGE_BASE_URL,
                             bucket=config.STORAGE_BUCKET)


def notification_sender() -> NotificationSender:
    return ResendSender(app.state.http, api_key=config.RESEND_API_KEY,
                        from_email=config.EMAIL_FROM,
                        api_base=config.RESEND_API_BASE)


def services(
    store: OrderStore = Depends(order_store),
    effects=Depends(effect_records),
    provider: PrintProvider = Depends(print_provider),
    objects: ObjectStore = Depends(object_store),
    sender: NotificationSender = Depends(notification_sender),
) -> orchestrator.Services:
    return orchestrator.Services(
        store=store, effects=effects, provider=provider, objects=objects,
        sender=sender, alert_email=config.ALERT_EMAIL or None,
    )


def require_cron(authorization: Optional[str] = Header(None)) -> None:
    if not check_bearer(authorization, config.CRON_SECRET):
        log.warning("cron_unauthorized")
        raise HTTPException(401, detail="Unauthorized")


def require_admin(authorization: Optional[str] = Header(None)) -> None:
    if not check_bearer(authorization, config.ADMIN_API_KEY):
        raise HTTPException(401, detail="Unauthorized")


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    adapter: PaymentAdapter = Depends(payment_adapter),
    svc: orchestrator.Services = Depends(services),
):
    payload = await request.body()
    try:
        event = adapter.parse_event(payload, dict(request.headers))
    except WebhookError as exc:
        log.warning("webhook_rejected", error=str(exc))
        raise HTTPException(400, detail=str(exc))

    bind_context(event_id=event.event_id)
    try:
        async with timeit("webhook.dispatch"):
            outcomes = await orchestrator.dispatch(event, svc)
    finally:
        clear_context()
    # acknowledged no matter how the individual effects went
    return {"received": True, "effects": outcomes}


# ----------------------------
# Scheduler triggers
# ----------------------------
@app.api_route("/api/cron/canvas-emails", methods=["GET", "POST"],
               dependencies=[Depends(require_cron)])
async def cron_canvas_emails(
    store: OrderStore = Depends(order_store),
    sender: NotificationSender = Depends(notification_sender),
):
    report = await scheduler.run_sequence(
        store, sender, CANVAS_UPSELL, delay_seconds=config.SEND_DELAY_SECONDS
    )
    return {"success": True, **report.as_dict(
        with_details=os.getenv("ENVIRONMENT") != "production")}


@app.api_route("/api/cron/lead-followups", methods=["GET", "POST"],
               dependencies=[Depends(require_cron)])
async def cron_lead_followups(
    store: OrderStore = Depends(order_store),
    sender: NotificationSender = Depends(notification_sender),
):
    report = await scheduler.run_sequence(
        store, sender, LEAD_FOLLOWUP, delay_seconds=config.SEND_DELAY_SECONDS
    )
    return {"success": True, **report.as_dict(
        with_details=os.getenv("ENVIRONMENT") != "production")}


# ----------------------------
# Leads
# ----------------------------
class LeadIn(BaseModel):
    email: str
    pet_name: Optional[str] = None
    style: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None


class EmailIn(BaseModel):
    email: str


@app.post("/api/leads")
async def create_lead(
    lead: LeadIn,
    store: OrderStore = Depends(order_store),
    sender: NotificationSender = Depends(notification_sender),
):
    if not is_valid_email(lead.email):
        raise HTTPException(400, detail="a valid email address is required")
    email = normalize_email(lead.email)
    context = lead.model_dump(exclude={"email"}, exclude_none=True)
    recipient = await store.enroll_recipient(FOLLOWUP, email,
                                             context=context)

    # step 1 goes out on enrollment, not from the scheduler
    sent = False
    if (recipient["last_step_sent"] == 0 and not recipient["has_converted"]
            and not recipient["unsubscribed"]):
        sent = await scheduler.send_step(store, sender, LEAD_FOLLOWUP,
                                         recipient, 1)
    return {"ok": True, "lead_id": recipient["id"], "email_sent": sent}


@app.post("/api/leads/mark-converted")
async def mark_lead_converted(body: EmailIn,
                              store: OrderStore = Depends(order_store)):
    n = await store.mark_converted(normalize_email(body.email), FOLLOWUP)
    return {"ok": True, "updated": n}


@app.post("/api/leads/unsubscribe")
async def unsubscribe(body: EmailIn,
                      store: OrderStore = Depends(order_store)):
    n = await store.unsubscribe(normalize_email(body.email))
    return {"ok": True, "updated": n}


# the link in every drip email lands here
@app.get("/api/leads/unsubscribe", response_class=HTMLResponse)
async def unsubscribe_link(email: str,
                           store: OrderStore = Depends(order_store)):
    if not is_valid_email(email):
        raise HTTPException(400, detail="a valid email address is required")
    await store.unsubscribe(normalize_email(email))
    return HTMLResponse(
        "<p>You have been unsubscribed. No more emails will be sent.</p>")


# ----------------------------
# Purchases
# ----------------------------
@app.get("/api/purchases/{artifact_id}")
async def get_purchase(artifact_id: str,
                       store: OrderStore = Depends(order_store)):
    purchase = await store.get_purchase(artifact_id)
    if purchase is None:
        # webhook not processed yet -> let the client keep polling
        raise HTTPException(404, detail="purchase not found")
    return {
        "artifact_id": purchase["id"],
        "status": purchase["status"],
        "paid": purchase["status"] == "paid",
        "paid_at": to_iso(purchase["paid_at"]),
    }


# ----------------------------
# Operator: print orders
# ----------------------------
class ShipIn(BaseModel):
    tracking_number: Optional[str] = None


def _print_order_out(order: dict) -> dict:
    out = dict(order)
    for key in ("created_at", "updated_at", "sent_to_production_at",
                "shipped_at"):
        out[key] = to_iso(order.get(key))
    return out


@app.get("/api/admin/print-orders", dependencies=[Depends(require_admin)])
async def list_print_orders(limit: int = 200, status: Optional[str] = None,
                            store: OrderStore = Depends(order_store)):
    items = await store.list_print_orders(limit=limit, status=status)
    return {"items": [_print_order_out(o) for o in items], "limit": limit}


@app.get("/api/admin/print-orders/{order_id}",
         dependencies=[Depends(require_admin)])
async def get_print_order(
    order_id: str,
    store: OrderStore = Depends(order_store),
    provider: PrintProvider = Depends(print_provider),
):
    order = await store.get_print_order(order_id)
    if order is None:
        raise HTTPException(404, detail="print order not found")
    provider_status = None
    if order["provider_order_id"]:
        try:
            remote = await provider.get_order(order["provider_order_id"])
            provider_status = remote.get("status")
        except ProviderError as exc:
            log.warning("provider_status_unavailable",
                        correlation_id=order_id, error=str(exc))
    return {**_print_order_out(order), "provider_status": provider_status}


@app.post("/api/admin/print-orders/{order_id}/retry",
          dependencies=[Depends(require_admin)])
async def retry_print_order(
    order_id: str,
    store: OrderStore = Depends(order_store),
    provider: PrintProvider = Depends(print_provider),
    objects: ObjectStore = Depends(object_store),
):
    try:
        order = await fulfillment.resume_print_order(store, provider, objects,
                                                     order_id)
    except LookupError:
        raise HTTPException(404, detail="print order not found")
    except InvariantViolation as exc:
        raise HTTPException(409, detail=str(exc))
    except ProviderError as exc:
        log.warning("print_retry_failed", correlation_id=order_id,
                    error=str(exc))
        raise HTTPException(502, detail=str(exc))
    return {"ok": True, "order": _print_order_out(order)}


@app.post("/api/admin/print-orders/{order_id}/ship",
          dependencies=[Depends(require_admin)])
async def ship_print_order(
    order_id: str,
    body: ShipIn,
    store: OrderStore = Depends(order_store),
    provider: PrintProvider = Depends(print_provider),
    sender: NotificationSender = Depends(notification_sender),
):
    try:
        order = await fulfillment.mark_shipped(
            store, provider, sender, order_id,
            tracking_number=body.tracking_number,
        )
    except LookupError:
        raise HTTPException(404, detail="print order not found")
    except InvariantViolation as exc:
        raise HTTPException(409, detail=str(exc))
    except ProviderError as exc:
        raise HTTPException(502, detail=str(exc))
    return {"ok": True, "order": _print_order_out(order)}


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def admin_timings():
    return {"items": snapshot()}
