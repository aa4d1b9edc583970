"""Webhook-side orchestration.

``dispatch`` maps one verified domain event onto its named side effects.
Every effect goes through the idempotent runner on its own, so a failure in
one (say, the confirmation email) neither blocks the others nor reaches the
gateway; the next redelivery retries only what is missing.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import singledispatch
from typing import Any, Dict, Optional

from . import emails
from .effects import EffectRecords, attempt
from .errors import SendError
from .events import (
    ChargeRefunded, DisputeCreated, DomainEvent, PaymentCompleted,
    PaymentExpired, PaymentFailed, Unrecognized,
)
from .fulfillment import fulfill_print_order
from .helpers import now_ts
from .logs import get_logger
from .model.store import OrderStore
from .providers.email import NotificationSender
from .providers.printify import PrintProvider
from .providers.storage import ObjectStore
from .sequences import FOLLOWUP, UPSELL

log = get_logger(__name__)


@dataclass
class Services:
    store: OrderStore
    effects: EffectRecords
    provider: PrintProvider
    objects: ObjectStore
    sender: NotificationSender
    alert_email: Optional[str] = None


async def send_or_raise(sender: NotificationSender, to: str,
                        msg: emails.Message) -> None:
    result = await sender.send(to, msg.subject, msg.html)
    if not result.success:
        raise SendError(result.error or "send failed")


async def alert(svc: Services, title: str, **details: Any) -> None:
    """Operator alert: always logged, mailed when an address is configured."""
    log.error(title, **details)
    if not svc.alert_email:
        return
    msg = emails.alert(title, details)
    try:
        result = await svc.sender.send(svc.alert_email, msg.subject, msg.html)
    except Exception:
        log.exception("alert_email_failed", title=title)
        return
    if not result.success:
        log.warning("alert_email_failed", title=title, error=result.error)


# ----------------------------
# Event handlers
# ----------------------------
@singledispatch
async def handle(event, svc: Services, outcomes: dict) -> None:
    raise TypeError(f"no handler for {type(event).__name__}")


@handle.register
async def _(event: PaymentCompleted, svc: Services, outcomes: dict) -> None:
    if event.purchase_type == "canvas":
        await _canvas_completed(event, svc, outcomes)
    elif event.purchase_type == "pack":
        await _pack_completed(event, svc, outcomes)
    elif event.artifact_id:
        await _digital_completed(event, svc, outcomes)
    else:
        log.warning("payment_without_artifact", event_id=event.event_id,
                    session_id=event.session_id)


async def _digital_completed(event: PaymentCompleted, svc: Services,
                             outcomes: dict) -> None:
    eid = event.event_id
    email = event.customer_email
    artifact_id = event.artifact_id
    paid_at = now_ts()

    async def mark_paid():
        await svc.store.mark_purchase_paid(
            artifact_id, email=email, session_id=event.session_id,
            at=paid_at,
        )

    ok = await attempt(svc.effects, eid, "mark_paid", mark_paid, outcomes)
    if not ok:
        # everything below assumes a paid purchase; retry on redelivery
        return
    if not email:
        log.warning("payment_without_email", event_id=eid,
                    artifact_id=artifact_id)
        return

    async def mark_lead_converted():
        await svc.store.mark_converted(email, FOLLOWUP)

    async def record_customer():
        await svc.store.record_customer(
            email, purchase_type="digital", artifact_id=artifact_id,
            session_id=event.session_id, at=paid_at,
        )

    async def send_confirmation():
        await send_or_raise(svc.sender, email, emails.confirmation(
            artifact_id, event.context.get("pet_name")))

    async def enroll_upsell():
        purchase = await svc.store.get_purchase(artifact_id)
        await svc.store.enroll_recipient(
            UPSELL, email, enrolled_at=purchase["paid_at"],
            artifact_id=artifact_id, context=event.context,
        )

    await attempt(svc.effects, eid, "mark_lead_converted",
                  mark_lead_converted, outcomes)
    await attempt(svc.effects, eid, "record_customer", record_customer,
                  outcomes)
    await attempt(svc.effects, eid, "send_confirmation", send_confirmation,
                  outcomes)
    await attempt(svc.effects, eid, "enroll_upsell", enroll_upsell, outcomes)


async def _pack_completed(event: PaymentCompleted, svc: Services,
                          outcomes: dict) -> None:
    email = event.customer_email
    if not email:
        log.warning("payment_without_email", event_id=event.event_id,
                    session_id=event.session_id)
        return

    async def mark_lead_converted():
        await svc.store.mark_converted(email, FOLLOWUP)

    async def record_customer():
        await svc.store.record_customer(
            email, purchase_type="pack", artifact_id=None,
            session_id=event.session_id,
        )

    await attempt(svc.effects, event.event_id, "mark_lead_converted",
                  mark_lead_converted, outcomes)
    await attempt(svc.effects, event.event_id, "record_customer",
                  record_customer, outcomes)


async def _canvas_completed(event: PaymentCompleted, svc: Services,
                            outcomes: dict) -> None:
    eid = event.event_id
    email = event.customer_email

    if email:
        async def record_customer():
            await svc.store.record_customer(
                email, purchase_type="canvas",
                artifact_id=event.artifact_id, session_id=event.session_id,
            )

        async def mark_upsell_converted():
            await svc.store.mark_converted(email, UPSELL)

        await attempt(svc.effects, eid, "record_customer", record_customer,
                      outcomes)
        await attempt(svc.effects, eid, "mark_upsell_converted",
                      mark_upsell_converted, outcomes)

    if not event.artifact_id or event.shipping_address is None:
        outcomes["print_fulfillment"] = "error"
        await alert(svc, "print_order_incomplete", event_id=eid,
                    correlation_id=event.session_id,
                    artifact_id=event.artifact_id)
        return

    async def print_fulfillment():
        await fulfill_print_order(
            svc.store, svc.provider, svc.objects,
            correlation_id=event.session_id,
            artifact_id=event.artifact_id,
            size=event.canvas_size,
            shipping_address=event.shipping_address,
            customer_email=email,
            pet_name=event.context.get("pet_name"),
        )

    ok = await attempt(svc.effects, eid, "print_fulfillment",
                       print_fulfillment, outcomes)
    if not ok:
        order = await _print_order_or_none(svc, event.session_id)
        await alert(
            svc, "print_fulfillment_stalled", event_id=eid,
            correlation_id=event.session_id,
            status=order["status"] if order else None,
            failure_reason=order["failure_reason"] if order else None,
        )
        return

    if email:
        async def send_canvas_confirmation():
            order = await svc.store.get_print_order(event.session_id)
            await send_or_raise(svc.sender, email,
                                emails.canvas_confirmation(order))

        await attempt(svc.effects, eid, "send_canvas_confirmation",
                      send_canvas_confirmation, outcomes)


async def _print_order_or_none(svc: Services,
                               order_id: str) -> Optional[Dict[str, Any]]:
    try:
        return await svc.store.get_print_order(order_id)
    except Exception:
        log.exception("print_order_lookup_failed", correlation_id=order_id)
        return None


@handle.register
async def _(event: PaymentExpired, svc: Services, outcomes: dict) -> None:
    if not event.artifact_id:
        log.info("expired_without_artifact", session_id=event.session_id)
        return

    async def mark_expired():
        status = await svc.store.mark_purchase_expired(event.artifact_id)
        if status != "expired":
            log.info("expired_ignored", artifact_id=event.artifact_id,
                     status=status)

    await attempt(svc.effects, event.event_id, "mark_expired", mark_expired,
                  outcomes)


@handle.register
async def _(event: ChargeRefunded, svc: Services, outcomes: dict) -> None:
    log.info("charge_refunded", charge_id=event.charge_id,
             amount_refunded=event.amount_refunded)


@handle.register
async def _(event: DisputeCreated, svc: Services, outcomes: dict) -> None:
    await alert(svc, "dispute_created", dispute_id=event.dispute_id,
                charge_id=event.charge_id, reason=event.reason)


@handle.register
async def _(event: PaymentFailed, svc: Services, outcomes: dict) -> None:
    log.info("payment_failed", payment_intent_id=event.payment_intent_id,
             failure_message=event.failure_message)


@handle.register
async def _(event: Unrecognized, svc: Services, outcomes: dict) -> None:
    log.info("unhandled_event_type", event_type=event.event_type,
             event_id=event.event_id)


async def dispatch(event: DomainEvent, svc: Services) -> Dict[str, str]:
    """Run every effect of ``event``; never raises.

    Returns effect name -> "ok" | "skipped" | "error".
    """
    outcomes: Dict[str, str] = {}
    try:
        await handle(event, svc, outcomes)
    except Exception:
        log.exception("dispatch_failed", event_id=event.event_id,
                      event_type=type(event).__name__)
        outcomes["dispatch"] = "error"
    return outcomes

