"""Print fulfillment sub-workflow.

A print order moves through one status per durable milestone:

    pending -> image_uploaded -> product_created -> created -> production
                                                               -> shipped

Each step writes its provider id before the next step starts. Rerunning the
workflow for the same correlation id skips every step whose id is already
stored, so a crash or a provider outage never produces duplicate provider
images, products or orders.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from . import emails
from .errors import InvariantViolation
from .events import ShippingAddress
from .helpers import now_ts
from .logs import get_logger
from .model.store import OrderStore
from .providers.email import NotificationSender
from .providers.printify import CANVAS_PRODUCTS, PrintProvider
from .providers.storage import ObjectStore

log = get_logger(__name__)

_BEFORE_CREATED = ("pending", "image_uploaded", "product_created")
DONE_STATUSES = ("production", "shipped")


async def _fail(store: OrderStore, order_id: str, reason: str) -> None:
    await store.transition_print_order(
        order_id, from_statuses=_BEFORE_CREATED + ("created",),
        to_status="failed", failure_reason=reason,
    )
    log.error("print_order_failed", correlation_id=order_id, reason=reason)
    raise InvariantViolation(reason)


async def _step(store: OrderStore, order_id: str, frm: str, to: str,
                **fields: Any) -> None:
    ok = await store.transition_print_order(
        order_id, from_statuses=(frm,), to_status=to, **fields
    )
    if not ok:
        # someone else moved the order while we were talking to the provider
        raise InvariantViolation(
            f"print order {order_id} left {frm!r} concurrently"
        )


def product_title(size: str, pet_name: Optional[str] = None) -> str:
    label = CANVAS_PRODUCTS[size]["label"]
    if pet_name:
        return f"{pet_name}'s Portrait - {label} Canvas"
    return f"Pet Portrait - {label} Canvas"


async def fulfill_print_order(
    store: OrderStore,
    provider: PrintProvider,
    objects: ObjectStore,
    *,
    correlation_id: str,
    artifact_id: str,
    size: str,
    shipping_address: ShippingAddress,
    customer_email: Optional[str] = None,
    pet_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Drive (or resume) a print order up to ``production``.

    Raises InvariantViolation for orders that can never succeed (they are
    marked ``failed``) and lets provider errors through with the order left
    at its last completed milestone.
    """
    if size not in CANVAS_PRODUCTS:
        raise InvariantViolation(f"unknown canvas size {size!r}")

    order = await store.ensure_print_order(
        correlation_id, artifact_id=artifact_id, size=size,
        shipping_address=shipping_address.as_dict(),
        customer_email=customer_email,
    )
    log.info("print_fulfillment_started", correlation_id=correlation_id,
             status=order["status"])

    if order["status"] in DONE_STATUSES:
        return order
    if order["status"] == "failed":
        raise InvariantViolation(
            f"print order {correlation_id} is failed: "
            f"{order['failure_reason']}"
        )
    # the stored row is authoritative on resume
    artifact_id = order["artifact_id"]
    size = order["size"]

    # step 1: the artifact must be paid for and its source must exist
    purchase = await store.get_purchase(artifact_id)
    if purchase is None or purchase["status"] != "paid":
        await _fail(store, correlation_id,
                    f"artifact {artifact_id} is not paid")

    # step 2: upload
    if order["provider_image_id"] is None:
        source_url = await objects.resolve(artifact_id)
        if not source_url:
            await _fail(store, correlation_id,
                        f"no source image for artifact {artifact_id}")
        image_id = await provider.upload_image(
            source_url, f"portrait-{correlation_id}.png"
        )
        await _step(store, correlation_id, "pending", "image_uploaded",
                    provider_image_id=image_id)
        order["provider_image_id"] = image_id

    # step 3: product
    if order["provider_product_id"] is None:
        product_id = await provider.create_product(
            order["provider_image_id"], size, product_title(size, pet_name)
        )
        await _step(store, correlation_id, "image_uploaded",
                    "product_created", provider_product_id=product_id)
        order["provider_product_id"] = product_id

    # step 4: provider order
    if order["provider_order_id"] is None:
        provider_order_id = await provider.create_order(
            order["provider_product_id"], size, order["shipping_address"],
            external_id=correlation_id,
        )
        await _step(store, correlation_id, "product_created", "created",
                    provider_order_id=provider_order_id)
        order["provider_order_id"] = provider_order_id

    # step 5: production
    await provider.submit_to_production(order["provider_order_id"])
    await _step(store, correlation_id, "created", "production",
                sent_to_production_at=now_ts())
    log.info("print_fulfillment_completed", correlation_id=correlation_id,
             provider_order_id=order["provider_order_id"])
    return await store.get_print_order(correlation_id)


async def resume_print_order(
    store: OrderStore, provider: PrintProvider, objects: ObjectStore,
    correlation_id: str,
) -> Dict[str, Any]:
    """Operator retry: rerun the workflow from the stored snapshot."""
    order = await store.get_print_order(correlation_id)
    if order is None:
        raise LookupError(correlation_id)
    return await fulfill_print_order(
        store, provider, objects,
        correlation_id=correlation_id,
        artifact_id=order["artifact_id"],
        size=order["size"],
        shipping_address=ShippingAddress.from_dict(order["shipping_address"]),
        customer_email=order["customer_email"],
    )


async def mark_shipped(
    store: OrderStore, provider: PrintProvider,
    sender: Optional[NotificationSender], correlation_id: str,
    tracking_number: Optional[str] = None,
) -> Dict[str, Any]:
    """Operator action and the only path to ``shipped``.

    An order still sitting at ``created`` is submitted to production first.
    The shipped email is best-effort.
    """
    order = await store.get_print_order(correlation_id)
    if order is None:
        raise LookupError(correlation_id)
    if order["status"] == "shipped":
        return order
    if order["provider_order_id"] is None or order["status"] not in (
            "created", "production"):
        raise InvariantViolation(
            f"print order {correlation_id} cannot ship from "
            f"{order['status']!r}"
        )

    if order["status"] == "created":
        await provider.submit_to_production(order["provider_order_id"])
        await _step(store, correlation_id, "created", "production",
                    sent_to_production_at=now_ts())

    await _step(store, correlation_id, "production", "shipped",
                tracking_number=tracking_number, shipped_at=now_ts())
    order = await store.get_print_order(correlation_id)
    log.info("print_order_shipped", correlation_id=correlation_id,
             tracking_number=tracking_number)

    if sender is not None and order["customer_email"]:
        msg = emails.canvas_shipped(order)
        try:
            result = await sender.send(order["customer_email"], msg.subject,
                                       msg.html)
        except Exception:
            log.exception("shipped_email_failed",
                          correlation_id=correlation_id)
        else:
            if not result.success:
                log.warning("shipped_email_failed",
                            correlation_id=correlation_id,
                            error=result.error)
    return order
