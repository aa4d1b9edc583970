import pytest

from canvasworks.events import (
    ChargeRefunded, DisputeCreated, PaymentFailed, Unrecognized, decode_event,
)
from canvasworks.orchestrator import Services, dispatch
from canvasworks.sequences import FOLLOWUP, UPSELL

BUYER = "buyer@example.com"
OPS = "ops@example.com"


@pytest.fixture
def svc(store, effects, provider, objects, sender):
    return Services(store=store, effects=effects, provider=provider,
                    objects=objects, sender=sender, alert_email=OPS)


async def test_digital_purchase(svc, store, sender, make_event):
    await store.enroll_recipient(FOLLOWUP, BUYER)
    event = decode_event(make_event("evt_1", "cs_1", artifact_id="art_1",
                                    pet_name="Rex"))
    outcomes = await dispatch(event, svc)

    assert outcomes == {
        "mark_paid": "ok",
        "mark_lead_converted": "ok",
        "record_customer": "ok",
        "send_confirmation": "ok",
        "enroll_upsell": "ok",
    }
    purchase = await store.get_purchase("art_1")
    assert purchase["status"] == "paid"
    assert purchase["customer_email"] == BUYER

    (msg,) = sender.to(BUYER)
    assert "ready" in msg["subject"]
    assert "success?artifact_id=art_1" in msg["html"]

    lead = await store.get_recipient(FOLLOWUP, BUYER)
    assert lead["has_converted"] is True
    upsell = await store.get_recipient(UPSELL, BUYER)
    assert upsell["enrolled_at"] == purchase["paid_at"]
    assert upsell["artifact_id"] == "art_1"
    assert upsell["context"] == {"pet_name": "Rex"}
    assert upsell["last_step_sent"] == 0


async def test_double_delivery_is_one_purchase(svc, store, sender,
                                               make_event):
    event = decode_event(make_event("evt_1", "cs_1", artifact_id="art_1"))
    await dispatch(event, svc)
    outcomes = await dispatch(event, svc)

    assert set(outcomes.values()) == {"skipped"}
    assert len(sender.to(BUYER)) == 1
    assert (await store.get_customer(BUYER))["purchase_count"] == 1


async def test_failed_effect_is_retried_alone(svc, store, sender,
                                              make_event):
    event = decode_event(make_event("evt_1", "cs_1", artifact_id="art_1"))
    sender.fail_next = 1
    outcomes = await dispatch(event, svc)
    assert outcomes["send_confirmation"] == "error"
    assert outcomes["enroll_upsell"] == "ok"
    assert sender.sent == []

    outcomes = await dispatch(event, svc)
    assert outcomes["send_confirmation"] == "ok"
    assert outcomes["mark_paid"] == "skipped"
    assert outcomes["enroll_upsell"] == "skipped"
    assert len(sender.to(BUYER)) == 1


async def test_paid_never_reverts(svc, store, make_event):
    await dispatch(decode_event(
        make_event("evt_1", "cs_1", artifact_id="art_1")), svc)
    outcomes = await dispatch(decode_event(make_event(
        "evt_2", "cs_1", artifact_id="art_1",
        event_type="checkout.session.expired",
    )), svc)
    assert outcomes == {"mark_expired": "ok"}
    assert (await store.get_purchase("art_1"))["status"] == "paid"


async def test_expired_pending_purchase(svc, store, make_event,
                                        pending_purchase):
    await pending_purchase("art_1")
    await dispatch(decode_event(make_event(
        "evt_2", "cs_1", artifact_id="art_1",
        event_type="checkout.session.expired",
    )), svc)
    assert (await store.get_purchase("art_1"))["status"] == "expired"


async def test_digital_without_email(svc, store, sender, make_event):
    event = decode_event(make_event("evt_1", "cs_1", artifact_id="art_1",
                                    email=None))
    outcomes = await dispatch(event, svc)
    assert outcomes == {"mark_paid": "ok"}
    assert (await store.get_purchase("art_1"))["status"] == "paid"
    assert sender.sent == []


async def test_pack_purchase(svc, store, sender, make_event):
    await store.enroll_recipient(FOLLOWUP, BUYER)
    outcomes = await dispatch(decode_event(make_event(
        "evt_1", "cs_pack", purchase_type="pack")), svc)
    assert outcomes == {"mark_lead_converted": "ok", "record_customer": "ok"}
    assert (await store.get_recipient(FOLLOWUP, BUYER))["has_converted"]
    customer = await store.get_customer(BUYER)
    assert customer["last_purchase_type"] == "pack"
    assert sender.sent == []


async def _canvas(make_event, address, event_id="evt_c"):
    return decode_event(make_event(
        event_id, "cs_canvas", artifact_id="art_1", purchase_type="canvas",
        canvas_size="12x12", shipping=address, pet_name="Rex",
    ))


async def test_canvas_purchase(svc, store, provider, sender, make_event,
                               address):
    await store.mark_purchase_paid("art_1", email=BUYER, session_id="cs_1")
    await store.enroll_recipient(UPSELL, BUYER)
    outcomes = await dispatch(await _canvas(make_event, address), svc)

    assert outcomes == {
        "record_customer": "ok",
        "mark_upsell_converted": "ok",
        "print_fulfillment": "ok",
        "send_canvas_confirmation": "ok",
    }
    order = await store.get_print_order("cs_canvas")
    assert order["status"] == "production"
    assert order["customer_email"] == BUYER
    assert (await store.get_recipient(UPSELL, BUYER))["has_converted"]

    (msg,) = sender.to(BUYER)
    assert "canvas order is confirmed" in msg["subject"]
    assert "Springfield" in msg["html"]

    outcomes = await dispatch(await _canvas(make_event, address), svc)
    assert set(outcomes.values()) == {"skipped"}
    assert len(provider.calls["create_order"]) == 1


async def test_canvas_stall_alerts_and_retries(svc, store, provider, sender,
                                               make_event, address):
    await store.mark_purchase_paid("art_1", email=BUYER, session_id="cs_1")
    provider.failures["submit_to_production"] = 1
    event = await _canvas(make_event, address)

    outcomes = await dispatch(event, svc)
    assert outcomes["print_fulfillment"] == "error"
    assert "send_canvas_confirmation" not in outcomes
    assert (await store.get_print_order("cs_canvas"))["status"] == "created"
    (alert,) = sender.to(OPS)
    assert "print_fulfillment_stalled" in alert["subject"]
    assert sender.to(BUYER) == []

    outcomes = await dispatch(event, svc)
    assert outcomes["print_fulfillment"] == "ok"
    assert outcomes["send_canvas_confirmation"] == "ok"
    assert len(provider.calls["create_order"]) == 1
    assert len(sender.to(BUYER)) == 1


async def test_canvas_for_unpaid_artifact_fails(svc, store, provider, sender,
                                                make_event, address):
    outcomes = await dispatch(await _canvas(make_event, address), svc)
    assert outcomes["print_fulfillment"] == "error"
    order = await store.get_print_order("cs_canvas")
    assert order["status"] == "failed"
    assert provider.calls["upload_image"] == []
    assert len(sender.to(OPS)) == 1


async def test_canvas_without_address_alerts(svc, store, sender, make_event):
    event = decode_event(make_event(
        "evt_c", "cs_canvas", artifact_id="art_1", purchase_type="canvas",
        canvas_size="12x12",
    ))
    outcomes = await dispatch(event, svc)
    assert outcomes["print_fulfillment"] == "error"
    assert await store.get_print_order("cs_canvas") is None
    (alert,) = sender.to(OPS)
    assert "print_order_incomplete" in alert["subject"]


async def test_dispute_alerts(svc, sender):
    outcomes = await dispatch(DisputeCreated(
        event_id="evt_d", dispute_id="dp_1", charge_id="ch_1",
        reason="fraudulent"), svc)
    assert outcomes == {}
    (alert,) = sender.to(OPS)
    assert "dispute_created" in alert["subject"]
    assert "fraudulent" in alert["html"]


@pytest.mark.parametrize("event", [
    ChargeRefunded(event_id="evt_r", charge_id="ch_1", amount_refunded=100),
    PaymentFailed(event_id="evt_f", payment_intent_id="pi_1"),
    Unrecognized(event_id="evt_u", event_type="customer.created"),
])
async def test_informational_events(svc, sender, event):
    assert await dispatch(event, svc) == {}
    assert sender.sent == []


async def test_dispatch_never_raises(svc, store, make_event):
    class Broken:
        async def seen(self, effect_name, event_id):
            raise RuntimeError("db down")

        async def record(self, effect_name, event_id):
            raise RuntimeError("db down")

    svc.effects = Broken()
    outcomes = await dispatch(decode_event(
        make_event("evt_1", "cs_1", artifact_id="art_1")), svc)
    assert outcomes == {"mark_paid": "error"}
