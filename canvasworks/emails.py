"""Message builders: a subject per message kind, the body from a template."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

from jinja2 import Environment, PackageLoader, select_autoescape

from . import config
from .providers.printify import CANVAS_PRODUCTS

BRAND = "LumePet"

env = Environment(
    loader=PackageLoader("canvasworks", "templates"),
    autoescape=select_autoescape(["html"]),
)

UPSELL_SUBJECTS = {
    1: "Your portrait, on canvas",
    2: "A canvas made to last",
    3: "Last chance: your portrait on canvas",
}

FOLLOWUP_SUBJECTS = {
    1: "Your preview is ready",
    2: "Your preview is still waiting",
    3: "Why people love their portraits",
    4: "A gift they will remember",
    5: "Still thinking it over?",
    6: "One last note from us",
}


@dataclass(frozen=True)
class Message:
    subject: str
    html: str


def _render(name: str, **ctx: Any) -> str:
    ctx.setdefault("brand", BRAND)
    ctx.setdefault("base_url", config.BASE_URL)
    ctx.setdefault("unsubscribe_url", None)
    return env.get_template(f"email/{name}.html").render(**ctx)


def _unsubscribe_url(email: str) -> str:
    return f"{config.API_BASE_URL}/api/leads/unsubscribe?email={quote(email)}"


def confirmation(artifact_id: str, pet_name: Optional[str] = None) -> Message:
    return Message(
        subject=f"{BRAND}: your portrait is ready",
        html=_render(
            "confirmation",
            confirmation_id=artifact_id[:8].upper(),
            download_url=f"{config.BASE_URL}/success?artifact_id={artifact_id}",
            pet_name=pet_name,
        ),
    )


def upsell(step: int, recipient: Dict[str, Any]) -> Message:
    artifact_id = recipient.get("artifact_id") or ""
    return Message(
        subject=UPSELL_SUBJECTS[step],
        html=_render(
            "upsell",
            step=step,
            canvas_url=f"{config.BASE_URL}/canvas?artifact_id={artifact_id}",
            unsubscribe_url=_unsubscribe_url(recipient["email"]),
        ),
    )


def followup(step: int, recipient: Dict[str, Any]) -> Message:
    context = recipient.get("context") or {}
    return Message(
        subject=FOLLOWUP_SUBJECTS[step],
        html=_render(
            "followup",
            step=step,
            pet_name=context.get("pet_name"),
            cta_url=config.BASE_URL,
            unsubscribe_url=_unsubscribe_url(recipient["email"]),
        ),
    )


def canvas_confirmation(order: Dict[str, Any]) -> Message:
    return Message(
        subject=f"{BRAND}: your canvas order is confirmed",
        html=_render(
            "canvas_confirmation",
            size_label=CANVAS_PRODUCTS[order["size"]]["label"],
            address=order["shipping_address"],
            order_ref=order["id"][-10:].upper(),
        ),
    )


def canvas_shipped(order: Dict[str, Any]) -> Message:
    return Message(
        subject=f"{BRAND}: your canvas has shipped",
        html=_render(
            "canvas_shipped",
            size_label=CANVAS_PRODUCTS[order["size"]]["label"],
            tracking_number=order.get("tracking_number"),
            order_ref=order["id"][-10:].upper(),
        ),
    )


def alert(title: str, details: Dict[str, Any]) -> Message:
    return Message(
        subject=f"[{BRAND} ops] {title}",
        html=env.get_template("email/alert.html").render(
            title=title, details=details
        ),
    )
