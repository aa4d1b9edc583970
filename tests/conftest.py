import os
import tempfile

# config is read at import time; point everything at throwaway resources
_TMP = tempfile.mkdtemp(prefix="canvasworks-tests-")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP}/server.db")
os.environ.setdefault("IDEMPOTENCY_BACKEND", "sql")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("CRON_SECRET", "cron-secret")
os.environ.setdefault("ADMIN_API_KEY", "admin-key")
os.environ.setdefault("SEND_DELAY_SECONDS", "0")
os.environ.setdefault("ALERT_EMAIL", "ops@example.com")

import itertools
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import text

from canvasworks.errors import ProviderError
from canvasworks.infra.sql import create_schema, make_async_engine
from canvasworks.model.idempotency import SqlIdempotencyStore
from canvasworks.model.store import OrderStore
from canvasworks.providers.email import NotificationSender, SendResult
from canvasworks.providers.printify import PrintProvider
from canvasworks.providers.storage import ObjectStore


class FakePrintProvider(PrintProvider):
    """Counts every call; ``failures[name]`` makes the next N calls raise."""

    def __init__(self) -> None:
        self.calls: Dict[str, List[Any]] = {
            "upload_image": [], "create_product": [], "create_order": [],
            "submit_to_production": [], "get_order": [],
        }
        self.failures: Dict[str, int] = {}
        self._ids = itertools.count(1)

    def _maybe_fail(self, name: str) -> None:
        left = self.failures.get(name, 0)
        if left:
            self.failures[name] = left - 1
            raise ProviderError(f"{name} unavailable", status_code=503)

    async def upload_image(self, image_url, file_name):
        self._maybe_fail("upload_image")
        self.calls["upload_image"].append((image_url, file_name))
        return f"img_{next(self._ids)}"

    async def create_product(self, image_id, size, title):
        self._maybe_fail("create_product")
        self.calls["create_product"].append((image_id, size, title))
        return f"prod_{next(self._ids)}"

    async def create_order(self, product_id, size, address, external_id):
        self._maybe_fail("create_order")
        self.calls["create_order"].append(
            (product_id, size, address, external_id))
        return f"ord_{next(self._ids)}"

    async def submit_to_production(self, order_id):
        self._maybe_fail("submit_to_production")
        self.calls["submit_to_production"].append(order_id)

    async def get_order(self, order_id):
        self._maybe_fail("get_order")
        self.calls["get_order"].append(order_id)
        return {"id": order_id, "status": "in-production"}


class FakeObjectStore(ObjectStore):
    def __init__(self) -> None:
        self.missing: set = set()
        self.resolved: List[str] = []

    async def resolve(self, artifact_id: str) -> Optional[str]:
        self.resolved.append(artifact_id)
        if artifact_id in self.missing:
            return None
        return f"https://cdn.example.com/{artifact_id}-hd.png"


class FakeSender(NotificationSender):
    def __init__(self) -> None:
        self.sent: List[Dict[str, str]] = []
        self.fail_for: set = set()
        self.fail_next = 0

    async def send(self, to: str, subject: str, html: str) -> SendResult:
        if to in self.fail_for:
            return SendResult(False, error="rejected")
        if self.fail_next:
            self.fail_next -= 1
            return SendResult(False, error="rate limited")
        self.sent.append({"to": to, "subject": subject, "html": html})
        return SendResult(True, message_id=f"msg_{len(self.sent)}")

    def to(self, email: str) -> List[Dict[str, str]]:
        return [m for m in self.sent if m["to"] == email]


@pytest.fixture
async def db(tmp_path):
    engine, sessions, gated = make_async_engine(
        f"sqlite:///{tmp_path}/test.db"
    )
    await create_schema(engine)
    yield sessions, gated
    await engine.dispose()


@pytest.fixture
def store(db) -> OrderStore:
    sessions, gated = db
    return OrderStore(sessions=sessions, gated=gated)


@pytest.fixture
def effects(db) -> SqlIdempotencyStore:
    sessions, gated = db
    return SqlIdempotencyStore(sessions=sessions, gated=gated)


@pytest.fixture
def provider() -> FakePrintProvider:
    return FakePrintProvider()


@pytest.fixture
def objects() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def address() -> Dict[str, Any]:
    return {
        "name": "Ada Lovelace",
        "phone": "+15550100",
        "address": {
            "line1": "1 Main St",
            "line2": "Apt 2",
            "city": "Springfield",
            "state": "IL",
            "postal_code": "62701",
            "country": "US",
        },
    }


def checkout_event(
    event_id: str,
    session_id: str,
    *,
    artifact_id: Optional[str] = None,
    purchase_type: Optional[str] = None,
    canvas_size: Optional[str] = None,
    email: Optional[str] = "Buyer@Example.com",
    shipping: Optional[Dict[str, Any]] = None,
    event_type: str = "checkout.session.completed",
    **metadata: str,
) -> Dict[str, Any]:
    meta = dict(metadata)
    if artifact_id:
        meta["artifact_id"] = artifact_id
    if purchase_type:
        meta["purchase_type"] = purchase_type
    if canvas_size:
        meta["canvas_size"] = canvas_size
    obj: Dict[str, Any] = {"id": session_id, "metadata": meta}
    if email:
        obj["customer_details"] = {"email": email}
    if shipping:
        obj["shipping_details"] = shipping
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


@pytest.fixture
def make_event():
    return checkout_event


@pytest.fixture
def pending_purchase(store):
    """Seed a purchase row the way the checkout page leaves it."""
    async def add(artifact_id: str, at: float = 1.0) -> None:
        async with store.sessions() as db:
            await db.execute(text("""
                INSERT INTO purchases(id, status, created_at)
                VALUES (:id, 'pending', :at)
            """), {"id": artifact_id, "at": at})
            await db.commit()
    return add
