from __future__ import annotations
from typing import Optional, Dict, Any, List, Iterable, Tuple
import json
import uuid

from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..helpers import now_ts
from ..infra.sql import Gated


PRINT_ORDER_STATUSES = (
    "pending", "image_uploaded", "product_created", "created", "production",
    "shipped", "failed",
)

# columns a print-order transition may write; everything else is immutable
_PRINT_ORDER_MUTABLE = {
    "provider_image_id", "provider_product_id", "provider_order_id",
    "tracking_number", "failure_reason", "sent_to_production_at",
    "shipped_at",
}


def _print_order(row) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    d = dict(row)
    d["shipping_address"] = json.loads(d["shipping_address"] or "{}")
    return d


def _recipient(row) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    d = dict(row)
    d["context"] = json.loads(d["context"]) if d.get("context") else {}
    d["has_converted"] = bool(d["has_converted"])
    d["unsubscribed"] = bool(d["unsubscribed"])
    return d


class OrderStore:
    """Lifecycle state of purchases, print orders, customers and recipients.

    Every write is a single statement with upsert-by-key semantics, so
    concurrent duplicate deliveries converge on the same final row.
    """

    def __init__(self, *, sessions: async_sessionmaker, gated: Gated) -> None:
        self.sessions = sessions
        self.gated = gated

    async def _fetch_one(self, sql: str, params: Dict[str, Any]):
        async with self.gated():
            async with self.sessions() as db:
                result = await db.execute(text(sql), params)
                return result.mappings().first()

    async def _write(self, stmt, params: Dict[str, Any]) -> int:
        if isinstance(stmt, str):
            stmt = text(stmt)
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    result = await db.execute(stmt, params)
                    return result.rowcount

    # ------------------------------------------------------------------
    # purchases
    # ------------------------------------------------------------------
    async def get_purchase(self, artifact_id: str) -> Optional[Dict[str, Any]]:
        row = await self._fetch_one("""
            SELECT id, customer_email, session_id, status, created_at,
                   paid_at, expired_at
            FROM purchases WHERE id = :id
        """, {"id": artifact_id})
        return dict(row) if row else None

    async def mark_purchase_paid(
        self, artifact_id: str, *, email: Optional[str],
        session_id: Optional[str], at: Optional[float] = None,
    ) -> None:
        # paid_at is set once; a late email fills in a missing one
        await self._write("""
            INSERT INTO purchases(
              id, customer_email, session_id, status, created_at, paid_at
            ) VALUES (:id, :email, :sid, 'paid', :at, :at)
            ON CONFLICT (id) DO UPDATE SET
              status = 'paid',
              paid_at = COALESCE(purchases.paid_at, EXCLUDED.paid_at),
              customer_email = COALESCE(
                purchases.customer_email, EXCLUDED.customer_email
              ),
              session_id = COALESCE(purchases.session_id, EXCLUDED.session_id)
        """, {
            "id": artifact_id,
            "email": email,
            "sid": session_id,
            "at": at or now_ts(),
        })

    async def mark_purchase_expired(
        self, artifact_id: str, at: Optional[float] = None
    ) -> str:
        """Expire a pending purchase. Returns the resulting status."""
        await self._write("""
            INSERT INTO purchases(id, status, created_at, expired_at)
            VALUES (:id, 'expired', :at, :at)
            ON CONFLICT (id) DO UPDATE SET
              status = 'expired',
              expired_at = EXCLUDED.expired_at
            WHERE purchases.status = 'pending'
        """, {"id": artifact_id, "at": at or now_ts()})
        purchase = await self.get_purchase(artifact_id)
        return purchase["status"]

    # ------------------------------------------------------------------
    # customers
    # ------------------------------------------------------------------
    async def record_customer(
        self, email: str, *, purchase_type: str,
        artifact_id: Optional[str], session_id: Optional[str],
        at: Optional[float] = None,
    ) -> None:
        # the same checkout session never counts twice
        await self._write("""
            INSERT INTO customers(
              email, first_purchase_at, last_purchase_at, last_purchase_type,
              last_artifact_id, last_session_id, purchase_count
            ) VALUES (:email, :at, :at, :ptype, :aid, :sid, 1)
            ON CONFLICT (email) DO UPDATE SET
              last_purchase_at = EXCLUDED.last_purchase_at,
              last_purchase_type = EXCLUDED.last_purchase_type,
              last_artifact_id = COALESCE(
                EXCLUDED.last_artifact_id, customers.last_artifact_id
              ),
              last_session_id = EXCLUDED.last_session_id,
              purchase_count = customers.purchase_count + 1
            WHERE COALESCE(customers.last_session_id, '')
                  <> COALESCE(EXCLUDED.last_session_id, '')
        """, {
            "email": email,
            "at": at or now_ts(),
            "ptype": purchase_type,
            "aid": artifact_id,
            "sid": session_id,
        })

    async def get_customer(self, email: str) -> Optional[Dict[str, Any]]:
        row = await self._fetch_one("""
            SELECT email, first_purchase_at, last_purchase_at,
                   last_purchase_type, last_artifact_id, last_session_id,
                   purchase_count
            FROM customers WHERE email = :email
        """, {"email": email})
        return dict(row) if row else None

    # ------------------------------------------------------------------
    # drip recipients
    # ------------------------------------------------------------------
    async def enroll_recipient(
        self, sequence: str, email: str, *, enrolled_at: Optional[float] = None,
        artifact_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Enroll once per (sequence, email); re-enrolling returns the row."""
        await self._write("""
            INSERT INTO recipients(
              id, sequence, email, enrolled_at, artifact_id, context,
              last_step_sent, has_converted, unsubscribed
            ) VALUES (
              :id, :seq, :email, :at, :aid, :ctx, 0, :false, :false
            )
            ON CONFLICT (sequence, email) DO NOTHING
        """, {
            "id": uuid.uuid4().hex,
            "seq": sequence,
            "email": email,
            "at": enrolled_at or now_ts(),
            "aid": artifact_id,
            "ctx": json.dumps(context or {}),
            "false": False,
        })
        return await self.get_recipient(sequence, email)

    async def get_recipient(
        self, sequence: str, email: str
    ) -> Optional[Dict[str, Any]]:
        row = await self._fetch_one("""
            SELECT id, sequence, email, enrolled_at, artifact_id, context,
                   last_step_sent, last_sent_at, has_converted, unsubscribed
            FROM recipients WHERE sequence = :seq AND email = :email
        """, {"seq": sequence, "email": email})
        return _recipient(row)

    async def cohort(
        self, sequence: str, max_step: int, *,
        after: Optional[Tuple[float, str]] = None, limit: int = 500,
    ) -> List[Dict[str, Any]]:
        """One page of recipients still owed a step, oldest enrollment first.

        Pages are keyed on ``(enrolled_at, id)``; pass the last row of the
        previous page as ``after`` to get the next one.
        """
        after_at, after_id = after if after else (-1.0, "")
        async with self.gated():
            async with self.sessions() as db:
                result = await db.execute(text("""
                    SELECT id, sequence, email, enrolled_at, artifact_id,
                           context, last_step_sent, last_sent_at,
                           has_converted, unsubscribed
                    FROM recipients
                    WHERE sequence = :seq
                      AND has_converted = :false
                      AND unsubscribed = :false
                      AND last_step_sent < :max_step
                      AND (enrolled_at > :after_at
                           OR (enrolled_at = :after_at AND id > :after_id))
                    ORDER BY enrolled_at ASC, id ASC
                    LIMIT :limit
                """), {
                    "seq": sequence,
                    "false": False,
                    "max_step": max_step,
                    "after_at": after_at,
                    "after_id": after_id,
                    "limit": limit,
                })
                return [_recipient(r) for r in result.mappings().all()]

    async def advance_step(
        self, recipient_id: str, *, expected: int, step: int,
        at: Optional[float] = None,
    ) -> bool:
        """Compare-and-set last_step_sent; False if another run moved it."""
        n = await self._write("""
            UPDATE recipients
            SET last_step_sent = :step, last_sent_at = :at
            WHERE id = :id AND last_step_sent = :expected
        """, {
            "id": recipient_id,
            "step": step,
            "expected": expected,
            "at": at or now_ts(),
        })
        return n == 1

    async def mark_converted(
        self, email: str, sequence: Optional[str] = None
    ) -> int:
        if sequence is None:
            return await self._write("""
                UPDATE recipients SET has_converted = :true
                WHERE email = :email
            """, {"email": email, "true": True})
        return await self._write("""
            UPDATE recipients SET has_converted = :true
            WHERE email = :email AND sequence = :seq
        """, {"email": email, "seq": sequence, "true": True})

    async def unsubscribe(self, email: str) -> int:
        return await self._write("""
            UPDATE recipients SET unsubscribed = :true WHERE email = :email
        """, {"email": email, "true": True})

    # ------------------------------------------------------------------
    # print orders
    # ------------------------------------------------------------------
    async def ensure_print_order(
        self, order_id: str, *, artifact_id: str, size: str,
        shipping_address: Dict[str, Any], customer_email: Optional[str],
        at: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Create the row once; an existing row keeps its original snapshot."""
        ts = at or now_ts()
        await self._write("""
            INSERT INTO print_orders(
              id, artifact_id, size, customer_email, shipping_address,
              status, created_at, updated_at
            ) VALUES (
              :id, :aid, :size, :email, :addr, 'pending', :at, :at
            )
            ON CONFLICT (id) DO NOTHING
        """, {
            "id": order_id,
            "aid": artifact_id,
            "size": size,
            "email": customer_email,
            "addr": json.dumps(shipping_address, sort_keys=True),
            "at": ts,
        })
        return await self.get_print_order(order_id)

    async def get_print_order(
        self, order_id: str
    ) -> Optional[Dict[str, Any]]:
        row = await self._fetch_one(
            "SELECT * FROM print_orders WHERE id = :id", {"id": order_id}
        )
        return _print_order(row)

    async def list_print_orders(
        self, limit: int = 200, status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM print_orders"
        params: Dict[str, Any] = {"limit": max(1, min(limit, 500))}
        if status:
            sql += " WHERE status = :status"
            params["status"] = status
        sql += " ORDER BY created_at DESC LIMIT :limit"
        async with self.gated():
            async with self.sessions() as db:
                result = await db.execute(text(sql), params)
                return [_print_order(r) for r in result.mappings().all()]

    async def transition_print_order(
        self, order_id: str, *, from_statuses: Iterable[str], to_status: str,
        at: Optional[float] = None, **fields: Any,
    ) -> bool:
        """Move an order to ``to_status`` if it is in one of ``from_statuses``.

        Extra keyword fields are written in the same statement.
        """
        if to_status not in PRINT_ORDER_STATUSES:
            raise ValueError(f"unknown print order status {to_status!r}")
        unknown = set(fields) - _PRINT_ORDER_MUTABLE
        if unknown:
            raise ValueError(f"immutable print order fields: {sorted(unknown)}")

        sets = ["status = :to_status", "updated_at = :at"]
        sets += [f"{name} = :{name}" for name in sorted(fields)]
        stmt = text(f"""
            UPDATE print_orders SET {", ".join(sets)}
            WHERE id = :id AND status IN :from_statuses
        """).bindparams(bindparam("from_statuses", expanding=True))
        n = await self._write(stmt, {
            "id": order_id,
            "to_status": to_status,
            "from_statuses": list(from_statuses),
            "at": at or now_ts(),
            **fields,
        })
        return n == 1
