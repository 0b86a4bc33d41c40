"""
Order record store.

Every state transition goes through `update_if`, a single
`UPDATE ... WHERE id = :id AND <expected>` statement. A caller that loses the
race gets `None` back and must re-read; nothing here does read-then-write
across two round trips.
"""
from __future__ import annotations
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import ValidationError
from ..helpers import fmt_cents, now_ts, to_iso
from ..infra.sql import Gated
from .db import (
    MODELS, KIND_TICKET, KIND_MERCHANDISE, KIND_BAR_CREDIT,
)


def model_for(kind: str):
    model = MODELS.get(kind)
    if model is None:
        raise ValidationError(f"unknown record kind: {kind}")
    return model


class RecordStore:
    def __init__(
        self, *, sessions: async_sessionmaker[AsyncSession], gated: Gated
    ) -> None:
        self.sessions = sessions
        self.gated = gated

    async def create(self, kind: str, fields: Dict[str, Any]):
        model = model_for(kind)
        values = dict(fields)
        values.setdefault("id", uuid.uuid4().hex)
        values.setdefault("created_at", now_ts())
        values.setdefault("version", 0)
        record = model(**values)
        # IntegrityError (duplicate confirmation code) propagates
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    db.add(record)
        return record

    async def get(self, kind: str, record_id: str):
        model = model_for(kind)
        async with self.gated():
            async with self.sessions() as db:
                return await db.get(model, record_id)

    async def get_by_code(self, kind: str, code: str):
        model = model_for(kind)
        rows = await self._select(
            select(model).where(model.confirmation_code == code.strip())
        )
        return rows[0] if rows else None

    async def find_by_session_id(
        self, session_id: str
    ) -> Optional[Tuple[str, Any]]:
        for kind, model in MODELS.items():
            rows = await self._select(
                select(model).where(model.gateway_session_id == session_id)
            )
            if rows:
                return kind, rows[0]
        return None

    async def filter(self, kind: str, limit: int = 200, **equals: Any) -> List:
        model = model_for(kind)
        stmt = select(model)
        for col, value in equals.items():
            stmt = stmt.where(getattr(model, col) == value)
        stmt = stmt.order_by(model.created_at.desc()).limit(max(1, limit))
        return await self._select(stmt)

    async def update(self, kind: str, record_id: str, patch: Dict[str, Any]):
        """Unconditional update; only for fields no invariant depends on."""
        return await self.update_if(kind, record_id, {}, patch)

    async def update_if(
        self,
        kind: str,
        record_id: str,
        expected: Dict[str, Any],
        patch: Dict[str, Any],
    ):
        """
        Compare-and-set: apply `patch` only when every column in `expected`
        still holds its expected value. Returns the updated record, or None
        when the record is missing or the comparison failed.
        """
        model = model_for(kind)
        conditions = [model.id == record_id]
        for col, value in expected.items():
            column = getattr(model, col)
            conditions.append(
                column.is_(None) if value is None else column == value
            )
        stmt = (
            update(model)
            .where(*conditions)
            .values(**patch, version=model.version + 1)
            .execution_options(synchronize_session=False)
        )
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    result = await db.execute(stmt)
                    if result.rowcount != 1:
                        return None
                    return await db.get(
                        model, record_id, populate_existing=True
                    )

    async def _select(self, stmt) -> List:
        async with self.gated():
            async with self.sessions() as db:
                result = await db.execute(stmt)
                return list(result.scalars().all())


# ----------------------------
# JSON views
# ----------------------------
def record_to_dict(kind: str, r) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "kind": kind,
        "id": r.id,
        "confirmation_code": r.confirmation_code,
        "status": r.status,
        "customer_name": r.customer_name,
        "customer_email": r.customer_email,
        "customer_phone": r.customer_phone,
        "total_price": fmt_cents(r.total_cents),
        "currency": r.currency,
        "provider": r.provider,
        "gateway_session_id": r.gateway_session_id,
        "provider_txn_id": r.provider_txn_id,
        "created_at": to_iso(r.created_at),
        "paid_at": to_iso(r.paid_at),
    }
    if kind == KIND_TICKET:
        out.update({
            "event_id": r.event_id,
            "ticket_type": r.ticket_type,
            "quantity": r.quantity,
            "unit_price": fmt_cents(r.unit_cents),
            "tax": fmt_cents(r.tax_cents),
            "scanned": bool(r.scanned),
            "scanned_at": to_iso(r.scanned_at),
            "rfid_tag_ids": list(r.rfid_tag_ids or []),
            "refund_amount": fmt_cents(r.refund_cents),
            "refund_reason": r.refund_reason,
            "refunded_at": to_iso(r.refunded_at),
        })
    elif kind == KIND_MERCHANDISE:
        out.update({
            "items": list(r.items or []),
            "shipping": fmt_cents(r.shipping_cents),
            "shipping_address": r.shipping_address,
            "tracking_number": r.tracking_number,
            "shipment_id": r.shipment_id,
        })
    elif kind == KIND_BAR_CREDIT:
        out.update({
            "quantity": r.quantity,
            "remaining_credits": r.remaining_credits,
            "price_per_credit": fmt_cents(r.price_per_credit_cents),
            "tax": fmt_cents(r.tax_cents),
            "refund_amount": fmt_cents(r.refund_cents),
            "refund_reason": r.refund_reason,
            "refunded_at": to_iso(r.refunded_at),
        })
    return out
