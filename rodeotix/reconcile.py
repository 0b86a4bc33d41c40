"""
Webhook reconciliation.

A provider callback is verified, decoded into a `WebhookEvent`, matched to
exactly one record and moved `pending -> confirmed|paid` with a conditional
update. Redelivery of an event for a record that already left `pending`
loses that update and is acknowledged as an idempotent no-op, so side
effects fire at most once per record.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import ConflictError, NotFoundError, ValidationError
from .gateway import PaymentAdapter, WebhookEvent
from .helpers import now_ts
from .model.db import MODELS, PAID_STATUS, STATUS_PENDING, kind_from_code
from .model.records import RecordStore

logger = logging.getLogger(__name__)

CONFIRMED = "confirmed"      # first transition happened now
IDEMPOTENT = "idempotent"    # already settled; nothing done
IGNORED = "ignored"          # not a payment-approved event
UNMATCHED = "unmatched"      # no record for this event
PENDING = "pending"          # polled, provider not charged yet


@dataclass
class Outcome:
    status: str
    kind: Optional[str] = None
    record: Any = None

    @property
    def first_confirmation(self) -> bool:
        return self.status == CONFIRMED

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"received": True, "result": self.status}
        if self.record is not None:
            out["kind"] = self.kind
            out["confirmation_code"] = self.record.confirmation_code
            out["record_status"] = self.record.status
        return out


class WebhookService:
    def __init__(self, *, store: RecordStore, dedup,
                 adapters: Dict[str, PaymentAdapter]) -> None:
        self.store = store
        self.dedup = dedup
        self.adapters = adapters

    def _adapter(self, provider: str) -> PaymentAdapter:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise NotFoundError(f"unknown payment provider: {provider}")
        return adapter

    # ----------------------------
    # handleWebhook
    # ----------------------------
    async def handle_webhook(self, provider: str, payload: bytes,
                             headers: Mapping[str, str]) -> Outcome:
        adapter = self._adapter(provider)
        # authenticity first; raises before any lookup
        event = adapter.verify_webhook(payload, headers)
        evt = adapter.decode_event(event)

        if not evt.approved:
            logger.info("%s webhook %s (%s) acknowledged, no state change",
                        provider, evt.event_type, evt.event_id)
            return Outcome(IGNORED)

        if evt.event_id and await self.dedup.is_seen(evt.event_id):
            logger.info("%s event %s already reconciled",
                        provider, evt.event_id)
            return Outcome(IDEMPOTENT)

        resolved = await self.resolve(evt)
        if resolved is None:
            logger.warning(
                "%s webhook %s matched no record (session=%s ref=%s)",
                provider, evt.event_id, evt.session_id, evt.ref,
            )
            return Outcome(UNMATCHED)

        kind, record = resolved
        outcome = await self.confirm(kind, record, evt.provider_txn_id)
        if evt.event_id:
            await self.dedup.mark_event_seen(evt.event_id)
        return outcome

    async def resolve(self, evt: WebhookEvent) -> Optional[Tuple[str, Any]]:
        ref = evt.ref
        # 1) metadata: kind + record id
        if ref.kind in MODELS and ref.record_id:
            record = await self.store.get(ref.kind, ref.record_id)
            if record is not None:
                return ref.kind, record
        # 2) stored gateway session id
        if evt.session_id:
            found = await self.store.find_by_session_id(evt.session_id)
            if found is not None:
                return found
        # 3) order-number convention: the confirmation code
        if ref.confirmation_code:
            kind = ref.kind or kind_from_code(ref.confirmation_code)
            if kind in MODELS:
                record = await self.store.get_by_code(
                    kind, ref.confirmation_code
                )
                if record is not None:
                    return kind, record
        return None

    async def confirm(self, kind: str, record,
                      provider_txn_id: Optional[str] = None) -> Outcome:
        if record.status != STATUS_PENDING:
            record = await self._backfill_txn(kind, record, provider_txn_id)
            return Outcome(IDEMPOTENT, kind, record)

        patch: Dict[str, Any] = {
            "status": PAID_STATUS[kind],
            "paid_at": now_ts(),
        }
        if provider_txn_id:
            patch["provider_txn_id"] = provider_txn_id
        updated = await self.store.update_if(
            kind, record.id, {"status": STATUS_PENDING}, patch
        )
        if updated is None:
            # someone else settled it between our read and write
            current = await self.store.get(kind, record.id) or record
            current = await self._backfill_txn(kind, current, provider_txn_id)
            return Outcome(IDEMPOTENT, kind, current)

        logger.info("%s %s -> %s (txn=%s)", kind, record.confirmation_code,
                    updated.status, provider_txn_id)
        return Outcome(CONFIRMED, kind, updated)

    async def _backfill_txn(self, kind: str, record,
                            provider_txn_id: Optional[str]):
        # a record settled by polling may not know its transaction yet;
        # the first reference to arrive is kept, later ones never replace it
        if not provider_txn_id or record.provider_txn_id:
            return record
        updated = await self.store.update_if(
            kind, record.id, {"provider_txn_id": None},
            {"provider_txn_id": provider_txn_id},
        )
        if updated is None:
            return await self.store.get(kind, record.id) or record
        logger.info("%s %s txn recorded late: %s", kind,
                    record.confirmation_code, provider_txn_id)
        return updated

    # ----------------------------
    # polling & admin paths
    # ----------------------------
    async def reconcile_polled(self, kind: str, code: str) -> Outcome:
        """
        Return-URL / polling path: ask the provider whether a pending
        record's session is charged and settle it the same way a webhook
        would.
        """
        record = await self.store.get_by_code(kind, code)
        if record is None:
            raise NotFoundError("Confirmation code not found")
        if record.status != STATUS_PENDING:
            return Outcome(IDEMPOTENT, kind, record)
        if not record.gateway_session_id:
            return Outcome(PENDING, kind, record)
        adapter = self._adapter(record.provider)
        status = await adapter.fetch_status(record.gateway_session_id)
        if not status.paid:
            return Outcome(PENDING, kind, record)
        return await self.confirm(kind, record, status.provider_txn_id)

    async def manual_confirm(self, kind: str, code: str,
                             transaction_reference: Optional[str]) -> Outcome:
        if kind not in MODELS:
            raise ValidationError(f"unknown record kind: {kind}")
        record = await self.store.get_by_code(kind, code)
        if record is None:
            raise NotFoundError(
                f"Record not found with confirmation code: {code}"
            )
        if record.status != STATUS_PENDING and \
                record.status != PAID_STATUS[kind]:
            raise ConflictError(
                f"cannot confirm a {record.status} record",
                reason="not_confirmable", status=record.status,
            )
        outcome = await self.confirm(kind, record, transaction_reference)
        logger.info("manual confirm %s %s by staff: %s",
                    kind, code, outcome.status)
        return outcome
