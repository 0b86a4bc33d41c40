"""
Point-of-use mutations: gate scans, bar-credit redemption, RFID wristband
linking and refunds. Every write is conditioned on the values just read, so
two gates or two bar stations racing on one code cannot both win.
"""
from __future__ import annotations
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from .errors import ConflictError, GatewayError, IntegrationError, \
    NotFoundError, ValidationError
from .gateway import PaymentAdapter
from .helpers import fmt_cents, now_ts, parse_money, to_cents, to_iso
from .model.db import (
    KIND_BAR_CREDIT, KIND_TICKET, STATUS_CANCELLED, STATUS_CONFIRMED,
    STATUS_DEPLETED, STATUS_PENDING, STATUS_REFUNDED, STATUS_REFUNDING,
    STATUS_SCANNED, WRISTBAND_CAP,
)
from .model.records import RecordStore, record_to_dict

logger = logging.getLogger(__name__)

# retries after losing a compare-and-set to a concurrent writer
MAX_CAS_ATTEMPTS = 32

REFUNDABLE = {
    KIND_TICKET: (STATUS_CONFIRMED, STATUS_SCANNED),
    KIND_BAR_CREDIT: (STATUS_CONFIRMED, STATUS_DEPLETED),
}


def _not_paid(what: str) -> ConflictError:
    return ConflictError(f"{what} has not been paid yet",
                         reason="pending_payment")


def _not_redeemable(what: str, status: str) -> ConflictError:
    return ConflictError(f"{what} is {status}", reason="not_redeemable",
                         status=status)


class RedemptionService:
    def __init__(self, *, store: RecordStore,
                 adapters: Dict[str, PaymentAdapter],
                 catalog=None) -> None:
        self.store = store
        self.adapters = adapters
        self.catalog = catalog

    async def _ticket_by_code(self, code: str):
        code = (code or "").strip()
        if not code:
            raise ValidationError("confirmation code is required")
        ticket = await self.store.get_by_code(KIND_TICKET, code)
        if ticket is None:
            raise NotFoundError("Ticket not found")
        return ticket

    # ----------------------------
    # scanTicket
    # ----------------------------
    async def scan_ticket(self, code: str) -> Dict[str, Any]:
        ticket = await self._ticket_by_code(code)
        self._check_scannable(ticket)

        updated = await self.store.update_if(
            KIND_TICKET, ticket.id,
            {"status": STATUS_CONFIRMED, "scanned": False},
            {"status": STATUS_SCANNED, "scanned": True, "scanned_at": now_ts()},
        )
        if updated is None:
            # lost to another gate (or a refund); report what won
            current = await self.store.get(KIND_TICKET, ticket.id)
            self._check_scannable(current)
            raise _not_redeemable("Ticket", current.status)

        logger.info("ticket %s scanned", updated.confirmation_code)
        return {
            "success": True,
            "ticket": record_to_dict(KIND_TICKET, updated),
            "event": await self._event(updated.event_id),
        }

    def _check_scannable(self, ticket) -> None:
        if ticket.scanned:
            raise ConflictError(
                "Ticket already used", reason="already_used",
                scanned_at=to_iso(ticket.scanned_at),
            )
        if ticket.status == STATUS_PENDING:
            raise _not_paid("Ticket")
        if ticket.status != STATUS_CONFIRMED:
            raise _not_redeemable("Ticket", ticket.status)

    async def _event(self, event_id: str) -> Optional[Dict[str, Any]]:
        if self.catalog is None:
            return None
        try:
            return await self.catalog.get_event(event_id)
        except IntegrationError as e:
            # the scan already happened; event details are cosmetic
            logger.warning("event %s lookup failed: %s", event_id, e.message)
            return None

    # ----------------------------
    # redeemBarCredit
    # ----------------------------
    async def redeem_bar_credit(self, code: str) -> Dict[str, Any]:
        code = (code or "").strip()
        if not code:
            raise ValidationError("confirmation code is required")

        for _ in range(MAX_CAS_ATTEMPTS):
            credit = await self.store.get_by_code(KIND_BAR_CREDIT, code)
            if credit is None:
                raise NotFoundError("Confirmation code not found")
            if credit.status == STATUS_PENDING:
                raise _not_paid("Bar credit")
            if credit.status == STATUS_DEPLETED or \
                    credit.remaining_credits <= 0:
                raise ConflictError("No credits remaining", reason="depleted",
                                    remaining_credits=0)
            if credit.status != STATUS_CONFIRMED:
                raise _not_redeemable("Bar credit", credit.status)

            remaining = credit.remaining_credits - 1
            patch: Dict[str, Any] = {"remaining_credits": remaining}
            if remaining == 0:
                patch["status"] = STATUS_DEPLETED
            updated = await self.store.update_if(
                KIND_BAR_CREDIT, credit.id,
                {
                    "status": STATUS_CONFIRMED,
                    "remaining_credits": credit.remaining_credits,
                },
                patch,
            )
            if updated is not None:
                logger.info("bar credit %s redeemed, %d left",
                            code, updated.remaining_credits)
                return {
                    "success": True,
                    "remaining": updated.remaining_credits,
                    "credit": record_to_dict(KIND_BAR_CREDIT, updated),
                }
        raise ConflictError("Bar station busy, please retry", reason="busy")

    # ----------------------------
    # RFID wristbands
    # ----------------------------
    async def link_wristband(self, code: str, tag_id: str) -> Dict[str, Any]:
        tag_id = (tag_id or "").strip()
        if not tag_id:
            raise ValidationError("rfid_tag_id is required")

        for _ in range(MAX_CAS_ATTEMPTS):
            ticket = await self._ticket_by_code(code)
            if ticket.status == STATUS_PENDING:
                raise _not_paid("Ticket")
            if ticket.status not in (STATUS_CONFIRMED, STATUS_SCANNED):
                raise _not_redeemable("Ticket", ticket.status)
            tags = list(ticket.rfid_tag_ids or [])
            if tag_id in tags:
                raise ConflictError("Wristband already linked to this ticket",
                                    reason="already_linked")
            cap = WRISTBAND_CAP.get(ticket.ticket_type, 1)
            if len(tags) >= cap:
                raise ConflictError(
                    f"{ticket.ticket_type} tickets take at most {cap} "
                    "wristband(s)", reason="wristband_limit", limit=cap,
                )
            updated = await self.store.update_if(
                KIND_TICKET, ticket.id,
                {"version": ticket.version},
                {"rfid_tag_ids": tags + [tag_id]},
            )
            if updated is not None:
                logger.info("wristband %s linked to %s",
                            tag_id, ticket.confirmation_code)
                return {
                    "success": True,
                    "ticket": record_to_dict(KIND_TICKET, updated),
                }
        raise ConflictError("Ticket busy, please retry", reason="busy")

    # ----------------------------
    # refunds
    # ----------------------------
    async def refund(self, kind: str, record_id: str, amount: Any,
                     reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Refund up to the record's total through its provider. A full refund
        ends in `refunded`, a partial one in `cancelled`; either way the
        record is no longer redeemable.
        """
        if kind not in REFUNDABLE:
            raise ValidationError(f"{kind} records cannot be refunded")
        what = "Ticket" if kind == KIND_TICKET else "Bar credit"
        refund = parse_money(amount, "refund_amount")
        record = await self.store.get(kind, record_id)
        if record is None:
            raise NotFoundError(f"{what} order not found")
        if refund <= 0:
            raise ValidationError("Refund amount must be positive")
        if refund > Decimal(record.total_cents) / 100:
            raise ValidationError("Refund amount exceeds total price")
        if record.status not in REFUNDABLE[kind]:
            if record.status == STATUS_PENDING:
                raise _not_paid(what)
            raise ConflictError(f"{what} is already {record.status}",
                                reason="not_refundable", status=record.status)
        if not record.provider_txn_id:
            raise ValidationError(
                f"No transaction ID found for this {what.lower()}"
            )

        adapter = self.adapters.get(record.provider)
        if adapter is None:
            raise ValidationError(
                f"unknown payment provider: {record.provider}"
            )
        refund_cents = to_cents(refund)

        # claim first: only one refund per record may reach the gateway
        claimed = await self.store.update_if(
            kind, record.id,
            {"status": record.status, "version": record.version},
            {"status": STATUS_REFUNDING},
        )
        if claimed is None:
            current = await self.store.get(kind, record.id) or record
            if current.status == STATUS_REFUNDING:
                raise ConflictError(f"{what} refund already in progress",
                                    reason="refund_in_progress")
            if current.status not in REFUNDABLE[kind]:
                raise ConflictError(f"{what} is already {current.status}",
                                    reason="not_refundable",
                                    status=current.status)
            raise ConflictError(f"{what} changed, please retry",
                                reason="refund_conflict",
                                status=current.status)

        try:
            reference = await adapter.refund(
                record.provider_txn_id, refund_cents, record.confirmation_code
            )
        except GatewayError:
            await self.store.update_if(
                kind, record.id, {"status": STATUS_REFUNDING},
                {"status": record.status},
            )
            logger.warning("refund on %s failed, restored to %s",
                           record.confirmation_code, record.status)
            raise

        patch: Dict[str, Any] = {
            "status": (
                STATUS_REFUNDED if refund_cents == record.total_cents
                else STATUS_CANCELLED
            ),
            "refund_cents": refund_cents,
            "refund_reason": reason or "",
            "refunded_at": now_ts(),
        }
        if kind == KIND_BAR_CREDIT:
            patch["remaining_credits"] = 0
        updated = await self.store.update_if(
            kind, record.id, {"status": STATUS_REFUNDING}, patch,
        )
        if updated is None:
            # money already went back; make the mismatch loud
            logger.error("refund %s issued for %s but its claim was lost",
                         reference, record.confirmation_code)
            raise ConflictError(f"{what} changed during refund",
                                reason="refund_conflict", reference=reference)
        logger.info("refunded %s on %s (%s)", refund,
                    record.confirmation_code, updated.status)
        return {
            "success": True,
            "message": "Refund processed successfully",
            "refund_amount": fmt_cents(refund_cents),
            "reference": reference,
            "record": record_to_dict(kind, updated),
        }

    async def search_refundable(self, search_type: str, value: str,
                                kind: str = KIND_TICKET) -> Dict[str, Any]:
        value = (value or "").strip()
        if not value:
            raise ValidationError("Search value required")
        if kind not in REFUNDABLE:
            raise ValidationError(f"{kind} records cannot be refunded")
        if search_type == "code":
            rows = await self.store.filter(kind, confirmation_code=value)
        elif search_type == "txn":
            rows = await self.store.filter(kind, provider_txn_id=value)
        else:
            raise ValidationError("searchType must be 'code' or 'txn'")
        return {"results": [record_to_dict(kind, r) for r in rows]}
