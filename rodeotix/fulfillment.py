"""
Side effects that follow a confirmed payment: confirmation email with QR code
(tickets, bar credits) and shipment creation (merchandise).

None of this may undo the payment transition. `run()` swallows and logs
collaborator failures; `resend()` is the admin retry path and reports them.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Protocol

from jinja2 import DictLoader, Environment, select_autoescape

from .errors import ConflictError, IntegrationError, NotFoundError
from .helpers import fmt_cents, now_ts
from .integrations.qr import qr_payload, render_qr_png
from .integrations.shipping import DEFAULT_PACKAGE, package_for
from .model.db import (
    KIND_BAR_CREDIT, KIND_MERCHANDISE, KIND_TICKET,
    SETTLED_STATUSES, STATUS_PAID, STATUS_SHIPPED, STATUS_PENDING,
)
from .model.records import RecordStore

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    async def send_email(self, to: str, subject: str, html: str,
                         attachments: Optional[List[Dict]] = None) -> str: ...


class Shipping(Protocol):
    async def get_rates(self, destination: Dict[str, Any],
                        packages: List[Dict[str, Any]]) -> List[Dict]: ...

    async def create_shipment(self, *, order_id: str,
                              address: Dict[str, Any],
                              packages: List[Dict[str, Any]],
                              service_code: str = "standard") -> Dict: ...


TEMPLATES = {
    "ticket.html": r"""<!DOCTYPE html>
<html><body style="font-family:Arial,sans-serif;color:#333">
  <h1>Your tickets are confirmed!</h1>
  <p>Hi {{ r.customer_name or "there" }},</p>
  <p>Thank you for your purchase. Show the attached QR code at the gate.</p>
  <table>
    <tr><td><b>Confirmation code</b></td><td>{{ r.confirmation_code }}</td></tr>
    <tr><td><b>Ticket type</b></td><td>{{ r.ticket_type|title }}</td></tr>
    <tr><td><b>Quantity</b></td><td>{{ r.quantity }}</td></tr>
    <tr><td><b>Total paid</b></td><td>${{ total }}</td></tr>
  </table>
</body></html>
""",
    "bar_credit.html": r"""<!DOCTYPE html>
<html><body style="font-family:Arial,sans-serif;color:#333">
  <h1>Bar Credits Confirmed!</h1>
  <p>Hi {{ r.customer_name or "there" }},</p>
  <p>Your bar credits are ready to use. Show the attached QR code or your
     confirmation code at the bar; each credit is good for one drink.</p>
  <table>
    <tr><td><b>Confirmation code</b></td><td>{{ r.confirmation_code }}</td></tr>
    <tr><td><b>Credits purchased</b></td><td>{{ r.quantity }}</td></tr>
    <tr><td><b>Credits available</b></td><td>{{ r.remaining_credits }}</td></tr>
    <tr><td><b>Price per credit</b></td><td>${{ per_credit }}</td></tr>
    <tr><td><b>Total paid</b></td><td>${{ total }}</td></tr>
  </table>
  <p style="color:#78716c">This is an automated confirmation email.</p>
</body></html>
""",
}

_env = Environment(
    loader=DictLoader(TEMPLATES),
    autoescape=select_autoescape(["html"]),
)


def render_ticket_email(r) -> str:
    return _env.get_template("ticket.html").render(
        r=r, total=fmt_cents(r.total_cents)
    )


def render_bar_credit_email(r) -> str:
    return _env.get_template("bar_credit.html").render(
        r=r, total=fmt_cents(r.total_cents),
        per_credit=fmt_cents(r.price_per_credit_cents),
    )


class Fulfillment:
    def __init__(self, *, store: RecordStore, mailer: Mailer,
                 shipping: Shipping, catalog=None) -> None:
        self.store = store
        self.mailer = mailer
        self.shipping = shipping
        self.catalog = catalog

    async def run(self, kind: str, record) -> None:
        """Background entry point after a first-time confirmation."""
        try:
            if kind == KIND_MERCHANDISE:
                await self.ship(record)
            else:
                await self.send_confirmation(kind, record)
        except IntegrationError as e:
            logger.error("fulfillment for %s %s failed (payment kept): %s",
                         kind, record.confirmation_code, e.message)

    async def resend(self, kind: str, code: str):
        record = await self.store.get_by_code(kind, code)
        if record is None:
            raise NotFoundError("Confirmation code not found")
        if record.status == STATUS_PENDING:
            raise ConflictError("Payment has not been received yet",
                                reason="pending_payment")
        if kind == KIND_MERCHANDISE:
            return await self.ship(record)
        return await self.send_confirmation(kind, record)

    # ----------------------------
    # email
    # ----------------------------
    async def send_confirmation(self, kind: str, record):
        if not record.customer_email:
            raise IntegrationError("record has no customer email")
        if kind == KIND_TICKET:
            subject = (
                f"Your Tickets - Confirmation #{record.confirmation_code}"
            )
            html = render_ticket_email(record)
            payload = qr_payload(kind, {
                "confirmation_code": record.confirmation_code,
                "event_id": record.event_id,
                "quantity": record.quantity,
            })
        elif kind == KIND_BAR_CREDIT:
            subject = (
                f"Your Bar Credits - Confirmation #{record.confirmation_code}"
            )
            html = render_bar_credit_email(record)
            payload = qr_payload(kind, {
                "confirmation_code": record.confirmation_code,
                "quantity": record.quantity,
            })
        else:
            raise IntegrationError(f"no confirmation email for {kind}")

        png = render_qr_png(payload)
        message_id = await self.mailer.send_email(
            record.customer_email, subject, html,
            attachments=[{
                "filename": f"{record.confirmation_code}.png",
                "content": png,
            }],
        )
        logger.info("confirmation email for %s %s sent (%s)",
                    kind, record.confirmation_code, message_id)
        updated = await self.store.update(
            kind, record.id, {"confirmation_sent_at": now_ts()}
        )
        return updated or record

    # ----------------------------
    # shipment
    # ----------------------------
    async def packages_for(self, items) -> List[Dict[str, Any]]:
        packages: List[Dict[str, Any]] = []
        for item in items or []:
            product = None
            if self.catalog is not None:
                try:
                    product = await self.catalog.get_product(
                        item["product_id"]
                    )
                except IntegrationError as e:
                    logger.warning("product %s lookup failed: %s",
                                   item["product_id"], e.message)
            for _ in range(int(item.get("quantity", 1))):
                packages.append(package_for(product or {}))
        return packages or [dict(DEFAULT_PACKAGE)]

    async def ship(self, record):
        if record.status not in SETTLED_STATUSES[KIND_MERCHANDISE]:
            raise ConflictError("Payment has not been received yet",
                                reason="pending_payment")
        if record.status == STATUS_SHIPPED:
            return record
        if not record.shipping_address:
            raise IntegrationError("order has no shipping address")
        shipment = await self.shipping.create_shipment(
            order_id=record.id,
            address=record.shipping_address,
            packages=await self.packages_for(record.items),
        )
        updated = await self.store.update_if(
            KIND_MERCHANDISE, record.id,
            {"status": STATUS_PAID},
            {
                "status": STATUS_SHIPPED,
                "shipment_id": shipment.get("id"),
                "tracking_number": shipment.get("tracking_number"),
            },
        )
        if updated is None:
            logger.warning("order %s changed state while shipping",
                           record.confirmation_code)
            return await self.store.get(KIND_MERCHANDISE, record.id)
        logger.info("order %s shipped, tracking=%s",
                    record.confirmation_code, updated.tracking_number)
        return updated
