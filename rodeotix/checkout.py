"""
Checkout initiation: price a selection, create a `pending` record, open a
provider checkout session and remember the session id on the record.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.exc import IntegrityError

from .config import Settings
from .errors import GatewayError, IntegrationError, ValidationError
from .gateway import LineItem, PaymentAdapter
from .helpers import (
    fmt_cents, is_valid_email, new_confirmation_code, parse_money,
    positive_int, quantize, to_cents,
)
from .model.db import (
    CODE_PREFIX, KIND_BAR_CREDIT, KIND_MERCHANDISE, KIND_TICKET,
    STATUS_PENDING, TICKET_TYPES,
)
from .model.records import RecordStore

logger = logging.getLogger(__name__)

CODE_ATTEMPTS = 3


class Catalog(Protocol):
    async def get_event(self, event_id: str) -> Optional[Dict[str, Any]]: ...

    async def get_product(
        self, product_id: str
    ) -> Optional[Dict[str, Any]]: ...


@dataclass
class Totals:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal


def compute_totals(unit_price: Decimal, quantity: int, *,
                   tax_rate: Decimal = Decimal("0"),
                   shipping: Decimal = Decimal("0")) -> Totals:
    subtotal = quantize(unit_price * quantity)
    tax = quantize(subtotal * tax_rate)
    shipping = quantize(shipping)
    return Totals(subtotal, tax, shipping, subtotal + tax + shipping)


@dataclass
class Quote:
    totals: Totals
    line_items: List[LineItem]
    # kind-specific record columns
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Customer:
    name: str
    email: str
    phone: str


def parse_customer(info: Optional[Dict[str, Any]], *,
                   email_required: bool) -> Customer:
    info = info or {}
    if not isinstance(info, dict):
        raise ValidationError("customer_info must be an object")
    email = (info.get("email") or "").strip()
    if email_required and not is_valid_email(email):
        raise ValidationError(
            "customer email is required and must be a valid email address"
        )
    if email and not is_valid_email(email):
        raise ValidationError("customer email is not a valid email address")
    return Customer(
        name=(info.get("name") or "").strip(),
        email=email,
        phone=(info.get("phone") or "").strip(),
    )


class CheckoutService:
    def __init__(self, *, store: RecordStore, adapter: PaymentAdapter,
                 catalog: Catalog, settings: Settings) -> None:
        self.store = store
        self.adapter = adapter
        self.catalog = catalog
        self.settings = settings

    # ----------------------------
    # pricing per product line
    # ----------------------------
    async def _lookup(self, what: str, fn, ident: str) -> Dict[str, Any]:
        try:
            found = await fn(ident)
        except IntegrationError as e:
            raise GatewayError(
                f"Could not load {what} details, please try again",
                provider="catalog", provider_message=str(e),
            ) from e
        if not found:
            raise ValidationError(f"{what} not found: {ident}")
        return found

    async def _quote_ticket(self, selection: Dict[str, Any]) -> Quote:
        event_id = str(selection.get("event_id") or "").strip()
        ticket_type = (selection.get("ticket_type") or "general").lower()
        if not event_id:
            raise ValidationError("event_id is required")
        if ticket_type not in TICKET_TYPES:
            raise ValidationError("invalid ticket type")
        quantity = positive_int(selection.get("quantity"))

        event = await self._lookup("event", self.catalog.get_event, event_id)
        raw_price = event.get(f"{ticket_type}_price")
        if raw_price in (None, "", 0, "0"):
            raise ValidationError(
                f"no price set for {ticket_type} tickets on this event"
            )
        unit = parse_money(raw_price, "ticket price")
        if unit <= 0:
            raise ValidationError("ticket price must be positive")

        totals = compute_totals(unit, quantity, tax_rate=self.settings.tax_rate)
        title = event.get("title") or event.get("name") or "Event"
        lines = [LineItem(
            f"{title} - {ticket_type.title()} ticket", to_cents(unit), quantity
        )]
        if totals.tax:
            lines.append(LineItem(self._tax_label(), to_cents(totals.tax), 1))
        return Quote(totals, lines, {
            "event_id": event_id,
            "ticket_type": ticket_type,
            "quantity": quantity,
            "unit_cents": to_cents(unit),
            "tax_cents": to_cents(totals.tax),
            "scanned": False,
            "rfid_tag_ids": [],
        })

    async def _quote_merchandise(self, selection: Dict[str, Any]) -> Quote:
        items = selection.get("items")
        if not items or not isinstance(items, list):
            raise ValidationError("No items in cart")
        lines: List[LineItem] = []
        stored: List[Dict[str, Any]] = []
        subtotal = Decimal("0")
        for item in items:
            if not isinstance(item, dict) or not item.get("product_id"):
                raise ValidationError("every cart item needs a product_id")
            pid = str(item["product_id"])
            quantity = positive_int(item.get("quantity", 1))
            product = await self._lookup(
                "product", self.catalog.get_product, pid
            )
            if product.get("price") in (None, ""):
                raise ValidationError(
                    f"Product {product.get('name', pid)} is not configured "
                    "for purchase"
                )
            unit = parse_money(product["price"], "product price")
            if unit <= 0:
                raise ValidationError("product price must be positive")
            name = product.get("name") or pid
            subtotal += unit * quantity
            lines.append(LineItem(name, to_cents(unit), quantity))
            stored.append({
                "product_id": pid, "name": name,
                "unit_cents": to_cents(unit), "quantity": quantity,
            })

        shipping = self.settings.merch_flat_shipping
        totals = compute_totals(subtotal, 1, shipping=shipping)
        if totals.shipping:
            lines.append(LineItem("Shipping", to_cents(totals.shipping), 1))
        address = selection.get("shipping_address")
        if address is not None and not isinstance(address, dict):
            raise ValidationError("shipping_address must be an object")
        return Quote(totals, lines, {
            "items": stored,
            "shipping_cents": to_cents(totals.shipping),
            "shipping_address": address,
        })

    async def _quote_bar_credit(self, selection: Dict[str, Any]) -> Quote:
        quantity = positive_int(selection.get("quantity"))
        unit = self.settings.bar_credit_price
        totals = compute_totals(unit, quantity, tax_rate=self.settings.tax_rate)
        lines = [LineItem("Bar Credit", to_cents(unit), quantity)]
        if totals.tax:
            lines.append(LineItem(self._tax_label(), to_cents(totals.tax), 1))
        return Quote(totals, lines, {
            "quantity": quantity,
            "remaining_credits": quantity,
            "price_per_credit_cents": to_cents(unit),
            "tax_cents": to_cents(totals.tax),
        })

    def _tax_label(self) -> str:
        pct = quantize(self.settings.tax_rate * 100).normalize()
        return f"HST ({pct:f}%)"

    # ----------------------------
    # initiateCheckout
    # ----------------------------
    async def initiate(self, kind: str, selection: Dict[str, Any],
                       customer_info: Optional[Dict[str, Any]]) -> Dict:
        if not isinstance(selection, dict):
            raise ValidationError("selection must be an object")
        if kind == KIND_TICKET:
            quote = await self._quote_ticket(selection)
        elif kind == KIND_MERCHANDISE:
            quote = await self._quote_merchandise(selection)
        elif kind == KIND_BAR_CREDIT:
            quote = await self._quote_bar_credit(selection)
        else:
            raise ValidationError(f"unknown checkout kind: {kind}")

        info = dict(customer_info or {})
        if kind == KIND_MERCHANDISE and not info.get("email"):
            address = quote.fields.get("shipping_address") or {}
            info.setdefault("email", address.get("email"))
            info.setdefault("name", address.get("name"))
        customer = parse_customer(
            info, email_required=kind != KIND_MERCHANDISE
        )

        record = await self._create_pending(kind, quote, customer)
        code = record.confirmation_code
        amount_cents = to_cents(quote.totals.total)

        try:
            session = await self.adapter.create_session(
                amount_cents=amount_cents,
                currency=self.settings.currency,
                line_items=quote.line_items,
                success_url=self.success_url(kind, code),
                cancel_url=self.cancel_url(kind),
                metadata={
                    "record_kind": kind,
                    "record_id": record.id,
                    "confirmation_code": code,
                },
                customer_email=customer.email or None,
            )
        except GatewayError as e:
            # the record stays pending; nothing will ever confirm it
            logger.error(
                "gateway %s failed for %s %s (left pending): %s",
                e.provider or self.adapter.name, kind, code,
                e.provider_message,
            )
            raise

        linked = await self.store.update_if(
            kind, record.id,
            {"status": STATUS_PENDING, "gateway_session_id": None},
            {"gateway_session_id": session.id},
        )
        if linked is None:
            logger.error("could not link session %s to %s %s",
                         session.id, kind, code)
            raise GatewayError("Could not start checkout, please try again")

        logger.info("checkout %s %s created, session=%s total=%s",
                    kind, code, session.id, quote.totals.total)
        return {
            "kind": kind,
            "record_id": record.id,
            "confirmation_code": code,
            "session_id": session.id,
            "redirect_url": session.redirect_url,
            "checkout_ticket": session.ticket,
            "subtotal": str(quote.totals.subtotal),
            "tax": str(quote.totals.tax),
            "shipping": str(quote.totals.shipping),
            "total": fmt_cents(amount_cents),
            "currency": self.settings.currency,
        }

    async def _create_pending(self, kind: str, quote: Quote,
                              customer: Customer):
        fields = {
            "status": STATUS_PENDING,
            "customer_name": customer.name,
            "customer_email": customer.email,
            "customer_phone": customer.phone,
            "total_cents": to_cents(quote.totals.total),
            "currency": self.settings.currency,
            "provider": self.adapter.name,
            **quote.fields,
        }
        # codes are random; a collision only costs one more attempt
        for attempt in range(1, CODE_ATTEMPTS + 1):
            fields["confirmation_code"] = new_confirmation_code(
                CODE_PREFIX[kind]
            )
            try:
                return await self.store.create(kind, fields)
            except IntegrityError:
                logger.warning("confirmation code collision on %s (try %d)",
                               kind, attempt)
        raise GatewayError("Could not start checkout, please try again")

    def success_url(self, kind: str, code: str) -> str:
        base = self.settings.app_url
        if kind == KIND_BAR_CREDIT:
            return f"{base}/BuyBarCredits?code={code}"
        return f"{base}/checkout-success?confirmation_code={code}"

    def cancel_url(self, kind: str) -> str:
        base = self.settings.app_url
        if kind == KIND_BAR_CREDIT:
            return f"{base}/BuyBarCredits"
        return f"{base}/checkout-cancel"
