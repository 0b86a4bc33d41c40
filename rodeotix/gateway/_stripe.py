import asyncio
import json
import logging
from typing import Dict, List, Mapping, Optional

import stripe

from ..errors import GatewayError, ValidationError
from ..model.db import kind_from_code
from .base import (
    CheckoutSession, LineItem, PaymentAdapter, RecordRef, SessionStatus,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"
COMPLETED = "checkout.session.completed"


class StripeAdapter(PaymentAdapter):
    name = "stripe"

    def __init__(self, *, api_key: Optional[str],
                 webhook_secret: Optional[str], timeout: float = 10.0) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout

    async def _call(self, fn, **params):
        # stripe-python is synchronous; keep it off the event loop
        if not self.api_key:
            raise GatewayError(
                "Payment provider is not configured", provider=self.name,
                provider_message="STRIPE_SECRET_KEY missing",
            )
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, api_key=self.api_key, **params),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise GatewayError(
                "Payment provider timed out, please try again",
                provider=self.name, provider_message="timeout",
            )
        except stripe.StripeError as e:
            raise GatewayError(
                "Payment provider rejected the request",
                provider=self.name, provider_message=str(e),
            ) from e

    async def create_session(
        self,
        *,
        amount_cents: int,
        currency: str,
        line_items: List[LineItem],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        params = dict(
            mode="payment",
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": li.description},
                    "unit_amount": li.unit_cents,
                },
                "quantity": li.quantity,
            } for li in line_items],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={k: str(v) for k, v in metadata.items()},
        )
        if customer_email:
            params["customer_email"] = customer_email
        session = await self._call(stripe.checkout.Session.create, **params)
        return CheckoutSession(id=session.id, redirect_url=session.url)

    def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        if not sig or not self.webhook_secret:
            raise ValidationError("Invalid signature")
        try:
            stripe.Webhook.construct_event(payload, sig, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe signature verification failed: %s", e)
            raise ValidationError("Invalid signature")
        except ValueError:
            raise ValidationError("Invalid JSON")
        # signature is good; hand back plain dicts
        return json.loads(payload.decode())

    def decode_event(self, event: dict) -> WebhookEvent:
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        meta = obj.get("metadata") or {}
        code = meta.get("confirmation_code")
        approved = (
            event_type == COMPLETED
            and obj.get("payment_status", "paid") != "unpaid"
        )
        return WebhookEvent(
            provider=self.name,
            event_type=event_type,
            approved=approved,
            event_id=event.get("id"),
            session_id=obj.get("id"),
            provider_txn_id=obj.get("payment_intent"),
            ref=RecordRef(
                kind=meta.get("record_kind") or kind_from_code(code or ""),
                record_id=meta.get("record_id"),
                confirmation_code=code,
            ),
        )

    async def fetch_status(self, session_id: str) -> SessionStatus:
        session = await self._call(
            stripe.checkout.Session.retrieve, id=session_id
        )
        return SessionStatus(
            paid=session.payment_status == "paid",
            provider_txn_id=session.payment_intent,
        )

    async def refund(
        self, provider_txn_id: str, amount_cents: int, order_no: str
    ) -> str:
        refund = await self._call(
            stripe.Refund.create,
            payment_intent=provider_txn_id,
            amount=amount_cents,
            metadata={"confirmation_code": order_no},
        )
        return refund.id
