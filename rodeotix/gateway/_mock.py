from typing import Dict, List, Mapping, Optional
import uuid
import hmac
import hashlib
import base64
import json

from ..errors import GatewayError, ValidationError
from ..model.db import kind_from_code
from .base import (
    CheckoutSession, LineItem, PaymentAdapter, RecordRef, SessionStatus,
    WebhookEvent,
    line_items_total,
)

SIGNATURE_HEADER = "x-mockpay-signature"


def sign(secret: str, payload: bytes) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    Local stand-in provider: sessions are just ids, the `/mockpay` pages emit
    HMAC-signed `payment.<kind>` events at the webhook endpoint.
    """
    name = "mock"

    def __init__(self, secret: str) -> None:
        self.secret = secret
        # session id -> transaction id, filled in by the payment page
        self.charged: Dict[str, str] = {}

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
        if amount_cents <= 0:
            raise GatewayError(
                "Payment provider rejected the request", provider=self.name,
                provider_message=f"invalid amount {amount_cents}",
            )
        if line_items_total(line_items) != amount_cents:
            raise GatewayError(
                "Payment provider rejected the request", provider=self.name,
                provider_message="line items do not add up to amount",
            )
        psid = f"mock_{uuid.uuid4().hex}"
        return CheckoutSession(id=psid, redirect_url=f"/mockpay/{psid}")

    def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        expected = sign(self.secret, payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise ValidationError("Invalid signature")
        try:
            event = json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Invalid JSON")
        if not isinstance(event, dict):
            raise ValidationError("Invalid JSON")
        return event

    def decode_event(self, event: dict) -> WebhookEvent:
        # payment.succeeded | payment.failed | payment.canceled
        event_type = event.get("type", "")
        meta = event.get("metadata") or {}
        code = meta.get("confirmation_code")
        return WebhookEvent(
            provider=self.name,
            event_type=event_type,
            approved=event_type == "payment.succeeded",
            event_id=event.get("idempotency_key"),
            session_id=event.get("payment_session_id"),
            provider_txn_id=event.get("transaction_id"),
            ref=RecordRef(
                kind=meta.get("record_kind") or kind_from_code(code or ""),
                record_id=meta.get("record_id"),
                confirmation_code=code,
            ),
        )

    async def fetch_status(self, session_id: str) -> SessionStatus:
        txn = self.charged.get(session_id)
        return SessionStatus(paid=txn is not None, provider_txn_id=txn)

    async def refund(
        self, provider_txn_id: str, amount_cents: int, order_no: str
    ) -> str:
        if amount_cents <= 0:
            raise GatewayError(
                "Refund failed with payment processor", provider=self.name,
                provider_message=f"invalid amount {amount_cents}",
            )
        return f"mock_refund_{uuid.uuid4().hex[:12]}"
