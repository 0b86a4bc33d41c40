"""
Moneris Checkout adapter.

Sessions are "preload" tickets; the browser launches the hosted checkout
widget with the ticket. Moneris has no metadata map and no webhook
signature, so the `order_no` we send is the record's confirmation code and
the callback channel is guarded by a shared token header instead.
"""
import json
import logging
import re
from typing import Dict, List, Mapping, Optional
from urllib.parse import quote

import httpx

from ..errors import GatewayError, ValidationError
from ..helpers import ct_equal, fmt_cents
from ..model.db import kind_from_code
from .base import (
    CheckoutSession, LineItem, PaymentAdapter, RecordRef, SessionStatus,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

TOKEN_HEADER = "x-moneris-token"

HOSTS = {
    "prod": "https://gateway.moneris.com",
    "qa": "https://gatewayt.moneris.com",
}

_RESPONSE_CODE_RE = re.compile(
    r"<response_?code>\s*(\d+)\s*</response_?code>", re.IGNORECASE
)


def is_approved(response_code) -> bool:
    # response codes 0..49 are approvals, anything else is a decline
    try:
        return int(str(response_code).strip()) < 50
    except (TypeError, ValueError):
        return False


class MonerisAdapter(PaymentAdapter):
    name = "moneris"

    def __init__(
        self,
        *,
        http: httpx.AsyncClient,
        store_id: Optional[str],
        api_token: Optional[str],
        checkout_id: Optional[str],
        environment: str = "prod",
        webhook_token: Optional[str] = None,
        allow_unsigned: bool = False,
        timeout: float = 10.0,
    ) -> None:
        self.http = http
        self.store_id = store_id
        self.api_token = api_token
        self.checkout_id = checkout_id
        self.environment = environment
        self.host = HOSTS.get(environment, HOSTS["prod"])
        self.webhook_token = webhook_token
        self.allow_unsigned = allow_unsigned
        self.timeout = timeout

    def _require_credentials(self) -> None:
        if not (self.store_id and self.api_token and self.checkout_id):
            raise GatewayError(
                "Payment provider is not configured", provider=self.name,
                provider_message="Moneris credentials not configured",
            )

    async def _post(self, url: str, **kw) -> httpx.Response:
        try:
            r = await self.http.post(url, timeout=self.timeout, **kw)
        except httpx.TimeoutException:
            raise GatewayError(
                "Payment provider timed out, please try again",
                provider=self.name, provider_message="timeout",
            )
        except httpx.HTTPError as e:
            raise GatewayError(
                "Payment provider is unreachable", provider=self.name,
                provider_message=str(e),
            ) from e
        if r.status_code >= 400:
            raise GatewayError(
                "Payment provider rejected the request", provider=self.name,
                provider_message=f"{r.status_code}: {r.text}",
            )
        return r

    async def _chkt_request(self, body: dict) -> dict:
        r = await self._post(
            f"{self.host}/chkt/request/request.php", json=body
        )
        try:
            return r.json()
        except ValueError:
            raise GatewayError(
                "Payment provider returned an invalid response",
                provider=self.name, provider_message=r.text,
            )

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
        self._require_credentials()
        order_no = metadata.get("confirmation_code")
        if not order_no:
            raise GatewayError(
                "Payment provider rejected the request", provider=self.name,
                provider_message="order_no (confirmation code) missing",
            )
        body = {
            "store_id": self.store_id,
            "api_token": self.api_token,
            "checkout_id": self.checkout_id,
            "txn_total": fmt_cents(amount_cents),
            "environment": self.environment,
            "action": "preload",
            "order_no": order_no,
            "cust_id": customer_email or "",
            "cart": {
                "items": [{
                    "description": li.description,
                    "unit_cost": fmt_cents(li.unit_cents),
                    "quantity": str(li.quantity),
                } for li in line_items],
                "subtotal": fmt_cents(amount_cents),
            },
        }
        if customer_email:
            body["contact_details"] = {"email": customer_email}

        result = await self._chkt_request(body)
        resp = result.get("response") or {}
        ticket = resp.get("ticket")
        if resp.get("success") not in (True, "true") or not ticket:
            raise GatewayError(
                "Failed to create payment page", provider=self.name,
                provider_message=str(result),
            )
        redirect = (
            f"{self.host}/chkt/index.php?ticket={quote(ticket)}"
            f"&redirect={quote(success_url, safe='')}"
        )
        return CheckoutSession(id=ticket, redirect_url=redirect, ticket=ticket)

    def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> dict:
        if self.webhook_token:
            token = headers.get(TOKEN_HEADER) or ""
            if not token or not ct_equal(token, self.webhook_token):
                raise ValidationError("Invalid signature")
        elif not self.allow_unsigned:
            raise ValidationError("Invalid signature")
        try:
            body = json.loads(payload.decode())
        except (ValueError, UnicodeDecodeError):
            raise ValidationError("Invalid JSON")
        if not isinstance(body, dict):
            raise ValidationError("Invalid JSON")
        return body

    def decode_event(self, event: dict) -> WebhookEvent:
        order_no = str(event.get("order_no") or "").strip()
        txn_num = event.get("txn_num")
        response_code = event.get("response_code")
        approved = bool(order_no) and is_approved(response_code)
        return WebhookEvent(
            provider=self.name,
            event_type="payment.approved" if approved else "payment.declined",
            approved=approved,
            event_id=f"moneris:{order_no}:{txn_num}" if txn_num else None,
            session_id=event.get("ticket"),
            provider_txn_id=str(txn_num) if txn_num else None,
            ref=RecordRef(
                kind=kind_from_code(order_no),
                confirmation_code=order_no or None,
            ),
        )

    async def fetch_status(self, session_id: str) -> SessionStatus:
        self._require_credentials()
        result = await self._chkt_request({
            "store_id": self.store_id,
            "api_token": self.api_token,
            "checkout_id": self.checkout_id,
            "ticket": session_id,
            "environment": self.environment,
            "action": "receipt",
        })
        resp = result.get("response") or {}
        receipt = resp.get("receipt") or {}
        txn = (receipt.get("cc") or {}).get("transaction_no") or \
            receipt.get("txn_num")
        return SessionStatus(
            paid=(
                resp.get("success") in (True, "true")
                and receipt.get("result") == "a"
            ),
            provider_txn_id=str(txn) if txn else None,
        )

    async def refund(
        self, provider_txn_id: str, amount_cents: int, order_no: str
    ) -> str:
        self._require_credentials()
        r = await self._post(
            f"{self.host}/gateway2/servlet/MpgRequest",
            data={
                "store_id": self.store_id,
                "api_token": self.api_token,
                "type": "refund",
                "order_id": order_no,
                "txn_number": provider_txn_id,
                "amount": fmt_cents(amount_cents),
                "crypt_type": "7",
            },
        )
        m = _RESPONSE_CODE_RE.search(r.text)
        if m is None or not is_approved(m.group(1)):
            logger.error("moneris refund declined for %s: %s", order_no, r.text)
            raise GatewayError(
                "Refund failed with payment processor", provider=self.name,
                provider_message=r.text,
            )
        return f"{order_no}:{m.group(1)}"
