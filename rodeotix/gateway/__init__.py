from typing import Dict

import httpx

from ..config import Settings
from .base import (
    CheckoutSession, LineItem, PaymentAdapter, RecordRef, SessionStatus,
    WebhookEvent, line_items_total,
)
from ._mock import MockPay
from ._moneris import MonerisAdapter
from ._stripe import StripeAdapter


# Factory: every provider gets an adapter so webhooks, refunds and status
# checks work for records created under any of them; `checkout_adapter`
# picks the one new sessions go to.
def new_adapters(settings: Settings,
                 http: httpx.AsyncClient) -> Dict[str, PaymentAdapter]:
    return {
        "stripe": StripeAdapter(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            timeout=settings.gateway_timeout,
        ),
        "moneris": MonerisAdapter(
            http=http,
            store_id=settings.moneris_store_id,
            api_token=settings.moneris_api_token,
            checkout_id=settings.moneris_checkout_id,
            environment=settings.moneris_environment,
            webhook_token=settings.moneris_webhook_token,
            allow_unsigned=settings.moneris_allow_unsigned,
            timeout=settings.gateway_timeout,
        ),
        "mock": MockPay(settings.mock_secret),
    }


def checkout_adapter(settings: Settings,
                     adapters: Dict[str, PaymentAdapter]) -> PaymentAdapter:
    adapter = adapters.get(settings.payment_provider)
    if adapter is None:
        raise RuntimeError(
            f"unknown PAYMENT_PROVIDER: {settings.payment_provider}"
        )
    return adapter


__all__ = [
    "CheckoutSession", "LineItem", "PaymentAdapter", "RecordRef",
    "SessionStatus", "WebhookEvent", "line_items_total", "MockPay",
    "MonerisAdapter", "StripeAdapter", "new_adapters", "checkout_adapter",
]
