from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional


# ----------------------------
# Normalized shapes
# ----------------------------
@dataclass(frozen=True)
class LineItem:
    description: str
    unit_cents: int
    quantity: int = 1


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    # where the customer goes to pay (stripe/mock) ...
    redirect_url: Optional[str] = None
    # ... or the token a hosted widget is launched with (moneris)
    ticket: Optional[str] = None


@dataclass(frozen=True)
class RecordRef:
    """Everything a provider callback tells us about which record it means."""
    kind: Optional[str] = None
    record_id: Optional[str] = None
    confirmation_code: Optional[str] = None


@dataclass(frozen=True)
class SessionStatus:
    paid: bool
    # the reference refunds are issued against, when the provider has one
    provider_txn_id: Optional[str] = None


@dataclass(frozen=True)
class WebhookEvent:
    provider: str
    event_type: str
    approved: bool
    event_id: Optional[str] = None
    session_id: Optional[str] = None
    provider_txn_id: Optional[str] = None
    ref: RecordRef = field(default_factory=RecordRef)


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    name: str = ""

    @abstractmethod
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
    ) -> CheckoutSession: ...

    # raises ValidationError on a bad or missing signature
    @abstractmethod
    def verify_webhook(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> dict: ...

    @abstractmethod
    def decode_event(self, event: dict) -> WebhookEvent: ...

    # paid once the provider reports the session as charged
    @abstractmethod
    async def fetch_status(self, session_id: str) -> SessionStatus: ...

    # returns the provider's refund reference
    @abstractmethod
    async def refund(
        self, provider_txn_id: str, amount_cents: int, order_no: str
    ) -> str: ...


def line_items_total(items: List[LineItem]) -> int:
    return sum(li.unit_cents * li.quantity for li in items)
