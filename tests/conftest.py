import json
import uuid
from decimal import Decimal

import pytest

from rodeotix.checkout import CheckoutService
from rodeotix.config import Settings
from rodeotix.errors import GatewayError, IntegrationError
from rodeotix.fulfillment import Fulfillment
from rodeotix.gateway import MockPay
from rodeotix.gateway._mock import SIGNATURE_HEADER, sign
from rodeotix.infra.sql import create_schema, make_async_engine
from rodeotix.integrations.shipping import sort_rates
from rodeotix.model import webhookevents
from rodeotix.model.db import Base
from rodeotix.model.records import RecordStore
from rodeotix.reconcile import WebhookService
from rodeotix.redemption import RedemptionService

MOCK_SECRET = "test-secret"

EVENTS = {
    "evt-1": {
        "id": "evt-1",
        "title": "Holmdale Pro Rodeo",
        "general_price": "25.00",
        "child_price": "15.00",
        "family_price": "60.00",
    },
}

PRODUCTS = {
    "hat": {"id": "hat", "name": "Rodeo Hat", "price": "30.00", "weight": 1},
    "shirt": {"id": "shirt", "name": "Event Shirt", "price": "19.99"},
}


class FakeCatalog:
    def __init__(self):
        self.events = dict(EVENTS)
        self.products = dict(PRODUCTS)

    async def get_event(self, event_id):
        return self.events.get(event_id)

    async def get_product(self, product_id):
        return self.products.get(product_id)


class FakeMailer:
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send_email(self, to, subject, html, attachments=None):
        if self.fail:
            raise IntegrationError("email delivery failed")
        self.sent.append({
            "to": to, "subject": subject, "html": html,
            "attachments": attachments or [],
        })
        return f"msg_{len(self.sent)}"


class FakeShipping:
    def __init__(self):
        self.shipments = []

    async def get_rates(self, destination, packages):
        return sort_rates([
            {"service_name": "Express", "service_code": "xp", "rate": "24.50"},
            {"service_name": "Ground", "service_code": "gr", "rate": "11.00"},
        ])

    async def create_shipment(self, *, order_id, address, packages,
                              service_code="standard"):
        self.shipments.append({"order_id": order_id, "packages": packages})
        return {"id": f"shp_{len(self.shipments)}", "tracking_number": "TRK123"}


class BrokenPay(MockPay):
    async def create_session(self, **kw):
        raise GatewayError("Payment provider rejected the request",
                           provider=self.name,
                           provider_message="card_declined: raw detail")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/rodeo.db",
        app_url="http://test",
        payment_provider="mock",
        mock_secret=MOCK_SECRET,
        mock_webhook_url="http://test/payments/webhook/mock",
        staff_password="staff-pw",
        staff_token="staff-token",
        tax_rate=Decimal("0.13"),
        bar_credit_price=Decimal("7.00"),
        merch_flat_shipping=Decimal("5.00"),
    )


@pytest.fixture
async def db(settings):
    engine, sessions, _, gated = make_async_engine(settings.database_url)
    await create_schema(engine, Base.metadata)
    yield sessions, gated
    await engine.dispose()


@pytest.fixture
def store(db):
    sessions, gated = db
    return RecordStore(sessions=sessions, gated=gated)


@pytest.fixture
def dedup(db):
    sessions, gated = db
    return webhookevents.new_store("sql", sessions=sessions, gated=gated)


@pytest.fixture
def mockpay():
    return MockPay(MOCK_SECRET)


@pytest.fixture
def adapters(mockpay):
    return {"mock": mockpay}


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def shipping():
    return FakeShipping()


@pytest.fixture
def checkout(store, mockpay, catalog, settings):
    return CheckoutService(store=store, adapter=mockpay, catalog=catalog,
                           settings=settings)


@pytest.fixture
def webhooks(store, dedup, adapters):
    return WebhookService(store=store, dedup=dedup, adapters=adapters)


@pytest.fixture
def redemption(store, adapters, catalog):
    return RedemptionService(store=store, adapters=adapters, catalog=catalog)


@pytest.fixture
def fulfillment(store, mailer, shipping, catalog):
    return Fulfillment(store=store, mailer=mailer, shipping=shipping,
                       catalog=catalog)


CUSTOMER = {"name": "Jo Rider", "email": "jo@example.com", "phone": "555-0100"}
ADDRESS = {
    "name": "Jo Rider", "email": "jo@example.com", "street": "1 Main St",
    "city": "Ottawa", "province": "ON", "postal_code": "K1A0B1",
    "country": "CA",
}


@pytest.fixture
def buy(checkout):
    """Initiate a checkout for `kind` with sensible defaults."""
    async def _buy(kind, **selection):
        if kind == "ticket":
            selection = {"event_id": "evt-1", "ticket_type": "general",
                         "quantity": 1, **selection}
        elif kind == "bar_credit":
            selection = {"quantity": 1, **selection}
        elif kind == "merchandise":
            selection = {"items": [{"product_id": "hat", "quantity": 1}],
                         "shipping_address": ADDRESS, **selection}
        return await checkout.initiate(kind, selection, dict(CUSTOMER))
    return _buy


def mock_event(result, *, t="succeeded", event_id=None, txn="mock_txn_1",
               metadata=True):
    """Signed MockPay callback for a checkout result."""
    event = {
        "type": f"payment.{t}",
        "payment_session_id": result["session_id"],
        "transaction_id": txn,
        "idempotency_key": event_id or f"evt_{uuid.uuid4().hex}",
    }
    if metadata:
        event["metadata"] = {
            "record_kind": result["kind"],
            "record_id": result["record_id"],
            "confirmation_code": result["confirmation_code"],
        }
    payload = json.dumps(event).encode()
    return payload, {SIGNATURE_HEADER: sign(MOCK_SECRET, payload)}


@pytest.fixture
def paid(buy, webhooks):
    """Checkout and settle through a signed webhook; returns the record."""
    async def _paid(kind, **selection):
        result = await buy(kind, **selection)
        payload, headers = mock_event(result)
        outcome = await webhooks.handle_webhook("mock", payload, headers)
        assert outcome.first_confirmation
        return outcome.record
    return _paid
