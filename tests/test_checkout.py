import re

import httpx
import pytest
from sqlalchemy.exc import IntegrityError

from rodeotix.checkout import CheckoutService
from rodeotix.errors import GatewayError, ValidationError
from rodeotix.integrations.railway import RailwayCatalog
from rodeotix.model.db import KIND_TICKET

from .conftest import CUSTOMER, BrokenPay

CODE_RE = re.compile(r"^CONF-[A-Z0-9]+-[A-Z0-9]{6}$")


async def test_ticket_checkout_creates_pending_record(buy, store):
    result = await buy("ticket", quantity=3)

    assert CODE_RE.match(result["confirmation_code"])
    assert result["subtotal"] == "75.00"
    assert result["tax"] == "9.75"
    assert result["total"] == "84.75"
    assert result["currency"] == "cad"
    assert result["redirect_url"] == f"/mockpay/{result['session_id']}"

    record = await store.get_by_code(KIND_TICKET, result["confirmation_code"])
    assert record.status == "pending"
    assert record.total_cents == 8475
    assert record.unit_cents == 2500
    assert record.quantity == 3
    assert record.scanned is False
    assert record.gateway_session_id == result["session_id"]
    assert record.customer_email == "jo@example.com"
    assert record.provider == "mock"


async def test_family_ticket_uses_family_price(buy):
    result = await buy("ticket", ticket_type="family", quantity=1)
    assert result["subtotal"] == "60.00"
    assert result["total"] == "67.80"


async def test_bar_credit_checkout(buy, store):
    result = await buy("bar_credit", quantity=10)
    assert result["confirmation_code"].startswith("BAR-")
    assert result["total"] == "79.10"
    record = await store.get_by_code("bar_credit", result["confirmation_code"])
    assert record.remaining_credits == 10
    assert record.price_per_credit_cents == 700


async def test_merchandise_checkout_adds_flat_shipping(checkout, store):
    from .conftest import ADDRESS
    result = await checkout.initiate("merchandise", {
        "items": [{"product_id": "hat", "quantity": 2},
                  {"product_id": "shirt", "quantity": 1}],
        "shipping_address": ADDRESS,
    }, None)
    assert result["confirmation_code"].startswith("ORDER-")
    assert result["subtotal"] == "79.99"
    assert result["tax"] == "0.00"
    assert result["shipping"] == "5.00"
    assert result["total"] == "84.99"
    record = await store.get("merchandise", result["record_id"])
    # email falls back to the shipping address
    assert record.customer_email == "jo@example.com"
    assert [i["product_id"] for i in record.items] == ["hat", "shirt"]


@pytest.mark.parametrize("selection, customer", [
    ({"event_id": "evt-1", "ticket_type": "general", "quantity": 0},
     CUSTOMER),
    ({"event_id": "evt-1", "ticket_type": "vip", "quantity": 1}, CUSTOMER),
    ({"event_id": "nope", "ticket_type": "general", "quantity": 1},
     CUSTOMER),
    ({"event_id": "evt-1", "ticket_type": "general", "quantity": 1},
     {"name": "No Email"}),
])
async def test_invalid_ticket_checkout_creates_nothing(checkout, store,
                                                       selection, customer):
    with pytest.raises(ValidationError):
        await checkout.initiate("ticket", selection, customer)
    assert await store.filter(KIND_TICKET) == []


async def test_unknown_kind_rejected(checkout):
    with pytest.raises(ValidationError):
        await checkout.initiate("pony", {}, CUSTOMER)


async def test_empty_cart_rejected(checkout):
    with pytest.raises(ValidationError):
        await checkout.initiate("merchandise", {"items": []}, CUSTOMER)


async def test_gateway_failure_leaves_record_pending(store, catalog,
                                                     settings):
    service = CheckoutService(store=store, adapter=BrokenPay("s"),
                              catalog=catalog, settings=settings)
    with pytest.raises(GatewayError) as exc:
        await service.initiate("ticket", {
            "event_id": "evt-1", "ticket_type": "general", "quantity": 1,
        }, CUSTOMER)

    # raw provider text stays out of the response body
    assert "raw detail" not in str(exc.value.to_dict())
    rows = await store.filter(KIND_TICKET)
    assert len(rows) == 1
    assert rows[0].status == "pending"
    assert rows[0].gateway_session_id is None


async def test_catalog_html_response_is_a_gateway_error(store, mockpay,
                                                        settings):
    catalog = RailwayCatalog(
        http=httpx.AsyncClient(transport=httpx.MockTransport(
            lambda r: httpx.Response(200, text="<html>maintenance</html>")
        )),
        base_url="http://rw",
    )
    service = CheckoutService(store=store, adapter=mockpay, catalog=catalog,
                              settings=settings)
    with pytest.raises(GatewayError) as exc:
        await service.initiate("ticket", {
            "event_id": "evt-1", "ticket_type": "general", "quantity": 1,
        }, CUSTOMER)
    assert exc.value.status_code == 502
    assert await store.filter(KIND_TICKET) == []


async def test_code_collision_is_retried(checkout, store, monkeypatch):
    calls = []
    real_create = store.create

    async def flaky_create(kind, fields):
        calls.append(fields["confirmation_code"])
        if len(calls) == 1:
            raise IntegrityError("insert", {}, Exception("duplicate"))
        return await real_create(kind, fields)

    monkeypatch.setattr(store, "create", flaky_create)
    result = await checkout.initiate("bar_credit", {"quantity": 2}, CUSTOMER)
    assert len(calls) == 2
    assert result["confirmation_code"] == calls[1]


async def test_session_metadata_carries_record_identity(checkout, mockpay,
                                                        monkeypatch):
    seen = {}
    real = mockpay.create_session

    async def spy(**kw):
        seen.update(kw)
        return await real(**kw)

    monkeypatch.setattr(mockpay, "create_session", spy)
    result = await checkout.initiate("ticket", {
        "event_id": "evt-1", "ticket_type": "child", "quantity": 2,
    }, CUSTOMER)
    assert seen["metadata"] == {
        "record_kind": "ticket",
        "record_id": result["record_id"],
        "confirmation_code": result["confirmation_code"],
    }
    assert seen["amount_cents"] == 3390
    assert seen["success_url"].endswith(
        f"confirmation_code={result['confirmation_code']}"
    )
