import pytest

from rodeotix.errors import ConflictError, IntegrationError, NotFoundError
from rodeotix.fulfillment import render_bar_credit_email

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


async def test_ticket_confirmation_email_with_qr(paid, fulfillment, mailer,
                                                 store):
    ticket = await paid("ticket", quantity=2)
    await fulfillment.run("ticket", ticket)

    assert len(mailer.sent) == 1
    mail = mailer.sent[0]
    assert mail["to"] == "jo@example.com"
    assert ticket.confirmation_code in mail["subject"]
    assert ticket.confirmation_code in mail["html"]
    (attachment,) = mail["attachments"]
    assert attachment["filename"] == f"{ticket.confirmation_code}.png"
    assert attachment["content"].startswith(PNG_MAGIC)

    record = await store.get("ticket", ticket.id)
    assert record.confirmation_sent_at is not None
    assert record.status == "confirmed"


async def test_bar_credit_email_lists_credits(paid):
    credit = await paid("bar_credit", quantity=3)
    html = render_bar_credit_email(credit)
    assert "Bar Credits Confirmed" in html
    assert "$7.00" in html
    assert "$23.73" in html


async def test_email_failure_keeps_payment(paid, fulfillment, mailer, store):
    mailer.fail = True
    ticket = await paid("ticket")
    await fulfillment.run("ticket", ticket)

    record = await store.get("ticket", ticket.id)
    assert record.status == "confirmed"
    assert record.confirmation_sent_at is None


async def test_resend_reports_failures(paid, fulfillment, mailer):
    ticket = await paid("ticket")
    mailer.fail = True
    with pytest.raises(IntegrationError):
        await fulfillment.resend("ticket", ticket.confirmation_code)
    mailer.fail = False
    await fulfillment.resend("ticket", ticket.confirmation_code)
    assert len(mailer.sent) == 1


async def test_resend_requires_payment(buy, fulfillment):
    result = await buy("bar_credit", quantity=1)
    with pytest.raises(ConflictError) as exc:
        await fulfillment.resend("bar_credit", result["confirmation_code"])
    assert exc.value.reason == "pending_payment"
    with pytest.raises(NotFoundError):
        await fulfillment.resend("bar_credit", "BAR-NOPE-000000")


async def test_paid_order_ships(paid, fulfillment, shipping, store):
    order = await paid("merchandise",
                       items=[{"product_id": "hat", "quantity": 2}])
    await fulfillment.run("merchandise", order)

    assert len(shipping.shipments) == 1
    assert len(shipping.shipments[0]["packages"]) == 2
    record = await store.get("merchandise", order.id)
    assert record.status == "shipped"
    assert record.tracking_number == "TRK123"
    assert record.shipment_id == "shp_1"

    # shipping twice is a no-op
    again = await fulfillment.ship(record)
    assert again.status == "shipped"
    assert len(shipping.shipments) == 1


async def test_order_without_address_stays_paid(paid, fulfillment, store):
    order = await paid("merchandise", shipping_address=None)
    await fulfillment.run("merchandise", order)
    record = await store.get("merchandise", order.id)
    assert record.status == "paid"
