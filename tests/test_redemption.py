import asyncio
from collections import Counter

import pytest

from rodeotix.errors import ConflictError, GatewayError, NotFoundError, \
    ValidationError


async def test_scan_confirmed_ticket(paid, redemption):
    ticket = await paid("ticket")
    out = await redemption.scan_ticket(ticket.confirmation_code)
    assert out["success"] is True
    assert out["ticket"]["status"] == "scanned"
    assert out["ticket"]["scanned"] is True
    assert out["event"]["title"] == "Holmdale Pro Rodeo"


async def test_second_scan_reports_when_first_happened(paid, redemption):
    ticket = await paid("ticket")
    first = await redemption.scan_ticket(ticket.confirmation_code)
    with pytest.raises(ConflictError) as exc:
        await redemption.scan_ticket(ticket.confirmation_code)
    assert exc.value.reason == "already_used"
    assert exc.value.details["scanned_at"] == first["ticket"]["scanned_at"]


async def test_concurrent_scans_admit_once(paid, redemption, store):
    ticket = await paid("ticket")
    results = await asyncio.gather(*[
        redemption.scan_ticket(ticket.confirmation_code) for _ in range(8)
    ], return_exceptions=True)

    wins = [r for r in results if isinstance(r, dict)]
    losses = [r for r in results if isinstance(r, ConflictError)]
    assert len(wins) == 1
    assert len(losses) == 7
    assert {e.reason for e in losses} == {"already_used"}
    record = await store.get("ticket", ticket.id)
    assert record.status == "scanned"


async def test_scan_pending_ticket(buy, redemption):
    result = await buy("ticket")
    with pytest.raises(ConflictError) as exc:
        await redemption.scan_ticket(result["confirmation_code"])
    assert exc.value.reason == "pending_payment"


async def test_scan_unknown_code(redemption):
    with pytest.raises(NotFoundError):
        await redemption.scan_ticket("CONF-NOPE-000000")
    with pytest.raises(ValidationError):
        await redemption.scan_ticket("  ")


async def test_scan_refunded_ticket(paid, redemption):
    ticket = await paid("ticket")
    await redemption.refund("ticket", ticket.id, "28.25")
    with pytest.raises(ConflictError) as exc:
        await redemption.scan_ticket(ticket.confirmation_code)
    assert exc.value.reason == "not_redeemable"


async def test_bar_credits_deplete_one_at_a_time(paid, redemption, store):
    credit = await paid("bar_credit", quantity=10)
    remaining = []
    for _ in range(10):
        out = await redemption.redeem_bar_credit(credit.confirmation_code)
        remaining.append(out["remaining"])
    assert remaining == list(range(9, -1, -1))

    with pytest.raises(ConflictError) as exc:
        await redemption.redeem_bar_credit(credit.confirmation_code)
    assert exc.value.reason == "depleted"
    record = await store.get("bar_credit", credit.id)
    assert record.status == "depleted"
    assert record.remaining_credits == 0


async def test_concurrent_redemptions_never_overdraw(paid, redemption, store):
    credit = await paid("bar_credit", quantity=3)
    results = await asyncio.gather(*[
        redemption.redeem_bar_credit(credit.confirmation_code)
        for _ in range(7)
    ], return_exceptions=True)

    wins = [r for r in results if isinstance(r, dict)]
    reasons = Counter(r.reason for r in results
                      if isinstance(r, ConflictError))
    assert len(wins) == 3
    assert reasons == Counter({"depleted": 4})
    assert sorted(r["remaining"] for r in wins) == [0, 1, 2]
    record = await store.get("bar_credit", credit.id)
    assert record.remaining_credits == 0


async def test_redeem_pending_bar_credit(buy, redemption):
    result = await buy("bar_credit", quantity=2)
    with pytest.raises(ConflictError) as exc:
        await redemption.redeem_bar_credit(result["confirmation_code"])
    assert exc.value.reason == "pending_payment"


async def test_redeem_unknown_code(redemption):
    with pytest.raises(NotFoundError):
        await redemption.redeem_bar_credit("BAR-NOPE-000000")


# ----------------------------
# refunds
# ----------------------------
async def test_partial_refund_cancels_ticket(paid, redemption, store):
    ticket = await paid("ticket", quantity=4)  # 100.00 + 13.00 HST
    out = await redemption.refund("ticket", ticket.id, "60", "rain out")
    assert out["refund_amount"] == "60.00"
    assert out["reference"].startswith("mock_refund_")
    record = await store.get("ticket", ticket.id)
    assert record.status == "cancelled"
    assert record.refund_cents == 6000
    assert record.refund_reason == "rain out"
    assert record.refunded_at is not None


async def test_full_refund_marks_refunded(paid, redemption):
    ticket = await paid("ticket", quantity=4)
    out = await redemption.refund("ticket", ticket.id, "113.00")
    assert out["record"]["status"] == "refunded"


@pytest.mark.parametrize("amount", ["150", "0", "-5", "abc"])
async def test_refund_amount_is_bounded(paid, redemption, store, amount):
    ticket = await paid("ticket", quantity=4)
    with pytest.raises(ValidationError):
        await redemption.refund("ticket", ticket.id, amount)
    record = await store.get("ticket", ticket.id)
    assert record.status == "confirmed"
    assert record.refund_cents is None


async def test_refund_twice_conflicts(paid, redemption):
    ticket = await paid("ticket")
    await redemption.refund("ticket", ticket.id, "10")
    with pytest.raises(ConflictError) as exc:
        await redemption.refund("ticket", ticket.id, "10")
    assert exc.value.reason == "not_refundable"


def gated_refunds(monkeypatch, mockpay):
    """Hold MockPay refunds until `release` is set; record every call."""
    calls = []
    started = asyncio.Event()
    release = asyncio.Event()
    original = mockpay.refund

    async def refund(txn, cents, order_no):
        calls.append((txn, cents, order_no))
        started.set()
        await release.wait()
        return await original(txn, cents, order_no)

    monkeypatch.setattr(mockpay, "refund", refund)
    return calls, started, release


async def test_concurrent_refunds_pay_out_once(paid, redemption, store,
                                               mockpay, monkeypatch):
    ticket = await paid("ticket", quantity=4)
    calls, started, release = gated_refunds(monkeypatch, mockpay)

    async def staff_refund():
        return await redemption.refund("ticket", ticket.id, "113.00")

    tasks = [asyncio.create_task(staff_refund()) for _ in range(2)]
    await started.wait()
    await asyncio.sleep(0.05)
    release.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    wins = [r for r in results if isinstance(r, dict)]
    losses = [r for r in results if isinstance(r, ConflictError)]
    assert len(wins) == 1 and len(losses) == 1
    assert losses[0].reason in ("refund_in_progress", "not_refundable")
    assert len(calls) == 1
    record = await store.get("ticket", ticket.id)
    assert record.status == "refunded"
    assert record.refund_cents == 11300


async def test_ticket_cannot_be_scanned_mid_refund(paid, redemption, store,
                                                   mockpay, monkeypatch):
    ticket = await paid("ticket")
    _, started, release = gated_refunds(monkeypatch, mockpay)

    task = asyncio.create_task(
        redemption.refund("ticket", ticket.id, "28.25")
    )
    await started.wait()
    assert (await store.get("ticket", ticket.id)).status == "refunding"
    with pytest.raises(ConflictError) as exc:
        await redemption.scan_ticket(ticket.confirmation_code)
    assert exc.value.reason == "not_redeemable"

    release.set()
    out = await task
    assert out["record"]["status"] == "refunded"


async def test_gateway_refund_failure_restores_status(paid, redemption, store,
                                                      mockpay, monkeypatch):
    ticket = await paid("ticket")

    async def declined(txn, cents, order_no):
        raise GatewayError("Refund failed with payment processor",
                           provider="mock", provider_message="declined")

    with monkeypatch.context() as m:
        m.setattr(mockpay, "refund", declined)
        with pytest.raises(GatewayError):
            await redemption.refund("ticket", ticket.id, "28.25")
    record = await store.get("ticket", ticket.id)
    assert record.status == "confirmed"
    assert record.refund_cents is None

    out = await redemption.refund("ticket", ticket.id, "28.25")
    assert out["record"]["status"] == "refunded"


async def test_refund_pending_ticket(buy, redemption):
    result = await buy("ticket")
    with pytest.raises(ConflictError) as exc:
        await redemption.refund("ticket", result["record_id"], "1")
    assert exc.value.reason == "pending_payment"


async def test_refund_bar_credit_zeroes_balance(paid, redemption, store):
    credit = await paid("bar_credit", quantity=4)
    await redemption.redeem_bar_credit(credit.confirmation_code)
    out = await redemption.refund("bar_credit", credit.id, "10.00", "closed")
    assert out["record"]["status"] == "cancelled"
    record = await store.get("bar_credit", credit.id)
    assert record.remaining_credits == 0
    assert record.refund_reason == "closed"
    with pytest.raises(ConflictError):
        await redemption.redeem_bar_credit(credit.confirmation_code)


async def test_merchandise_is_not_refundable_here(paid, redemption):
    order = await paid("merchandise")
    with pytest.raises(ValidationError):
        await redemption.refund("merchandise", order.id, "1")


async def test_search_refundable(paid, redemption):
    ticket = await paid("ticket")
    by_code = await redemption.search_refundable(
        "code", ticket.confirmation_code
    )
    by_txn = await redemption.search_refundable("txn", "mock_txn_1")
    assert [r["id"] for r in by_code["results"]] == [ticket.id]
    assert ticket.id in [r["id"] for r in by_txn["results"]]
    with pytest.raises(ValidationError):
        await redemption.search_refundable("email", "jo@example.com")


# ----------------------------
# wristbands
# ----------------------------
async def test_individual_ticket_takes_one_wristband(paid, redemption):
    ticket = await paid("ticket", ticket_type="general")
    out = await redemption.link_wristband(ticket.confirmation_code, "TAG-1")
    assert out["ticket"]["rfid_tag_ids"] == ["TAG-1"]

    with pytest.raises(ConflictError) as exc:
        await redemption.link_wristband(ticket.confirmation_code, "TAG-1")
    assert exc.value.reason == "already_linked"

    with pytest.raises(ConflictError) as exc:
        await redemption.link_wristband(ticket.confirmation_code, "TAG-2")
    assert exc.value.reason == "wristband_limit"


async def test_family_ticket_takes_four_wristbands(paid, redemption):
    ticket = await paid("ticket", ticket_type="family")
    results = await asyncio.gather(*[
        redemption.link_wristband(ticket.confirmation_code, f"TAG-{i}")
        for i in range(6)
    ], return_exceptions=True)
    wins = [r for r in results if isinstance(r, dict)]
    limited = [r for r in results if isinstance(r, ConflictError)]
    assert len(wins) == 4
    assert {e.reason for e in limited} == {"wristband_limit"}


async def test_wristband_needs_paid_ticket(buy, redemption):
    result = await buy("ticket")
    with pytest.raises(ConflictError) as exc:
        await redemption.link_wristband(result["confirmation_code"], "TAG-1")
    assert exc.value.reason == "pending_payment"
