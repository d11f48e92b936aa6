import asyncio
import http.client

import pytest
import pytest_asyncio

import utils.payouts as payouts
from config.constants import LEDGER_COD_SETTLEMENT, LEDGER_PAYOUT, LEDGER_REFUND, PARTY_DELIVERY, PARTY_VENDOR
from factories import order_doc, partner_doc, vendor_doc
from models.ledger import LedgerStatus
from utils.commission import get_default_rate
from utils.dates import utcnow
from utils.errors import (
    AlreadyRefunded,
    GatewayError,
    InvalidPaymentDetails,
    LimitExceeded,
    NotFound,
    OrderNotFound,
    OutOfRange,
    RequestInProgress,
    ValidationError,
)
from utils.party_lock import PartyLocks
from utils.razorpay import RazorpayGateway
from utils.settlement_service import SettlementService, new_receipt_id


@pytest_asyncio.fixture
async def cod_partner(db):
    await db.delivery_persons.insert_one(partner_doc())
    await db.orders.insert_many([
        order_doc("o1", payment_mode="COD", total=3000),
        order_doc("o2", payment_mode="COD", total=2000),
    ])


@pytest_asyncio.fixture
async def vendor(db):
    await db.vendors.insert_one(vendor_doc())
    await db.orders.insert_one(order_doc("o1"))


def test_receipt_ids_are_readable_and_unique():
    first, second = new_receipt_id(), new_receipt_id()

    assert first.startswith("COD-")
    assert len(first.split("-")[2]) == 4
    assert first != second


# ==============================
# COD settlement
# ==============================

@pytest.mark.asyncio
async def test_cod_settlement_bounded_by_collected_cash(service, cod_partner):
    with pytest.raises(LimitExceeded) as exc:
        await service.record_cod_settlement("d1", 6000)
    assert exc.value.pending == 5000

    result = await service.record_cod_settlement("d1", 5000, order_ids=["o1", "o2"], actor_id="admin")

    assert result["orders_settled"] == 2
    assert result["receipt_id"].startswith("COD-")
    assert (await service.reconciler.pending_cod("d1")).pending == 0

    order = await service.db.orders.find_one({"_id": "o1"})
    assert order["cod_settled"] is True
    assert order["cod_settlement_id"] == result["ledger_id"]

    partner = await service.db.delivery_persons.find_one({"_id": "d1"})
    assert partner["cod_pending"] == 0
    assert await service.db.audit_logs.count_documents({"action": "COD_SETTLEMENT_RECORDED"}) == 1


@pytest.mark.asyncio
async def test_concurrent_cod_settlements_cannot_overdraw(service, cod_partner):
    results = await asyncio.gather(
        service.record_cod_settlement("d1", 3000),
        service.record_cod_settlement("d1", 3000),
        return_exceptions=True,
    )

    succeeded = [r for r in results if isinstance(r, dict)]
    rejected = [r for r in results if isinstance(r, LimitExceeded)]
    assert len(succeeded) == 1
    assert len(rejected) == 1
    assert await service.ledgers.sum_completed(LEDGER_COD_SETTLEMENT, party_id="d1") == 3000


@pytest.mark.asyncio
async def test_cod_settlement_rejects_foreign_or_settled_orders(service, db, cod_partner):
    await db.orders.insert_one(order_doc("o9", payment_mode="COD", delivery_person_id="d2", total=100))

    with pytest.raises(ValidationError):
        await service.record_cod_settlement("d1", 100, order_ids=["o9"])

    await service.record_cod_settlement("d1", 3000, order_ids=["o1"])
    with pytest.raises(ValidationError):
        await service.record_cod_settlement("d1", 100, order_ids=["o1"])


@pytest.mark.asyncio
async def test_cod_settlement_input_checks(service, cod_partner):
    with pytest.raises(ValidationError):
        await service.record_cod_settlement("d1", 0)
    with pytest.raises(NotFound):
        await service.record_cod_settlement("ghost", 100)


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [float("nan"), float("inf"), "NaN"])
async def test_non_finite_settlement_amount_rejected(service, db, cod_partner, amount):
    with pytest.raises(ValidationError):
        await service.record_cod_settlement("d1", amount)

    assert await db.cod_settlements.count_documents({}) == 0
    assert (await service.reconciler.pending_cod("d1")).pending == 5000


@pytest.mark.asyncio
async def test_replayed_request_id_returns_first_result(service, db, cod_partner):
    first = await service.record_cod_settlement("d1", 1000, request_id="req-1")
    again = await service.record_cod_settlement("d1", 1000, request_id="req-1")

    assert again == first
    assert await db.cod_settlements.count_documents({}) == 1


@pytest.mark.asyncio
async def test_failed_request_id_may_be_retried(service, cod_partner):
    with pytest.raises(LimitExceeded):
        await service.record_cod_settlement("d1", 9000, request_id="req-2")

    result = await service.record_cod_settlement("d1", 500, request_id="req-2")
    assert result["ledger_id"]


@pytest.mark.asyncio
async def test_reversing_cod_settlement_reopens_orders(service, db, cod_partner):
    result = await service.record_cod_settlement("d1", 3000, order_ids=["o1"])

    reversal_id = await service.reverse_entry(LEDGER_COD_SETTLEMENT, result["ledger_id"], "wrong partner")

    assert reversal_id != result["ledger_id"]
    assert (await service.reconciler.pending_cod("d1")).pending == 5000
    order = await db.orders.find_one({"_id": "o1"})
    assert order["cod_settled"] is False
    assert order["cod_settlement_id"] is None


# ==============================
# Payouts
# ==============================

@pytest.mark.asyncio
async def test_cash_payout_is_manual_and_completed(service, db, gateway, vendor):
    result = await service.record_payout(PARTY_VENDOR, "v1", 500, "cash")

    assert result["mode"] == "manual"
    assert (await service.ledgers.get(LEDGER_PAYOUT, result["ledger_id"])).method == "cash"
    assert result["status"] == "completed"
    assert gateway.payout_calls == []

    cached = await db.vendors.find_one({"_id": "v1"})
    assert cached["paid_amount"] == 500
    assert cached["pending_amount"] == 323


@pytest.mark.asyncio
async def test_payout_without_gateway_credentials_goes_manual(service, gateway, vendor):
    gateway.payouts_enabled = False

    result = await service.record_payout(PARTY_VENDOR, "v1", 200, "upi", upi_id="shop@upi")

    assert result["mode"] == "manual"
    assert result["status"] == "completed"

    entry = await service.ledgers.get(LEDGER_PAYOUT, result["ledger_id"])
    assert entry.method == "manual"
    assert entry.is_manual
    assert entry.upi_id == "shop@upi"


@pytest.mark.asyncio
async def test_gateway_payout_stays_pending_until_reconciled(service, gateway, vendor):
    result = await service.record_payout(
        PARTY_VENDOR,
        "v1",
        800,
        "bank_transfer",
        bank_details={"account_number": "123456789012", "ifsc_code": "hdfc0001234"},
    )

    assert result["mode"] == "gateway"
    assert result["status"] == "pending"
    assert result["external_payout_id"] == "pout_1"

    entry = await service.ledgers.get(LEDGER_PAYOUT, result["ledger_id"])
    assert entry.account_masked == "XXXXXXXX9012"
    assert entry.ifsc_code == "HDFC0001234"

    # the in-flight 800 is held back from the 823 owed
    with pytest.raises(LimitExceeded) as exc:
        await service.record_payout(PARTY_VENDOR, "v1", 100, "cash")
    assert exc.value.pending == 23

    reconciled = await service.reconcile_payout(result["ledger_id"])
    assert reconciled["status"] == "completed"
    assert (await service.reconciler.pending_payout(PARTY_VENDOR, "v1")).settled == 800


@pytest.mark.asyncio
async def test_rejected_payout_frees_the_amount(service, gateway, vendor):
    result = await service.record_payout(PARTY_VENDOR, "v1", 800, "upi", upi_id="shop@upi")
    gateway.remote_status = "reversed"

    reconciled = await service.reconcile_payout(result["ledger_id"])

    assert reconciled["status"] == "failed"
    assert (await service.reconciler.pending_payout(PARTY_VENDOR, "v1")).available == 823


@pytest.mark.asyncio
async def test_gateway_payout_failure_is_recorded_failed(service, gateway, vendor):
    gateway.fail_with = GatewayError("Insufficient balance in account")

    with pytest.raises(GatewayError) as exc:
        await service.record_payout(PARTY_VENDOR, "v1", 300, "upi", upi_id="shop@upi")

    entry = await service.ledgers.get(LEDGER_PAYOUT, exc.value.ledger_id)
    assert entry.status == LedgerStatus.FAILED
    assert entry.error_message == "Insufficient balance in account"
    assert (await service.reconciler.pending_payout(PARTY_VENDOR, "v1")).available == 823


@pytest.mark.asyncio
async def test_payout_details_are_checked(service, vendor):
    with pytest.raises(InvalidPaymentDetails):
        await service.record_payout(PARTY_VENDOR, "v1", 100, "bank_transfer", bank_details={"account_number": "1234"})
    with pytest.raises(InvalidPaymentDetails):
        await service.record_payout(PARTY_VENDOR, "v1", 100, "upi")
    with pytest.raises(ValidationError):
        await service.record_payout(PARTY_VENDOR, "v1", 100, "cheque")


@pytest.mark.asyncio
async def test_non_finite_payout_amount_rejected(service, db, gateway, vendor):
    with pytest.raises(ValidationError):
        await service.record_payout(PARTY_VENDOR, "v1", float("nan"), "cash")
    with pytest.raises(ValidationError):
        await service.record_payout(PARTY_VENDOR, "v1", float("-inf"), "upi", upi_id="shop@upi")

    assert await db.payouts.count_documents({}) == 0
    assert gateway.payout_calls == []


@pytest.mark.asyncio
async def test_delivery_payout_bounded_by_earnings(service, db):
    await db.delivery_persons.insert_one(partner_doc())
    await db.orders.insert_one(order_doc("o1", distance_km=5, delivery_fee=33, tip=7))

    with pytest.raises(LimitExceeded):
        await service.record_payout(PARTY_DELIVERY, "d1", 51, "cash")

    result = await service.record_payout(PARTY_DELIVERY, "d1", 50, "cash")
    assert result["status"] == "completed"


# ==============================
# Refunds
# ==============================

@pytest.mark.asyncio
async def test_cod_refund_skips_gateway(service, db, gateway):
    await db.orders.insert_one(order_doc("o1", payment_mode="COD", status="Cancelled", total=400))

    result = await service.process_refund("o1", 400, "Item missing")

    assert result["mode"] == "cod"
    assert result["status"] == "completed"
    assert gateway.refund_calls == []
    assert (await db.orders.find_one({"_id": "o1"}))["refund_status"] == "REFUNDED"


@pytest.mark.asyncio
async def test_failed_gateway_refund_leaves_order_untouched(service, db, gateway):
    await db.orders.insert_one(order_doc("o1", status="Cancelled", total=400, razorpay_payment_id="pay_1"))
    gateway.fail_with = GatewayError("Payment provider timed out", timed_out=True)

    with pytest.raises(GatewayError) as exc:
        await service.process_refund("o1", 400, "Customer cancelled")

    entry = await service.ledgers.get(LEDGER_REFUND, exc.value.ledger_id)
    assert entry.status == LedgerStatus.FAILED
    assert exc.value.timed_out
    assert "refund_status" not in await db.orders.find_one({"_id": "o1"})
    assert await db.audit_logs.count_documents({"action": "REFUND_FAILED"}) == 1


@pytest.mark.asyncio
async def test_online_refund_through_gateway(service, db, gateway):
    await db.orders.insert_one(order_doc("o1", status="Cancelled", total=500, razorpay_payment_id="pay_1"))

    partial = await service.process_refund("o1", 200, "Late delivery", refund_type="partial")

    assert partial["mode"] == "gateway"
    assert partial["external_refund_id"] == "rfnd_1"
    assert gateway.refund_calls == [("pay_1", 200)]

    with pytest.raises(LimitExceeded):
        await service.process_refund("o1", 400, "Rest of it", refund_type="partial")

    await service.process_refund("o1", 300, "Rest of it", refund_type="partial")
    with pytest.raises(AlreadyRefunded):
        await service.process_refund("o1", 1, "Once more")

    order = await db.orders.find_one({"_id": "o1"})
    assert order["refund_status"] == "REFUNDED"
    assert order["refund_amount"] == 500


@pytest.mark.asyncio
async def test_online_refund_without_gateway_keys_is_manual(service, db, gateway):
    gateway.refunds_enabled = False
    await db.orders.insert_one(order_doc("o1", status="Cancelled", total=500, razorpay_payment_id="pay_1"))

    result = await service.process_refund("o1", 500, "Customer cancelled")

    assert result["mode"] == "manual"
    assert gateway.refund_calls == []


@pytest.mark.asyncio
async def test_refund_input_checks(service, db):
    await db.orders.insert_one(order_doc("o1", status="Cancelled", total=500, refund_status="completed"))

    with pytest.raises(OrderNotFound):
        await service.process_refund("missing", 100, "nope")
    with pytest.raises(AlreadyRefunded):
        await service.process_refund("o1", 100, "legacy refund")
    with pytest.raises(ValidationError):
        await service.process_refund("o1", 100, "odd type", refund_type="store_credit")


@pytest.mark.asyncio
async def test_non_finite_refund_amount_rejected(service, db):
    await db.orders.insert_one(order_doc("o1", payment_mode="COD", status="Cancelled", total=400))

    with pytest.raises(ValidationError):
        await service.process_refund("o1", float("inf"), "Item missing")
    with pytest.raises(ValidationError):
        await service.process_refund("o1", float("nan"), "Item missing")

    assert await db.refunds.count_documents({}) == 0


@pytest.mark.asyncio
async def test_dropped_gateway_connection_records_failed_refund(db, monkeypatch):
    def dropped(req, timeout):
        raise http.client.RemoteDisconnected("Remote end closed connection without response")

    monkeypatch.setattr(payouts.request, "urlopen", dropped)
    gateway = RazorpayGateway(key_id="rzp_test", key_secret="secret", timeout=5)
    service = SettlementService(db, gateway=gateway, locks=PartyLocks(wait_seconds=2))
    await db.orders.insert_one(order_doc("o1", status="Cancelled", total=400, razorpay_payment_id="pay_1"))

    with pytest.raises(GatewayError) as exc:
        await service.process_refund("o1", 100, "Customer cancelled")

    assert exc.value.timed_out
    entry = await service.ledgers.get(LEDGER_REFUND, exc.value.ledger_id)
    assert entry.status == LedgerStatus.FAILED
    assert "refund_status" not in await db.orders.find_one({"_id": "o1"})


@pytest.mark.asyncio
async def test_reversed_refund_clears_order_flag(service, db):
    await db.orders.insert_one(order_doc("o1", payment_mode="COD", status="Cancelled", total=400))
    result = await service.process_refund("o1", 400, "Item missing")

    await service.reverse_entry(LEDGER_REFUND, result["ledger_id"], "Refund was never handed over")

    order = await db.orders.find_one({"_id": "o1"})
    assert order["refund_status"] == "none"
    assert order["refund_amount"] == 0


# ==============================
# Commission policy
# ==============================

@pytest.mark.asyncio
async def test_vendor_override_changes_payable(service, db, vendor):
    history_id = await service.set_commission_rate("v1", 10, "Festival promotion", actor_id="admin")

    assert history_id
    change = await db.commission_history.find_one({"vendor_id": "v1"})
    assert change["previous_rate"] == 15
    assert change["new_rate"] == 10

    stored = await db.vendors.find_one({"_id": "v1"})
    assert stored["custom_commission"] is True
    assert len(stored["commission_history"]) == 1
    assert (await service.reconciler.pending_payout(PARTY_VENDOR, "v1")).earned == 882


@pytest.mark.asyncio
async def test_commission_rate_bounds(service, db, vendor):
    with pytest.raises(OutOfRange):
        await service.set_commission_rate("v1", 101, "too high")
    with pytest.raises(OutOfRange):
        await service.set_default_commission_rate(-1)
    with pytest.raises(NotFound):
        await service.set_commission_rate("ghost", 10, "no such vendor")
    with pytest.raises(OutOfRange):
        await service.set_commission_rate("v1", float("nan"), "not a number")
    with pytest.raises(OutOfRange):
        await service.set_default_commission_rate(float("inf"))
    assert (await db.vendors.find_one({"_id": "v1"})).get("commission_rate") is None


@pytest.mark.asyncio
async def test_default_rate_applies_to_vendors_without_override(service, db, vendor):
    await service.set_default_commission_rate(20)

    assert await get_default_rate(db) == 20
    assert (await service.reconciler.pending_payout(PARTY_VENDOR, "v1")).earned == 764


@pytest.mark.asyncio
async def test_request_still_running_is_rejected(service, db, cod_partner):
    await db.idempotency_keys.insert_one({
        "key": "req-3",
        "scope": LEDGER_COD_SETTLEMENT,
        "status": "reserved",
        "response": None,
        "created_at": utcnow(),
    })

    with pytest.raises(RequestInProgress):
        await service.record_cod_settlement("d1", 100, request_id="req-3")
