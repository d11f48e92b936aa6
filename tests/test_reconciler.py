from datetime import date, datetime

import pytest

from config.constants import LEDGER_COD_SETTLEMENT, LEDGER_PAYOUT, LEDGER_REFUND, PARTY_DELIVERY, PARTY_VENDOR
from factories import order_doc, partner_doc, vendor_doc
from models.ledger import LedgerEntry, LedgerStatus
from utils.errors import NotFound, OrderNotFound, ValidationError
from utils.ledger_store import LedgerStore
from utils.reconciler import BalanceReconciler, PendingAmount


def _payout(amount, party_type=PARTY_VENDOR, party_id="v1", status=LedgerStatus.COMPLETED):
    return LedgerEntry(
        ledger_type=LEDGER_PAYOUT,
        party_type=party_type,
        party_id=party_id,
        amount=amount,
        method="cash",
        status=status,
    )


def test_pending_amount_clamps_but_keeps_sign():
    overpaid = PendingAmount(earned=100, settled=130)
    assert overpaid.pending == 0
    assert overpaid.signed == -30
    assert overpaid.is_overpaid

    in_flight = PendingAmount(earned=100, settled=20, in_flight=50)
    assert in_flight.pending == 80
    assert in_flight.available == 30


@pytest.mark.asyncio
async def test_vendor_pending_uses_effective_rate(db):
    await db.vendors.insert_one(vendor_doc())
    await db.orders.insert_many([order_doc("o1"), order_doc("o2", status="Cancelled")])
    reconciler = BalanceReconciler(db)

    pending = await reconciler.pending_payout(PARTY_VENDOR, "v1")
    assert pending.earned == 823

    await db.vendors.update_one({"_id": "v1"}, {"$set": {"custom_commission": True, "commission_rate": 10}})
    pending = await reconciler.pending_payout(PARTY_VENDOR, "v1")
    assert pending.earned == 882


@pytest.mark.asyncio
async def test_delivery_pending_includes_tips(db):
    await db.delivery_persons.insert_one(partner_doc())
    await db.orders.insert_many([
        order_doc("o1", distance_km=5, delivery_fee=33, tip=20),
        order_doc("o2", delivery_person_earnings=30),
    ])
    reconciler = BalanceReconciler(db)

    pending = await reconciler.pending_payout(PARTY_DELIVERY, "d1")
    assert pending.earned == 43 + 20 + 30


@pytest.mark.asyncio
async def test_unknown_party_raises(db):
    with pytest.raises(NotFound):
        await BalanceReconciler(db).pending_payout(PARTY_VENDOR, "nobody")


@pytest.mark.asyncio
async def test_cod_pending_counts_only_delivered_cod(db):
    await db.orders.insert_many([
        order_doc("o1", payment_mode="COD", total=3000),
        order_doc("o2", payment_mode="cash", total=2000),
        order_doc("o3", payment_mode="COD", total=900, status="OutForDelivery"),
        order_doc("o4", payment_mode="Online", total=700),
    ])
    await LedgerStore(db).append(LedgerEntry(
        ledger_type=LEDGER_COD_SETTLEMENT,
        party_type=PARTY_DELIVERY,
        party_id="d1",
        amount=1500,
        method="Cash",
        status=LedgerStatus.COMPLETED,
    ))

    pending = await BalanceReconciler(db).pending_cod("d1")
    assert pending.earned == 5000
    assert pending.pending == 3500


@pytest.mark.asyncio
async def test_refresh_balance_rebuilds_cached_fields(db):
    await db.vendors.insert_one(vendor_doc(paid_amount=9999, pending_amount=-1))
    await db.orders.insert_one(order_doc("o1"))
    await LedgerStore(db).append(_payout(300))

    fields = await BalanceReconciler(db).refresh_balance(PARTY_VENDOR, "v1")
    vendor = await db.vendors.find_one({"_id": "v1"})

    assert fields["paid_amount"] == 300
    assert vendor["paid_amount"] == 300
    assert vendor["pending_amount"] == 523
    assert vendor["total_earnings"] == 823


@pytest.mark.asyncio
async def test_overpaid_vendor_is_reported_as_anomaly(db):
    await db.vendors.insert_one(vendor_doc())
    await db.orders.insert_one(order_doc("o1"))
    await LedgerStore(db).append(_payout(900))
    reconciler = BalanceReconciler(db)

    summary = await reconciler.summary()
    statements = await reconciler.vendor_statements(summary)
    anomalies = await reconciler.anomalies(summary)

    assert statements[0]["pending_amount"] == 0
    assert statements[0]["signed_pending"] == -77
    assert anomalies == [{"kind": "vendor_overpaid", "party_id": "v1", "amount": -77}]


@pytest.mark.asyncio
async def test_cod_overview_lists_unsettled_orders(db):
    await db.delivery_persons.insert_one(partner_doc())
    await db.orders.insert_many([
        order_doc("o1", payment_mode="COD", total=300),
        order_doc("o2", payment_mode="COD", total=200, cod_settled=True),
    ])
    reconciler = BalanceReconciler(db)

    overview = await reconciler.cod_overview(await reconciler.summary())
    row = overview["delivery_partners"][0]

    assert row["cod_collected"] == 500
    assert row["pending_order_ids"] == ["o1"]
    assert overview["summary"]["partners_with_pending"] == 1


@pytest.mark.asyncio
async def test_pending_refunds_lists_paid_cancelled_online_orders(db):
    await db.orders.insert_many([
        order_doc("o1", status="Cancelled", total=400),
        order_doc("o2", status="not_responded", total=250),
        order_doc("o3", status="Cancelled", total=100, refund_status="REFUNDED"),
        order_doc("o4", status="Cancelled", payment_mode="COD"),
        order_doc("o5", status="Cancelled", payment_status="Pending"),
    ])
    await LedgerStore(db).append(LedgerEntry(
        ledger_type=LEDGER_REFUND,
        party_type="customer",
        party_id="c1",
        amount=150,
        method="razorpay",
        status=LedgerStatus.COMPLETED,
        order_id="o1",
    ))

    result = await BalanceReconciler(db).pending_refunds()
    rows = {r["order_id"]: r for r in result["pending_refunds"]}

    assert set(rows) == {"o1", "o2"}
    assert rows["o1"]["refundable"] == 250
    assert result["summary"]["not_responded"] == 1
    assert result["summary"]["total_amount"] == 500


@pytest.mark.asyncio
async def test_summary_survives_damaged_orders(db):
    await db.orders.insert_many([
        order_doc("o1"),
        order_doc("o2", subtotal="NaN", total=500),
        order_doc("o3", vendor_name=12345),
    ])

    summary = await BalanceReconciler(db).summary()

    assert summary.windows["all_time"].order_count == 3
    assert summary.windows["all_time"].revenue == 2500
    assert summary.partial_order_ids == ["o2"]


@pytest.mark.asyncio
async def test_gst_report_uses_local_calendar_days(db):
    await db.orders.insert_many([
        order_doc("o1", created_at=datetime(2024, 5, 31, 18, 29)),
        order_doc("o2", created_at=datetime(2024, 5, 31, 18, 30)),
        order_doc("o3", created_at=datetime(2024, 6, 30, 18, 29)),
        order_doc("o4", created_at=datetime(2024, 6, 30, 18, 30)),
        order_doc("o5", vendor_id="v2", vendor_name="Green Grocer", created_at=datetime(2024, 6, 10)),
        order_doc("o6", created_at=None),
        order_doc("o7", status="Cancelled", created_at=datetime(2024, 6, 10)),
    ])
    reconciler = BalanceReconciler(db)

    june = await reconciler.gst_report(date(2024, 6, 1), date(2024, 6, 30))
    assert june.totals.order_count == 3
    assert june.totals.gst == 81
    assert [m.month for m in june.monthly] == ["2024-06"]
    assert june.undated_order_ids == []

    june_v1 = await reconciler.gst_report(date(2024, 6, 1), date(2024, 6, 30), vendor_id="v1")
    assert [v.vendor_id for v in june_v1.vendors] == ["v1"]
    assert june_v1.totals.order_count == 2

    everything = await reconciler.gst_report()
    assert everything.totals.order_count == 6
    assert everything.undated_order_ids == ["o6"]

    with pytest.raises(ValidationError):
        await reconciler.gst_report(date(2024, 6, 30), date(2024, 6, 1))


@pytest.mark.asyncio
async def test_order_refund_history(db):
    await db.orders.insert_one(order_doc("o1", status="Cancelled", total=400))
    await LedgerStore(db).append(LedgerEntry(
        ledger_type=LEDGER_REFUND,
        party_type="customer",
        party_id="c1",
        amount=150,
        method="razorpay",
        status=LedgerStatus.COMPLETED,
        order_id="o1",
    ))
    reconciler = BalanceReconciler(db)

    history = await reconciler.order_refunds("o1")

    assert history["refunded_amount"] == 150
    assert history["refundable"] == 250
    assert [e.amount for e in history["refunds"]] == [150]
    with pytest.raises(OrderNotFound):
        await reconciler.order_refunds("missing")
