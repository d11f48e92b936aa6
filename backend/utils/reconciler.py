import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel

from config.constants import (
    LEDGER_COD_SETTLEMENT,
    LEDGER_PAYOUT,
    LEDGER_REFUND,
    PARTY_COLLECTIONS,
    PARTY_DELIVERY,
    PARTY_VENDOR,
    PAYMENT_MODE_COD,
    PAYMENT_MODE_ONLINE,
    REFUNDABLE_CANCELLED_STATUSES,
)
from models.ledger import LedgerStatus
from models.order import Order
from utils.aggregator import GstReport, Summary, aggregate, gst_report
from utils.commission import effective_rate, get_default_rate, load_vendor_rates
from utils.dates import isoformat, local_day_start, utcnow
from utils.errors import NotFound, OrderNotFound, ValidationError
from utils.ledger_store import LedgerStore
from utils.money import order_breakdown, round_money
from utils.order_store import OrderStore

logger = logging.getLogger(__name__)


class PendingAmount(BaseModel):
    """
    earned/collected minus settled/paid, recomputed live.

    `signed` is never clamped so an over-payment stays visible;
    `available` also holds back gateway payouts still awaiting confirmation.
    """

    earned: float
    settled: float
    in_flight: float = 0

    @property
    def signed(self) -> float:
        return round_money(self.earned - self.settled)

    @property
    def pending(self) -> float:
        return max(0, self.signed)

    @property
    def available(self) -> float:
        return max(0, round_money(self.signed - self.in_flight))

    @property
    def is_overpaid(self) -> bool:
        return self.signed < 0


class BalanceReconciler:
    def __init__(self, db, orders: Optional[OrderStore] = None, ledgers: Optional[LedgerStore] = None):
        self.db = db
        self.orders = orders or OrderStore(db)
        self.ledgers = ledgers or LedgerStore(db)

    # ==============================
    # Parties
    # ==============================

    async def get_party(self, party_type: str, party_id: str) -> dict:
        collection = PARTY_COLLECTIONS.get(party_type)
        if collection is None:
            raise ValidationError(f"Unknown party type: {party_type}")
        party = await self.db[collection].find_one({"_id": party_id})
        if not party:
            label = "Vendor" if party_type == PARTY_VENDOR else "Delivery partner"
            raise NotFound(f"{label} {party_id} not found")
        return party

    # ==============================
    # Live recomputation
    # ==============================

    async def cod_collected(self, partner_id: str) -> float:
        orders = await self.orders.scan(
            delivery_person_id=partner_id,
            payment_mode=PAYMENT_MODE_COD,
            settleable_only=True,
        )
        return round_money(sum(o.total for o in orders))

    async def total_earnings(self, party_type: str, party_id: str, vendor: Optional[dict] = None) -> float:
        if party_type == PARTY_VENDOR:
            if vendor is None:
                vendor = await self.get_party(PARTY_VENDOR, party_id)
            rate = effective_rate(vendor, await get_default_rate(self.db)) / 100
            orders = await self.orders.scan(vendor_id=party_id, settleable_only=True)
            return round_money(sum(order_breakdown(o, rate).vendor_payable for o in orders))

        if party_type == PARTY_DELIVERY:
            orders = await self.orders.scan(delivery_person_id=party_id, settleable_only=True)
            return round_money(sum(
                order_breakdown(o).partner_earning + o.tip for o in orders
            ))

        raise ValidationError(f"Unknown party type: {party_type}")

    # ==============================
    # Pending amounts
    # ==============================

    async def pending_cod(self, partner_id: str) -> PendingAmount:
        collected = await self.cod_collected(partner_id)
        settled = await self.ledgers.sum_completed(LEDGER_COD_SETTLEMENT, party_id=partner_id)
        return PendingAmount(earned=collected, settled=settled)

    async def pending_payout(self, party_type: str, party_id: str, vendor: Optional[dict] = None) -> PendingAmount:
        earned = await self.total_earnings(party_type, party_id, vendor=vendor)
        paid = await self.ledgers.sum_completed(LEDGER_PAYOUT, party_id=party_id, party_type=party_type)
        in_flight = await self.ledgers.sum_in_flight(LEDGER_PAYOUT, party_id, party_type=party_type)

        pending = PendingAmount(earned=earned, settled=paid, in_flight=in_flight)
        if pending.is_overpaid:
            logger.warning(
                "PAYOUT_OVERPAID party_type=%s party=%s earned=%s paid=%s",
                party_type, party_id, earned, paid,
            )
        return pending

    async def refundable(self, order: Order) -> PendingAmount:
        refunded = await self.ledgers.sum_completed(LEDGER_REFUND, order_id=order.order_id)
        return PendingAmount(earned=round_money(order.total), settled=refunded)

    # ==============================
    # Cached projection (ledger wins)
    # ==============================

    async def refresh_balance(self, party_type: str, party_id: str) -> dict:
        """
        Rebuild the balance fields on the party document from the ledgers and
        live orders. Never increments: whatever was cached is overwritten.
        """
        party = await self.get_party(party_type, party_id)
        payout = await self.pending_payout(party_type, party_id, vendor=party if party_type == PARTY_VENDOR else None)

        fields = {
            "total_earnings": payout.earned,
            "paid_amount": payout.settled,
            "pending_amount": payout.pending,
            "balance_refreshed_at": utcnow(),
        }

        if party_type == PARTY_DELIVERY:
            cod = await self.pending_cod(party_id)
            fields.update({
                "cod_collected": cod.earned,
                "cod_settled": cod.settled,
                "cod_pending": cod.signed,
            })

        await self.db[PARTY_COLLECTIONS[party_type]].update_one(
            {"_id": party_id},
            {"$set": {**fields, "updated_at": utcnow()}},
        )
        logger.info(
            "BALANCE_REFRESHED party_type=%s party=%s paid=%s pending=%s",
            party_type, party_id, payout.settled, payout.pending,
        )
        return fields

    # ==============================
    # Read models for the admin UI
    # ==============================

    async def summary(self, as_of: Optional[datetime] = None, rank_by: str = "revenue") -> Summary:
        rates, default_rate = await load_vendor_rates(self.db)
        orders = await self.orders.scan()
        return aggregate(
            orders,
            as_of or datetime.now(timezone.utc),
            rates=rates,
            default_rate=default_rate,
            rank_by=rank_by,
        )

    async def gst_report(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        vendor_id: Optional[str] = None,
    ) -> GstReport:
        """
        GST on commission for settleable orders created between `start` and
        `end`, both inclusive, as business-timezone calendar days. Without
        either bound, undated orders are included.
        """
        if start and end and start > end:
            raise ValidationError("start date must not be after end date")

        date_range = None
        if start or end:
            date_range = (
                local_day_start(start) if start else datetime.min.replace(tzinfo=timezone.utc),
                local_day_start(end + timedelta(days=1)) if end else datetime.max.replace(tzinfo=timezone.utc),
            )

        rates, default_rate = await load_vendor_rates(self.db)
        orders = await self.orders.scan(settleable_only=True, vendor_id=vendor_id, date_range=date_range)
        report = gst_report(orders, rates=rates, default_rate=default_rate)

        logger.info(
            "GST_REPORT start=%s end=%s vendor=%s orders=%s gst=%s",
            start, end, vendor_id, report.totals.order_count, report.totals.gst,
        )
        return report

    async def _party_names(self, party_type: str) -> dict[str, dict]:
        collection = self.db[PARTY_COLLECTIONS[party_type]]
        return {str(p["_id"]): p async for p in collection.find({})}

    async def vendor_statements(self, summary: Summary) -> list[dict]:
        paid = await self.ledgers.sum_completed_by_party(LEDGER_PAYOUT, party_type=PARTY_VENDOR)
        vendors = await self._party_names(PARTY_VENDOR)

        statements = []
        for vendor_id in sorted(set(summary.vendors) | set(paid)):
            totals = summary.vendors.get(vendor_id)
            earned = totals.net_payable if totals else 0
            pending = PendingAmount(earned=earned, settled=paid.get(vendor_id, 0))
            doc = vendors.get(vendor_id, {})
            statements.append({
                "vendor_id": vendor_id,
                "shop_name": doc.get("shop_name") or (totals.vendor_name if totals else "Unknown"),
                "order_count": totals.order_count if totals else 0,
                "total_revenue": totals.revenue if totals else 0,
                "commission_rate": totals.commission_rate if totals else None,
                "commission_amount": totals.commission if totals else 0,
                "gst_on_commission": totals.gst if totals else 0,
                "small_order_fees": totals.small_order_fees if totals else 0,
                "delivery_fee_profit": totals.delivery_margin if totals else 0,
                "total_platform_earning": totals.platform_earning if totals else 0,
                "net_payable": earned,
                "paid_amount": pending.settled,
                "pending_amount": pending.pending,
                "signed_pending": pending.signed,
                "last_order_date": isoformat(totals.last_activity_at) if totals else None,
            })

        statements.sort(key=lambda s: (-s["pending_amount"], s["vendor_id"]))
        return statements

    async def delivery_statements(self, summary: Summary) -> list[dict]:
        paid = await self.ledgers.sum_completed_by_party(LEDGER_PAYOUT, party_type=PARTY_DELIVERY)
        partners = await self._party_names(PARTY_DELIVERY)

        statements = []
        for partner_id in sorted(set(summary.delivery_partners) | set(paid)):
            totals = summary.delivery_partners.get(partner_id)
            earned = totals.earnings if totals else 0
            pending = PendingAmount(earned=earned, settled=paid.get(partner_id, 0))
            doc = partners.get(partner_id, {})
            statements.append({
                "delivery_person_id": partner_id,
                "full_name": doc.get("full_name") or (totals.delivery_person_name if totals else "Unknown"),
                "delivery_count": totals.deliveries if totals else 0,
                "total_earnings": earned,
                "tips": totals.tips if totals else 0,
                "paid_amount": pending.settled,
                "pending_amount": pending.pending,
                "signed_pending": pending.signed,
                "last_delivery_date": isoformat(totals.last_activity_at) if totals else None,
            })

        statements.sort(key=lambda s: (-s["pending_amount"], s["delivery_person_id"]))
        return statements

    async def cod_overview(self, summary: Summary) -> dict:
        settled = await self.ledgers.sum_completed_by_party(LEDGER_COD_SETTLEMENT)
        partners = await self._party_names(PARTY_DELIVERY)

        rows = []
        for partner_id in sorted(set(summary.delivery_partners) | set(settled)):
            totals = summary.delivery_partners.get(partner_id)
            collected = totals.cod_collected if totals else 0
            pending = PendingAmount(earned=collected, settled=settled.get(partner_id, 0))
            if not collected and not pending.signed:
                continue
            doc = partners.get(partner_id, {})
            rows.append({
                "delivery_person_id": partner_id,
                "full_name": doc.get("full_name") or (totals.delivery_person_name if totals else "Unknown"),
                "phone_number": doc.get("phone_number", ""),
                "cod_collected": collected,
                "cod_settled": pending.settled,
                "cod_pending": pending.signed,
                "pending_order_ids": totals.unsettled_cod_order_ids if totals else [],
                "pending_orders": len(totals.unsettled_cod_order_ids) if totals else 0,
                "total_cod_orders": totals.cod_orders if totals else 0,
            })

        rows.sort(key=lambda r: (-r["cod_pending"], r["delivery_person_id"]))

        return {
            "delivery_partners": rows,
            "summary": {
                "total_cod_collected": round_money(sum(r["cod_collected"] for r in rows)),
                "total_cod_settled": round_money(sum(r["cod_settled"] for r in rows)),
                "total_cod_pending": round_money(sum(r["cod_pending"] for r in rows)),
                "partners_with_pending": sum(1 for r in rows if r["cod_pending"] > 0),
            },
        }

    async def anomalies(self, summary: Summary) -> list[dict]:
        """Parties that were paid or settled more than they earned or collected."""
        found = []
        for row in await self.vendor_statements(summary):
            if row["signed_pending"] < 0:
                found.append({"kind": "vendor_overpaid", "party_id": row["vendor_id"], "amount": row["signed_pending"]})
        for row in await self.delivery_statements(summary):
            if row["signed_pending"] < 0:
                found.append({
                    "kind": "delivery_overpaid",
                    "party_id": row["delivery_person_id"],
                    "amount": row["signed_pending"],
                })
        for row in (await self.cod_overview(summary))["delivery_partners"]:
            if row["cod_pending"] < 0:
                found.append({"kind": "cod_oversettled", "party_id": row["delivery_person_id"], "amount": row["cod_pending"]})

        for item in found:
            logger.warning("LEDGER_ANOMALY kind=%s party=%s amount=%s", item["kind"], item["party_id"], item["amount"])
        return found

    async def pending_refunds(self) -> dict:
        """Paid online orders that were cancelled or never accepted and still owe the customer money."""
        candidates = await self.orders.scan(
            status=REFUNDABLE_CANCELLED_STATUSES,
            payment_mode=PAYMENT_MODE_ONLINE,
        )

        rows = []
        for order in candidates:
            if (order.payment_status or "").lower() != "paid" or order.is_refunded:
                continue
            remaining = await self.refundable(order)
            if remaining.pending <= 0:
                continue
            rows.append({
                "order_id": order.order_id,
                "customer_id": order.customer_id,
                "customer_name": order.customer_name or "Unknown",
                "total": order.total,
                "refundable": remaining.pending,
                "status": order.status,
                "payment_reference": order.payment_reference,
                "cancelled_at": isoformat(order.cancelled_at),
            })

        rows.sort(key=lambda r: (r["cancelled_at"] is None, _neg_iso(r["cancelled_at"]), r["order_id"]))

        return {
            "pending_refunds": rows,
            "summary": {
                "total_pending_refunds": len(rows),
                "total_amount": round_money(sum(r["refundable"] for r in rows)),
                "cancelled": sum(1 for r in rows if r["status"] == "Cancelled"),
                "not_responded": sum(1 for r in rows if r["status"] == "NotResponded"),
            },
        }

    async def refund_history(self) -> dict:
        entries = await self.ledgers.list_recent(LEDGER_REFUND)
        return {
            "refunds": entries,
            "summary": {
                "total_refunds": len(entries),
                "total_amount": round_money(sum(e.amount for e in entries if e.status == LedgerStatus.COMPLETED)),
                "pending": sum(1 for e in entries if e.status == LedgerStatus.PENDING),
                "successful": sum(1 for e in entries if e.status == LedgerStatus.COMPLETED),
                "failed": sum(1 for e in entries if e.status == LedgerStatus.FAILED),
            },
        }

    async def order_refunds(self, order_id: str) -> dict:
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")

        entries = await self.ledgers.list_by_order(order_id)
        remaining = await self.refundable(order)
        return {
            "order_id": order_id,
            "total": order.total,
            "refund_status": order.refund_status,
            "refunded_amount": remaining.settled,
            "refundable": remaining.pending,
            "refunds": entries,
        }


def _neg_iso(value: Optional[str]) -> float:
    # newest cancellation first
    if value is None:
        return 0
    return -datetime.fromisoformat(value).timestamp()
