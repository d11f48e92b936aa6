"""
Earnings aggregation.

One fold over the order set produces every projection the back office shows
at the same time (platform windows, per-vendor and per-partner totals,
customer activity, trends, rankings), so numbers displayed side by side always
come from the same snapshot. Nothing is cached between calls.
"""
import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from config.constants import (
    DAILY_TREND_DAYS,
    DEFAULT_COMMISSION_RATE,
    GST_RATE,
    MONTHLY_TREND_MONTHS,
    TOP_PERFORMERS_LIMIT,
)
from models.order import Order
from utils.dates import month_key, previous_months, to_local, window_starts
from utils.money import OrderBreakdown, order_breakdown, round_money

logger = logging.getLogger(__name__)

WINDOW_ALL_TIME = "all_time"
RANK_KEYS = {"orders", "revenue"}


class PeriodTotals(BaseModel):
    order_count: int = 0
    revenue: float = 0
    commission: float = 0
    gst: float = 0
    small_order_fees: float = 0
    delivery_fees: float = 0
    delivery_partner_earnings: float = 0
    delivery_margin: float = 0
    platform_earnings: float = 0
    vendor_payable: float = 0

    def add(self, b: OrderBreakdown) -> None:
        self.order_count += 1
        self.revenue = round_money(self.revenue + b.subtotal)
        self.commission = round_money(self.commission + b.commission)
        self.gst = round_money(self.gst + b.gst)
        self.small_order_fees = round_money(self.small_order_fees + b.small_order_fee)
        self.delivery_fees = round_money(self.delivery_fees + b.delivery_fee)
        self.delivery_partner_earnings = round_money(self.delivery_partner_earnings + b.partner_earning)
        self.delivery_margin = round_money(self.delivery_margin + b.delivery_margin)
        self.platform_earnings = round_money(self.platform_earnings + b.platform_earning)
        self.vendor_payable = round_money(self.vendor_payable + b.vendor_payable)


class VendorTotals(BaseModel):
    vendor_id: str
    vendor_name: str = "Unknown"
    commission_rate: float
    order_count: int = 0
    revenue: float = 0
    commission: float = 0
    gst: float = 0
    small_order_fees: float = 0
    delivery_margin: float = 0
    platform_earning: float = 0
    net_payable: float = 0
    last_activity_at: Optional[datetime] = None


class PartnerTotals(BaseModel):
    delivery_person_id: str
    delivery_person_name: str = "Unknown"
    deliveries: int = 0
    earnings: float = 0
    tips: float = 0
    cod_collected: float = 0
    cod_orders: int = 0
    unsettled_cod_order_ids: list[str] = Field(default_factory=list)
    last_activity_at: Optional[datetime] = None


class CustomerActivity(BaseModel):
    customer_id: str
    customer_name: str = "Unknown"
    order_count: int = 0
    spend: float = 0
    last_order_at: Optional[datetime] = None


class TrendPoint(BaseModel):
    period: str
    orders: int = 0
    revenue: float = 0
    platform_earnings: float = 0


class RankedParty(BaseModel):
    party_id: str
    name: str
    orders: int
    revenue: float


class Summary(BaseModel):
    as_of: datetime
    windows: dict[str, PeriodTotals]
    status_counts: dict[str, int]
    vendors: dict[str, VendorTotals]
    delivery_partners: dict[str, PartnerTotals]
    customers: dict[str, CustomerActivity]
    active_customers_this_month: int
    average_order_value: float
    daily_trend: list[TrendPoint]
    monthly_trend: list[TrendPoint]
    top_vendors: list[RankedParty]
    top_delivery_partners: list[RankedParty]
    partial_order_ids: list[str]


def rank_parties(parties: Iterable[RankedParty], key: str = "revenue", limit: int = TOP_PERFORMERS_LIMIT) -> list[RankedParty]:
    """Highest first; ties fall back to party id so the order never depends on dict ordering."""
    if key not in RANK_KEYS:
        raise ValueError(f"rank key must be one of {sorted(RANK_KEYS)}")
    ranked = sorted(parties, key=lambda p: (-getattr(p, key), p.party_id))
    return ranked[:limit]


def _later(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    if candidate is None:
        return current
    if current is None or candidate > current:
        return candidate
    return current


def aggregate(
    orders: Iterable[Order],
    as_of: datetime,
    *,
    rates: Optional[dict[str, float]] = None,
    default_rate: float = DEFAULT_COMMISSION_RATE,
    trend_days: int = DAILY_TREND_DAYS,
    trend_months: int = MONTHLY_TREND_MONTHS,
    top_n: int = TOP_PERFORMERS_LIMIT,
    rank_by: str = "revenue",
) -> Summary:
    rates = rates or {}
    local_as_of = to_local(as_of)
    starts = window_starts(as_of)

    windows = {name: PeriodTotals() for name in starts}
    windows[WINDOW_ALL_TIME] = PeriodTotals()

    today = local_as_of.date()
    daily = {
        (today - timedelta(days=offset)).isoformat(): TrendPoint(period=(today - timedelta(days=offset)).isoformat())
        for offset in range(trend_days - 1, -1, -1)
    }
    monthly = {key: TrendPoint(period=key) for key in previous_months(today, trend_months)}

    status_counts: dict[str, int] = {}
    vendors: dict[str, VendorTotals] = {}
    partners: dict[str, PartnerTotals] = {}
    customers: dict[str, CustomerActivity] = {}
    partial: list[str] = []

    for order in orders:
        status_counts[order.status] = status_counts.get(order.status, 0) + 1

        local_created = to_local(order.created_at) if order.created_at else None
        if local_created is None or order.data_issues:
            partial.append(order.order_id)

        if order.customer_id:
            customer = customers.setdefault(
                order.customer_id,
                CustomerActivity(customer_id=order.customer_id, customer_name=order.customer_name or "Unknown"),
            )
            customer.order_count += 1
            customer.last_order_at = _later(customer.last_order_at, order.created_at)
            if order.is_settleable:
                customer.spend = round_money(customer.spend + order.total)

        if not order.is_settleable:
            continue

        rate = rates.get(order.vendor_id, default_rate) if order.vendor_id else default_rate
        b = order_breakdown(order, rate)

        # ---- platform windows
        windows[WINDOW_ALL_TIME].add(b)
        if local_created is not None and local_created < local_as_of:
            for name, start in starts.items():
                if local_created >= start:
                    windows[name].add(b)

        # ---- trends
        if local_created is not None:
            for bucket in (daily.get(local_created.date().isoformat()), monthly.get(month_key(local_created.date()))):
                if bucket is None:
                    continue
                bucket.orders += 1
                bucket.revenue = round_money(bucket.revenue + b.subtotal)
                bucket.platform_earnings = round_money(bucket.platform_earnings + b.platform_earning)

        # ---- vendor
        if order.vendor_id:
            v = vendors.setdefault(
                order.vendor_id,
                VendorTotals(
                    vendor_id=order.vendor_id,
                    vendor_name=order.vendor_name or "Unknown",
                    commission_rate=round_money(rate * 100),
                ),
            )
            v.order_count += 1
            v.revenue = round_money(v.revenue + b.subtotal)
            v.commission = round_money(v.commission + b.commission)
            v.gst = round_money(v.gst + b.gst)
            v.small_order_fees = round_money(v.small_order_fees + b.small_order_fee)
            v.delivery_margin = round_money(v.delivery_margin + b.delivery_margin)
            v.platform_earning = round_money(v.platform_earning + b.platform_earning)
            v.net_payable = round_money(v.net_payable + b.vendor_payable)
            v.last_activity_at = _later(v.last_activity_at, order.created_at)

        # ---- delivery partner
        if order.delivery_person_id:
            p = partners.setdefault(
                order.delivery_person_id,
                PartnerTotals(
                    delivery_person_id=order.delivery_person_id,
                    delivery_person_name=order.delivery_person_name or "Unknown",
                ),
            )
            p.deliveries += 1
            p.earnings = round_money(p.earnings + b.partner_earning + b.tip)
            p.tips = round_money(p.tips + b.tip)
            if order.is_cod:
                p.cod_collected = round_money(p.cod_collected + order.total)
                p.cod_orders += 1
                if not order.cod_settled:
                    p.unsettled_cod_order_ids.append(order.order_id)
            p.last_activity_at = _later(p.last_activity_at, order.last_activity_at)

    if partial:
        logger.warning("AGGREGATE_PARTIAL_DATA orders=%s", len(partial))

    all_time = windows[WINDOW_ALL_TIME]
    month_start = starts["this_month"]
    active_customers = sum(
        1 for c in customers.values()
        if c.last_order_at is not None and month_start <= to_local(c.last_order_at) < local_as_of
    )

    top_vendors = rank_parties(
        (RankedParty(party_id=v.vendor_id, name=v.vendor_name, orders=v.order_count, revenue=v.revenue)
         for v in vendors.values()),
        key=rank_by,
        limit=top_n,
    )
    top_partners = rank_parties(
        (RankedParty(party_id=p.delivery_person_id, name=p.delivery_person_name, orders=p.deliveries, revenue=p.earnings)
         for p in partners.values()),
        key=rank_by,
        limit=top_n,
    )

    return Summary(
        as_of=as_of,
        windows=windows,
        status_counts=dict(sorted(status_counts.items())),
        vendors=dict(sorted(vendors.items())),
        delivery_partners=dict(sorted(partners.items())),
        customers=dict(sorted(customers.items())),
        active_customers_this_month=active_customers,
        average_order_value=round_money(all_time.revenue / all_time.order_count) if all_time.order_count else 0,
        daily_trend=list(daily.values()),
        monthly_trend=list(monthly.values()),
        top_vendors=top_vendors,
        top_delivery_partners=top_partners,
        partial_order_ids=partial,
    )


# =====================================================
# GST REPORT
# =====================================================

class GstMonth(PeriodTotals):
    month: str


class GstVendor(PeriodTotals):
    vendor_id: str
    vendor_name: str = "Unknown"


class GstReport(BaseModel):
    gst_rate: float
    totals: PeriodTotals
    monthly: list[GstMonth]
    vendors: list[GstVendor]
    undated_order_ids: list[str]


def gst_report(
    orders: Iterable[Order],
    *,
    rates: Optional[dict[str, float]] = None,
    default_rate: float = DEFAULT_COMMISSION_RATE,
    gst_rate: float = GST_RATE,
) -> GstReport:
    """
    GST on commission, per business-timezone month and per vendor.

    Orders without a creation date still count in the totals and their
    vendor's row, but cannot be placed in a month.
    """
    rates = rates or {}
    totals = PeriodTotals()
    monthly: dict[str, GstMonth] = {}
    vendors: dict[str, GstVendor] = {}
    undated: list[str] = []

    for order in orders:
        if not order.is_settleable:
            continue

        rate = rates.get(order.vendor_id, default_rate) if order.vendor_id else default_rate
        b = order_breakdown(order, rate, gst_rate)
        totals.add(b)

        if order.created_at is None:
            undated.append(order.order_id)
        else:
            key = month_key(to_local(order.created_at).date())
            monthly.setdefault(key, GstMonth(month=key)).add(b)

        vendor_id = order.vendor_id or ""
        vendors.setdefault(
            vendor_id,
            GstVendor(vendor_id=vendor_id, vendor_name=order.vendor_name or "Unknown"),
        ).add(b)

    return GstReport(
        gst_rate=round_money(gst_rate * 100),
        totals=totals,
        monthly=sorted(monthly.values(), key=lambda m: m.month, reverse=True),
        vendors=sorted(vendors.values(), key=lambda v: (-v.gst, v.vendor_id)),
        undated_order_ids=undated,
    )
