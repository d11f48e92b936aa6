"""
Per-order money formulas.

Everything here is pure: no I/O, no clock, no database. Amounts are INR and
rounded to paise with half-up rounding, which is what customers see on their
bills (42.5 -> 43, not 42).
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from config.constants import (
    BASE_DELIVERY_FEE,
    CUSTOMER_PER_KM_RATE,
    DEFAULT_COMMISSION_RATE,
    GST_RATE,
    PARTNER_PER_KM_RATE,
)

_PAISE = Decimal("0.01")
_RUPEE = Decimal("1")


def round_money(amount: float) -> float:
    return float(Decimal(str(amount)).quantize(_PAISE, rounding=ROUND_HALF_UP))


def round_half_up(amount: float) -> int:
    return int(Decimal(str(amount)).quantize(_RUPEE, rounding=ROUND_HALF_UP))


# ==============================
# Commission / GST
# ==============================

def commission_amount(subtotal: float, rate: float = DEFAULT_COMMISSION_RATE) -> float:
    return round_money(subtotal * rate)


def gst_on_commission(commission: float, gst_rate: float = GST_RATE) -> float:
    return round_money(commission * gst_rate)


def vendor_payable(subtotal: float, commission: float, gst: float) -> float:
    return round_money(subtotal - commission - gst)


# ==============================
# Delivery
# ==============================

def customer_delivery_fee(distance_km: float) -> int:
    return round_half_up(BASE_DELIVERY_FEE + distance_km * CUSTOMER_PER_KM_RATE)


def delivery_partner_earning(
    distance_km: float | None,
    stored_earning: float | None = None,
    customer_fee: float = 0,
) -> float:
    """
    Stored earnings always win. Without a distance there is nothing to price,
    so the partner gets what the customer paid, never less than the base fee.
    """
    if stored_earning is not None:
        return round_money(stored_earning)
    if distance_km:
        return float(round_half_up(BASE_DELIVERY_FEE + distance_km * PARTNER_PER_KM_RATE))
    return round_money(max(BASE_DELIVERY_FEE, customer_fee or 0))


def delivery_margin(customer_fee: float, partner_earning: float) -> float:
    # Usually negative: the platform subsidises delivery.
    return round_money(customer_fee - partner_earning)


def platform_earning(commission: float, gst: float, small_order_fee: float, margin: float) -> float:
    return round_money(commission + gst + small_order_fee + margin)


# ==============================
# Whole-order breakdown
# ==============================

@dataclass(frozen=True)
class OrderBreakdown:
    subtotal: float
    commission_rate: float
    commission: float
    gst: float
    vendor_payable: float
    small_order_fee: float
    delivery_fee: float
    partner_earning: float
    tip: float
    delivery_margin: float
    platform_earning: float


def order_breakdown(order, rate: float = DEFAULT_COMMISSION_RATE, gst_rate: float = GST_RATE) -> OrderBreakdown:
    commission = commission_amount(order.subtotal, rate)
    gst = gst_on_commission(commission, gst_rate)
    partner = delivery_partner_earning(
        order.distance_km,
        stored_earning=order.delivery_person_earnings,
        customer_fee=order.delivery_fee,
    )
    margin = delivery_margin(order.delivery_fee, partner)

    return OrderBreakdown(
        subtotal=round_money(order.subtotal),
        commission_rate=rate,
        commission=commission,
        gst=gst,
        vendor_payable=vendor_payable(order.subtotal, commission, gst),
        small_order_fee=round_money(order.small_order_fee),
        delivery_fee=round_money(order.delivery_fee),
        partner_earning=partner,
        tip=round_money(order.tip),
        delivery_margin=margin,
        platform_earning=platform_earning(commission, gst, order.small_order_fee, margin),
    )
