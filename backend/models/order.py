import logging
import math
import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from config.constants import (
    COD_PAYMENT_MODES,
    ORDER_STATUSES,
    PAYMENT_MODE_COD,
    PAYMENT_MODE_ONLINE,
    REFUND_STATUS_NONE,
    REFUNDED_STATUS_ALIASES,
    REFUND_STATUS_REFUNDED,
    SETTLEABLE_STATUSES,
)
from utils.dates import parse_timestamp
from utils.errors import PartialDataError
from utils.money import customer_delivery_fee

logger = logging.getLogger(__name__)

_STATUS_SEPARATORS = re.compile(r"[\s_\-]+")


def normalize_status(raw) -> str:
    key = _STATUS_SEPARATORS.sub("", str(raw or "")).lower()
    return ORDER_STATUSES.get(key, str(raw or ""))


def normalize_payment_mode(raw) -> str:
    if str(raw or "").strip().lower() in COD_PAYMENT_MODES:
        return PAYMENT_MODE_COD
    return PAYMENT_MODE_ONLINE


def normalize_refund_status(raw) -> str:
    value = str(raw or "").strip().upper()
    if not value or value == "NONE":
        return REFUND_STATUS_NONE
    if value in REFUNDED_STATUS_ALIASES:
        return REFUND_STATUS_REFUNDED
    return value


class Order(BaseModel):
    """
    Typed view of an `orders` document.

    Every fallback for fields older orders lack is applied once, in
    `from_doc`, so the money formulas never see a missing value.
    """

    order_id: str

    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    delivery_person_id: Optional[str] = None
    delivery_person_name: Optional[str] = None

    item_total: float = 0
    discount: float = 0
    subtotal: float = 0
    delivery_fee: float = 0
    distance_km: Optional[float] = None
    delivery_person_earnings: Optional[float] = None
    small_order_fee: float = 0
    tip: float = 0
    total: float = 0

    status: str = ""
    payment_mode: str = PAYMENT_MODE_ONLINE
    payment_status: Optional[str] = None
    payment_reference: Optional[str] = None

    cod_settled: bool = False
    cod_settlement_id: Optional[str] = None
    refund_status: str = REFUND_STATUS_NONE

    created_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    data_issues: list[str] = Field(default_factory=list)

    # -----------------------------
    # Derived flags
    # -----------------------------

    @property
    def is_settleable(self) -> bool:
        return self.status in SETTLEABLE_STATUSES

    @property
    def is_cod(self) -> bool:
        return self.payment_mode == PAYMENT_MODE_COD

    @property
    def is_refunded(self) -> bool:
        return self.refund_status == REFUND_STATUS_REFUNDED

    @property
    def last_activity_at(self) -> Optional[datetime]:
        return self.delivered_at or self.created_at

    # -----------------------------
    # Mongo document -> Order
    # -----------------------------

    @classmethod
    def from_doc(cls, doc: dict) -> "Order":
        issues: list[str] = []

        def number(field: str, default=0):
            value = doc.get(field)
            if value is None or value == "":
                return default
            try:
                parsed = float(value)
            except (TypeError, ValueError):
                parsed = None
            if parsed is None or not math.isfinite(parsed):
                issues.append(f"{field}: not a number ({value!r})")
                return default
            return parsed

        def timestamp(field: str):
            try:
                return parse_timestamp(doc.get(field))
            except PartialDataError as e:
                issues.append(f"{field}: {e.message}")
                return None

        total = number("total")
        distance_km = number("distance_km", None)

        delivery_fee = number("delivery_fee", None)
        if delivery_fee is None:
            delivery_fee = customer_delivery_fee(distance_km) if distance_km else 0

        item_total = number("item_total", None)
        discount = number("discount")
        subtotal = number("subtotal", None)
        if subtotal is None:
            if item_total is not None:
                subtotal = item_total - discount
            else:
                subtotal = total - delivery_fee

        order = cls(
            order_id=str(doc["_id"]),
            vendor_id=_optional_str(doc.get("vendor_id")),
            vendor_name=_optional_str(doc.get("vendor_name")),
            customer_id=_optional_str(doc.get("customer_id")),
            customer_name=_optional_str(doc.get("customer_name")),
            delivery_person_id=_optional_str(doc.get("delivery_person_id")),
            delivery_person_name=_optional_str(doc.get("delivery_person_name")),
            item_total=item_total if item_total is not None else subtotal + discount,
            discount=discount,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            distance_km=distance_km,
            delivery_person_earnings=number("delivery_person_earnings", None),
            small_order_fee=number("small_order_fee"),
            tip=number("tip"),
            total=total,
            status=normalize_status(doc.get("status")),
            payment_mode=normalize_payment_mode(doc.get("payment_mode")),
            payment_status=_optional_str(doc.get("payment_status")),
            payment_reference=_optional_str(doc.get("razorpay_payment_id")),
            cod_settled=bool(doc.get("cod_settled")),
            cod_settlement_id=_optional_str(doc.get("cod_settlement_id")),
            refund_status=normalize_refund_status(doc.get("refund_status")),
            created_at=timestamp("created_at"),
            delivered_at=timestamp("delivered_at"),
            cancelled_at=timestamp("cancelled_at"),
            data_issues=issues,
        )

        if issues:
            logger.warning("ORDER_PARTIAL_DATA order=%s issues=%s", order.order_id, "; ".join(issues))

        return order


def _optional_str(value) -> Optional[str]:
    return str(value) if value not in (None, "") else None
