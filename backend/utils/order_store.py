import logging
from datetime import datetime
from typing import Iterable, Optional

from pydantic import ValidationError

from config.constants import REFUND_STATUS_NONE, REFUND_STATUS_REFUNDED
from models.order import Order
from utils.dates import utcnow

logger = logging.getLogger(__name__)


def _parse(doc: dict) -> Optional[Order]:
    """Unreadable documents are logged and left out rather than failing the whole read."""
    try:
        return Order.from_doc(doc)
    except ValidationError as e:
        logger.warning(
            "ORDER_PARTIAL_DATA order=%s skipped errors=%s",
            doc.get("_id"), "; ".join(err["msg"] for err in e.errors()),
        )
        return None


class OrderStore:
    """
    Read access to the externally owned `orders` collection.

    The engine never creates or deletes orders. The only writes are the COD
    settlement flags and the refund flags.
    """

    def __init__(self, db):
        self.db = db

    async def get(self, order_id: str) -> Optional[Order]:
        doc = await self.db.orders.find_one({"_id": order_id})
        return _parse(doc) if doc else None

    async def scan(
        self,
        *,
        status: Optional[Iterable[str]] = None,
        vendor_id: Optional[str] = None,
        delivery_person_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        payment_mode: Optional[str] = None,
        date_range: Optional[tuple[datetime, datetime]] = None,
        settleable_only: bool = False,
    ) -> list[Order]:
        """
        Party filters run in Mongo; status, payment mode and dates are matched
        after normalisation because stored values are not consistent
        ("Delivered" vs "delivered", "COD" vs "Cash", strings vs datetimes).
        """
        query = {}
        if vendor_id is not None:
            query["vendor_id"] = vendor_id
        if delivery_person_id is not None:
            query["delivery_person_id"] = delivery_person_id
        if customer_id is not None:
            query["customer_id"] = customer_id

        wanted_status = set(status) if status is not None else None

        orders = []
        async for doc in self.db.orders.find(query).sort("_id", 1):
            order = _parse(doc)
            if order is None:
                continue

            if settleable_only and not order.is_settleable:
                continue
            if wanted_status is not None and order.status not in wanted_status:
                continue
            if payment_mode is not None and order.payment_mode != payment_mode:
                continue
            if date_range is not None:
                start, end = date_range
                if order.created_at is None or not (start <= order.created_at < end):
                    continue

            orders.append(order)

        return orders

    # ==============================
    # Settlement flags
    # ==============================

    async def flag_cod_settled(self, order_ids: list[str], settlement_id: str, receipt_id: str) -> int:
        if not order_ids:
            return 0

        result = await self.db.orders.update_many(
            {"_id": {"$in": order_ids}, "cod_settled": {"$ne": True}},
            {"$set": {
                "cod_settled": True,
                "cod_settled_at": utcnow(),
                "cod_settlement_id": settlement_id,
                "cod_receipt_id": receipt_id,
            }},
        )
        if result.modified_count != len(order_ids):
            logger.warning(
                "COD_FLAG_MISMATCH settlement=%s requested=%s flagged=%s",
                settlement_id, len(order_ids), result.modified_count,
            )
        return result.modified_count

    async def clear_cod_settlement(self, settlement_id: str) -> int:
        result = await self.db.orders.update_many(
            {"cod_settlement_id": settlement_id},
            {"$set": {
                "cod_settled": False,
                "cod_settled_at": None,
                "cod_settlement_id": None,
                "cod_receipt_id": None,
            }},
        )
        return result.modified_count

    async def mark_refunded(self, order_id: str, *, refunded_total: float, refund_id: Optional[str]) -> None:
        """Mirror the refund ledger onto the order; a fully reversed refund clears the flag."""
        refund_status = REFUND_STATUS_REFUNDED if refunded_total > 0 else REFUND_STATUS_NONE
        now = utcnow()
        await self.db.orders.update_one(
            {"_id": order_id},
            {"$set": {
                "refund_status": refund_status,
                "refund_amount": refunded_total,
                "refund_id": refund_id,
                "refunded_at": now if refunded_total > 0 else None,
                "updated_at": now,
            }},
        )
