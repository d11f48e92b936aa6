import logging
from typing import Optional

from bson import ObjectId

from config.constants import LEDGER_COLLECTIONS, LEDGER_REFUND, RECENT_LEDGER_LIMIT
from models.ledger import LedgerEntry, LedgerStatus
from utils.dates import utcnow
from utils.errors import NotFound, ValidationError
from utils.money import round_money

logger = logging.getLogger(__name__)


class LedgerStore:
    """
    COD settlement, payout and refund ledgers.

    Append-only: history is corrected with reversal entries, never edited.
    The one exception is resolving a gateway payout that was written as
    `pending` once the provider confirms or rejects it.
    """

    def __init__(self, db):
        self.db = db

    def _collection(self, ledger_type: str):
        try:
            return self.db[LEDGER_COLLECTIONS[ledger_type]]
        except KeyError:
            raise ValidationError(f"Unknown ledger type: {ledger_type}")

    # ==============================
    # Writes
    # ==============================

    async def append(self, entry: LedgerEntry) -> str:
        await self._collection(entry.ledger_type).insert_one(entry.to_doc())
        logger.info(
            "LEDGER_APPEND type=%s id=%s party=%s amount=%s status=%s",
            entry.ledger_type, entry.id, entry.party_id, entry.amount, entry.status.value,
        )
        return entry.id

    async def append_reversal(
        self,
        ledger_type: str,
        entry_id: str,
        reason: str,
        *,
        created_by: Optional[str] = None,
    ) -> LedgerEntry:
        original = await self.get(ledger_type, entry_id)
        if original is None:
            raise NotFound(f"Ledger entry {entry_id} not found")
        if original.reverses:
            raise ValidationError("Reversal entries cannot be reversed")
        if original.status != LedgerStatus.COMPLETED:
            raise ValidationError("Only completed entries can be reversed")

        already = await self._collection(ledger_type).find_one({"reverses": entry_id})
        if already:
            raise ValidationError(f"Ledger entry {entry_id} is already reversed")

        now = utcnow()
        reversal = original.model_copy(update={
            "id": str(ObjectId()),
            "amount": round_money(-original.amount),
            "status": LedgerStatus.COMPLETED,
            "reverses": entry_id,
            "notes": reason,
            "request_id": None,
            "external_reference_id": None,
            "created_by": created_by,
            "created_at": now,
            "processed_at": now,
        })
        await self.append(reversal)
        return reversal

    async def resolve_pending(
        self,
        ledger_type: str,
        entry_id: str,
        status: LedgerStatus,
        *,
        external_status: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        if status == LedgerStatus.PENDING:
            raise ValidationError("A pending entry can only resolve to completed or failed")

        result = await self._collection(ledger_type).update_one(
            {"_id": entry_id, "status": LedgerStatus.PENDING.value},
            {"$set": {
                "status": status.value,
                "external_status": external_status,
                "error_message": error_message,
                "processed_at": utcnow(),
            }},
        )
        return result.modified_count == 1

    # ==============================
    # Reads
    # ==============================

    async def get(self, ledger_type: str, entry_id: str) -> Optional[LedgerEntry]:
        doc = await self._collection(ledger_type).find_one({"_id": entry_id})
        return LedgerEntry.from_doc(doc) if doc else None

    async def _list(self, ledger_type: str, query: dict, limit: int) -> list[LedgerEntry]:
        cursor = (
            self._collection(ledger_type)
            .find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .limit(limit)
        )
        return [LedgerEntry.from_doc(doc) async for doc in cursor]

    async def list_by_party(
        self,
        ledger_type: str,
        party_id: str,
        limit: int = RECENT_LEDGER_LIMIT,
    ) -> list[LedgerEntry]:
        return await self._list(ledger_type, {"party_id": party_id}, limit)

    async def list_by_order(self, order_id: str, limit: int = RECENT_LEDGER_LIMIT) -> list[LedgerEntry]:
        """Refund entries for one order, reversals included."""
        return await self._list(LEDGER_REFUND, {"order_id": order_id}, limit)

    async def list_recent(
        self,
        ledger_type: str,
        limit: int = RECENT_LEDGER_LIMIT,
        party_type: Optional[str] = None,
    ) -> list[LedgerEntry]:
        query = {"party_type": party_type} if party_type else {}
        return await self._list(ledger_type, query, limit)

    # ==============================
    # Balances (derived only)
    # ==============================

    async def _sum(self, ledger_type: str, match: dict) -> float:
        pipeline = [
            {"$match": match},
            {"$group": {"_id": None, "amount": {"$sum": "$amount"}}},
        ]
        result = await self._collection(ledger_type).aggregate(pipeline).to_list(1)
        if not result:
            return 0
        return round_money(result[0]["amount"])

    async def sum_completed(
        self,
        ledger_type: str,
        party_id: Optional[str] = None,
        order_id: Optional[str] = None,
        party_type: Optional[str] = None,
    ) -> float:
        match = {"status": LedgerStatus.COMPLETED.value}
        if party_id is not None:
            match["party_id"] = party_id
        if order_id is not None:
            match["order_id"] = order_id
        if party_type is not None:
            match["party_type"] = party_type
        return await self._sum(ledger_type, match)

    async def sum_in_flight(self, ledger_type: str, party_id: str, party_type: Optional[str] = None) -> float:
        match = {"status": LedgerStatus.PENDING.value, "party_id": party_id}
        if party_type is not None:
            match["party_type"] = party_type
        return await self._sum(ledger_type, match)

    async def sum_completed_by_party(
        self,
        ledger_type: str,
        party_type: Optional[str] = None,
    ) -> dict[str, float]:
        match = {"status": LedgerStatus.COMPLETED.value}
        if party_type is not None:
            match["party_type"] = party_type

        pipeline = [
            {"$match": match},
            {"$group": {"_id": "$party_id", "amount": {"$sum": "$amount"}}},
        ]
        rows = await self._collection(ledger_type).aggregate(pipeline).to_list(None)
        return {r["_id"]: round_money(r["amount"]) for r in rows}
