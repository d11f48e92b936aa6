from datetime import datetime
from enum import Enum
from typing import Optional

from bson import ObjectId
from pydantic import BaseModel, Field

from utils.dates import utcnow


class LedgerStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class LedgerEntry(BaseModel):
    """
    One immutable money movement in the COD settlement, payout or refund
    ledger. Reversals are new entries with a negative amount.
    """

    id: str = Field(default_factory=lambda: str(ObjectId()))
    ledger_type: str
    party_type: str
    party_id: str
    party_name: str = ""
    amount: float
    method: str
    status: LedgerStatus
    external_reference_id: Optional[str] = None
    is_manual: bool = False
    notes: Optional[str] = None
    error_message: Optional[str] = None
    request_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None

    # COD settlements
    order_ids: list[str] = Field(default_factory=list)
    receipt_id: Optional[str] = None

    # payouts
    account_masked: Optional[str] = None
    account_encrypted: Optional[str] = None
    ifsc_code: Optional[str] = None
    upi_id: Optional[str] = None

    # refunds
    order_id: Optional[str] = None
    original_amount: Optional[float] = None
    reason: Optional[str] = None
    refund_type: Optional[str] = None
    complaint_id: Optional[str] = None
    payment_reference: Optional[str] = None

    # reversals
    reverses: Optional[str] = None

    def to_doc(self) -> dict:
        doc = self.model_dump(mode="python", exclude={"id"})
        doc["_id"] = self.id
        doc["status"] = self.status.value
        return doc

    @classmethod
    def from_doc(cls, doc: dict) -> "LedgerEntry":
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)
