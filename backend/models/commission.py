from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class CommissionChange(BaseModel):
    vendor_id: str
    previous_rate: float
    new_rate: float
    reason: str
    changed_at: datetime
    changed_by: Optional[str] = None


class VendorCommission(BaseModel):
    vendor_id: str
    shop_name: str
    commission_rate: float
    custom_commission: bool
    effective_rate: float
    commission_history: list[dict] = []
