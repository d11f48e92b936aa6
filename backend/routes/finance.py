from datetime import date
from fastapi import APIRouter, Depends
from typing import Literal, Optional
from pydantic import BaseModel, Field

from database import get_db
from config.constants import (
    COMMISSION_HISTORY_DISPLAY_LIMIT,
    LEDGER_COD_SETTLEMENT,
    LEDGER_PAYOUT,
    PARTY_DELIVERY,
    PARTY_VENDOR,
)
from models.commission import VendorCommission
from utils.commission import effective_rate, get_default_rate
from utils.money import round_money
from utils.party_lock import PartyLocks
from utils.security import require_admin
from utils.serializers import serialize_commission_change, serialize_ledger_entry
from utils.settlement_service import SettlementService


router = APIRouter(prefix="/api/admin/finance", tags=["Finance"])

# one lock table per process, shared by every request
party_locks = PartyLocks()


def get_settlement_service() -> SettlementService:
    return SettlementService(get_db(), locks=party_locks)


# =====================================================
# SCHEMAS
# =====================================================

class CodSettlementCreate(BaseModel):
    delivery_person_id: str
    amount: float
    method: str = "Cash"
    order_ids: Optional[list[str]] = None
    notes: Optional[str] = None
    request_id: Optional[str] = None


class BankDetails(BaseModel):
    account_number: str
    ifsc_code: str
    account_holder_name: Optional[str] = None


class PayoutCreate(BaseModel):
    party_type: Literal["vendor", "delivery"]
    party_id: str
    amount: float
    method: Literal["bank_transfer", "upi", "cash"]
    bank_details: Optional[BankDetails] = None
    upi_id: Optional[str] = None
    notes: Optional[str] = None
    request_id: Optional[str] = None


class RefundCreate(BaseModel):
    order_id: str
    amount: float
    reason: str = Field(min_length=1)
    refund_type: Literal["full", "partial"] = "full"
    complaint_id: Optional[str] = None
    request_id: Optional[str] = None


class CommissionUpdate(BaseModel):
    commission_rate: float
    reason: str = ""


class DefaultCommissionUpdate(BaseModel):
    default_rate: float


class ReversalCreate(BaseModel):
    reason: str


# =====================================================
# DASHBOARD
# =====================================================

@router.get("/dashboard")
async def dashboard(
    rank_by: Literal["revenue", "orders"] = "revenue",
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    summary = await service.reconciler.summary(rank_by=rank_by)
    anomalies = await service.reconciler.anomalies(summary)

    data = summary.model_dump(
        mode="json",
        include={
            "as_of",
            "windows",
            "status_counts",
            "average_order_value",
            "active_customers_this_month",
            "daily_trend",
            "monthly_trend",
            "top_vendors",
            "top_delivery_partners",
        },
    )

    return {
        **data,
        "total_customers": len(summary.customers),
        "partial_order_count": len(summary.partial_order_ids),
        "anomalies": anomalies,
    }


# =====================================================
# VENDOR / DELIVERY PAYOUTS
# =====================================================

@router.get("/vendors/payouts")
async def vendor_payouts(
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    summary = await service.reconciler.summary()
    vendors = await service.reconciler.vendor_statements(summary)
    recent = await service.ledgers.list_recent(LEDGER_PAYOUT, party_type=PARTY_VENDOR)

    return {
        "vendors": vendors,
        "recent_payouts": [serialize_ledger_entry(e) for e in recent],
        "summary": {
            "total_vendors": len(vendors),
            "total_revenue": round_money(sum(v["total_revenue"] for v in vendors)),
            "total_commission": round_money(sum(v["commission_amount"] for v in vendors)),
            "total_paid": round_money(sum(v["paid_amount"] for v in vendors)),
            "total_pending": round_money(sum(v["pending_amount"] for v in vendors)),
        },
    }


@router.get("/delivery/payouts")
async def delivery_payouts(
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    summary = await service.reconciler.summary()
    partners = await service.reconciler.delivery_statements(summary)
    recent = await service.ledgers.list_recent(LEDGER_PAYOUT, party_type=PARTY_DELIVERY)

    return {
        "delivery_partners": partners,
        "recent_payouts": [serialize_ledger_entry(e) for e in recent],
        "summary": {
            "total_partners": len(partners),
            "total_earnings": round_money(sum(p["total_earnings"] for p in partners)),
            "total_paid": round_money(sum(p["paid_amount"] for p in partners)),
            "total_pending": round_money(sum(p["pending_amount"] for p in partners)),
        },
    }


@router.post("/payouts")
async def create_payout(
    data: PayoutCreate,
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    result = await service.record_payout(
        data.party_type,
        data.party_id,
        data.amount,
        data.method,
        bank_details=data.bank_details.model_dump() if data.bank_details else None,
        upi_id=data.upi_id,
        notes=data.notes,
        request_id=data.request_id,
        actor_id=admin,
    )
    return {"message": "Payout recorded", **result}


@router.post("/payouts/{ledger_id}/reconcile")
async def reconcile_payout(
    ledger_id: str,
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    return await service.reconcile_payout(ledger_id, actor_id=admin)


# =====================================================
# COD
# =====================================================

@router.get("/delivery/cod")
async def cod_overview(
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    summary = await service.reconciler.summary()
    overview = await service.reconciler.cod_overview(summary)
    recent = await service.ledgers.list_recent(LEDGER_COD_SETTLEMENT)

    return {
        **overview,
        "recent_settlements": [serialize_ledger_entry(e) for e in recent],
    }


@router.post("/delivery/cod/settlements")
async def create_cod_settlement(
    data: CodSettlementCreate,
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    result = await service.record_cod_settlement(
        data.delivery_person_id,
        data.amount,
        method=data.method,
        order_ids=data.order_ids,
        notes=data.notes,
        request_id=data.request_id,
        actor_id=admin,
    )
    return {"message": "COD settlement recorded", **result}


# =====================================================
# REFUNDS
# =====================================================

@router.get("/refunds")
async def refunds(
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    history = await service.reconciler.refund_history()
    return {
        "refunds": [serialize_ledger_entry(e) for e in history["refunds"]],
        "summary": history["summary"],
    }


@router.get("/refunds/pending")
async def pending_refunds(
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    return await service.reconciler.pending_refunds()


@router.get("/refunds/orders/{order_id}")
async def order_refunds(
    order_id: str,
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    history = await service.reconciler.order_refunds(order_id)
    return {
        **history,
        "refunds": [serialize_ledger_entry(e) for e in history["refunds"]],
    }


@router.post("/refunds")
async def create_refund(
    data: RefundCreate,
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    result = await service.process_refund(
        data.order_id,
        data.amount,
        data.reason,
        refund_type=data.refund_type,
        complaint_id=data.complaint_id,
        request_id=data.request_id,
        actor_id=admin,
    )
    return {"message": "Refund processed", **result}


# =====================================================
# COMMISSION
# =====================================================

@router.get("/commission")
async def commission_settings(
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    db = service.db
    default_rate = await get_default_rate(db)

    vendors = []
    async for v in db.vendors.find({}).sort("_id", 1):
        history = (v.get("commission_history") or [])[-COMMISSION_HISTORY_DISPLAY_LIMIT:]
        vendors.append(VendorCommission(
            vendor_id=str(v["_id"]),
            shop_name=v.get("shop_name") or "Unknown",
            commission_rate=v.get("commission_rate") if v.get("commission_rate") is not None else default_rate,
            custom_commission=bool(v.get("custom_commission")),
            effective_rate=effective_rate(v, default_rate),
            commission_history=[serialize_commission_change(h) for h in reversed(history)],
        ).model_dump())

    return {
        "default_rate": default_rate,
        "vendors": vendors,
        "custom_count": sum(1 for v in vendors if v["custom_commission"]),
    }


@router.patch("/commission/{vendor_id}")
async def update_vendor_commission(
    vendor_id: str,
    data: CommissionUpdate,
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    history_id = await service.set_commission_rate(
        vendor_id,
        data.commission_rate,
        data.reason,
        actor_id=admin,
    )
    return {
        "message": "Commission rate updated",
        "vendor_id": vendor_id,
        "commission_rate": data.commission_rate,
        "history_id": history_id,
    }


@router.put("/commission/default")
async def update_default_commission(
    data: DefaultCommissionUpdate,
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    rate = await service.set_default_commission_rate(data.default_rate, actor_id=admin)
    return {"message": "Default commission updated", "default_rate": rate}


# =====================================================
# REPORTS
# =====================================================

@router.get("/reports/gst")
async def gst_report(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    vendor_id: Optional[str] = None,
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    report = await service.reconciler.gst_report(start_date, end_date, vendor_id=vendor_id)
    return report.model_dump(mode="json")


# =====================================================
# CORRECTIONS
# =====================================================

@router.post("/ledger/{ledger_type}/{entry_id}/reverse")
async def reverse_ledger_entry(
    ledger_type: str,
    entry_id: str,
    data: ReversalCreate,
    admin=Depends(require_admin),
    service: SettlementService = Depends(get_settlement_service),
):
    reversal_id = await service.reverse_entry(ledger_type, entry_id, data.reason, actor_id=admin)
    return {"message": "Ledger entry reversed", "reversal_id": reversal_id}
