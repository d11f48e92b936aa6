from bson import ObjectId
from datetime import datetime

from utils.dates import isoformat


def serialize_object_id(value):
    return str(value) if isinstance(value, ObjectId) else value


def serialize_ledger_entry(entry) -> dict:
    """Ledger entry for the admin UI. The encrypted account number never leaves the server."""
    return {
        "id": entry.id,
        "ledger_type": entry.ledger_type,
        "party_type": entry.party_type,
        "party_id": entry.party_id,
        "party_name": entry.party_name,

        "amount": entry.amount,
        "method": entry.method,
        "status": entry.status.value,
        "is_manual": entry.is_manual,

        "external_reference_id": entry.external_reference_id,
        "receipt_id": entry.receipt_id,
        "order_ids": entry.order_ids,
        "order_id": entry.order_id,
        "refund_type": entry.refund_type,
        "reason": entry.reason,
        "complaint_id": entry.complaint_id,

        "account_masked": entry.account_masked,
        "ifsc_code": entry.ifsc_code,
        "upi_id": entry.upi_id,

        "notes": entry.notes,
        "error_message": entry.error_message,
        "reverses": entry.reverses,
        "created_by": entry.created_by,

        "created_at": isoformat(entry.created_at),
        "processed_at": isoformat(entry.processed_at),
    }


def serialize_commission_change(change: dict) -> dict:
    return {
        "id": serialize_object_id(change.get("_id")),
        "vendor_id": change.get("vendor_id"),
        "previous_rate": change.get("previous_rate"),
        "new_rate": change.get("new_rate"),
        "reason": change.get("reason"),
        "changed_by": change.get("changed_by"),
        "changed_at": change["changed_at"].isoformat()
        if isinstance(change.get("changed_at"), datetime)
        else None,
    }
