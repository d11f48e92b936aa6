from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from config.constants import LEDGER_COLLECTIONS, LEDGER_PAYOUT, LEDGER_REFUND
from utils.idempotency import IDEMPOTENCY_TTL_SECONDS


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create index safely.
    If Mongo reports IndexOptionsConflict/IndexKeySpecsConflict for same key pattern,
    drop the conflicting index and recreate with desired options.
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Orders (owned by the storefront, read here by party)
    await _create_index_safe(
        db.orders,
        [("vendor_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_vendor_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("delivery_person_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_delivery_person_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("customer_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_customer_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("cod_settlement_id", ASCENDING)],
        name="orders_cod_settlement_idx",
        sparse=True,
    )

    # Ledgers
    for collection in LEDGER_COLLECTIONS.values():
        await _create_index_safe(
            db[collection],
            [("party_id", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)],
            name=f"{collection}_party_status_created_at_idx",
        )
        await _create_index_safe(
            db[collection],
            [("reverses", ASCENDING)],
            name=f"{collection}_reverses_idx",
        )
    await _create_index_safe(
        db[LEDGER_COLLECTIONS[LEDGER_REFUND]],
        [("order_id", ASCENDING), ("status", ASCENDING)],
        name="refunds_order_status_idx",
    )
    await _create_index_safe(
        db[LEDGER_COLLECTIONS[LEDGER_PAYOUT]],
        [("external_reference_id", ASCENDING)],
        name="payouts_external_reference_idx",
    )

    # Commission history
    await _create_index_safe(
        db.commission_history,
        [("vendor_id", ASCENDING), ("changed_at", DESCENDING)],
        name="commission_history_vendor_changed_at_idx",
    )

    # Settlement leases
    await _create_index_safe(
        db.settlement_locks,
        [("expires_at", ASCENDING)],
        name="settlement_locks_expires_idx",
    )

    # Idempotency
    await _create_index_safe(
        db.idempotency_keys,
        [("key", ASCENDING), ("scope", ASCENDING)],
        name="idempotency_key_scope_unique",
        unique=True,
    )
    await _create_index_safe(
        db.idempotency_keys,
        [("created_at", ASCENDING)],
        name="idempotency_ttl_idx",
        expireAfterSeconds=IDEMPOTENCY_TTL_SECONDS,
    )

    # Audit
    await _create_index_safe(
        db.audit_logs,
        [("action", ASCENDING), ("created_at", DESCENDING)],
        name="audit_logs_action_created_at_idx",
    )
