from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from utils.dates import utcnow

IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24  # 24 hours
IN_PROGRESS_STALE_SECONDS = 60 * 10     # 10 minutes

STATUS_RESERVED = "reserved"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

IN_PROGRESS = {"status": "processing", "message": "Request already in progress"}


async def reserve_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
):
    """
    Reserve an idempotency key.
    If key already exists and is completed, return stored response.
    If key is still reserved by a live request, return IN_PROGRESS.
    If key is stale or failed, take it over and allow the retry.
    """
    existing = await db.idempotency_keys.find_one({
        "key": key,
        "scope": scope,
    })

    if existing:
        if existing.get("status") == STATUS_COMPLETED:
            return existing.get("response")

        created_at = existing.get("created_at")
        age_seconds = (
            (utcnow() - created_at).total_seconds()
            if created_at else 0
        )
        if age_seconds <= IN_PROGRESS_STALE_SECONDS and existing.get("status") == STATUS_RESERVED:
            return IN_PROGRESS

        # failed or abandoned: the caller re-derived pending amounts and retries
        await db.idempotency_keys.delete_one({"_id": existing["_id"], "status": existing.get("status")})

    try:
        await db.idempotency_keys.insert_one({
            "key": key,
            "scope": scope,
            "status": STATUS_RESERVED,
            "response": None,
            "created_at": utcnow(),
        })
    except DuplicateKeyError:
        # Concurrent request won the race; return canonical response/state.
        concurrent = await db.idempotency_keys.find_one({"key": key, "scope": scope})
        if concurrent and concurrent.get("status") == STATUS_COMPLETED:
            return concurrent.get("response")
        return IN_PROGRESS
    return None


async def complete_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
    response: dict,
):
    """
    Mark idempotency key as completed and store response.
    """
    await db.idempotency_keys.find_one_and_update(
        {
            "key": key,
            "scope": scope,
        },
        {
            "$set": {
                "status": STATUS_COMPLETED,
                "response": response,
                "completed_at": utcnow(),
            }
        },
        return_document=ReturnDocument.AFTER,
    )


async def fail_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
    error: str,
):
    """
    Mark idempotency key as failed so retries can be attempted explicitly.
    """
    await db.idempotency_keys.find_one_and_update(
        {"key": key, "scope": scope},
        {
            "$set": {
                "status": STATUS_FAILED,
                "error": error,
                "failed_at": utcnow(),
            }
        },
        return_document=ReturnDocument.AFTER,
    )
