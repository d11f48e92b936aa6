from utils.dates import utcnow


async def log_audit(
    db,
    actor_id: str | None,
    action: str,
    metadata: dict | None = None,
    actor_role: str = "admin",
):
    await db.audit_logs.insert_one({
        "actor_id": actor_id,
        "actor_role": actor_role,
        "action": action,
        "metadata": metadata or {},
        "created_at": utcnow()
    })
