from datetime import datetime, timedelta

AUDIT_RETENTION_DAYS = 90


async def log_audit(
    db,
    actor_id,
    actor_role: str,
    action: str,
    metadata: dict | None = None
):
    await db.audit_logs.insert_one({
        "actor_id": str(actor_id) if actor_id else None,
        "actor_role": actor_role,
        "action": action,
        "metadata": metadata or {},
        "created_at": datetime.utcnow()
    })


async def purge_audit_logs(db, now: datetime | None = None) -> int:
    cutoff = (now or datetime.utcnow()) - timedelta(days=AUDIT_RETENTION_DAYS)
    result = await db.audit_logs.delete_many({"created_at": {"$lt": cutoff}})
    return result.deleted_count
