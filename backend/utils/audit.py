from database import database
from models import AuditLog, AuditAction
from typing import Optional, Dict, Any, List, Set
import asyncio
import logging

logger = logging.getLogger(__name__)

# Fire-and-forget writes still in flight (strong refs so tasks are not GC'd)
_pending_writes: Set[asyncio.Task] = set()


async def create_audit_log(
    action: AuditAction,
    actor_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> str:
    """Append an audit event. Returns the audit_id, or "" when the write failed.

    Args:
        action: The audit action type
        actor_id: ID of the user performing the action
        resource_type: Type of entity affected (e.g., 'sow', 'template')
        resource_id: ID of the specific entity
        metadata: Additional metadata (never secret values)
        request_id: Correlation id of the originating request
    """
    try:
        db = database.get_db()

        audit_log = AuditLog(
            action=action,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata=metadata or None,
            request_id=request_id,
        )

        doc = audit_log.model_dump()
        doc["action"] = audit_log.action.value

        await db.audit_logs.insert_one(doc)
        logger.info(f"AUDIT {action.value} {resource_type or '-'}:{resource_id or '-'} request_id={request_id}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log {action.value}: {e}")
        # Never fail the main operation due to audit log failure
        return ""


def emit_audit_log(action: AuditAction, **kwargs: Any) -> None:
    """Schedule create_audit_log without waiting for it.

    The primary flow never sees the outcome of the write.
    """
    try:
        task = asyncio.get_running_loop().create_task(create_audit_log(action, **kwargs))
    except RuntimeError:
        logger.error(f"No running event loop; audit event {action.value} dropped")
        return
    _pending_writes.add(task)
    task.add_done_callback(_pending_writes.discard)


async def flush_audit_logs() -> None:
    """Wait for scheduled audit writes on the running loop (shutdown and tests)."""
    loop = asyncio.get_running_loop()
    while True:
        pending = [t for t in _pending_writes if t.get_loop() is loop and not t.done()]
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)


async def get_audit_logs_for_resource(
    resource_type: str,
    resource_id: str,
    limit: int = 50
) -> List[Dict[str, Any]]:
    """Get audit logs for a specific resource."""
    try:
        db = database.get_db()
        cursor = db.audit_logs.find(
            {"resource_type": resource_type, "resource_id": resource_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)

        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to get audit logs for resource: {e}")
        return []
