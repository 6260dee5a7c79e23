"""Audit trail for commission money movements.

Every write that changes what a partner is owed (accrual, status change,
statistics rebuild, payout report) leaves one audit_logs document pointing
at the resource it touched.
"""
from models import AuditLog, AuditAction, AuditResource, UserRole
from services.errors import store_call
from typing import Optional, Dict, Any, List
from pymongo.errors import PyMongoError
import logging

logger = logging.getLogger(__name__)

def state_changes(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Fields whose value differs, as {field: {"from": old, "to": new}}.

    A field missing on one side is reported with None on that side.
    """
    before, after = before or {}, after or {}
    return {
        key: {"from": before.get(key), "to": after.get(key)}
        for key in sorted(set(before) | set(after))
        if before.get(key) != after.get(key)
    }

async def create_audit_log(
    db,
    action: AuditAction,
    actor_role: Optional[UserRole] = None,
    actor_id: Optional[str] = None,
    partner_id: Optional[str] = None,
    resource_type: Optional[AuditResource] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """Append an audit entry; returns its id, or None when the store write failed.

    The audited operation has already been committed by the time this runs,
    so a store failure here is logged and never propagated.
    """
    metadata = dict(metadata or {})
    if before_state is not None and after_state is not None:
        changes = state_changes(before_state, after_state)
        if changes:
            metadata["changes"] = changes

    audit_log = AuditLog(
        action=action,
        actor_role=actor_role,
        actor_id=actor_id,
        partner_id=partner_id,
        resource_type=resource_type,
        resource_id=resource_id,
        before_state=before_state,
        after_state=after_state,
        metadata=metadata or None,
    )

    try:
        await db.audit_logs.insert_one(audit_log.model_dump())
    except PyMongoError as e:
        logger.error(f"AUDIT_WRITE_FAILED action={action.value} resource={resource_type}:{resource_id} error={e}")
        return None

    logger.debug(f"Audit log created: {action.value} {resource_type}:{resource_id}")
    return audit_log.audit_id

async def get_audit_logs_for_resource(
    db,
    resource_type: AuditResource,
    resource_id: str,
    limit: int = 50
) -> List[Dict[str, Any]]:
    """Newest-first audit history of one resource."""
    async with store_call("audit history query"):
        return await db.audit_logs.find(
            {"resource_type": AuditResource(resource_type).value, "resource_id": resource_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit).to_list(length=limit)
