"""Audit trail for key operations (``audit_logs`` table)."""

from datetime import datetime, timezone
from typing import Optional

from keyhub.models import AuditAction, AuditStatus
from keyhub.utils.database import insert_data
from keyhub.utils.logger import logger


async def log_audit_event(
    supabase,
    action: AuditAction,
    actor_id: str,
    status: AuditStatus = AuditStatus.success,
    token_id: Optional[str] = None,
    key_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """
    Record an audit event.

    Args:
        supabase: Supabase client
        action: Standardized action type (AuditAction enum)
        actor_id: Identity performing the action ("anonymous"/"system" for sentinels)
        status: Operation status (success/failure/denied)
        token_id: API token used (if applicable)
        key_id: Public key ID acted upon
        metadata: Additional structured data about the operation

    Audit writes are best effort: a failure is logged and never propagated.
    """
    audit_entry = {
        "actor_id": actor_id,
        "action": action.value,
        "status": status.value,
        "resource_type": "public_key",
        "created_at": datetime.now(timezone.utc).isoformat(),
    }

    if token_id:
        audit_entry["token_id"] = token_id
    if key_id:
        audit_entry["resource_id"] = key_id
    if metadata:
        audit_entry["metadata"] = metadata

    try:
        await insert_data(supabase, "audit_logs", audit_entry)
    except Exception as e:
        logger.warning(f"Failed to log audit event: {e}", extra={"action": action.value})
