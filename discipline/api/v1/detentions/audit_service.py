"""
Audit logging for detention state changes. Call on every placement, attendance
outcome, queue transition and session status change.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from discipline.core.models import DetentionAuditLog


ENTITY_ASSIGNMENT = "DETENTION_ASSIGNMENT"
ENTITY_QUEUE_ENTRY = "DETENTION_QUEUE_ENTRY"
ENTITY_SESSION = "DETENTION_SESSION"
ENTITY_RULE = "DETENTION_RULE"


async def log_audit(
    db: AsyncSession,
    tenant_id: UUID,
    entity_type: str,
    entity_id: UUID,
    action: str,
    *,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    performed_by: Optional[UUID] = None,
    remarks: Optional[str] = None,
) -> None:
    """Append one audit log entry. Caller must commit."""
    entry = DetentionAuditLog(
        tenant_id=tenant_id,
        entity_type=entity_type,
        entity_id=entity_id,
        from_status=from_status,
        to_status=to_status,
        action=action,
        performed_by=performed_by,
        remarks=remarks,
        timestamp=datetime.utcnow(),
    )
    db.add(entry)
