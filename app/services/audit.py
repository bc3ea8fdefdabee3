"""Audit trail writer."""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_log import AuditLog


class AuditAction:
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    GENERATE = "GENERATE"
    GENERATE_FAILED = "GENERATE_FAILED"
    UPLOAD_TO_CRM = "UPLOAD_TO_CRM"
    UPLOAD_TO_CRM_FAILED = "UPLOAD_TO_CRM_FAILED"
    UPLOAD_TO_CRM_FAILED_PERMANENTLY = "UPLOAD_TO_CRM_FAILED_PERMANENTLY"
    MARK_ABANDONED = "MARK_ABANDONED"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    DISCONNECT = "DISCONNECT"
    WORKFLOW_GENERATE = "WORKFLOW_GENERATE"


def record_audit(
    db: AsyncSession,
    *,
    tenant_id: UUID,
    action: str,
    entity_type: str,
    entity_id: UUID | str,
    user_id: UUID | None = None,
    old_values: dict | None = None,
    new_values: dict | None = None,
) -> AuditLog:
    """Add an audit row to the session. The caller commits."""
    entry = AuditLog(
        tenant_id=tenant_id,
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        old_values=old_values,
        new_values=new_values,
    )
    db.add(entry)
    return entry
