"""SQLAlchemy models package."""

from app.models.tenant import Tenant
from app.models.user import User, UserRole
from app.models.template import Template, VariableType
from app.models.document import CrmObjectType, Document, DocumentStatus
from app.models.audit_log import AuditLog

__all__ = [
    "Tenant",
    "User",
    "UserRole",
    "Template",
    "VariableType",
    "Document",
    "DocumentStatus",
    "CrmObjectType",
    "AuditLog",
]
