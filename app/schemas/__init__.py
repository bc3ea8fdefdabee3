"""Pydantic schemas for API request/response validation."""

from app.schemas.document import (
    CrmObjectRef,
    DocumentCreate,
    DocumentCreateResponse,
    DocumentRead,
    DocumentStatusRead,
)
from app.schemas.template import (
    TemplateCreate,
    TemplateRead,
    TemplateUpdate,
    TemplateVariablesRead,
    VariableDeclarationSchema,
)
from app.schemas.queue import CleanupRequestCreate, JobHandleRead, QueueCountsRead

__all__ = [
    "CrmObjectRef",
    "DocumentCreate",
    "DocumentCreateResponse",
    "DocumentRead",
    "DocumentStatusRead",
    "TemplateCreate",
    "TemplateRead",
    "TemplateUpdate",
    "TemplateVariablesRead",
    "VariableDeclarationSchema",
    "CleanupRequestCreate",
    "JobHandleRead",
    "QueueCountsRead",
]
