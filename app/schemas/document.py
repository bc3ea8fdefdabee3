"""Document schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.document import CrmObjectType, DocumentStatus


class CrmObjectRef(BaseModel):
    object_id: str = Field(..., min_length=1, max_length=50)
    object_type: CrmObjectType


class DocumentCreate(BaseModel):
    """Request to generate a document from a template."""

    template_id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    variables: dict[str, Any] = Field(default_factory=dict)
    crm_object: CrmObjectRef | None = None
    priority: int = Field(default=0, ge=0, le=100)


class DocumentRead(BaseModel):
    """Schema for reading a document."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    template_id: UUID
    created_by_id: UUID | None = None
    name: str
    status: DocumentStatus
    variables: dict[str, Any] | None = None
    resolved_variables: dict[str, Any] | None = None
    crm_object_id: str | None = None
    crm_object_type: str | None = None
    file_url: str | None = None
    file_size: int | None = None
    crm_file_id: str | None = None
    error_message: str | None = None
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class DocumentCreateResponse(BaseModel):
    """Response after a generation request was accepted."""

    id: UUID
    name: str
    status: DocumentStatus
    job_id: str
    message: str = "Document queued for generation"


class DocumentStatusRead(BaseModel):
    id: UUID
    status: DocumentStatus
    error_message: str | None = None
    file_url: str | None = None
    job: dict[str, Any] | None = None
