"""Payloads of HubSpot workflow custom actions (camelCase on the wire)."""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WorkflowModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkflowObject(WorkflowModel):
    object_id: int | str
    object_type: str
    properties: dict[str, Any] = Field(default_factory=dict)


class WorkflowInputFields(WorkflowModel):
    template_id: UUID
    document_name: str | None = None


class WorkflowInfo(WorkflowModel):
    id: int | str | None = None
    name: str | None = None


class WorkflowActionRequest(WorkflowModel):
    object: WorkflowObject
    input_fields: WorkflowInputFields
    workflow: WorkflowInfo = Field(default_factory=WorkflowInfo)
    portal_id: int | str
    execution_id: str | None = None


GenerationStatus = Literal["queued", "completed", "failed"]


class WorkflowOutputFields(WorkflowModel):
    document_id: str = ""
    generation_status: GenerationStatus


class WorkflowActionResponse(WorkflowModel):
    output_fields: WorkflowOutputFields
    completed: bool
    message: str


class WorkflowExecutionStatus(WorkflowModel):
    execution_id: str
    document_id: UUID
    document_name: str
    status: str
    generation_status: GenerationStatus
    completed: bool
    file_url: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


class WorkflowTemplateOption(WorkflowModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: UUID
    name: str
    description: str | None = None
