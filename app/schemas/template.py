"""Template schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.template import VariableType


class VariableDeclarationSchema(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    label: str = Field(..., min_length=1, max_length=255)
    type: VariableType = VariableType.CUSTOM
    required: bool = False
    default_value: str | None = None


class TemplateCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    content: str = Field(..., min_length=1)
    variables: list[VariableDeclarationSchema] = Field(default_factory=list)
    is_active: bool = True


class TemplateUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    content: str | None = Field(default=None, min_length=1)
    variables: list[VariableDeclarationSchema] | None = None
    is_active: bool | None = None


class TemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    created_by_id: UUID | None = None
    name: str
    description: str | None = None
    content: str
    variables: list[VariableDeclarationSchema] | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class TemplateVariablesRead(BaseModel):
    """Placeholders found in the HTML compared to the declarations."""

    placeholders: list[str]
    declared: list[str]
    undeclared: list[str]
