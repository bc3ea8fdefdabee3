"""HubSpot workflow custom actions: generate a PDF for the enrolled record.

These endpoints are called by HubSpot, not by logged-in users. The portal id
in the payload selects the tenant; when an app secret is configured every
request must carry a valid v3 signature.
"""

import logging
import re
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.documents import QUEUE_UNAVAILABLE, submit_generation
from app.config import get_settings
from app.core.auth import verify_hubspot_signature
from app.deps import DbSession, Queue
from app.models.document import CrmObjectType, Document, DocumentStatus
from app.models.template import Template
from app.models.tenant import Tenant
from app.models.user import User, UserRole
from app.schemas.workflow import (
    WorkflowActionRequest,
    WorkflowActionResponse,
    WorkflowExecutionStatus,
    WorkflowOutputFields,
    WorkflowTemplateOption,
)
from app.services.audit import AuditAction, record_audit

settings = get_settings()
logger = logging.getLogger(__name__)

_NAME_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\.(\w+)\s*\}\}")

GENERATION_STATUS = {
    DocumentStatus.PENDING.value: "queued",
    DocumentStatus.PROCESSING.value: "queued",
    DocumentStatus.COMPLETED.value: "completed",
    DocumentStatus.UPLOADED.value: "completed",
    DocumentStatus.FAILED.value: "failed",
}


async def verify_hubspot_request(request: Request) -> None:
    secret = settings.hubspot_client_secret
    if not secret:
        return
    body = await request.body()
    valid = verify_hubspot_signature(
        secret,
        request.method,
        str(request.url),
        body,
        request.headers.get("X-HubSpot-Request-Timestamp"),
        request.headers.get("X-HubSpot-Signature-v3"),
    )
    if not valid:
        logger.warning("Rejected unsigned workflow request to %s", request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid HubSpot signature")


router = APIRouter(dependencies=[Depends(verify_hubspot_request)])


def render_document_name(pattern: str, object_type: CrmObjectType, properties: dict[str, Any]) -> str:
    """Fill ``{{<type>.<property>}}`` placeholders from the enrolled record."""

    def replace(match: re.Match) -> str:
        if match.group(1) != object_type.value:
            return ""
        value = properties.get(match.group(2))
        return "" if value is None else str(value)

    return _NAME_PLACEHOLDER.sub(replace, pattern).strip()


def _failed(status_code: int, message: str) -> JSONResponse:
    body = WorkflowActionResponse(
        output_fields=WorkflowOutputFields(generation_status="failed"),
        completed=True,
        message=message,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


def _queued(document: Document, message: str) -> WorkflowActionResponse:
    return WorkflowActionResponse(
        output_fields=WorkflowOutputFields(
            document_id=str(document.id),
            generation_status=GENERATION_STATUS[document.status],
        ),
        completed=False,
        message=message,
    )


async def _active_tenant(db: AsyncSession, portal_id: int | str) -> Tenant | None:
    result = await db.execute(
        select(Tenant).where(Tenant.hubspot_portal_id == str(portal_id), Tenant.is_active.is_(True))
    )
    return result.scalar_one_or_none()


async def _acting_user(db: AsyncSession, tenant_id) -> User | None:
    """The tenant's first admin, or its first user; workflows run on their behalf."""
    result = await db.execute(
        select(User)
        .where(User.tenant_id == tenant_id)
        .order_by((User.role == UserRole.ADMIN).desc(), User.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


@router.post("/generate-pdf", response_model=WorkflowActionResponse)
async def generate_pdf(
    data: WorkflowActionRequest,
    db: DbSession,
    queue: Queue,
) -> WorkflowActionResponse | JSONResponse:
    """Queue a document for the record that enrolled in the workflow."""
    logger.info(
        "Workflow %s execution %s: generate template %s for %s %s (portal %s)",
        data.workflow.id,
        data.execution_id,
        data.input_fields.template_id,
        data.object.object_type,
        data.object.object_id,
        data.portal_id,
    )
    try:
        object_type = CrmObjectType(data.object.object_type.lower())
    except ValueError:
        return _failed(status.HTTP_400_BAD_REQUEST, f"Unsupported object type {data.object.object_type}")

    tenant = await _active_tenant(db, data.portal_id)
    if tenant is None:
        return _failed(status.HTTP_400_BAD_REQUEST, "Portal is not connected")

    if data.execution_id:
        result = await db.execute(
            select(Document).where(
                Document.tenant_id == tenant.id,
                Document.workflow_execution_id == data.execution_id,
            )
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            # HubSpot retried a call we already accepted
            return _queued(existing, f'Document "{existing.name}" already requested')

    result = await db.execute(
        select(Template).where(
            Template.id == data.input_fields.template_id,
            Template.tenant_id == tenant.id,
            Template.is_active.is_(True),
        )
    )
    template = result.scalar_one_or_none()
    if template is None:
        return _failed(status.HTTP_400_BAD_REQUEST, "Template not found or inactive")

    if not queue.is_ready():
        raise QUEUE_UNAVAILABLE

    acting_user = await _acting_user(db, tenant.id)
    object_id = str(data.object.object_id)
    name = ""
    if data.input_fields.document_name:
        name = render_document_name(data.input_fields.document_name, object_type, data.object.properties)
    name = (name or f"{template.name} {object_id}")[:255]

    document = Document(
        tenant_id=tenant.id,
        template_id=template.id,
        created_by_id=acting_user.id if acting_user else None,
        name=name,
        # Snapshot of the enrolled record; a fresh CRM read still takes precedence
        variables={f"{object_type.value}.{key}": value for key, value in data.object.properties.items()},
        crm_object_id=object_id,
        crm_object_type=object_type.value,
        workflow_execution_id=data.execution_id,
        status=DocumentStatus.PENDING.value,
    )
    db.add(document)
    await db.flush()
    record_audit(
        db,
        tenant_id=tenant.id,
        user_id=document.created_by_id,
        action=AuditAction.WORKFLOW_GENERATE,
        entity_type="document",
        entity_id=document.id,
        new_values={
            "template_id": str(template.id),
            "workflow_id": str(data.workflow.id) if data.workflow.id is not None else None,
            "workflow_name": data.workflow.name,
            "execution_id": data.execution_id,
            "object_type": object_type.value,
            "object_id": object_id,
        },
    )
    await db.commit()

    handle = await submit_generation(db, queue, document, document.created_by_id)
    logger.info("Workflow document %s queued as %s", document.id, handle.job_id)
    return _queued(document, f'Document "{name}" queued for generation')


@router.get("/status/{execution_id}", response_model=WorkflowExecutionStatus)
async def get_execution_status(execution_id: str, db: DbSession) -> WorkflowExecutionStatus:
    result = await db.execute(
        select(Document)
        .where(Document.workflow_execution_id == execution_id)
        .order_by(Document.created_at.desc())
        .limit(1)
    )
    document = result.scalar_one_or_none()
    if document is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workflow execution not found")

    generation_status = GENERATION_STATUS[document.status]
    return WorkflowExecutionStatus(
        execution_id=execution_id,
        document_id=document.id,
        document_name=document.name,
        status=document.status,
        generation_status=generation_status,
        completed=generation_status != "queued",
        file_url=document.file_url,
        error_message=document.error_message,
        created_at=document.created_at,
        completed_at=document.processing_completed_at,
    )


@router.get("/templates/{portal_id}", response_model=list[WorkflowTemplateOption])
async def list_portal_templates(portal_id: str, db: DbSession) -> list[Template]:
    """Active templates offered in the action's configuration dropdown."""
    tenant = await _active_tenant(db, portal_id)
    if tenant is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Portal is not connected")
    result = await db.execute(
        select(Template)
        .where(Template.tenant_id == tenant.id, Template.is_active.is_(True))
        .order_by(Template.name)
    )
    return list(result.scalars().all())
