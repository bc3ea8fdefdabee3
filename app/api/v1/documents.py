"""Document endpoints."""

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, Response, status
from sqlalchemy import select

from app.core.exceptions import QueueNotReadyError, StoredFileNotFoundError
from app.core.template_resolver import parse_declarations, validate_required
from app.deps import CurrentUser, DbSession, Queue
from app.models.document import Document, DocumentStatus
from app.models.template import Template
from app.schemas.document import (
    DocumentCreate,
    DocumentCreateResponse,
    DocumentRead,
    DocumentStatusRead,
)
from app.services.audit import AuditAction, record_audit
from app.services.storage import storage_service

logger = logging.getLogger(__name__)

router = APIRouter()

QUEUE_UNAVAILABLE = HTTPException(
    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
    detail="Document queue is unavailable, retry the request shortly",
    headers={"Retry-After": "30"},
)


async def _get_document(db, document_id: UUID, tenant_id: UUID) -> Document:
    result = await db.execute(
        select(Document).where(Document.id == document_id, Document.tenant_id == tenant_id)
    )
    document = result.scalar_one_or_none()
    if not document:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Document not found",
        )
    return document


async def submit_generation(db, queue, document: Document, user_id: UUID, priority: int = 0):
    """Enqueue generation for a committed PENDING row; drop the row if the queue refuses."""
    try:
        return await queue.enqueue_generation(
            document.id,
            document.template_id,
            document.variables or {},
            document.tenant_id,
            user_id,
            priority=priority,
        )
    except QueueNotReadyError:
        logger.warning("Queue not ready, discarding generation request %s", document.id)
        await db.delete(document)
        await db.commit()
        raise QUEUE_UNAVAILABLE


@router.get("", response_model=list[DocumentRead])
async def list_documents(
    user: CurrentUser,
    db: DbSession,
    template_id: UUID | None = None,
    status: DocumentStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Document]:
    """List documents for the tenant."""
    query = select(Document).where(Document.tenant_id == user.tenant_id)
    if template_id:
        query = query.where(Document.template_id == template_id)
    if status:
        query = query.where(Document.status == status.value)
    query = query.order_by(Document.created_at.desc()).limit(min(limit, 200)).offset(offset)

    result = await db.execute(query)
    return list(result.scalars().all())


@router.post("", response_model=DocumentCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_document(
    data: DocumentCreate,
    user: CurrentUser,
    db: DbSession,
    queue: Queue,
) -> DocumentCreateResponse:
    """Create a generation request and queue it."""
    if not queue.is_ready():
        raise QUEUE_UNAVAILABLE

    result = await db.execute(
        select(Template).where(Template.id == data.template_id, Template.tenant_id == user.tenant_id)
    )
    template = result.scalar_one_or_none()
    if not template:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found")
    if not template.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Template is inactive")

    validation = validate_required(parse_declarations(template.variables), data.variables)
    if not validation.ok:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": "Missing required variables", "missing": validation.missing},
        )

    document = Document(
        tenant_id=user.tenant_id,
        template_id=template.id,
        created_by_id=user.id,
        name=data.name,
        variables=data.variables,
        crm_object_id=data.crm_object.object_id if data.crm_object else None,
        crm_object_type=data.crm_object.object_type.value if data.crm_object else None,
        status=DocumentStatus.PENDING.value,
    )
    db.add(document)
    await db.flush()
    record_audit(
        db,
        tenant_id=user.tenant_id,
        user_id=user.id,
        action=AuditAction.CREATE,
        entity_type="document",
        entity_id=document.id,
        new_values={"name": document.name, "template_id": str(template.id)},
    )
    # Committed before enqueueing so the worker always finds the row
    await db.commit()

    handle = await submit_generation(db, queue, document, user.id, priority=data.priority)
    return DocumentCreateResponse(
        id=document.id,
        name=document.name,
        status=DocumentStatus.PENDING,
        job_id=handle.job_id,
    )


@router.get("/{document_id}", response_model=DocumentRead)
async def get_document(
    document_id: UUID,
    user: CurrentUser,
    db: DbSession,
) -> Document:
    """Get a specific document."""
    return await _get_document(db, document_id, user.tenant_id)


@router.get("/{document_id}/status", response_model=DocumentStatusRead)
async def get_document_status(
    document_id: UUID,
    user: CurrentUser,
    db: DbSession,
    queue: Queue,
) -> DocumentStatusRead:
    """Document state plus the live state of its generation job."""
    document = await _get_document(db, document_id, user.tenant_id)
    job = None
    try:
        job_status = await queue.get_document_job_status(document.id)
        job = job_status.to_dict() if job_status else None
    except QueueNotReadyError:
        logger.info("Queue not ready, returning document status only for %s", document_id)
    return DocumentStatusRead(
        id=document.id,
        status=DocumentStatus(document.status),
        error_message=document.error_message,
        file_url=document.file_url,
        job=job,
    )


@router.post(
    "/{document_id}/regenerate",
    response_model=DocumentCreateResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def regenerate_document(
    document_id: UUID,
    user: CurrentUser,
    db: DbSession,
    queue: Queue,
) -> DocumentCreateResponse:
    """Retry a FAILED document as a fresh generation request."""
    if not queue.is_ready():
        raise QUEUE_UNAVAILABLE

    original = await _get_document(db, document_id, user.tenant_id)
    if original.status != DocumentStatus.FAILED.value:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Only failed documents can be regenerated",
        )

    document = Document(
        tenant_id=original.tenant_id,
        template_id=original.template_id,
        created_by_id=user.id,
        name=original.name,
        variables=dict(original.variables or {}),
        crm_object_id=original.crm_object_id,
        crm_object_type=original.crm_object_type,
        status=DocumentStatus.PENDING.value,
    )
    db.add(document)
    await db.flush()
    record_audit(
        db,
        tenant_id=user.tenant_id,
        user_id=user.id,
        action=AuditAction.CREATE,
        entity_type="document",
        entity_id=document.id,
        new_values={"regenerated_from": str(original.id)},
    )
    await db.commit()

    handle = await submit_generation(db, queue, document, user.id)
    return DocumentCreateResponse(
        id=document.id,
        name=document.name,
        status=DocumentStatus.PENDING,
        job_id=handle.job_id,
    )


@router.get("/{document_id}/download")
async def download_document(
    document_id: UUID,
    user: CurrentUser,
    db: DbSession,
) -> Response:
    """Stream the generated PDF."""
    document = await _get_document(db, document_id, user.tenant_id)
    if document.status not in (DocumentStatus.COMPLETED.value, DocumentStatus.UPLOADED.value) or not document.file_path:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Document has not been generated yet",
        )
    try:
        content = await storage_service.read(document.file_path)
    except StoredFileNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")

    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{document.id}.pdf"'},
    )
