"""Upload generated PDFs to HubSpot and attach them to the document's record."""

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from app.core.exceptions import InvalidStatusTransitionError, PipelineError
from app.models.document import CrmObjectType, Document, DocumentStatus
from app.services.audit import AuditAction, record_audit
from app.services.queue.manager import report_progress
from app.services.queue.types import JobFailure
from app.workers.document_worker import load_document

settings = get_settings()
logger = logging.getLogger(__name__)

UPLOAD_ERROR_PREFIX = "CRM upload failed: "


def upload_folder(now: datetime | None = None) -> str:
    """Year-scoped folder in the tenant's own HubSpot file manager."""
    now = now or datetime.now(timezone.utc)
    return f"{settings.hubspot_upload_folder.rstrip('/')}/{now.year}"


async def _annotate_upload_error(
    session_maker: async_sessionmaker[AsyncSession],
    document_id: UUID,
    tenant_id: UUID,
    user_id: UUID | None,
    message: str,
    action: str,
    attempts: int | None = None,
) -> None:
    """Attach the error to a COMPLETED document without touching its status."""
    async with session_maker() as db:
        await db.execute(
            update(Document)
            .where(
                Document.id == document_id,
                Document.tenant_id == tenant_id,
                Document.status == DocumentStatus.COMPLETED.value,
            )
            .values(error_message=f"{UPLOAD_ERROR_PREFIX}{message}"[:2000])
        )
        new_values: dict = {"error": message[:2000]}
        if attempts is not None:
            new_values["attempts"] = attempts
        record_audit(
            db,
            tenant_id=tenant_id,
            user_id=user_id,
            action=action,
            entity_type="document",
            entity_id=document_id,
            new_values=new_values,
        )
        await db.commit()


async def upload_to_crm(ctx: dict, payload: dict) -> dict:
    """Push a COMPLETED document's PDF to HubSpot.

    A failure leaves the document COMPLETED (the PDF is still valid and
    downloadable) with the error recorded in ``error_message``.
    """
    document_id = UUID(payload["document_id"])
    tenant_id = UUID(payload["tenant_id"])
    user_id = UUID(payload["user_id"]) if payload.get("user_id") else None
    session_maker: async_sessionmaker[AsyncSession] = ctx["session_maker"]

    async with session_maker() as db:
        document = await load_document(db, document_id, tenant_id)

        if document.status == DocumentStatus.UPLOADED.value:
            logger.info("Document %s already uploaded (file %s)", document_id, document.crm_file_id)
            return {"document_id": str(document_id), "crm_file_id": document.crm_file_id, "skipped": True}
        if document.status != DocumentStatus.COMPLETED.value:
            raise InvalidStatusTransitionError(document.status, DocumentStatus.UPLOADED.value)
        if not document.crm_object_id or not document.crm_object_type or not document.file_path:
            raise PipelineError(f"Document {document_id} has nothing to upload", retryable=False)

        try:
            content = await ctx["file_store"].read(document.file_path)
            await report_progress(ctx, 25)

            crm_client = ctx["crm_client"]
            uploaded = await crm_client.upload_file(
                tenant_id,
                f"{document.name}.pdf",
                content,
                folder_path=upload_folder(),
            )
            await report_progress(ctx, 60)

            object_type = CrmObjectType(document.crm_object_type.lower())
            await crm_client.attach_file(
                tenant_id,
                uploaded.id,
                object_type,
                document.crm_object_id,
                note_body=f"Documento generado: {document.name}",
            )
            await report_progress(ctx, 85)

            document.transition_to(DocumentStatus.UPLOADED)
            document.crm_file_id = uploaded.id
            document.crm_file_url = uploaded.url
            document.error_message = None
            record_audit(
                db,
                tenant_id=tenant_id,
                user_id=user_id,
                action=AuditAction.UPLOAD_TO_CRM,
                entity_type="document",
                entity_id=document_id,
                new_values={
                    "crm_file_id": uploaded.id,
                    "crm_object_type": object_type.value,
                    "crm_object_id": document.crm_object_id,
                },
            )
            await db.commit()
            await report_progress(ctx, 100)
            logger.info("Document %s uploaded to HubSpot as file %s", document_id, uploaded.id)
            return {"document_id": str(document_id), "crm_file_id": uploaded.id}

        except Exception as e:
            logger.error("Error uploading document %s to HubSpot: %s", document_id, e)
            await db.rollback()
            await _annotate_upload_error(
                session_maker,
                document_id,
                tenant_id,
                user_id,
                str(e) or type(e).__name__,
                AuditAction.UPLOAD_TO_CRM_FAILED,
            )
            raise


async def on_upload_failed(ctx: dict, failure: JobFailure) -> None:
    """Terminal upload failure: final annotation and audit entry."""
    user_id = failure.payload.get("user_id")
    await _annotate_upload_error(
        ctx["session_maker"],
        UUID(failure.payload["document_id"]),
        UUID(failure.payload["tenant_id"]),
        UUID(user_id) if user_id else None,
        str(failure.error) or type(failure.error).__name__,
        AuditAction.UPLOAD_TO_CRM_FAILED_PERMANENTLY,
        attempts=failure.attempts,
    )
    logger.error(
        "Upload of document %s failed permanently after %d attempt(s)",
        failure.payload["document_id"],
        failure.attempts,
    )
