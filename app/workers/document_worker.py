"""Document generation: template -> resolved HTML -> PDF -> storage -> DB."""

import asyncio
import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.core.exceptions import DocumentNotFoundError
from app.core.template_resolver import CrmContext, parse_declarations
from app.models.document import CrmObjectType, Document, DocumentStatus
from app.services.audit import AuditAction, record_audit
from app.services.queue.manager import report_progress
from app.services.queue.types import JobFailure
from app.services.storage import generate_unique_filename

logger = logging.getLogger(__name__)


async def load_document(db: AsyncSession, document_id: UUID, tenant_id: UUID) -> Document:
    """Document with template and author, scoped to the tenant."""
    result = await db.execute(
        select(Document)
        .where(Document.id == document_id, Document.tenant_id == tenant_id)
        .options(selectinload(Document.template), selectinload(Document.created_by))
    )
    document = result.scalar_one_or_none()
    if document is None:
        raise DocumentNotFoundError(f"Document {document_id} not found for tenant {tenant_id}")
    return document


def crm_context_for(document: Document) -> CrmContext | None:
    if not document.crm_object_id or not document.crm_object_type:
        return None
    return CrmContext(
        object_type=CrmObjectType(document.crm_object_type.lower()),
        object_id=document.crm_object_id,
    )


async def mark_failed(
    session_maker: async_sessionmaker[AsyncSession],
    document_id: UUID,
    tenant_id: UUID,
    message: str,
    from_statuses: tuple[DocumentStatus, ...] = (DocumentStatus.PROCESSING,),
) -> bool:
    """Flip the document to FAILED in a fresh session. Returns whether a row changed."""
    async with session_maker() as db:
        result = await db.execute(
            update(Document)
            .where(
                Document.id == document_id,
                Document.tenant_id == tenant_id,
                Document.status.in_([s.value for s in from_statuses]),
            )
            .values(
                status=DocumentStatus.FAILED.value,
                error_message=message[:2000],
                processing_completed_at=datetime.now(timezone.utc),
            )
        )
        await db.commit()
        return result.rowcount > 0


async def generate_document(ctx: dict, payload: dict) -> dict:
    """Generate the PDF for one document.

    Args:
        ctx: worker context (session_maker, resolver, renderer, file_store,
            queue_manager, plus the job's attempt number)
        payload: ``{document_id, tenant_id, user_id, ...}``

    Returns:
        Dict with the stored file location
    """
    document_id = UUID(payload["document_id"])
    tenant_id = UUID(payload["tenant_id"])
    session_maker: async_sessionmaker[AsyncSession] = ctx["session_maker"]
    is_retry = ctx.get("attempt", 1) > 1

    async with session_maker() as db:
        document = await load_document(db, document_id, tenant_id)

        if document.status in (DocumentStatus.COMPLETED.value, DocumentStatus.UPLOADED.value):
            # A redelivery after success only has to make sure the upload was queued
            logger.info("Document %s already generated, skipping", document_id)
            if document.status == DocumentStatus.COMPLETED.value and document.crm_object_id:
                await ctx["queue_manager"].enqueue_crm_upload(document.id, tenant_id, document.created_by_id)
            return {"document_id": str(document_id), "file_path": document.file_path, "skipped": True}

        try:
            document.transition_to(DocumentStatus.PROCESSING, retry=is_retry)
            document.processing_started_at = datetime.now(timezone.utc)
            document.processing_completed_at = None
            document.error_message = None
            await db.commit()
            await report_progress(ctx, 10)

            logger.info(
                "Generating document %s (%s) for tenant %s, attempt %s",
                document_id,
                document.name,
                tenant_id,
                ctx.get("attempt", 1),
            )

            # 1. Resolve variables into final HTML
            template = document.template
            processed = await ctx["resolver"].process(
                template.content,
                parse_declarations(template.variables),
                document.variables or {},
                tenant_id=tenant_id,
                crm_context=crm_context_for(document),
            )
            await report_progress(ctx, 30)

            # 2. Render
            author = None
            if document.created_by is not None:
                author = document.created_by.name or document.created_by.email
            pdf = await ctx["renderer"].render_business_document(
                processed.html,
                title=document.name,
                author=author,
            )
            await report_progress(ctx, 50)

            # 3. Store
            stored = await ctx["file_store"].save(
                tenant_id,
                document_id,
                generate_unique_filename(document.name),
                pdf,
            )
            await report_progress(ctx, 70)

            # 4. Record the result
            document.transition_to(DocumentStatus.COMPLETED)
            document.resolved_variables = processed.resolved_variables
            document.file_path = stored.path
            document.file_url = stored.url
            document.file_size = stored.size
            document.processing_completed_at = datetime.now(timezone.utc)
            record_audit(
                db,
                tenant_id=tenant_id,
                user_id=document.created_by_id,
                action=AuditAction.GENERATE,
                entity_type="document",
                entity_id=document_id,
                new_values={
                    "status": document.status,
                    "file_path": stored.path,
                    "file_size": stored.size,
                },
            )
            await db.commit()
            await report_progress(ctx, 90)

            # 5. Hand over to the CRM lane
            if document.crm_object_id:
                await ctx["queue_manager"].enqueue_crm_upload(document.id, tenant_id, document.created_by_id)

            await report_progress(ctx, 100)
            logger.info("Document %s generated: %s (%d bytes)", document_id, stored.path, stored.size)
            return {
                "document_id": str(document_id),
                "file_path": stored.path,
                "file_url": stored.url,
                "file_size": stored.size,
            }

        except asyncio.CancelledError:
            # Timed out or shut down mid-run; the next attempt starts from FAILED
            logger.warning("Generation of document %s was cancelled", document_id)
            await db.rollback()
            await mark_failed(session_maker, document_id, tenant_id, "Generation was cancelled before completion")
            raise
        except Exception as e:
            logger.error("Error generating document %s: %s", document_id, e)
            await db.rollback()
            await mark_failed(session_maker, document_id, tenant_id, str(e) or type(e).__name__)
            raise


async def on_generation_failed(ctx: dict, failure: JobFailure) -> None:
    """Terminal failure: make sure the row says FAILED and leave an audit entry."""
    document_id = UUID(failure.payload["document_id"])
    tenant_id = UUID(failure.payload["tenant_id"])
    user_id = failure.payload.get("user_id")
    message = str(failure.error) or type(failure.error).__name__
    session_maker: async_sessionmaker[AsyncSession] = ctx["session_maker"]

    await mark_failed(
        session_maker,
        document_id,
        tenant_id,
        message,
        from_statuses=(DocumentStatus.PENDING, DocumentStatus.PROCESSING),
    )
    async with session_maker() as db:
        record_audit(
            db,
            tenant_id=tenant_id,
            user_id=UUID(user_id) if user_id else None,
            action=AuditAction.GENERATE_FAILED,
            entity_type="document",
            entity_id=document_id,
            new_values={"error": message[:2000], "attempts": failure.attempts},
        )
        await db.commit()
    logger.error("Document %s failed permanently after %d attempt(s)", document_id, failure.attempts)
