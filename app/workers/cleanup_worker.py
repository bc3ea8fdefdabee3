"""Time-based cleanup of temp files, failed documents, job records and audit rows."""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from app.core.exceptions import PipelineError
from app.models.audit_log import AuditLog
from app.models.document import Document, DocumentStatus
from app.services.audit import AuditAction, record_audit
from app.services.queue.types import CleanupType

settings = get_settings()
logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_HOURS: dict[CleanupType, float] = {
    CleanupType.TEMP_FILES: settings.cleanup_temp_files_max_age_hours,
    CleanupType.OLD_DOCUMENTS: settings.cleanup_old_documents_max_age_hours,
    CleanupType.FAILED_JOBS: settings.queue_failed_retention_hours,
    CleanupType.AUDIT_LOGS: settings.audit_log_retention_days * 24,
    CleanupType.STALE_DOCUMENTS: settings.cleanup_stale_documents_max_age_hours,
}


@dataclass
class CleanupResult:
    type: str
    items_processed: int = 0
    items_deleted: int = 0
    bytes_freed: int = 0
    dry_run: bool = False


@dataclass
class CleanupRequest:
    type: CleanupType
    older_than_hours: float
    tenant_id: UUID | None = None
    dry_run: bool = False

    @property
    def cutoff(self) -> datetime:
        return datetime.now(timezone.utc) - timedelta(hours=self.older_than_hours)

    @classmethod
    def from_payload(cls, payload: dict) -> "CleanupRequest":
        cleanup_type = CleanupType(payload["type"])
        hours = payload.get("older_than_hours")
        tenant_id = payload.get("tenant_id")
        return cls(
            type=cleanup_type,
            older_than_hours=float(hours) if hours is not None else DEFAULT_MAX_AGE_HOURS[cleanup_type],
            tenant_id=UUID(tenant_id) if tenant_id else None,
            dry_run=bool(payload.get("dry_run", False)),
        )


async def cleanup_temp_files(ctx: dict, request: CleanupRequest) -> CleanupResult:
    stats = await ctx["file_store"].cleanup_older_than(request.older_than_hours, dry_run=request.dry_run)
    return CleanupResult(
        type=request.type.value,
        items_processed=stats.files,
        items_deleted=0 if request.dry_run else stats.files,
        bytes_freed=0 if request.dry_run else stats.bytes,
        dry_run=request.dry_run,
    )


async def cleanup_old_documents(ctx: dict, request: CleanupRequest) -> CleanupResult:
    """Delete FAILED documents older than the cutoff, row and file."""
    session_maker: async_sessionmaker[AsyncSession] = ctx["session_maker"]
    file_store = ctx["file_store"]
    result = CleanupResult(type=request.type.value, dry_run=request.dry_run)

    async with session_maker() as db:
        query = select(Document).where(
            Document.status == DocumentStatus.FAILED.value,
            Document.created_at < request.cutoff,
        )
        if request.tenant_id:
            query = query.where(Document.tenant_id == request.tenant_id)
        documents = (await db.execute(query)).scalars().all()
        result.items_processed = len(documents)

        if request.dry_run:
            return result

        for document in documents:
            if document.file_path:
                info = await file_store.stat(document.file_path)
                if await file_store.delete(document.file_path) and info.size:
                    result.bytes_freed += info.size
            await db.delete(document)
            result.items_deleted += 1
        await db.commit()

    return result


async def cleanup_failed_jobs(ctx: dict, request: CleanupRequest) -> CleanupResult:
    trim = await ctx["queue_manager"].cleanup_completed(
        failed_retention_hours=request.older_than_hours,
        dry_run=request.dry_run,
    )
    removed = trim.completed_removed + trim.failed_removed
    return CleanupResult(
        type=request.type.value,
        items_processed=removed,
        items_deleted=0 if request.dry_run else removed,
        bytes_freed=0 if request.dry_run else trim.bytes_freed,
        dry_run=request.dry_run,
    )


async def cleanup_audit_logs(ctx: dict, request: CleanupRequest) -> CleanupResult:
    """Delete audit rows past the retention window."""
    hours = request.older_than_hours
    if hours <= 24:
        # Audit rows are never purged on a short window
        hours = settings.audit_log_retention_days * 24
    cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)

    conditions = [AuditLog.created_at < cutoff]
    if request.tenant_id:
        conditions.append(AuditLog.tenant_id == request.tenant_id)

    result = CleanupResult(type=request.type.value, dry_run=request.dry_run)
    async with ctx["session_maker"]() as db:
        count = await db.scalar(select(func.count()).select_from(AuditLog).where(*conditions))
        result.items_processed = count or 0
        if request.dry_run:
            return result
        deleted = await db.execute(delete(AuditLog).where(*conditions))
        await db.commit()
        result.items_deleted = deleted.rowcount or 0
    return result


async def cleanup_stale_documents(ctx: dict, request: CleanupRequest) -> CleanupResult:
    """Mark PENDING/PROCESSING documents with no live generation job as FAILED."""
    queue_manager = ctx["queue_manager"]
    result = CleanupResult(type=request.type.value, dry_run=request.dry_run)

    async with ctx["session_maker"]() as db:
        query = select(Document).where(
            Document.status.in_([DocumentStatus.PENDING.value, DocumentStatus.PROCESSING.value]),
            Document.created_at < request.cutoff,
        )
        if request.tenant_id:
            query = query.where(Document.tenant_id == request.tenant_id)
        documents = (await db.execute(query)).scalars().all()

        for document in documents:
            job = await queue_manager.get_document_job_status(document.id)
            if job is not None and job.state.is_live:
                continue
            result.items_processed += 1
            if request.dry_run:
                continue
            previous = document.status
            document.transition_to(DocumentStatus.FAILED)
            document.error_message = "Abandoned: no active generation job"
            document.processing_completed_at = datetime.now(timezone.utc)
            record_audit(
                db,
                tenant_id=document.tenant_id,
                action=AuditAction.MARK_ABANDONED,
                entity_type="document",
                entity_id=document.id,
                old_values={"status": previous},
                new_values={"status": document.status},
            )
            result.items_deleted += 1
        await db.commit()

    return result


HANDLERS: dict[CleanupType, Callable[[dict, CleanupRequest], Awaitable[CleanupResult]]] = {
    CleanupType.TEMP_FILES: cleanup_temp_files,
    CleanupType.OLD_DOCUMENTS: cleanup_old_documents,
    CleanupType.FAILED_JOBS: cleanup_failed_jobs,
    CleanupType.AUDIT_LOGS: cleanup_audit_logs,
    CleanupType.STALE_DOCUMENTS: cleanup_stale_documents,
}


async def run_cleanup(ctx: dict, payload: dict) -> dict:
    """Dispatch a cleanup job on its ``type``."""
    try:
        request = CleanupRequest.from_payload(payload)
    except (KeyError, ValueError) as e:
        raise PipelineError(f"Invalid cleanup payload: {e}", retryable=False) from e

    logger.info(
        "Running %s cleanup (older than %sh, tenant=%s, dry_run=%s)",
        request.type.value,
        request.older_than_hours,
        request.tenant_id,
        request.dry_run,
    )
    result = await HANDLERS[request.type](ctx, request)
    logger.info(
        "Cleanup %s: processed=%d deleted=%d bytes_freed=%d",
        result.type,
        result.items_processed,
        result.items_deleted,
        result.bytes_freed,
    )
    return asdict(result)
