"""Queue administration endpoints."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import select

from app.core.exceptions import QueueNotReadyError, UnknownQueueError
from app.deps import AdminUser, CurrentUser, DbSession, Queue
from app.models.document import Document
from app.schemas.queue import CleanupRequestCreate, JobHandleRead, QueueCountsRead
from app.services.queue.types import QueueName

router = APIRouter()


def _unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Document queue is unavailable",
        headers={"Retry-After": "30"},
    )


def _parse_queue(name: str) -> QueueName:
    try:
        return QueueName.parse(name)
    except UnknownQueueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/stats", response_model=dict[str, QueueCountsRead])
async def get_queue_stats(user: AdminUser, queue: Queue) -> dict:
    try:
        counts = await queue.get_queue_stats()
    except QueueNotReadyError:
        raise _unavailable()
    return {name: QueueCountsRead(**vars(lane)) for name, lane in counts.items()}


@router.post("/{name}/pause", status_code=status.HTTP_204_NO_CONTENT)
async def pause_queue(name: str, user: AdminUser, queue: Queue) -> None:
    lane = _parse_queue(name)
    try:
        await queue.pause(lane)
    except QueueNotReadyError:
        raise _unavailable()


@router.post("/{name}/resume", status_code=status.HTTP_204_NO_CONTENT)
async def resume_queue(name: str, user: AdminUser, queue: Queue) -> None:
    lane = _parse_queue(name)
    try:
        await queue.resume(lane)
    except QueueNotReadyError:
        raise _unavailable()


@router.post("/cleanup", response_model=JobHandleRead, status_code=status.HTTP_202_ACCEPTED)
async def schedule_cleanup(
    data: CleanupRequestCreate,
    user: AdminUser,
    queue: Queue,
) -> JobHandleRead:
    """Queue a one-shot cleanup scoped to the caller's tenant."""
    options = {"tenant_id": str(user.tenant_id), "dry_run": data.dry_run}
    if data.older_than_hours is not None:
        options["older_than_hours"] = data.older_than_hours
    try:
        handle = await queue.schedule_cleanup(data.type, options)
    except QueueNotReadyError:
        raise _unavailable()
    return JobHandleRead(job_id=handle.job_id, queue=handle.queue.value, existing=handle.existing)


@router.get("/jobs/{document_id}")
async def get_document_job(document_id: UUID, db: DbSession, user: CurrentUser, queue: Queue) -> dict:
    """Generation job state for one of the caller's tenant's documents."""
    document_exists = await db.scalar(
        select(Document.id).where(Document.id == document_id, Document.tenant_id == user.tenant_id)
    )
    if document_exists is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")

    try:
        job = await queue.get_document_job_status(document_id)
    except QueueNotReadyError:
        raise _unavailable()
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job.to_dict()
