"""Queue admin schemas."""

from pydantic import BaseModel, Field

from app.services.queue.types import CleanupType


class QueueCountsRead(BaseModel):
    waiting: int
    delayed: int
    active: int
    completed: int
    failed: int
    paused: bool


class CleanupRequestCreate(BaseModel):
    type: CleanupType
    older_than_hours: float | None = Field(default=None, gt=0)
    dry_run: bool = False


class JobHandleRead(BaseModel):
    job_id: str
    queue: str
    existing: bool = False
