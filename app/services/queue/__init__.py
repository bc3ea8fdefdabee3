"""Job queue services."""

from app.services.queue.manager import QueueManager, report_progress
from app.services.queue.scheduler import CleanupSchedule, CleanupScheduler
from app.services.queue.types import (
    CleanupType,
    JobHandle,
    JobOptions,
    JobState,
    JobStatusInfo,
    JobType,
    QueueName,
)

__all__ = [
    "QueueManager",
    "report_progress",
    "CleanupSchedule",
    "CleanupScheduler",
    "CleanupType",
    "JobHandle",
    "JobOptions",
    "JobState",
    "JobStatusInfo",
    "JobType",
    "QueueName",
]
