"""Recurring cleanup trigger.

Each configured cleanup type gets its own asyncio loop. Every tick submits a
fresh one-shot cleanup job keyed by type and tick number, so the job itself
never reschedules and a tick that is re-run (after a restart within the same
interval) collapses onto the job already submitted.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

from app.config import get_settings
from app.core.exceptions import QueueNotReadyError
from app.services.queue.manager import QueueManager
from app.services.queue.types import CleanupType, JobHandle

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass
class CleanupSchedule:
    cleanup_type: CleanupType
    interval_seconds: float
    options: dict = field(default_factory=dict)


def default_schedules() -> list[CleanupSchedule]:
    return [
        CleanupSchedule(
            CleanupType.TEMP_FILES,
            settings.cleanup_temp_files_interval_seconds,
            {"older_than_hours": settings.cleanup_temp_files_max_age_hours},
        ),
        CleanupSchedule(
            CleanupType.STALE_DOCUMENTS,
            settings.cleanup_stale_documents_interval_seconds,
            {"older_than_hours": settings.cleanup_stale_documents_max_age_hours},
        ),
        CleanupSchedule(
            CleanupType.OLD_DOCUMENTS,
            settings.cleanup_old_documents_interval_seconds,
            {"older_than_hours": settings.cleanup_old_documents_max_age_hours},
        ),
        CleanupSchedule(
            CleanupType.FAILED_JOBS,
            settings.cleanup_failed_jobs_interval_seconds,
            {"older_than_hours": settings.queue_failed_retention_hours},
        ),
        CleanupSchedule(
            CleanupType.AUDIT_LOGS,
            settings.cleanup_audit_logs_interval_seconds,
            {"older_than_hours": settings.audit_log_retention_days * 24},
        ),
    ]


class CleanupScheduler:
    """Submits cleanup jobs on fixed intervals."""

    def __init__(
        self,
        queue_manager: QueueManager,
        schedules: list[CleanupSchedule] | None = None,
    ) -> None:
        self.queue_manager = queue_manager
        self.schedules = schedules if schedules is not None else default_schedules()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        for schedule in self.schedules:
            self._tasks.append(
                asyncio.create_task(
                    self._run(schedule),
                    name=f"cleanup-schedule-{schedule.cleanup_type.value}",
                )
            )
        logger.info("Cleanup scheduler started (%d schedules)", len(self.schedules))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Cleanup scheduler stopped")

    async def _run(self, schedule: CleanupSchedule) -> None:
        while True:
            await asyncio.sleep(schedule.interval_seconds)
            await self.tick(schedule)

    async def tick(self, schedule: CleanupSchedule, now: float | None = None) -> JobHandle | None:
        """Submit the cleanup job for the current tick, or skip it if the queue is down."""
        now = time.time() if now is None else now
        tick_number = int(now // schedule.interval_seconds)
        job_key = f"cleanup-{schedule.cleanup_type.value}-{tick_number}"

        if not self.queue_manager.is_ready():
            logger.warning("Queue not ready, skipping %s cleanup tick", schedule.cleanup_type.value)
            return None
        try:
            return await self.queue_manager.schedule_cleanup(
                schedule.cleanup_type,
                schedule.options,
                job_key=job_key,
            )
        except QueueNotReadyError:
            logger.warning("Queue went away, skipping %s cleanup tick", schedule.cleanup_type.value)
            return None
