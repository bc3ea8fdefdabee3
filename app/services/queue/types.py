"""Queue lanes, job envelopes and status structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from app.core.exceptions import UnknownQueueError


class QueueName(str, Enum):
    """The three independent lanes."""

    DOCUMENT_GENERATION = "document-generation"
    CRM_UPLOAD = "crm-upload"
    CLEANUP = "cleanup"

    @classmethod
    def parse(cls, value: "str | QueueName") -> "QueueName":
        if isinstance(value, cls):
            return value
        # Short aliases accepted by the admin endpoints
        aliases = {"documents": cls.DOCUMENT_GENERATION, "crm": cls.CRM_UPLOAD, "hubspot": cls.CRM_UPLOAD}
        if value in aliases:
            return aliases[value]
        try:
            return cls(value)
        except ValueError:
            raise UnknownQueueError(f"Unknown queue: {value}")


class JobType:
    GENERATE_DOCUMENT = "generate-document"
    UPLOAD_TO_CRM = "upload-to-crm"
    CLEANUP = "cleanup"


class CleanupType(str, Enum):
    TEMP_FILES = "temp_files"
    OLD_DOCUMENTS = "old_documents"
    FAILED_JOBS = "failed_jobs"
    AUDIT_LOGS = "audit_logs"
    STALE_DOCUMENTS = "stale_documents"


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_live(self) -> bool:
        """The job is still going to run (or is running)."""
        return self in (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)


# Deterministic key prefixes, one per lane
JOB_KEY_PREFIXES: dict[QueueName, str] = {
    QueueName.DOCUMENT_GENERATION: "doc-",
    QueueName.CRM_UPLOAD: "crm-",
    QueueName.CLEANUP: "cleanup-",
}


def generation_job_key(document_id: Any) -> str:
    return f"doc-{document_id}"


def crm_upload_job_key(document_id: Any) -> str:
    return f"crm-{document_id}"


def queue_for_job_key(job_key: str) -> QueueName:
    for queue, prefix in JOB_KEY_PREFIXES.items():
        if job_key.startswith(prefix):
            return queue
    raise UnknownQueueError(f"Cannot infer queue for job key: {job_key}")


@dataclass
class JobOptions:
    priority: int = 0
    delay_seconds: float = 0
    max_attempts: int | None = None
    job_key: str | None = None


@dataclass
class JobHandle:
    job_id: str
    queue: QueueName
    existing: bool = False


@dataclass
class JobStatusInfo:
    job_id: str
    queue: QueueName
    state: JobState
    progress: int = 0
    attempts: int = 0
    error: str | None = None
    result: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "queue": self.queue.value,
            "state": self.state.value,
            "progress": self.progress,
            "attempts": self.attempts,
            "error": self.error,
            "result": self.result,
        }


@dataclass
class QueueCounts:
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    paused: bool = False


@dataclass
class JobFailure:
    """Passed to failure handlers when a job is given up on."""

    job_id: str
    queue: QueueName
    job_type: str
    payload: dict[str, Any]
    attempts: int
    error: BaseException


@dataclass
class TrimResult:
    completed_removed: int = 0
    failed_removed: int = 0
    bytes_freed: int = 0
    job_ids: list[str] = field(default_factory=list)


ProcessorHandler = Callable[[dict, dict], Awaitable[Any]]
FailureHandler = Callable[[dict, JobFailure], Awaitable[None]]
