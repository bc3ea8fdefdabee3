"""Error taxonomy for the document pipeline.

Every pipeline error carries a ``retryable`` flag. Queue lanes read it to
decide between scheduling another attempt and failing the job on the spot:

- validation and not-found errors are terminal
- render/CRM infrastructure errors are retried with backoff
- ``QueueNotReadyError`` is surfaced to callers so they retry submission
"""


class PipelineError(Exception):
    """Base class for errors raised inside the generation pipeline."""

    retryable: bool = True

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class TemplateValidationError(PipelineError):
    """Required template variables were not supplied."""

    retryable = False

    def __init__(self, missing: list[str]) -> None:
        self.missing = sorted(missing)
        super().__init__(f"Missing required variables: {', '.join(self.missing)}")


class NotFoundError(PipelineError):
    retryable = False


class DocumentNotFoundError(NotFoundError):
    pass


class TemplateNotFoundError(NotFoundError):
    pass


class StoredFileNotFoundError(NotFoundError):
    pass


class CrmObjectNotFoundError(NotFoundError):
    pass


class InvalidStatusTransitionError(PipelineError):
    """A document was asked to move along an edge the state machine forbids."""

    retryable = False

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid document status transition: {current} -> {target}")


class RenderError(PipelineError):
    """The render backend failed to produce a PDF."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool | None = None,
    ) -> None:
        self.status_code = status_code
        if retryable is None and status_code is not None:
            # The backend rejecting the HTML will not change on a retry
            retryable = not (400 <= status_code < 500)
        super().__init__(message, retryable=retryable)


class RenderUnavailableError(RenderError):
    """The render backend failed its health check."""


class CrmApiError(PipelineError):
    """The CRM API answered with an error status or could not be reached."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool | None = None,
    ) -> None:
        self.status_code = status_code
        if retryable is None and status_code is not None:
            retryable = status_code == 429 or status_code >= 500
        super().__init__(message, retryable=retryable)


class CrmAuthError(CrmApiError):
    """The tenant has no usable CRM credentials."""

    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, status_code=status_code, retryable=False)


class JobTimeoutError(PipelineError):
    """A job handler ran past the lane's time limit and was cancelled."""


class QueueNotReadyError(Exception):
    """The queue manager is not connected to the broker.

    Callers must retry the operation later; nothing was enqueued.
    """

    retryable = True

    def __init__(self, message: str = "Queue manager is not ready") -> None:
        super().__init__(message)


class UnknownQueueError(ValueError):
    """A queue name that is not one of the managed lanes."""
