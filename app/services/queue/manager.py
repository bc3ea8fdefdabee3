"""Job queue manager built on arq.

Owns the three lanes (document generation, CRM upload, cleanup) over one
Redis broker and keeps its connection state in an explicit, lock-guarded
``ConnectionState``:

- ``start()`` connects (and, in consumer mode, runs one arq ``Worker`` per
  lane with the lane's concurrency) and launches a periodic health check.
- The health check pings the broker and checks every lane worker is still running.
  On failure the manager flips to *not ready* and reconnects with capped
  exponential backoff, up to a maximum number of attempts.
- While not ready, every public operation raises ``QueueNotReadyError``
  immediately. A submission either lands in Redis or the caller is told to
  retry; it is never dropped silently.

Jobs are keyed deterministically (``doc-<id>``, ``crm-<id>``), and arq refuses
to enqueue a key that already exists, which makes submission idempotent per
document and keeps two workers off the same document.

Attempts are counted by the manager rather than by arq so that jobs held
back on a paused lane do not spend them. A failed attempt is retried after
``min(base * 2^(attempt-1), cap)`` seconds; the last attempt (or a
non-retryable error) runs the lane's failure handlers and fails the job.
A handler running past ``job_timeout`` is cancelled and counts as a failed
attempt, before arq's own, longer timeout could fire.

Pausing a lane stops its worker from picking jobs at all. Lane workers are
drained (no new picks, running jobs allowed to finish) before they are
closed, so a reconnect does not cut a document off mid-render.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from uuid import UUID, uuid4

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from arq.constants import in_progress_key_prefix, result_key_prefix
from arq.jobs import Job, JobStatus
from arq.worker import Retry, Worker, func
from redis.exceptions import RedisError

from app.config import get_settings
from app.core.exceptions import JobTimeoutError, PipelineError, QueueNotReadyError
from app.services.queue.types import (
    JOB_KEY_PREFIXES,
    CleanupType,
    FailureHandler,
    JobFailure,
    JobHandle,
    JobOptions,
    JobState,
    JobStatusInfo,
    JobType,
    ProcessorHandler,
    QueueCounts,
    QueueName,
    TrimResult,
    crm_upload_job_key,
    generation_job_key,
    queue_for_job_key,
)
from app.workers.settings import parse_redis_url

settings = get_settings()
logger = logging.getLogger(__name__)

KEY_PREFIX = "autopdf"

BROKER_ERRORS = (RedisError, OSError, asyncio.TimeoutError)

# arq cancels a job this long after the manager's own timeout fired
ARQ_TIMEOUT_GRACE_SECONDS = 30


def paused_key(queue: QueueName) -> str:
    return f"{KEY_PREFIX}:paused:{queue.value}"


def attempts_key(job_id: str) -> str:
    return f"{KEY_PREFIX}:attempts:{job_id}"


def progress_key(job_id: str) -> str:
    return f"{KEY_PREFIX}:progress:{job_id}"


def error_key(job_id: str) -> str:
    return f"{KEY_PREFIX}:error:{job_id}"


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before attempt ``attempt + 1``: ``min(base * 2^(attempt-1), cap)``."""
    return min(base * (2 ** max(attempt - 1, 0)), cap)


def _decode(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def report_progress(ctx: dict, percent: int) -> None:
    """Record progress (0-100) for the job running in ``ctx``."""
    redis = ctx.get("redis")
    job_id = ctx.get("job_id")
    if redis is None or job_id is None:
        return
    await redis.set(
        progress_key(job_id),
        max(0, min(100, int(percent))),
        ex=settings.queue_failed_retention_hours * 3600,
    )


@dataclass
class ConnectionState:
    """Mutable connection bookkeeping, only touched under the manager lock."""

    initialized: bool = False
    stopping: bool = False
    reconnect_attempts: int = 0
    pool: ArqRedis | None = None
    workers: dict[QueueName, Worker] = field(default_factory=dict)
    lane_tasks: dict[QueueName, asyncio.Task] = field(default_factory=dict)
    health_task: asyncio.Task | None = None
    pause_task: asyncio.Task | None = None
    reconnect_task: asyncio.Task | None = None


PoolFactory = Callable[[RedisSettings], Awaitable[ArqRedis]]


class QueueManager:
    """Submission, status, pause/resume and stats over the three lanes.

    ``consume=False`` (API process) only talks to the broker.
    ``consume=True`` (worker process) also runs the registered processors.
    """

    def __init__(
        self,
        redis_settings: RedisSettings | None = None,
        *,
        consume: bool = False,
        worker_ctx: dict | None = None,
        pool_factory: PoolFactory | None = None,
        default_attempts: int | None = None,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
        health_check_interval: float | None = None,
        reconnect_base: float | None = None,
        reconnect_max_delay: float | None = None,
        reconnect_max_attempts: int | None = None,
        pause_poll: float | None = None,
        job_timeout: float | None = None,
    ) -> None:
        self.redis_settings = redis_settings or parse_redis_url(settings.redis_url)
        self.consume = consume
        self.worker_ctx = worker_ctx if worker_ctx is not None else {}
        self._pool_factory = pool_factory or create_pool
        self.default_attempts = default_attempts or settings.job_attempts
        self.backoff_base = backoff_base if backoff_base is not None else settings.job_backoff_base_seconds
        self.backoff_max = backoff_max if backoff_max is not None else settings.job_backoff_max_seconds
        self.health_check_interval = health_check_interval or settings.queue_health_check_interval_seconds
        self.reconnect_base = (
            reconnect_base if reconnect_base is not None else settings.queue_reconnect_base_seconds
        )
        self.reconnect_max_delay = reconnect_max_delay or settings.queue_reconnect_max_seconds
        self.reconnect_max_attempts = reconnect_max_attempts or settings.queue_reconnect_max_attempts
        self.pause_poll = pause_poll or settings.queue_pause_poll_seconds
        self.job_timeout = job_timeout or settings.job_timeout_seconds
        self.bookkeeping_ttl = settings.queue_failed_retention_hours * 3600

        self._state = ConnectionState()
        self._lock = asyncio.Lock()
        self._processors: dict[QueueName, dict[str, ProcessorHandler]] = {q: {} for q in QueueName}
        self._failure_handlers: dict[QueueName, list[FailureHandler]] = {q: [] for q in QueueName}
        self._concurrency: dict[QueueName, int] = {
            QueueName.DOCUMENT_GENERATION: settings.document_concurrency,
            QueueName.CRM_UPLOAD: settings.crm_upload_concurrency,
            QueueName.CLEANUP: settings.cleanup_concurrency,
        }

    # ========== Lifecycle ==========

    @property
    def reconnect_attempts(self) -> int:
        return self._state.reconnect_attempts

    def is_ready(self) -> bool:
        return self._state.initialized and self._state.pool is not None

    async def start(self, *, reconnect_on_failure: bool = False) -> None:
        """Connect to the broker and start the health check.

        Raises the broker error if the first connection fails, unless
        ``reconnect_on_failure`` is set: then the manager stays not ready
        and keeps reconnecting in the background.
        """
        async with self._lock:
            if self._state.initialized:
                return
            self._state.stopping = False
            try:
                await self._connect()
            except BROKER_ERRORS as e:
                if not reconnect_on_failure:
                    raise
                logger.error("Queue broker unreachable at startup: %s", e)
                await self._teardown()
        if not self._state.initialized:
            self._mark_unhealthy("initial connection failed")
        self._state.health_task = asyncio.create_task(self._health_loop(), name="queue-health-check")

    async def stop(self) -> None:
        self._state.stopping = True
        for task in (self._state.health_task, self._state.reconnect_task):
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        self._state.health_task = None
        self._state.reconnect_task = None
        async with self._lock:
            await self._teardown()
        logger.info("Queue manager stopped")

    async def _connect(self) -> None:
        """Open the pool and lane workers. Caller holds the lock."""
        pool = await self._pool_factory(self.redis_settings)
        try:
            await pool.ping()
        except BROKER_ERRORS:
            await self._close_pool(pool)
            raise
        self._state.pool = pool
        if self.consume:
            self._start_lanes()
            if self._state.workers:
                self._state.pause_task = asyncio.create_task(self._pause_loop(), name="queue-pause-sync")
        self._state.initialized = True
        self._state.reconnect_attempts = 0
        logger.info(
            "Queue manager connected to redis at %s:%s (%s)",
            self.redis_settings.host,
            self.redis_settings.port,
            "consumer" if self.consume else "producer",
        )

    async def _teardown(self) -> None:
        """Drain and stop lane workers, then close the pool. Caller holds the lock."""
        self._state.initialized = False
        pause_task = self._state.pause_task
        self._state.pause_task = None
        if pause_task is not None and not pause_task.done():
            pause_task.cancel()
            await asyncio.gather(pause_task, return_exceptions=True)
        await self._drain_lanes()
        for queue, worker in list(self._state.workers.items()):
            try:
                await worker.close()
            except BROKER_ERRORS as e:
                logger.warning("Closing %s worker failed: %s", queue.value, e)
        tasks = list(self._state.lane_tasks.values())
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._state.workers.clear()
        self._state.lane_tasks.clear()
        if self._state.pool is not None:
            await self._close_pool(self._state.pool)
            self._state.pool = None

    async def _drain_lanes(self) -> None:
        """Stop lane workers picking jobs and let the running ones finish.

        Jobs still running after the timeout window are left to ``close()``,
        which cancels them; arq redelivers those later.
        """
        running: list[asyncio.Task] = []
        for worker in self._state.workers.values():
            worker.allow_pick_jobs = False
            running.extend(task for task in list(worker.tasks.values()) if not task.done())
        if not running:
            return
        logger.info("Waiting for %d running job(s) to finish", len(running))
        _, pending = await asyncio.wait(running, timeout=self.job_timeout + ARQ_TIMEOUT_GRACE_SECONDS)
        if pending:
            logger.warning("%d job(s) still running at shutdown will be redelivered", len(pending))

    @staticmethod
    async def _close_pool(pool: ArqRedis) -> None:
        try:
            await pool.close(close_connection_pool=True)
        except BROKER_ERRORS as e:
            logger.debug("Closing redis pool failed: %s", e)

    # ========== Health check & reconnect ==========

    async def _health_loop(self) -> None:
        while not self._state.stopping:
            await asyncio.sleep(self.health_check_interval)
            await self.check_health()

    async def check_health(self) -> bool:
        """Ping the broker and check lane workers; reconnect on failure."""
        if not self.is_ready():
            return False
        try:
            await asyncio.wait_for(self._state.pool.ping(), timeout=5)
        except BROKER_ERRORS as e:
            self._mark_unhealthy(f"broker ping failed: {e!r}")
            return False

        stopped = [q.value for q, task in self._state.lane_tasks.items() if task.done()]
        if stopped:
            self._mark_unhealthy(f"lanes not running: {', '.join(stopped)}")
            return False
        return True

    def _mark_unhealthy(self, reason: str) -> None:
        if self._state.stopping:
            return
        if self._state.initialized:
            logger.warning("Queue manager unhealthy, reconnecting: %s", reason)
        self._state.initialized = False
        if self._state.reconnect_task is None or self._state.reconnect_task.done():
            self._state.reconnect_task = asyncio.create_task(self._reconnect(), name="queue-reconnect")

    async def _reconnect(self) -> None:
        async with self._lock:
            await self._teardown()

        while not self._state.stopping and self._state.reconnect_attempts < self.reconnect_max_attempts:
            self._state.reconnect_attempts += 1
            delay = backoff_delay(self._state.reconnect_attempts, self.reconnect_base, self.reconnect_max_delay)
            logger.info(
                "Reconnecting to broker in %.1fs (attempt %d/%d)",
                delay,
                self._state.reconnect_attempts,
                self.reconnect_max_attempts,
            )
            await asyncio.sleep(delay)
            try:
                async with self._lock:
                    await self._connect()
                logger.info("Queue manager reconnected")
                return
            except BROKER_ERRORS as e:
                logger.warning("Reconnect attempt %d failed: %s", self._state.reconnect_attempts, e)
                async with self._lock:
                    await self._teardown()

        if not self._state.stopping:
            logger.error(
                "Queue manager gave up after %d reconnect attempts; submissions will be refused",
                self._state.reconnect_attempts,
            )

    def _require_pool(self) -> ArqRedis:
        if not self.is_ready():
            raise QueueNotReadyError()
        return self._state.pool

    # ========== Registration ==========

    def register_processor(
        self,
        queue: QueueName | str,
        job_type: str,
        concurrency: int,
        handler: ProcessorHandler,
    ) -> None:
        """Register ``handler(ctx, payload)`` for ``job_type`` on ``queue``.

        Must be called before ``start()`` for the lane worker to pick it up.
        """
        queue = QueueName.parse(queue)
        if queue in self._state.lane_tasks:
            raise RuntimeError(f"Lane {queue.value} is already running")
        self._processors[queue][job_type] = handler
        self._concurrency[queue] = max(1, concurrency)

    def on_failure(self, queue: QueueName | str, handler: FailureHandler) -> None:
        """Run ``handler(ctx, failure)`` when a job on ``queue`` is given up on."""
        self._failure_handlers[QueueName.parse(queue)].append(handler)

    # ========== Lanes ==========

    def _start_lanes(self) -> None:
        for queue in QueueName:
            if not self._processors[queue]:
                continue
            worker = self._build_worker(queue)
            self._state.workers[queue] = worker
            self._state.lane_tasks[queue] = asyncio.create_task(
                worker.async_run(),
                name=f"lane-{queue.value}",
            )
            logger.info(
                "Lane %s running with concurrency %d (%s)",
                queue.value,
                self._concurrency[queue],
                ", ".join(sorted(self._processors[queue])),
            )

    def _build_worker(self, queue: QueueName) -> Worker:
        return Worker(
            functions=[
                func(
                    self._make_dispatcher(queue),
                    name=queue.value,
                    max_tries=settings.job_max_redeliveries,
                )
            ],
            queue_name=queue.value,
            redis_settings=self.redis_settings,
            max_jobs=self._concurrency[queue],
            job_timeout=self.job_timeout + ARQ_TIMEOUT_GRACE_SECONDS,
            keep_result=self.bookkeeping_ttl,
            handle_signals=False,
            ctx=dict(self.worker_ctx),
        )

    def _make_dispatcher(self, queue: QueueName) -> Callable[[dict, dict], Awaitable[Any]]:
        async def dispatch(ctx: dict, envelope: dict) -> Any:
            return await self.run_job(queue, ctx, envelope)

        return dispatch

    async def run_job(self, queue: QueueName, ctx: dict, envelope: dict) -> Any:
        """Run one delivery of a job envelope ``{type, payload, max_attempts}``.

        The handler is cancelled after ``job_timeout`` seconds and the
        timeout counts as a retryable failure.

        Raises ``arq.worker.Retry`` to schedule the next attempt.
        """
        redis = ctx["redis"]
        job_id = ctx["job_id"]

        # Picked in the window before the lane worker saw the pause flag
        if await redis.exists(paused_key(queue)):
            raise Retry(defer=self.pause_poll)

        job_type = envelope.get("type")
        payload = envelope.get("payload") or {}
        max_attempts = int(envelope.get("max_attempts") or self.default_attempts)

        attempt = await redis.incr(attempts_key(job_id))
        await redis.expire(attempts_key(job_id), self.bookkeeping_ttl)
        job_ctx = {**ctx, "attempt": attempt, "max_attempts": max_attempts, "queue": queue}

        handler = self._processors[queue].get(job_type)
        try:
            if handler is None:
                raise PipelineError(f"No processor for {job_type!r} on {queue.value}", retryable=False)
            logger.info("Job %s (%s) attempt %d/%d started", job_id, job_type, attempt, max_attempts)
            try:
                result = await asyncio.wait_for(handler(job_ctx, payload), timeout=self.job_timeout)
            except asyncio.TimeoutError as e:
                raise JobTimeoutError(f"Job {job_id} timed out after {self.job_timeout:g}s") from e
        except Exception as exc:
            await redis.set(error_key(job_id), str(exc)[:2000], ex=self.bookkeeping_ttl)
            retryable = getattr(exc, "retryable", True)
            if retryable and attempt < max_attempts:
                delay = backoff_delay(attempt, self.backoff_base, self.backoff_max)
                logger.warning(
                    "Job %s attempt %d/%d failed: %s; retrying in %.1fs",
                    job_id,
                    attempt,
                    max_attempts,
                    exc,
                    delay,
                )
                raise Retry(defer=delay) from exc

            logger.error("Job %s failed permanently after %d attempt(s): %s", job_id, attempt, exc)
            failure = JobFailure(
                job_id=job_id,
                queue=queue,
                job_type=job_type,
                payload=payload,
                attempts=attempt,
                error=exc,
            )
            await self._run_failure_handlers(queue, job_ctx, failure)
            raise

        await redis.set(progress_key(job_id), 100, ex=self.bookkeeping_ttl)
        logger.info("Job %s (%s) completed", job_id, job_type)
        return result

    async def _run_failure_handlers(self, queue: QueueName, ctx: dict, failure: JobFailure) -> None:
        for handler in self._failure_handlers[queue]:
            try:
                await handler(ctx, failure)
            except Exception:
                logger.exception("Failure handler for %s job %s raised", queue.value, failure.job_id)

    # ========== Submission & status ==========

    @staticmethod
    def _schedule_time(options: JobOptions) -> datetime | None:
        """Absolute dispatch time: delayed by ``delay``, moved ahead by ``priority`` seconds."""
        if not options.delay_seconds and not options.priority:
            return None
        offset = options.delay_seconds - options.priority
        return datetime.now(timezone.utc) + timedelta(seconds=offset)

    async def submit(
        self,
        queue: QueueName | str,
        job_type: str,
        payload: dict[str, Any],
        options: JobOptions | None = None,
    ) -> JobHandle:
        """Enqueue a job. An existing job with the same key is returned as is.

        Raises:
            QueueNotReadyError: the manager is not connected; nothing was enqueued.
        """
        queue = QueueName.parse(queue)
        options = options or JobOptions()
        pool = self._require_pool()

        job_id = options.job_key or f"{JOB_KEY_PREFIXES[queue]}{uuid4().hex}"
        envelope = {
            "type": job_type,
            "payload": payload,
            "max_attempts": options.max_attempts or self.default_attempts,
            "priority": options.priority,
        }
        try:
            job = await pool.enqueue_job(
                queue.value,
                envelope,
                _job_id=job_id,
                _queue_name=queue.value,
                _defer_until=self._schedule_time(options),
            )
        except BROKER_ERRORS as e:
            self._mark_unhealthy(f"enqueue failed: {e!r}")
            raise QueueNotReadyError(f"Broker unavailable, job {job_id} was not enqueued") from e

        if job is None:
            logger.info("Job %s already exists on %s", job_id, queue.value)
            return JobHandle(job_id=job_id, queue=queue, existing=True)

        logger.info("Enqueued %s job %s on %s", job_type, job_id, queue.value)
        return JobHandle(job_id=job_id, queue=queue)

    async def get_status(
        self,
        job_key: str,
        queue: QueueName | str | None = None,
    ) -> JobStatusInfo | None:
        """State, progress and error of a job, or None when unknown."""
        queue = QueueName.parse(queue) if queue else queue_for_job_key(job_key)
        pool = self._require_pool()
        try:
            job = Job(job_key, pool, _queue_name=queue.value)
            status = await job.status()
            if status == JobStatus.not_found:
                return None

            attempts = int(_decode(await pool.get(attempts_key(job_key))) or 0)
            progress = int(_decode(await pool.get(progress_key(job_key))) or 0)
            error = _decode(await pool.get(error_key(job_key)))
            result = None

            if status == JobStatus.complete:
                info = await job.result_info()
                if info is not None and info.success:
                    state = JobState.COMPLETED
                    result = info.result
                    error = None
                else:
                    state = JobState.FAILED
                    if info is not None and info.result is not None:
                        error = str(info.result)
            elif status == JobStatus.in_progress:
                state = JobState.ACTIVE
            elif status == JobStatus.deferred:
                state = JobState.DELAYED
            else:
                state = JobState.WAITING
        except BROKER_ERRORS as e:
            self._mark_unhealthy(f"status query failed: {e!r}")
            raise QueueNotReadyError() from e

        return JobStatusInfo(
            job_id=job_key,
            queue=queue,
            state=state,
            progress=progress,
            attempts=attempts,
            error=error,
            result=result,
        )

    # ========== Pause / resume / stats ==========

    async def pause(self, queue: QueueName | str) -> None:
        """Hold back dispatch on ``queue``. Queued jobs stay queued."""
        queue = QueueName.parse(queue)
        pool = self._require_pool()
        await pool.set(paused_key(queue), "1")
        await self.sync_pause_flags()
        logger.info("Queue %s paused", queue.value)

    async def resume(self, queue: QueueName | str) -> None:
        queue = QueueName.parse(queue)
        pool = self._require_pool()
        await pool.delete(paused_key(queue))
        await self.sync_pause_flags()
        logger.info("Queue %s resumed", queue.value)

    async def sync_pause_flags(self) -> None:
        """Stop paused lanes' workers from polling; let resumed ones poll again.

        The pause flag lives in Redis so a pause issued by the API process
        reaches every consumer on its next sync.
        """
        pool = self._state.pool
        if pool is None or not self._state.workers:
            return
        for queue, worker in list(self._state.workers.items()):
            allow = not await pool.exists(paused_key(queue))
            if worker.allow_pick_jobs != allow:
                worker.allow_pick_jobs = allow
                logger.info("Lane %s %s picking jobs", queue.value, "resumed" if allow else "stopped")

    async def _pause_loop(self) -> None:
        while not self._state.stopping:
            try:
                await self.sync_pause_flags()
            except BROKER_ERRORS as e:
                logger.debug("Pause flag sync failed: %s", e)
            await asyncio.sleep(self.pause_poll)

    async def is_paused(self, queue: QueueName | str) -> bool:
        pool = self._require_pool()
        return bool(await pool.exists(paused_key(QueueName.parse(queue))))

    async def stats(self) -> dict[str, QueueCounts]:
        """Per-lane job counts by state."""
        pool = self._require_pool()
        now_ms = int(time.time() * 1000)
        counts: dict[str, QueueCounts] = {}
        try:
            for queue in QueueName:
                lane = QueueCounts(paused=bool(await pool.exists(paused_key(queue))))
                for raw_id, score in await pool.zrange(queue.value, 0, -1, withscores=True):
                    job_id = _decode(raw_id)
                    if await pool.exists(in_progress_key_prefix + job_id):
                        lane.active += 1
                    elif score > now_ms:
                        lane.delayed += 1
                    else:
                        lane.waiting += 1
                counts[queue.value] = lane

            for job_result in await pool.all_job_results():
                lane = counts.get(job_result.queue_name)
                if lane is None:
                    continue
                if job_result.success:
                    lane.completed += 1
                else:
                    lane.failed += 1
        except BROKER_ERRORS as e:
            self._mark_unhealthy(f"stats query failed: {e!r}")
            raise QueueNotReadyError() from e
        return counts

    async def cleanup_completed(
        self,
        keep_completed: int | None = None,
        failed_retention_hours: float | None = None,
        dry_run: bool = False,
    ) -> TrimResult:
        """Trim job bookkeeping: keep the newest completed jobs per lane and
        failed jobs younger than the retention window."""
        keep = settings.queue_keep_completed if keep_completed is None else keep_completed
        hours = settings.queue_failed_retention_hours if failed_retention_hours is None else failed_retention_hours
        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
        pool = self._require_pool()

        trim = TrimResult()
        results = await pool.all_job_results()
        for queue in QueueName:
            lane_results = [r for r in results if r.queue_name == queue.value]
            completed = sorted(
                (r for r in lane_results if r.success),
                key=lambda r: _aware(r.finish_time),
                reverse=True,
            )
            for job_result in completed[keep:]:
                trim.completed_removed += 1
                trim.job_ids.append(job_result.job_id)
            for job_result in lane_results:
                if not job_result.success and _aware(job_result.finish_time) < cutoff:
                    trim.failed_removed += 1
                    trim.job_ids.append(job_result.job_id)

        if not dry_run and trim.job_ids:
            for job_id in trim.job_ids:
                await pool.delete(
                    result_key_prefix + job_id,
                    attempts_key(job_id),
                    progress_key(job_id),
                    error_key(job_id),
                )
        logger.info(
            "%s %d completed and %d failed job records",
            "Would trim" if dry_run else "Trimmed",
            trim.completed_removed,
            trim.failed_removed,
        )
        return trim

    # ========== Pipeline-facing helpers ==========

    async def enqueue_generation(
        self,
        document_id: UUID,
        template_id: UUID,
        variables: dict[str, Any],
        tenant_id: UUID,
        user_id: UUID | None,
        priority: int = 0,
    ) -> JobHandle:
        payload = {
            "document_id": str(document_id),
            "template_id": str(template_id),
            "variables": variables,
            "tenant_id": str(tenant_id),
            "user_id": str(user_id) if user_id else None,
        }
        return await self.submit(
            QueueName.DOCUMENT_GENERATION,
            JobType.GENERATE_DOCUMENT,
            payload,
            JobOptions(priority=priority, job_key=generation_job_key(document_id)),
        )

    async def enqueue_crm_upload(
        self,
        document_id: UUID,
        tenant_id: UUID,
        user_id: UUID | None = None,
    ) -> JobHandle:
        payload = {
            "document_id": str(document_id),
            "tenant_id": str(tenant_id),
            "user_id": str(user_id) if user_id else None,
        }
        return await self.submit(
            QueueName.CRM_UPLOAD,
            JobType.UPLOAD_TO_CRM,
            payload,
            JobOptions(job_key=crm_upload_job_key(document_id)),
        )

    async def get_document_job_status(self, document_id: UUID) -> JobStatusInfo | None:
        return await self.get_status(generation_job_key(document_id))

    async def get_queue_stats(self) -> dict[str, QueueCounts]:
        return await self.stats()

    async def schedule_cleanup(
        self,
        cleanup_type: CleanupType | str,
        options: dict[str, Any] | None = None,
        job_key: str | None = None,
    ) -> JobHandle:
        """Submit a one-shot cleanup job."""
        cleanup_type = CleanupType(cleanup_type)
        payload = {**(options or {}), "type": cleanup_type.value}
        key = job_key or f"cleanup-{cleanup_type.value}-{int(time.time() * 1000)}"
        return await self.submit(
            QueueName.CLEANUP,
            JobType.CLEANUP,
            payload,
            JobOptions(job_key=key, max_attempts=1),
        )
