"""Tests for the queue manager: submission, retries, pause, health, scheduling."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from arq.connections import RedisSettings
from arq.worker import Retry
from redis.exceptions import RedisError

from app.core.exceptions import JobTimeoutError, PipelineError, QueueNotReadyError, UnknownQueueError
from app.services.queue.manager import (
    QueueManager,
    attempts_key,
    backoff_delay,
    error_key,
    paused_key,
    progress_key,
)
from app.services.queue.scheduler import CleanupSchedule, CleanupScheduler
from app.services.queue.types import (
    CleanupType,
    JobHandle,
    JobState,
    QueueName,
    queue_for_job_key,
)

from conftest import FakeRedis, job_ctx


def _manager(pool_factory=None, **overrides) -> QueueManager:
    options = {
        "pool_factory": pool_factory,
        "default_attempts": 3,
        "backoff_base": 2.0,
        "backoff_max": 300.0,
        "health_check_interval": 3600,
        "reconnect_base": 0.01,
        "reconnect_max_delay": 0.05,
        "reconnect_max_attempts": 2,
        "pause_poll": 5.0,
    }
    options.update(overrides)
    return QueueManager(RedisSettings(host="redis.test"), **options)


def _pool() -> FakeRedis:
    pool = FakeRedis()
    pool.enqueue_job = AsyncMock(return_value=MagicMock())
    pool.all_job_results = AsyncMock(return_value=[])
    return pool


async def _started(pool: FakeRedis | None = None, **overrides) -> QueueManager:
    manager = _manager(AsyncMock(return_value=pool or _pool()), **overrides)
    await manager.start()
    return manager


# ─── Helpers ─────────────────────────────────────────────────────────────────

class TestHelpers:
    def test_backoff_is_exponential_and_capped(self):
        assert backoff_delay(1, 2.0, 300) == 2.0
        assert backoff_delay(2, 2.0, 300) == 4.0
        assert backoff_delay(3, 2.0, 300) == 8.0
        assert backoff_delay(20, 2.0, 300) == 300

    def test_queue_names(self):
        assert QueueName.parse("documents") is QueueName.DOCUMENT_GENERATION
        assert QueueName.parse("crm-upload") is QueueName.CRM_UPLOAD
        with pytest.raises(UnknownQueueError):
            QueueName.parse("emails")

    def test_queue_for_job_key(self):
        assert queue_for_job_key("doc-1") is QueueName.DOCUMENT_GENERATION
        assert queue_for_job_key("crm-1") is QueueName.CRM_UPLOAD
        assert queue_for_job_key("cleanup-temp_files-3") is QueueName.CLEANUP

    def test_live_states(self):
        assert JobState.DELAYED.is_live
        assert not JobState.FAILED.is_live


# ─── Submission ──────────────────────────────────────────────────────────────

class TestSubmission:
    @pytest.mark.asyncio
    async def test_not_ready_fails_fast(self):
        manager = _manager(AsyncMock())
        assert not manager.is_ready()
        with pytest.raises(QueueNotReadyError):
            await manager.enqueue_generation(uuid4(), uuid4(), {}, uuid4(), None)

    @pytest.mark.asyncio
    async def test_enqueue_generation_uses_document_key(self):
        pool = _pool()
        manager = await _started(pool)
        document_id, tenant_id = uuid4(), uuid4()
        try:
            handle = await manager.enqueue_generation(document_id, uuid4(), {"a": 1}, tenant_id, None)
        finally:
            await manager.stop()

        assert handle == JobHandle(job_id=f"doc-{document_id}", queue=QueueName.DOCUMENT_GENERATION)
        args, kwargs = pool.enqueue_job.call_args
        assert args[0] == "document-generation"
        assert args[1]["type"] == "generate-document"
        assert args[1]["payload"]["tenant_id"] == str(tenant_id)
        assert args[1]["max_attempts"] == 3
        assert kwargs["_job_id"] == f"doc-{document_id}"
        assert kwargs["_queue_name"] == "document-generation"
        assert kwargs["_defer_until"] is None

    @pytest.mark.asyncio
    async def test_duplicate_key_returns_existing(self):
        pool = _pool()
        pool.enqueue_job = AsyncMock(return_value=None)
        manager = await _started(pool)
        try:
            handle = await manager.enqueue_crm_upload(uuid4(), uuid4())
        finally:
            await manager.stop()
        assert handle.existing is True
        assert handle.queue is QueueName.CRM_UPLOAD

    @pytest.mark.asyncio
    async def test_priority_moves_job_ahead(self):
        pool = _pool()
        manager = await _started(pool)
        try:
            await manager.enqueue_generation(uuid4(), uuid4(), {}, uuid4(), None, priority=10)
        finally:
            await manager.stop()
        defer_until = pool.enqueue_job.call_args.kwargs["_defer_until"]
        assert defer_until < datetime.now(timezone.utc) - timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_broker_error_surfaces_not_ready(self):
        pool = _pool()
        pool.enqueue_job = AsyncMock(side_effect=RedisError("connection reset"))
        manager = await _started(pool)
        try:
            with pytest.raises(QueueNotReadyError):
                await manager.enqueue_generation(uuid4(), uuid4(), {}, uuid4(), None)
            assert not manager.is_ready()
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_schedule_cleanup_runs_once(self):
        pool = _pool()
        manager = await _started(pool)
        try:
            handle = await manager.schedule_cleanup(
                CleanupType.TEMP_FILES, {"older_than_hours": 1}, job_key="cleanup-temp_files-1"
            )
        finally:
            await manager.stop()
        assert handle.job_id == "cleanup-temp_files-1"
        envelope = pool.enqueue_job.call_args.args[1]
        assert envelope["max_attempts"] == 1
        assert envelope["payload"] == {"older_than_hours": 1, "type": "temp_files"}


# ─── Job execution ───────────────────────────────────────────────────────────

class TestRunJob:
    @pytest.mark.asyncio
    async def test_success_records_attempt_and_progress(self, fake_redis):
        manager = _manager()
        handler = AsyncMock(return_value={"ok": True})
        manager.register_processor(QueueName.CRM_UPLOAD, "upload-to-crm", 1, handler)

        result = await manager.run_job(
            QueueName.CRM_UPLOAD,
            job_ctx(fake_redis, "crm-1"),
            {"type": "upload-to-crm", "payload": {"document_id": "x"}},
        )

        assert result == {"ok": True}
        ctx, payload = handler.call_args.args
        assert ctx["attempt"] == 1
        assert ctx["max_attempts"] == 3
        assert payload == {"document_id": "x"}
        assert fake_redis.data[attempts_key("crm-1")] == 1
        assert fake_redis.data[progress_key("crm-1")] == 100

    @pytest.mark.asyncio
    async def test_retryable_failure_backs_off_then_gives_up(self, fake_redis):
        manager = _manager()
        handler = AsyncMock(side_effect=PipelineError("render busy", retryable=True))
        failures = []

        async def on_failure(ctx, failure):
            failures.append(failure)

        manager.register_processor(QueueName.DOCUMENT_GENERATION, "generate-document", 1, handler)
        manager.on_failure(QueueName.DOCUMENT_GENERATION, on_failure)
        ctx = job_ctx(fake_redis, "doc-1")
        envelope = {"type": "generate-document", "payload": {"document_id": "1"}, "max_attempts": 3}

        delays = []
        for _ in range(2):
            with pytest.raises(Retry) as exc_info:
                await manager.run_job(QueueName.DOCUMENT_GENERATION, ctx, envelope)
            delays.append(exc_info.value.defer_score)
        assert delays == [2000, 4000]
        assert failures == []

        with pytest.raises(PipelineError, match="render busy"):
            await manager.run_job(QueueName.DOCUMENT_GENERATION, ctx, envelope)

        assert handler.await_count == 3
        assert len(failures) == 1
        assert failures[0].attempts == 3
        assert failures[0].job_id == "doc-1"

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_terminal(self, fake_redis):
        manager = _manager()
        handler = AsyncMock(side_effect=PipelineError("bad template", retryable=False))
        on_failure = AsyncMock()
        manager.register_processor(QueueName.DOCUMENT_GENERATION, "generate-document", 1, handler)
        manager.on_failure(QueueName.DOCUMENT_GENERATION, on_failure)

        with pytest.raises(PipelineError):
            await manager.run_job(
                QueueName.DOCUMENT_GENERATION,
                job_ctx(fake_redis, "doc-2"),
                {"type": "generate-document", "payload": {}},
            )
        on_failure.assert_awaited_once()
        assert b"bad template" in await fake_redis.get("autopdf:error:doc-2")

    @pytest.mark.asyncio
    async def test_failing_failure_handler_does_not_mask_error(self, fake_redis):
        manager = _manager()
        manager.register_processor(
            QueueName.CRM_UPLOAD, "upload-to-crm", 1, AsyncMock(side_effect=PipelineError("x", retryable=False))
        )
        manager.on_failure(QueueName.CRM_UPLOAD, AsyncMock(side_effect=RuntimeError("handler broke")))
        with pytest.raises(PipelineError):
            await manager.run_job(QueueName.CRM_UPLOAD, job_ctx(fake_redis, "crm-2"), {"type": "upload-to-crm"})

    @pytest.mark.asyncio
    async def test_unknown_job_type(self, fake_redis):
        manager = _manager()
        with pytest.raises(PipelineError, match="No processor"):
            await manager.run_job(QueueName.CLEANUP, job_ctx(fake_redis, "cleanup-1"), {"type": "nope"})

    @pytest.mark.asyncio
    async def test_paused_lane_defers_without_spending_attempts(self, fake_redis):
        manager = _manager()
        handler = AsyncMock()
        manager.register_processor(QueueName.CLEANUP, "cleanup", 1, handler)
        await fake_redis.set(paused_key(QueueName.CLEANUP), "1")

        with pytest.raises(Retry) as exc_info:
            await manager.run_job(QueueName.CLEANUP, job_ctx(fake_redis, "cleanup-2"), {"type": "cleanup"})

        assert exc_info.value.defer_score == 5000
        handler.assert_not_awaited()
        assert attempts_key("cleanup-2") not in fake_redis.data

    @pytest.mark.asyncio
    async def test_handler_past_timeout_is_a_retryable_failure(self, fake_redis):
        manager = _manager(job_timeout=0.05)
        started = []

        async def slow(ctx, payload):
            started.append(ctx["attempt"])
            await asyncio.sleep(5)

        on_failure = AsyncMock()
        manager.register_processor(QueueName.DOCUMENT_GENERATION, "generate-document", 1, slow)
        manager.on_failure(QueueName.DOCUMENT_GENERATION, on_failure)
        ctx = job_ctx(fake_redis, "doc-9")
        envelope = {"type": "generate-document", "payload": {}, "max_attempts": 2}

        with pytest.raises(Retry) as exc_info:
            await manager.run_job(QueueName.DOCUMENT_GENERATION, ctx, envelope)
        assert exc_info.value.defer_score == 2000
        assert "timed out" in fake_redis.data[error_key("doc-9")]
        on_failure.assert_not_awaited()

        with pytest.raises(JobTimeoutError):
            await manager.run_job(QueueName.DOCUMENT_GENERATION, ctx, envelope)
        assert started == [1, 2]
        on_failure.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_arq_timeout_leaves_room_for_own_timeout(self):
        manager = _manager(job_timeout=60)
        manager.register_processor(QueueName.CLEANUP, "cleanup", 1, AsyncMock())
        worker = manager._build_worker(QueueName.CLEANUP)
        assert worker.job_timeout > 60


# ─── Pause / stats / trimming ────────────────────────────────────────────────

class TestAdmin:
    @pytest.mark.asyncio
    async def test_pause_and_resume(self):
        manager = await _started()
        try:
            await manager.pause("documents")
            assert await manager.is_paused(QueueName.DOCUMENT_GENERATION)
            assert not await manager.is_paused(QueueName.CRM_UPLOAD)
            await manager.resume(QueueName.DOCUMENT_GENERATION)
            assert not await manager.is_paused(QueueName.DOCUMENT_GENERATION)
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_pause_unknown_queue(self):
        manager = await _started()
        try:
            with pytest.raises(UnknownQueueError):
                await manager.pause("emails")
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_cleanup_completed_trims_old_records(self):
        now = datetime.now(timezone.utc)

        def result(job_id, success, age_hours):
            job_result = MagicMock()
            job_result.job_id = job_id
            job_result.queue_name = "document-generation"
            job_result.success = success
            job_result.finish_time = now - timedelta(hours=age_hours)
            return job_result

        pool = _pool()
        pool.all_job_results = AsyncMock(return_value=[
            result("doc-new", True, 1),
            result("doc-old", True, 5),
            result("doc-failed-old", False, 200),
            result("doc-failed-new", False, 2),
        ])
        pool.delete = AsyncMock(return_value=1)
        manager = await _started(pool)
        try:
            preview = await manager.cleanup_completed(keep_completed=1, failed_retention_hours=168, dry_run=True)
            pool.delete.assert_not_awaited()
            trim = await manager.cleanup_completed(keep_completed=1, failed_retention_hours=168)
        finally:
            await manager.stop()

        assert preview.job_ids == trim.job_ids == ["doc-old", "doc-failed-old"]
        assert trim.completed_removed == 1
        assert trim.failed_removed == 1
        assert pool.delete.await_count == 2


# ─── Lane workers ────────────────────────────────────────────────────────────

def _fake_lane(manager: QueueManager, queue: QueueName, **jobs: asyncio.Task) -> MagicMock:
    """Stand a mock arq worker in for ``queue``'s lane."""
    worker = MagicMock()
    worker.allow_pick_jobs = True
    worker.tasks = dict(jobs)
    worker.close = AsyncMock()
    manager._state.workers[queue] = worker
    manager._state.lane_tasks[queue] = asyncio.create_task(asyncio.sleep(3600))
    return worker


class TestLanes:
    @pytest.mark.asyncio
    async def test_stop_lets_running_job_finish(self):
        manager = await _started()

        async def render():
            await asyncio.sleep(0.05)
            return "rendered"

        job = asyncio.create_task(render())
        worker = _fake_lane(manager, QueueName.DOCUMENT_GENERATION, **{"doc-1": job})
        lane = manager._state.lane_tasks[QueueName.DOCUMENT_GENERATION]

        await manager.stop()

        assert job.done() and not job.cancelled()
        assert job.result() == "rendered"
        assert worker.allow_pick_jobs is False
        worker.close.assert_awaited_once()
        assert lane.cancelled()

    @pytest.mark.asyncio
    async def test_pause_stops_lane_worker_polling(self):
        pool = _pool()
        manager = await _started(pool)
        documents = _fake_lane(manager, QueueName.DOCUMENT_GENERATION)
        uploads = _fake_lane(manager, QueueName.CRM_UPLOAD)
        try:
            await manager.pause(QueueName.DOCUMENT_GENERATION)
            assert documents.allow_pick_jobs is False
            assert uploads.allow_pick_jobs is True

            await manager.resume(QueueName.DOCUMENT_GENERATION)
            assert documents.allow_pick_jobs is True

            # A pause issued by another process is picked up on the next sync
            await pool.set(paused_key(QueueName.CRM_UPLOAD), "1")
            await manager.sync_pause_flags()
            assert uploads.allow_pick_jobs is False
        finally:
            await manager.stop()


# ─── Health & reconnect ──────────────────────────────────────────────────────

class TestHealth:
    @pytest.mark.asyncio
    async def test_failed_ping_triggers_reconnect(self):
        first, second = _pool(), _pool()
        first.ping = AsyncMock(side_effect=[True, RedisError("down")])
        factory = AsyncMock(side_effect=[first, second])
        manager = _manager(factory)
        await manager.start()
        try:
            assert await manager.check_health() is False
            assert not manager.is_ready()
            with pytest.raises(QueueNotReadyError):
                await manager.enqueue_crm_upload(uuid4(), uuid4())

            await asyncio.wait_for(manager._state.reconnect_task, timeout=2)
            assert manager.is_ready()
            assert manager.reconnect_attempts == 0
            assert factory.await_count == 2
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        first = _pool()
        first.ping = AsyncMock(side_effect=[True, RedisError("down")])
        factory = AsyncMock(side_effect=[first, OSError("refused"), OSError("refused")])
        manager = _manager(factory, reconnect_max_attempts=2)
        await manager.start()
        try:
            await manager.check_health()
            await asyncio.wait_for(manager._state.reconnect_task, timeout=2)
            assert not manager.is_ready()
            assert manager.reconnect_attempts == 2
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_first_connection_failure_raises(self):
        manager = _manager(AsyncMock(side_effect=OSError("refused")))
        with pytest.raises(OSError):
            await manager.start()
        assert not manager.is_ready()

    @pytest.mark.asyncio
    async def test_start_can_keep_reconnecting_in_background(self):
        factory = AsyncMock(side_effect=[OSError("refused"), _pool()])
        manager = _manager(factory)
        await manager.start(reconnect_on_failure=True)
        try:
            assert not manager.is_ready()
            await asyncio.wait_for(manager._state.reconnect_task, timeout=2)
            assert manager.is_ready()
        finally:
            await manager.stop()


# ─── Cleanup scheduler ───────────────────────────────────────────────────────

class TestCleanupScheduler:
    def _queue(self, ready: bool = True) -> MagicMock:
        queue = MagicMock()
        queue.is_ready = MagicMock(return_value=ready)
        queue.schedule_cleanup = AsyncMock(return_value=JobHandle(job_id="k", queue=QueueName.CLEANUP))
        return queue

    @pytest.mark.asyncio
    async def test_tick_keys_job_by_interval(self):
        queue = self._queue()
        schedule = CleanupSchedule(CleanupType.TEMP_FILES, 3600, {"older_than_hours": 24})
        scheduler = CleanupScheduler(queue, [schedule])

        await scheduler.tick(schedule, now=7200.5)
        await scheduler.tick(schedule, now=10799.0)

        keys = [c.kwargs["job_key"] for c in queue.schedule_cleanup.call_args_list]
        assert keys == ["cleanup-temp_files-2", "cleanup-temp_files-2"]
        assert queue.schedule_cleanup.call_args.args == (CleanupType.TEMP_FILES, {"older_than_hours": 24})

    @pytest.mark.asyncio
    async def test_tick_skipped_when_not_ready(self):
        queue = self._queue(ready=False)
        schedule = CleanupSchedule(CleanupType.AUDIT_LOGS, 60)
        assert await CleanupScheduler(queue, [schedule]).tick(schedule) is None
        queue.schedule_cleanup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_tick_survives_queue_loss(self):
        queue = self._queue()
        queue.schedule_cleanup = AsyncMock(side_effect=QueueNotReadyError())
        schedule = CleanupSchedule(CleanupType.FAILED_JOBS, 60)
        assert await CleanupScheduler(queue, [schedule]).tick(schedule) is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        scheduler = CleanupScheduler(self._queue(), [CleanupSchedule(CleanupType.TEMP_FILES, 3600)])
        scheduler.start()
        assert scheduler.running
        await scheduler.stop()
        assert not scheduler.running
