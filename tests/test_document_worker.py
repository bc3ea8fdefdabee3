"""Tests for the document generation processor."""

import asyncio
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from arq.worker import Retry
from sqlalchemy import select

from app.core.exceptions import DocumentNotFoundError, RenderError
from app.models import AuditLog, Document
from app.models.document import DocumentStatus
from app.services.audit import AuditAction
from app.services.queue.manager import QueueManager, attempts_key, error_key, progress_key
from app.services.queue.types import JobType, QueueName
from app.workers.document_worker import generate_document, on_generation_failed

from conftest import FakeRedis, job_ctx


def _payload(document) -> dict:
    return {
        "document_id": str(document.id),
        "template_id": str(document.template_id),
        "tenant_id": str(document.tenant_id),
        "user_id": str(document.created_by_id) if document.created_by_id else None,
    }


async def _reload(session_maker, document_id) -> Document:
    async with session_maker() as db:
        return await db.get(Document, document_id)


async def _audit_actions(session_maker, document_id) -> list[str]:
    async with session_maker() as db:
        rows = await db.execute(
            select(AuditLog.action).where(AuditLog.entity_id == str(document_id)).order_by(AuditLog.created_at)
        )
        return list(rows.scalars().all())


# ─── Happy path ──────────────────────────────────────────────────────────────

class TestGenerateDocument:
    @pytest.mark.asyncio
    async def test_generates_and_stores_pdf(self, pipeline_ctx, make_document, session_maker):
        document = await make_document(variables={"deal.dealname": "Acme <2026>", "deal.amount": 2500.5})
        redis = FakeRedis()
        ctx = {**pipeline_ctx, **job_ctx(redis, f"doc-{document.id}"), "attempt": 1}

        result = await generate_document(ctx, _payload(document))

        stored = await _reload(session_maker, document.id)
        assert stored.status == DocumentStatus.COMPLETED.value
        assert stored.file_path == result["file_path"]
        assert stored.file_size == len(b"%PDF-1.7 test")
        assert stored.resolved_variables["deal.amount"] == "2,500.5"
        assert stored.resolved_variables["moneda"] == "MXN"
        assert stored.processing_started_at is not None
        assert stored.error_message is None
        assert await pipeline_ctx["file_store"].read(stored.file_path) == b"%PDF-1.7 test"

        html = pipeline_ctx["renderer"].render_business_document.call_args.args[0]
        assert html == "<h1>Acme &lt;2026&gt;</h1><p>2,500.5 MXN</p>"
        assert pipeline_ctx["renderer"].render_business_document.call_args.kwargs["author"] == "Ana"

        assert redis.data[progress_key(f"doc-{document.id}")] == 100
        assert await _audit_actions(session_maker, document.id) == [AuditAction.GENERATE]
        pipeline_ctx["queue_manager"].enqueue_crm_upload.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_crm_document_reads_crm_and_queues_upload(self, pipeline_ctx, make_document, session_maker):
        document = await make_document(crm_object_id="42", crm_object_type="deal")
        pipeline_ctx["crm_client"].get_object.return_value.properties = {"amount": "99000"}

        await generate_document({**pipeline_ctx, "attempt": 1}, _payload(document))

        stored = await _reload(session_maker, document.id)
        assert stored.status == DocumentStatus.COMPLETED.value
        assert stored.resolved_variables["deal.amount"] == "99000"
        pipeline_ctx["queue_manager"].enqueue_crm_upload.assert_awaited_once_with(
            document.id, document.tenant_id, document.created_by_id
        )

    @pytest.mark.asyncio
    async def test_redelivery_after_success_is_noop(self, pipeline_ctx, make_document):
        document = await make_document(
            status=DocumentStatus.COMPLETED.value,
            file_path="documents/x.pdf",
            crm_object_id="42",
            crm_object_type="deal",
        )

        result = await generate_document({**pipeline_ctx, "attempt": 2}, _payload(document))

        assert result["skipped"] is True
        pipeline_ctx["renderer"].render_business_document.assert_not_awaited()
        # The upload hand-off is re-issued in case it was lost
        pipeline_ctx["queue_manager"].enqueue_crm_upload.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_wrong_tenant_is_not_found(self, pipeline_ctx, make_document):
        document = await make_document()
        payload = {**_payload(document), "tenant_id": str(uuid4())}
        with pytest.raises(DocumentNotFoundError):
            await generate_document({**pipeline_ctx, "attempt": 1}, payload)


# ─── Failures ────────────────────────────────────────────────────────────────

class TestGenerationFailures:
    @pytest.mark.asyncio
    async def test_missing_required_variable_fails_document(self, pipeline_ctx, make_document, session_maker):
        document = await make_document(variables={})

        with pytest.raises(Exception) as exc_info:
            await generate_document({**pipeline_ctx, "attempt": 1}, _payload(document))

        assert exc_info.value.retryable is False
        stored = await _reload(session_maker, document.id)
        assert stored.status == DocumentStatus.FAILED.value
        assert "deal.dealname" in stored.error_message
        pipeline_ctx["renderer"].render_business_document.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persistent_render_failure_uses_all_attempts(self, pipeline_ctx, make_document, session_maker):
        document = await make_document()
        pipeline_ctx["renderer"].render_business_document = AsyncMock(
            side_effect=RenderError("Gotenberg returned 502", status_code=502)
        )
        manager = QueueManager(
            default_attempts=3,
            backoff_base=2.0,
            backoff_max=300.0,
            health_check_interval=3600,
        )
        manager.register_processor(QueueName.DOCUMENT_GENERATION, JobType.GENERATE_DOCUMENT, 2, generate_document)
        manager.on_failure(QueueName.DOCUMENT_GENERATION, on_generation_failed)

        redis = FakeRedis()
        ctx = {**pipeline_ctx, **job_ctx(redis, f"doc-{document.id}")}
        envelope = {"type": JobType.GENERATE_DOCUMENT, "payload": _payload(document), "max_attempts": 3}

        for _ in range(2):
            with pytest.raises(Retry):
                await manager.run_job(QueueName.DOCUMENT_GENERATION, ctx, envelope)
            # Between attempts the row reads FAILED with the last error
            between = await _reload(session_maker, document.id)
            assert between.status == DocumentStatus.FAILED.value

        with pytest.raises(RenderError):
            await manager.run_job(QueueName.DOCUMENT_GENERATION, ctx, envelope)

        assert pipeline_ctx["renderer"].render_business_document.await_count == 3
        stored = await _reload(session_maker, document.id)
        assert stored.status == DocumentStatus.FAILED.value
        assert "502" in stored.error_message
        assert await _audit_actions(session_maker, document.id) == [AuditAction.GENERATE_FAILED]

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, pipeline_ctx, make_document, session_maker):
        document = await make_document()
        pipeline_ctx["renderer"].render_business_document = AsyncMock(
            side_effect=[RenderError("timeout", retryable=True), b"%PDF-1.7 ok"]
        )

        with pytest.raises(RenderError):
            await generate_document({**pipeline_ctx, "attempt": 1}, _payload(document))
        await generate_document({**pipeline_ctx, "attempt": 2}, _payload(document))

        stored = await _reload(session_maker, document.id)
        assert stored.status == DocumentStatus.COMPLETED.value
        assert stored.error_message is None

    @pytest.mark.asyncio
    async def test_failure_handler_fails_pending_document(self, pipeline_ctx, make_document, session_maker):
        from app.services.queue.types import JobFailure

        document = await make_document()
        failure = JobFailure(
            job_id=f"doc-{document.id}",
            queue=QueueName.DOCUMENT_GENERATION,
            job_type=JobType.GENERATE_DOCUMENT,
            payload=_payload(document),
            attempts=1,
            error=DocumentNotFoundError("template gone"),
        )

        await on_generation_failed(pipeline_ctx, failure)

        stored = await _reload(session_maker, document.id)
        assert stored.status == DocumentStatus.FAILED.value
        assert stored.error_message == "template gone"


# ─── Redelivery & timeouts ───────────────────────────────────────────────────

def _generation_manager(**overrides) -> QueueManager:
    manager = QueueManager(
        default_attempts=3,
        backoff_base=2.0,
        backoff_max=300.0,
        health_check_interval=3600,
        **overrides,
    )
    manager.register_processor(QueueName.DOCUMENT_GENERATION, JobType.GENERATE_DOCUMENT, 2, generate_document)
    manager.on_failure(QueueName.DOCUMENT_GENERATION, on_generation_failed)
    return manager


class TestRedelivery:
    @pytest.mark.asyncio
    async def test_redelivered_job_resumes_processing_document(self, pipeline_ctx, make_document, session_maker):
        # A worker died mid-render: the row is stuck in PROCESSING and arq hands the job out again
        document = await make_document(status=DocumentStatus.PROCESSING.value)
        redis = FakeRedis()
        job_id = f"doc-{document.id}"
        redis.data[attempts_key(job_id)] = 1
        envelope = {"type": JobType.GENERATE_DOCUMENT, "payload": _payload(document), "max_attempts": 3}

        await _generation_manager().run_job(
            QueueName.DOCUMENT_GENERATION,
            {**pipeline_ctx, **job_ctx(redis, job_id)},
            envelope,
        )

        stored = await _reload(session_maker, document.id)
        assert stored.status == DocumentStatus.COMPLETED.value
        assert stored.error_message is None
        pipeline_ctx["renderer"].render_business_document.assert_awaited_once()
        assert await _audit_actions(session_maker, document.id) == [AuditAction.GENERATE]


class TestGenerationTimeout:
    @pytest.mark.asyncio
    async def test_timed_out_attempt_fails_row_and_next_attempt_completes(
        self, pipeline_ctx, make_document, session_maker
    ):
        document = await make_document()
        calls = []

        async def render(html, **kwargs):
            calls.append(html)
            if len(calls) == 1:
                await asyncio.sleep(5)
            return b"%PDF-1.7 ok"

        pipeline_ctx["renderer"].render_business_document = AsyncMock(side_effect=render)
        manager = _generation_manager(job_timeout=0.05)
        redis = FakeRedis()
        job_id = f"doc-{document.id}"
        ctx = {**pipeline_ctx, **job_ctx(redis, job_id)}
        envelope = {"type": JobType.GENERATE_DOCUMENT, "payload": _payload(document), "max_attempts": 3}

        with pytest.raises(Retry):
            await manager.run_job(QueueName.DOCUMENT_GENERATION, ctx, envelope)

        between = await _reload(session_maker, document.id)
        assert between.status == DocumentStatus.FAILED.value
        assert "cancelled" in between.error_message
        assert "timed out" in redis.data[error_key(job_id)]

        await manager.run_job(QueueName.DOCUMENT_GENERATION, ctx, envelope)

        stored = await _reload(session_maker, document.id)
        assert stored.status == DocumentStatus.COMPLETED.value
        assert stored.error_message is None
        assert len(calls) == 2
