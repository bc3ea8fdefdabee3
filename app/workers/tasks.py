"""Worker process wiring: shared resources and lane registration."""

import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.config import get_settings
from app.core.template_resolver import TemplateResolver
from app.integrations.hubspot.auth import HubSpotAuth
from app.integrations.hubspot.client import HubSpotClient
from app.services.pdf_render import pdf_render_service
from app.services.queue.manager import QueueManager
from app.services.queue.types import JobType, QueueName
from app.services.storage import storage_service
from app.workers.cleanup_worker import run_cleanup
from app.workers.crm_worker import on_upload_failed, upload_to_crm
from app.workers.document_worker import generate_document, on_generation_failed
from app.workers.settings import redis_settings

settings = get_settings()
logger = logging.getLogger(__name__)


# Create engine for worker (separate from web app)
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)
async_session_maker = async_sessionmaker(engine, expire_on_commit=False)


def build_worker_context() -> dict:
    """Collaborators handed to every job through the arq context."""
    crm_client = HubSpotClient(HubSpotAuth(async_session_maker))
    return {
        "session_maker": async_session_maker,
        "file_store": storage_service,
        "renderer": pdf_render_service,
        "crm_client": crm_client,
        "resolver": TemplateResolver(crm_client, locale=settings.document_locale),
    }


def register_pipeline(manager: QueueManager) -> None:
    """Attach the three processors and their failure handlers."""
    manager.register_processor(
        QueueName.DOCUMENT_GENERATION,
        JobType.GENERATE_DOCUMENT,
        settings.document_concurrency,
        generate_document,
    )
    manager.register_processor(
        QueueName.CRM_UPLOAD,
        JobType.UPLOAD_TO_CRM,
        settings.crm_upload_concurrency,
        upload_to_crm,
    )
    manager.register_processor(
        QueueName.CLEANUP,
        JobType.CLEANUP,
        settings.cleanup_concurrency,
        run_cleanup,
    )
    manager.on_failure(QueueName.DOCUMENT_GENERATION, on_generation_failed)
    manager.on_failure(QueueName.CRM_UPLOAD, on_upload_failed)


def build_queue_manager(ctx: dict | None = None) -> QueueManager:
    """Consumer-mode manager with the pipeline registered."""
    ctx = ctx if ctx is not None else build_worker_context()
    manager = QueueManager(redis_settings, consume=True, worker_ctx=ctx)
    ctx["queue_manager"] = manager
    register_pipeline(manager)
    return manager


async def shutdown() -> None:
    """Release worker resources."""
    logger.info("Worker shutting down...")
    await engine.dispose()
