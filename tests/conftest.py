"""Shared fixtures: in-memory database, file store, fake broker."""

from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401  (registers every mapper)
from app.database import Base
from app.models import Document, Template, Tenant, User
from app.models.document import DocumentStatus
from app.models.template import VariableType
from app.services.storage import FileStorageService


# ─── Database ────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def tenant(session_maker) -> Tenant:
    async with session_maker() as db:
        tenant = Tenant(
            name="Acme",
            hubspot_portal_id="999",
            access_token="token",
            refresh_token="refresh",
            is_active=True,
        )
        db.add(tenant)
        await db.commit()
        return tenant


@pytest_asyncio.fixture
async def user(session_maker, tenant) -> User:
    async with session_maker() as db:
        user = User(tenant_id=tenant.id, email="ana@acme.test", name="Ana", role="admin")
        db.add(user)
        await db.commit()
        return user


@pytest_asyncio.fixture
async def template(session_maker, tenant, user) -> Template:
    async with session_maker() as db:
        template = Template(
            tenant_id=tenant.id,
            created_by_id=user.id,
            name="Propuesta",
            content="<h1>{{ deal.dealname }}</h1><p>{{ deal.amount }} {{ moneda }}</p>",
            variables=[
                {"name": "deal.dealname", "label": "Deal", "type": VariableType.DEAL.value, "required": True},
                {"name": "deal.amount", "label": "Monto", "type": VariableType.DEAL.value},
                {"name": "moneda", "label": "Moneda", "type": "custom", "default_value": "MXN"},
            ],
            is_active=True,
        )
        db.add(template)
        await db.commit()
        return template


async def create_document(
    session_maker,
    tenant: Tenant,
    template: Template,
    user: User | None = None,
    **overrides: Any,
) -> Document:
    values = {
        "tenant_id": tenant.id,
        "template_id": template.id,
        "created_by_id": user.id if user else None,
        "name": "Propuesta Acme",
        "variables": {"deal.dealname": "Acme 2026"},
        "status": DocumentStatus.PENDING.value,
    }
    values.update(overrides)
    async with session_maker() as db:
        document = Document(**values)
        db.add(document)
        await db.commit()
        return document


@pytest.fixture
def make_document(session_maker, tenant, template, user):
    async def factory(**overrides: Any) -> Document:
        return await create_document(session_maker, tenant, template, user, **overrides)

    return factory


# ─── File store ──────────────────────────────────────────────────────────────

@pytest.fixture
def file_store(tmp_path) -> FileStorageService:
    store = FileStorageService(root=tmp_path / "storage", base_url="http://files.test")
    store.initialize()
    return store


# ─── Fake broker ─────────────────────────────────────────────────────────────

class FakeRedis:
    """The handful of redis commands the queue manager issues from a job."""

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self.data)

    async def incr(self, key: str) -> int:
        self.data[key] = int(self.data.get(key, 0)) + 1
        return self.data[key]

    async def expire(self, key: str, seconds: int) -> bool:
        return key in self.data

    async def set(self, key: str, value: Any, ex: int | None = None) -> bool:
        self.data[key] = value
        return True

    async def get(self, key: str) -> Any:
        value = self.data.get(key)
        return str(value).encode() if value is not None else None

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def ping(self) -> bool:
        return True

    async def close(self, close_connection_pool: bool = False) -> None:
        pass


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


def job_ctx(redis: FakeRedis, job_id: str, **extra: Any) -> dict:
    """arq-style job context."""
    return {"redis": redis, "job_id": job_id, "job_try": 1, **extra}


@pytest.fixture
def pipeline_ctx(session_maker, file_store):
    """Worker context with mocked render, CRM and queue collaborators."""
    renderer = MagicMock()
    renderer.render_business_document = AsyncMock(return_value=b"%PDF-1.7 test")
    queue_manager = MagicMock()
    queue_manager.enqueue_crm_upload = AsyncMock()
    crm_client = MagicMock()
    crm_client.get_object = AsyncMock()
    crm_client.upload_file = AsyncMock()
    crm_client.attach_file = AsyncMock(return_value="note-1")

    from app.core.template_resolver import TemplateResolver

    return {
        "session_maker": session_maker,
        "file_store": file_store,
        "renderer": renderer,
        "crm_client": crm_client,
        "queue_manager": queue_manager,
        "resolver": TemplateResolver(
            crm_client,
            locale="es-MX",
            clock=lambda: datetime(2026, 10, 17, 9, 30, tzinfo=timezone.utc),
        ),
    }
