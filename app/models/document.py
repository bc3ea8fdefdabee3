"""Document model and its status state machine."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.exceptions import InvalidStatusTransitionError
from app.database import Base, JsonType

if TYPE_CHECKING:
    from app.models.template import Template
    from app.models.tenant import Tenant
    from app.models.user import User


class DocumentStatus(str, Enum):
    """Document generation status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    UPLOADED = "uploaded"
    FAILED = "failed"


class CrmObjectType(str, Enum):
    """CRM record types a document can be attached to."""

    CONTACT = "contact"
    DEAL = "deal"
    COMPANY = "company"
    TICKET = "ticket"


ALLOWED_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.PENDING: frozenset({DocumentStatus.PROCESSING, DocumentStatus.FAILED}),
    DocumentStatus.PROCESSING: frozenset({DocumentStatus.COMPLETED, DocumentStatus.FAILED}),
    DocumentStatus.COMPLETED: frozenset({DocumentStatus.UPLOADED}),
    DocumentStatus.UPLOADED: frozenset(),
    DocumentStatus.FAILED: frozenset(),
}


def can_transition(
    current: DocumentStatus,
    target: DocumentStatus,
    *,
    retry: bool = False,
) -> bool:
    """Whether ``current -> target`` is a legal edge.

    ``retry`` opens ``FAILED -> PROCESSING`` and ``PROCESSING -> PROCESSING``,
    which only the queue's own re-attempt or redelivery of the same
    generation job may take.
    """
    if retry and target is DocumentStatus.PROCESSING and current in (
        DocumentStatus.FAILED,
        DocumentStatus.PROCESSING,
    ):
        return True
    return target in ALLOWED_TRANSITIONS[current]


class Document(Base):
    """One generation request of a template, and its result."""

    __tablename__ = "documents"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    tenant_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    template_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("templates.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    created_by_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    variables: Mapped[dict | None] = mapped_column(JsonType, default=dict)
    resolved_variables: Mapped[dict | None] = mapped_column(JsonType)

    # Optional CRM record the document belongs to
    crm_object_id: Mapped[str | None] = mapped_column(String(50))
    crm_object_type: Mapped[str | None] = mapped_column(String(20))
    workflow_execution_id: Mapped[str | None] = mapped_column(String(100), index=True)

    status: Mapped[str] = mapped_column(
        String(20),
        default=DocumentStatus.PENDING.value,
        index=True,
    )
    error_message: Mapped[str | None] = mapped_column(String(2000))

    file_path: Mapped[str | None] = mapped_column(String(1000))
    file_url: Mapped[str | None] = mapped_column(String(1000))
    file_size: Mapped[int | None] = mapped_column(Integer)
    crm_file_id: Mapped[str | None] = mapped_column(String(50))
    crm_file_url: Mapped[str | None] = mapped_column(Text)

    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    processing_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    # Relationships
    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="documents")
    template: Mapped["Template"] = relationship("Template", back_populates="documents")
    created_by: Mapped["User | None"] = relationship("User")

    @property
    def status_enum(self) -> DocumentStatus:
        return DocumentStatus(self.status)

    def transition_to(self, target: DocumentStatus, *, retry: bool = False) -> None:
        """Move to ``target`` or raise ``InvalidStatusTransitionError``."""
        current = self.status_enum
        if not can_transition(current, target, retry=retry):
            raise InvalidStatusTransitionError(current.value, target.value)
        self.status = target.value
