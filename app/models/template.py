"""Template model: reusable HTML with declared variable slots."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, JsonType

if TYPE_CHECKING:
    from app.models.document import Document
    from app.models.tenant import Tenant
    from app.models.user import User


class VariableType(str, Enum):
    """Where a template variable takes its value from."""

    CONTACT = "contact.property"
    DEAL = "deal.property"
    COMPANY = "company.property"
    CUSTOM = "custom"

    @property
    def namespace(self) -> str | None:
        """CRM namespace (``contact``, ``deal``, ``company``) or None for custom."""
        if self is VariableType.CUSTOM:
            return None
        return self.value.split(".", 1)[0]


class Template(Base):
    """Named HTML template owned by a tenant.

    ``variables`` holds the ordered list of declarations, each a dict
    ``{name, label, type, required, default_value}``.
    """

    __tablename__ = "templates"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_templates_tenant_name"),
    )

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
    created_by_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1000))
    content: Mapped[str] = mapped_column(Text, nullable=False)
    variables: Mapped[list | None] = mapped_column(JsonType, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    # Relationships
    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="templates")
    created_by: Mapped["User | None"] = relationship("User")
    documents: Mapped[list["Document"]] = relationship(
        "Document",
        back_populates="template",
        passive_deletes="all",
    )
