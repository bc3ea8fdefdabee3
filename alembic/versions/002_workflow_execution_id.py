"""Link documents to the HubSpot workflow execution that requested them.

Revision ID: 002
Revises: 001
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("documents", sa.Column("workflow_execution_id", sa.String(100)))
    op.create_index("ix_documents_workflow_execution_id", "documents", ["workflow_execution_id"])


def downgrade() -> None:
    op.drop_index("ix_documents_workflow_execution_id", table_name="documents")
    op.drop_column("documents", "workflow_execution_id")
