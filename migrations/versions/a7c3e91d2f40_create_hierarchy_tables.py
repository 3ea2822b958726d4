"""Create hierarchy metadata/data and audit tables.

Revision ID: a7c3e91d2f40
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "a7c3e91d2f40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_DOC = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "hierarchy_metadata",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("company", sa.String(255), nullable=False),
        sa.Column("project_name", sa.String(255), nullable=True),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("user_input", JSON_DOC, nullable=False),
        sa.Column("version", sa.String(16), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False, server_default="in-draft"),
        sa.Column("is_active_draft", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("user_feedback", JSON_DOC, nullable=True),
        sa.Column("root_hierarchy_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["root_hierarchy_id"], ["hierarchy_metadata.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("root_hierarchy_id", "version_number", name="uq_hierarchy_chain_version"),
    )
    op.create_index("idx_hierarchy_metadata_company", "hierarchy_metadata", ["company"])
    op.create_index("idx_hierarchy_metadata_root", "hierarchy_metadata", ["root_hierarchy_id"])
    op.create_index("idx_hierarchy_metadata_status", "hierarchy_metadata", ["status"])

    op.create_table(
        "hierarchy_data",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("metadata_id", sa.String(36), nullable=False),
        sa.Column("data", JSON_DOC, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["metadata_id"], ["hierarchy_metadata.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_hierarchy_data_metadata", "hierarchy_data", ["metadata_id", "created_at"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("client_ip", sa.String(64), nullable=True),
        sa.Column("actor", sa.String(320), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(128), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("reason", sa.String(512), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_index("idx_hierarchy_data_metadata", table_name="hierarchy_data")
    op.drop_table("hierarchy_data")
    op.drop_index("idx_hierarchy_metadata_status", table_name="hierarchy_metadata")
    op.drop_index("idx_hierarchy_metadata_root", table_name="hierarchy_metadata")
    op.drop_index("idx_hierarchy_metadata_company", table_name="hierarchy_metadata")
    op.drop_table("hierarchy_metadata")
