"""Initial schema — the documents table backing every collection.

Revision ID: 001_initial
Revises:
Create Date: 2026-01-05 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "documents",
        sa.Column("collection", sa.String(64), primary_key=True),
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column(
            "data",
            postgresql.JSONB,
            nullable=False,
            comment="camelCase document body",
        ),
        sa.Column(
            "version",
            sa.Integer,
            nullable=False,
            server_default=sa.text("1"),
            comment="Bumped on every write; compare-and-set token",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_documents_data_gin",
        "documents",
        ["data"],
        postgresql_using="gin",
    )
    # Sweeps select rooms by status and window end.
    op.execute(
        "CREATE INDEX ix_documents_rooms_status_expires "
        "ON documents ((data->>'status'), (data->>'expiresAt')) "
        "WHERE collection = 'rooms'"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_documents_rooms_status_expires")
    op.drop_index("ix_documents_data_gin", table_name="documents")
    op.drop_table("documents")
