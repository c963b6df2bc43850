"""add documents table

Revision ID: 0001_documents
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_documents"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Store every control plane collection as versioned JSONB documents.
    op.create_table(
        "documents",
        sa.Column("collection", sa.String(), nullable=False),
        sa.Column("doc_id", sa.String(), nullable=False),
        sa.Column("data", postgresql.JSONB(), nullable=False),
        sa.Column("version", sa.BigInteger(), nullable=False, server_default="1"),
        sa.Column("expires_at", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("collection", "doc_id"),
    )
    op.create_index(
        "ix_documents_collection_expires_at",
        "documents",
        ["collection", "expires_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_documents_collection_expires_at", table_name="documents")
    op.drop_table("documents")
