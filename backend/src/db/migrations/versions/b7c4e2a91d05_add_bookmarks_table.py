"""
Add bookmarks table.

Revision ID: b7c4e2a91d05
Revises:
Create Date: 2026-10-19 10:12:41.503118
"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "b7c4e2a91d05"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "bookmarks",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column(
            "owner_id",
            sa.String(length=255),
            nullable=False,
            comment="Identity provider user id - set once at creation",
        ),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.CheckConstraint("owner_id <> ''", name="ck_bookmarks_owner_id_not_empty"),
        sa.CheckConstraint("title <> ''", name="ck_bookmarks_title_not_empty"),
        sa.CheckConstraint("url <> ''", name="ck_bookmarks_url_not_empty"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_bookmarks_owner_id_created_at",
        "bookmarks",
        ["owner_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_bookmarks_owner_id_created_at", table_name="bookmarks")
    op.drop_table("bookmarks")
