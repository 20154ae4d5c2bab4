"""Create versioned object table for the SQLite store."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "store_objects",
        sa.Column("key", sa.String(), primary_key=True),
        sa.Column("body", sa.LargeBinary(), nullable=False),
        sa.Column("version", sa.String(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_store_objects_version", "store_objects", ["version"])


def downgrade() -> None:
    op.drop_index("ix_store_objects_version", table_name="store_objects")
    op.drop_table("store_objects")
