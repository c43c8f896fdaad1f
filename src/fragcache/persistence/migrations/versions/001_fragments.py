"""Fragment tree table.

Revision ID: 001_fragments
Revises:
Create Date: 2026-10-19

Creates the fragments table:
- type: variant tag (single-table inheritance)
- parent_id/root_id: tree position, deleting a fragment cascades to its subtree
- record_id/user_id/user_type/key: semantic identity
- identity: unique composite used for race-safe find-or-create
- version: logical timestamp, part of the cache key
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers
revision: str = "001_fragments"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "fragments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column(
            "parent_id",
            sa.Integer(),
            sa.ForeignKey("fragments.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "root_id",
            sa.Integer(),
            sa.ForeignKey("fragments.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("record_id", sa.BigInteger(), nullable=True),
        sa.Column("user_id", sa.BigInteger(), nullable=True),
        sa.Column("user_type", sa.String(64), nullable=True),
        sa.Column("key", sa.String(255), nullable=True),
        sa.Column("identity", sa.String(1024), nullable=False),
        sa.Column("memo", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("identity", name="uq_fragments_identity"),
    )
    op.create_index("ix_fragments_type", "fragments", ["type"])
    op.create_index("ix_fragments_parent_id", "fragments", ["parent_id"])
    op.create_index("ix_fragments_root_id", "fragments", ["root_id"])
    op.create_index("ix_fragments_record_id", "fragments", ["record_id"])


def downgrade() -> None:
    op.drop_index("ix_fragments_record_id", table_name="fragments")
    op.drop_index("ix_fragments_root_id", table_name="fragments")
    op.drop_index("ix_fragments_parent_id", table_name="fragments")
    op.drop_index("ix_fragments_type", table_name="fragments")
    op.drop_table("fragments")
