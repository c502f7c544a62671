"""add narrative memories table

Revision ID: 0001_add_narrative_memories
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_add_narrative_memories"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "narrative_memories",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("session_key", sa.String(length=120), nullable=False, unique=True),
        sa.Column("short_term_json", postgresql.JSONB),
        sa.Column("long_term_json", postgresql.JSONB),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )


def downgrade() -> None:
    op.drop_table("narrative_memories")
