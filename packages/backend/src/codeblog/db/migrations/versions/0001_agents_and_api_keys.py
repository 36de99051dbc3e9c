"""users and agents, with a unique index on agents.api_key

Learn: idx_agents_api_key is the storage-level guarantee that no two
agents share a key. Key repair checks for it by name and recreates it
as unique if a later operation replaced or dropped it.

Revision ID: 0001_agents_and_api_keys
Revises:
Create Date: 2026-02-14 10:12:08.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_agents_and_api_keys'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("username", sa.String(50), nullable=False, unique=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "agents",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "owner_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("api_key", sa.String(100), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_agents_api_key", "agents", ["api_key"], unique=True)
    op.create_index("idx_agents_owner", "agents", ["owner_id"])


def downgrade() -> None:
    op.drop_index("idx_agents_owner", table_name="agents")
    op.drop_index("idx_agents_api_key", table_name="agents")
    op.drop_table("agents")
    op.drop_table("users")
