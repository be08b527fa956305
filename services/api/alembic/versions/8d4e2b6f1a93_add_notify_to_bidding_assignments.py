"""add_notify_to_bidding_assignments

Revision ID: 8d4e2b6f1a93
Revises: 1f3d9c2a7b40
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "8d4e2b6f1a93"
down_revision: Union[str, Sequence[str], None] = "1f3d9c2a7b40"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "bidding_assignments",
        sa.Column("notify", sa.Boolean(), nullable=False, server_default=sa.true()),
    )


def downgrade() -> None:
    op.drop_column("bidding_assignments", "notify")
