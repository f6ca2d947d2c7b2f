"""Store the planner's primary intent on task graphs."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0003"
down_revision = "20261018_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("graphs", sa.Column("primary_intent", sa.String(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("graphs") as batch_op:
        batch_op.drop_column("primary_intent")
