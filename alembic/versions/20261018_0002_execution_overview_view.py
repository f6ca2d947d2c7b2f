"""Add execution listing view joined with graph titles."""

from __future__ import annotations

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE VIEW execution_overview AS
        SELECT
            e.execution_id,
            e.graph_id,
            g.title AS graph_title,
            e.original_request,
            e.status,
            e.total_tasks,
            e.completed_tasks,
            e.failed_tasks,
            e.waiting_tasks,
            e.total_cost_usd,
            e.retry_count,
            e.started_at,
            e.completed_at,
            e.created_at
        FROM executions AS e
        LEFT JOIN graphs AS g ON g.graph_id = e.graph_id
        """,
    )


def downgrade() -> None:
    op.execute("DROP VIEW IF EXISTS execution_overview")
