"""Create task graph, execution, sub-step, stop-request and event tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "graphs",
        sa.Column("graph_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("goal", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("clarification_query", sa.Text(), nullable=True),
        sa.Column("templates_json", sa.Text(), nullable=False),
        sa.Column("cron_schedule", sa.String(), nullable=True),
        sa.Column("schedule_active", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("timezone", sa.String(), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("planning_prompt_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("planning_completion_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("planning_total_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("planning_cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("planning_attempts_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("graph_id"),
    )
    op.create_index("ix_graphs_title", "graphs", ["title"], unique=False)
    op.create_index("ix_graphs_status", "graphs", ["status"], unique=False)

    op.create_table(
        "executions",
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("graph_id", sa.String(), nullable=True),
        sa.Column("original_request", sa.Text(), nullable=False),
        sa.Column("primary_intent", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("total_tasks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_tasks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_tasks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("waiting_tasks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("final_result", sa.Text(), nullable=True),
        sa.Column("synthesis_result", sa.Text(), nullable=True),
        sa.Column("synthesis_prompt_tokens", sa.Integer(), nullable=True),
        sa.Column("synthesis_completion_tokens", sa.Integer(), nullable=True),
        sa.Column("synthesis_total_tokens", sa.Integer(), nullable=True),
        sa.Column("synthesis_cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("suspended_reason", sa.Text(), nullable=True),
        sa.Column("suspended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("prompt_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completion_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["graph_id"], ["graphs.graph_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("execution_id"),
    )
    op.create_index("ix_executions_graph_id", "executions", ["graph_id"], unique=False)
    op.create_index("ix_executions_status", "executions", ["status"], unique=False)
    op.create_index(
        "idx_executions_graph_time",
        "executions",
        ["graph_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "sub_steps",
        sa.Column("sub_step_id", sa.String(), nullable=False),
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("thought", sa.Text(), nullable=False),
        sa.Column("action_kind", sa.String(), nullable=False),
        sa.Column("target_name", sa.String(), nullable=False),
        sa.Column("params_json", sa.Text(), nullable=False),
        sa.Column("expected_output", sa.Text(), nullable=False),
        sa.Column("dependencies_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("propagated", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("prompt_tokens", sa.Integer(), nullable=True),
        sa.Column("completion_tokens", sa.Integer(), nullable=True),
        sa.Column("total_tokens", sa.Integer(), nullable=True),
        sa.Column("cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("generation_stats_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["execution_id"],
            ["executions.execution_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("sub_step_id"),
        sa.UniqueConstraint("execution_id", "task_id", name="uq_sub_steps_execution_task"),
    )
    op.create_index("ix_sub_steps_execution_id", "sub_steps", ["execution_id"], unique=False)
    op.create_index("ix_sub_steps_status", "sub_steps", ["status"], unique=False)
    op.create_index(
        "idx_sub_steps_execution_position",
        "sub_steps",
        ["execution_id", "position"],
        unique=False,
    )

    op.create_table(
        "stop_requests",
        sa.Column("stop_id", sa.String(), nullable=False),
        sa.Column("graph_id", sa.String(), nullable=True),
        sa.Column("execution_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("handled_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "(graph_id IS NULL) <> (execution_id IS NULL)",
            name="ck_stop_requests_single_scope",
        ),
        sa.PrimaryKeyConstraint("stop_id"),
    )
    op.create_index(
        "idx_stop_requests_graph_status",
        "stop_requests",
        ["graph_id", "status"],
        unique=False,
    )
    op.create_index(
        "idx_stop_requests_execution_status",
        "stop_requests",
        ["execution_id", "status"],
        unique=False,
    )

    op.create_table(
        "execution_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=True),
        sa.Column("data_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["execution_id"],
            ["executions.execution_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_execution_events_execution_id",
        "execution_events",
        ["execution_id", "id"],
        unique=False,
    )
    op.create_index(
        "ix_execution_events_event_type",
        "execution_events",
        ["event_type"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("execution_events")
    op.drop_table("stop_requests")
    op.drop_table("sub_steps")
    op.drop_table("executions")
    op.drop_table("graphs")
