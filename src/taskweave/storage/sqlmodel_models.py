"""SQLModel ORM tables for the execution engine store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel


class TaskGraph(SQLModel, table=True):
    __tablename__ = "graphs"  # type: ignore[bad-override]

    graph_id: str = Field(primary_key=True)
    title: str = Field(index=True)
    goal: str = Field(sa_column=Column(Text, nullable=False))
    primary_intent: str | None = None
    status: str = Field(index=True)
    clarification_query: str | None = Field(default=None, sa_column=Column(Text))
    templates_json: str = Field(sa_column=Column(Text, nullable=False))
    cron_schedule: str | None = None
    schedule_active: bool = Field(default=False)
    timezone: str | None = None
    last_run_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    planning_prompt_tokens: int = 0
    planning_completion_tokens: int = 0
    planning_total_tokens: int = 0
    planning_cost_usd: float = 0.0
    planning_attempts_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Execution(SQLModel, table=True):
    __tablename__ = "executions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_executions_graph_time", "graph_id", "created_at"),)

    execution_id: str = Field(primary_key=True)
    graph_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("graphs.graph_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    original_request: str = Field(sa_column=Column(Text, nullable=False))
    primary_intent: str | None = None
    status: str = Field(index=True)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    duration_ms: int | None = None
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    waiting_tasks: int = 0
    final_result: str | None = Field(default=None, sa_column=Column(Text))
    synthesis_result: str | None = Field(default=None, sa_column=Column(Text))
    synthesis_prompt_tokens: int | None = None
    synthesis_completion_tokens: int | None = None
    synthesis_total_tokens: int | None = None
    synthesis_cost_usd: float = 0.0
    suspended_reason: str | None = Field(default=None, sa_column=Column(Text))
    suspended_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    retry_count: int = 0
    last_retry_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SubStep(SQLModel, table=True):
    __tablename__ = "sub_steps"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("execution_id", "task_id", name="uq_sub_steps_execution_task"),
        Index("idx_sub_steps_execution_position", "execution_id", "position"),
    )

    sub_step_id: str = Field(primary_key=True)
    execution_id: str = Field(
        sa_column=Column(
            ForeignKey("executions.execution_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str
    position: int
    description: str = Field(sa_column=Column(Text, nullable=False))
    thought: str = Field(default="", sa_column=Column(Text, nullable=False))
    action_kind: str
    target_name: str
    params_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    expected_output: str = Field(default="", sa_column=Column(Text, nullable=False))
    dependencies_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    propagated: bool = Field(default=False)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    duration_ms: int | None = None
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    cost_usd: float = 0.0
    provider: str | None = None
    model: str | None = None
    generation_stats_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StopRequest(SQLModel, table=True):
    __tablename__ = "stop_requests"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "(graph_id IS NULL) <> (execution_id IS NULL)",
            name="ck_stop_requests_single_scope",
        ),
        Index("idx_stop_requests_graph_status", "graph_id", "status"),
        Index("idx_stop_requests_execution_status", "execution_id", "status"),
    )

    stop_id: str = Field(primary_key=True)
    graph_id: str | None = None
    execution_id: str | None = None
    status: str
    requested_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    handled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class ExecutionEventRow(SQLModel, table=True):
    __tablename__ = "execution_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_execution_events_execution_id", "execution_id", "id"),)

    id: int | None = Field(default=None, primary_key=True)
    execution_id: str = Field(
        sa_column=Column(
            ForeignKey("executions.execution_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    step_index: int | None = None
    data_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
