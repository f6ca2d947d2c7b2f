"""Planning vs execution cost accounting and calendar bucketing."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from taskweave.engine.backend.base import CostClock, SystemClock
from taskweave.engine.models import ExecutionView, GraphView, StepStatus, Usage
from taskweave.engine.repository import ExecutionRepository
from taskweave.storage.common import to_utc_aware_datetime

DEFAULT_COST_WINDOW_DAYS = 30


class GroupBy(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


@dataclass(slots=True)
class CostLine:
    usage: Usage = field(default_factory=Usage)
    cost_usd: float = 0.0

    def __add__(self, other: CostLine) -> CostLine:
        return CostLine(usage=self.usage + other.usage, cost_usd=self.cost_usd + other.cost_usd)


@dataclass(slots=True)
class StepCost:
    task_id: str
    status: StepStatus
    provider: str | None
    model: str | None
    line: CostLine


@dataclass(slots=True)
class ExecutionCosts:
    execution_id: str
    graph_id: str | None
    planning: CostLine
    execution: CostLine
    synthesis: CostLine
    steps: list[StepCost]

    @property
    def total(self) -> CostLine:
        return self.planning + self.execution


@dataclass(slots=True)
class GraphCosts:
    graph_id: str
    planning: CostLine
    execution: CostLine
    executions: int

    @property
    def total(self) -> CostLine:
        return self.planning + self.execution


@dataclass(slots=True)
class CostBucket:
    key: str
    planning: CostLine = field(default_factory=CostLine)
    execution: CostLine = field(default_factory=CostLine)
    executions: int = 0

    @property
    def total(self) -> CostLine:
        return self.planning + self.execution


@dataclass(slots=True)
class CostSummary:
    start: datetime
    end: datetime
    group_by: GroupBy
    buckets: list[CostBucket]

    @property
    def planning(self) -> CostLine:
        return sum((bucket.planning for bucket in self.buckets), CostLine())

    @property
    def execution(self) -> CostLine:
        return sum((bucket.execution for bucket in self.buckets), CostLine())

    @property
    def total(self) -> CostLine:
        return self.planning + self.execution


def bucket_key(ts: datetime, group_by: GroupBy) -> str:
    """Calendar-aligned UTC bucket key: day, ISO week start (Monday) or month."""

    day = to_utc_aware_datetime(ts).date()
    if group_by is GroupBy.DAY:
        return day.isoformat()
    if group_by is GroupBy.WEEK:
        return (day - timedelta(days=day.weekday())).isoformat()
    return f"{day.year:04d}-{day.month:02d}"


def execution_timestamp(execution: ExecutionView) -> datetime:
    """Timestamp an execution's cost is attributed to."""

    return execution.completed_at or execution.started_at or execution.created_at


class CostAccountant:
    """Read-only cost views over persisted graphs and executions."""

    def __init__(
        self,
        repository: ExecutionRepository,
        *,
        clock: CostClock | None = None,
        window_days: int = DEFAULT_COST_WINDOW_DAYS,
    ) -> None:
        self.repository = repository
        self.clock: CostClock = clock or SystemClock()
        self.window_days = window_days

    def execution_costs(self, execution_id: str) -> ExecutionCosts:
        details = self.repository.get_execution_details(execution_id)
        execution = details.execution
        planning = CostLine()
        if execution.graph_id is not None:
            planning = _planning_line(self.repository.get_graph(execution.graph_id))
        steps = [
            StepCost(
                task_id=step.task_id,
                status=step.status,
                provider=step.provider,
                model=step.model,
                line=CostLine(usage=step.usage, cost_usd=step.cost_usd),
            )
            for step in details.steps
        ]
        return ExecutionCosts(
            execution_id=execution.execution_id,
            graph_id=execution.graph_id,
            planning=planning,
            execution=_execution_line(execution),
            synthesis=CostLine(
                usage=execution.synthesis_usage,
                cost_usd=execution.synthesis_cost_usd,
            ),
            steps=steps,
        )

    def graph_costs(self, graph_id: str) -> GraphCosts:
        graph = self.repository.get_graph(graph_id)
        executions = self.repository.list_executions(graph_id=graph_id, limit=None)
        return GraphCosts(
            graph_id=graph_id,
            planning=_planning_line(graph),
            execution=sum((_execution_line(item) for item in executions), CostLine()),
            executions=len(executions),
        )

    def cost_summary(
        self,
        *,
        from_: datetime | None = None,
        to: datetime | None = None,
        group_by: GroupBy = GroupBy.DAY,
    ) -> CostSummary:
        """Bucketed costs over ``[from_, to)``; defaults to the trailing window."""

        end = to_utc_aware_datetime(to) if to is not None else self.clock.now()
        start = (
            to_utc_aware_datetime(from_)
            if from_ is not None
            else end - timedelta(days=self.window_days)
        )
        if start > end:
            raise ValueError("Cost summary start must not be after its end.")

        buckets: dict[str, CostBucket] = {}

        def _bucket(ts: datetime) -> CostBucket:
            key = bucket_key(ts, group_by)
            return buckets.setdefault(key, CostBucket(key=key))

        for graph in self.repository.list_graphs_created_between(start=start, end=end):
            bucket = _bucket(graph.created_at)
            bucket.planning = bucket.planning + _planning_line(graph)
        for execution in self.repository.list_executions_between(start=start, end=end):
            bucket = _bucket(execution_timestamp(execution))
            bucket.execution = bucket.execution + _execution_line(execution)
            bucket.executions += 1

        return CostSummary(
            start=start,
            end=end,
            group_by=group_by,
            buckets=[buckets[key] for key in sorted(buckets)],
        )


def _planning_line(graph: GraphView) -> CostLine:
    return CostLine(usage=graph.planning_usage, cost_usd=graph.planning_cost_usd)


def _execution_line(execution: ExecutionView) -> CostLine:
    return CostLine(usage=execution.usage, cost_usd=execution.total_cost_usd)
