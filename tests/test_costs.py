from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

import allure
import pytest

from taskweave.engine.costs import CostAccountant, GroupBy, bucket_key
from taskweave.engine.models import (
    ActionKind,
    GraphCreate,
    PlanningAttempt,
    PlanningReason,
    TemplateSpec,
    Usage,
)

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Cost Accounting"),
]


def _tool(task_id: str, *dependencies: str) -> TemplateSpec:
    return TemplateSpec(
        task_id=task_id,
        description=f"Task {task_id}",
        action_kind=ActionKind.TOOL,
        target_name="echo",
        dependencies=tuple(dependencies),
    )


def _planned_graph(repository, templates: list[TemplateSpec], cost: float = 0.05) -> str:
    graph = repository.create_graph(
        GraphCreate(
            title="Digest",
            goal="digest",
            templates=templates,
            planning_attempts=[
                PlanningAttempt(
                    attempt=1,
                    reason=PlanningReason.INITIAL,
                    usage=Usage(prompt_tokens=100, completion_tokens=50, total_tokens=150),
                    cost_usd=cost,
                ),
            ],
        ),
    )
    return graph.graph_id


def _run(repository, scheduler, graph_id: str) -> str:
    graph = repository.get_graph(graph_id)
    execution = repository.create_execution(
        templates=graph.templates,
        original_request=graph.goal,
        graph_id=graph_id,
    )
    scheduler.run(execution.execution_id)
    return execution.execution_id


def test_bucket_keys_are_calendar_aligned_in_utc() -> None:
    wednesday = datetime(2026, 1, 7, 15, 30, tzinfo=UTC)

    assert bucket_key(wednesday, GroupBy.DAY) == "2026-01-07"
    assert bucket_key(wednesday, GroupBy.WEEK) == "2026-01-05"
    assert bucket_key(wednesday, GroupBy.MONTH) == "2026-01"

    berlin_new_year = datetime(2026, 1, 1, 0, 30, tzinfo=ZoneInfo("Europe/Berlin"))
    assert bucket_key(berlin_new_year, GroupBy.DAY) == "2025-12-31"
    assert bucket_key(berlin_new_year, GroupBy.MONTH) == "2025-12"


def test_execution_costs_split_planning_and_execution(repository, scheduler) -> None:
    graph_id = _planned_graph(repository, [_tool("A"), _tool("B", "A")], cost=0.5)
    execution_id = _run(repository, scheduler, graph_id)

    costs = CostAccountant(repository).execution_costs(execution_id)

    assert costs.graph_id == graph_id
    assert costs.planning.cost_usd == pytest.approx(0.5)
    assert costs.planning.usage.total_tokens == 150
    assert costs.execution.cost_usd == pytest.approx(0.02)
    assert costs.execution.usage.total_tokens == 30
    assert costs.total.cost_usd == pytest.approx(0.52)
    assert costs.synthesis.cost_usd == 0.0
    assert [(step.task_id, step.provider, step.model) for step in costs.steps] == [
        ("A", "fake", "fake-1"),
        ("B", "fake", "fake-1"),
    ]
    assert costs.steps[0].line.cost_usd == pytest.approx(0.01)


def test_graph_costs_count_planning_once(repository, scheduler) -> None:
    graph_id = _planned_graph(repository, [_tool("A")], cost=0.5)
    _run(repository, scheduler, graph_id)
    _run(repository, scheduler, graph_id)

    costs = CostAccountant(repository).graph_costs(graph_id)

    assert costs.executions == 2
    assert costs.planning.cost_usd == pytest.approx(0.5)
    assert costs.execution.cost_usd == pytest.approx(0.02)
    assert costs.total.cost_usd == pytest.approx(0.52)
    assert costs.total.usage.total_tokens == 150 + 30


def test_cost_summary_buckets_partition_the_window(repository, scheduler, clock) -> None:
    first = datetime(2026, 1, 3, 10, 0, tzinfo=UTC)
    for index in range(24):
        clock.set(first + timedelta(days=15 * index))
        _run(repository, scheduler, _planned_graph(repository, [_tool("A")]))

    accountant = CostAccountant(repository, clock=clock)
    window = {
        "from_": datetime(2026, 1, 1, tzinfo=UTC),
        "to": datetime(2027, 1, 1, tzinfo=UTC),
    }
    summaries = {
        group_by: accountant.cost_summary(group_by=group_by, **window) for group_by in GroupBy
    }

    for summary in summaries.values():
        assert summary.planning.cost_usd == pytest.approx(24 * 0.05)
        assert summary.execution.cost_usd == pytest.approx(24 * 0.01)
        bucket_total = sum(bucket.total.cost_usd for bucket in summary.buckets)
        assert summary.total.cost_usd == pytest.approx(bucket_total)
        assert summary.total.usage.total_tokens == 24 * 150 + 24 * 15
        assert sum(bucket.executions for bucket in summary.buckets) == 24

    monthly = summaries[GroupBy.MONTH]
    expected_months = [f"2026-{month:02d}" for month in range(1, 13)]
    assert [bucket.key for bucket in monthly.buckets] == expected_months
    weekly = summaries[GroupBy.WEEK]
    assert len(weekly.buckets) == 24
    assert all(date.fromisoformat(bucket.key).weekday() == 0 for bucket in weekly.buckets)
    assert len(summaries[GroupBy.DAY].buckets) == 24


def test_cost_summary_defaults_to_trailing_window(repository, scheduler, clock) -> None:
    clock.set(datetime(2026, 1, 10, 12, 0, tzinfo=UTC))
    _run(repository, scheduler, _planned_graph(repository, [_tool("A")]))
    clock.set(datetime(2026, 3, 10, 12, 0, tzinfo=UTC))
    _run(repository, scheduler, _planned_graph(repository, [_tool("A")]))
    clock.set(datetime(2026, 3, 20, 12, 0, tzinfo=UTC))

    summary = CostAccountant(repository, clock=clock, window_days=30).cost_summary()

    assert [bucket.key for bucket in summary.buckets] == ["2026-03-10"]
    assert summary.total.cost_usd == pytest.approx(0.06)


def test_cost_summary_rejects_inverted_window(repository) -> None:
    with pytest.raises(ValueError, match="must not be after"):
        CostAccountant(repository).cost_summary(
            from_=datetime(2026, 2, 1, tzinfo=UTC),
            to=datetime(2026, 1, 1, tzinfo=UTC),
        )
