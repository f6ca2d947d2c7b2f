from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest
from sqlalchemy.exc import SQLAlchemyError

from taskweave.engine.backend.base import StepOutcome
from taskweave.engine.errors import AggregationError, NotFoundError
from taskweave.engine.models import (
    ActionKind,
    EventType,
    ExecutionEvent,
    ExecutionStatus,
    GraphCreate,
    GraphStatus,
    PlanningAttempt,
    PlanningReason,
    StepStatus,
    TemplateSpec,
    Usage,
)
from taskweave.engine.repository import ExecutionRepository

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Persistence & Aggregates"),
]


def _tool(task_id: str, *dependencies: str) -> TemplateSpec:
    return TemplateSpec(
        task_id=task_id,
        description=f"Task {task_id}",
        action_kind=ActionKind.TOOL,
        target_name="echo",
        params={"q": task_id},
        dependencies=tuple(dependencies),
    )


def _graph(repository: ExecutionRepository, title: str = "Digest") -> str:
    graph = repository.create_graph(
        GraphCreate(title=title, goal=f"{title} goal", templates=[_tool("1"), _tool("2", "1")]),
    )
    return graph.graph_id


def test_unknown_ids_raise_not_found(repository) -> None:
    with pytest.raises(NotFoundError, match="Graph not found: graph_missing"):
        repository.get_graph("graph_missing")
    with pytest.raises(NotFoundError, match="Execution not found: exec_missing"):
        repository.get_execution("exec_missing")
    with pytest.raises(NotFoundError, match="Graph not found"):
        repository.create_execution(
            templates=[_tool("1")],
            original_request="x",
            graph_id="graph_missing",
        )


def test_graph_round_trip_keeps_templates_and_planning_cost(repository) -> None:
    graph = repository.create_graph(
        GraphCreate(
            title="Digest",
            goal="Summarize releases",
            templates=[_tool("1"), _tool("2", "1")],
            planning_attempts=[
                PlanningAttempt(
                    attempt=1,
                    reason=PlanningReason.INITIAL,
                    usage=Usage(prompt_tokens=100, completion_tokens=20, total_tokens=120),
                    cost_usd=0.5,
                    error="Duplicate sub-task id: 1",
                ),
                PlanningAttempt(
                    attempt=2,
                    reason=PlanningReason.RETRY_VALIDATION,
                    usage=Usage(prompt_tokens=80, completion_tokens=10, total_tokens=90),
                    cost_usd=0.25,
                ),
            ],
        ),
    )

    loaded = repository.get_graph(graph.graph_id)
    assert loaded.graph_id.startswith("graph_")
    assert loaded.status is GraphStatus.READY
    assert loaded.templates == [_tool("1"), _tool("2", "1")]
    assert loaded.planning_usage == Usage(prompt_tokens=180, completion_tokens=30, total_tokens=210)
    assert loaded.planning_cost_usd == pytest.approx(0.75)
    assert [attempt.reason for attempt in loaded.planning_attempts] == [
        PlanningReason.INITIAL,
        PlanningReason.RETRY_VALIDATION,
    ]
    assert loaded.planning_attempts[0].error == "Duplicate sub-task id: 1"


def test_list_graphs_filters_by_status_newest_first(repository) -> None:
    first = _graph(repository, "First")
    second = _graph(repository, "Second")
    repository.update_graph_status(first, status=GraphStatus.CANCELLED)

    assert [graph.graph_id for graph in repository.list_graphs()] == [second, first]
    assert [graph.graph_id for graph in repository.list_graphs(status=GraphStatus.READY)] == [
        second,
    ]


def test_update_graph_status_checks_expected_state(repository) -> None:
    graph_id = _graph(repository)

    with pytest.raises(AggregationError, match="is ready, cannot move to cancelled"):
        repository.update_graph_status(
            graph_id,
            status=GraphStatus.CANCELLED,
            expected=(GraphStatus.CLARIFICATION_REQUIRED,),
        )
    assert repository.get_graph(graph_id).status is GraphStatus.READY


def test_scheduled_graphs_are_active_ready_and_have_cron(repository) -> None:
    scheduled = _graph(repository, "Scheduled")
    inactive = _graph(repository, "Inactive")
    _graph(repository, "Plain")
    repository.set_graph_schedule(scheduled, cron_schedule="0 9 * * *", timezone="UTC", active=True)
    repository.set_graph_schedule(inactive, cron_schedule="0 9 * * *", timezone="UTC", active=False)

    assert [graph.graph_id for graph in repository.list_scheduled_graphs()] == [scheduled]


def test_create_execution_materializes_pending_steps(repository) -> None:
    graph_id = _graph(repository)
    graph = repository.get_graph(graph_id)

    execution = repository.create_execution(
        templates=graph.templates,
        original_request="Summarize",
        graph_id=graph_id,
        primary_intent="summarize",
    )

    assert execution.execution_id.startswith("exec_")
    assert execution.status is ExecutionStatus.PENDING
    assert execution.counters.total == 2
    assert execution.primary_intent == "summarize"
    steps = repository.list_steps(execution.execution_id)
    assert [step.task_id for step in steps] == ["1", "2"]
    assert [step.step_index for step in steps] == [1, 2]
    assert all(step.status is StepStatus.PENDING for step in steps)
    assert steps[1].template.dependencies == ("1",)
    assert steps[1].template.params == {"q": "2"}


def test_status_transitions_are_conditional(repository) -> None:
    execution = repository.create_execution(templates=[_tool("1")], original_request="x")

    assert repository.start_execution(execution.execution_id) is True
    assert repository.start_execution(execution.execution_id) is False
    assert repository.mark_step_running(execution.execution_id, "1") is True
    assert repository.mark_step_running(execution.execution_id, "1") is False

    counters = repository.record_step_outcome(
        execution.execution_id,
        "1",
        StepOutcome(success=True, output={"rows": 3}, usage=Usage(total_tokens=7), cost_usd=0.2),
    )
    assert counters.completed == 1

    with pytest.raises(AggregationError, match="changed concurrently"):
        repository.record_step_outcome(
            execution.execution_id,
            "1",
            StepOutcome(success=False, error="late"),
        )
    step = repository.get_step(execution.execution_id, "1")
    assert step.status is StepStatus.COMPLETED
    assert step.result == {"rows": 3}
    assert step.duration_ms is not None


def test_step_result_and_aggregates_roll_back_together(repository, clock, monkeypatch) -> None:
    execution = repository.create_execution(templates=[_tool("1")], original_request="x")
    repository.start_execution(execution.execution_id)
    repository.mark_step_running(execution.execution_id, "1")

    def _broken(self, session, execution_id):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(ExecutionRepository, "_apply_aggregates", _broken)
    event = ExecutionEvent(
        type=EventType.STEP_COMPLETED,
        execution_id=execution.execution_id,
        timestamp=clock.now(),
        step_index=1,
    )

    with pytest.raises(AggregationError, match="Failed to record result of step 1"):
        repository.record_step_outcome(
            execution.execution_id,
            "1",
            StepOutcome(success=True, output="done", usage=Usage(total_tokens=5)),
            events=[event],
        )

    monkeypatch.undo()
    step = repository.get_step(execution.execution_id, "1")
    assert step.status is StepStatus.RUNNING
    assert step.result is None
    stored = repository.get_execution(execution.execution_id)
    assert stored.counters.completed == 0
    assert stored.usage.total_tokens == 0
    assert repository.list_events(execution.execution_id) == []
    assert event.event_id is None


def test_finish_execution_records_duration_and_totals(repository, clock) -> None:
    execution = repository.create_execution(templates=[_tool("1")], original_request="x")
    repository.start_execution(execution.execution_id)
    repository.mark_step_running(execution.execution_id, "1")
    repository.record_step_outcome(
        execution.execution_id,
        "1",
        StepOutcome(
            success=True,
            output="done",
            usage=Usage(prompt_tokens=4, completion_tokens=6, total_tokens=10),
            cost_usd=0.1,
        ),
    )

    finished = repository.finish_execution(
        execution.execution_id,
        status=ExecutionStatus.COMPLETED,
        final_result="done",
        synthesis_result="done",
        synthesis_usage=Usage(prompt_tokens=1, completion_tokens=1, total_tokens=2),
        synthesis_cost_usd=0.05,
    )

    assert finished.status is ExecutionStatus.COMPLETED
    assert finished.duration_ms is not None and finished.duration_ms > 0
    assert finished.usage == Usage(prompt_tokens=5, completion_tokens=7, total_tokens=12)
    assert finished.total_cost_usd == pytest.approx(0.15)

    with pytest.raises(AggregationError, match="changed concurrently before it could finish"):
        repository.finish_execution(
            execution.execution_id,
            status=ExecutionStatus.FAILED,
            final_result=None,
        )


def test_list_executions_filters_and_paginates(repository) -> None:
    graph_id = _graph(repository)
    graph = repository.get_graph(graph_id)
    ids = [
        repository.create_execution(
            templates=graph.templates,
            original_request=f"run {index}",
            graph_id=graph_id,
        ).execution_id
        for index in range(3)
    ]
    repository.create_execution(templates=[_tool("1")], original_request="adhoc")

    listed = repository.list_executions(graph_id=graph_id)
    assert [item.execution_id for item in listed] == list(reversed(ids))
    page = repository.list_executions(graph_id=graph_id, limit=1, offset=1)
    assert [item.execution_id for item in page] == [ids[1]]
    assert repository.list_executions(status=ExecutionStatus.RUNNING) == []
    assert len(repository.list_executions(limit=None)) == 4


def test_list_executions_between_uses_half_open_window(repository, clock) -> None:
    clock.set(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))
    march = repository.create_execution(templates=[_tool("1")], original_request="march")
    clock.set(datetime(2026, 4, 1, 0, 0, tzinfo=UTC))
    april = repository.create_execution(templates=[_tool("1")], original_request="april")

    window = repository.list_executions_between(
        start=datetime(2026, 3, 1, tzinfo=UTC),
        end=datetime(2026, 4, 1, tzinfo=UTC),
    )
    assert [item.execution_id for item in window] == [march.execution_id]

    later = repository.list_executions_between(
        start=datetime(2026, 4, 1, tzinfo=UTC),
        end=datetime(2026, 4, 1, tzinfo=UTC) + timedelta(days=1),
    )
    assert [item.execution_id for item in later] == [april.execution_id]
