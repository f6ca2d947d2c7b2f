from __future__ import annotations

import json
import tempfile
import threading
from pathlib import Path

import allure
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from taskweave.engine.backend.base import StepOutcome, StepRequest
from taskweave.engine.backend.echo import EchoSynthesizer
from taskweave.engine.errors import StepExecutionError, ValidationError
from taskweave.engine.models import (
    ActionKind,
    EventType,
    ExecutionStatus,
    GraphCreate,
    StepStatus,
    TemplateSpec,
)
from taskweave.engine.repository import ExecutionRepository
from taskweave.engine.scheduler import CANCELLED_REASON, CancelToken, DagScheduler
from taskweave.engine.stop_requests import StopRequestStore

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("DAG Scheduling"),
]


def _tool(task_id: str, *dependencies: str) -> TemplateSpec:
    return TemplateSpec(
        task_id=task_id,
        description=f"Task {task_id}",
        action_kind=ActionKind.TOOL,
        target_name="echo",
        dependencies=tuple(dependencies),
    )


def _diamond() -> list[TemplateSpec]:
    return [_tool("A"), _tool("B", "A"), _tool("C", "A"), _tool("D", "B", "C")]


def test_failed_step_propagates_to_dependents_and_execution_is_partial(
    repository,
    scheduler,
    runner,
    make_execution,
) -> None:
    runner.fail.add("B")
    execution = make_execution(*_diamond())

    finished = scheduler.run(execution.execution_id)

    assert finished.status is ExecutionStatus.PARTIAL
    assert finished.counters.total == 4
    assert finished.counters.completed == 2
    assert finished.counters.failed == 2
    assert runner.called_ids == ["A", "B", "C"]

    steps = {step.task_id: step for step in repository.list_steps(execution.execution_id)}
    assert steps["B"].status is StepStatus.FAILED
    assert steps["B"].propagated is False
    assert steps["B"].error == "B failed"
    assert steps["D"].status is StepStatus.FAILED
    assert steps["D"].propagated is True
    assert steps["D"].error == "Dependency failed: B"
    assert steps["D"].started_at is None

    assert finished.usage.total_tokens == 30
    assert finished.total_cost_usd == pytest.approx(0.02)
    assert finished.completed_at is not None
    assert finished.duration_ms is not None and finished.duration_ms > 0


def test_event_log_follows_dispatch_order(repository, scheduler, runner, make_execution) -> None:
    runner.fail.add("B")
    execution = make_execution(*_diamond())

    scheduler.run(execution.execution_id)

    events = repository.list_events(execution.execution_id)
    assert [event.type for event in events] == [
        EventType.STARTED,
        EventType.TOOL_CALLED,
        EventType.TOOL_COMPLETED,
        EventType.STEP_COMPLETED,
        EventType.TOOL_CALLED,
        EventType.TOOL_FAILED,
        EventType.STEP_FAILED,
        EventType.STEP_FAILED,
        EventType.TOOL_CALLED,
        EventType.TOOL_COMPLETED,
        EventType.STEP_COMPLETED,
        EventType.COMPLETED,
    ]
    assert events[0].data == {"totalTasks": 4}
    assert events[3].step_index == 1
    assert events[3].data == {
        "taskId": "A",
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        "costUsd": 0.01,
    }
    assert events[6].error == "B failed"
    assert events[7].data == {"taskId": "D", "propagated": True}
    assert events[7].error == "Dependency failed: B"
    assert events[-1].data == {"status": "partial"}
    ids = [event.event_id for event in events]
    assert ids == sorted(ids)


def test_dependency_results_are_passed_to_dependents(
    repository,
    scheduler,
    runner,
    make_execution,
) -> None:
    execution = make_execution(_tool("A"), _tool("B", "A"))

    finished = scheduler.run(execution.execution_id)

    assert finished.status is ExecutionStatus.COMPLETED
    request = runner.calls[1]
    assert request.dependency_results == {"A": "result-A"}
    assert request.step_index == 2
    assert request.context.request == "test request"
    assert request.context.total_tasks == 2
    # Without a synthesizer the final result holds sink step outputs only.
    assert json.loads(finished.final_result) == {"B": "result-B"}


def test_synthesizer_output_becomes_final_result(
    repository,
    stop_store,
    runner,
    clock,
    make_execution,
) -> None:
    scheduler = DagScheduler(
        repository,
        stop_store,
        runner,
        clock=clock,
        synthesizer=EchoSynthesizer(),
    )
    execution = make_execution(_tool("A"), _tool("B", "A"))

    finished = scheduler.run(execution.execution_id)

    assert finished.status is ExecutionStatus.COMPLETED
    assert finished.synthesis_result == "[A] result-A\n[B] result-B"
    assert finished.final_result == finished.synthesis_result
    assert finished.synthesis_usage.completion_tokens == 4
    # Step usage (2 x 15) plus synthesis usage.
    assert finished.usage.total_tokens == 34


def test_all_steps_failing_marks_execution_failed(
    repository,
    scheduler,
    runner,
    make_execution,
) -> None:
    runner.fail.add("A")
    execution = make_execution(_tool("A"), _tool("B", "A"))

    finished = scheduler.run(execution.execution_id)

    assert finished.status is ExecutionStatus.FAILED
    assert finished.final_result is None
    events = repository.list_events(execution.execution_id)
    assert events[-1].type is EventType.FAILED
    assert runner.called_ids == ["A"]


def test_runner_exception_becomes_failed_step(
    repository,
    scheduler,
    runner,
    make_execution,
) -> None:
    runner.explode.add("A")
    execution = make_execution(_tool("A"))

    finished = scheduler.run(execution.execution_id)

    assert finished.status is ExecutionStatus.FAILED
    step = repository.get_step(execution.execution_id, "A")
    assert step.status is StepStatus.FAILED
    assert step.error == "boom A"


def test_stop_request_before_run_suspends_without_dispatch(
    scheduler,
    stop_store,
    runner,
    make_execution,
) -> None:
    execution = make_execution(_tool("A"), _tool("B", "A"))
    stop_store.request_for_execution(execution.execution_id)

    finished = scheduler.run(execution.execution_id)

    assert finished.status is ExecutionStatus.SUSPENDED
    assert finished.suspended_reason == "stopped"
    assert finished.suspended_at is not None
    assert runner.called_ids == []
    assert not stop_store.has_active_for_execution(execution.execution_id)


def test_stop_request_during_run_lets_in_flight_step_finish(
    repository,
    scheduler,
    stop_store,
    runner,
    make_execution,
) -> None:
    execution = make_execution(_tool("A"), _tool("B", "A"))
    runner.hooks["A"] = lambda request: stop_store.request_for_execution(request.execution_id)

    finished = scheduler.run(execution.execution_id)

    assert finished.status is ExecutionStatus.SUSPENDED
    assert finished.counters.completed == 1
    assert repository.get_step(execution.execution_id, "A").status is StepStatus.COMPLETED
    assert repository.get_step(execution.execution_id, "B").status is StepStatus.PENDING
    events = repository.list_events(execution.execution_id)
    assert events[-1].type is EventType.PAUSED
    assert events[-1].data == {"reason": "stopped"}


def test_graph_stop_suspends_its_executions(
    repository,
    scheduler,
    stop_store,
    runner,
    make_execution,
) -> None:
    graph = repository.create_graph(
        GraphCreate(title="Digest", goal="digest", templates=[_tool("A")]),
    )
    execution = make_execution(_tool("A"), graph_id=graph.graph_id)
    stop_store.request_for_graph(graph.graph_id)

    finished = scheduler.run(execution.execution_id)

    assert finished.status is ExecutionStatus.SUSPENDED
    assert runner.called_ids == []
    assert not stop_store.has_active_for_graph(graph.graph_id)


def test_cancel_token_suspends_with_cancelled_reason(scheduler, runner, make_execution) -> None:
    execution = make_execution(_tool("A"))
    token = CancelToken()
    token.cancel()

    finished = scheduler.run(execution.execution_id, cancel_token=token)

    assert finished.status is ExecutionStatus.SUSPENDED
    assert finished.suspended_reason == CANCELLED_REASON
    assert runner.called_ids == []


def test_suspension_signal_parks_step_as_waiting(
    repository,
    scheduler,
    runner,
    make_execution,
) -> None:
    runner.suspend.add("B")
    execution = make_execution(_tool("A"), _tool("B", "A"))

    finished = scheduler.run(execution.execution_id)

    assert finished.status is ExecutionStatus.WAITING
    assert finished.counters.waiting == 1
    assert finished.counters.completed == 1
    step = repository.get_step(execution.execution_id, "B")
    assert step.status is StepStatus.WAITING
    assert step.error == "needs input for B"
    assert step.completed_at is None

    paused = [
        event
        for event in repository.list_events(execution.execution_id)
        if event.type is EventType.PAUSED
    ]
    assert paused[0].data == {"taskId": "B", "status": "waiting"}
    assert paused[0].error == "needs input for B"
    assert paused[-1].data == {"status": "waiting", "waiting": ["B"]}


def test_independent_steps_run_concurrently(
    repository,
    stop_store,
    runner,
    clock,
    make_execution,
) -> None:
    barrier = threading.Barrier(3, timeout=5)
    for task_id in ("A", "B", "C"):
        runner.hooks[task_id] = lambda _request: barrier.wait()
    scheduler = DagScheduler(repository, stop_store, runner, max_concurrency=3, clock=clock)
    execution = make_execution(_tool("A"), _tool("B"), _tool("C"), _tool("D", "A", "B", "C"))

    finished = scheduler.run(execution.execution_id)

    assert finished.status is ExecutionStatus.COMPLETED
    assert sorted(runner.called_ids[:3]) == ["A", "B", "C"]
    assert runner.called_ids[3] == "D"


def test_finished_execution_cannot_be_run_again(scheduler, make_execution) -> None:
    execution = make_execution(_tool("A"))
    scheduler.run(execution.execution_id)

    with pytest.raises(ValidationError, match="cannot run from status completed"):
        scheduler.run(execution.execution_id)


def test_unsatisfiable_steps_fail_the_execution(
    repository,
    scheduler,
    runner,
    make_execution,
) -> None:
    # Bypasses graph validation, so the cycle reaches the scheduler.
    execution = make_execution(_tool("A", "B"), _tool("B", "A"))

    with pytest.raises(StepExecutionError, match="deadlock"):
        scheduler.run(execution.execution_id)

    stored = repository.get_execution(execution.execution_id)
    assert stored.status is ExecutionStatus.FAILED
    assert stored.counters.failed == 2
    assert runner.called_ids == []


def test_max_concurrency_must_be_positive(repository, stop_store, runner) -> None:
    with pytest.raises(ValueError, match="max_concurrency"):
        DagScheduler(repository, stop_store, runner, max_concurrency=0)


class _OrderRunner:
    def __init__(self, failing: set[str]) -> None:
        self.failing = failing
        self.order: list[str] = []
        self._lock = threading.Lock()

    def run(self, request: StepRequest) -> StepOutcome:
        with self._lock:
            self.order.append(request.template.task_id)
        if request.template.task_id in self.failing:
            return StepOutcome(success=False, error="failed")
        return StepOutcome(success=True, output=request.template.task_id)


@st.composite
def _graphs(draw):
    size = draw(st.integers(min_value=1, max_value=6))
    templates = []
    for index in range(size):
        dependencies: set[int] = set()
        if index:
            dependencies = draw(
                st.sets(st.integers(min_value=0, max_value=index - 1), max_size=3),
            )
        templates.append(_tool(f"t{index}", *(f"t{dep}" for dep in sorted(dependencies))))
    declared = draw(st.permutations(templates))
    failing = draw(st.sets(st.sampled_from([template.task_id for template in templates]), max_size=2))
    concurrency = draw(st.integers(min_value=1, max_value=3))
    return list(declared), failing, concurrency


@settings(max_examples=25, deadline=None)
@given(case=_graphs())
def test_steps_start_only_after_their_dependencies_complete(case) -> None:
    templates, failing, concurrency = case
    with tempfile.TemporaryDirectory() as tmp:
        repository = ExecutionRepository(Path(tmp) / "property.db")
        repository.init_schema()
        try:
            runner = _OrderRunner(failing)
            scheduler = DagScheduler(
                repository,
                StopRequestStore(repository.engine),
                runner,
                max_concurrency=concurrency,
            )
            execution = repository.create_execution(
                templates=templates,
                original_request="property",
            )
            finished = scheduler.run(execution.execution_id)
            steps = {step.task_id: step for step in repository.list_steps(execution.execution_id)}
        finally:
            repository.close()

    blocked: set[str] = set()
    for template in sorted(templates, key=lambda item: int(item.task_id[1:])):
        if any(dep in failing or dep in blocked for dep in template.dependencies):
            blocked.add(template.task_id)

    assert len(runner.order) == len(set(runner.order))
    assert set(runner.order) == {template.task_id for template in templates} - blocked
    position = {task_id: index for index, task_id in enumerate(runner.order)}
    for template in templates:
        if template.task_id not in position:
            continue
        for dep in template.dependencies:
            assert dep not in failing
            assert position[dep] < position[template.task_id]

    for task_id, step in steps.items():
        if task_id in blocked:
            assert step.status is StepStatus.FAILED
            assert step.propagated is True
        elif task_id in failing:
            assert step.status is StepStatus.FAILED
        else:
            assert step.status is StepStatus.COMPLETED
    assert finished.counters.completed + finished.counters.failed == len(templates)
