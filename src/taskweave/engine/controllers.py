"""Controllers for graph, execution and cost CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from taskweave.config import Settings
from taskweave.engine.backend import DispatchingStepRunner, ToolExecutor
from taskweave.engine.backend.echo import (
    EchoInferenceExecutor,
    EchoSynthesizer,
    EchoToolExecutor,
    FailingToolExecutor,
    StaticDecomposer,
)
from taskweave.engine.costs import CostAccountant, CostLine, GroupBy
from taskweave.engine.events import EventEmitter, replay_events, stream_events
from taskweave.engine.models import (
    ExecutionEvent,
    ExecutionStatus,
    ExecutionView,
    GraphStatus,
)
from taskweave.engine.recovery import RecoveryService
from taskweave.engine.repository import ExecutionRepository
from taskweave.engine.schedule import next_run_at
from taskweave.engine.scheduler import DagScheduler
from taskweave.engine.services import ExecutionService, PlanningService
from taskweave.engine.stop_requests import StopRequestStore
from taskweave.engine.validator import ClarificationRequired, topological_order, validate_task_graph

WILDCARD = "*"


@dataclass(slots=True)
class GraphFileCommand:
    """CLI input for validating or creating a graph from a JSON file."""

    db_path: Path | None
    path: Path


@dataclass(slots=True)
class GraphListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class GraphIdCommand:
    db_path: Path | None
    graph_id: str


@dataclass(slots=True)
class GraphScheduleCommand:
    """CLI input for recurrence metadata."""

    db_path: Path | None
    graph_id: str
    cron: str | None
    timezone: str | None
    active: bool


@dataclass(slots=True)
class ExecRunCommand:
    """CLI input for running a graph with the local echo collaborators."""

    db_path: Path | None
    graph_id: str
    request: str | None = None
    fail_tools: tuple[str, ...] = ()


@dataclass(slots=True)
class ExecRunFileCommand:
    """CLI input for planning and running a JSON graph file in one step."""

    db_path: Path | None
    path: Path
    save_graph: bool = True
    fail_tools: tuple[str, ...] = ()


@dataclass(slots=True)
class ExecListCommand:
    db_path: Path | None
    graph_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class ExecIdCommand:
    db_path: Path | None
    execution_id: str


@dataclass(slots=True)
class ExecEventsCommand:
    """CLI input for event replay or live following."""

    db_path: Path | None
    execution_id: str
    output_format: str = "table"
    follow: bool = False
    timeout_seconds: float | None = None


@dataclass(slots=True)
class ExecRedoCommand:
    db_path: Path | None
    execution_id: str
    task_id: str
    provider: str | None
    model: str | None


@dataclass(slots=True)
class CostTargetCommand:
    """CLI input for execution or graph cost breakdown."""

    db_path: Path | None
    target_id: str
    output_format: str = "table"


@dataclass(slots=True)
class CostSummaryCommand:
    """CLI input for bucketed cost summary."""

    db_path: Path | None
    group_by: str
    days: int | None
    output_format: str = "table"


class GraphCliController:
    """Graph validation, persistence and scheduling commands."""

    def validate(self, command: GraphFileCommand) -> list[str]:
        decomposer = StaticDecomposer.from_file(command.path)
        goal = _file_goal(decomposer, command.path)
        result = decomposer.decompose(goal)
        validated = validate_task_graph(
            result.templates,
            clarification_required=result.clarification_required,
            clarification_text=result.clarification_text,
        )
        if isinstance(validated, ClarificationRequired):
            return [f"Clarification required: {validated.clarification_text}"]
        order = [template.task_id for template in topological_order(validated.templates)]
        return [
            f"Graph valid: tasks={len(validated.templates)}",
            f"Execution order: {' -> '.join(order)}",
        ]

    def create(self, command: GraphFileCommand) -> list[str]:
        settings = _settings(command.db_path)
        decomposer = StaticDecomposer.from_file(command.path)
        goal = _file_goal(decomposer, command.path)
        with _repository(settings) as repository:
            outcome = PlanningService(
                repository,
                decomposer,
                max_planning_attempts=1,
                persist_clarifications=settings.engine.persist_clarifications,
            ).plan_graph(goal)

        if outcome.clarification is not None:
            lines = [f"Clarification required: {outcome.clarification.clarification_text}"]
            if outcome.graph is not None:
                lines.append(f"Audit graph: {outcome.graph.graph_id}")
            return lines
        graph = outcome.graph
        if graph is None:
            return ["Graph was not persisted."]
        return [
            "Graph created: "
            f"graph_id={graph.graph_id} status={graph.status.value} tasks={len(graph.templates)}",
        ]

    def list_graphs(self, command: GraphListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = GraphStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            graphs = repository.list_graphs(status=status, limit=command.limit)

        lines = [f"Graphs: {len(graphs)}"]
        for graph in graphs:
            lines.append(
                f"  {graph.graph_id} status={graph.status.value} tasks={len(graph.templates)} "
                f"schedule={graph.cron_schedule or '-'} title={graph.title}",
            )
        return lines

    def show(self, command: GraphIdCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            graph = repository.get_graph(command.graph_id)

        lines = [
            f"Graph: {graph.graph_id}",
            f"Title: {graph.title}",
            f"Goal: {graph.goal}",
            f"Intent: {graph.primary_intent or '-'}",
            f"Status: {graph.status.value}",
            f"Clarification: {graph.clarification_query or '-'}",
            f"Schedule: {graph.cron_schedule or '-'} "
            f"timezone={graph.timezone or '-'} active={'yes' if graph.schedule_active else 'no'}",
            f"Planning: {_line_text(CostLine(graph.planning_usage, graph.planning_cost_usd))} "
            f"attempts={len(graph.planning_attempts)}",
            f"Tasks: {len(graph.templates)}",
        ]
        for template in graph.templates:
            deps = ",".join(template.dependencies) or "-"
            lines.append(
                f"  [{template.task_id}] {template.action_kind.value}:{template.target_name} "
                f"deps={deps} {template.description}",
            )
        return lines

    def schedule(self, command: GraphScheduleCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            service = _execution_service(settings, repository)
            graph = service.set_schedule(
                command.graph_id,
                cron=command.cron,
                timezone=command.timezone,
                active=command.active,
            )

        if graph.cron_schedule is None:
            return [f"Schedule cleared: {graph.graph_id}"]
        upcoming = next_run_at(
            graph.cron_schedule,
            graph.last_run_at or repository.clock.now(),
            graph.timezone,
        )
        return [
            "Schedule set: "
            f"graph_id={graph.graph_id} cron={graph.cron_schedule!r} "
            f"timezone={graph.timezone} active={'yes' if graph.schedule_active else 'no'}",
            f"Next run: {upcoming.isoformat()}",
        ]

    def stop(self, command: GraphIdCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            stop = _execution_service(settings, repository).request_stop_graph(command.graph_id)
        return [f"Stop requested: stop_id={stop.stop_id} graph_id={command.graph_id}"]

    def delete(self, command: GraphIdCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            _execution_service(settings, repository).delete_graph(command.graph_id)
        return [f"Graph deleted: {command.graph_id}"]


class ExecutionCliController:
    """Execution run, inspection and recovery commands."""

    def run(self, command: ExecRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            service = _execution_service(settings, repository, fail_tools=command.fail_tools)
            execution = service.run_graph(command.graph_id, request=command.request)
        return _execution_lines(execution)

    def run_file(self, command: ExecRunFileCommand) -> list[str]:
        settings = _settings(command.db_path)
        decomposer = StaticDecomposer.from_file(command.path)
        goal = _file_goal(decomposer, command.path)
        with _repository(settings) as repository:
            service = _execution_service(settings, repository, fail_tools=command.fail_tools)
            if not command.save_graph:
                result = decomposer.decompose(goal)
                execution = service.run_definition(
                    result.templates,
                    goal,
                    primary_intent=result.primary_intent,
                )
                return _execution_lines(execution)
            planner = PlanningService(
                repository,
                decomposer,
                max_planning_attempts=1,
                persist_clarifications=settings.engine.persist_clarifications,
            )
            run = service.plan_and_run(planner, goal)

        if run.execution is None:
            clarification = run.planning.clarification
            text = clarification.clarification_text if clarification is not None else "-"
            return [f"Clarification required: {text}"]
        return _execution_lines(run.execution)

    def list_executions(self, command: ExecListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = ExecutionStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            executions = repository.list_executions(
                graph_id=command.graph_id,
                status=status,
                limit=command.limit,
            )

        lines = [f"Executions: {len(executions)}"]
        for execution in executions:
            counters = execution.counters
            lines.append(
                f"  {execution.execution_id} graph={execution.graph_id or '-'} "
                f"status={execution.status.value} "
                f"completed={counters.completed}/{counters.total} failed={counters.failed} "
                f"cost_usd={execution.total_cost_usd:.6f} "
                f"created_at={execution.created_at.isoformat()}",
            )
        return lines

    def inspect(self, command: ExecIdCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_execution_details(command.execution_id)

        lines = _execution_lines(details.execution)
        for step in details.steps:
            status = step.status.value + (" (propagated)" if step.propagated else "")
            lines.append(
                f"  [{step.task_id}] {status} "
                f"{step.template.action_kind.value}:{step.template.target_name} "
                f"duration_ms={step.duration_ms if step.duration_ms is not None else '-'} "
                f"{_line_text(CostLine(step.usage, step.cost_usd))} "
                f"error={step.error or '-'}",
            )
        return lines

    def events(self, command: ExecEventsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            if command.follow:
                events = list(
                    stream_events(
                        repository,
                        command.execution_id,
                        poll_interval=settings.engine.event_poll_interval_seconds,
                        timeout=command.timeout_seconds,
                    ),
                )
            else:
                events = replay_events(repository, command.execution_id)

        if command.output_format == "json":
            return [
                json.dumps(
                    {
                        "execution_id": command.execution_id,
                        "events": [event.to_dict() for event in events],
                    },
                    indent=2,
                    ensure_ascii=False,
                ),
            ]
        lines = [f"Events: {len(events)}"]
        lines.extend(f"  {_event_text(event)}" for event in events)
        return lines

    def stop(self, command: ExecIdCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            service = _execution_service(settings, repository)
            stop = service.request_stop_execution(command.execution_id)
        return [f"Stop requested: stop_id={stop.stop_id} execution_id={command.execution_id}"]

    def delete(self, command: ExecIdCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            _execution_service(settings, repository).delete_execution(command.execution_id)
        return [f"Execution deleted: {command.execution_id}"]

    def resume(self, command: ExecIdCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            recovery = RecoveryService(_scheduler(settings, repository))
            execution = recovery.resume(command.execution_id)
        return _execution_lines(execution)

    def retry(self, command: ExecIdCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            recovery = RecoveryService(_scheduler(settings, repository))
            execution = recovery.retry_failed(command.execution_id)
        return _execution_lines(execution)

    def redo(self, command: ExecRedoCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            recovery = RecoveryService(_scheduler(settings, repository))
            step = recovery.redo_step(
                command.execution_id,
                command.task_id,
                provider=command.provider,
                model=command.model,
            )
            execution = repository.get_execution(command.execution_id)
        return [
            f"Step redone: task_id={step.task_id} status={step.status.value} "
            f"provider={step.provider or '-'} model={step.model or '-'} "
            f"error={step.error or '-'}",
            *_execution_lines(execution),
        ]


class CostCliController:
    """Planning vs execution cost reports."""

    def execution(self, command: CostTargetCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            costs = CostAccountant(repository).execution_costs(command.target_id)

        if command.output_format == "json":
            return [
                json.dumps(
                    {
                        "execution_id": costs.execution_id,
                        "graph_id": costs.graph_id,
                        "planning": _line_dict(costs.planning),
                        "execution": _line_dict(costs.execution),
                        "synthesis": _line_dict(costs.synthesis),
                        "total": _line_dict(costs.total),
                        "steps": [
                            {
                                "task_id": step.task_id,
                                "status": step.status.value,
                                "provider": step.provider,
                                "model": step.model,
                                **_line_dict(step.line),
                            }
                            for step in costs.steps
                        ],
                    },
                    indent=2,
                    ensure_ascii=False,
                ),
            ]
        lines = [
            f"Execution costs: {costs.execution_id}",
            f"  planning: {_line_text(costs.planning)}",
            f"  execution: {_line_text(costs.execution)}",
            f"  synthesis: {_line_text(costs.synthesis)}",
            f"  total: {_line_text(costs.total)}",
        ]
        for step in costs.steps:
            lines.append(
                f"  [{step.task_id}] {step.status.value} "
                f"provider={step.provider or '-'} model={step.model or '-'} "
                f"{_line_text(step.line)}",
            )
        return lines

    def graph(self, command: CostTargetCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            costs = CostAccountant(repository).graph_costs(command.target_id)

        if command.output_format == "json":
            return [
                json.dumps(
                    {
                        "graph_id": costs.graph_id,
                        "executions": costs.executions,
                        "planning": _line_dict(costs.planning),
                        "execution": _line_dict(costs.execution),
                        "total": _line_dict(costs.total),
                    },
                    indent=2,
                    ensure_ascii=False,
                ),
            ]
        return [
            f"Graph costs: {costs.graph_id} executions={costs.executions}",
            f"  planning: {_line_text(costs.planning)}",
            f"  execution: {_line_text(costs.execution)}",
            f"  total: {_line_text(costs.total)}",
        ]

    def summary(self, command: CostSummaryCommand) -> list[str]:
        settings = _settings(command.db_path)
        group_by = GroupBy(command.group_by.strip().lower())
        with _repository(settings) as repository:
            accountant = CostAccountant(repository, window_days=settings.costs.window_days)
            start = None
            if command.days is not None:
                start = repository.clock.now() - timedelta(days=command.days)
            summary = accountant.cost_summary(from_=start, group_by=group_by)

        if command.output_format == "json":
            return [
                json.dumps(
                    {
                        "from": summary.start.isoformat(),
                        "to": summary.end.isoformat(),
                        "group_by": summary.group_by.value,
                        "buckets": [
                            {
                                "key": bucket.key,
                                "executions": bucket.executions,
                                "planning": _line_dict(bucket.planning),
                                "execution": _line_dict(bucket.execution),
                                "total": _line_dict(bucket.total),
                            }
                            for bucket in summary.buckets
                        ],
                        "total": _line_dict(summary.total),
                    },
                    indent=2,
                    ensure_ascii=False,
                ),
            ]
        lines = [
            f"Cost summary: buckets={len(summary.buckets)} group_by={summary.group_by.value}",
            f"window={summary.start.isoformat()} .. {summary.end.isoformat()}",
        ]
        for bucket in summary.buckets:
            lines.append(
                f"  {bucket.key}: executions={bucket.executions} "
                f"planning_usd={bucket.planning.cost_usd:.6f} "
                f"execution_usd={bucket.execution.cost_usd:.6f} "
                f"{_line_text(bucket.total)}",
            )
        lines.append(f"Total: {_line_text(summary.total)}")
        return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _file_goal(decomposer: StaticDecomposer, path: Path) -> str:
    payload = decomposer.payload
    return str(payload.get("goal") or payload.get("title") or path.stem)


def _scheduler(
    settings: Settings,
    repository: ExecutionRepository,
    *,
    fail_tools: tuple[str, ...] = (),
) -> DagScheduler:
    tools: dict[str, ToolExecutor] = {WILDCARD: EchoToolExecutor()}
    for name in fail_tools:
        tools[name] = FailingToolExecutor()
    runner = DispatchingStepRunner(
        tools=tools,
        agents={WILDCARD: EchoInferenceExecutor()},
        dependency_result_max_chars=settings.engine.dependency_result_max_chars,
        pricing=settings.costs.pricing,
    )
    return DagScheduler(
        repository,
        StopRequestStore(repository.engine, clock=repository.clock),
        runner,
        max_concurrency=settings.engine.max_concurrency,
        clock=repository.clock,
        events=EventEmitter(repository, clock=repository.clock),
        synthesizer=EchoSynthesizer(),
    )


def _execution_service(
    settings: Settings,
    repository: ExecutionRepository,
    *,
    fail_tools: tuple[str, ...] = (),
) -> ExecutionService:
    scheduler = _scheduler(settings, repository, fail_tools=fail_tools)
    return ExecutionService(repository, scheduler.stop_requests, scheduler)


def _execution_lines(execution: ExecutionView) -> list[str]:
    counters = execution.counters
    lines = [
        f"Execution: {execution.execution_id}",
        f"Graph: {execution.graph_id or '-'}",
        f"Intent: {execution.primary_intent or '-'}",
        f"Status: {execution.status.value}",
        f"Tasks: total={counters.total} completed={counters.completed} "
        f"failed={counters.failed} waiting={counters.waiting}",
        f"Retries: {execution.retry_count}",
        f"Usage: {_line_text(CostLine(execution.usage, execution.total_cost_usd))}",
    ]
    if execution.suspended_reason:
        lines.append(f"Suspended: {execution.suspended_reason}")
    if execution.final_result:
        lines.append(f"Result: {execution.final_result}")
    return lines


def _event_text(event: ExecutionEvent) -> str:
    parts = [event.timestamp.isoformat(), event.type.value]
    if event.step_index is not None:
        parts.append(f"step={event.step_index}")
    if event.data:
        parts.append(json.dumps(event.data, sort_keys=True, ensure_ascii=False))
    if event.error:
        parts.append(f"error={event.error}")
    return " ".join(parts)


def _line_dict(line: CostLine) -> dict[str, Any]:
    return {**line.usage.to_dict(), "cost_usd": line.cost_usd}


def _line_text(line: CostLine) -> str:
    usage = line.usage
    return (
        f"prompt_tokens={usage.prompt_tokens if usage.prompt_tokens is not None else '-'} "
        f"completion_tokens={usage.completion_tokens if usage.completion_tokens is not None else '-'} "
        f"total_tokens={usage.effective_total() if not usage.is_empty else '-'} "
        f"cost_usd={line.cost_usd:.6f}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[ExecutionRepository]:
    repository = ExecutionRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.storage.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
