"""CLI entrypoint for taskweave."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from taskweave import __version__
from taskweave.engine.controllers import (
    CostCliController,
    CostSummaryCommand,
    CostTargetCommand,
    ExecEventsCommand,
    ExecIdCommand,
    ExecListCommand,
    ExecRedoCommand,
    ExecRunCommand,
    ExecRunFileCommand,
    ExecutionCliController,
    GraphCliController,
    GraphFileCommand,
    GraphIdCommand,
    GraphListCommand,
    GraphScheduleCommand,
)
from taskweave.engine.errors import TaskweaveError

click.rich_click.USE_MARKDOWN = True
GRAPH_CONTROLLER = GraphCliController()
EXECUTION_CONTROLLER = ExecutionCliController()
COST_CONTROLLER = CostCliController()

GRAPH_STATUSES = ("planning", "ready", "clarification_required", "failed", "cancelled")
EXECUTION_STATUSES = ("pending", "running", "waiting", "completed", "failed", "partial", "suspended")

T = TypeVar("T")


@click.group()
@click.version_option(version=__version__, prog_name="taskweave")
def taskweave() -> None:
    """Task graph execution engine CLI."""

    level = os.getenv("TASKWEAVE_LOG_LEVEL", "WARNING").strip().upper() or "WARNING"
    if level not in logging.getLevelNamesMapping():
        raise click.ClickException(f"Invalid TASKWEAVE_LOG_LEVEL: {level!r}")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@taskweave.group()
def graph() -> None:
    """Task graph commands."""


@graph.command("validate")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def graph_validate(path: Path) -> None:
    """Validate a JSON graph file without persisting it."""

    _emit_lines(_guard(lambda: GRAPH_CONTROLLER.validate(GraphFileCommand(db_path=None, path=path))))


@graph.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def graph_create(db_path: Path | None, path: Path) -> None:
    """Validate a JSON graph file and persist it as a ready graph."""

    _emit_lines(_guard(lambda: GRAPH_CONTROLLER.create(GraphFileCommand(db_path=db_path, path=path))))


@graph.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--status", type=click.Choice(GRAPH_STATUSES), default=None, help="Status filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of graphs to print.",
)
def graph_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List task graphs, newest first."""

    _emit_lines(
        _guard(
            lambda: GRAPH_CONTROLLER.list_graphs(
                GraphListCommand(db_path=db_path, status=status, limit=limit),
            ),
        ),
    )


@graph.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("graph_id")
def graph_show(db_path: Path | None, graph_id: str) -> None:
    """Show one graph with its templates."""

    _emit_lines(
        _guard(lambda: GRAPH_CONTROLLER.show(GraphIdCommand(db_path=db_path, graph_id=graph_id))),
    )


@graph.command("schedule")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--cron", default=None, help="5-field cron expression. Omit to clear.")
@click.option("--timezone", default=None, help="IANA timezone, default UTC.")
@click.option(
    "--active/--inactive",
    default=True,
    show_default=True,
    help="Whether the schedule is active.",
)
@click.argument("graph_id")
def graph_schedule(
    db_path: Path | None,
    cron: str | None,
    timezone: str | None,
    active: bool,
    graph_id: str,
) -> None:
    """Store recurrence metadata for a graph."""

    _emit_lines(
        _guard(
            lambda: GRAPH_CONTROLLER.schedule(
                GraphScheduleCommand(
                    db_path=db_path,
                    graph_id=graph_id,
                    cron=cron,
                    timezone=timezone,
                    active=active,
                ),
            ),
        ),
    )


@graph.command("stop")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("graph_id")
def graph_stop(db_path: Path | None, graph_id: str) -> None:
    """Request a cooperative stop for every execution of a graph."""

    _emit_lines(
        _guard(lambda: GRAPH_CONTROLLER.stop(GraphIdCommand(db_path=db_path, graph_id=graph_id))),
    )


@graph.command("delete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("graph_id")
def graph_delete(db_path: Path | None, graph_id: str) -> None:
    """Delete a graph that has no executions."""

    _emit_lines(
        _guard(lambda: GRAPH_CONTROLLER.delete(GraphIdCommand(db_path=db_path, graph_id=graph_id))),
    )


@taskweave.group("exec")
def exec_group() -> None:
    """Execution commands."""


@exec_group.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--request", default=None, help="Request text; defaults to the graph goal.")
@click.option(
    "--fail-tool",
    "fail_tools",
    multiple=True,
    help="Tool name that should fail. Can be repeated.",
)
@click.argument("graph_id")
def exec_run(
    db_path: Path | None,
    request: str | None,
    fail_tools: tuple[str, ...],
    graph_id: str,
) -> None:
    """Run a graph with the local echo collaborators."""

    _emit_lines(
        _guard(
            lambda: EXECUTION_CONTROLLER.run(
                ExecRunCommand(
                    db_path=db_path,
                    graph_id=graph_id,
                    request=request,
                    fail_tools=fail_tools,
                ),
            ),
        ),
    )


@exec_group.command("run-file")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--save-graph/--no-save-graph",
    default=True,
    show_default=True,
    help="Persist the plan as a graph before running it.",
)
@click.option(
    "--fail-tool",
    "fail_tools",
    multiple=True,
    help="Tool name that should fail. Can be repeated.",
)
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def exec_run_file(
    db_path: Path | None,
    save_graph: bool,
    fail_tools: tuple[str, ...],
    path: Path,
) -> None:
    """Plan a JSON graph file and run it immediately."""

    _emit_lines(
        _guard(
            lambda: EXECUTION_CONTROLLER.run_file(
                ExecRunFileCommand(
                    db_path=db_path,
                    path=path,
                    save_graph=save_graph,
                    fail_tools=fail_tools,
                ),
            ),
        ),
    )


@exec_group.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--graph-id", default=None, help="Only executions of this graph.")
@click.option("--status", type=click.Choice(EXECUTION_STATUSES), default=None, help="Status filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of executions to print.",
)
def exec_list(db_path: Path | None, graph_id: str | None, status: str | None, limit: int) -> None:
    """List executions, newest first."""

    _emit_lines(
        _guard(
            lambda: EXECUTION_CONTROLLER.list_executions(
                ExecListCommand(db_path=db_path, graph_id=graph_id, status=status, limit=limit),
            ),
        ),
    )


@exec_group.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("execution_id")
def exec_inspect(db_path: Path | None, execution_id: str) -> None:
    """Show an execution with its sub-steps."""

    _emit_lines(
        _guard(
            lambda: EXECUTION_CONTROLLER.inspect(
                ExecIdCommand(db_path=db_path, execution_id=execution_id),
            ),
        ),
    )


@exec_group.command("events")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(("table", "json")),
    default="table",
    show_default=True,
    help="Output format.",
)
@click.option(
    "--follow/--no-follow",
    default=False,
    show_default=True,
    help="Poll for new events until the execution finishes or pauses.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop following after this many seconds.",
)
@click.argument("execution_id")
def exec_events(
    db_path: Path | None,
    output_format: str,
    follow: bool,
    timeout_seconds: float | None,
    execution_id: str,
) -> None:
    """Replay lifecycle events of an execution."""

    _emit_lines(
        _guard(
            lambda: EXECUTION_CONTROLLER.events(
                ExecEventsCommand(
                    db_path=db_path,
                    execution_id=execution_id,
                    output_format=output_format,
                    follow=follow,
                    timeout_seconds=timeout_seconds,
                ),
            ),
        ),
    )


@exec_group.command("stop")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("execution_id")
def exec_stop(db_path: Path | None, execution_id: str) -> None:
    """Request a cooperative stop of one execution."""

    _emit_lines(
        _guard(
            lambda: EXECUTION_CONTROLLER.stop(
                ExecIdCommand(db_path=db_path, execution_id=execution_id),
            ),
        ),
    )


@exec_group.command("delete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("execution_id")
def exec_delete(db_path: Path | None, execution_id: str) -> None:
    """Delete an execution with its steps and events."""

    _emit_lines(
        _guard(
            lambda: EXECUTION_CONTROLLER.delete(
                ExecIdCommand(db_path=db_path, execution_id=execution_id),
            ),
        ),
    )


@exec_group.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("execution_id")
def exec_resume(db_path: Path | None, execution_id: str) -> None:
    """Resume a suspended or waiting execution."""

    _emit_lines(
        _guard(
            lambda: EXECUTION_CONTROLLER.resume(
                ExecIdCommand(db_path=db_path, execution_id=execution_id),
            ),
        ),
    )


@exec_group.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("execution_id")
def exec_retry(db_path: Path | None, execution_id: str) -> None:
    """Rerun the failed steps of a partial or failed execution."""

    _emit_lines(
        _guard(
            lambda: EXECUTION_CONTROLLER.retry(
                ExecIdCommand(db_path=db_path, execution_id=execution_id),
            ),
        ),
    )


@exec_group.command("redo")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--provider", default=None, help="Provider override for the rerun.")
@click.option("--model", default=None, help="Model override for the rerun.")
@click.argument("execution_id")
@click.argument("task_id")
def exec_redo(  # noqa: PLR0913
    db_path: Path | None,
    provider: str | None,
    model: str | None,
    execution_id: str,
    task_id: str,
) -> None:
    """Re-execute one finished step in place."""

    _emit_lines(
        _guard(
            lambda: EXECUTION_CONTROLLER.redo(
                ExecRedoCommand(
                    db_path=db_path,
                    execution_id=execution_id,
                    task_id=task_id,
                    provider=provider,
                    model=model,
                ),
            ),
        ),
    )


@taskweave.group()
def costs() -> None:
    """Cost and usage reports."""


_FORMAT_OPTION = click.option(
    "--format",
    "output_format",
    type=click.Choice(("table", "json")),
    default="table",
    show_default=True,
    help="Output format.",
)


@costs.command("execution")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@_FORMAT_OPTION
@click.argument("execution_id")
def costs_execution(db_path: Path | None, output_format: str, execution_id: str) -> None:
    """Planning vs execution cost of one execution, per step."""

    _emit_lines(
        _guard(
            lambda: COST_CONTROLLER.execution(
                CostTargetCommand(
                    db_path=db_path,
                    target_id=execution_id,
                    output_format=output_format,
                ),
            ),
        ),
    )


@costs.command("graph")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@_FORMAT_OPTION
@click.argument("graph_id")
def costs_graph(db_path: Path | None, output_format: str, graph_id: str) -> None:
    """Planning cost plus the sum over a graph's executions."""

    _emit_lines(
        _guard(
            lambda: COST_CONTROLLER.graph(
                CostTargetCommand(db_path=db_path, target_id=graph_id, output_format=output_format),
            ),
        ),
    )


@costs.command("summary")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--group-by",
    type=click.Choice(("day", "week", "month")),
    default="day",
    show_default=True,
    help="Calendar bucket size.",
)
@click.option(
    "--days",
    type=click.IntRange(min=1),
    default=None,
    help="Window length; defaults to TASKWEAVE_COST_WINDOW_DAYS.",
)
@_FORMAT_OPTION
def costs_summary(
    db_path: Path | None,
    group_by: str,
    days: int | None,
    output_format: str,
) -> None:
    """Bucketed planning and execution costs over a window."""

    _emit_lines(
        _guard(
            lambda: COST_CONTROLLER.summary(
                CostSummaryCommand(
                    db_path=db_path,
                    group_by=group_by,
                    days=days,
                    output_format=output_format,
                ),
            ),
        ),
    )


def _guard(action: Callable[[], T]) -> T:
    try:
        return action()
    except (TaskweaveError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskweave()
