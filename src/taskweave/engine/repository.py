"""Persistence facade for task graphs, executions, sub-steps and events."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import and_, exists, func, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from taskweave.engine.backend.base import CostClock, StepOutcome, SystemClock
from taskweave.engine.errors import AggregationError, NotFoundError
from taskweave.engine.ids import new_execution_id, new_graph_id, new_sub_step_id
from taskweave.engine.models import (
    REDOABLE_EXECUTION_STATUSES,
    ExecutionCounters,
    ExecutionDetails,
    ExecutionEvent,
    ExecutionStatus,
    ExecutionView,
    EventType,
    GraphCreate,
    GraphStatus,
    GraphView,
    PlanningAttempt,
    StepReplacement,
    StepStatus,
    SubStepView,
    TemplateSpec,
    Usage,
    derive_execution_status,
)
from taskweave.storage.alembic_runner import upgrade_head
from taskweave.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
)
from taskweave.storage.sqlmodel_models import (
    Execution,
    ExecutionEventRow,
    SubStep,
    TaskGraph,
)

logger = logging.getLogger(__name__)

_FINISHED_STEP_STATUSES = (StepStatus.COMPLETED.value, StepStatus.FAILED.value)

StatusEventFactory = Callable[[ExecutionStatus, ExecutionStatus], ExecutionEvent]
AggregateHook = Callable[[Session, ExecutionCounters], list[ExecutionEvent]]


class ExecutionRepository:
    """Execution store backed by SQLModel + SQLite.

    Every step result write recomputes the execution counters and usage
    totals in the same transaction, together with its lifecycle events.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        clock: CostClock | None = None,
    ) -> None:
        self.db_path = db_path
        self.clock: CostClock = clock or SystemClock()
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Graphs

    def create_graph(self, payload: GraphCreate) -> GraphView:
        now = to_db_datetime(self.clock.now())
        usage = sum((attempt.usage for attempt in payload.planning_attempts), Usage())
        cost = sum(attempt.cost_usd for attempt in payload.planning_attempts)
        with Session(self.engine) as session:
            row = TaskGraph(
                graph_id=new_graph_id(),
                title=payload.title,
                goal=payload.goal,
                primary_intent=payload.primary_intent,
                status=payload.status.value,
                clarification_query=payload.clarification_query,
                templates_json=json.dumps(
                    [template.to_dict() for template in payload.templates],
                    ensure_ascii=False,
                ),
                planning_prompt_tokens=usage.prompt_tokens or 0,
                planning_completion_tokens=usage.completion_tokens or 0,
                planning_total_tokens=usage.effective_total(),
                planning_cost_usd=cost,
                planning_attempts_json=(
                    json.dumps([attempt.to_dict() for attempt in payload.planning_attempts])
                    if payload.planning_attempts
                    else None
                ),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("Graph persisted: graph_id=%s status=%s", row.graph_id, row.status)
            return _to_graph_view(row)

    def get_graph(self, graph_id: str) -> GraphView:
        with Session(self.engine) as session:
            return _to_graph_view(self._graph_row(session, graph_id))

    def list_graphs(self, *, status: GraphStatus | None = None, limit: int = 50) -> list[GraphView]:
        with Session(self.engine) as session:
            statement = select(TaskGraph).order_by(col(TaskGraph.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(TaskGraph.status == status.value)
            rows = session.exec(statement).all()
        return [_to_graph_view(row) for row in rows]

    def list_scheduled_graphs(self) -> list[GraphView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskGraph)
                .where(
                    col(TaskGraph.schedule_active).is_(True),
                    col(TaskGraph.cron_schedule).is_not(None),
                    TaskGraph.status == GraphStatus.READY.value,
                )
                .order_by(col(TaskGraph.created_at).asc()),
            ).all()
        return [_to_graph_view(row) for row in rows]

    def list_graphs_created_between(self, *, start: datetime, end: datetime) -> list[GraphView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskGraph)
                .where(
                    TaskGraph.created_at >= to_db_datetime(start),
                    TaskGraph.created_at < to_db_datetime(end),
                )
                .order_by(col(TaskGraph.created_at).asc()),
            ).all()
        return [_to_graph_view(row) for row in rows]

    def update_graph_status(
        self,
        graph_id: str,
        *,
        status: GraphStatus,
        expected: Iterable[GraphStatus] | None = None,
    ) -> GraphView:
        with Session(self.engine) as session:
            row = self._graph_row(session, graph_id)
            previous = GraphStatus(row.status)
            if expected is not None and previous not in set(expected):
                raise AggregationError(
                    f"Graph {graph_id} is {previous.value}, cannot move to {status.value}.",
                )
            row.status = status.value
            row.updated_at = to_db_datetime(self.clock.now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_graph_view(row)

    def set_graph_schedule(
        self,
        graph_id: str,
        *,
        cron_schedule: str | None,
        timezone: str | None,
        active: bool,
    ) -> GraphView:
        with Session(self.engine) as session:
            row = self._graph_row(session, graph_id)
            row.cron_schedule = cron_schedule
            row.timezone = timezone
            row.schedule_active = active
            row.updated_at = to_db_datetime(self.clock.now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_graph_view(row)

    def mark_graph_run(self, graph_id: str) -> None:
        with Session(self.engine) as session:
            row = self._graph_row(session, graph_id)
            now = to_db_datetime(self.clock.now())
            row.last_run_at = now
            row.updated_at = now
            session.add(row)
            session.commit()

    # Executions

    def create_execution(
        self,
        *,
        templates: Sequence[TemplateSpec],
        original_request: str,
        graph_id: str | None = None,
        primary_intent: str | None = None,
    ) -> ExecutionView:
        """Create a pending execution with one pending sub-step per template."""

        now = to_db_datetime(self.clock.now())
        execution_id = new_execution_id()
        with Session(self.engine) as session:
            if graph_id is not None:
                self._graph_row(session, graph_id)
            row = Execution(
                execution_id=execution_id,
                graph_id=graph_id,
                original_request=original_request,
                primary_intent=primary_intent,
                status=ExecutionStatus.PENDING.value,
                total_tasks=len(templates),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            # Executions must exist before their sub-steps reference them.
            session.flush()
            for position, template in enumerate(templates):
                session.add(
                    SubStep(
                        sub_step_id=new_sub_step_id(),
                        execution_id=execution_id,
                        task_id=template.task_id,
                        position=position,
                        description=template.description,
                        thought=template.thought,
                        action_kind=template.action_kind.value,
                        target_name=template.target_name,
                        params_json=json.dumps(template.params, ensure_ascii=False),
                        expected_output=template.expected_output,
                        dependencies_json=json.dumps(list(template.dependencies)),
                        status=StepStatus.PENDING.value,
                        created_at=now,
                        updated_at=now,
                    ),
                )
            session.commit()
            session.refresh(row)
            return _to_execution_view(row)

    def get_execution(self, execution_id: str) -> ExecutionView:
        with Session(self.engine) as session:
            return _to_execution_view(self._execution_row(session, execution_id))

    def get_execution_details(self, execution_id: str) -> ExecutionDetails:
        with Session(self.engine) as session:
            execution = _to_execution_view(self._execution_row(session, execution_id))
            steps = [_to_step_view(row) for row in self._step_rows(session, execution_id)]
        return ExecutionDetails(execution=execution, steps=steps)

    def list_steps(self, execution_id: str) -> list[SubStepView]:
        with Session(self.engine) as session:
            return [_to_step_view(row) for row in self._step_rows(session, execution_id)]

    def get_step(self, execution_id: str, task_id: str) -> SubStepView:
        with Session(self.engine) as session:
            return _to_step_view(self._step_row(session, execution_id, task_id))

    def list_executions(
        self,
        *,
        graph_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[ExecutionView]:
        with Session(self.engine) as session:
            statement = select(Execution).order_by(
                col(Execution.created_at).desc(),
                col(Execution.execution_id).asc(),
            )
            if graph_id is not None:
                statement = statement.where(Execution.graph_id == graph_id)
            if status is not None:
                statement = statement.where(Execution.status == status.value)
            if offset:
                statement = statement.offset(offset)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_execution_view(row) for row in rows]

    def list_executions_between(self, *, start: datetime, end: datetime) -> list[ExecutionView]:
        """Executions whose bucketing timestamp falls in ``[start, end)``."""

        bucket_ts = func.coalesce(
            col(Execution.completed_at),
            col(Execution.started_at),
            col(Execution.created_at),
        )
        with Session(self.engine) as session:
            rows = session.exec(
                select(Execution)
                .where(
                    bucket_ts >= to_db_datetime(start),
                    bucket_ts < to_db_datetime(end),
                )
                .order_by(bucket_ts.asc()),
            ).all()
        return [_to_execution_view(row) for row in rows]

    def start_execution(self, execution_id: str, *, events: Sequence[ExecutionEvent] = ()) -> bool:
        """Move a pending execution to running and stamp ``started_at``.

        A running execution that never started (suspended while pending and
        then resumed) is stamped too.
        """

        now = to_db_datetime(self.clock.now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == execution_id,
                    or_(
                        col(Execution.status) == ExecutionStatus.PENDING.value,
                        and_(
                            col(Execution.status) == ExecutionStatus.RUNNING.value,
                            col(Execution.started_at).is_(None),
                        ),
                    ),
                )
                .values(
                    status=ExecutionStatus.RUNNING.value,
                    started_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._commit_with_events(session, events)
            return True

    def mark_step_running(self, execution_id: str, task_id: str) -> bool:
        now = to_db_datetime(self.clock.now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SubStep)
                .where(
                    col(SubStep.execution_id) == execution_id,
                    col(SubStep.task_id) == task_id,
                    col(SubStep.status) == StepStatus.PENDING.value,
                )
                .values(
                    status=StepStatus.RUNNING.value,
                    started_at=now,
                    completed_at=None,
                    duration_ms=None,
                    error=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def record_step_outcome(
        self,
        execution_id: str,
        task_id: str,
        outcome: StepOutcome,
        *,
        events: Sequence[ExecutionEvent] = (),
    ) -> ExecutionCounters:
        """Persist a running step's outcome and its aggregate contribution atomically."""

        status = StepStatus.COMPLETED if outcome.success else StepStatus.FAILED
        return self._write_step_result(
            execution_id,
            task_id,
            outcome,
            status=status,
            expected=(StepStatus.RUNNING,),
            events=events,
        )

    def record_step_waiting(
        self,
        execution_id: str,
        task_id: str,
        *,
        reason: str,
        events: Sequence[ExecutionEvent] = (),
    ) -> ExecutionCounters:
        return self._write_step_result(
            execution_id,
            task_id,
            StepOutcome(success=False, error=reason),
            status=StepStatus.WAITING,
            expected=(StepStatus.RUNNING,),
            events=events,
        )

    def replace_step_result(
        self,
        execution_id: str,
        task_id: str,
        outcome: StepOutcome,
        *,
        events: Sequence[ExecutionEvent] = (),
        status_event: StatusEventFactory,
    ) -> StepReplacement:
        """Overwrite a finished step's result in place (redo).

        The execution status is re-derived from the new counters in the same
        transaction; when it flips, ``status_event(new, previous)`` is
        committed alongside.
        """

        transition: dict[str, ExecutionStatus] = {}
        committed: list[ExecutionEvent] = list(events)

        def _rederive(session: Session, counters: ExecutionCounters) -> list[ExecutionEvent]:
            row = self._execution_row(session, execution_id)
            previous = ExecutionStatus(row.status)
            derived = derive_execution_status(counters)
            transition["previous"] = previous
            transition["status"] = previous
            if derived is previous or derived not in REDOABLE_EXECUTION_STATUSES:
                return []
            row.status = derived.value
            session.add(row)
            transition["status"] = derived
            event = status_event(derived, previous)
            committed.append(event)
            return [event]

        counters = self._write_step_result(
            execution_id,
            task_id,
            outcome,
            status=StepStatus.COMPLETED if outcome.success else StepStatus.FAILED,
            expected=(StepStatus.COMPLETED, StepStatus.FAILED),
            events=events,
            restart_clock=True,
            after_aggregates=_rederive,
        )
        return StepReplacement(
            counters=counters,
            previous_status=transition["previous"],
            status=transition["status"],
            events=committed,
        )

    def propagate_failures(
        self,
        execution_id: str,
        failures: Sequence[tuple[str, str]],
        *,
        events: Sequence[ExecutionEvent] = (),
    ) -> ExecutionCounters:
        """Mark never-attempted steps failed because a dependency failed."""

        now = to_db_datetime(self.clock.now())
        with Session(self.engine) as session:
            try:
                for task_id, error in failures:
                    result = session.exec(
                        sa_update(SubStep)
                        .where(
                            col(SubStep.execution_id) == execution_id,
                            col(SubStep.task_id) == task_id,
                            col(SubStep.status).in_(
                                (StepStatus.PENDING.value, StepStatus.WAITING.value),
                            ),
                        )
                        .values(
                            status=StepStatus.FAILED.value,
                            propagated=True,
                            error=error,
                            completed_at=now,
                            updated_at=now,
                        ),
                    )
                    if result.rowcount != 1:
                        raise AggregationError(
                            f"Step {task_id} changed concurrently during failure propagation.",
                        )
                counters = self._apply_aggregates(session, execution_id)
                self._commit_with_events(session, events)
            except SQLAlchemyError as error:
                session.rollback()
                raise AggregationError(f"Failed to propagate failures: {error}") from error
            except AggregationError:
                session.rollback()
                raise
        return counters

    def suspend_execution(
        self,
        execution_id: str,
        *,
        reason: str,
        expected: Iterable[ExecutionStatus],
        events: Sequence[ExecutionEvent] = (),
    ) -> bool:
        now = to_db_datetime(self.clock.now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == execution_id,
                    col(Execution.status).in_([status.value for status in expected]),
                )
                .values(
                    status=ExecutionStatus.SUSPENDED.value,
                    suspended_reason=reason,
                    suspended_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            # Anything still marked running did not report back; it reruns on resume.
            session.exec(
                sa_update(SubStep)
                .where(
                    col(SubStep.execution_id) == execution_id,
                    col(SubStep.status) == StepStatus.RUNNING.value,
                )
                .values(status=StepStatus.PENDING.value, started_at=None, updated_at=now),
            )
            self._apply_aggregates(session, execution_id)
            self._commit_with_events(session, events)
            logger.info("Execution suspended: execution_id=%s reason=%s", execution_id, reason)
            return True

    def set_execution_waiting(
        self,
        execution_id: str,
        *,
        events: Sequence[ExecutionEvent] = (),
    ) -> bool:
        now = to_db_datetime(self.clock.now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == execution_id,
                    col(Execution.status) == ExecutionStatus.RUNNING.value,
                )
                .values(status=ExecutionStatus.WAITING.value, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._commit_with_events(session, events)
            return True

    def reopen_execution(
        self,
        execution_id: str,
        *,
        expected: Iterable[ExecutionStatus],
        reset_statuses: Iterable[StepStatus],
        clear_results: bool,
        events: Sequence[ExecutionEvent] = (),
    ) -> bool:
        """Move an execution back to running for resume or retry.

        Increments ``retry_count``, sets ``last_retry_at``, clears suspension
        and completion fields, and resets the given step statuses to pending.
        """

        now = to_db_datetime(self.clock.now())
        step_values: dict[str, Any] = {
            "status": StepStatus.PENDING.value,
            "started_at": None,
            "updated_at": now,
        }
        if clear_results:
            step_values.update(
                completed_at=None,
                duration_ms=None,
                result_json=None,
                error=None,
                prompt_tokens=None,
                completion_tokens=None,
                total_tokens=None,
                cost_usd=0.0,
                provider=None,
                model=None,
                generation_stats_json=None,
                propagated=False,
            )
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == execution_id,
                    col(Execution.status).in_([status.value for status in expected]),
                )
                .values(
                    status=ExecutionStatus.RUNNING.value,
                    retry_count=Execution.retry_count + 1,
                    last_retry_at=now,
                    suspended_reason=None,
                    suspended_at=None,
                    completed_at=None,
                    duration_ms=None,
                    final_result=None,
                    synthesis_result=None,
                    synthesis_prompt_tokens=None,
                    synthesis_completion_tokens=None,
                    synthesis_total_tokens=None,
                    synthesis_cost_usd=0.0,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.exec(
                sa_update(SubStep)
                .where(
                    col(SubStep.execution_id) == execution_id,
                    col(SubStep.status).in_([status.value for status in reset_statuses]),
                )
                .values(**step_values),
            )
            self._apply_aggregates(session, execution_id)
            self._commit_with_events(session, events)
            return True

    def finish_execution(  # noqa: PLR0913
        self,
        execution_id: str,
        *,
        status: ExecutionStatus,
        final_result: str | None,
        synthesis_result: str | None = None,
        synthesis_usage: Usage | None = None,
        synthesis_cost_usd: float = 0.0,
        expected: Iterable[ExecutionStatus] = (ExecutionStatus.RUNNING,),
        events: Sequence[ExecutionEvent] = (),
    ) -> ExecutionView:
        now = self.clock.now()
        usage = synthesis_usage or Usage()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == execution_id,
                    col(Execution.status).in_([value.value for value in expected]),
                )
                .values(
                    status=status.value,
                    completed_at=to_db_datetime(now),
                    final_result=final_result,
                    synthesis_result=synthesis_result,
                    synthesis_prompt_tokens=usage.prompt_tokens,
                    synthesis_completion_tokens=usage.completion_tokens,
                    synthesis_total_tokens=None if usage.is_empty else usage.effective_total(),
                    synthesis_cost_usd=synthesis_cost_usd,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise AggregationError(
                    f"Execution {execution_id} changed concurrently before it could finish.",
                )
            self._apply_aggregates(session, execution_id)
            row = self._execution_row(session, execution_id)
            if row.started_at is not None:
                row.duration_ms = _duration_ms(row.started_at, now)
                session.add(row)
            self._commit_with_events(session, events)
            session.refresh(row)
            logger.info(
                "Execution finished: execution_id=%s status=%s completed=%d failed=%d total=%d",
                execution_id,
                status.value,
                row.completed_tasks,
                row.failed_tasks,
                row.total_tasks,
            )
            return _to_execution_view(row)

    def delete_execution(
        self,
        execution_id: str,
        *,
        protected: Iterable[ExecutionStatus] = (ExecutionStatus.RUNNING,),
    ) -> bool:
        """Delete an execution unless it is in a ``protected`` status.

        Sub-steps and events go with it through ``ON DELETE CASCADE``.
        """

        with Session(self.engine) as session:
            self._execution_row(session, execution_id)
            steps = len(self._step_rows(session, execution_id))
            result = session.exec(
                sa_delete(Execution).where(
                    col(Execution.execution_id) == execution_id,
                    col(Execution.status).not_in([status.value for status in protected]),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        logger.info("Execution deleted: execution_id=%s steps=%d", execution_id, steps)
        return True

    def delete_graph(self, graph_id: str) -> bool:
        """Delete a graph that no execution references; ``False`` otherwise."""

        with Session(self.engine) as session:
            self._graph_row(session, graph_id)
            result = session.exec(
                sa_delete(TaskGraph).where(
                    col(TaskGraph.graph_id) == graph_id,
                    ~exists().where(col(Execution.graph_id) == graph_id),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        logger.info("Graph deleted: graph_id=%s", graph_id)
        return True

    # Events

    def append_events(self, events: Sequence[ExecutionEvent]) -> None:
        with Session(self.engine) as session:
            self._commit_with_events(session, events)

    def list_events(self, execution_id: str, *, after_id: int = 0) -> list[ExecutionEvent]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionEventRow)
                .where(
                    ExecutionEventRow.execution_id == execution_id,
                    col(ExecutionEventRow.id) > after_id,
                )
                .order_by(col(ExecutionEventRow.id).asc()),
            ).all()
        return [_to_event(row) for row in rows]

    # Internals

    def _write_step_result(  # noqa: PLR0913
        self,
        execution_id: str,
        task_id: str,
        outcome: StepOutcome,
        *,
        status: StepStatus,
        expected: Sequence[StepStatus],
        events: Sequence[ExecutionEvent],
        restart_clock: bool = False,
        after_aggregates: AggregateHook | None = None,
    ) -> ExecutionCounters:
        now = self.clock.now()
        with Session(self.engine) as session:
            try:
                row = self._step_row(session, execution_id, task_id)
                started_at = now if restart_clock or row.started_at is None else row.started_at
                result = session.exec(
                    sa_update(SubStep)
                    .where(
                        col(SubStep.sub_step_id) == row.sub_step_id,
                        col(SubStep.status).in_([value.value for value in expected]),
                    )
                    .values(
                        status=status.value,
                        propagated=False,
                        started_at=to_db_datetime(started_at),
                        completed_at=(
                            to_db_datetime(now) if status is not StepStatus.WAITING else None
                        ),
                        duration_ms=_duration_ms(started_at, now),
                        result_json=_dump_result(outcome.output),
                        error=outcome.error if not outcome.success else None,
                        prompt_tokens=outcome.usage.prompt_tokens,
                        completion_tokens=outcome.usage.completion_tokens,
                        total_tokens=(
                            None if outcome.usage.is_empty else outcome.usage.effective_total()
                        ),
                        cost_usd=outcome.cost_usd,
                        provider=outcome.provider,
                        model=outcome.model,
                        generation_stats_json=(
                            json.dumps(outcome.generation_stats, default=str)
                            if outcome.generation_stats
                            else None
                        ),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    raise AggregationError(
                        f"Step {task_id} of {execution_id} changed concurrently; "
                        "result was not recorded.",
                    )
                counters = self._apply_aggregates(session, execution_id)
                extra = after_aggregates(session, counters) if after_aggregates else []
                self._commit_with_events(session, [*events, *extra])
            except SQLAlchemyError as error:
                session.rollback()
                raise AggregationError(
                    f"Failed to record result of step {task_id}: {error}",
                ) from error
            except AggregationError:
                session.rollback()
                raise
        return counters

    def _apply_aggregates(self, session: Session, execution_id: str) -> ExecutionCounters:
        """Recompute counters and usage totals from sub-step rows."""

        row = self._execution_row(session, execution_id)
        steps = self._step_rows(session, execution_id)
        counters = ExecutionCounters.from_statuses([StepStatus(step.status) for step in steps])
        usage = Usage()
        cost = 0.0
        for step in steps:
            if step.status not in _FINISHED_STEP_STATUSES:
                continue
            usage = usage + _row_usage(step.prompt_tokens, step.completion_tokens, step.total_tokens)
            cost += step.cost_usd or 0.0
        usage = usage + _row_usage(
            row.synthesis_prompt_tokens,
            row.synthesis_completion_tokens,
            row.synthesis_total_tokens,
        )
        cost += row.synthesis_cost_usd or 0.0

        row.total_tasks = counters.total
        row.completed_tasks = counters.completed
        row.failed_tasks = counters.failed
        row.waiting_tasks = counters.waiting
        row.prompt_tokens = usage.prompt_tokens or 0
        row.completion_tokens = usage.completion_tokens or 0
        row.total_tokens = 0 if usage.is_empty else usage.effective_total()
        row.total_cost_usd = cost
        row.updated_at = to_db_datetime(self.clock.now())
        session.add(row)
        return counters

    def _commit_with_events(self, session: Session, events: Sequence[ExecutionEvent]) -> None:
        rows = [
            ExecutionEventRow(
                execution_id=event.execution_id,
                event_type=event.type.value,
                step_index=event.step_index,
                data_json=(
                    json.dumps(event.data, ensure_ascii=False, sort_keys=True, default=str)
                    if event.data
                    else None
                ),
                error=event.error,
                created_at=to_db_datetime(event.timestamp),
            )
            for event in events
        ]
        for row in rows:
            session.add(row)
        session.commit()
        for event, row in zip(events, rows, strict=True):
            event.event_id = row.id

    def _graph_row(self, session: Session, graph_id: str) -> TaskGraph:
        row = session.exec(select(TaskGraph).where(TaskGraph.graph_id == graph_id)).one_or_none()
        if row is None:
            raise NotFoundError("Graph", graph_id)
        return row

    def _execution_row(self, session: Session, execution_id: str) -> Execution:
        row = session.exec(
            select(Execution).where(Execution.execution_id == execution_id),
        ).one_or_none()
        if row is None:
            raise NotFoundError("Execution", execution_id)
        return row

    def _step_row(self, session: Session, execution_id: str, task_id: str) -> SubStep:
        row = session.exec(
            select(SubStep).where(
                SubStep.execution_id == execution_id,
                SubStep.task_id == task_id,
            ),
        ).one_or_none()
        if row is None:
            raise NotFoundError("Step", f"{execution_id}/{task_id}")
        return row

    def _step_rows(self, session: Session, execution_id: str) -> Sequence[SubStep]:
        return session.exec(
            select(SubStep)
            .where(SubStep.execution_id == execution_id)
            .order_by(col(SubStep.position).asc()),
        ).all()


def _row_usage(prompt: int | None, completion: int | None, total: int | None) -> Usage:
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _duration_ms(started_at: datetime, finished_at: datetime) -> int:
    delta = to_utc_aware_datetime(finished_at) - to_utc_aware_datetime(started_at)
    return max(0, int(delta.total_seconds() * 1000))


def _dump_result(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def _load_json(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    return json.loads(raw)


def _to_graph_view(row: TaskGraph) -> GraphView:
    templates = [TemplateSpec.from_dict(item) for item in _load_json(row.templates_json, [])]
    attempts = [
        PlanningAttempt.from_dict(item) for item in _load_json(row.planning_attempts_json, [])
    ]
    return GraphView(
        graph_id=row.graph_id,
        title=row.title,
        goal=row.goal,
        primary_intent=row.primary_intent,
        status=GraphStatus(row.status),
        clarification_query=row.clarification_query,
        templates=templates,
        cron_schedule=row.cron_schedule,
        schedule_active=bool(row.schedule_active),
        timezone=row.timezone,
        last_run_at=optional_utc(row.last_run_at),
        planning_usage=Usage(
            prompt_tokens=row.planning_prompt_tokens,
            completion_tokens=row.planning_completion_tokens,
            total_tokens=row.planning_total_tokens,
        ),
        planning_cost_usd=row.planning_cost_usd,
        planning_attempts=attempts,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_execution_view(row: Execution) -> ExecutionView:
    return ExecutionView(
        execution_id=row.execution_id,
        graph_id=row.graph_id,
        original_request=row.original_request,
        primary_intent=row.primary_intent,
        status=ExecutionStatus(row.status),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        duration_ms=row.duration_ms,
        counters=ExecutionCounters(
            total=row.total_tasks,
            completed=row.completed_tasks,
            failed=row.failed_tasks,
            waiting=row.waiting_tasks,
        ),
        final_result=row.final_result,
        synthesis_result=row.synthesis_result,
        synthesis_usage=_row_usage(
            row.synthesis_prompt_tokens,
            row.synthesis_completion_tokens,
            row.synthesis_total_tokens,
        ),
        synthesis_cost_usd=row.synthesis_cost_usd,
        suspended_reason=row.suspended_reason,
        suspended_at=optional_utc(row.suspended_at),
        retry_count=row.retry_count,
        last_retry_at=optional_utc(row.last_retry_at),
        usage=Usage(
            prompt_tokens=row.prompt_tokens,
            completion_tokens=row.completion_tokens,
            total_tokens=row.total_tokens,
        ),
        total_cost_usd=row.total_cost_usd,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_step_view(row: SubStep) -> SubStepView:
    template = TemplateSpec.from_dict(
        {
            "id": row.task_id,
            "description": row.description,
            "thought": row.thought,
            "action_type": row.action_kind,
            "tool_or_prompt": {"name": row.target_name, "params": _load_json(row.params_json, {})},
            "expected_output": row.expected_output,
            "dependencies": _load_json(row.dependencies_json, []),
        },
    )
    return SubStepView(
        sub_step_id=row.sub_step_id,
        execution_id=row.execution_id,
        position=row.position,
        template=template,
        status=StepStatus(row.status),
        propagated=bool(row.propagated),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        duration_ms=row.duration_ms,
        result=_load_json(row.result_json, None),
        error=row.error,
        usage=_row_usage(row.prompt_tokens, row.completion_tokens, row.total_tokens),
        cost_usd=row.cost_usd,
        provider=row.provider,
        model=row.model,
        generation_stats=_load_json(row.generation_stats_json, None),
    )


def _to_event(row: ExecutionEventRow) -> ExecutionEvent:
    data = _load_json(row.data_json, None)
    return ExecutionEvent(
        type=EventType(row.event_type),
        execution_id=row.execution_id,
        timestamp=to_utc_aware_datetime(row.created_at),
        step_index=row.step_index,
        data=data if isinstance(data, dict) else None,
        error=row.error,
        event_id=row.id,
    )
