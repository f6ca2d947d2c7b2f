"""Application services: planning, clarification, execution and stop requests."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field, replace

from taskweave.engine.backend.base import Decomposer, DecompositionResult
from taskweave.engine.errors import ValidationError
from taskweave.engine.models import (
    STOPPED_REASON,
    EventType,
    ExecutionStatus,
    ExecutionView,
    GraphCreate,
    GraphStatus,
    GraphView,
    PlanningAttempt,
    PlanningReason,
    StopRequestView,
    TemplateSpec,
)
from taskweave.engine.repository import ExecutionRepository
from taskweave.engine.schedule import validate_cron, validate_timezone
from taskweave.engine.scheduler import CancelToken, DagScheduler
from taskweave.engine.stop_requests import StopRequestStore
from taskweave.engine.validator import ClarificationRequired, ValidatedGraph, validate_task_graph

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PlanningOutcome:
    """Result of planning: a ready graph, or a clarification request."""

    graph: GraphView | None
    clarification: ClarificationRequired | None = None
    attempts: list[PlanningAttempt] = field(default_factory=list)


@dataclass(slots=True)
class GoalRun:
    """Planning outcome plus the execution it started, if the plan was ready."""

    planning: PlanningOutcome
    execution: ExecutionView | None = None


class PlanningService:
    """Decompose goals into validated task graphs with bounded retries."""

    def __init__(
        self,
        repository: ExecutionRepository,
        decomposer: Decomposer,
        *,
        max_planning_attempts: int = 3,
        persist_clarifications: bool = True,
    ) -> None:
        if max_planning_attempts < 1:
            raise ValueError("max_planning_attempts must be >= 1.")
        self.repository = repository
        self.decomposer = decomposer
        self.max_planning_attempts = max_planning_attempts
        self.persist_clarifications = persist_clarifications

    def plan_graph(self, goal: str, *, title: str | None = None) -> PlanningOutcome:
        """Plan ``goal``; persist a ready graph or a clarification audit graph.

        Raises ``ValidationError`` when every attempt fails; nothing is
        persisted in that case.
        """

        attempts: list[PlanningAttempt] = []
        reason = PlanningReason.INITIAL
        last_error: Exception | None = None
        for number in range(1, self.max_planning_attempts + 1):
            attempt = PlanningAttempt(attempt=number, reason=reason)
            attempts.append(attempt)
            try:
                result = self.decomposer.decompose(goal)
            except Exception as error:  # noqa: BLE001
                logger.warning("Decomposer failed on attempt %d: %s", number, error)
                attempt.error = str(error) or type(error).__name__
                last_error = error
                reason = PlanningReason.RETRY_DECOMPOSER_ERROR
                continue

            attempt.usage = result.usage
            attempt.cost_usd = result.cost_usd
            try:
                validated = validate_task_graph(
                    _renumber_if_unnamed(result.templates),
                    clarification_required=result.clarification_required,
                    clarification_text=result.clarification_text,
                )
            except ValidationError as error:
                logger.warning("Planning attempt %d rejected: %s", number, error)
                attempt.error = str(error)
                last_error = error
                reason = PlanningReason.RETRY_VALIDATION
                continue

            if isinstance(validated, ClarificationRequired):
                return self._clarification(goal, title, result, validated, attempts)
            graph = self.repository.create_graph(
                GraphCreate(
                    title=title or result.title or goal,
                    goal=goal,
                    templates=validated.templates,
                    planning_attempts=attempts,
                    primary_intent=result.primary_intent,
                ),
            )
            logger.info(
                "Graph planned: graph_id=%s tasks=%d attempts=%d",
                graph.graph_id,
                len(validated.templates),
                number,
            )
            return PlanningOutcome(graph=graph, attempts=attempts)

        raise ValidationError(
            f"Planning failed after {len(attempts)} attempt(s): {last_error}",
            field="goal",
            value=goal,
        ) from last_error

    def resubmit_with_clarification(self, graph_id: str, answer: str) -> PlanningOutcome:
        """Re-plan a clarification graph with the user's answer appended."""

        graph = self.repository.get_graph(graph_id)
        if graph.status is not GraphStatus.CLARIFICATION_REQUIRED:
            raise ValidationError(
                f"Graph {graph_id} is {graph.status.value}; no clarification pending.",
                field="status",
                value=graph.status.value,
            )
        if not answer.strip():
            raise ValidationError("Clarification answer must not be empty.", field="answer")

        outcome = self.plan_graph(
            f"{graph.goal}\n\nClarification: {answer.strip()}",
            title=graph.title,
        )
        self.repository.update_graph_status(
            graph_id,
            status=GraphStatus.CANCELLED,
            expected=(GraphStatus.CLARIFICATION_REQUIRED,),
        )
        return outcome

    def _clarification(
        self,
        goal: str,
        title: str | None,
        result: DecompositionResult,
        clarification: ClarificationRequired,
        attempts: list[PlanningAttempt],
    ) -> PlanningOutcome:
        graph = None
        if self.persist_clarifications:
            graph = self.repository.create_graph(
                GraphCreate(
                    title=title or result.title or goal,
                    goal=goal,
                    templates=[],
                    status=GraphStatus.CLARIFICATION_REQUIRED,
                    clarification_query=clarification.clarification_text,
                    planning_attempts=attempts,
                ),
            )
        logger.info("Planning needs clarification: %s", clarification.clarification_text)
        return PlanningOutcome(graph=graph, clarification=clarification, attempts=attempts)


class ExecutionService:
    """Starts executions from graphs and records stop and suspend requests."""

    def __init__(
        self,
        repository: ExecutionRepository,
        stop_requests: StopRequestStore,
        scheduler: DagScheduler,
    ) -> None:
        self.repository = repository
        self.stop_requests = stop_requests
        self.scheduler = scheduler

    def create_execution(self, graph_id: str, *, request: str | None = None) -> ExecutionView:
        graph = self.repository.get_graph(graph_id)
        if graph.status is not GraphStatus.READY:
            raise ValidationError(
                f"Graph {graph_id} is {graph.status.value}; only ready graphs can run.",
                field="status",
                value=graph.status.value,
            )
        execution = self.repository.create_execution(
            templates=graph.templates,
            original_request=request or graph.goal,
            graph_id=graph_id,
            primary_intent=graph.primary_intent,
        )
        self.repository.mark_graph_run(graph_id)
        return execution

    def run_graph(
        self,
        graph_id: str,
        *,
        request: str | None = None,
        cancel_token: CancelToken | None = None,
    ) -> ExecutionView:
        execution = self.create_execution(graph_id, request=request)
        return self.scheduler.run(execution.execution_id, cancel_token=cancel_token)

    def run_definition(
        self,
        templates: Sequence[TemplateSpec],
        request: str,
        *,
        primary_intent: str | None = None,
        cancel_token: CancelToken | None = None,
    ) -> ExecutionView:
        """Validate an ad-hoc template list and run it without persisting a graph."""

        validated = validate_task_graph(_renumber_if_unnamed(templates))
        if not isinstance(validated, ValidatedGraph):
            raise ValidationError("Definition requested clarification.", field="sub_tasks")
        execution = self.repository.create_execution(
            templates=validated.templates,
            original_request=request,
            primary_intent=primary_intent,
        )
        logger.info(
            "Running ad-hoc definition: execution_id=%s tasks=%d",
            execution.execution_id,
            len(validated.templates),
        )
        return self.scheduler.run(execution.execution_id, cancel_token=cancel_token)

    def plan_and_run(
        self,
        planner: PlanningService,
        goal: str,
        *,
        title: str | None = None,
        cancel_token: CancelToken | None = None,
    ) -> GoalRun:
        """Plan ``goal`` and run the resulting graph; stop at a clarification."""

        outcome = planner.plan_graph(goal, title=title)
        if outcome.clarification is not None or outcome.graph is None:
            return GoalRun(planning=outcome)
        execution = self.run_graph(outcome.graph.graph_id, cancel_token=cancel_token)
        return GoalRun(planning=outcome, execution=execution)

    def delete_execution(self, execution_id: str) -> None:
        execution = self.repository.get_execution(execution_id)
        if execution.status is ExecutionStatus.RUNNING:
            raise ValidationError(
                f"Execution {execution_id} is running; stop it before deleting.",
                field="status",
                value=execution.status.value,
            )
        if not self.repository.delete_execution(execution_id):
            raise ValidationError(
                f"Execution {execution_id} changed state before it could be deleted.",
                field="status",
            )

    def delete_graph(self, graph_id: str) -> None:
        """Delete a graph; refused while any execution still references it."""

        self.repository.get_graph(graph_id)
        executions = len(self.repository.list_executions(graph_id=graph_id, limit=None))
        if executions:
            raise ValidationError(
                f"Cannot delete graph {graph_id}: {executions} execution(s) exist for it.",
                field="executions",
                value=executions,
            )
        if not self.repository.delete_graph(graph_id):
            raise ValidationError(
                f"Graph {graph_id} gained executions before it could be deleted.",
                field="executions",
            )

    def suspend_execution(self, execution_id: str, reason: str = STOPPED_REASON) -> ExecutionView:
        """Pause an execution that no scheduler is currently driving.

        A running execution is stopped cooperatively through a stop request
        instead; its scheduler suspends it at the next tick.
        """

        execution = self.repository.get_execution(execution_id)
        if execution.status is ExecutionStatus.RUNNING:
            self.stop_requests.request_for_execution(execution_id)
            return execution
        if execution.status not in (ExecutionStatus.PENDING, ExecutionStatus.WAITING):
            raise ValidationError(
                f"Execution {execution_id} cannot be suspended from status "
                f"{execution.status.value}.",
                field="status",
                value=execution.status.value,
            )
        events = self.scheduler.events
        paused = events.make(EventType.PAUSED, execution_id, data={"reason": reason})
        suspended = self.repository.suspend_execution(
            execution_id,
            reason=reason,
            expected=(ExecutionStatus.PENDING, ExecutionStatus.WAITING),
            events=[paused],
        )
        if not suspended:
            raise ValidationError(
                f"Execution {execution_id} changed state before it could be suspended.",
                field="status",
            )
        events.publish([paused])
        return self.repository.get_execution(execution_id)

    def request_stop_graph(self, graph_id: str) -> StopRequestView:
        self.repository.get_graph(graph_id)
        return self.stop_requests.request_for_graph(graph_id)

    def request_stop_execution(self, execution_id: str) -> StopRequestView:
        self.repository.get_execution(execution_id)
        return self.stop_requests.request_for_execution(execution_id)

    def set_schedule(
        self,
        graph_id: str,
        *,
        cron: str | None,
        timezone: str | None = None,
        active: bool = True,
    ) -> GraphView:
        """Store recurrence metadata; ``cron=None`` clears the schedule."""

        if cron is None:
            return self.repository.set_graph_schedule(
                graph_id,
                cron_schedule=None,
                timezone=None,
                active=False,
            )
        return self.repository.set_graph_schedule(
            graph_id,
            cron_schedule=validate_cron(cron),
            timezone=validate_timezone(timezone),
            active=active,
        )


def _renumber_if_unnamed(templates: Sequence[TemplateSpec]) -> list[TemplateSpec]:
    """Assign 1-based ids when the decomposer left every id empty."""

    if templates and all(not template.task_id for template in templates):
        return [
            replace(template, task_id=str(position))
            for position, template in enumerate(templates, start=1)
        ]
    return list(templates)
