"""Resume, retry and redo of existing executions."""

from __future__ import annotations

import logging

from taskweave.engine.backend.base import GlobalContext, StepOutcome, StepRequest
from taskweave.engine.errors import NotFoundError, ValidationError
from taskweave.engine.models import (
    REDOABLE_EXECUTION_STATUSES,
    RESUMABLE_EXECUTION_STATUSES,
    RETRYABLE_EXECUTION_STATUSES,
    EventType,
    ExecutionEvent,
    ExecutionStatus,
    ExecutionView,
    StepStatus,
    SubStepView,
)
from taskweave.engine.scheduler import CancelToken, DagScheduler

logger = logging.getLogger(__name__)


class RecoveryService:
    """Re-enters the scheduler for paused or finished executions."""

    def __init__(self, scheduler: DagScheduler) -> None:
        self.scheduler = scheduler
        self.repository = scheduler.repository
        self.events = scheduler.events

    def resume(self, execution_id: str, *, cancel_token: CancelToken | None = None) -> ExecutionView:
        """Continue a suspended or waiting execution; completed steps are not rerun."""

        execution = self.repository.get_execution(execution_id)
        self._require_status(execution, RESUMABLE_EXECUTION_STATUSES, "resumed")
        resumed = self.events.make(
            EventType.RESUMED,
            execution_id,
            data={"mode": "resume", "previousStatus": execution.status.value},
        )
        reopened = self.repository.reopen_execution(
            execution_id,
            expected=RESUMABLE_EXECUTION_STATUSES,
            reset_statuses=(StepStatus.RUNNING, StepStatus.WAITING),
            clear_results=False,
            events=[resumed],
        )
        if not reopened:
            raise ValidationError(
                f"Execution {execution_id} changed state before it could be resumed.",
                field="status",
            )
        self.events.publish([resumed])
        logger.info("Execution resumed: execution_id=%s", execution_id)
        return self.scheduler.run(execution_id, cancel_token=cancel_token)

    def retry_failed(
        self,
        execution_id: str,
        *,
        cancel_token: CancelToken | None = None,
    ) -> ExecutionView:
        """Reset failed steps (including propagated ones) to pending and run again."""

        execution = self.repository.get_execution(execution_id)
        self._require_status(execution, RETRYABLE_EXECUTION_STATUSES, "retried")
        resumed = self.events.make(
            EventType.RESUMED,
            execution_id,
            data={
                "mode": "retry",
                "previousStatus": execution.status.value,
                "failedTasks": execution.counters.failed,
            },
        )
        reopened = self.repository.reopen_execution(
            execution_id,
            expected=RETRYABLE_EXECUTION_STATUSES,
            reset_statuses=(StepStatus.FAILED,),
            clear_results=True,
            events=[resumed],
        )
        if not reopened:
            raise ValidationError(
                f"Execution {execution_id} changed state before it could be retried.",
                field="status",
            )
        self.events.publish([resumed])
        logger.info(
            "Retrying failed steps: execution_id=%s failed=%d",
            execution_id,
            execution.counters.failed,
        )
        return self.scheduler.run(execution_id, cancel_token=cancel_token)

    def redo_step(
        self,
        execution_id: str,
        task_id: str,
        *,
        provider: str | None = None,
        model: str | None = None,
    ) -> SubStepView:
        """Re-execute one finished step in place, optionally with another provider/model.

        Dependents are not rerun. The execution status is re-derived from the
        new counters.
        """

        execution = self.repository.get_execution(execution_id)
        self._require_status(execution, REDOABLE_EXECUTION_STATUSES, "redone")
        steps = self.repository.list_steps(execution_id)
        by_id = {step.task_id: step for step in steps}
        step = by_id.get(task_id)
        if step is None:
            raise NotFoundError("Step", f"{execution_id}/{task_id}")
        if step.status not in (StepStatus.COMPLETED, StepStatus.FAILED):
            raise ValidationError(
                f"Step {task_id} is {step.status.value}; only finished steps can be redone.",
                field="task_id",
                value=task_id,
            )
        missing = [
            dep
            for dep in step.template.dependencies
            if dep in by_id and by_id[dep].status is not StepStatus.COMPLETED
        ]
        if missing:
            raise ValidationError(
                f"Step {task_id} cannot be redone; dependencies not completed: {', '.join(missing)}",
                field="dependencies",
                value=missing,
            )

        request = StepRequest(
            execution_id=execution_id,
            step_index=step.step_index,
            template=step.template,
            dependency_results={dep: by_id[dep].result for dep in step.template.dependencies},
            context=GlobalContext(
                request=execution.original_request,
                primary_intent=execution.primary_intent,
                total_tasks=execution.counters.total,
            ),
            provider=provider,
            model=model,
        )
        logger.info(
            "Redoing step: execution_id=%s task_id=%s provider=%s model=%s",
            execution_id,
            task_id,
            provider,
            model,
        )
        try:
            outcome = self.scheduler.runner.run(request)
        except Exception as error:  # noqa: BLE001
            logger.warning("Step runner raised during redo of %s: %s", task_id, error)
            outcome = StepOutcome(success=False, error=str(error) or type(error).__name__)

        event = self.events.make(
            EventType.STEP_COMPLETED if outcome.success else EventType.STEP_FAILED,
            execution_id,
            step_index=step.step_index,
            data={
                "taskId": task_id,
                "redo": True,
                "provider": outcome.provider or provider,
                "model": outcome.model or model,
            },
            error=None if outcome.success else outcome.error,
        )
        replacement = self.repository.replace_step_result(
            execution_id,
            task_id,
            outcome,
            events=[event],
            status_event=lambda status, previous: self._status_event(
                execution_id,
                status,
                previous,
                task_id,
            ),
        )
        self.events.publish(replacement.events)
        if replacement.status is not replacement.previous_status:
            logger.info(
                "Execution status changed after redo: execution_id=%s %s -> %s",
                execution_id,
                replacement.previous_status.value,
                replacement.status.value,
            )
        return self.repository.get_step(execution_id, task_id)

    def _status_event(
        self,
        execution_id: str,
        status: ExecutionStatus,
        previous: ExecutionStatus,
        task_id: str,
    ) -> ExecutionEvent:
        return self.events.make(
            EventType.FAILED if status is ExecutionStatus.FAILED else EventType.COMPLETED,
            execution_id,
            data={"status": status.value, "previousStatus": previous.value, "redoTaskId": task_id},
        )

    @staticmethod
    def _require_status(
        execution: ExecutionView,
        allowed: frozenset[ExecutionStatus],
        verb: str,
    ) -> None:
        if execution.status not in allowed:
            raise ValidationError(
                f"Execution {execution.execution_id} cannot be {verb} "
                f"from status {execution.status.value}.",
                field="status",
                value=execution.status.value,
            )
