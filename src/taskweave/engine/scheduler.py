"""Dependency-ordered execution loop over an execution's sub-steps."""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from taskweave.engine.backend.base import (
    CostClock,
    GlobalContext,
    StepOutcome,
    StepRequest,
    StepRunner,
    SynthesisRequest,
    Synthesizer,
    SystemClock,
)
from taskweave.engine.errors import StepExecutionError, SuspensionSignal, ValidationError
from taskweave.engine.events import EventEmitter
from taskweave.engine.models import (
    STOPPED_REASON,
    ActionKind,
    EventType,
    ExecutionEvent,
    ExecutionStatus,
    ExecutionView,
    StepStatus,
    SubStepView,
    Usage,
    derive_execution_status,
)
from taskweave.engine.repository import ExecutionRepository
from taskweave.engine.stop_requests import StopRequestStore
from taskweave.engine.usage import normalize_usage

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


class CancelToken:
    """In-process cancellation checked by the scheduler between dispatches."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(slots=True)
class _LoopState:
    steps: list[SubStepView]
    in_flight: dict[Future[StepOutcome], SubStepView] = field(default_factory=dict)
    stop_reason: str | None = None


class DagScheduler:
    """Runs pending sub-steps once all their dependencies have completed.

    All database writes happen on the calling thread. Worker threads only
    call the step runner, so ``max_concurrency`` bounds collaborator calls
    and never the number of writers. Ready steps are dispatched in
    declaration order.
    """

    def __init__(  # noqa: PLR0913
        self,
        repository: ExecutionRepository,
        stop_requests: StopRequestStore,
        runner: StepRunner,
        *,
        max_concurrency: int = 1,
        clock: CostClock | None = None,
        events: EventEmitter | None = None,
        synthesizer: Synthesizer | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1.")
        self.repository = repository
        self.stop_requests = stop_requests
        self.runner = runner
        self.max_concurrency = max_concurrency
        self.clock: CostClock = clock or SystemClock()
        self.events = events or EventEmitter(repository, clock=self.clock)
        self.synthesizer = synthesizer
        self.provider = provider
        self.model = model

    def run(self, execution_id: str, *, cancel_token: CancelToken | None = None) -> ExecutionView:
        """Drive an execution until it is terminal, waiting, or suspended."""

        execution = self.repository.get_execution(execution_id)
        never_started = (
            execution.status is ExecutionStatus.RUNNING and execution.started_at is None
        )
        if execution.status is ExecutionStatus.PENDING or never_started:
            started = self.events.make(
                EventType.STARTED,
                execution_id,
                data={"totalTasks": execution.counters.total},
            )
            if self.repository.start_execution(execution_id, events=[started]):
                self.events.publish([started])
        elif execution.status is not ExecutionStatus.RUNNING:
            raise ValidationError(
                f"Execution {execution_id} cannot run from status {execution.status.value}.",
                field="status",
                value=execution.status.value,
            )
        execution = self.repository.get_execution(execution_id)
        context = GlobalContext(
            request=execution.original_request,
            primary_intent=execution.primary_intent,
            total_tasks=execution.counters.total,
        )
        logger.info(
            "Scheduler started: execution_id=%s tasks=%d max_concurrency=%d",
            execution_id,
            execution.counters.total,
            self.max_concurrency,
        )

        state = _LoopState(steps=self.repository.list_steps(execution_id))
        with ThreadPoolExecutor(
            max_workers=self.max_concurrency,
            thread_name_prefix="taskweave-step",
        ) as pool:
            while True:
                self._propagate_failures(execution_id, state)
                if state.stop_reason is None:
                    state.stop_reason = self._stop_reason(execution, cancel_token)
                if state.stop_reason is None:
                    self._dispatch_ready(pool, execution_id, context, state, cancel_token)
                if not state.in_flight:
                    break
                done, _ = wait(list(state.in_flight), return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda item: state.in_flight[item].position):
                    step = state.in_flight.pop(future)
                    self._record(execution_id, step, future)
                state.steps = self.repository.list_steps(execution_id)

        if state.stop_reason is not None:
            if any(step.status is StepStatus.PENDING for step in state.steps):
                return self._suspend(execution, state.stop_reason)
            # Nothing left to pause; the stop arrived after the last dispatch.
            self._mark_stops_handled(execution)
        return self._finalize(execution_id, state)

    def _stop_reason(self, execution: ExecutionView, cancel_token: CancelToken | None) -> str | None:
        if cancel_token is not None and cancel_token.cancelled:
            return CANCELLED_REASON
        if self.stop_requests.has_active_for_execution(execution.execution_id):
            return STOPPED_REASON
        if execution.graph_id is not None and self.stop_requests.has_active_for_graph(
            execution.graph_id,
        ):
            return STOPPED_REASON
        return None

    def _propagate_failures(self, execution_id: str, state: _LoopState) -> None:
        """Fail pending steps that transitively depend on a failed step."""

        while True:
            by_id = {step.task_id: step for step in state.steps}
            failures: list[tuple[SubStepView, list[str]]] = []
            for step in state.steps:
                if step.status not in (StepStatus.PENDING, StepStatus.WAITING):
                    continue
                failed_deps = [
                    dep
                    for dep in step.template.dependencies
                    if dep in by_id and by_id[dep].status is StepStatus.FAILED
                ]
                if failed_deps:
                    failures.append((step, failed_deps))
            if not failures:
                return

            events = [
                self.events.make(
                    EventType.STEP_FAILED,
                    execution_id,
                    step_index=step.step_index,
                    data={"taskId": step.task_id, "propagated": True},
                    error=_propagated_error(failed_deps),
                )
                for step, failed_deps in failures
            ]
            self.repository.propagate_failures(
                execution_id,
                [(step.task_id, _propagated_error(failed_deps)) for step, failed_deps in failures],
                events=events,
            )
            self.events.publish(events)
            logger.info(
                "Propagated dependency failure: execution_id=%s steps=%s",
                execution_id,
                ",".join(step.task_id for step, _ in failures),
            )
            state.steps = self.repository.list_steps(execution_id)

    def _dispatch_ready(
        self,
        pool: ThreadPoolExecutor,
        execution_id: str,
        context: GlobalContext,
        state: _LoopState,
        cancel_token: CancelToken | None,
    ) -> None:
        in_flight_ids = {step.task_id for step in state.in_flight.values()}
        by_id = {step.task_id: step for step in state.steps}
        for step in state.steps:
            if len(state.in_flight) >= self.max_concurrency:
                return
            if step.status is not StepStatus.PENDING or step.task_id in in_flight_ids:
                continue
            if not all(
                by_id[dep].status is StepStatus.COMPLETED
                for dep in step.template.dependencies
                if dep in by_id
            ):
                continue
            if not self.repository.mark_step_running(execution_id, step.task_id):
                logger.warning(
                    "Step %s of %s was not pending; skipping dispatch.",
                    step.task_id,
                    execution_id,
                )
                continue
            if step.template.action_kind is ActionKind.TOOL:
                self.events.emit(
                    self.events.make(
                        EventType.TOOL_CALLED,
                        execution_id,
                        step_index=step.step_index,
                        data={"taskId": step.task_id, "tool": step.template.target_name},
                    ),
                )
            request = StepRequest(
                execution_id=execution_id,
                step_index=step.step_index,
                template=step.template,
                dependency_results={
                    dep: by_id[dep].result for dep in step.template.dependencies if dep in by_id
                },
                context=context,
                provider=self.provider,
                model=self.model,
                cancel_requested=(lambda: cancel_token.cancelled) if cancel_token else None,
            )
            logger.debug("Dispatching step %s of %s", step.task_id, execution_id)
            state.in_flight[pool.submit(self.runner.run, request)] = step
            in_flight_ids.add(step.task_id)

    def _record(self, execution_id: str, step: SubStepView, future: Future[StepOutcome]) -> None:
        try:
            outcome = future.result()
        except SuspensionSignal as signal:
            event = self.events.make(
                EventType.PAUSED,
                execution_id,
                step_index=step.step_index,
                data={"taskId": step.task_id, "status": StepStatus.WAITING.value},
                error=signal.reason,
            )
            self.repository.record_step_waiting(
                execution_id,
                step.task_id,
                reason=signal.reason,
                events=[event],
            )
            self.events.publish([event])
            logger.info("Step %s of %s is waiting: %s", step.task_id, execution_id, signal.reason)
            return
        except Exception as error:  # noqa: BLE001
            logger.warning("Step runner raised for %s: %s", step.task_id, error)
            outcome = StepOutcome(success=False, error=str(error) or type(error).__name__)

        events = self._outcome_events(execution_id, step, outcome)
        counters = self.repository.record_step_outcome(
            execution_id,
            step.task_id,
            outcome,
            events=events,
        )
        self.events.publish(events)
        if outcome.success:
            logger.info(
                "Step completed: execution_id=%s task_id=%s (%d/%d)",
                execution_id,
                step.task_id,
                counters.completed,
                counters.total,
            )
        else:
            logger.warning(
                "Step failed: execution_id=%s task_id=%s error=%s",
                execution_id,
                step.task_id,
                outcome.error,
            )

    def _outcome_events(
        self,
        execution_id: str,
        step: SubStepView,
        outcome: StepOutcome,
    ) -> list[ExecutionEvent]:
        events: list[ExecutionEvent] = []
        if step.template.action_kind is ActionKind.TOOL:
            events.append(
                self.events.make(
                    EventType.TOOL_COMPLETED if outcome.success else EventType.TOOL_FAILED,
                    execution_id,
                    step_index=step.step_index,
                    data={"taskId": step.task_id, "tool": step.template.target_name},
                    error=None if outcome.success else outcome.error,
                ),
            )
        data: dict[str, Any] = {"taskId": step.task_id}
        if not outcome.usage.is_empty:
            data["usage"] = outcome.usage.to_dict()
        if outcome.cost_usd:
            data["costUsd"] = outcome.cost_usd
        events.append(
            self.events.make(
                EventType.STEP_COMPLETED if outcome.success else EventType.STEP_FAILED,
                execution_id,
                step_index=step.step_index,
                data=data,
                error=None if outcome.success else outcome.error,
            ),
        )
        return events

    def _suspend(self, execution: ExecutionView, reason: str) -> ExecutionView:
        execution_id = execution.execution_id
        paused = self.events.make(EventType.PAUSED, execution_id, data={"reason": reason})
        suspended = self.repository.suspend_execution(
            execution_id,
            reason=reason,
            expected=(ExecutionStatus.RUNNING,),
            events=[paused],
        )
        if suspended:
            self.events.publish([paused])
        self._mark_stops_handled(execution)
        return self.repository.get_execution(execution_id)

    def _mark_stops_handled(self, execution: ExecutionView) -> None:
        self.stop_requests.mark_handled_for_execution(execution.execution_id)
        if execution.graph_id is not None:
            self.stop_requests.mark_handled_for_graph(execution.graph_id)

    def _finalize(self, execution_id: str, state: _LoopState) -> ExecutionView:
        counters = self.repository.get_execution(execution_id).counters
        status = derive_execution_status(counters)

        if status is ExecutionStatus.WAITING:
            waiting = [step.task_id for step in state.steps if step.status is StepStatus.WAITING]
            paused = self.events.make(
                EventType.PAUSED,
                execution_id,
                data={"status": ExecutionStatus.WAITING.value, "waiting": waiting},
            )
            if self.repository.set_execution_waiting(execution_id, events=[paused]):
                self.events.publish([paused])
            return self.repository.get_execution(execution_id)

        if status is ExecutionStatus.RUNNING:
            # Pending steps left with no runnable path.
            stuck = [step.task_id for step in state.steps if step.status is StepStatus.PENDING]
            self._fail_stuck(execution_id, stuck)
            raise StepExecutionError(
                f"Scheduler deadlock: no runnable steps among {', '.join(stuck)}.",
                task_id=stuck[0] if stuck else None,
            )

        return self._complete(execution_id, status, state.steps)

    def _fail_stuck(self, execution_id: str, stuck: list[str]) -> None:
        error = "Deadlock: dependencies can never complete."
        events = [
            self.events.make(EventType.FAILED, execution_id, error=error, data={"stuck": stuck}),
        ]
        self.repository.propagate_failures(execution_id, [(task_id, error) for task_id in stuck])
        self.repository.finish_execution(
            execution_id,
            status=ExecutionStatus.FAILED,
            final_result=None,
            events=events,
        )
        self.events.publish(events)
        logger.error("Execution %s deadlocked on %s", execution_id, ", ".join(stuck))

    def _complete(
        self,
        execution_id: str,
        status: ExecutionStatus,
        steps: list[SubStepView],
    ) -> ExecutionView:
        results = {step.task_id: step.result for step in steps if step.status is StepStatus.COMPLETED}
        synthesis_text: str | None = None
        synthesis_usage = Usage()
        synthesis_cost = 0.0
        if self.synthesizer is not None and results:
            execution = self.repository.get_execution(execution_id)
            try:
                synthesis = self.synthesizer.synthesize(
                    SynthesisRequest(
                        execution_id=execution_id,
                        context=GlobalContext(
                            request=execution.original_request,
                            primary_intent=execution.primary_intent,
                            total_tasks=execution.counters.total,
                        ),
                        step_results=results,
                    ),
                )
            except Exception as error:  # noqa: BLE001
                logger.warning("Synthesis failed for %s: %s", execution_id, error)
            else:
                synthesis_text = synthesis.text
                synthesis_usage = normalize_usage(synthesis.usage).usage
                synthesis_cost = synthesis.cost_usd or 0.0

        if status is ExecutionStatus.FAILED:
            terminal = self.events.make(EventType.FAILED, execution_id, data={"status": status.value})
        else:
            terminal = self.events.make(
                EventType.COMPLETED,
                execution_id,
                data={"status": status.value},
            )
        view = self.repository.finish_execution(
            execution_id,
            status=status,
            final_result=synthesis_text or _sink_results(steps),
            synthesis_result=synthesis_text,
            synthesis_usage=synthesis_usage,
            synthesis_cost_usd=synthesis_cost,
            events=[terminal],
        )
        self.events.publish([terminal])
        return view


def _propagated_error(failed_dependencies: list[str]) -> str:
    return f"Dependency failed: {', '.join(failed_dependencies)}"


def _sink_results(steps: list[SubStepView]) -> str | None:
    """JSON of completed results no other step consumes."""

    consumed = {dep for step in steps for dep in step.template.dependencies}
    sinks = {
        step.task_id: step.result
        for step in steps
        if step.status is StepStatus.COMPLETED and step.task_id not in consumed
    }
    if not sinks:
        return None
    return json.dumps(sinks, ensure_ascii=False, sort_keys=True, default=str)
