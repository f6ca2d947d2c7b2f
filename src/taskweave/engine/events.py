"""Lifecycle event publishing, streaming and replay."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from typing import Any

from taskweave.engine.backend.base import CostClock, SystemClock
from taskweave.engine.models import (
    STREAM_TERMINAL_EVENTS,
    TERMINAL_EXECUTION_STATUSES,
    EventType,
    ExecutionDetails,
    ExecutionEvent,
    ExecutionStatus,
    StepStatus,
)
from taskweave.engine.repository import ExecutionRepository

logger = logging.getLogger(__name__)

EventSubscriber = Callable[[ExecutionEvent], None]


class EventEmitter:
    """Builds events and fans them out to in-process subscribers.

    Events that accompany a state change are handed to the repository write
    that performs the change, so the row and the event commit together.
    ``publish`` is called afterwards. Subscriber failures are logged and
    never reach the scheduler.
    """

    def __init__(self, repository: ExecutionRepository, *, clock: CostClock | None = None) -> None:
        self.repository = repository
        self.clock: CostClock = clock or SystemClock()
        self._subscribers: list[EventSubscriber] = []
        self._lock = threading.Lock()

    def make(  # noqa: PLR0913
        self,
        event_type: EventType,
        execution_id: str,
        *,
        step_index: int | None = None,
        data: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> ExecutionEvent:
        return ExecutionEvent(
            type=event_type,
            execution_id=execution_id,
            timestamp=self.clock.now(),
            step_index=step_index,
            data=data,
            error=error,
        )

    def subscribe(self, subscriber: EventSubscriber) -> Callable[[], None]:
        """Register a subscriber; returns a callable that removes it."""

        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def emit(self, event: ExecutionEvent) -> ExecutionEvent:
        """Persist a standalone event and publish it."""

        self.repository.append_events([event])
        self.publish([event])
        return event

    def publish(self, events: Sequence[ExecutionEvent]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for event in events:
            logger.debug(
                "Event %s execution_id=%s step=%s",
                event.type.value,
                event.execution_id,
                event.step_index,
            )
            for subscriber in subscribers:
                try:
                    subscriber(event)
                except Exception:  # noqa: BLE001
                    logger.exception("Event subscriber failed for %s", event.type.value)


def stream_events(  # noqa: PLR0913
    repository: ExecutionRepository,
    execution_id: str,
    *,
    poll_interval: float = 0.5,
    timeout: float | None = None,
    after_id: int = 0,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[ExecutionEvent]:
    """Yield persisted events in order, polling until a terminal event.

    Also stops when the execution is already terminal and no new events
    remain, or when ``timeout`` seconds elapse.
    """

    repository.get_execution(execution_id)
    deadline = time.monotonic() + timeout if timeout is not None else None
    last_id = after_id
    while True:
        events = repository.list_events(execution_id, after_id=last_id)
        for event in events:
            last_id = event.event_id or last_id
            yield event
            if _ends_stream(event):
                return
        if not events:
            status = repository.get_execution(execution_id).status
            if status in TERMINAL_EXECUTION_STATUSES or status is ExecutionStatus.SUSPENDED:
                return
        if deadline is not None and time.monotonic() >= deadline:
            logger.info("Event stream timed out: execution_id=%s", execution_id)
            return
        sleep(poll_interval)


def _ends_stream(event: ExecutionEvent) -> bool:
    # Step-level pauses carry a step index; the scheduler keeps draining.
    return event.type in STREAM_TERMINAL_EVENTS and event.step_index is None


def replay_events(repository: ExecutionRepository, execution_id: str) -> list[ExecutionEvent]:
    """Full event history; reconstructed from stored state when no log exists."""

    events = repository.list_events(execution_id)
    if events:
        return events
    return reconstruct_events(repository.get_execution_details(execution_id))


def reconstruct_events(details: ExecutionDetails) -> list[ExecutionEvent]:
    """Approximate the lifecycle events implied by persisted execution state."""

    execution = details.execution
    events: list[ExecutionEvent] = []
    if execution.started_at is not None:
        events.append(
            ExecutionEvent(
                type=EventType.STARTED,
                execution_id=execution.execution_id,
                timestamp=execution.started_at,
                data={"totalTasks": execution.counters.total},
            ),
        )
    finished = [
        step
        for step in details.steps
        if step.status in (StepStatus.COMPLETED, StepStatus.FAILED) and step.completed_at
    ]
    for step in sorted(finished, key=lambda item: (item.completed_at, item.position)):
        completed = step.status is StepStatus.COMPLETED
        events.append(
            ExecutionEvent(
                type=EventType.STEP_COMPLETED if completed else EventType.STEP_FAILED,
                execution_id=execution.execution_id,
                timestamp=step.completed_at,  # type: ignore[arg-type]
                step_index=step.step_index,
                data={"taskId": step.task_id},
                error=None if completed else step.error,
            ),
        )
    if execution.status in (ExecutionStatus.COMPLETED, ExecutionStatus.PARTIAL):
        events.append(
            ExecutionEvent(
                type=EventType.COMPLETED,
                execution_id=execution.execution_id,
                timestamp=execution.completed_at or execution.updated_at,
                data={"status": execution.status.value},
            ),
        )
    elif execution.status is ExecutionStatus.FAILED:
        events.append(
            ExecutionEvent(
                type=EventType.FAILED,
                execution_id=execution.execution_id,
                timestamp=execution.completed_at or execution.updated_at,
            ),
        )
    elif execution.status is ExecutionStatus.SUSPENDED:
        events.append(
            ExecutionEvent(
                type=EventType.PAUSED,
                execution_id=execution.execution_id,
                timestamp=execution.suspended_at or execution.updated_at,
                data={"reason": execution.suspended_reason},
            ),
        )
    return events
