"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from taskweave.engine.backend.base import StepOutcome, StepRequest
from taskweave.engine.errors import SuspensionSignal
from taskweave.engine.events import EventEmitter
from taskweave.engine.models import ExecutionView, TemplateSpec, Usage
from taskweave.engine.repository import ExecutionRepository
from taskweave.engine.scheduler import DagScheduler
from taskweave.engine.stop_requests import StopRequestStore

START = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic clock; every ``now()`` call advances by ``step``."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(seconds=1)) -> None:
        self.current = start
        self.step = step
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            value = self.current
            self.current = value + self.step
            return value

    def set(self, value: datetime) -> None:
        with self._lock:
            self.current = value


class RecordingRunner:
    """Step runner that records requests and fails or suspends on demand."""

    def __init__(self) -> None:
        self.calls: list[StepRequest] = []
        self.fail: set[str] = set()
        self.suspend: set[str] = set()
        self.explode: set[str] = set()
        self.hooks: dict[str, Callable[[StepRequest], None]] = {}
        self._lock = threading.Lock()

    @property
    def called_ids(self) -> list[str]:
        with self._lock:
            return [request.template.task_id for request in self.calls]

    def run(self, request: StepRequest) -> StepOutcome:
        task_id = request.template.task_id
        with self._lock:
            self.calls.append(request)
        hook = self.hooks.get(task_id)
        if hook is not None:
            hook(request)
        if task_id in self.suspend:
            raise SuspensionSignal(f"needs input for {task_id}", execution_id=request.execution_id)
        if task_id in self.explode:
            raise RuntimeError(f"boom {task_id}")
        if task_id in self.fail:
            return StepOutcome(success=False, error=f"{task_id} failed")
        return StepOutcome(
            success=True,
            output=f"result-{task_id}",
            usage=Usage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
            cost_usd=0.01,
            provider=request.provider or "fake",
            model=request.model or "fake-1",
        )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repository(tmp_path: Path, clock: FakeClock) -> Iterator[ExecutionRepository]:
    repo = ExecutionRepository(tmp_path / "taskweave.db", clock=clock)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def stop_store(repository: ExecutionRepository, clock: FakeClock) -> StopRequestStore:
    return StopRequestStore(repository.engine, clock=clock)


@pytest.fixture()
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture()
def emitter(repository: ExecutionRepository, clock: FakeClock) -> EventEmitter:
    return EventEmitter(repository, clock=clock)


@pytest.fixture()
def scheduler(
    repository: ExecutionRepository,
    stop_store: StopRequestStore,
    runner: RecordingRunner,
    clock: FakeClock,
    emitter: EventEmitter,
) -> DagScheduler:
    return DagScheduler(repository, stop_store, runner, clock=clock, events=emitter)


@pytest.fixture()
def make_execution(
    repository: ExecutionRepository,
) -> Callable[..., ExecutionView]:
    def _make(
        *templates: TemplateSpec,
        graph_id: str | None = None,
        request: str = "test request",
    ) -> ExecutionView:
        return repository.create_execution(
            templates=list(templates),
            original_request=request,
            graph_id=graph_id,
        )

    return _make
