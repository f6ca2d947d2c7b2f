"""Domain models for task graphs, executions and sub-steps."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class GraphStatus(str, Enum):
    """Task graph lifecycle states."""

    PLANNING = "planning"
    READY = "ready"
    CLARIFICATION_REQUIRED = "clarification_required"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExecutionStatus(str, Enum):
    """Execution lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"
    SUSPENDED = "suspended"


class StepStatus(str, Enum):
    """Sub-step lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


class ActionKind(str, Enum):
    TOOL = "tool"
    INFERENCE = "inference"


class StopStatus(str, Enum):
    REQUESTED = "requested"
    HANDLED = "handled"


class PlanningReason(str, Enum):
    """Why a decomposition attempt was made."""

    INITIAL = "initial"
    RETRY_VALIDATION = "retry_validation"
    RETRY_DECOMPOSER_ERROR = "retry_decomposer_error"


TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.PARTIAL},
)
RESUMABLE_EXECUTION_STATUSES = frozenset({ExecutionStatus.SUSPENDED, ExecutionStatus.WAITING})
RETRYABLE_EXECUTION_STATUSES = frozenset({ExecutionStatus.PARTIAL, ExecutionStatus.FAILED})
REDOABLE_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.PARTIAL, ExecutionStatus.FAILED},
)

STOPPED_REASON = "stopped"


@dataclass(slots=True, frozen=True)
class Usage:
    """Token usage reported by a collaborator; all-None means unknown."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None

    @property
    def is_empty(self) -> bool:
        return (
            self.prompt_tokens is None
            and self.completion_tokens is None
            and self.total_tokens is None
        )

    def effective_total(self) -> int:
        if self.total_tokens is not None:
            return self.total_tokens
        return (self.prompt_tokens or 0) + (self.completion_tokens or 0)

    def __add__(self, other: Usage) -> Usage:
        if self.is_empty:
            return other
        if other.is_empty:
            return self
        return Usage(
            prompt_tokens=(self.prompt_tokens or 0) + (other.prompt_tokens or 0),
            completion_tokens=(self.completion_tokens or 0) + (other.completion_tokens or 0),
            total_tokens=self.effective_total() + other.effective_total(),
        )

    def to_dict(self) -> dict[str, int | None]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> Usage:
        if not payload:
            return cls()
        return cls(
            prompt_tokens=_optional_int(payload.get("prompt_tokens")),
            completion_tokens=_optional_int(payload.get("completion_tokens")),
            total_tokens=_optional_int(payload.get("total_tokens")),
        )


@dataclass(slots=True, frozen=True)
class TemplateSpec:
    """Immutable blueprint of one unit of work within a task graph."""

    task_id: str
    description: str
    action_kind: ActionKind
    target_name: str
    params: dict[str, Any] = field(default_factory=dict)
    thought: str = ""
    expected_output: str = ""
    dependencies: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.task_id,
            "description": self.description,
            "thought": self.thought,
            "action_type": self.action_kind.value,
            "tool_or_prompt": {"name": self.target_name, "params": self.params},
            "expected_output": self.expected_output,
            "dependencies": list(self.dependencies),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TemplateSpec:
        """Build from the decomposer wire shape.

        Accepts both the nested ``tool_or_prompt`` form and flat
        ``target``/``params`` keys. Unknown action kinds are kept as raw
        strings here and rejected by the validator.
        """

        target = payload.get("tool_or_prompt") or {}
        if not isinstance(target, dict):
            target = {}
        params = target.get("params", payload.get("params")) or {}
        dependencies = payload.get("dependencies") or ()
        raw_kind = str(payload.get("action_type", payload.get("action_kind", "")))
        try:
            kind: ActionKind | str = ActionKind(raw_kind)
        except ValueError:
            kind = raw_kind
        return cls(
            task_id=str(payload.get("id", payload.get("task_id", ""))).strip(),
            description=str(payload.get("description", "")),
            action_kind=kind,  # type: ignore[arg-type]
            target_name=str(target.get("name", payload.get("target", "")) or "").strip(),
            params=dict(params) if isinstance(params, dict) else {},
            thought=str(payload.get("thought", "")),
            expected_output=str(payload.get("expected_output", "")),
            dependencies=tuple(str(dep) for dep in dependencies),
        )


@dataclass(slots=True)
class PlanningAttempt:
    """One decomposition attempt with its planning cost."""

    attempt: int
    reason: PlanningReason
    usage: Usage = field(default_factory=Usage)
    cost_usd: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "reason": self.reason.value,
            "usage": self.usage.to_dict(),
            "cost_usd": self.cost_usd,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PlanningAttempt:
        return cls(
            attempt=int(payload.get("attempt", 0)),
            reason=PlanningReason(payload.get("reason", PlanningReason.INITIAL.value)),
            usage=Usage.from_dict(payload.get("usage")),
            cost_usd=float(payload.get("cost_usd") or 0.0),
            error=payload.get("error"),
        )


@dataclass(slots=True)
class GraphCreate:
    """Input payload for persisting a task graph."""

    title: str
    goal: str
    templates: list[TemplateSpec]
    status: GraphStatus = GraphStatus.READY
    clarification_query: str | None = None
    planning_attempts: list[PlanningAttempt] = field(default_factory=list)
    primary_intent: str | None = None


@dataclass(slots=True)
class GraphView:
    """Readable task graph view."""

    graph_id: str
    title: str
    goal: str
    status: GraphStatus
    primary_intent: str | None
    clarification_query: str | None
    templates: list[TemplateSpec]
    cron_schedule: str | None
    schedule_active: bool
    timezone: str | None
    last_run_at: datetime | None
    planning_usage: Usage
    planning_cost_usd: float
    planning_attempts: list[PlanningAttempt]
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ExecutionCounters:
    """Aggregate step counters; ``other`` covers pending and running steps."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    waiting: int = 0

    @property
    def other(self) -> int:
        return self.total - self.completed - self.failed - self.waiting

    @classmethod
    def from_statuses(cls, statuses: list[StepStatus]) -> ExecutionCounters:
        return cls(
            total=len(statuses),
            completed=sum(1 for status in statuses if status is StepStatus.COMPLETED),
            failed=sum(1 for status in statuses if status is StepStatus.FAILED),
            waiting=sum(1 for status in statuses if status is StepStatus.WAITING),
        )


def derive_execution_status(counters: ExecutionCounters) -> ExecutionStatus:
    """Execution status implied by step counters."""

    if counters.waiting > 0:
        return ExecutionStatus.WAITING
    if counters.other > 0:
        return ExecutionStatus.RUNNING
    if counters.failed > 0:
        return ExecutionStatus.PARTIAL if counters.completed > 0 else ExecutionStatus.FAILED
    return ExecutionStatus.COMPLETED


@dataclass(slots=True)
class ExecutionView:
    """Readable execution view for CLI and scheduler logic."""

    execution_id: str
    graph_id: str | None
    original_request: str
    primary_intent: str | None
    status: ExecutionStatus
    started_at: datetime | None
    completed_at: datetime | None
    duration_ms: int | None
    counters: ExecutionCounters
    final_result: str | None
    synthesis_result: str | None
    synthesis_usage: Usage
    synthesis_cost_usd: float
    suspended_reason: str | None
    suspended_at: datetime | None
    retry_count: int
    last_retry_at: datetime | None
    usage: Usage
    total_cost_usd: float
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class SubStepView:
    """Runtime instance of a template."""

    sub_step_id: str
    execution_id: str
    position: int
    template: TemplateSpec
    status: StepStatus
    propagated: bool
    started_at: datetime | None
    completed_at: datetime | None
    duration_ms: int | None
    result: Any
    error: str | None
    usage: Usage
    cost_usd: float
    provider: str | None
    model: str | None
    generation_stats: dict[str, Any] | None

    @property
    def task_id(self) -> str:
        return self.template.task_id

    @property
    def step_index(self) -> int:
        return self.position + 1


@dataclass(slots=True)
class StopRequestView:
    stop_id: str
    graph_id: str | None
    execution_id: str | None
    status: StopStatus
    requested_at: datetime
    handled_at: datetime | None


class EventType(str, Enum):
    """Lifecycle event types emitted per execution."""

    STARTED = "started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    TOOL_CALLED = "tool_called"
    TOOL_COMPLETED = "tool_completed"
    TOOL_FAILED = "tool_failed"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    RESUMED = "resumed"


# Streams end after any of these.
STREAM_TERMINAL_EVENTS = frozenset({EventType.COMPLETED, EventType.FAILED, EventType.PAUSED})


@dataclass(slots=True)
class ExecutionEvent:
    """One lifecycle event; ``event_id`` is set once persisted."""

    type: EventType
    execution_id: str
    timestamp: datetime
    step_index: int | None = None
    data: dict[str, Any] | None = None
    error: str | None = None
    event_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type.value,
            "executionId": self.execution_id,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.step_index is not None:
            payload["stepIndex"] = self.step_index
        if self.data:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class ExecutionDetails:
    """Execution with its sub-steps in declaration order."""

    execution: ExecutionView
    steps: list[SubStepView]


@dataclass(slots=True)
class StepReplacement:
    """Result of an in-place step rerun; ``events`` were committed with it."""

    counters: ExecutionCounters
    previous_status: ExecutionStatus
    status: ExecutionStatus
    events: list[ExecutionEvent]


def _optional_int(value: object) -> int | None:
    if value is None:
        return None
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return None
