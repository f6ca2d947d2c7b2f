"""Collaborator contracts consumed by the scheduler and planning service."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from taskweave.engine.models import TemplateSpec, Usage
from taskweave.storage.common import utc_now


@dataclass(slots=True)
class GlobalContext:
    """Execution-wide context rendered into every inference prompt."""

    request: str
    primary_intent: str | None
    total_tasks: int


@dataclass(slots=True)
class StepRequest:
    """Inputs required to execute one sub-step."""

    execution_id: str
    step_index: int
    template: TemplateSpec
    dependency_results: dict[str, Any]
    context: GlobalContext
    provider: str | None = None
    model: str | None = None
    cancel_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class StepOutcome:
    """Success/failure of one sub-step with its usage and cost."""

    success: bool
    output: Any = None
    error: str | None = None
    usage: Usage = field(default_factory=Usage)
    cost_usd: float = 0.0
    provider: str | None = None
    model: str | None = None
    generation_stats: dict[str, Any] | None = None


class StepRunner(Protocol):
    """Executes one sub-step; failures are returned, not raised."""

    def run(self, request: StepRequest) -> StepOutcome:
        """Run a sub-step and return its outcome."""


@dataclass(slots=True)
class ToolResult:
    success: bool
    output: Any = None
    error: str | None = None


class ToolExecutor(Protocol):
    """Deterministic tool invocation by name."""

    def execute(self, name: str, params: dict[str, Any]) -> ToolResult:
        """Invoke a tool with resolved parameters."""


@dataclass(slots=True)
class InferenceRequest:
    agent_name: str
    prompt: str
    instruction: str
    provider: str | None = None
    model: str | None = None
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class InferenceResult:
    """Response text plus usage in either normalized or provider-native shape."""

    text: str
    usage: Usage | Mapping[str, Any] | None = None
    cost_usd: float | None = None
    provider: str | None = None
    model: str | None = None
    generation_stats: dict[str, Any] | None = None


class InferenceExecutor(Protocol):
    """LLM call for one named agent."""

    def infer(self, request: InferenceRequest) -> InferenceResult:
        """Return the model response for a rendered prompt."""


@dataclass(slots=True)
class DecompositionResult:
    """Decomposer output: either templates or a clarification request."""

    templates: list[TemplateSpec] = field(default_factory=list)
    title: str | None = None
    primary_intent: str | None = None
    clarification_required: bool = False
    clarification_text: str | None = None
    usage: Usage = field(default_factory=Usage)
    cost_usd: float = 0.0


class Decomposer(Protocol):
    """Turns a natural-language goal into a task graph."""

    def decompose(self, goal: str) -> DecompositionResult:
        """Decompose a goal."""


@dataclass(slots=True)
class SynthesisRequest:
    execution_id: str
    context: GlobalContext
    step_results: dict[str, Any]


class Synthesizer(Protocol):
    """Combines completed step results into a final answer."""

    def synthesize(self, request: SynthesisRequest) -> InferenceResult:
        """Return synthesized text with its usage."""


class CostClock(Protocol):
    def now(self) -> datetime:
        """Current timezone-aware UTC timestamp."""


class SystemClock:
    """Wall clock used outside tests."""

    def now(self) -> datetime:
        return utc_now()
