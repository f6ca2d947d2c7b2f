"""Step runner contract and bundled collaborators."""

from taskweave.engine.backend.base import (
    CostClock,
    Decomposer,
    DecompositionResult,
    GlobalContext,
    InferenceExecutor,
    InferenceRequest,
    InferenceResult,
    StepOutcome,
    StepRequest,
    StepRunner,
    SynthesisRequest,
    Synthesizer,
    SystemClock,
    ToolExecutor,
    ToolResult,
)
from taskweave.engine.backend.dispatcher import DispatchingStepRunner

__all__ = [
    "CostClock",
    "Decomposer",
    "DecompositionResult",
    "DispatchingStepRunner",
    "GlobalContext",
    "InferenceExecutor",
    "InferenceRequest",
    "InferenceResult",
    "StepOutcome",
    "StepRequest",
    "StepRunner",
    "SynthesisRequest",
    "Synthesizer",
    "SystemClock",
    "ToolExecutor",
    "ToolResult",
]
