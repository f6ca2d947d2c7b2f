"""Deterministic local collaborators for demos and integration tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from taskweave.engine.backend.base import (
    DecompositionResult,
    InferenceRequest,
    InferenceResult,
    SynthesisRequest,
    ToolResult,
)
from taskweave.engine.models import TemplateSpec, Usage


class EchoToolExecutor:
    """Returns the tool name and resolved parameters as output."""

    def execute(self, name: str, params: dict[str, Any]) -> ToolResult:
        return ToolResult(success=True, output={"tool": name, "params": params})


class FailingToolExecutor:
    def __init__(self, message: str = "tool failed") -> None:
        self.message = message

    def execute(self, name: str, params: dict[str, Any]) -> ToolResult:
        return ToolResult(success=False, error=f"{name}: {self.message}")


class EchoInferenceExecutor:
    """Echoes the instruction; usage is word counts of prompt and response."""

    def __init__(self, *, provider: str = "echo", model: str = "echo-1") -> None:
        self.provider = provider
        self.model = model

    def infer(self, request: InferenceRequest) -> InferenceResult:
        provider = request.provider or self.provider
        model = request.model or self.model
        text = f"{request.agent_name} ({provider}/{model}): {request.instruction}"
        prompt_tokens = len(request.prompt.split())
        completion_tokens = len(text.split())
        return InferenceResult(
            text=text,
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            provider=provider,
            model=model,
        )


class EchoSynthesizer:
    """Joins completed step results in task-id order."""

    def synthesize(self, request: SynthesisRequest) -> InferenceResult:
        parts = []
        for task_id in sorted(request.step_results):
            value = request.step_results[task_id]
            text = value if isinstance(value, str) else json.dumps(value, sort_keys=True)
            parts.append(f"[{task_id}] {text}")
        text = "\n".join(parts)
        return InferenceResult(
            text=text,
            usage=Usage(prompt_tokens=0, completion_tokens=len(text.split())),
            provider="echo",
            model="echo-1",
        )


class StaticDecomposer:
    """Returns a prepared decomposition, e.g. loaded from a JSON file.

    Payload shape::

        {"title": "...", "intent": {"primary": "..."},
         "clarification_required": false, "clarification_query": null,
         "sub_tasks": [{"id": "1", "description": "...", "action_type": "tool",
                        "tool_or_prompt": {"name": "...", "params": {}},
                        "dependencies": []}]}
    """

    def __init__(self, payload: dict[str, Any]) -> None:
        self.payload = payload

    @classmethod
    def from_file(cls, path: Path) -> StaticDecomposer:
        raw = json.loads(path.read_text("utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"Graph file must contain a JSON object: {path}")
        return cls(raw)

    def decompose(self, goal: str) -> DecompositionResult:
        payload = self.payload
        intent = payload.get("intent")
        primary_intent = intent.get("primary") if isinstance(intent, dict) else None
        sub_tasks = payload.get("sub_tasks") or []
        return DecompositionResult(
            templates=[TemplateSpec.from_dict(item) for item in sub_tasks if isinstance(item, dict)],
            title=payload.get("title") or goal,
            primary_intent=primary_intent,
            clarification_required=bool(payload.get("clarification_required", False)),
            clarification_text=payload.get("clarification_query"),
            usage=Usage.from_dict(payload.get("usage")),
            cost_usd=float(payload.get("cost_usd") or 0.0),
        )
