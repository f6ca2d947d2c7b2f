"""Name-keyed dispatch of sub-steps to tool and inference collaborators."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from taskweave.engine.backend.base import (
    GlobalContext,
    InferenceExecutor,
    InferenceRequest,
    StepOutcome,
    StepRequest,
    ToolExecutor,
)
from taskweave.engine.errors import SuspensionSignal
from taskweave.engine.models import ActionKind, TemplateSpec
from taskweave.engine.pricing import PricingTable
from taskweave.engine.usage import extract_usage_from_text, normalize_usage

logger = logging.getLogger(__name__)

WILDCARD = "*"
DEFAULT_DEPENDENCY_RESULT_MAX_CHARS = 2000

_DEPENDENCY_PLACEHOLDER = re.compile(r"<Results? (?:from|of) Task ([\w.-]+)>")


class DispatchingStepRunner:
    """Step runner backed by capability maps resolved once at construction.

    Collaborator exceptions and unknown targets become failed outcomes with
    the error text kept verbatim. ``SuspensionSignal`` propagates so the
    scheduler can park the step as waiting.
    """

    def __init__(
        self,
        *,
        tools: Mapping[str, ToolExecutor],
        agents: Mapping[str, InferenceExecutor],
        dependency_result_max_chars: int = DEFAULT_DEPENDENCY_RESULT_MAX_CHARS,
        pricing: PricingTable | None = None,
    ) -> None:
        self._tools = dict(tools)
        self._agents = dict(agents)
        self.dependency_result_max_chars = dependency_result_max_chars
        self.pricing = pricing or PricingTable()

    def run(self, request: StepRequest) -> StepOutcome:
        template = request.template
        if template.action_kind is ActionKind.TOOL:
            return self._run_tool(request)
        if template.action_kind is ActionKind.INFERENCE:
            return self._run_inference(request)
        return StepOutcome(success=False, error=f"Unknown action kind: {template.action_kind}")

    def _run_tool(self, request: StepRequest) -> StepOutcome:
        name = request.template.target_name
        tool = self._tools.get(name) or self._tools.get(WILDCARD)
        if tool is None:
            logger.warning("Tool not registered: %s (step %s)", name, request.template.task_id)
            return StepOutcome(success=False, error=f"Tool not found: {name}")

        params = resolve_params(request.template.params, request.dependency_results)
        logger.debug("Executing tool %s for step %s", name, request.template.task_id)
        try:
            result = tool.execute(name, params)
        except SuspensionSignal:
            raise
        except Exception as error:  # noqa: BLE001
            logger.warning("Tool %s raised: %s", name, error)
            return StepOutcome(success=False, error=str(error))
        if not result.success:
            return StepOutcome(success=False, output=result.output, error=result.error)
        return StepOutcome(success=True, output=result.output)

    def _run_inference(self, request: StepRequest) -> StepOutcome:
        name = request.template.target_name
        agent = self._agents.get(name) or self._agents.get(WILDCARD)
        if agent is None:
            logger.warning("Agent not registered: %s (step %s)", name, request.template.task_id)
            return StepOutcome(success=False, error=f"No agent found with name: {name}")

        instruction = str(request.template.params.get("prompt") or request.template.description)
        prompt = build_inference_prompt(
            template=request.template,
            context=request.context,
            dependency_results=request.dependency_results,
            max_chars=self.dependency_result_max_chars,
        )
        try:
            result = agent.infer(
                InferenceRequest(
                    agent_name=name,
                    prompt=prompt,
                    instruction=instruction,
                    provider=request.provider,
                    model=request.model,
                    params=dict(request.template.params),
                ),
            )
        except SuspensionSignal:
            raise
        except Exception as error:  # noqa: BLE001
            logger.warning("Agent %s raised: %s", name, error)
            return StepOutcome(success=False, error=str(error))

        extraction = normalize_usage(result.usage)
        if extraction.usage.is_empty:
            extraction = extract_usage_from_text(result.text)
            if not extraction.usage.is_empty:
                logger.debug("Usage for step %s parsed from response text", request.template.task_id)
        usage = extraction.usage
        provider = result.provider or request.provider or name
        model = result.model or request.model or ""
        cost = result.cost_usd
        if cost is None and not usage.is_empty:
            cost = self.pricing.estimate(provider, model, usage)
        return StepOutcome(
            success=True,
            output=result.text,
            usage=usage,
            cost_usd=cost or 0.0,
            provider=provider,
            model=model or None,
            generation_stats=result.generation_stats,
        )


def resolve_params(params: dict[str, Any], dependency_results: Mapping[str, Any]) -> dict[str, Any]:
    """Substitute ``<Result from Task N>`` placeholders with dependency results."""

    return {key: _resolve_value(value, dependency_results) for key, value in params.items()}


def _resolve_value(value: Any, dependency_results: Mapping[str, Any]) -> Any:
    if isinstance(value, dict):
        return {key: _resolve_value(item, dependency_results) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve_value(item, dependency_results) for item in value]
    if not isinstance(value, str):
        return value

    whole = _DEPENDENCY_PLACEHOLDER.fullmatch(value.strip())
    if whole is not None and whole.group(1) in dependency_results:
        return dependency_results[whole.group(1)]

    def _replace(match: re.Match[str]) -> str:
        task_id = match.group(1)
        if task_id not in dependency_results:
            return match.group(0)
        return _as_text(dependency_results[task_id])

    return _DEPENDENCY_PLACEHOLDER.sub(_replace, value)


def build_inference_prompt(
    *,
    template: TemplateSpec,
    context: GlobalContext,
    dependency_results: Mapping[str, Any],
    max_chars: int = DEFAULT_DEPENDENCY_RESULT_MAX_CHARS,
) -> str:
    """Render the prompt for an inference step from context and dependency results."""

    dependency_lines = []
    for task_id in template.dependencies:
        if task_id not in dependency_results:
            continue
        text = _as_text(dependency_results[task_id])
        if len(text) > max_chars:
            text = text[:max_chars] + "..."
        dependency_lines.append(f"[Task {task_id}]: {text}")
    dependencies = "\n\n".join(dependency_lines) or "None"
    instruction = template.params.get("prompt") or template.description

    return (
        "You are executing a sub-task within a larger workflow.\n\n"
        "# Global Context\n"
        f"**Request:** {context.request}\n"
        f"**Primary Intent:** {context.primary_intent or '-'}\n\n"
        f"# Current Task [{template.task_id}/{context.total_tasks}]\n"
        f"**Description:** {template.description}\n"
        f"**Reasoning:** {template.thought or '-'}\n"
        f"**Expected Output:** {template.expected_output or '-'}\n\n"
        "# Dependencies\n"
        f"{dependencies}\n\n"
        "# Instruction\n"
        f"{instruction}\n\n"
        "Respond with ONLY the expected output format."
    )


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
