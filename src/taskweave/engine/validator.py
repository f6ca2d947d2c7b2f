"""Structural validation of decomposer output before persistence."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from taskweave.engine.errors import CycleError, ValidationError
from taskweave.engine.models import ActionKind, TemplateSpec

# Decomposers mark root tasks with this pseudo-dependency.
NO_DEPENDENCY = "none"

_WHITE, _GREY, _BLACK = 0, 1, 2


@dataclass(slots=True)
class ValidatedGraph:
    """Templates accepted for persistence, in declaration order."""

    templates: list[TemplateSpec]


@dataclass(slots=True)
class ClarificationRequired:
    """Decomposer asked for more input; nothing is persisted as ready."""

    clarification_text: str


def validate_task_graph(
    templates: Sequence[TemplateSpec],
    *,
    clarification_required: bool = False,
    clarification_text: str | None = None,
) -> ValidatedGraph | ClarificationRequired:
    """Validate a candidate graph or clarification result.

    Raises ``ValidationError`` (``CycleError`` for cycles) on the first
    structural problem found.
    """

    if clarification_required:
        text = (clarification_text or "").strip()
        if not text:
            raise ValidationError(
                "Clarification was requested without clarification text.",
                field="clarification_query",
                value=clarification_text,
            )
        return ClarificationRequired(clarification_text=text)

    if not templates:
        raise ValidationError("Task graph must contain at least one sub-task.", field="sub_tasks")

    normalized = [_normalize(template) for template in templates]
    known_ids: set[str] = set()
    for template in normalized:
        if not template.task_id:
            raise ValidationError("Sub-task id must not be empty.", field="id")
        if template.task_id in known_ids:
            raise ValidationError(
                f"Duplicate sub-task id: {template.task_id}",
                field="id",
                value=template.task_id,
            )
        known_ids.add(template.task_id)
        if not template.target_name:
            raise ValidationError(
                f"Sub-task {template.task_id} has an empty target name.",
                field="tool_or_prompt.name",
                value=template.task_id,
            )
        if not isinstance(template.action_kind, ActionKind):
            raise ValidationError(
                f"Sub-task {template.task_id} has unsupported action kind: "
                f"{template.action_kind!r}",
                field="action_type",
                value=template.action_kind,
            )

    for template in normalized:
        for dependency in template.dependencies:
            if dependency not in known_ids:
                raise ValidationError(
                    f"Sub-task {template.task_id} depends on unknown sub-task {dependency}",
                    field="dependencies",
                    value=dependency,
                )

    cycle = find_cycle(normalized)
    if cycle is not None:
        raise CycleError(cycle)
    return ValidatedGraph(templates=normalized)


def find_cycle(templates: Sequence[TemplateSpec]) -> list[str] | None:
    """Return one dependency cycle as ``[a, b, ..., a]`` or ``None``."""

    edges = {template.task_id: template.dependencies for template in templates}
    colour = dict.fromkeys(edges, _WHITE)
    path: list[str] = []

    def visit(node: str) -> list[str] | None:
        colour[node] = _GREY
        path.append(node)
        for dependency in edges.get(node, ()):
            if dependency not in colour:
                continue
            if colour[dependency] == _GREY:
                start = path.index(dependency)
                return [*path[start:], dependency]
            if colour[dependency] == _WHITE:
                found = visit(dependency)
                if found is not None:
                    return found
        path.pop()
        colour[node] = _BLACK
        return None

    for template in templates:
        if colour[template.task_id] == _WHITE:
            found = visit(template.task_id)
            if found is not None:
                return found
    return None


def topological_order(templates: Sequence[TemplateSpec]) -> list[TemplateSpec]:
    """Kahn order; ties resolved by declaration order."""

    remaining = list(templates)
    done: set[str] = set()
    ordered: list[TemplateSpec] = []
    while remaining:
        ready = [
            template
            for template in remaining
            if all(dependency in done for dependency in template.dependencies)
        ]
        if not ready:
            raise CycleError(find_cycle(remaining) or [template.task_id for template in remaining])
        for template in ready:
            done.add(template.task_id)
            ordered.append(template)
        remaining = [template for template in remaining if template.task_id not in done]
    return ordered


def _normalize(template: TemplateSpec) -> TemplateSpec:
    dependencies = tuple(
        dependency.strip()
        for dependency in template.dependencies
        if dependency.strip() and dependency.strip() != NO_DEPENDENCY
    )
    if dependencies == template.dependencies:
        return template
    return TemplateSpec(
        task_id=template.task_id,
        description=template.description,
        action_kind=template.action_kind,
        target_name=template.target_name,
        params=template.params,
        thought=template.thought,
        expected_output=template.expected_output,
        dependencies=dependencies,
    )
