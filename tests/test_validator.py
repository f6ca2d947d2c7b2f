from __future__ import annotations

import allure
import pytest

from taskweave.engine.errors import CycleError, ValidationError
from taskweave.engine.models import ActionKind, TemplateSpec
from taskweave.engine.validator import (
    ClarificationRequired,
    ValidatedGraph,
    find_cycle,
    topological_order,
    validate_task_graph,
)

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Graph Validation"),
]


def _tool(task_id: str, *dependencies: str, target: str = "echo") -> TemplateSpec:
    return TemplateSpec(
        task_id=task_id,
        description=f"Task {task_id}",
        action_kind=ActionKind.TOOL,
        target_name=target,
        dependencies=tuple(dependencies),
    )


def test_valid_graph_strips_none_pseudo_dependency() -> None:
    result = validate_task_graph([_tool("1", "none"), _tool("2", " 1 ", "")])

    assert isinstance(result, ValidatedGraph)
    assert [template.dependencies for template in result.templates] == [(), ("1",)]


def test_clarification_short_circuits_structure_checks() -> None:
    result = validate_task_graph(
        [],
        clarification_required=True,
        clarification_text="  Which region?  ",
    )

    assert result == ClarificationRequired(clarification_text="Which region?")


def test_clarification_requires_text() -> None:
    with pytest.raises(ValidationError, match="without clarification text"):
        validate_task_graph([], clarification_required=True, clarification_text=" ")


@pytest.mark.parametrize(
    ("templates", "message"),
    [
        ([], "at least one sub-task"),
        ([_tool("")], "id must not be empty"),
        ([_tool("1"), _tool("1")], "Duplicate sub-task id: 1"),
        ([_tool("1", target="")], "empty target name"),
        ([_tool("1", "9")], "depends on unknown sub-task 9"),
    ],
)
def test_structural_errors(templates: list[TemplateSpec], message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        validate_task_graph(templates)


def test_unknown_action_kind_is_rejected() -> None:
    template = TemplateSpec.from_dict(
        {"id": "1", "action_type": "shell", "tool_or_prompt": {"name": "ls"}},
    )

    with pytest.raises(ValidationError, match="unsupported action kind: 'shell'") as error:
        validate_task_graph([template])
    assert error.value.field == "action_type"


def test_cycle_is_reported_with_its_path() -> None:
    templates = [_tool("1"), _tool("2", "1", "4"), _tool("3", "2"), _tool("4", "3")]

    with pytest.raises(CycleError) as error:
        validate_task_graph(templates)

    assert error.value.cycle == ["2", "4", "3", "2"]
    assert "2 -> 4 -> 3 -> 2" in str(error.value)
    assert find_cycle([_tool("1"), _tool("2", "1")]) is None


def test_self_dependency_is_a_cycle() -> None:
    assert find_cycle([_tool("1", "1")]) == ["1", "1"]


def test_topological_order_keeps_declaration_order_for_ties() -> None:
    templates = [_tool("c", "a"), _tool("b"), _tool("a"), _tool("d", "b", "c")]

    assert [template.task_id for template in topological_order(templates)] == ["b", "a", "c", "d"]


def test_topological_order_rejects_cycles() -> None:
    with pytest.raises(CycleError):
        topological_order([_tool("1", "2"), _tool("2", "1")])


def test_template_wire_shapes() -> None:
    nested = TemplateSpec.from_dict(
        {
            "id": 7,
            "description": "Summarize",
            "action_type": "inference",
            "tool_or_prompt": {"name": "writer", "params": {"prompt": "Go"}},
            "dependencies": [1, 2],
        },
    )
    flat = TemplateSpec.from_dict(
        {"task_id": "7", "action_kind": "inference", "target": "writer", "params": {"prompt": "Go"}},
    )

    assert nested.task_id == "7"
    assert nested.action_kind is ActionKind.INFERENCE
    assert nested.dependencies == ("1", "2")
    assert flat.target_name == "writer"
    assert flat.params == {"prompt": "Go"}
    assert TemplateSpec.from_dict(nested.to_dict()) == nested
